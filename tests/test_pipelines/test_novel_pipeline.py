"""
Tests for Novel Pipeline Module

End-to-end runs of plotline/pipelines/novel_pipeline.py against the stub
generation capability.
"""

import logging

import pytest

from plotline.core.config import ChunkingConfig, PipelineConfig, PlotlineConfig
from plotline.core.constants import LLMFunction
from plotline.core.exceptions import GenerationFailure
from plotline.core.logging_config import DEFAULT_FORMAT, LogLevel, setup_logging
from plotline.models.story import ChunkAnalysis
from plotline.pipelines.base_pipeline import PipelineStatus
from plotline.pipelines.novel_pipeline import NovelPipeline


def words(prefix, count):
    return " ".join(f"{prefix}{i}" for i in range(count))


# Chunks into two at max 30 / overlap 5 with the word tokenizer
NOVEL = "\n\n".join([words("a", 10), words("b", 15), words("c", 25)])


def make_config(**pipeline):
    pipeline.setdefault("retry_delay", 0)
    return PlotlineConfig(
        chunking=ChunkingConfig(max_tokens=30, overlap_tokens=5),
        pipeline=PipelineConfig(**pipeline)
    )


def extract_events(fragment_text):
    first = fragment_text.split()[0]
    return ChunkAnalysis.model_validate({
        "summary": f"part starting {first}",
        "events": [
            {"id": "E001", "summary": f"{first} happens", "entity_ids": ["Li San"]},
            {"id": "E002", "summary": f"{first} ends", "entity_ids": ["CHAR_001"]},
        ],
        "causal_relations": [{"from_event_id": "E001", "to_event_id": "E002"}],
        "entity_references": [{"id": "CHAR_001", "role": "hero"}],
    })


@pytest.fixture
def handlers(fragment, echo):
    return {
        LLMFunction.DISCOVERY: {"entities": [{"name": "Li San", "description": "a swordsman"}]},
        LLMFunction.RESOLUTION: {"entities": [{"name": "Li San", "importance": "major"}]},
        LLMFunction.EXTRACTION: lambda prompt: extract_events(fragment(prompt)),
        LLMFunction.CORRECTION: echo,
        LLMFunction.CONSOLIDATION: {
            "global_summary": "Li San crosses the north.",
            "event_mappings": [{"original_id": "E003", "canonical_id": "E001"}],
        },
        LLMFunction.DESIGN: "  Tall man, grey hemp robe, black topknot.  ",
    }


class TestNovelPipeline:
    """Tests for NovelPipeline."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, make_llm, handlers, word_tokenizer):
        """Test the full chain produces a consistent graph."""
        llm = make_llm(handlers)
        stages = []
        pipeline = NovelPipeline(
            llm,
            make_config(enable_design=True),
            tokenizer=word_tokenizer,
            on_progress=lambda *args: stages.append(args[0])
        )

        result = await pipeline.run(NOVEL)

        assert result.success, result.error
        graph = result.output
        assert graph.event_ids == ["E001", "E002", "E004"]
        assert graph.get_event("E004").chunk_index == 1
        assert [(r.from_event_id, r.to_event_id) for r in graph.relations] == [
            ("E001", "E002"), ("E001", "E004")
        ]
        assert graph.full_summary == "Li San crosses the north."

        li_san = graph.entities["CHAR_001"]
        assert li_san.importance.value == "major"
        assert li_san.appearances == [0, 1]
        assert li_san.roles == ["hero"]
        assert li_san.visual_traits == "Tall man, grey hemp robe, black topknot."

        assert result.metadata["steps_completed"] == [
            "chunk", "discover", "extract", "merge", "consolidate", "design"
        ]
        assert result.metadata["chunk_count"] == 2
        assert result.metadata["entity_count"] == 1
        assert result.metadata["failed_chunks"] == []
        assert result.metadata["discovery_errors"] == []
        assert pipeline.log_file is None
        assert result.metadata["concurrency"]["extraction"]["total_tasks"] == 2
        assert {"Discovery", "Entity Resolution", "Extraction", "Consolidation", "Design"} <= set(stages)

    @pytest.mark.asyncio
    async def test_optional_steps_follow_config(self, make_llm, handlers, word_tokenizer):
        """Test consolidation and design can be switched off."""
        llm = make_llm(handlers)
        pipeline = NovelPipeline(
            llm,
            make_config(enable_dedup=False, enable_design=False, enable_correction=False),
            tokenizer=word_tokenizer
        )

        result = await pipeline.run(NOVEL)

        assert result.metadata["steps_completed"] == ["chunk", "discover", "extract", "merge"]
        assert result.output.event_ids == ["E001", "E002", "E003", "E004"]
        assert result.output.full_summary == "part starting a0\n\npart starting b10"
        for function in (LLMFunction.CORRECTION, LLMFunction.CONSOLIDATION, LLMFunction.DESIGN):
            assert llm.calls_for(function) == []

    @pytest.mark.asyncio
    async def test_isolated_chunk_failure(self, make_llm, handlers, fragment, word_tokenizer):
        """Test one failing chunk is reported while the rest merge."""
        def extract(prompt):
            text = fragment(prompt)
            if text.startswith("b10"):
                return GenerationFailure("schema violation")
            return extract_events(text)

        handlers[LLMFunction.EXTRACTION] = extract
        pipeline = NovelPipeline(
            make_llm(handlers),
            make_config(failure_policy="isolate", enable_dedup=False),
            tokenizer=word_tokenizer
        )

        result = await pipeline.run(NOVEL)

        assert result.success
        assert result.output.failed_chunks == [1]
        assert result.metadata["failed_chunks"] == [1]
        assert result.output.event_ids == ["E001", "E002"]

    @pytest.mark.asyncio
    async def test_fail_fast_fails_pipeline(self, make_llm, handlers, word_tokenizer):
        """Test fail-fast extraction fails the run at the extract step."""
        handlers[LLMFunction.EXTRACTION] = GenerationFailure("provider down")
        pipeline = NovelPipeline(
            make_llm(handlers),
            make_config(failure_policy="fail_fast"),
            tokenizer=word_tokenizer
        )

        result = await pipeline.run(NOVEL)

        assert result.status == PipelineStatus.FAILED
        assert result.metadata["failed_step"] == "extract"
        assert "provider down" in result.error

    @pytest.mark.asyncio
    async def test_cancel_during_discovery(self, make_llm, handlers, word_tokenizer):
        """Test cancelling stops the run before extraction."""
        holder = {}

        def discover(prompt):
            holder["pipeline"].cancel()
            return {"entities": []}

        handlers[LLMFunction.DISCOVERY] = discover
        llm = make_llm(handlers)
        pipeline = NovelPipeline(llm, make_config(), tokenizer=word_tokenizer)
        holder["pipeline"] = pipeline

        result = await pipeline.run(NOVEL)

        assert result.status == PipelineStatus.CANCELLED
        assert result.metadata["steps_completed"] == ["chunk", "discover"]
        assert llm.calls_for(LLMFunction.EXTRACTION) == []

    @pytest.mark.asyncio
    async def test_resume_from_cache(self, make_llm, handlers, word_tokenizer, temp_dir):
        """Test a second run reuses cached chunk analyses."""
        config = make_config(cache_dir=temp_dir / "cache", enable_dedup=False)

        first = await NovelPipeline(make_llm(handlers), config, tokenizer=word_tokenizer).run(NOVEL)
        llm = make_llm(handlers)
        second = await NovelPipeline(llm, config, tokenizer=word_tokenizer).run(NOVEL)

        assert second.success
        assert llm.calls_for(LLMFunction.EXTRACTION) == []
        assert second.output.event_ids == first.output.event_ids

    @pytest.mark.asyncio
    async def test_empty_text(self, make_llm, handlers, word_tokenizer):
        """Test blank input yields an empty graph without any call."""
        llm = make_llm(handlers)
        pipeline = NovelPipeline(llm, make_config(), tokenizer=word_tokenizer)

        result = await pipeline.run("   ")

        assert result.success
        assert result.output.events == []
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_discovery_failures_reported(self, make_llm, handlers, fragment, word_tokenizer):
        """Test a chunk whose discovery keeps failing shows up in metadata."""
        def discover(prompt):
            if fragment(prompt).startswith("b10"):
                return GenerationFailure("timeout")
            return {"entities": [{"name": "Li San", "description": "a swordsman"}]}

        handlers[LLMFunction.DISCOVERY] = discover
        llm = make_llm(handlers)
        pipeline = NovelPipeline(llm, make_config(enable_dedup=False), tokenizer=word_tokenizer)

        result = await pipeline.run(NOVEL)

        assert result.success
        assert result.metadata["discovery_errors"] == [1]
        assert len(llm.calls_for(LLMFunction.DISCOVERY)) == 3
        assert result.output.entities["CHAR_001"].name == "Li San"

    @pytest.mark.asyncio
    async def test_session_log_follows_config(self, make_llm, handlers, word_tokenizer, temp_dir):
        """Test logs_dir and verbose_logging drive the session log."""
        config = make_config(enable_dedup=False)
        config.logs_dir = temp_dir / "logs"
        config.verbose_logging = False

        pipeline = NovelPipeline(make_llm(handlers), config, tokenizer=word_tokenizer)
        await pipeline.run(NOVEL)

        root = logging.getLogger("plotline")
        for handler in root.handlers:
            handler.flush()
        try:
            assert pipeline.log_file.parent == temp_dir / "logs"
            assert pipeline.log_file.name.startswith("novel_")
            assert "Merged 2 chunks" in pipeline.log_file.read_text(encoding="utf-8")
            assert all(h.formatter._fmt == DEFAULT_FORMAT for h in root.handlers)
        finally:
            for handler in root.handlers:
                handler.close()
            setup_logging(LogLevel.INFO)
