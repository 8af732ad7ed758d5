"""
Plotline Event Extraction

Per-chunk structured extraction with a sliding narrative window.

Each chunk is analyzed against the canonical entity roster and a summary of
what came before, then the result goes through one corrective pass that
compares it with the source text. Chunks run in batches of `concurrency`;
a batch starts only after the previous one finished, so every chunk sees the
summaries available at the start of its batch.
"""

import asyncio
import json
from typing import Callable, Dict, List, Optional, Sequence, Union

from plotline.core.constants import LLMFunction, STAGE_EXTRACTION
from plotline.core.logging_config import get_logger
from plotline.core.retry import fixed_delay_config, retry_async_call
from plotline.llm.llm_config import GenerationCapability
from plotline.models.story import CanonicalEntity, ChunkAnalysis
from plotline.pipelines.analysis_cache import AnalysisCache
from plotline.pipelines.concurrency_manager import (
    ConcurrencyManager,
    FailurePolicy,
    PipelinePhase,
    get_concurrency_manager,
    run_bounded_detailed,
)
from plotline.pipelines.discovery import EntityRegistry
from plotline.utils.chunk_manager import TextChunk

logger = get_logger("pipelines.extraction")

ProgressCallback = Callable[[str, int, int], None]


def previous_summary(analyses: Sequence[Optional[ChunkAnalysis]], index: int) -> Optional[str]:
    """Summary of the nearest earlier chunk that has an analysis."""
    for i in range(index - 1, -1, -1):
        if analyses[i] is not None:
            return analyses[i].summary
    return None


class ExtractionStage:
    """
    Extracts events, causal links and entity references from chunks.

    Usage:
        stage = ExtractionStage(llm, concurrency=5, cache=AnalysisCache(path))
        analyses = await stage.extract_all(chunks, entities)
    """

    EXTRACTION_PROMPT = """You are a narrative analysis engine that extracts structured story elements
from novel text.

Guidelines:
1. Coverage: analyze the fragment from beginning to end, chapter by chapter.
2. Entity references: use the ids from the known entity list. Record any
   named entity that is not on the list in discovered_entities.
3. Faithfulness: every event must be supported by the text. No vague wording.
4. Events: number them E001, E002, ... within this fragment.
5. Causality: link events with causal_relations using those event ids."""

    CORRECTION_PROMPT = """You are a hallucination-aware reviewer. You compare a preliminary analysis of
a novel fragment with the original text and fix it.

Check in particular:
1. Are character identities consistent?
2. Does the order of events follow the text?
3. Is there any plot that does not exist in the text? Remove it.

Return the corrected analysis in full, keeping event ids where events survive."""

    def __init__(
        self,
        llm: GenerationCapability,
        concurrency: Optional[int] = None,
        enable_correction: bool = True,
        retry_delay: float = 2.0,
        policy: FailurePolicy = FailurePolicy.ISOLATE,
        cache: Optional[AnalysisCache] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        manager: Optional[ConcurrencyManager] = None
    ):
        """
        Initialize the extraction stage.

        Args:
            llm: Generation capability
            concurrency: Batch size and parallelism (phase default if omitted)
            enable_correction: Run the corrective pass after each extraction
            retry_delay: Seconds to wait before the single retry of a chunk
            policy: Failure policy within a batch
            cache: Where analyses are read from and written to
            cancel_event: Stops dispatch once set
            on_progress: Called as (stage_name, completed, total)
            manager: Concurrency manager for limits and stats
        """
        self.llm = llm
        self.manager = manager or get_concurrency_manager()
        if concurrency is None:
            concurrency = self.manager.get_limit(PipelinePhase.EXTRACTION)
        self.concurrency = concurrency
        self.enable_correction = enable_correction
        self.retry_config = fixed_delay_config(retry_delay, max_retries=1)
        self.policy = policy
        self.cache = cache
        self.cancel_event = cancel_event
        self.on_progress = on_progress
        self.errors: Dict[int, BaseException] = {}

    async def extract_initial(
        self,
        chunk: TextChunk,
        registry: EntityRegistry,
        previous_summary: Optional[str] = None
    ) -> ChunkAnalysis:
        """First-pass analysis of one chunk."""
        parts = []
        roster = registry.roster()
        if roster:
            parts.append(f"## Known entities\n{roster}")
        if previous_summary:
            parts.append(f"## Story so far\n{previous_summary}")
        parts.append(f"## Fragment {chunk.index + 1}\n{chunk.content}")
        parts.append(
            "Extract the fragment summary, events, causal relations, entity "
            "references, scene breaks and any newly discovered entities."
        )

        return await self.llm.generate_structured(
            "\n\n".join(parts),
            ChunkAnalysis,
            system_prompt=self.EXTRACTION_PROMPT,
            function=LLMFunction.EXTRACTION,
            temperature=0.2
        )

    async def correct(self, chunk: TextChunk, initial: ChunkAnalysis) -> ChunkAnalysis:
        """Corrective pass: re-check an analysis against its source text."""
        analysis_json = json.dumps(initial.model_dump(), ensure_ascii=False, indent=2)
        prompt = (
            "Compare the original text with the preliminary analysis and fix any "
            "contradiction or hallucinated content.\n\n"
            f"<original_text>\n{chunk.content}\n</original_text>\n\n"
            f"<initial_analysis>\n{analysis_json}\n</initial_analysis>"
        )
        return await self.llm.generate_structured(
            prompt,
            ChunkAnalysis,
            system_prompt=self.CORRECTION_PROMPT,
            function=LLMFunction.CORRECTION,
            temperature=0.1
        )

    async def extract_chunk(
        self,
        chunk: TextChunk,
        registry: EntityRegistry,
        previous_summary: Optional[str] = None
    ) -> ChunkAnalysis:
        """Extract, then correct when enabled."""
        analysis = await self.extract_initial(chunk, registry, previous_summary)
        if self.enable_correction:
            analysis = await self.correct(chunk, analysis)
        return analysis

    async def _run_chunk(
        self,
        chunk: TextChunk,
        registry: EntityRegistry,
        summary: Optional[str]
    ) -> ChunkAnalysis:
        analysis = await retry_async_call(
            self.extract_chunk,
            chunk,
            registry,
            summary,
            config=self.retry_config
        )
        if self.cache is not None:
            self.cache.save(chunk.index, analysis)
        return analysis

    async def extract_all(
        self,
        chunks: List[TextChunk],
        entities: Union[EntityRegistry, List[CanonicalEntity]],
        concurrency: Optional[int] = None,
        cached: Optional[Dict[int, ChunkAnalysis]] = None
    ) -> List[Optional[ChunkAnalysis]]:
        """
        Analyze every chunk, reusing cached analyses.

        Args:
            chunks: Chunks in index order
            entities: Canonical entities or a registry built from them
            concurrency: Overrides the stage's batch size
            cached: Pre-populated analyses by chunk index; never regenerated

        Returns:
            Analyses in chunk order; None for failed or skipped chunks
        """
        if concurrency is None:
            concurrency = self.concurrency
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")

        registry = entities if isinstance(entities, EntityRegistry) else EntityRegistry(entities)
        total = len(chunks)
        analyses: List[Optional[ChunkAnalysis]] = [None] * total

        prefilled = dict(cached or {})
        if self.cache is not None:
            for index, analysis in self.cache.load_all(range(total)).items():
                prefilled.setdefault(index, analysis)
        for index, analysis in prefilled.items():
            if 0 <= index < total:
                analyses[index] = analysis

        pending = [i for i in range(total) if analyses[i] is None]
        done_count = total - len(pending)
        self.errors = {}

        logger.info(
            f"Extracting {len(pending)} chunks in batches of {concurrency} "
            f"({done_count} reused from cache)"
        )
        self._report(done_count, total)

        for batch_start in range(0, len(pending), concurrency):
            if self.cancel_event is not None and self.cancel_event.is_set():
                logger.info("Extraction cancelled before next batch")
                break

            batch = pending[batch_start:batch_start + concurrency]
            # Summaries are read from the state at batch start
            snapshot = list(analyses)
            tasks = [
                lambda i=i: self._run_chunk(chunks[i], registry, previous_summary(snapshot, i))
                for i in batch
            ]

            base = done_count
            outcome = await run_bounded_detailed(
                tasks,
                concurrency,
                policy=self.policy,
                cancel_event=self.cancel_event,
                on_task_done=lambda _pos, done, _n: self._report(base + done, total),
                phase=PipelinePhase.EXTRACTION,
                manager=self.manager
            )

            for pos, index in enumerate(batch):
                if outcome.results[pos] is not None:
                    analyses[index] = outcome.results[pos]
                elif pos in outcome.errors:
                    self.errors[index] = outcome.errors[pos]
            done_count += len(batch) - len(outcome.skipped)

        succeeded = sum(1 for a in analyses if a is not None)
        logger.info(f"Extraction finished: {succeeded}/{total} chunks analyzed, {len(self.errors)} failed")
        return analyses

    def _report(self, completed: int, total: int) -> None:
        if self.on_progress:
            self.on_progress(STAGE_EXTRACTION, completed, total)
