"""
Plotline Novel Pipeline

End-to-end orchestration: chunk -> discover -> extract -> merge, then the
optional consolidation and character design passes.

Usage:
    pipeline = NovelPipeline(LLMManager(config), config)
    result = await pipeline.run(text)
    if result.success:
        result.output.save(Path("story_graph.json"))
"""

from typing import Any, Callable, Dict, List, Optional

from plotline.agents.character_designer import CharacterDesigner
from plotline.core.config import PlotlineConfig, get_config
from plotline.core.exceptions import PipelineStageError
from plotline.core.logging_config import create_session_log, get_logger, setup_logging
from plotline.llm.llm_config import GenerationCapability
from plotline.models.story import MergedGraph
from plotline.pipelines.analysis_cache import AnalysisCache
from plotline.pipelines.base_pipeline import BasePipeline, PipelineResult, PipelineStep
from plotline.pipelines.concurrency_manager import ConcurrencyManager, FailurePolicy
from plotline.pipelines.discovery import DiscoveryStage, EntityRegistry
from plotline.pipelines.extraction import ExtractionStage
from plotline.pipelines.merge import PlotGraphConsolidator, merge_analyses
from plotline.utils.chunk_manager import TokenChunker, Tokenizer

logger = get_logger("pipelines.novel")

ProgressCallback = Callable[[str, int, int], None]


class NovelPipeline(BasePipeline[str, MergedGraph]):
    """
    Turns a novel into a MergedGraph.

    Stage progress is reported through `on_progress(stage_name, completed,
    total)`; step progress through `set_progress_callback`.
    """

    def __init__(
        self,
        llm: GenerationCapability,
        config: PlotlineConfig = None,
        tokenizer: Optional[Tokenizer] = None,
        on_progress: Optional[ProgressCallback] = None,
        cache: Optional[AnalysisCache] = None
    ):
        """
        Initialize the pipeline.

        Args:
            llm: Generation capability used by every stage
            config: Plotline configuration (global config if omitted)
            tokenizer: Tokenizer for the chunker (tiktoken if omitted)
            on_progress: Stage progress callback
            cache: Analysis cache; built from config.pipeline.cache_dir if omitted
        """
        self.llm = llm
        self.config = config or get_config()
        self.on_progress = on_progress
        settings = self.config.pipeline

        self.log_file = None
        if self.config.logs_dir:
            self.log_file = create_session_log(
                self.config.logs_dir, prefix="novel", verbose=self.config.verbose_logging
            )
        else:
            setup_logging(verbose=self.config.verbose_logging)

        if cache is None and settings.cache_dir:
            cache = AnalysisCache(settings.cache_dir)
        self.cache = cache

        super().__init__("Novel Analysis")

        policy = FailurePolicy.from_value(settings.failure_policy)
        self.manager = ConcurrencyManager.from_pipeline_config(settings)
        self.chunker = TokenChunker.from_config(self.config.chunking, tokenizer)
        self.discovery = DiscoveryStage(
            llm,
            concurrency=settings.discovery_concurrency,
            policy=policy,
            max_descriptions=settings.max_descriptions,
            retry_delay=settings.retry_delay,
            cancel_event=self.cancel_event,
            on_progress=on_progress,
            manager=self.manager
        )
        self.extraction = ExtractionStage(
            llm,
            concurrency=settings.extraction_concurrency,
            enable_correction=settings.enable_correction,
            retry_delay=settings.retry_delay,
            policy=policy,
            cache=self.cache,
            cancel_event=self.cancel_event,
            on_progress=on_progress,
            manager=self.manager
        )
        self.consolidator = PlotGraphConsolidator(llm, on_progress=on_progress)
        self.designer = CharacterDesigner(
            llm,
            retry_delay=settings.retry_delay,
            cancel_event=self.cancel_event,
            on_progress=on_progress,
            manager=self.manager
        )

    def _define_steps(self) -> None:
        settings = self.config.pipeline
        self._steps = [
            PipelineStep("chunk", "Split the text into token-bounded chunks"),
            PipelineStep("discover", "Discover and resolve canonical entities"),
            PipelineStep("extract", "Extract events per chunk with correction"),
            PipelineStep("merge", "Merge analyses into a global graph"),
        ]
        if settings.enable_dedup:
            self._steps.append(
                PipelineStep("consolidate", "Collapse duplicate events", required=False)
            )
        if settings.enable_design:
            self._steps.append(
                PipelineStep("design", "Write visual traits per entity", required=False)
            )

    async def _execute_step(
        self,
        step: PipelineStep,
        input_data: Any,
        context: Dict[str, Any]
    ) -> Any:
        if step.name == "chunk":
            chunks = self.chunker.chunk(input_data)
            context["chunks"] = chunks
            logger.info(f"Split text into {len(chunks)} chunks")
            return chunks

        if step.name == "discover":
            entities = await self.discovery.discover(input_data)
            context["entities"] = entities
            return entities

        if step.name == "extract":
            registry = EntityRegistry(input_data)
            context["registry"] = registry
            analyses = await self.extraction.extract_all(context["chunks"], registry)
            context["analyses"] = analyses
            return analyses

        if step.name == "merge":
            return merge_analyses(
                input_data,
                context["registry"],
                strict=self.config.pipeline.strict_merge
            )

        if step.name == "consolidate":
            return await self.consolidator.consolidate(input_data)

        if step.name == "design":
            graph: MergedGraph = input_data
            designed = await self.designer.run(
                list(graph.entities.values()),
                concurrency=self.config.pipeline.design_concurrency
            )
            return graph.model_copy(update={"entities": {e.id: e for e in designed}})

        raise PipelineStageError(step.name, "unknown step")

    async def run(
        self,
        input_data: str,
        context: Dict[str, Any] = None
    ) -> PipelineResult[MergedGraph]:
        context = context if context is not None else {}
        result = await super().run(input_data, context)

        chunks: List = context.get("chunks", [])
        result.metadata["chunk_count"] = len(chunks)
        result.metadata["entity_count"] = len(context.get("entities", []))
        if "analyses" in context:
            result.metadata["failed_chunks"] = [
                i for i, analysis in enumerate(context["analyses"]) if analysis is None
            ]
        if "entities" in context:
            result.metadata["discovery_errors"] = sorted(self.discovery.errors)
        result.metadata["concurrency"] = self.manager.get_stats()
        return result
