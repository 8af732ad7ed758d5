"""
Plotline Pipelines Module

Scheduling and stage implementations. The end-to-end pipeline lives in
plotline.pipelines.novel_pipeline.
"""

from .analysis_cache import AnalysisCache
from .base_pipeline import BasePipeline, PipelineResult, PipelineStatus, PipelineStep
from .concurrency_manager import (
    ConcurrencyManager,
    FailurePolicy,
    PhaseConfig,
    PipelinePhase,
    ScheduleResult,
    get_concurrency_manager,
    run_bounded,
    run_bounded_detailed,
)
from .discovery import (
    DiscoveryStage,
    EntityRegistry,
    aggregate_mentions,
    close_resolution,
)
from .extraction import ExtractionStage
from .merge import (
    MergeState,
    PlotGraphConsolidator,
    apply_event_mapping,
    merge_analyses,
    merge_chunk,
)

__all__ = [
    'AnalysisCache',
    'BasePipeline',
    'PipelineResult',
    'PipelineStatus',
    'PipelineStep',
    'ConcurrencyManager',
    'FailurePolicy',
    'PhaseConfig',
    'PipelinePhase',
    'ScheduleResult',
    'get_concurrency_manager',
    'run_bounded',
    'run_bounded_detailed',
    'DiscoveryStage',
    'EntityRegistry',
    'aggregate_mentions',
    'close_resolution',
    'ExtractionStage',
    'MergeState',
    'PlotGraphConsolidator',
    'apply_event_mapping',
    'merge_analyses',
    'merge_chunk',
]
