"""
Plotline Concurrency Manager

Bounded, order-preserving task scheduling for pipeline phases, plus the
per-phase concurrency limits and usage stats the stages draw on.
"""

import asyncio
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from plotline.core.exceptions import ConcurrencyAbort
from plotline.core.logging_config import get_logger

logger = get_logger("pipelines.concurrency")

T = TypeVar("T")

TaskFactory = Callable[[], Awaitable[T]]
TaskDoneCallback = Callable[[int, int, int], None]


class PipelinePhase(Enum):
    """Pipeline execution phases with different concurrency needs."""
    DISCOVERY = "discovery"           # One light call per chunk
    RESOLUTION = "resolution"         # Single global call
    EXTRACTION = "extraction"         # Heavy per-chunk calls, windowed
    CONSOLIDATION = "consolidation"   # Single global call
    DESIGN = "design"                 # One call per entity
    DEFAULT = "default"


class FailurePolicy(Enum):
    """What a failing task does to the rest of its batch."""
    FAIL_FAST = "fail_fast"   # Stop dispatch, cancel in-flight, raise
    ISOLATE = "isolate"       # Record the error, leave the slot empty

    @classmethod
    def from_value(cls, value) -> 'FailurePolicy':
        return value if isinstance(value, cls) else cls(value)


@dataclass
class PhaseConfig:
    """Configuration for a pipeline phase."""
    max_concurrent: int
    description: str = ""


DEFAULT_PHASE_CONFIGS: Dict[PipelinePhase, PhaseConfig] = {
    PipelinePhase.DISCOVERY: PhaseConfig(
        max_concurrent=10,
        description="Per-chunk entity discovery"
    ),
    PipelinePhase.RESOLUTION: PhaseConfig(
        max_concurrent=1,
        description="Global entity resolution"
    ),
    PipelinePhase.EXTRACTION: PhaseConfig(
        max_concurrent=5,
        description="Windowed event extraction and correction"
    ),
    PipelinePhase.CONSOLIDATION: PhaseConfig(
        max_concurrent=1,
        description="Global event de-duplication"
    ),
    PipelinePhase.DESIGN: PhaseConfig(
        max_concurrent=5,
        description="Per-entity visual design"
    ),
    PipelinePhase.DEFAULT: PhaseConfig(
        max_concurrent=5,
        description="Default fallback"
    ),
}


@dataclass
class ScheduleResult(Generic[T]):
    """Outcome of a bounded run, indexed like the input tasks."""
    results: List[Optional[T]]
    errors: Dict[int, BaseException] = field(default_factory=dict)
    skipped: List[int] = field(default_factory=list)

    @property
    def succeeded(self) -> List[int]:
        failed = set(self.errors) | set(self.skipped)
        return [i for i in range(len(self.results)) if i not in failed]

    @property
    def cancelled(self) -> bool:
        return bool(self.skipped)


class ConcurrencyManager:
    """
    Manages concurrency limits for different pipeline phases.

    Features:
    - Per-phase limit configuration
    - Dynamic limit adjustment
    - Usage statistics
    """

    _instance: Optional['ConcurrencyManager'] = None

    @classmethod
    def get_instance(cls) -> 'ConcurrencyManager':
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset singleton (for testing)."""
        cls._instance = None

    def __init__(
        self,
        custom_configs: Dict[PipelinePhase, PhaseConfig] = None
    ):
        """
        Initialize the concurrency manager.

        Args:
            custom_configs: Override default phase configurations
        """
        self._configs = {**DEFAULT_PHASE_CONFIGS}
        if custom_configs:
            self._configs.update(custom_configs)

        self._active_counts: Dict[PipelinePhase, int] = {}
        self._peak_counts: Dict[PipelinePhase, int] = {}
        self._total_counts: Dict[PipelinePhase, int] = {}
        self._busy_times: Dict[PipelinePhase, float] = {}

    @classmethod
    def from_pipeline_config(cls, pipeline_config) -> 'ConcurrencyManager':
        """Build a manager whose limits follow a PipelineConfig."""
        manager = cls()
        manager.set_limit(PipelinePhase.DISCOVERY, pipeline_config.discovery_concurrency)
        manager.set_limit(PipelinePhase.EXTRACTION, pipeline_config.extraction_concurrency)
        manager.set_limit(PipelinePhase.DESIGN, pipeline_config.design_concurrency)
        return manager

    def get_limit(self, phase: PipelinePhase) -> int:
        """Get current concurrency limit for a phase."""
        config = self._configs.get(phase, self._configs[PipelinePhase.DEFAULT])
        return config.max_concurrent

    def set_limit(self, phase: PipelinePhase, limit: int) -> None:
        """
        Adjust the concurrency limit for a phase.

        Args:
            phase: Pipeline phase
            limit: New concurrency limit
        """
        if limit < 1:
            raise ValueError(f"Concurrency limit must be at least 1, got {limit}")
        config = self._configs.get(phase, PhaseConfig(limit, "Custom"))
        self._configs[phase] = PhaseConfig(
            max_concurrent=limit,
            description=config.description
        )
        logger.debug(f"Updated {phase.value} concurrency limit to {limit}")

    @contextmanager
    def track(self, phase: PipelinePhase):
        """
        Count one running task against a phase.

        Usage:
            with manager.track(PipelinePhase.EXTRACTION):
                ...
        """
        start = time.time()
        self._active_counts[phase] = self._active_counts.get(phase, 0) + 1
        self._total_counts[phase] = self._total_counts.get(phase, 0) + 1
        self._peak_counts[phase] = max(
            self._peak_counts.get(phase, 0), self._active_counts[phase]
        )
        try:
            yield
        finally:
            self._active_counts[phase] -= 1
            self._busy_times[phase] = self._busy_times.get(phase, 0.0) + time.time() - start

    def get_active_count(self, phase: PipelinePhase) -> int:
        """Get current active task count for a phase."""
        return self._active_counts.get(phase, 0)

    def get_peak_count(self, phase: PipelinePhase) -> int:
        """Highest number of simultaneously running tasks seen for a phase."""
        return self._peak_counts.get(phase, 0)

    def get_stats(self) -> Dict[str, Any]:
        """Get concurrency statistics."""
        stats = {}
        for phase in PipelinePhase:
            config = self._configs.get(phase)
            if config:
                total = self._total_counts.get(phase, 0)
                busy = self._busy_times.get(phase, 0.0)
                stats[phase.value] = {
                    "max_concurrent": config.max_concurrent,
                    "active": self._active_counts.get(phase, 0),
                    "peak": self._peak_counts.get(phase, 0),
                    "total_tasks": total,
                    "avg_task_time": f"{(busy / total):.3f}s" if total > 0 else "0s"
                }
        return stats


def get_concurrency_manager() -> ConcurrencyManager:
    """Get the global concurrency manager."""
    return ConcurrencyManager.get_instance()


async def run_bounded_detailed(
    tasks: Sequence[TaskFactory],
    concurrency: int,
    policy: FailurePolicy = FailurePolicy.FAIL_FAST,
    cancel_event: Optional[asyncio.Event] = None,
    on_task_done: Optional[TaskDoneCallback] = None,
    phase: PipelinePhase = PipelinePhase.DEFAULT,
    manager: Optional[ConcurrencyManager] = None
) -> ScheduleResult:
    """
    Run task factories with at most `concurrency` in flight.

    A pool of workers pulls indices from a shared cursor, so every index is
    dispatched exactly once, and writes each result into its own slot.

    Args:
        tasks: Zero-argument callables returning awaitables
        concurrency: Maximum number of tasks in flight
        policy: FAIL_FAST raises ConcurrencyAbort on the first failure,
            ISOLATE records it and leaves the slot as None
        cancel_event: Once set, no further index is dispatched
        on_task_done: Called as (index, completed, total) after each task
        phase: Phase the tasks are tracked under
        manager: Concurrency manager for stats (global one if omitted)

    Returns:
        ScheduleResult with results in input order

    Raises:
        ValueError: If concurrency is below 1
        ConcurrencyAbort: On the first failure under FAIL_FAST
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")

    manager = manager or get_concurrency_manager()
    total = len(tasks)
    outcome: ScheduleResult = ScheduleResult(results=[None] * total)
    if total == 0:
        return outcome

    cursor = 0
    completed = 0

    def dispatch_allowed() -> bool:
        return cursor < total and not (cancel_event is not None and cancel_event.is_set())

    async def worker() -> None:
        nonlocal cursor, completed
        while dispatch_allowed():
            index = cursor
            cursor += 1
            try:
                with manager.track(phase):
                    outcome.results[index] = await tasks[index]()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if policy is FailurePolicy.FAIL_FAST:
                    raise ConcurrencyAbort(index, e) from e
                outcome.errors[index] = e
                logger.warning(f"[{phase.value}] Task {index} failed: {e}")

            completed += 1
            if on_task_done:
                on_task_done(index, completed, total)

    workers = [asyncio.create_task(worker()) for _ in range(min(concurrency, total))]
    try:
        done, pending = await asyncio.wait(workers, return_when=asyncio.FIRST_EXCEPTION)
        abort = next(
            (w.exception() for w in done if not w.cancelled() and w.exception()),
            None
        )
        if abort is not None:
            for w in pending:
                w.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.error(f"[{phase.value}] {abort}")
            raise abort
    finally:
        for w in workers:
            if not w.done():
                w.cancel()

    if cursor < total:
        outcome.skipped = list(range(cursor, total))
        logger.info(
            f"[{phase.value}] Cancelled with {len(outcome.skipped)} of {total} tasks not dispatched"
        )

    return outcome


async def run_bounded(
    tasks: Sequence[TaskFactory],
    concurrency: int,
    policy: FailurePolicy = FailurePolicy.FAIL_FAST,
    cancel_event: Optional[asyncio.Event] = None,
    on_task_done: Optional[TaskDoneCallback] = None,
    phase: PipelinePhase = PipelinePhase.DEFAULT,
    manager: Optional[ConcurrencyManager] = None
) -> List[Optional[T]]:
    """Like run_bounded_detailed, returning only the ordered results."""
    outcome = await run_bounded_detailed(
        tasks,
        concurrency,
        policy=policy,
        cancel_event=cancel_event,
        on_task_done=on_task_done,
        phase=phase,
        manager=manager
    )
    return outcome.results
