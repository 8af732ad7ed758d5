"""
Tests for Base Pipeline Module

Tests for plotline/pipelines/base_pipeline.py
"""

import pytest

from plotline.pipelines.base_pipeline import BasePipeline, PipelineStatus, PipelineStep


class DoublingPipeline(BasePipeline):
    """Doubles its input per step; optional steps may fail."""

    def __init__(self, fail_on=(), cancel_after=None):
        self.fail_on = set(fail_on)
        self.cancel_after = cancel_after
        super().__init__("Doubling")

    def _define_steps(self):
        self._steps = [
            PipelineStep("first", "Double once"),
            PipelineStep("optional", "Double again", required=False),
            PipelineStep("last", "Double a third time"),
        ]

    async def _execute_step(self, step, input_data, context):
        context.setdefault("seen", []).append(step.name)
        if step.name in self.fail_on:
            raise RuntimeError(f"{step.name} broke")
        if step.name == self.cancel_after:
            self.cancel()
        return input_data * 2


class TestBasePipeline:
    """Tests for BasePipeline."""

    @pytest.mark.asyncio
    async def test_runs_every_step(self):
        """Test steps chain their outputs."""
        pipeline = DoublingPipeline()
        updates = []
        pipeline.set_progress_callback(updates.append)

        result = await pipeline.run(1)

        assert result.success
        assert result.output == 8
        assert result.metadata["steps_completed"] == ["first", "optional", "last"]
        assert [u["current"] for u in updates] == [1, 2, 3]
        assert updates[-1]["percent"] == 100
        assert pipeline.status == PipelineStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_optional_step_failure_is_skipped(self):
        """Test an optional failure keeps the previous output."""
        result = await DoublingPipeline(fail_on={"optional"}).run(1)

        assert result.success
        assert result.output == 4
        assert result.metadata["steps_completed"] == ["first", "last"]

    @pytest.mark.asyncio
    async def test_required_step_failure_fails_pipeline(self):
        """Test a required failure stops the run."""
        context = {}
        result = await DoublingPipeline(fail_on={"first"}).run(1, context)

        assert result.status == PipelineStatus.FAILED
        assert "first broke" in result.error
        assert result.metadata["failed_step"] == "first"
        assert context["seen"] == ["first"]

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_step(self):
        """Test cancellation is honored between steps."""
        pipeline = DoublingPipeline(cancel_after="first")
        context = {}

        result = await pipeline.run(1, context)

        assert result.status == PipelineStatus.CANCELLED
        assert result.output is None
        assert context["seen"] == ["first"]
        assert pipeline.cancelled

        pipeline.reset()
        pipeline.cancel_after = None
        assert (await pipeline.run(1)).output == 8
