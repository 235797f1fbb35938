"""Per-run step timing and aggregate counters."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.execution import (
    StepStatus, StepTelemetry, TelemetrySummary, WorkflowTelemetry, utc_now
)
from ..models.graph import WorkflowNode


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() * 1000))


class TelemetryRecorder:
    """Records one StepTelemetry per processed node and keeps the summary current."""

    def __init__(self):
        self.telemetry: Optional[WorkflowTelemetry] = None
        self._step_started_at: Optional[datetime] = None

    def begin(self, workflow_id: str, workflow_name: str) -> WorkflowTelemetry:
        self.telemetry = WorkflowTelemetry(
            workflow_id=workflow_id,
            workflow_name=workflow_name,
            started_at=utc_now(),
        )
        self._step_started_at = None
        return self.telemetry

    def start_step(self) -> datetime:
        self._step_started_at = utc_now()
        return self._step_started_at

    def record_step(
        self,
        node: WorkflowNode,
        status: StepStatus,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[StepTelemetry]:
        """Close the current step timer and append a step entry.

        The summary is recomputed from all steps so the average is always
        the rounded mean of recorded durations.
        """
        if self.telemetry is None:
            return None

        ended_at = utc_now()
        started_at = self._step_started_at or ended_at
        step = StepTelemetry(
            node_id=node.id,
            node_label=node.label,
            node_kind=node.kind,
            started_at=started_at,
            ended_at=ended_at,
            duration_ms=max(0, _elapsed_ms(started_at, ended_at)),
            status=status,
            metadata=metadata or {},
        )
        self.telemetry.steps.append(step)
        self._step_started_at = None
        self.telemetry.summary = self._summarize(self.telemetry.steps)
        return step

    @staticmethod
    def _summarize(steps: List[StepTelemetry]) -> TelemetrySummary:
        total = len(steps)
        durations = sum(step.duration_ms for step in steps)
        return TelemetrySummary(
            total_nodes=total,
            success_count=sum(1 for step in steps if step.status == StepStatus.SUCCESS),
            error_count=sum(1 for step in steps if step.status == StepStatus.ERROR),
            avg_step_duration_ms=int(round(durations / total)) if total else 0,
        )

    def finalize(self) -> Optional[WorkflowTelemetry]:
        if self.telemetry is None:
            return None
        ended_at = utc_now()
        self.telemetry.ended_at = ended_at
        self.telemetry.total_duration_ms = max(0, _elapsed_ms(self.telemetry.started_at, ended_at))
        return self.telemetry

    def format_summary(self) -> List[str]:
        """Human-readable summary lines, emitted as messages at completion."""
        if self.telemetry is None:
            return []

        summary = self.telemetry.summary
        lines = [
            f"Total time: {format_duration(self.telemetry.total_duration_ms or 0)}",
            f"Steps executed: {summary.total_nodes}",
        ]
        if summary.error_count > 0:
            lines.append(f"Success: {summary.success_count}  Errors: {summary.error_count}")

        lines.append("Step breakdown:")
        for index, step in enumerate(self.telemetry.steps, start=1):
            marker = {StepStatus.SUCCESS: "ok", StepStatus.ERROR: "error"}.get(step.status, "skipped")
            lines.append(
                f"  {index:>2}. {step.node_label:<20} {format_duration(step.duration_ms):>8}  "
                f"{marker}{_step_detail(step)}"
            )

        lines.append(f"Average step time: {format_duration(summary.avg_step_duration_ms)}")
        return lines


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.2f}s"
    minutes, remainder = divmod(ms, 60000)
    return f"{minutes}m {remainder / 1000:.1f}s"


def _step_detail(step: StepTelemetry) -> str:
    metadata = step.metadata
    if metadata.get("api_status"):
        return f" {metadata['api_status']} {metadata.get('api_method') or ''}".rstrip()
    if metadata.get("condition_result") is not None:
        return f" -> {str(metadata['condition_result']).lower()}"
    if metadata.get("loop_iteration") is not None:
        return f" #{metadata['loop_iteration']}"
    return ""
