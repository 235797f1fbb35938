"""Immutable state snapshots and context diffs."""

import json
import uuid
from typing import Any, Dict, List, Mapping, Optional

from ..models.execution import ContextDiff, NodeOutput, RunPhase, StateSnapshot, utc_now
from ..models.graph import WorkflowNode


def _fingerprint(output: Any) -> str:
    if isinstance(output, NodeOutput):
        output = output.model_dump(mode="json", exclude={"recorded_at"})
    return json.dumps(output, sort_keys=True, default=str)


def compute_context_diff(
    old: Optional[Mapping[str, Any]],
    new: Mapping[str, Any]
) -> Optional[ContextDiff]:
    """Compare two contexts label by label.

    Returns None when there is no previous context to compare against.
    A label appears in ``added`` or ``modified``, never both.
    """
    if old is None:
        return None

    added = [label for label in new if label not in old]
    removed = [label for label in old if label not in new]
    modified = [
        label for label in new
        if label in old and _fingerprint(old[label]) != _fingerprint(new[label])
    ]
    return ContextDiff(added=added, modified=modified, removed=removed)


class SnapshotRecorder:
    """Append-only list of frozen snapshots for one run."""

    def __init__(self):
        self.snapshots: List[StateSnapshot] = []

    def record(
        self,
        action: str,
        context: Dict[str, NodeOutput],
        phase: RunPhase,
        current_node_id: Optional[str] = None,
        visited_node_ids: Optional[List[str]] = None,
        node: Optional[WorkflowNode] = None,
        previous_context: Optional[Mapping[str, NodeOutput]] = None,
    ) -> StateSnapshot:
        """Append a snapshot; a diff is attached only when ``previous_context`` is given."""
        context_copy = {label: output.model_copy(deep=True) for label, output in context.items()}

        snapshot = StateSnapshot(
            id=f"snap-{uuid.uuid4().hex[:12]}",
            timestamp=utc_now(),
            action=action,
            node_id=node.id if node else None,
            node_label=node.label if node else None,
            node_kind=node.kind if node else None,
            context=context_copy,
            current_node_id=current_node_id,
            visited_node_ids=list(visited_node_ids or []),
            is_running=phase in (RunPhase.RUNNING, RunPhase.PAUSED),
            is_paused=phase == RunPhase.PAUSED,
            phase=phase,
            diff=compute_context_diff(previous_context, context_copy),
        )
        self.snapshots.append(snapshot)
        return snapshot

    def clear(self):
        self.snapshots = []


def replay_context(snapshots: List[StateSnapshot], index: int) -> Dict[str, NodeOutput]:
    """Return a copy of the execution context as captured by snapshot ``index``."""
    if index < 0 or index >= len(snapshots):
        raise IndexError(f"Snapshot index {index} out of range (0..{len(snapshots) - 1})")
    return {label: output.model_copy(deep=True) for label, output in snapshots[index].context.items()}
