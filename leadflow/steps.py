"""Step definition rules shared by authoring and execution.

Steps of one workflow carry contiguous, unique 1-based orders. Every editing
operation goes through :func:`densify` and :func:`validate_steps` before it
reaches a repository, so the ledger never sees gaps.
"""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Literal, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from .contracts import (
    Condition,
    SendEmail,
    SetStatus,
    Step,
    StepAction,
    TimelineEntry,
    Wait,
)
from .errors import StepOrderError


def validate_steps(steps: Sequence[Step]) -> None:
    """Raise :class:`StepOrderError` unless ``steps`` form a dense sequence.

    Condition branches must point to an existing step further down the
    sequence.
    """

    orders = sorted(step.order for step in steps)
    expected = list(range(1, len(steps) + 1))
    if orders != expected:
        raise StepOrderError(f"Step orders must be 1..{len(steps)}, got {orders}")

    for step in steps:
        if not isinstance(step.action, Condition):
            continue
        for target in (step.action.on_true, step.action.on_false):
            if target is None:
                continue
            if target <= step.order or target > len(steps):
                raise StepOrderError(
                    f"Condition at step {step.order} branches to invalid step {target}"
                )


def densify(steps: Iterable[Step]) -> List[Step]:
    """Renumber steps 1..n keeping their relative order.

    Branch targets follow the step they pointed to; targets that no longer
    exist fall through to the next step.
    """

    ordered = sorted(steps, key=lambda s: s.order)
    mapping = {step.order: index for index, step in enumerate(ordered, start=1)}
    result: List[Step] = []
    for index, step in enumerate(ordered, start=1):
        action = step.action
        if isinstance(action, Condition):
            action = action.model_copy(
                update={
                    "on_true": mapping.get(action.on_true) if action.on_true else None,
                    "on_false": mapping.get(action.on_false) if action.on_false else None,
                }
            )
        result.append(step.model_copy(update={"order": index, "action": action}))
    return result


def insert_step(steps: Sequence[Step], action: StepAction, delay_days: int = 0, position: Optional[int] = None) -> List[Step]:
    """Insert a new step at ``position`` (1-based); append when omitted."""

    current = densify(steps)
    position = len(current) + 1 if position is None else position
    if position < 1 or position > len(current) + 1:
        raise StepOrderError(f"Cannot insert at position {position}")
    shifted = [
        s.model_copy(update={"order": s.order + 1}) if s.order >= position else s
        for s in current
    ]
    shifted = [_shift_branches(s, position) for s in shifted]
    shifted.append(Step(order=position, action=action, delay_days=delay_days))
    return densify(shifted)


def remove_step(steps: Sequence[Step], order: int) -> List[Step]:
    current = densify(steps)
    if not any(s.order == order for s in current):
        raise StepOrderError(f"Step {order} does not exist")
    return densify(s for s in current if s.order != order)


def move_step(steps: Sequence[Step], order: int, new_order: int) -> List[Step]:
    """Move one step to ``new_order`` and re-densify the rest around it."""

    current = densify(steps)
    if not 1 <= order <= len(current) or not 1 <= new_order <= len(current):
        raise StepOrderError(f"Cannot move step {order} to {new_order}")
    items = list(current)
    moving = items.pop(order - 1)
    items.insert(new_order - 1, moving)
    old_to_new = {step.order: index for index, step in enumerate(items, start=1)}
    result = []
    for index, step in enumerate(items, start=1):
        action = step.action
        if isinstance(action, Condition):
            action = action.model_copy(
                update={
                    "on_true": old_to_new.get(action.on_true) if action.on_true else None,
                    "on_false": old_to_new.get(action.on_false) if action.on_false else None,
                }
            )
        result.append(step.model_copy(update={"order": index, "action": action}))
    validate_steps(result)
    return result


def _shift_branches(step: Step, position: int) -> Step:
    action = step.action
    if not isinstance(action, Condition):
        return step
    update = {}
    for field in ("on_true", "on_false"):
        target = getattr(action, field)
        if target is not None and target >= position:
            update[field] = target + 1
    if not update:
        return step
    return step.model_copy(update={"action": action.model_copy(update=update)})


# ----------------------------------------------------------------------
# Canvas projection


class CanvasNode(BaseModel):
    """A node of the visual builder."""

    id: str
    action: StepAction
    delay_days: int = Field(default=0, ge=0)
    x: float = 0.0
    y: float = 0.0


class CanvasEdge(BaseModel):
    source: str
    target: str
    branch: Literal["next", "true", "false"] = "next"


def project_canvas(nodes: Sequence[CanvasNode], edges: Sequence[CanvasEdge]) -> List[Step]:
    """Project a node graph to a dense step sequence.

    Nodes are ordered topologically; nodes that become ready at the same time
    are taken top to bottom. ``true``/``false`` edges leaving a condition node
    become its branch destinations.
    """

    by_id: Dict[str, CanvasNode] = {node.id: node for node in nodes}
    if len(by_id) != len(nodes):
        raise StepOrderError("Canvas node ids must be unique")

    incoming: Dict[str, int] = {node_id: 0 for node_id in by_id}
    outgoing: Dict[str, List[CanvasEdge]] = {node_id: [] for node_id in by_id}
    for edge in edges:
        if edge.source not in by_id or edge.target not in by_id:
            raise StepOrderError(f"Edge {edge.source} -> {edge.target} references an unknown node")
        outgoing[edge.source].append(edge)
        incoming[edge.target] += 1

    ready: List[Tuple[float, float, str]] = []
    for node_id, count in incoming.items():
        if count == 0:
            node = by_id[node_id]
            heapq.heappush(ready, (node.y, node.x, node_id))

    sequence: List[str] = []
    while ready:
        _, _, node_id = heapq.heappop(ready)
        sequence.append(node_id)
        for edge in outgoing[node_id]:
            incoming[edge.target] -= 1
            if incoming[edge.target] == 0:
                target = by_id[edge.target]
                heapq.heappush(ready, (target.y, target.x, target.id))

    if len(sequence) != len(by_id):
        raise StepOrderError("Canvas contains a cycle")

    position = {node_id: index for index, node_id in enumerate(sequence, start=1)}
    steps: List[Step] = []
    for node_id in sequence:
        node = by_id[node_id]
        action = node.action
        if isinstance(action, Condition):
            update = {}
            for edge in outgoing[node_id]:
                if edge.branch == "true":
                    update["on_true"] = position[edge.target]
                elif edge.branch == "false":
                    update["on_false"] = position[edge.target]
            action = action.model_copy(update=update)
        steps.append(Step(order=position[node_id], action=action, delay_days=node.delay_days))

    validate_steps(steps)
    return steps


# ----------------------------------------------------------------------
# Preview


def describe_step(step: Step) -> str:
    action = step.action
    if isinstance(action, SendEmail):
        return f"{action.email_type} email with {action.tone} tone"
    if isinstance(action, Wait):
        plural = "" if step.delay_days == 1 else "s"
        return f"Wait {step.delay_days} day{plural}"
    if isinstance(action, Condition):
        return f"Check if {action.condition_type.value}"
    if isinstance(action, SetStatus):
        return f"Move lead to {action.next_status}"
    return "Custom action"


def build_timeline(steps: Sequence[Step]) -> Tuple[List[TimelineEntry], int]:
    """Cumulative day offsets along the straight-line path."""

    day = 0
    timeline: List[TimelineEntry] = []
    for step in sorted(steps, key=lambda s: s.order):
        day += step.delay_days
        timeline.append(
            TimelineEntry(
                order=step.order,
                day=day,
                action_type=step.action_type,
                description=describe_step(step),
            )
        )
    return timeline, day
