"""Step advancement in response to a task-completion event."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from ..definitions import Node, ProcessGraph
from ..errors import CurrentStepNotFound, NodeNotFound
from . import audit
from .lifecycle import Operation, ensure_allowed
from .models import AuditAction, InstanceStatus, ProcessInstance
from .variables import merge_variables, validate_variables

logger = logging.getLogger(__name__)


def next_step(node: Node) -> Optional[str]:
    """Target of the first outgoing connection, or ``None`` at a terminator.

    Connections are not evaluated: gateways and approvals follow their first
    edge like every other node type.
    """
    return node.connections[0] if node.connections else None


def complete_task(
    instance: ProcessInstance,
    graph: ProcessGraph,
    variables: Optional[Mapping[str, Any]],
    actor: str,
    now: datetime,
) -> ProcessInstance:
    """Complete the instance's current step and move to the next one.

    All lookups happen before the instance is copied, so a missing current or
    next node aborts the call without any mutation.

    Raises:
        InvalidStateTransition: the instance is not ``running``.
        CurrentStepNotFound: ``current_step`` is missing from ``graph``.
        NodeNotFound: the next step is missing from ``graph``.
        InvalidVariables: a submitted value is not JSON.
    """
    ensure_allowed(instance, Operation.COMPLETE_TASK)

    try:
        current = graph.find_node(instance.current_step)
    except NodeNotFound:
        logger.warning(
            f"Instance {instance.id} is bound to step {instance.current_step!r} "
            f"which definition {graph.definition.id} no longer contains"
        )
        raise CurrentStepNotFound(
            instance.id, instance.current_step, graph.definition.id
        ) from None

    target = next_step(current)
    try:
        next_node = graph.find_node(target) if target is not None else None
    except NodeNotFound:
        logger.warning(
            f"Step {current.id!r} of definition {graph.definition.id} "
            f"connects to missing node {target!r}"
        )
        raise

    submitted = validate_variables(variables)
    merged, _ = merge_variables(
        instance.variables,
        {
            **submitted,
            f"{current.id}_completed": True,
            f"{current.id}_completedAt": now.isoformat(),
            f"{current.id}_completedBy": actor,
        },
    )

    changes: dict[str, Any] = {"variables": merged}
    if target is not None:
        changes["current_step"] = target
    if next_node is None or next_node.is_end:
        changes["status"] = InstanceStatus.COMPLETED
        changes["end_time"] = now
    status = changes.get("status", instance.status)

    updated = instance.model_copy(update=changes)
    return audit.record(
        updated,
        AuditAction.TASK_COMPLETED,
        actor,
        now,
        details={
            "completed_step": current.id,
            "next_step": target,
            "variables": submitted,
        },
        previous_state={
            "status": instance.status.value,
            "current_step": instance.current_step,
        },
        new_state={
            "status": status.value,
            "current_step": changes.get("current_step", instance.current_step),
        },
    )
