"""Lifecycle state machine for process instances.

Every function here is pure: it checks the precondition for the requested
operation, then returns a *new* instance carrying the mutation and exactly one
new audit entry. A rejected operation raises before anything is copied, so a
caller that only persists returned instances can never commit a partial
change.

========================  ======================  ======================
Operation                 Valid from              Resulting status
========================  ======================  ======================
start                     (creation)              running
complete_task             running                 running / completed
suspend                   running                 suspended
resume                    suspended               running
cancel                    running, suspended      cancelled
fail                      running                 failed
retry                     failed                  running
update_variables          running, suspended      unchanged
========================  ======================  ======================
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from ..definitions import ProcessDefinition, ProcessGraph
from ..errors import InvalidStateTransition
from . import audit
from .models import AuditAction, InstanceStatus, Priority, ProcessInstance
from .variables import merge_variables


class Operation(str, Enum):
    COMPLETE_TASK = "complete_task"
    SUSPEND = "suspend"
    RESUME = "resume"
    CANCEL = "cancel"
    FAIL = "fail"
    RETRY = "retry"
    UPDATE_VARIABLES = "update_variables"


ALLOWED_FROM: Dict[Operation, FrozenSet[InstanceStatus]] = {
    Operation.COMPLETE_TASK: frozenset({InstanceStatus.RUNNING}),
    Operation.SUSPEND: frozenset({InstanceStatus.RUNNING}),
    Operation.RESUME: frozenset({InstanceStatus.SUSPENDED}),
    Operation.CANCEL: frozenset({InstanceStatus.RUNNING, InstanceStatus.SUSPENDED}),
    Operation.FAIL: frozenset({InstanceStatus.RUNNING}),
    Operation.RETRY: frozenset({InstanceStatus.FAILED}),
    Operation.UPDATE_VARIABLES: frozenset(
        {InstanceStatus.RUNNING, InstanceStatus.SUSPENDED}
    ),
}


def can_apply(instance: ProcessInstance, operation: Operation) -> bool:
    return instance.status in ALLOWED_FROM[operation]


def ensure_allowed(instance: ProcessInstance, operation: Operation) -> None:
    if not can_apply(instance, operation):
        raise InvalidStateTransition(operation.value, instance.status.value, instance.id)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def default_business_key(now: datetime, prefix: str = "PROC") -> str:
    """``<prefix>_<epoch millis>_<random hex>``."""
    return f"{prefix}_{int(now.timestamp() * 1000)}_{secrets.token_hex(3)}"


def start_instance(
    definition: ProcessDefinition,
    actor: str,
    now: datetime,
    *,
    business_key: Optional[str] = None,
    variables: Optional[Mapping[str, Any]] = None,
    assigned_to: Optional[Iterable[str]] = None,
    priority: Priority | str = Priority.MEDIUM,
    tenant_id: Optional[str] = None,
    department_id: Optional[str] = None,
    business_key_prefix: str = "PROC",
) -> ProcessInstance:
    """Create a running instance positioned at the definition's start node.

    The definition's seed variables are applied first and the caller's
    ``variables`` are merged over them. Callers are expected to have checked
    :func:`~procflow.definitions.ensure_instantiable` beforehand.
    """
    start_node = ProcessGraph(definition).find_start_node()
    initial, _ = merge_variables(definition.variables, variables)

    instance = ProcessInstance(
        id=str(uuid.uuid4()),
        definition_id=definition.id,
        definition_version=definition.version,
        business_key=business_key or default_business_key(now, business_key_prefix),
        status=InstanceStatus.RUNNING,
        current_step=start_node.id,
        variables=initial,
        start_time=now,
        end_time=None,
        initiated_by=actor,
        assigned_to=list(assigned_to or []),
        priority=Priority(priority),
        tenant_id=tenant_id,
        department_id=department_id,
        updated_at=now,
    )
    return audit.record(
        instance,
        AuditAction.PROCESS_STARTED,
        actor,
        now,
        details={"start_node": start_node.id, "business_key": instance.business_key},
        new_state={"status": InstanceStatus.RUNNING.value, "current_step": start_node.id},
    )


def suspend(instance: ProcessInstance, actor: str, now: datetime) -> ProcessInstance:
    ensure_allowed(instance, Operation.SUSPEND)
    updated = instance.model_copy(update={"status": InstanceStatus.SUSPENDED})
    return audit.record(
        updated,
        AuditAction.SUSPEND,
        actor,
        now,
        details={"previous_status": instance.status.value},
        previous_state={"status": instance.status.value},
        new_state={"status": InstanceStatus.SUSPENDED.value},
    )


def resume(instance: ProcessInstance, actor: str, now: datetime) -> ProcessInstance:
    ensure_allowed(instance, Operation.RESUME)
    updated = instance.model_copy(update={"status": InstanceStatus.RUNNING})
    return audit.record(
        updated,
        AuditAction.RESUME,
        actor,
        now,
        details={"previous_status": instance.status.value},
        previous_state={"status": instance.status.value},
        new_state={"status": InstanceStatus.RUNNING.value},
    )


def cancel(
    instance: ProcessInstance, actor: str, now: datetime, reason: Optional[str] = None
) -> ProcessInstance:
    ensure_allowed(instance, Operation.CANCEL)
    updated = instance.model_copy(
        update={"status": InstanceStatus.CANCELLED, "end_time": now}
    )
    return audit.record(
        updated,
        AuditAction.CANCEL,
        actor,
        now,
        details={"reason": reason},
        previous_state={"status": instance.status.value},
        new_state={"status": InstanceStatus.CANCELLED.value, "end_time": _iso(now)},
    )


def fail(
    instance: ProcessInstance, actor: str, now: datetime, reason: Optional[str] = None
) -> ProcessInstance:
    ensure_allowed(instance, Operation.FAIL)
    updated = instance.model_copy(update={"status": InstanceStatus.FAILED, "end_time": now})
    return audit.record(
        updated,
        AuditAction.FAIL,
        actor,
        now,
        details={"reason": reason, "step": instance.current_step},
        previous_state={"status": instance.status.value},
        new_state={"status": InstanceStatus.FAILED.value, "end_time": _iso(now)},
    )


def retry(instance: ProcessInstance, actor: str, now: datetime) -> ProcessInstance:
    """Return a failed instance to ``running`` at the step where it failed."""
    ensure_allowed(instance, Operation.RETRY)
    attempt = audit.retry_attempts(instance) + 1
    updated = instance.model_copy(update={"status": InstanceStatus.RUNNING, "end_time": None})
    return audit.record(
        updated,
        AuditAction.RETRY,
        actor,
        now,
        details={"attempt": attempt, "step": instance.current_step},
        previous_state={
            "status": instance.status.value,
            "end_time": _iso(instance.end_time),
        },
        new_state={"status": InstanceStatus.RUNNING.value, "end_time": None},
    )


def update_variables(
    instance: ProcessInstance,
    update: Optional[Mapping[str, Any]],
    actor: str,
    now: datetime,
) -> Tuple[ProcessInstance, List[str]]:
    """Merge ``update`` into the instance variables.

    Returns the instance and the keys that changed. When nothing changes the
    original instance is returned untouched and no audit entry is written.

    Raises:
        InvalidStateTransition: the instance is in a terminal status.
        InvalidVariables: ``update`` holds a value that is not JSON.
    """
    ensure_allowed(instance, Operation.UPDATE_VARIABLES)
    merged, changed = merge_variables(instance.variables, update)
    if not changed:
        return instance, []
    updated = instance.model_copy(update={"variables": merged})
    updated = audit.record(
        updated,
        AuditAction.UPDATE_VARIABLES,
        actor,
        now,
        details={"updated_keys": changed},
        previous_state={"status": instance.status.value},
        new_state={"status": instance.status.value},
    )
    return updated, changed
