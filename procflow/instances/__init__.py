"""Process instance state, lifecycle transitions and step advancement."""

from .advancement import complete_task, next_step
from .lifecycle import ALLOWED_FROM, Operation, can_apply, ensure_allowed
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AuditAction,
    AuditEntry,
    InstanceStatus,
    Priority,
    ProcessInstance,
    StepState,
    StepView,
)
from .variables import merge_variables, validate_variables

__all__ = [
    "ACTIVE_STATUSES",
    "ALLOWED_FROM",
    "TERMINAL_STATUSES",
    "AuditAction",
    "AuditEntry",
    "InstanceStatus",
    "Operation",
    "Priority",
    "ProcessInstance",
    "StepState",
    "StepView",
    "can_apply",
    "complete_task",
    "ensure_allowed",
    "merge_variables",
    "next_step",
    "validate_variables",
]
