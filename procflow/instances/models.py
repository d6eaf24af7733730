"""Data models for running process instances and their audit trail."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    computed_field,
    field_validator,
    model_validator,
)


class InstanceStatus(str, Enum):
    RUNNING = "running"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.CANCELLED, InstanceStatus.FAILED}
)
ACTIVE_STATUSES = frozenset({InstanceStatus.RUNNING, InstanceStatus.SUSPENDED})


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditAction(str, Enum):
    PROCESS_STARTED = "process_started"
    TASK_COMPLETED = "task_completed"
    SUSPEND = "suspend"
    RESUME = "resume"
    CANCEL = "cancel"
    FAIL = "fail"
    RETRY = "retry"
    UPDATE_VARIABLES = "update_variables"


Variables = Dict[str, JsonValue]


class AuditEntry(BaseModel):
    """One immutable record of a state-changing operation."""

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(..., ge=1)
    timestamp: datetime
    action: AuditAction
    actor: str
    details: Dict[str, Any] = Field(default_factory=dict)
    previous_state: Optional[Dict[str, Any]] = None
    new_state: Optional[Dict[str, Any]] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessInstance(BaseModel):
    """Mutable record of one execution bound to a process definition.

    ``version`` counts the audit entries written for the instance and is the
    token used for optimistic concurrency. Listing queries may return
    instances with an empty ``audit_log``; ``version`` is still accurate.
    """

    id: str
    definition_id: str
    definition_version: str
    business_key: str
    status: InstanceStatus = InstanceStatus.RUNNING
    current_step: str
    variables: Variables = Field(default_factory=dict)
    start_time: datetime = Field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    initiated_by: str
    assigned_to: List[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    tenant_id: Optional[str] = None
    department_id: Optional[str] = None
    audit_log: List[AuditEntry] = Field(default_factory=list)
    version: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("assigned_to")
    @classmethod
    def _dedupe_assignees(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def _check_end_time(self) -> "ProcessInstance":
        if self.is_terminal and self.end_time is None:
            raise ValueError(f"end_time is required when status is {self.status.value}")
        if not self.is_terminal and self.end_time is not None:
            raise ValueError(f"end_time must be unset when status is {self.status.value}")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StepState(str, Enum):
    COMPLETED = "completed"
    CURRENT = "current"
    PENDING = "pending"


class StepView(BaseModel):
    """Progress of one definition node for a given instance."""

    node_id: str
    name: str
    type: str
    state: StepState
    completed_at: Optional[str] = None
    completed_by: Optional[str] = None
