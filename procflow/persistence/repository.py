"""Repository abstraction for definition and instance persistence."""

from __future__ import annotations

from typing import List, Optional, Protocol

from pydantic import BaseModel, Field

from ..definitions import Category, ProcessDefinition
from ..instances import AuditEntry, InstanceStatus, Priority, ProcessInstance


class ExpectedState(BaseModel):
    """Projection values a conditional write must still find in storage."""

    version: int
    status: InstanceStatus
    current_step: str

    @classmethod
    def of(cls, instance: ProcessInstance) -> "ExpectedState":
        return cls(
            version=instance.version,
            status=instance.status,
            current_step=instance.current_step,
        )


class InstanceFilter(BaseModel):
    """Listing criteria for process instances."""

    statuses: List[InstanceStatus] = Field(default_factory=list)
    definition_id: Optional[str] = None
    business_key: Optional[str] = None
    priority: Optional[Priority] = None
    tenant_id: Optional[str] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=1000)

    def matches(self, instance: ProcessInstance) -> bool:
        if self.statuses and instance.status not in self.statuses:
            return False
        if self.definition_id and instance.definition_id != self.definition_id:
            return False
        if (
            self.business_key
            and self.business_key.lower() not in instance.business_key.lower()
        ):
            return False
        if self.priority and instance.priority != self.priority:
            return False
        if self.tenant_id and instance.tenant_id != self.tenant_id:
            return False
        return True

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class ProcessRepository(Protocol):
    """Protocol for process persistence backends.

    Instances are stored as an append-only stream of audit entries plus a
    projected current-state row. ``persist_instance`` writes both in one
    transaction and only if the projection still matches ``expected``.
    """

    # Definitions -------------------------------------------------------
    async def save_definition(self, definition: ProcessDefinition) -> None:
        """Insert or replace a definition; name+version must stay unique."""

    async def load_definition(self, definition_id: str) -> ProcessDefinition | None:
        """Retrieve a definition by id."""

    async def list_definitions(
        self,
        category: Optional[Category] = None,
        active: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> list[ProcessDefinition]:
        """Return definitions, most recently updated first."""

    async def delete_definition(self, definition_id: str) -> bool:
        """Remove a definition; ``False`` if it did not exist."""

    # Instances ---------------------------------------------------------
    async def persist_instance(
        self, instance: ProcessInstance, expected: ExpectedState | None = None
    ) -> None:
        """Insert (``expected is None``) or conditionally update an instance."""

    async def load_instance(self, instance_id: str) -> ProcessInstance | None:
        """Retrieve an instance including its full audit log."""

    async def load_history(self, instance_id: str) -> list[AuditEntry]:
        """Audit entries of an instance ordered by sequence."""

    async def list_instances(self, criteria: InstanceFilter) -> list[ProcessInstance]:
        """Instances matching ``criteria``, newest start first, without audit logs."""

    async def count_instances(
        self, definition_id: str, statuses: Optional[List[InstanceStatus]] = None
    ) -> int:
        """Number of instances bound to a definition, optionally by status."""
