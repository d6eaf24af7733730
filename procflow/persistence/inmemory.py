"""In-memory implementation of the process repository."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from ..definitions import Category, ProcessDefinition
from ..errors import ConcurrentModification, DuplicateDefinition
from ..instances import AuditEntry, InstanceStatus, ProcessInstance
from ..instances.audit import entries_after
from .repository import ExpectedState, InstanceFilter, ProcessRepository

logger = logging.getLogger(__name__)


class InMemoryProcessRepository(ProcessRepository):
    """Store definitions and instances in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, ProcessDefinition] = {}
        self._instances: Dict[str, ProcessInstance] = {}
        self._events: Dict[str, List[AuditEntry]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: ProcessDefinition) -> None:
        for other in self._definitions.values():
            if (
                other.id != definition.id
                and other.name == definition.name
                and other.version == definition.version
            ):
                raise DuplicateDefinition(definition.name, definition.version)
        self._definitions[definition.id] = definition.model_copy(deep=True)
        logger.debug(f"Saved process definition {definition.id}")

    async def load_definition(self, definition_id: str) -> ProcessDefinition | None:
        definition = self._definitions.get(definition_id)
        return definition.model_copy(deep=True) if definition else None

    async def list_definitions(
        self,
        category: Optional[Category] = None,
        active: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> list[ProcessDefinition]:
        needle = search.lower() if search else None
        found = [
            d.model_copy(deep=True)
            for d in self._definitions.values()
            if (category is None or d.category == category)
            and (active is None or d.is_active == active)
            and (
                needle is None
                or needle in d.name.lower()
                or needle in d.description.lower()
            )
        ]
        return sorted(found, key=lambda d: d.updated_at, reverse=True)

    async def delete_definition(self, definition_id: str) -> bool:
        return self._definitions.pop(definition_id, None) is not None

    # ------------------------------------------------------------------
    async def persist_instance(
        self, instance: ProcessInstance, expected: ExpectedState | None = None
    ) -> None:
        async with self._lock:
            stored = self._instances.get(instance.id)
            if expected is None:
                if stored is not None:
                    raise ConcurrentModification(instance.id)
                new_entries = list(instance.audit_log)
            else:
                if stored is None or ExpectedState.of(stored) != expected:
                    raise ConcurrentModification(instance.id, expected.version)
                new_entries = entries_after(instance, expected.version)

            events = self._events.setdefault(instance.id, [])
            events.extend(new_entries)
            self._instances[instance.id] = instance.model_copy(
                update={"audit_log": []}, deep=True
            )
        logger.debug(
            f"Persisted instance {instance.id} at version {instance.version} "
            f"({len(new_entries)} new event(s))"
        )

    async def load_instance(self, instance_id: str) -> ProcessInstance | None:
        stored = self._instances.get(instance_id)
        if stored is None:
            return None
        return stored.model_copy(
            update={"audit_log": list(self._events.get(instance_id, []))}, deep=True
        )

    async def load_history(self, instance_id: str) -> list[AuditEntry]:
        return list(self._events.get(instance_id, []))

    async def list_instances(self, criteria: InstanceFilter) -> list[ProcessInstance]:
        found = [i for i in self._instances.values() if criteria.matches(i)]
        found.sort(key=lambda i: i.start_time, reverse=True)
        page = found[criteria.offset : criteria.offset + criteria.limit]
        return [i.model_copy(deep=True) for i in page]

    async def count_instances(
        self, definition_id: str, statuses: Optional[List[InstanceStatus]] = None
    ) -> int:
        return sum(
            1
            for i in self._instances.values()
            if i.definition_id == definition_id
            and (not statuses or i.status in statuses)
        )
