"""Authoring operations for process definitions.

The engine itself never mutates a definition; everything that creates,
edits or removes one goes through :class:`DefinitionCatalog`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml

from .definitions import Category, ProcessDefinition, validate_definition
from .engine import utcnow
from .errors import DefinitionInUse, DefinitionNotFound
from .instances import ACTIVE_STATUSES
from .persistence import ProcessRepository, get_repository
from .security import AccessPolicy, Actor, AllowAllPolicy

logger = logging.getLogger(__name__)

# Fields owned by the catalog rather than by the author.
_PROTECTED_FIELDS = {"id", "created_by", "created_at", "updated_by", "updated_at"}


def read_definitions(path: str | Path) -> List[ProcessDefinition]:
    """Parse one definition or a list of definitions from a YAML or JSON file.

    Documents may nest ``nodes`` and ``variables`` under a ``definition`` key.
    Nothing is stored and no structural validation is performed.
    """
    path = Path(path)
    text = path.read_text()
    data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    if data is None:
        return []
    if isinstance(data, Mapping) and "definitions" in data:
        data = data["definitions"]
    documents = data if isinstance(data, list) else [data]
    return [ProcessDefinition.model_validate(doc) for doc in documents]


class DefinitionCatalog:
    """Create, edit, activate and delete process definitions."""

    def __init__(
        self,
        repository: ProcessRepository | None = None,
        policy: AccessPolicy | None = None,
    ) -> None:
        self._repository = repository or get_repository()
        self._policy = policy or AllowAllPolicy()

    async def get(self, definition_id: str, actor: Actor) -> ProcessDefinition:
        definition = await self._repository.load_definition(definition_id)
        if definition is None:
            raise DefinitionNotFound(definition_id)
        self._policy.check(actor, "read", definition.tenant_id)
        return definition

    async def list(
        self,
        actor: Actor,
        category: Optional[Category | str] = None,
        active: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[ProcessDefinition]:
        definitions = await self._repository.list_definitions(
            category=Category(category.lower()) if isinstance(category, str) else category,
            active=active,
            search=search,
        )
        return [
            d
            for d in definitions
            if d.tenant_id is None or actor.tenant_id is None or d.tenant_id == actor.tenant_id
        ]

    async def create(self, definition: ProcessDefinition, actor: Actor) -> ProcessDefinition:
        """Store a new definition owned by ``actor``.

        Active definitions must pass structural validation; inactive drafts
        are stored as they are.
        """
        self._policy.check(actor, "create_definition", definition.tenant_id)
        now = utcnow()
        definition = definition.model_copy(
            update={
                "tenant_id": definition.tenant_id or actor.tenant_id,
                "created_by": actor.id,
                "updated_by": actor.id,
                "created_at": now,
                "updated_at": now,
            }
        )
        if definition.is_active:
            validate_definition(definition)
        await self._repository.save_definition(definition)
        logger.info(
            f"Created process definition {definition.id} "
            f"({definition.name} {definition.version}) by {actor.id}"
        )
        return definition

    async def update(
        self, definition_id: str, changes: Mapping[str, Any], actor: Actor
    ) -> ProcessDefinition:
        current = await self.get(definition_id, actor)
        self._policy.check(actor, "update_definition", current.tenant_id)

        data = current.model_dump()
        data.update({k: v for k, v in changes.items() if k not in _PROTECTED_FIELDS})
        data["updated_by"] = actor.id
        data["updated_at"] = utcnow()
        updated = ProcessDefinition.model_validate(data)
        if updated.is_active:
            validate_definition(updated)

        await self._repository.save_definition(updated)
        logger.info(f"Updated process definition {definition_id} by {actor.id}")
        return updated

    async def activate(self, definition_id: str, actor: Actor) -> ProcessDefinition:
        return await self.update(definition_id, {"is_active": True}, actor)

    async def deactivate(self, definition_id: str, actor: Actor) -> ProcessDefinition:
        return await self.update(definition_id, {"is_active": False}, actor)

    async def delete(self, definition_id: str, actor: Actor) -> None:
        """Remove a definition that has no running or suspended instances."""
        definition = await self.get(definition_id, actor)
        self._policy.check(actor, "delete_definition", definition.tenant_id)
        active = await self._repository.count_instances(
            definition_id, sorted(ACTIVE_STATUSES, key=lambda s: s.value)
        )
        if active:
            raise DefinitionInUse(definition_id, active)
        await self._repository.delete_definition(definition_id)
        logger.info(f"Deleted process definition {definition_id} by {actor.id}")
