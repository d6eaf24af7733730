"""Process execution engine: the entry point for instance operations."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .definitions import ProcessDefinition, ProcessGraph, ensure_instantiable
from .errors import ConcurrentModification, DefinitionNotFound, InstanceNotFound
from .instances import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AuditEntry,
    InstanceStatus,
    Priority,
    ProcessInstance,
    StepState,
    StepView,
    complete_task,
    lifecycle,
)
from .persistence import ExpectedState, InstanceFilter, ProcessRepository, get_repository
from .security import AccessPolicy, Actor, AllowAllPolicy

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Mutation = Callable[[ProcessInstance, datetime], ProcessInstance]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessEngine:
    """Starts, advances and controls process instances.

    Every mutating operation follows the same unit of work: load the instance,
    check access, compute the new state with the pure lifecycle functions,
    then commit through a conditional write keyed on the state that was read.
    A concurrent writer makes the commit fail with
    :class:`~procflow.errors.ConcurrentModification`; nothing is retried here.
    """

    def __init__(
        self,
        repository: ProcessRepository | None = None,
        policy: AccessPolicy | None = None,
        clock: Clock = utcnow,
        business_key_prefix: str = "PROC",
        default_priority: Priority | str = Priority.MEDIUM,
    ) -> None:
        self._repository = repository or get_repository()
        self._policy = policy or AllowAllPolicy()
        self._clock = clock
        self._business_key_prefix = business_key_prefix
        self._default_priority = Priority(default_priority)

    @property
    def repository(self) -> ProcessRepository:
        return self._repository

    # ------------------------------------------------------------------
    # Loading
    async def _load_definition(self, definition_id: str) -> ProcessDefinition:
        definition = await self._repository.load_definition(definition_id)
        if definition is None:
            raise DefinitionNotFound(definition_id)
        return definition

    async def _load_instance(self, instance_id: str) -> ProcessInstance:
        instance = await self._repository.load_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def _commit(self, before: ProcessInstance, after: ProcessInstance) -> None:
        try:
            await self._repository.persist_instance(after, ExpectedState.of(before))
        except ConcurrentModification:
            logger.warning(
                f"Conflicting write on instance {before.id} at version {before.version}"
            )
            raise

    async def _apply(
        self, instance_id: str, actor: Actor, action: str, mutate: Mutation
    ) -> ProcessInstance:
        instance = await self._load_instance(instance_id)
        self._policy.check(actor, action, instance.tenant_id)
        updated = mutate(instance, self._clock())
        await self._commit(instance, updated)
        logger.info(
            f"Instance {instance_id}: {action} by {actor.id} "
            f"({instance.status.value} -> {updated.status.value})"
        )
        return updated

    # ------------------------------------------------------------------
    # Lifecycle operations
    async def start(
        self,
        definition_id: str,
        actor: Actor,
        business_key: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
        assigned_to: Optional[Iterable[str]] = None,
        priority: Priority | str | None = None,
        department_id: Optional[str] = None,
    ) -> ProcessInstance:
        """Create a running instance of an active, valid definition.

        Raises:
            DefinitionNotFound: ``definition_id`` does not resolve.
            ProcessDefinitionNotInstantiable: inactive or structurally invalid.
            AccessDenied: the actor may not use the definition.
        """
        definition = await self._load_definition(definition_id)
        self._policy.check(actor, "start", definition.tenant_id)
        ensure_instantiable(definition)

        instance = lifecycle.start_instance(
            definition,
            actor.id,
            self._clock(),
            business_key=business_key,
            variables=variables,
            assigned_to=assigned_to,
            priority=priority or self._default_priority,
            tenant_id=actor.tenant_id or definition.tenant_id,
            department_id=department_id,
            business_key_prefix=self._business_key_prefix,
        )
        await self._repository.persist_instance(instance)
        logger.info(
            f"Started instance {instance.id} ({instance.business_key}) of definition "
            f"{definition.id} at step {instance.current_step}"
        )
        return instance

    async def complete_task(
        self,
        instance_id: str,
        actor: Actor,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> ProcessInstance:
        """Complete the current step and advance along its first connection.

        The definition is re-read on every call, so edits made after the
        instance started are honoured; a vanished current step raises
        :class:`~procflow.errors.CurrentStepNotFound`.
        """
        instance = await self._load_instance(instance_id)
        self._policy.check(actor, "complete_task", instance.tenant_id)
        lifecycle.ensure_allowed(instance, lifecycle.Operation.COMPLETE_TASK)
        definition = await self._load_definition(instance.definition_id)

        updated = complete_task(
            instance, ProcessGraph(definition), variables, actor.id, self._clock()
        )
        await self._commit(instance, updated)
        logger.info(
            f"Instance {instance_id}: completed step {instance.current_step} "
            f"-> {updated.current_step} ({updated.status.value})"
        )
        return updated

    async def suspend(self, instance_id: str, actor: Actor) -> ProcessInstance:
        return await self._apply(
            instance_id,
            actor,
            "suspend",
            lambda inst, now: lifecycle.suspend(inst, actor.id, now),
        )

    async def resume(self, instance_id: str, actor: Actor) -> ProcessInstance:
        return await self._apply(
            instance_id,
            actor,
            "resume",
            lambda inst, now: lifecycle.resume(inst, actor.id, now),
        )

    async def cancel(
        self, instance_id: str, actor: Actor, reason: Optional[str] = None
    ) -> ProcessInstance:
        return await self._apply(
            instance_id,
            actor,
            "cancel",
            lambda inst, now: lifecycle.cancel(inst, actor.id, now, reason),
        )

    async def fail(
        self, instance_id: str, actor: Actor, reason: Optional[str] = None
    ) -> ProcessInstance:
        """Record an external failure signal against a running instance."""
        return await self._apply(
            instance_id,
            actor,
            "fail",
            lambda inst, now: lifecycle.fail(inst, actor.id, now, reason),
        )

    async def retry(self, instance_id: str, actor: Actor) -> ProcessInstance:
        return await self._apply(
            instance_id,
            actor,
            "retry",
            lambda inst, now: lifecycle.retry(inst, actor.id, now),
        )

    # ------------------------------------------------------------------
    # Variables
    async def get_variables(self, instance_id: str, actor: Actor) -> Dict[str, Any]:
        instance = await self._load_instance(instance_id)
        self._policy.check(actor, "read", instance.tenant_id)
        return dict(instance.variables)

    async def update_variables(
        self, instance_id: str, variables: Mapping[str, Any], actor: Actor
    ) -> Dict[str, Any]:
        """Merge ``variables`` into the instance and return the full map."""
        instance = await self._load_instance(instance_id)
        self._policy.check(actor, "update_variables", instance.tenant_id)
        updated, changed = lifecycle.update_variables(
            instance, variables, actor.id, self._clock()
        )
        if changed:
            await self._commit(instance, updated)
            logger.info(
                f"Instance {instance_id}: variables {', '.join(changed)} updated by {actor.id}"
            )
        return dict(updated.variables)

    # ------------------------------------------------------------------
    # Reads
    async def get_instance(self, instance_id: str, actor: Actor) -> ProcessInstance:
        instance = await self._load_instance(instance_id)
        self._policy.check(actor, "read", instance.tenant_id)
        return instance

    async def get_history(self, instance_id: str, actor: Actor) -> List[AuditEntry]:
        instance = await self._load_instance(instance_id)
        self._policy.check(actor, "read", instance.tenant_id)
        return list(instance.audit_log)

    async def list_instances(
        self, actor: Actor, criteria: InstanceFilter | None = None
    ) -> List[ProcessInstance]:
        """Instances visible to ``actor``, newest first.

        Callers scoped to a tenant only see that tenant's instances.
        """
        criteria = criteria or InstanceFilter()
        if actor.tenant_id is not None:
            criteria = criteria.model_copy(update={"tenant_id": actor.tenant_id})
        return await self._repository.list_instances(criteria)

    async def list_active(
        self, actor: Actor, criteria: InstanceFilter | None = None
    ) -> List[ProcessInstance]:
        criteria = (criteria or InstanceFilter()).model_copy(
            update={"statuses": sorted(ACTIVE_STATUSES, key=lambda s: s.value)}
        )
        return await self.list_instances(actor, criteria)

    async def get_steps(self, instance_id: str, actor: Actor) -> List[StepView]:
        """Progress of every node of the bound definition, in definition order."""
        instance = await self._load_instance(instance_id)
        self._policy.check(actor, "read", instance.tenant_id)
        definition = await self._load_definition(instance.definition_id)

        steps: List[StepView] = []
        for node in definition.nodes:
            if instance.variables.get(f"{node.id}_completed") is True:
                state = StepState.COMPLETED
            elif node.id == instance.current_step and instance.status not in TERMINAL_STATUSES:
                state = StepState.CURRENT
            elif node.id == instance.current_step and instance.status is InstanceStatus.COMPLETED:
                state = StepState.COMPLETED
            else:
                state = StepState.PENDING
            completed_at = instance.variables.get(f"{node.id}_completedAt")
            completed_by = instance.variables.get(f"{node.id}_completedBy")
            steps.append(
                StepView(
                    node_id=node.id,
                    name=node.name,
                    type=node.type.value,
                    state=state,
                    completed_at=str(completed_at) if completed_at is not None else None,
                    completed_by=str(completed_by) if completed_by is not None else None,
                )
            )
        return steps
