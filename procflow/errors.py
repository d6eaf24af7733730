"""Error taxonomy for the procflow engine.

Every error raised by the engine derives from :class:`ProcflowError`. Errors
are always surfaced to the immediate caller; the engine never retries on its
own. :class:`ConcurrentModification` is the only error that is safe to retry
by re-reading the instance and reapplying the operation.
"""

from __future__ import annotations

from typing import Optional


class ProcflowError(Exception):
    """Base class for all engine errors."""

    retryable = False


# ----------------------------------------------------------------------
# Lookup failures


class NotFound(ProcflowError):
    """A definition or instance id does not resolve."""

    resource = "resource"

    def __init__(self, identifier: str):
        super().__init__(f"{self.resource.capitalize()} {identifier} not found")
        self.identifier = identifier


class DefinitionNotFound(NotFound):
    resource = "process definition"


class InstanceNotFound(NotFound):
    resource = "process instance"


# ----------------------------------------------------------------------
# Definition problems


class DefinitionError(ProcflowError):
    """Base class for errors concerning a process definition."""


class DefinitionValidationError(DefinitionError):
    """A definition failed a structural check."""

    def __init__(self, message: str, definition_id: Optional[str] = None):
        super().__init__(message)
        self.definition_id = definition_id


class EmptyDefinition(DefinitionValidationError):
    def __init__(self, definition_id: Optional[str] = None):
        super().__init__("Process definition has no nodes", definition_id)


class NoStartNode(DefinitionValidationError):
    def __init__(
        self,
        definition_id: Optional[str] = None,
        message: str = "Process definition has no start node",
    ):
        super().__init__(message, definition_id)


class AmbiguousStartNode(NoStartNode):
    def __init__(self, start_ids: list[str], definition_id: Optional[str] = None):
        super().__init__(
            definition_id,
            f"Process definition has {len(start_ids)} start nodes: {', '.join(start_ids)}",
        )
        self.start_ids = start_ids


class DuplicateNodeId(DefinitionValidationError):
    def __init__(self, node_id: str, definition_id: Optional[str] = None):
        super().__init__(f"Duplicate node id {node_id!r}", definition_id)
        self.node_id = node_id


class DanglingEdge(DefinitionValidationError):
    def __init__(self, source: str, target: str, definition_id: Optional[str] = None):
        super().__init__(
            f"Node {source!r} connects to unknown node {target!r}", definition_id
        )
        self.source = source
        self.target = target


class ProcessDefinitionNotInstantiable(DefinitionError):
    """The definition is inactive or structurally invalid at start time."""

    def __init__(self, definition_id: str, reason: str):
        super().__init__(f"Process definition {definition_id} cannot be started: {reason}")
        self.definition_id = definition_id
        self.reason = reason


class DuplicateDefinition(DefinitionError):
    def __init__(self, name: str, version: str):
        super().__init__(
            f'A process definition with name "{name}" and version "{version}" already exists'
        )
        self.name = name
        self.version = version


class DefinitionInUse(DefinitionError):
    def __init__(self, definition_id: str, active_instances: int):
        super().__init__(
            f"Cannot delete process definition {definition_id} with "
            f"{active_instances} active instance(s)"
        )
        self.definition_id = definition_id
        self.active_instances = active_instances


# ----------------------------------------------------------------------
# Data integrity


class DataIntegrityError(ProcflowError):
    """Stored data contradicts itself; not a user error."""


class NodeNotFound(DataIntegrityError):
    def __init__(
        self, node_id: str, definition_id: Optional[str] = None, message: Optional[str] = None
    ):
        super().__init__(
            message or f"Node {node_id!r} not found in process definition {definition_id}"
        )
        self.node_id = node_id
        self.definition_id = definition_id


class CurrentStepNotFound(NodeNotFound):
    """The instance is bound to a step its definition no longer contains."""

    def __init__(self, instance_id: str, node_id: str, definition_id: Optional[str] = None):
        super().__init__(
            node_id,
            definition_id,
            f"Current step {node_id!r} of instance {instance_id} not found "
            f"in process definition {definition_id}",
        )
        self.instance_id = instance_id


# ----------------------------------------------------------------------
# Instance data


class InvalidVariables(ProcflowError):
    """A variable update carries values that are not JSON."""

    def __init__(self, keys: list[str]):
        super().__init__(
            f"Variables {', '.join(repr(k) for k in keys)} are not JSON values"
        )
        self.keys = keys


# ----------------------------------------------------------------------
# Lifecycle and concurrency


class InvalidStateTransition(ProcflowError):
    def __init__(self, operation: str, status: str, instance_id: Optional[str] = None):
        target = f"instance {instance_id}" if instance_id else "instance"
        super().__init__(f"Cannot {operation} {target} in status {status!r}")
        self.operation = operation
        self.status = status
        self.instance_id = instance_id


class ConcurrentModification(ProcflowError):
    """The instance changed between read and conditional write."""

    retryable = True

    def __init__(self, instance_id: str, expected_version: Optional[int] = None):
        super().__init__(
            f"Process instance {instance_id} was modified concurrently"
            + (f" (expected version {expected_version})" if expected_version is not None else "")
        )
        self.instance_id = instance_id
        self.expected_version = expected_version


class AccessDenied(ProcflowError):
    def __init__(self, actor_id: Optional[str], action: str, reason: str = "access denied"):
        super().__init__(f"Actor {actor_id or '<anonymous>'} may not {action}: {reason}")
        self.actor_id = actor_id
        self.action = action
