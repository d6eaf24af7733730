"""Procflow: event-sourced business process workflow engine."""

from .catalog import DefinitionCatalog, read_definitions
from .definitions import Node, NodeType, ProcessDefinition, ProcessGraph
from .engine import ProcessEngine
from .instances import AuditEntry, InstanceStatus, Priority, ProcessInstance
from .persistence import get_repository
from .security import Actor

__version__ = "0.1.0"
__all__ = [
    "Actor",
    "AuditEntry",
    "DefinitionCatalog",
    "InstanceStatus",
    "Node",
    "NodeType",
    "Priority",
    "ProcessDefinition",
    "ProcessEngine",
    "ProcessGraph",
    "ProcessInstance",
    "get_repository",
    "read_definitions",
]
