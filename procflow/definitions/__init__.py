"""Process definition model, graph lookups and validation."""

from .graph import Edge, ProcessGraph
from .models import (
    ApprovalConfig,
    Category,
    EmailConfig,
    GatewayConfig,
    Node,
    NodeConfig,
    NodeType,
    Position,
    ProcessDefinition,
    ServiceConfig,
    TaskConfig,
    TimerConfig,
)
from .validation import ensure_instantiable, find_problems, validate_definition

__all__ = [
    "ApprovalConfig",
    "Category",
    "Edge",
    "EmailConfig",
    "GatewayConfig",
    "Node",
    "NodeConfig",
    "NodeType",
    "Position",
    "ProcessDefinition",
    "ProcessGraph",
    "ServiceConfig",
    "TaskConfig",
    "TimerConfig",
    "ensure_instantiable",
    "find_problems",
    "validate_definition",
]
