"""Data models describing process definitions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class NodeType(str, Enum):
    START = "start"
    TASK = "task"
    APPROVAL = "approval"
    SERVICE = "service"
    GATEWAY = "gateway"
    TIMER = "timer"
    EMAIL = "email"
    END = "end"


class Category(str, Enum):
    FINANCE = "finance"
    HR = "hr"
    OPERATIONS = "operations"
    SALES = "sales"
    PROCUREMENT = "procurement"
    APPROVAL = "approval"
    CUSTOM = "custom"


class Position(BaseModel):
    """Canvas coordinates. Presentation only."""

    x: float = 0
    y: float = 0


# ----------------------------------------------------------------------
# Per-type node configuration
#
# Unknown keys are kept on every config so definitions authored against a
# newer schema survive a load/save round trip.


class NodeConfig(BaseModel):
    """Configuration for node types without a dedicated shape."""

    model_config = ConfigDict(extra="allow")


class TaskConfig(NodeConfig):
    assignee: Optional[str] = None
    form_fields: List[str] = Field(default_factory=list)
    instructions: Optional[str] = None


class ApprovalConfig(NodeConfig):
    approvers: List[str] = Field(default_factory=list)
    required_approvals: int = 1


class ServiceConfig(NodeConfig):
    endpoint: Optional[str] = None
    method: str = "POST"
    payload: Dict[str, Any] = Field(default_factory=dict)


class GatewayConfig(NodeConfig):
    # Stored for authors; advancement takes the first connection.
    conditions: Dict[str, str] = Field(default_factory=dict)


class TimerConfig(NodeConfig):
    duration: Optional[str] = None
    cron: Optional[str] = None


class EmailConfig(NodeConfig):
    to: List[str] = Field(default_factory=list)
    subject: Optional[str] = None
    template: Optional[str] = None


CONFIG_TYPES: Dict[NodeType, type[NodeConfig]] = {
    NodeType.TASK: TaskConfig,
    NodeType.APPROVAL: ApprovalConfig,
    NodeType.SERVICE: ServiceConfig,
    NodeType.GATEWAY: GatewayConfig,
    NodeType.TIMER: TimerConfig,
    NodeType.EMAIL: EmailConfig,
}

AnyNodeConfig = Union[
    TaskConfig,
    ApprovalConfig,
    ServiceConfig,
    GatewayConfig,
    TimerConfig,
    EmailConfig,
    NodeConfig,
]


class Node(BaseModel):
    """A typed step within a process definition."""

    id: str
    type: NodeType
    name: str
    position: Position = Field(default_factory=Position)
    config: AnyNodeConfig = Field(default_factory=NodeConfig)
    connections: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _coerce_config(cls, data: Any) -> Any:
        """Parse a raw ``config`` mapping into the shape for the node type."""
        if not isinstance(data, dict):
            return data
        raw = data.get("config")
        if isinstance(raw, NodeConfig):
            return data
        try:
            node_type = NodeType(data.get("type"))
        except ValueError:
            return data
        config_cls = CONFIG_TYPES.get(node_type, NodeConfig)
        return {**data, "config": config_cls.model_validate(raw or {})}

    @property
    def is_end(self) -> bool:
        return self.type is NodeType.END


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessDefinition(BaseModel):
    """Versioned, named template describing a directed graph of steps."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., max_length=100)
    description: str = Field(default="", max_length=500)
    version: str = "1.0.0"
    category: Category = Category.CUSTOM
    nodes: List[Node] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    permissions: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    tenant_id: Optional[str] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_definition_block(cls, data: Any) -> Any:
        """Accept documents that nest ``nodes``/``variables`` under ``definition``."""
        if isinstance(data, dict) and isinstance(data.get("definition"), dict):
            block = data["definition"]
            data = {k: v for k, v in data.items() if k != "definition"}
            for key in ("nodes", "variables"):
                if key in block:
                    data[key] = block[key]
        return data

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Process name is required")
        return v

    @field_validator("category", mode="before")
    @classmethod
    def _normalise_category(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, v: List[str]) -> List[str]:
        for tag in v:
            if len(tag) > 30:
                raise ValueError(f"Tag {tag!r} exceeds 30 characters")
        return v

    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]
