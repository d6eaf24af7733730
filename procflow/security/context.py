"""Caller identity carried into every engine operation."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Actor(BaseModel):
    """Identity of the caller applying an operation.

    ``id`` is what the audit trail records. ``tenant_id`` is the owning scope
    (company) the caller acts within; instances started by the actor inherit
    it. ``claims`` keeps the raw token claims when the actor was decoded from
    a token.
    """

    id: str = Field(..., min_length=1)
    tenant_id: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    claims: Dict[str, Any] = Field(default_factory=dict, description="Token claims")

    @classmethod
    def system(cls) -> "Actor":
        return cls(id="system")
