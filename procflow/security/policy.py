"""Authorization policies consulted before any mutation."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from ..config import SecurityConfig
from ..errors import AccessDenied
from .context import Actor

logger = logging.getLogger(__name__)


class AccessPolicy(Protocol):
    """Decides whether ``actor`` may perform ``action`` on a scoped resource."""

    def check(self, actor: Actor, action: str, tenant_id: Optional[str]) -> None:
        """Raise :class:`~procflow.errors.AccessDenied` to refuse."""


class AllowAllPolicy(AccessPolicy):
    """Permit everything; authorization is enforced upstream."""

    def check(self, actor: Actor, action: str, tenant_id: Optional[str]) -> None:
        return None


class TenantScopePolicy(AccessPolicy):
    """Refuse access to resources owned by another tenant.

    Resources without a tenant are shared and always accessible.
    """

    def check(self, actor: Actor, action: str, tenant_id: Optional[str]) -> None:
        if tenant_id is None or actor.tenant_id == tenant_id:
            return
        logger.info(
            f"Denied {action} to actor {actor.id} (tenant {actor.tenant_id}) "
            f"on resource of tenant {tenant_id}"
        )
        raise AccessDenied(actor.id, action, "resource belongs to another tenant")


def policy_from_config(config: SecurityConfig) -> AccessPolicy:
    return TenantScopePolicy() if config.tenant_scoped else AllowAllPolicy()
