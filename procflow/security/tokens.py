"""Decode bearer tokens into :class:`Actor` identities."""

from __future__ import annotations

from typing import Any, List, Mapping, Optional

import jwt

from ..config import SecurityConfig
from ..errors import AccessDenied
from .context import Actor


class ActorTokenDecoder:
    """Validates a JWT and maps its claims onto an :class:`Actor`.

    ``sub`` becomes the actor id; the tenant and roles claims are
    configurable because identity providers disagree on their names.
    """

    def __init__(
        self,
        key: Any,
        algorithms: Optional[List[str]] = None,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        leeway: int = 0,
        tenant_claim: str = "tenant_id",
        roles_claim: str = "roles",
    ) -> None:
        self.key = key
        self.algorithms = algorithms or ["HS256"]
        self.audience = audience
        self.issuer = issuer
        self.leeway = leeway
        self.tenant_claim = tenant_claim
        self.roles_claim = roles_claim

    @classmethod
    def from_config(cls, config: SecurityConfig) -> "ActorTokenDecoder":
        if not config.jwt_secret:
            raise ValueError("security.jwt_secret must be configured to decode tokens")
        return cls(
            key=config.jwt_secret,
            algorithms=config.jwt_algorithms,
            audience=config.audience,
            issuer=config.issuer,
            leeway=config.leeway,
            tenant_claim=config.tenant_claim,
            roles_claim=config.roles_claim,
        )

    def claims(self, token: str) -> Mapping[str, Any]:
        """Validate ``token`` and return its claims."""
        try:
            return jwt.decode(
                token,
                self.key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": ["sub"], "verify_aud": self.audience is not None},
            )
        except jwt.InvalidTokenError as exc:
            raise AccessDenied(None, "authenticate", str(exc)) from exc

    def decode(self, token: str) -> Actor:
        claims = self.claims(token)
        roles = claims.get(self.roles_claim) or []
        if isinstance(roles, str):
            roles = roles.split()
        tenant = claims.get(self.tenant_claim)
        return Actor(
            id=str(claims["sub"]),
            tenant_id=str(tenant) if tenant is not None else None,
            roles=list(roles),
            claims=dict(claims),
        )
