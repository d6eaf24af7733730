from .context import Actor
from .policy import AccessPolicy, AllowAllPolicy, TenantScopePolicy, policy_from_config
from .tokens import ActorTokenDecoder

__all__ = [
    "AccessPolicy",
    "Actor",
    "ActorTokenDecoder",
    "AllowAllPolicy",
    "TenantScopePolicy",
    "policy_from_config",
]
