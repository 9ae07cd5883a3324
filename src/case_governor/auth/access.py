"""Role-based read access to entity types.

Permissions are strings of the form "<entity_type>:read" (e.g. "quote:read");
"*" grants everything. Roles map to permission sets. The Context Store asks
the policy before touching its cache, so a cached record is never handed to a
caller who could not have fetched it.
"""

import logging
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from case_governor.auth.request_context import RequestContext
from case_governor.models.records import EntityType

logger = logging.getLogger(__name__)

WILDCARD = "*"


def read_permission(entity_type: EntityType) -> str:
    return f"{entity_type.value}:read"


class AccessPolicy:
    """Maps caller roles to the permissions they grant.

    Usage:
        policy = AccessPolicy({
            "agent": ["case:read", "account:read", "contact:read"],
            "supervisor": ["*"],
        })
        policy.can_read(context, EntityType.QUOTE)
    """

    def __init__(
        self,
        role_permissions: Optional[Mapping[str, Iterable[str]]] = None,
        allow_anonymous: bool = True,
        default_permissions: Iterable[str] = (),
    ):
        self.role_permissions: Dict[str, FrozenSet[str]] = {
            role: frozenset(perms) for role, perms in (role_permissions or {}).items()
        }
        # "system" always reads everything
        self.role_permissions.setdefault("system", frozenset({WILDCARD}))
        self.allow_anonymous = allow_anonymous
        # Granted to every identified caller regardless of role
        self.default_permissions = frozenset(default_permissions)

    @classmethod
    def allow_all(cls) -> "AccessPolicy":
        return cls(allow_anonymous=True, default_permissions=[WILDCARD])

    def permissions_for(self, context: Optional[RequestContext]) -> FrozenSet[str]:
        if context is None:
            return frozenset({WILDCARD}) if self.allow_anonymous else frozenset()

        granted = set(self.default_permissions)
        for role in context.user_roles:
            granted.update(self.role_permissions.get(role, ()))
        return frozenset(granted)

    def can_read(self, context: Optional[RequestContext], entity_type: EntityType) -> bool:
        permissions = self.permissions_for(context)
        allowed = WILDCARD in permissions or read_permission(entity_type) in permissions
        if not allowed:
            user = context.user_id if context else "anonymous"
            logger.debug(f"[Access] {user} may not read {entity_type.value}")
        return allowed

    def readable_types(self, context: Optional[RequestContext]) -> FrozenSet[EntityType]:
        return frozenset(t for t in EntityType if self.can_read(context, t))

    def scope(self, context: Optional[RequestContext]) -> Tuple[EntityType, ...]:
        """Readable types in a stable order; PageData built for ``context`` carries this."""
        return tuple(sorted(self.readable_types(context), key=lambda t: t.value))
