"""
auth/authorization.py -- Role -> permission resolution and the allow/deny decision.

Decision rule: ALLOWED iff the principal's account is active *right now*
(read live from the store, never from the token or the cache) and the
required permission is in the role's permission set.

There is no superuser bypass. A "super_admin" role is allowed to do
exactly what its catalog rows say, nothing more. An unknown role resolves to
the empty set, which denies everything.

Role -> permission sets are cached in a TTLCache (default 30 s). Catalog
edits should call invalidate(role) so they take effect on the next request;
otherwise staleness is bounded by the TTL. Account status is not cached,
so disabling an account takes effect immediately regardless of the cache.
"""

from __future__ import annotations

import logging
from enum import Enum

from auth.models import AccountStatus, AdminPrincipal
from auth.store import AdminStore
from cache.store import TTLCache

logger = logging.getLogger("nestguard.authz")


class Decision(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


class AuthorizationEngine:
    def __init__(self, store: AdminStore, cache: TTLCache) -> None:
        self._store = store
        self._cache = cache

    def permissions_for_role(self, role: str) -> frozenset[str]:
        return self._cache.get_or_load(role, lambda: self._store.permissions_for_role(role))

    def invalidate(self, role: str | None = None) -> None:
        """Drop the cached permission set for one role, or for every role."""
        self._cache.invalidate(role)

    def grant(self, role: str, permission: str) -> bool:
        granted = self._store.grant_permission(role, permission)
        self.invalidate(role)
        return granted

    def revoke(self, role: str, permission: str) -> bool:
        revoked = self._store.revoke_permission(role, permission)
        self.invalidate(role)
        return revoked

    def authorize(self, principal: AdminPrincipal, permission: str) -> Decision:
        account = self._store.get_account_by_id(principal.account_id)
        if account is None or account.status is not AccountStatus.active:
            logger.info("Denied %s to account %s: account not active", permission, principal.account_id)
            return Decision.DENIED
        # Live role, not the role baked into the token: a role change applies at once.
        if permission in self.permissions_for_role(account.role):
            return Decision.ALLOWED
        logger.info("Denied %s to account %s (role %s)", permission, account.id, account.role)
        return Decision.DENIED


# Catalog installed by `main.py seed-catalog`. Roles hold exactly what is
# listed; super_admin is a list like any other.
DEFAULT_CATALOG: dict[str, tuple[str, ...]] = {
    "super_admin": (
        "admin.invite",
        "admin.accounts.manage",
        "audit.read",
        "content.publish",
        "content.moderate",
        "users.read",
        "users.suspend",
    ),
    "moderator": ("content.publish", "content.moderate", "users.read", "users.suspend"),
    "support": ("users.read", "audit.read"),
}
