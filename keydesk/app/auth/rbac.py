"""Role and permission policy for reseller sessions."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from .sessions import SessionClaims


class Capability(str, Enum):
    VIEW_ALL_SUBSCRIPTIONS = "view_all_subscriptions"
    MANAGE_ALL_SUBSCRIPTIONS = "manage_all_subscriptions"
    CREATE_WITHOUT_CREDITS = "create_without_credits"
    MANAGE_DEVICES = "manage_devices"


READ_ALL_PERMISSIONS = frozenset({"keys:read_all", "subscriptions:read_all"})
MANAGE_ALL_PERMISSIONS = frozenset({"keys:manage_all", "subscriptions:manage_all"})
DEVICE_PERMISSIONS = frozenset({"devices:manage_all"})
BYPASS_CREDITS_PERMISSION = "create_keys_nocredit"

ADMIN_ROLE = "admin"


class Action(str, Enum):
    """Operations guarded by the policy."""

    VIEW_SUBSCRIPTIONS = "subscriptions.view"
    CREATE_SUBSCRIPTIONS = "subscriptions.create"
    MANAGE_SUBSCRIPTION = "subscriptions.manage"
    VIEW_METRICS = "metrics.view"
    MANAGE_DEVICES = "devices.manage"


def compute_capabilities(role: Optional[str], permissions: Iterable[str]) -> FrozenSet[Capability]:
    """Derive the capability set for ``role`` and ``permissions``.

    Capabilities are recomputed from the session claims on every request;
    nothing is persisted.
    """

    granted = set(permissions or ())
    is_admin = role == ADMIN_ROLE
    capabilities = set()
    if is_admin or granted & READ_ALL_PERMISSIONS:
        capabilities.add(Capability.VIEW_ALL_SUBSCRIPTIONS)
    if is_admin or granted & MANAGE_ALL_PERMISSIONS:
        capabilities.add(Capability.MANAGE_ALL_SUBSCRIPTIONS)
    if BYPASS_CREDITS_PERMISSION in granted:
        capabilities.add(Capability.CREATE_WITHOUT_CREDITS)
    if (
        is_admin
        or granted & DEVICE_PERMISSIONS
        or Capability.MANAGE_ALL_SUBSCRIPTIONS in capabilities
    ):
        capabilities.add(Capability.MANAGE_DEVICES)
    return frozenset(capabilities)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller with capabilities resolved once per request."""

    session: SessionClaims
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)

    @property
    def subject(self) -> str:
        return self.session.sub

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def can_view_all(self) -> bool:
        return self.has(Capability.VIEW_ALL_SUBSCRIPTIONS)

    @property
    def can_manage_all(self) -> bool:
        return self.has(Capability.MANAGE_ALL_SUBSCRIPTIONS)

    @property
    def can_create_without_credits(self) -> bool:
        return self.has(Capability.CREATE_WITHOUT_CREDITS)

    @property
    def can_manage_devices(self) -> bool:
        return self.has(Capability.MANAGE_DEVICES)

    def can_manage_subscription(self, owner: Optional[str]) -> bool:
        return self.can_manage_all or (owner is not None and owner == self.subject)

    def owner_scope(self) -> Optional[str]:
        """Owner filter for reads; ``None`` means every owner."""

        return None if self.can_view_all else self.subject


def resolve_principal(session: SessionClaims) -> Principal:
    return Principal(session=session, capabilities=compute_capabilities(session.role, session.permissions))


def authorize(principal: Principal, action: Action, owner_hint: Optional[str] = None) -> bool:
    if action == Action.MANAGE_SUBSCRIPTION:
        return principal.can_manage_subscription(owner_hint)
    if action == Action.MANAGE_DEVICES:
        return principal.can_manage_devices
    # Listing, creation and metrics are open to every reseller; scope is applied downstream.
    return True


__all__ = [
    "Action",
    "BYPASS_CREDITS_PERMISSION",
    "Capability",
    "Principal",
    "authorize",
    "compute_capabilities",
    "resolve_principal",
]
