"""Provisioning and management of subscription keys."""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Protocol, Sequence

from ..audit import AuditSink, emit_audit
from ..auth.rbac import Action, Principal, authorize
from ..errors import (
    AuthorizationDenied,
    InsufficientCredits,
    KeydeskError,
    NotFound,
    TransientStorageFailure,
    ValidationFailed,
)
from .models import (
    Device,
    Game,
    ProvisionResult,
    Reseller,
    StatusCounts,
    SubscriptionKey,
    SubscriptionPage,
    SubscriptionStatus,
)
from .pricing import compute_pricing, format_credits
from .query import SubscriptionFilters
from .status import derive_status

logger = logging.getLogger("keydesk.subscriptions")

MAX_KEYS_PER_REQUEST = 50


class SubscriptionRepository(Protocol):
    """Persistence operations required by the subscription service."""

    def get_reseller(self, reseller_id: str) -> Optional[Reseller]:
        ...

    def get_game(self, game_uid: str, *, include_inactive: bool = False) -> Optional[Game]:
        ...

    def provision_keys(
        self,
        reseller_id: str,
        *,
        total_cost: Decimal,
        keys: Sequence[SubscriptionKey],
    ) -> Decimal:
        """Atomically debit and insert; raise :class:`InsufficientCredits` on a failed debit."""

    def get_subscription(self, key_id: str) -> Optional[SubscriptionKey]:
        ...

    def disable_subscription(self, key_id: str, *, actor: str, at: datetime) -> bool:
        ...

    def reset_subscription(self, key_id: str, *, actor: str, at: datetime) -> bool:
        ...

    def query_subscriptions(
        self,
        filters: SubscriptionFilters,
        *,
        owner: Optional[str],
        now: int,
    ) -> SubscriptionPage:
        ...

    def count_statuses(self, *, owner: Optional[str], now: int) -> StatusCounts:
        ...

    def list_recent_keys(
        self,
        *,
        owner: Optional[str],
        limit: int,
        game_uid: Optional[str] = None,
        device: Optional[str] = None,
    ) -> List[SubscriptionKey]:
        ...

    def get_device(self, udid: str) -> Optional[Device]:
        ...

    def disable_device(self, udid: str, *, actor: str, at: datetime) -> bool:
        ...


def generate_key_id() -> str:
    """128 bits from the OS CSPRNG, upper-case hex."""

    return secrets.token_hex(16).upper()


@dataclass(frozen=True)
class RecentKey:
    key: SubscriptionKey
    status: SubscriptionStatus


@dataclass
class SubscriptionService:
    """Coordinates provisioning, listing and lifecycle changes for keys."""

    repository: SubscriptionRepository
    audit_sink: Optional[AuditSink] = None
    clock: Callable[[], float] = field(default=time.time)
    id_factory: Callable[[], str] = field(default=generate_key_id)

    def _epoch_now(self) -> int:
        return int(self.clock())

    def _utc_now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def provision(
        self,
        principal: Principal,
        *,
        game_uid: str,
        device: str,
        duration: str,
        quantity: int,
    ) -> ProvisionResult:
        """Issue ``quantity`` pending keys, debiting credits unless bypassed."""

        if not 1 <= quantity <= MAX_KEYS_PER_REQUEST:
            raise ValidationFailed(message=f"Quantity must be between 1 and {MAX_KEYS_PER_REQUEST}")

        actor = principal.subject
        reseller = self.repository.get_reseller(actor)
        if reseller is None:
            raise NotFound(message="Account not found")

        override = principal.can_view_all
        if not override and game_uid not in reseller.allowed_games:
            emit_audit(self.audit_sink, "subscriptions.create_denied", actor=actor, subject=game_uid, reason="game_not_allowed")
            raise AuthorizationDenied(message="Game is not allowed for this reseller")

        game = self.repository.get_game(game_uid, include_inactive=override)
        if game is None:
            raise NotFound(message="Game not found")

        if game.devices and device not in game.devices:
            raise ValidationFailed(message="Device is not supported for this product")
        if game.durations and duration not in game.durations:
            raise ValidationFailed(message="Duration is not supported for this product")

        pricing = compute_pricing(game.raw_price(duration), quantity, principal.can_create_without_credits)
        if pricing.is_misconfigured:
            logger.warning("Price not configured game=%s duration=%s", game_uid, duration)
            raise ValidationFailed(message="Price not configured for this duration")

        total_cost = pricing.total_cost if pricing.requires_debit else Decimal("0")
        created_at = self._utc_now()
        keys = [
            SubscriptionKey.new_pending(
                key_id=self.id_factory(),
                device=device,
                duration=duration,
                game=game.name,
                game_uid=game.uid,
                generated_by=actor,
                created_by_name=principal.session.name or actor,
                created_at=created_at,
            )
            for _ in range(quantity)
        ]

        try:
            balance = self.repository.provision_keys(actor, total_cost=total_cost, keys=keys)
        except InsufficientCredits:
            logger.info("Insufficient credits reseller=%s cost=%s", actor, format_credits(total_cost))
            emit_audit(
                self.audit_sink,
                "subscriptions.create_denied",
                actor=actor,
                subject=game_uid,
                reason="insufficient_credits",
                total_cost=str(total_cost),
            )
            raise
        except KeydeskError:
            raise
        except Exception as exc:
            logger.exception("Provisioning failed for reseller %s", actor)
            raise TransientStorageFailure() from exc

        created = [key.id for key in keys]
        logger.info(
            "Provisioned %s keys reseller=%s cost=%s balance=%s",
            len(created),
            actor,
            format_credits(total_cost),
            format_credits(balance),
        )
        emit_audit(
            self.audit_sink,
            "subscriptions.created",
            actor=actor,
            subject=game_uid,
            quantity=quantity,
            device=device,
            duration=duration,
            total_cost=str(total_cost),
            keys=created,
        )
        return ProvisionResult(
            created=created,
            credits=balance,
            total_cost=total_cost,
        )

    def query_page(self, principal: Principal, filters: SubscriptionFilters) -> SubscriptionPage:
        return self.repository.query_subscriptions(
            filters,
            owner=principal.owner_scope(),
            now=self._epoch_now(),
        )

    def key_metrics(self, principal: Principal) -> StatusCounts:
        return self.repository.count_statuses(owner=principal.owner_scope(), now=self._epoch_now())

    def recent_keys(
        self,
        principal: Principal,
        *,
        limit: int = 10,
        game_uid: Optional[str] = None,
        device: Optional[str] = None,
    ) -> List[RecentKey]:
        keys = self.repository.list_recent_keys(
            owner=principal.owner_scope(),
            limit=limit,
            game_uid=game_uid,
            device=device,
        )
        now = self._epoch_now()
        return [RecentKey(key=key, status=derive_status(key.as_record(), now)) for key in keys]

    def _load_manageable(self, principal: Principal, key_id: str, event: str) -> SubscriptionKey:
        key = self.repository.get_subscription(key_id)
        if key is not None and authorize(principal, Action.MANAGE_SUBSCRIPTION, key.generated_by):
            return key
        emit_audit(self.audit_sink, event, actor=principal.subject, subject=key_id, reason="forbidden")
        # Only callers who may manage every key learn that it does not exist.
        if key is None and principal.can_manage_all:
            raise NotFound(message="Subscription not found")
        raise AuthorizationDenied()

    def disable_subscription(self, principal: Principal, key_id: str) -> None:
        self._load_manageable(principal, key_id, "subscriptions.disable_denied")
        if not self.repository.disable_subscription(key_id, actor=principal.subject, at=self._utc_now()):
            raise NotFound(message="Subscription not found")
        emit_audit(self.audit_sink, "subscriptions.disabled", actor=principal.subject, subject=key_id)

    def reset_subscription(self, principal: Principal, key_id: str) -> None:
        self._load_manageable(principal, key_id, "subscriptions.reset_denied")
        if not self.repository.reset_subscription(key_id, actor=principal.subject, at=self._utc_now()):
            raise NotFound(message="Subscription not found")
        emit_audit(self.audit_sink, "subscriptions.reset", actor=principal.subject, subject=key_id)

    def disable_device(self, principal: Principal, udid: str) -> None:
        if not principal.can_manage_devices:
            emit_audit(self.audit_sink, "devices.disable_denied", actor=principal.subject, subject=udid)
            raise AuthorizationDenied()
        if self.repository.get_device(udid) is None:
            raise NotFound(message="Device not found")
        if not self.repository.disable_device(udid, actor=principal.subject, at=self._utc_now()):
            raise NotFound(message="Device not found")
        emit_audit(self.audit_sink, "devices.disabled", actor=principal.subject, subject=udid)


__all__ = ["RecentKey", "SubscriptionRepository", "SubscriptionService", "generate_key_id"]
