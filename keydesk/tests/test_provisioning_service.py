"""Unit tests for provisioning and key management."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal
from threading import Lock
from typing import Dict, List, Optional, Sequence

import pytest

from keydesk.app.audit import AuditEvent
from keydesk.app.auth.rbac import resolve_principal
from keydesk.app.auth.sessions import SessionClaims
from keydesk.app.errors import (
    AuthorizationDenied,
    InsufficientCredits,
    NotFound,
    TransientStorageFailure,
    ValidationFailed,
)
from keydesk.app.subscriptions import (
    PENDING_SENTINEL,
    Device,
    Game,
    Reseller,
    StatusCounts,
    SubscriptionFilters,
    SubscriptionKey,
    SubscriptionPage,
    SubscriptionService,
    SubscriptionStatus,
    generate_key_id,
)
from keydesk.app.subscriptions.service import SubscriptionRepository

NOW = 1_700_000_000.0


class InMemorySubscriptionRepository(SubscriptionRepository):
    def __init__(self) -> None:
        self.resellers: Dict[str, Reseller] = {}
        self.games: Dict[str, Game] = {}
        self.keys: Dict[str, SubscriptionKey] = {}
        self.devices: Dict[str, Device] = {}
        self.fail_inserts = False
        self._lock = Lock()

    def get_reseller(self, reseller_id: str) -> Optional[Reseller]:
        return self.resellers.get(reseller_id)

    def get_game(self, game_uid: str, *, include_inactive: bool = False) -> Optional[Game]:
        game = self.games.get(game_uid)
        if game is None or (not game.active and not include_inactive):
            return None
        return game

    def provision_keys(self, reseller_id: str, *, total_cost: Decimal, keys: Sequence[SubscriptionKey]) -> Decimal:
        with self._lock:
            reseller = self.resellers.get(reseller_id)
            balance = reseller.credits if reseller else Decimal("0")
            if total_cost > 0:
                if reseller is None or balance < total_cost:
                    raise InsufficientCredits()
                balance = balance - total_cost
            if self.fail_inserts:
                raise RuntimeError("insert failed")
            if reseller is not None:
                self.resellers[reseller_id] = reseller.model_copy(update={"credits": balance})
            for key in keys:
                self.keys[key.id] = key
            return balance

    def get_subscription(self, key_id: str) -> Optional[SubscriptionKey]:
        return self.keys.get(key_id)

    def disable_subscription(self, key_id: str, *, actor: str, at: datetime) -> bool:
        key = self.keys.get(key_id)
        if key is None:
            return False
        self.keys[key_id] = key.model_copy(update={"disabled": True, "updated_at": at})
        return True

    def reset_subscription(self, key_id: str, *, actor: str, at: datetime) -> bool:
        key = self.keys.get(key_id)
        if key is None:
            return False
        self.keys[key_id] = key.model_copy(
            update={
                "device": None,
                "iphone_id": None,
                "android_id": None,
                "expires_at": PENDING_SENTINEL,
                "updated_at": at,
            }
        )
        return True

    def query_subscriptions(self, filters: SubscriptionFilters, *, owner: Optional[str], now: int) -> SubscriptionPage:
        self.last_query = (filters, owner, now)
        return SubscriptionPage(items=[], total=0, page=filters.page, page_size=filters.page_size)

    def count_statuses(self, *, owner: Optional[str], now: int) -> StatusCounts:
        self.last_counts = (owner, now)
        return StatusCounts()

    def list_recent_keys(
        self,
        *,
        owner: Optional[str],
        limit: int,
        game_uid: Optional[str] = None,
        device: Optional[str] = None,
    ) -> List[SubscriptionKey]:
        keys = [key for key in self.keys.values() if owner is None or key.generated_by == owner]
        return keys[:limit]

    def get_device(self, udid: str) -> Optional[Device]:
        return self.devices.get(udid)

    def disable_device(self, udid: str, *, actor: str, at: datetime) -> bool:
        if udid not in self.devices:
            return False
        self.devices[udid] = Device(udid=udid, disabled=True)
        return True


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [event.event for event in self.events]


def _principal(sub="alice", role="reseller", permissions=()):
    return resolve_principal(SessionClaims(sub=sub, role=role, name=sub.title(), permissions=list(permissions)))


@pytest.fixture
def repository() -> InMemorySubscriptionRepository:
    repo = InMemorySubscriptionRepository()
    repo.resellers["alice"] = Reseller(id="alice", credits=Decimal("50"), allowed_games=["game-1", "free-game"])
    repo.resellers["bypass"] = Reseller(id="bypass", credits=Decimal("5"), allowed_games=["free-game"])
    repo.games["game-1"] = Game(
        uid="game-1",
        name="Game One",
        devices=["iphone", "android"],
        durations=["30d"],
        price={"30d": 10},
    )
    repo.games["free-game"] = Game(uid="free-game", name="Unpriced", price={"30d": "n/a"})
    repo.games["retired"] = Game(uid="retired", name="Retired", price={"30d": 1}, active=False)
    return repo


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def service(repository, audit_sink) -> SubscriptionService:
    return SubscriptionService(repository=repository, audit_sink=audit_sink, clock=lambda: NOW)


def test_provision_debits_and_creates_pending_keys(service, repository, audit_sink):
    result = service.provision(_principal(), game_uid="game-1", device="iphone", duration="30d", quantity=5)

    assert result.credits == Decimal("0")
    assert result.total_cost == Decimal("50")
    assert len(result.created) == 5
    assert len(set(result.created)) == 5
    assert repository.resellers["alice"].credits == Decimal("0")
    for key_id in result.created:
        key = repository.keys[key_id]
        assert key.expires_at == PENDING_SENTINEL
        assert key.generated_by == "alice"
        assert key.created_by_name == "Alice"
        assert key.game == "Game One"
        assert key.duration == "30d"
    assert "subscriptions.created" in audit_sink.names()


def test_second_purchase_without_credits_changes_nothing(service, repository, audit_sink):
    service.provision(_principal(), game_uid="game-1", device="iphone", duration="30d", quantity=5)
    keys_before = dict(repository.keys)

    with pytest.raises(InsufficientCredits) as excinfo:
        service.provision(_principal(), game_uid="game-1", device="iphone", duration="30d", quantity=1)

    assert excinfo.value.status_code == 402
    assert repository.resellers["alice"].credits == Decimal("0")
    assert repository.keys == keys_before
    assert audit_sink.events[-1].detail["reason"] == "insufficient_credits"


def test_bypass_permission_provisions_unpriced_product_for_free(service, repository):
    principal = _principal(sub="bypass", permissions=["create_keys_nocredit"])

    result = service.provision(principal, game_uid="free-game", device="android", duration="30d", quantity=3)

    assert result.total_cost == Decimal("0")
    assert result.credits == Decimal("5")
    assert len(result.created) == 3
    assert repository.resellers["bypass"].credits == Decimal("5")


def test_unpriced_product_without_bypass_is_rejected(service, repository):
    with pytest.raises(ValidationFailed) as excinfo:
        service.provision(_principal(), game_uid="free-game", device="iphone", duration="30d", quantity=1)

    assert excinfo.value.message == "Price not configured for this duration"
    assert repository.keys == {}


def test_game_outside_allowlist_is_forbidden(service):
    with pytest.raises(AuthorizationDenied):
        service.provision(_principal(), game_uid="retired", device="iphone", duration="30d", quantity=1)


def test_view_all_overrides_allowlist_and_active_flag(service, repository):
    repository.resellers["auditor"] = Reseller(id="auditor", credits=Decimal("10"))
    principal = _principal(sub="auditor", permissions=["keys:read_all"])

    result = service.provision(principal, game_uid="retired", device="iphone", duration="30d", quantity=2)

    assert result.credits == Decimal("8")


def test_inactive_game_is_not_found_for_regular_resellers(service, repository):
    repository.resellers["alice"] = repository.resellers["alice"].model_copy(
        update={"allowed_games": ["retired"]}
    )

    with pytest.raises(NotFound):
        service.provision(_principal(), game_uid="retired", device="iphone", duration="30d", quantity=1)


@pytest.mark.parametrize(
    "device,duration,message",
    [
        ("blackberry", "30d", "Device is not supported for this product"),
        ("iphone", "7d", "Duration is not supported for this product"),
    ],
)
def test_catalog_constraints(service, device, duration, message):
    with pytest.raises(ValidationFailed) as excinfo:
        service.provision(_principal(), game_uid="game-1", device=device, duration=duration, quantity=1)

    assert excinfo.value.message == message


def test_unknown_account_is_not_found(service):
    with pytest.raises(NotFound):
        service.provision(_principal(sub="ghost"), game_uid="game-1", device="iphone", duration="30d", quantity=1)


def test_storage_failure_is_transient_and_leaves_no_effects(service, repository):
    repository.fail_inserts = True

    with pytest.raises(TransientStorageFailure) as excinfo:
        service.provision(_principal(), game_uid="game-1", device="iphone", duration="30d", quantity=2)

    assert excinfo.value.status_code == 503
    assert repository.resellers["alice"].credits == Decimal("50")
    assert repository.keys == {}


def test_concurrent_provisioning_never_overspends(repository):
    repository.resellers["alice"] = repository.resellers["alice"].model_copy(update={"credits": Decimal("30")})
    service = SubscriptionService(repository=repository, clock=lambda: NOW)

    def attempt(_):
        try:
            return service.provision(_principal(), game_uid="game-1", device="iphone", duration="30d", quantity=1)
        except InsufficientCredits:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(10)))

    successes = [outcome for outcome in outcomes if outcome is not None]
    assert len(successes) == 3
    assert outcomes.count(None) == 7
    assert repository.resellers["alice"].credits == Decimal("0")
    assert len(repository.keys) == 3


def test_generated_ids_are_unique_upper_hex():
    ids = {generate_key_id() for _ in range(1000)}

    assert len(ids) == 1000
    assert all(len(value) == 32 and value == value.upper() for value in ids)


def _seed_key(repository, key_id="KEY1", owner="alice", **extra):
    repository.keys[key_id] = SubscriptionKey(id=key_id, generated_by=owner, **extra)


def test_owner_can_disable_and_reset(service, repository, audit_sink):
    _seed_key(repository, device="iphone", expires_at=NOW + 100)

    service.reset_subscription(_principal(), "KEY1")
    service.disable_subscription(_principal(), "KEY1")

    key = repository.keys["KEY1"]
    assert key.device is None
    assert key.expires_at == PENDING_SENTINEL
    assert key.disabled is True
    assert audit_sink.names()[-2:] == ["subscriptions.reset", "subscriptions.disabled"]


def test_other_reseller_cannot_manage_key(service, repository, audit_sink):
    _seed_key(repository, owner="bob")

    with pytest.raises(AuthorizationDenied):
        service.disable_subscription(_principal(), "KEY1")

    assert repository.keys["KEY1"].disabled is None
    assert audit_sink.names()[-1] == "subscriptions.disable_denied"


def test_missing_key_does_not_leak_existence(service):
    with pytest.raises(AuthorizationDenied):
        service.reset_subscription(_principal(), "NOPE")

    with pytest.raises(NotFound):
        service.reset_subscription(_principal(role="admin", sub="root"), "NOPE")


def test_device_disable_requires_capability(service, repository):
    repository.devices["udid-123"] = Device(udid="udid-123")

    with pytest.raises(AuthorizationDenied):
        service.disable_device(_principal(), "udid-123")

    service.disable_device(_principal(permissions=["devices:manage_all"]), "udid-123")
    assert repository.devices["udid-123"].disabled is True

    with pytest.raises(NotFound):
        service.disable_device(_principal(role="admin"), "missing")


def test_recent_keys_annotated_with_status(service, repository):
    _seed_key(repository, "A", device="iphone", expires_at=NOW + 60)
    _seed_key(repository, "B", device="iphone", expires_at=NOW - 60)
    _seed_key(repository, "C", expires_at=PENDING_SENTINEL)
    _seed_key(repository, "D", owner="bob", device="iphone", expires_at=NOW + 60)

    recent = service.recent_keys(_principal(), limit=10)

    statuses = {item.key.id: item.status for item in recent}
    assert statuses == {
        "A": SubscriptionStatus.ACTIVE,
        "B": SubscriptionStatus.EXPIRED,
        "C": SubscriptionStatus.PENDING,
    }


def test_reads_are_scoped_by_capability(service, repository):
    filters = SubscriptionFilters()

    service.query_page(_principal(), filters)
    assert repository.last_query == (filters, "alice", int(NOW))

    service.query_page(_principal(permissions=["subscriptions:read_all"]), filters)
    assert repository.last_query[1] is None

    service.key_metrics(_principal())
    assert repository.last_counts == ("alice", int(NOW))


@pytest.mark.parametrize("quantity", [0, 51, 150])
def test_quantity_outside_per_request_limit_is_rejected(service, repository, quantity):
    with pytest.raises(ValidationFailed) as excinfo:
        service.provision(_principal(), game_uid="game-1", device="iphone", duration="30d", quantity=quantity)

    assert excinfo.value.status_code == 400
    assert repository.keys == {}
    assert repository.resellers["alice"].credits == Decimal("50")


def test_manage_all_capability_covers_other_owners(service, repository, audit_sink):
    _seed_key(repository, owner="bob")

    service.disable_subscription(_principal(sub="ops", permissions=["subscriptions:manage_all"]), "KEY1")

    assert repository.keys["KEY1"].disabled is True
    assert audit_sink.events[-1].actor == "ops"


def test_recent_keys_use_whole_second_clock_like_queries(repository):
    service = SubscriptionService(repository=repository, clock=lambda: NOW + 0.5)
    _seed_key(repository, "FRACTION", device="iphone", expires_at=NOW + 0.25)

    recent = service.recent_keys(_principal(), limit=10)
    service.key_metrics(_principal())

    assert recent[0].status == SubscriptionStatus.ACTIVE
    assert repository.last_counts == ("alice", int(NOW))
