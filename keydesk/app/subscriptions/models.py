"""Domain models for subscription keys, resellers and products."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PENDING_SENTINEL = "pending"


class SubscriptionStatus(str, Enum):
    """Lifecycle states derived from a key's stored fields."""

    ACTIVE = "active"
    EXPIRED = "expired"
    PENDING = "pending"
    DISABLED = "disabled"


class StatusFilter(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    EXPIRED = "expired"
    PENDING = "pending"
    DISABLED = "disabled"


class ResellerRole(str, Enum):
    ADMIN = "admin"
    RESELLER = "reseller"


class SubscriptionKey(BaseModel):
    """Stored subscription key. ``expires_at`` is the pending sentinel or epoch seconds."""

    id: str
    device: Optional[str] = None
    expires_at: Any = PENDING_SENTINEL
    disabled: Optional[bool] = None
    duration: Optional[str] = None
    game: Optional[str] = None
    game_uid: Optional[str] = None
    generated_by: Optional[str] = None
    created_by_name: Optional[str] = None
    iphone_id: Optional[str] = None
    android_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @classmethod
    def new_pending(
        cls,
        *,
        key_id: str,
        device: str,
        duration: str,
        game: Optional[str],
        game_uid: str,
        generated_by: str,
        created_by_name: Optional[str],
        created_at: datetime,
    ) -> "SubscriptionKey":
        return cls(
            id=key_id,
            device=device,
            expires_at=PENDING_SENTINEL,
            duration=duration,
            game=game,
            game_uid=game_uid,
            generated_by=generated_by,
            created_by_name=created_by_name,
            created_at=created_at,
            updated_at=created_at,
        )

    def as_record(self) -> Dict[str, Any]:
        return self.model_dump()


class Reseller(BaseModel):
    """Reseller account as seen by the provisioning path."""

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: ResellerRole = ResellerRole.RESELLER
    permissions: List[str] = Field(default_factory=list)
    allowed_games: List[str] = Field(default_factory=list)
    credits: Decimal = Decimal("0")
    disabled: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value: Any) -> Any:
        if isinstance(value, ResellerRole):
            return value
        return ResellerRole.ADMIN if value == ResellerRole.ADMIN.value else ResellerRole.RESELLER

    @field_validator("credits", mode="before")
    @classmethod
    def _coerce_credits(cls, value: Any) -> Any:
        return Decimal("0") if value is None else value

    @field_validator("permissions", "allowed_games", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> Any:
        return [] if value is None else value


class Game(BaseModel):
    """Product catalog entry; empty device/duration lists mean unconstrained."""

    uid: str
    name: Optional[str] = None
    devices: List[str] = Field(default_factory=list)
    durations: List[str] = Field(default_factory=list)
    price: Dict[str, Any] = Field(default_factory=dict)
    active: bool = True

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("devices", "durations", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("active", mode="before")
    @classmethod
    def _coerce_active(cls, value: Any) -> Any:
        return value is not False

    def raw_price(self, duration: str) -> Any:
        return self.price.get(duration)


class Device(BaseModel):
    udid: str
    disabled: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class ProvisionResult(BaseModel):
    """Outcome of a successful provisioning transaction."""

    created: List[str]
    credits: Decimal
    total_cost: Decimal = Decimal("0")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionListItem(BaseModel):
    id: str
    status: SubscriptionStatus
    game: Optional[str] = None
    game_uid: Optional[str] = None
    device: Optional[str] = None
    iphone_id: Optional[str] = None
    android_id: Optional[str] = None
    expires_at: Any = None
    duration: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    generated_by: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class SubscriptionPage(BaseModel):
    items: List[SubscriptionListItem]
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    page_size: int = Field(ge=1)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def total_pages(self) -> int:
        return max(1, -(-self.total // self.page_size))


class StatusCounts(BaseModel):
    total: int = 0
    active: int = 0
    pending: int = 0
    expired: int = 0
    disabled: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
