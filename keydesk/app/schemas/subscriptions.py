"""API schemas for subscription, key and device endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from ..subscriptions import ProvisionResult, RecentKey, StatusCounts, SubscriptionPage, SubscriptionStatus
from ..subscriptions.service import MAX_KEYS_PER_REQUEST


class CreateSubscriptionRequest(BaseModel):
    game_uid: str = Field(alias="gameUid", min_length=1, max_length=128)
    device: str = Field(min_length=1, max_length=128)
    duration: str = Field(min_length=1, max_length=64)
    quantity: int = Field(ge=1, le=MAX_KEYS_PER_REQUEST, strict=True)

    model_config = ConfigDict(populate_by_name=True)


class CreateSubscriptionResponse(BaseModel):
    ok: bool = True
    created: List[str]
    credits: Decimal

    model_config = ConfigDict(populate_by_name=True)

    @field_serializer("credits")
    def _serialise_credits(self, value: Decimal) -> float:
        return float(value)

    @classmethod
    def from_result(cls, result: ProvisionResult) -> "CreateSubscriptionResponse":
        return cls(created=list(result.created), credits=result.credits)


class SubscriptionItem(BaseModel):
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


class SubscriptionListResponse(BaseModel):
    page: int
    page_size: int = Field(alias="pageSize")
    total: int
    total_pages: int = Field(alias="totalPages")
    items: List[SubscriptionItem]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_page(cls, page: SubscriptionPage) -> "SubscriptionListResponse":
        return cls(
            page=page.page,
            page_size=page.page_size,
            total=page.total,
            total_pages=page.total_pages,
            items=[SubscriptionItem(**item.model_dump()) for item in page.items],
        )


class RecentKeyDevice(str, Enum):
    IPHONE = "iphone"
    ANDROID = "android"


class RecentKeyItem(BaseModel):
    id: str
    device: Optional[str] = None
    expires_at: Any = None
    duration: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    game: Optional[str] = None
    game_uid: Optional[str] = None
    status: SubscriptionStatus

    @classmethod
    def from_recent(cls, recent: RecentKey) -> "RecentKeyItem":
        key = recent.key
        return cls(
            id=key.id,
            device=key.device,
            expires_at=key.expires_at,
            duration=key.duration,
            created_at=key.created_at,
            updated_at=key.updated_at,
            game=key.game,
            game_uid=key.game_uid,
            status=recent.status,
        )


class RecentKeysResponse(BaseModel):
    keys: List[RecentKeyItem]


class KeyMetricsResponse(BaseModel):
    total: int
    active: int
    pending: int
    expired: int
    disabled: int

    @classmethod
    def from_counts(cls, counts: StatusCounts) -> "KeyMetricsResponse":
        return cls(**counts.model_dump())
