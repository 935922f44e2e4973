"""Filtered, status-annotated, paginated reads over subscription keys."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import StatusFilter
from .status import expires_numeric_sql, has_device_sql, status_case_sql

_LIKE_SPECIAL = ("\\", "%", "_")


class SubscriptionSort(str, Enum):
    CREATED_AT_DESC = "created_at_desc"
    CREATED_AT_ASC = "created_at_asc"
    EXPIRES_AT_DESC = "expires_at_desc"
    EXPIRES_AT_ASC = "expires_at_asc"


# Keys without a numeric expiry sort below every number.
SORT_ORDERS: Dict[SubscriptionSort, str] = {
    SubscriptionSort.CREATED_AT_DESC: "f.created_at DESC, f.id DESC",
    SubscriptionSort.CREATED_AT_ASC: "f.created_at ASC, f.id ASC",
    SubscriptionSort.EXPIRES_AT_DESC: "f.expires_numeric DESC NULLS LAST, f.id DESC",
    SubscriptionSort.EXPIRES_AT_ASC: "f.expires_numeric ASC NULLS FIRST, f.id ASC",
}


def _parse_date(value: Any) -> Any:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            pass
        try:
            return datetime.combine(date.fromisoformat(raw), time.min, tzinfo=timezone.utc)
        except ValueError as exc:
            raise ValueError("Invalid date") from exc
    return value


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionFilters(BaseModel):
    """Validated list parameters for the subscriptions listing."""

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=25, ge=1, le=100, alias="pageSize")
    status: StatusFilter = StatusFilter.ALL
    q: Optional[str] = Field(default=None, min_length=1, max_length=256)
    game_uid: Optional[str] = Field(default=None, min_length=1, max_length=128)
    from_date: Optional[datetime] = Field(default=None, alias="from")
    to_date: Optional[datetime] = Field(default=None, alias="to")
    sort: SubscriptionSort = SubscriptionSort.CREATED_AT_DESC

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("q", "game_uid", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("status", "sort", mode="before")
    @classmethod
    def _default_when_empty(cls, value: Any, info) -> Any:
        if value is None or value == "":
            return StatusFilter.ALL if info.field_name == "status" else SubscriptionSort.CREATED_AT_DESC
        return value

    @field_validator("from_date", "to_date", mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> Any:
        return _parse_date(value)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None


def normalise_date_range(from_date: Optional[datetime], to_date: Optional[datetime]) -> DateRange:
    """Widen a creation-date range to whole UTC days, inclusive on both ends."""

    start = end = None
    if from_date is not None:
        start = _to_utc(from_date).replace(hour=0, minute=0, second=0, microsecond=0)
    if to_date is not None:
        end = _to_utc(to_date).replace(hour=23, minute=59, second=59, microsecond=999000)
    return DateRange(start=start, end=end)


def format_utc_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""

    if value is None:
        return None
    utc_value = _to_utc(value)
    return utc_value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_value.microsecond // 1000:03d}Z"


def escape_like(value: str) -> str:
    escaped = value
    for char in _LIKE_SPECIAL:
        escaped = escaped.replace(char, "\\" + char)
    return escaped


@dataclass(frozen=True)
class CompiledQuery:
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)


def _scope_clauses(
    params: Dict[str, Any],
    *,
    owner: Optional[str],
    game_uid: Optional[str] = None,
) -> List[str]:
    clauses: List[str] = []
    if owner is not None:
        clauses.append("k.generated_by = %(owner)s")
        params["owner"] = owner
    if game_uid:
        clauses.append("k.game_uid = %(game_uid)s")
        params["game_uid"] = game_uid
    return clauses


def _classified_ctes(where_sql: str) -> str:
    return f"""
        WITH annotated AS (
            SELECT k.*,
                   {expires_numeric_sql("k")} AS expires_numeric,
                   {has_device_sql("k")} AS has_device
            FROM subscription_keys AS k
            WHERE {where_sql}
        ),
        classified AS (
            SELECT a.*, {status_case_sql("a")} AS status
            FROM annotated AS a
        )
    """


def build_subscription_query(
    filters: SubscriptionFilters,
    *,
    owner: Optional[str],
    now: int,
) -> CompiledQuery:
    """Compile the listing query.

    Status is computed by the same rules used for single records and the
    status filter is applied to the computed value. The count and the page
    come from one ``filtered`` relation in a single statement.
    """

    params: Dict[str, Any] = {"now": now}
    clauses = _scope_clauses(params, owner=owner, game_uid=filters.game_uid)

    if filters.q:
        clauses.append("k.id ILIKE %(id_prefix)s")
        params["id_prefix"] = escape_like(filters.q) + "%"

    date_range = normalise_date_range(filters.from_date, filters.to_date)
    if date_range.start is not None:
        clauses.append("k.created_at >= %(created_from)s")
        params["created_from"] = date_range.start
    if date_range.end is not None:
        clauses.append("k.created_at <= %(created_to)s")
        params["created_to"] = date_range.end

    status_sql = ""
    if filters.status != StatusFilter.ALL:
        status_sql = "WHERE c.status = %(status)s"
        params["status"] = filters.status.value

    order_sql = SORT_ORDERS[filters.sort]
    params["limit"] = filters.page_size
    params["offset"] = filters.offset

    where_sql = " AND ".join(clauses) if clauses else "TRUE"
    sql = _classified_ctes(where_sql) + f"""
        , filtered AS (
            SELECT c.* FROM classified AS c
            {status_sql}
        ),
        page AS (
            SELECT f.*, row_number() OVER (ORDER BY {order_sql}) AS position
            FROM filtered AS f
            ORDER BY {order_sql}
            LIMIT %(limit)s OFFSET %(offset)s
        )
        SELECT
            (SELECT COUNT(*) FROM filtered) AS total,
            COALESCE(
                (SELECT jsonb_agg(to_jsonb(page) ORDER BY page.position) FROM page),
                '[]'::jsonb
            ) AS items
    """
    return CompiledQuery(sql=sql, params=params)


def build_status_counts_query(*, owner: Optional[str], now: int) -> CompiledQuery:
    """Per-status counts computed with the listing's status expression."""

    params: Dict[str, Any] = {"now": now}
    clauses = _scope_clauses(params, owner=owner)
    where_sql = " AND ".join(clauses) if clauses else "TRUE"
    sql = _classified_ctes(where_sql) + """
        SELECT
            COUNT(*) AS total,
            COUNT(*) FILTER (WHERE status = 'active') AS active,
            COUNT(*) FILTER (WHERE status = 'pending') AS pending,
            COUNT(*) FILTER (WHERE status = 'expired') AS expired,
            COUNT(*) FILTER (WHERE status = 'disabled') AS disabled
        FROM classified
    """
    return CompiledQuery(sql=sql, params=params)


def build_recent_keys_query(
    *,
    owner: Optional[str],
    limit: int,
    game_uid: Optional[str] = None,
    device: Optional[str] = None,
) -> CompiledQuery:
    params: Dict[str, Any] = {"limit": limit}
    clauses = ["k.disabled IS NOT TRUE"]
    clauses.extend(_scope_clauses(params, owner=owner, game_uid=game_uid))
    if device:
        clauses.append("k.device = %(device)s")
        params["device"] = device
    sql = f"""
        SELECT k.*
        FROM subscription_keys AS k
        WHERE {" AND ".join(clauses)}
        ORDER BY k.updated_at DESC NULLS LAST, k.created_at DESC NULLS LAST
        LIMIT %(limit)s
    """
    return CompiledQuery(sql=sql, params=params)


__all__ = [
    "CompiledQuery",
    "DateRange",
    "SORT_ORDERS",
    "SubscriptionFilters",
    "SubscriptionSort",
    "build_recent_keys_query",
    "build_status_counts_query",
    "build_subscription_query",
    "escape_like",
    "format_utc_timestamp",
    "normalise_date_range",
]
