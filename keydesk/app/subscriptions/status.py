"""Lifecycle status classification for subscription keys.

Two forms of the same rules live here:

* :func:`derive_status` classifies a single record in Python.
* :data:`STATUS_RULES` is a priority-ordered list of branches that is rendered
  into a SQL ``CASE`` expression for list/count queries and can also be
  evaluated in memory with :func:`evaluate_status_rules`.

Both forms must agree for every record; ``tests/test_status_classifier.py``
checks them against each other.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence, Tuple

from .models import PENDING_SENTINEL, SubscriptionStatus

# jsonb_typeof() values treated as numeric expiry timestamps.
NUMERIC_STORAGE_TYPES: Tuple[str, ...] = ("number",)


def storage_type(value: Any) -> str:
    """Return the ``jsonb_typeof`` name PostgreSQL reports for ``value``."""

    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "number"
    if isinstance(value, float):
        return "number" if math.isfinite(value) else "invalid"
    if isinstance(value, Decimal):
        return "number" if value.is_finite() else "invalid"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return "invalid"


def _numeric_expiry(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return None
    numeric = Decimal(str(value))
    return numeric if numeric.is_finite() else None


def derive_status(record: Mapping[str, Any], now: float) -> SubscriptionStatus:
    """Classify a single subscription record at ``now`` (epoch seconds)."""

    if record.get("disabled") is True:
        return SubscriptionStatus.DISABLED

    expires_at = record.get("expires_at")
    if expires_at == PENDING_SENTINEL:
        return SubscriptionStatus.PENDING

    expires = _numeric_expiry(expires_at)
    if expires is None:
        # Malformed or missing expiry never counts as active or expired.
        return SubscriptionStatus.PENDING

    current = Decimal(str(now))
    has_device = record.get("device") is not None
    if expires > current and not has_device:
        return SubscriptionStatus.PENDING
    if expires <= current:
        return SubscriptionStatus.EXPIRED
    return SubscriptionStatus.ACTIVE


# ---------------------------------------------------------------------------
# Declarative form
# ---------------------------------------------------------------------------

EXPIRES_NUMERIC_SQL = (
    "CASE WHEN jsonb_typeof({alias}expires_at) IN ({types}) "
    "THEN ({alias}expires_at #>> '{{}}')::numeric END"
)
HAS_DEVICE_SQL = "({alias}device IS NOT NULL)"


def expires_numeric_sql(alias: str = "") -> str:
    prefix = f"{alias}." if alias else ""
    types = ", ".join(f"'{name}'" for name in NUMERIC_STORAGE_TYPES)
    return EXPIRES_NUMERIC_SQL.format(alias=prefix, types=types)


def has_device_sql(alias: str = "") -> str:
    prefix = f"{alias}." if alias else ""
    return HAS_DEVICE_SQL.format(alias=prefix)


def annotate(row: Mapping[str, Any]) -> dict:
    """Add the ``expires_numeric`` and ``has_device`` projections to a row."""

    annotated = dict(row)
    expires_at = row.get("expires_at")
    if storage_type(expires_at) in NUMERIC_STORAGE_TYPES:
        annotated["expires_numeric"] = Decimal(str(expires_at))
    else:
        annotated["expires_numeric"] = None
    annotated["has_device"] = row.get("device") is not None
    return annotated


@dataclass(frozen=True)
class DisabledFlagSet:
    def to_sql(self, alias: str) -> str:
        return f"{alias}disabled IS TRUE"

    def holds(self, row: Mapping[str, Any], now: float) -> bool:
        return row.get("disabled") is True


@dataclass(frozen=True)
class ExpiryIsSentinel:
    def to_sql(self, alias: str) -> str:
        return f"{alias}expires_at = to_jsonb('{PENDING_SENTINEL}'::text)"

    def holds(self, row: Mapping[str, Any], now: float) -> bool:
        value = row.get("expires_at")
        return storage_type(value) == "string" and value == PENDING_SENTINEL


@dataclass(frozen=True)
class ExpiryAfterNow:
    def to_sql(self, alias: str) -> str:
        return f"{alias}expires_numeric > %(now)s"

    def holds(self, row: Mapping[str, Any], now: float) -> bool:
        expires = row.get("expires_numeric")
        return expires is not None and expires > Decimal(str(now))


@dataclass(frozen=True)
class ExpiryAtOrBeforeNow:
    def to_sql(self, alias: str) -> str:
        return f"{alias}expires_numeric <= %(now)s"

    def holds(self, row: Mapping[str, Any], now: float) -> bool:
        expires = row.get("expires_numeric")
        return expires is not None and expires <= Decimal(str(now))


@dataclass(frozen=True)
class DeviceBound:
    bound: bool

    def to_sql(self, alias: str) -> str:
        return f"{alias}has_device IS {'TRUE' if self.bound else 'FALSE'}"

    def holds(self, row: Mapping[str, Any], now: float) -> bool:
        return row.get("has_device") is self.bound


@dataclass(frozen=True)
class StatusBranch:
    """Conjunction of conditions selecting ``status`` when all hold."""

    conditions: Tuple[Any, ...]
    status: SubscriptionStatus


STATUS_RULES: Tuple[StatusBranch, ...] = (
    StatusBranch((DisabledFlagSet(),), SubscriptionStatus.DISABLED),
    StatusBranch((ExpiryIsSentinel(),), SubscriptionStatus.PENDING),
    StatusBranch((ExpiryAfterNow(), DeviceBound(False)), SubscriptionStatus.PENDING),
    StatusBranch((ExpiryAtOrBeforeNow(),), SubscriptionStatus.EXPIRED),
    StatusBranch((ExpiryAfterNow(), DeviceBound(True)), SubscriptionStatus.ACTIVE),
)
DEFAULT_STATUS = SubscriptionStatus.PENDING


def status_case_sql(alias: str = "", rules: Sequence[StatusBranch] = STATUS_RULES) -> str:
    """Render the rules as a SQL ``CASE``; expects ``%(now)s`` as a parameter.

    The source relation must expose ``expires_numeric`` and ``has_device``
    (see :func:`expires_numeric_sql` and :func:`has_device_sql`).
    """

    prefix = f"{alias}." if alias else ""
    branches = []
    for branch in rules:
        condition = " AND ".join(f"({term.to_sql(prefix)})" for term in branch.conditions)
        branches.append(f"WHEN {condition} THEN '{branch.status.value}'")
    return "CASE " + " ".join(branches) + f" ELSE '{DEFAULT_STATUS.value}' END"


def evaluate_status_rules(
    row: Mapping[str, Any],
    now: float,
    rules: Sequence[StatusBranch] = STATUS_RULES,
) -> SubscriptionStatus:
    """Evaluate the declarative rules against a raw row, in rule order."""

    annotated = annotate(row)
    for branch in rules:
        if all(term.holds(annotated, now) for term in branch.conditions):
            return branch.status
    return DEFAULT_STATUS


__all__ = [
    "DEFAULT_STATUS",
    "NUMERIC_STORAGE_TYPES",
    "STATUS_RULES",
    "StatusBranch",
    "annotate",
    "derive_status",
    "evaluate_status_rules",
    "expires_numeric_sql",
    "has_device_sql",
    "status_case_sql",
    "storage_type",
]
