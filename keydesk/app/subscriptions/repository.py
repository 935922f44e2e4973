"""Persistence layer for subscription keys, catalog entries and credits."""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection

from ..errors import InsufficientCredits, TransientStorageFailure
from ..storage import dict_cursor
from .models import (
    PENDING_SENTINEL,
    Device,
    Game,
    Reseller,
    StatusCounts,
    SubscriptionKey,
    SubscriptionListItem,
    SubscriptionPage,
)
from .query import (
    SubscriptionFilters,
    build_recent_keys_query,
    build_status_counts_query,
    build_subscription_query,
)

logger = logging.getLogger("keydesk.subscriptions")

_KEY_COLUMNS = (
    "id",
    "device",
    "expires_at",
    "duration",
    "game",
    "game_uid",
    "generated_by",
    "created_by_name",
    "created_at",
    "updated_at",
)


def _row_to_reseller(row: dict) -> Reseller:
    return Reseller(
        id=row["id"],
        name=row.get("name"),
        email=row.get("email"),
        role=row.get("role"),
        permissions=row.get("permissions"),
        allowed_games=row.get("allowed_games"),
        credits=row.get("credits"),
        disabled=row.get("disabled") is True,
    )


def _row_to_game(row: dict) -> Game:
    return Game(
        uid=row["uid"],
        name=row.get("name"),
        devices=row.get("devices"),
        durations=row.get("durations"),
        price=row.get("price"),
        active=row.get("active"),
    )


class PostgresSubscriptionRepository:
    """Concrete repository persisting keys and reseller credits in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def get_reseller(self, reseller_id: str) -> Optional[Reseller]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                SELECT id, name, email, role, permissions, allowed_games, credits, disabled
                FROM resellers
                WHERE id = %s
                LIMIT 1
                """,
                (reseller_id,),
            )
            row = cursor.fetchone()
            return _row_to_reseller(row) if row else None

    def get_game(self, game_uid: str, *, include_inactive: bool = False) -> Optional[Game]:
        active_clause = "" if include_inactive else "AND active IS NOT FALSE"
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                f"""
                SELECT uid, name, devices, durations, price, active
                FROM games
                WHERE uid = %s {active_clause}
                LIMIT 1
                """,
                (game_uid,),
            )
            row = cursor.fetchone()
            return _row_to_game(row) if row else None

    def provision_keys(
        self,
        reseller_id: str,
        *,
        total_cost: Decimal,
        keys: Sequence[SubscriptionKey],
    ) -> Decimal:
        """Debit ``total_cost`` and insert ``keys`` in one transaction.

        The debit is a conditional decrement guarded by ``credits >= cost``;
        when no row matches, the transaction rolls back and
        :class:`InsufficientCredits` is raised. Returns the balance after the
        debit (or the current balance when nothing is charged).
        """

        try:
            with dict_cursor(self._conn) as cursor:
                if total_cost > 0:
                    cursor.execute(
                        """
                        UPDATE resellers
                        SET credits = credits - %(cost)s, updated_at = NOW()
                        WHERE id = %(reseller_id)s AND credits >= %(cost)s
                        RETURNING credits
                        """,
                        {"cost": total_cost, "reseller_id": reseller_id},
                    )
                    row = cursor.fetchone()
                    if row is None:
                        raise InsufficientCredits()
                else:
                    cursor.execute(
                        "SELECT credits FROM resellers WHERE id = %s",
                        (reseller_id,),
                    )
                    row = cursor.fetchone()

                balance = Decimal(row["credits"]) if row and row.get("credits") is not None else Decimal("0")

                psycopg2.extras.execute_values(
                    cursor,
                    f"INSERT INTO subscription_keys ({', '.join(_KEY_COLUMNS)}) VALUES %s",
                    [
                        (
                            key.id,
                            key.device,
                            psycopg2.extras.Json(key.expires_at),
                            key.duration,
                            key.game,
                            key.game_uid,
                            key.generated_by,
                            key.created_by_name,
                            key.created_at,
                            key.updated_at,
                        )
                        for key in keys
                    ],
                    page_size=max(1, len(keys)),
                )
                if cursor.rowcount != len(keys):
                    raise RuntimeError("Failed to persist subscription keys")
                return balance
        except (InsufficientCredits, TransientStorageFailure):
            raise
        except psycopg2.Error as exc:
            logger.exception("Provisioning transaction failed for reseller %s", reseller_id)
            raise TransientStorageFailure() from exc

    def get_subscription(self, key_id: str) -> Optional[SubscriptionKey]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute("SELECT * FROM subscription_keys WHERE id = %s LIMIT 1", (key_id,))
            row = cursor.fetchone()
            return SubscriptionKey.model_validate(dict(row)) if row else None

    def disable_subscription(self, key_id: str, *, actor: str, at: datetime) -> bool:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                UPDATE subscription_keys
                SET disabled = TRUE, updated_at = %(at)s, disabled_at = %(at)s, disabled_by = %(actor)s
                WHERE id = %(id)s
                """,
                {"id": key_id, "actor": actor, "at": at},
            )
            return cursor.rowcount > 0

    def reset_subscription(self, key_id: str, *, actor: str, at: datetime) -> bool:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                UPDATE subscription_keys
                SET device = NULL,
                    iphone_id = NULL,
                    android_id = NULL,
                    expires_at = %(pending)s,
                    updated_at = %(at)s,
                    reset_at = %(at)s,
                    reset_by = %(actor)s
                WHERE id = %(id)s
                """,
                {"id": key_id, "actor": actor, "at": at, "pending": psycopg2.extras.Json(PENDING_SENTINEL)},
            )
            return cursor.rowcount > 0

    def query_subscriptions(
        self,
        filters: SubscriptionFilters,
        *,
        owner: Optional[str],
        now: int,
    ) -> SubscriptionPage:
        compiled = build_subscription_query(filters, owner=owner, now=now)
        with dict_cursor(self._conn) as cursor:
            cursor.execute(compiled.sql, compiled.params)
            row = cursor.fetchone() or {}
        items = [SubscriptionListItem.model_validate(item) for item in (row.get("items") or [])]
        return SubscriptionPage(
            items=items,
            total=int(row.get("total") or 0),
            page=filters.page,
            page_size=filters.page_size,
        )

    def count_statuses(self, *, owner: Optional[str], now: int) -> StatusCounts:
        compiled = build_status_counts_query(owner=owner, now=now)
        with dict_cursor(self._conn) as cursor:
            cursor.execute(compiled.sql, compiled.params)
            row = cursor.fetchone() or {}
        return StatusCounts(**{name: int(row.get(name) or 0) for name in StatusCounts.model_fields})

    def list_recent_keys(
        self,
        *,
        owner: Optional[str],
        limit: int,
        game_uid: Optional[str] = None,
        device: Optional[str] = None,
    ) -> List[SubscriptionKey]:
        compiled = build_recent_keys_query(owner=owner, limit=limit, game_uid=game_uid, device=device)
        with dict_cursor(self._conn) as cursor:
            cursor.execute(compiled.sql, compiled.params)
            rows = cursor.fetchall() or []
        return [SubscriptionKey.model_validate(dict(row)) for row in rows]

    def get_device(self, udid: str) -> Optional[Device]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute("SELECT udid, disabled FROM devices WHERE udid = %s LIMIT 1", (udid,))
            row = cursor.fetchone()
            return Device.model_validate(dict(row)) if row else None

    def disable_device(self, udid: str, *, actor: str, at: datetime) -> bool:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                UPDATE devices
                SET disabled = TRUE, updated_at = %(at)s, disabled_at = %(at)s, disabled_by = %(actor)s
                WHERE udid = %(udid)s
                """,
                {"udid": udid, "actor": actor, "at": at},
            )
            return cursor.rowcount > 0
