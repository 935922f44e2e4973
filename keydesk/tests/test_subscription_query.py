from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from keydesk.app.subscriptions.models import StatusFilter
from keydesk.app.subscriptions.query import (
    SubscriptionFilters,
    SubscriptionSort,
    build_recent_keys_query,
    build_status_counts_query,
    build_subscription_query,
    escape_like,
    format_utc_timestamp,
    normalise_date_range,
)
from keydesk.app.subscriptions.status import status_case_sql

NOW = 1_700_000_000


def test_date_range_is_widened_to_whole_utc_days():
    filters = SubscriptionFilters.model_validate({"from": "2024-01-01T15:30:00Z", "to": "2024-02-05T03:45:10Z"})

    date_range = normalise_date_range(filters.from_date, filters.to_date)

    assert format_utc_timestamp(date_range.start) == "2024-01-01T00:00:00.000Z"
    assert format_utc_timestamp(date_range.end) == "2024-02-05T23:59:59.999Z"


def test_date_only_and_offset_inputs_normalise_in_utc():
    filters = SubscriptionFilters.model_validate({"from": "2024-03-10", "to": "2024-03-10T23:30:00-02:00"})

    date_range = normalise_date_range(filters.from_date, filters.to_date)

    assert date_range.start == datetime(2024, 3, 10, tzinfo=timezone.utc)
    assert format_utc_timestamp(date_range.end) == "2024-03-11T23:59:59.999Z"


def test_unparseable_date_is_rejected():
    with pytest.raises(ValidationError):
        SubscriptionFilters.model_validate({"from": "yesterday"})


def test_filter_defaults_and_aliases():
    filters = SubscriptionFilters.model_validate({"page": "3", "pageSize": "10", "status": "", "sort": ""})

    assert filters.page == 3
    assert filters.page_size == 10
    assert filters.offset == 20
    assert filters.status == StatusFilter.ALL
    assert filters.sort == SubscriptionSort.CREATED_AT_DESC


@pytest.mark.parametrize(
    "params",
    [
        {"page": "0"},
        {"pageSize": "101"},
        {"status": "archived"},
        {"sort": "name_asc"},
        {"q": "   "},
        {"game_uid": "x" * 129},
    ],
)
def test_invalid_parameters_are_rejected(params):
    with pytest.raises(ValidationError):
        SubscriptionFilters.model_validate(params)


def test_escape_like_handles_wildcards():
    assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


def test_listing_query_filters_on_computed_status():
    filters = SubscriptionFilters.model_validate(
        {"status": "active", "q": " ab_ ", "game_uid": "game-1", "from": "2024-01-01", "pageSize": "5", "page": "2"}
    )

    compiled = build_subscription_query(filters, owner="alice", now=NOW)

    assert status_case_sql("a") in compiled.sql
    assert "WHERE c.status = %(status)s" in compiled.sql
    assert compiled.sql.index("AS status") < compiled.sql.index("WHERE c.status")
    assert "(SELECT COUNT(*) FROM filtered) AS total" in compiled.sql
    assert compiled.params["status"] == "active"
    assert compiled.params["owner"] == "alice"
    assert compiled.params["game_uid"] == "game-1"
    assert compiled.params["id_prefix"] == "ab\\_%"
    assert compiled.params["created_from"] == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert "created_to" not in compiled.params
    assert compiled.params["limit"] == 5
    assert compiled.params["offset"] == 5
    assert compiled.params["now"] == NOW


def test_listing_query_without_filters_has_no_owner_scope():
    compiled = build_subscription_query(SubscriptionFilters(), owner=None, now=NOW)

    assert "owner" not in compiled.params
    assert "status" not in compiled.params
    assert "WHERE TRUE" in compiled.sql
    assert "f.created_at DESC, f.id DESC" in compiled.sql


def test_expiry_sort_places_non_numeric_last_when_descending():
    filters = SubscriptionFilters.model_validate({"sort": "expires_at_desc"})

    compiled = build_subscription_query(filters, owner=None, now=NOW)

    assert "f.expires_numeric DESC NULLS LAST, f.id DESC" in compiled.sql


def test_status_counts_share_the_status_expression():
    compiled = build_status_counts_query(owner="alice", now=NOW)

    assert status_case_sql("a") in compiled.sql
    assert "COUNT(*) FILTER (WHERE status = 'disabled') AS disabled" in compiled.sql
    assert compiled.params == {"now": NOW, "owner": "alice"}


def test_recent_keys_query_excludes_disabled():
    compiled = build_recent_keys_query(owner=None, limit=10, device="iphone")

    assert "k.disabled IS NOT TRUE" in compiled.sql
    assert compiled.params == {"limit": 10, "device": "iphone"}
