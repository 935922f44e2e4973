"""Subscription key domain: status, pricing, queries and provisioning."""

from .models import (
    PENDING_SENTINEL,
    Device,
    Game,
    ProvisionResult,
    Reseller,
    ResellerRole,
    StatusCounts,
    StatusFilter,
    SubscriptionKey,
    SubscriptionListItem,
    SubscriptionPage,
    SubscriptionStatus,
)
from .pricing import PricingResult, compute_pricing, format_credits, resolve_unit_price
from .query import SubscriptionFilters, SubscriptionSort, normalise_date_range
from .service import RecentKey, SubscriptionRepository, SubscriptionService, generate_key_id
from .status import derive_status, evaluate_status_rules, status_case_sql

__all__ = [
    "Device",
    "Game",
    "PENDING_SENTINEL",
    "PricingResult",
    "ProvisionResult",
    "RecentKey",
    "Reseller",
    "ResellerRole",
    "StatusCounts",
    "StatusFilter",
    "SubscriptionFilters",
    "SubscriptionKey",
    "SubscriptionListItem",
    "SubscriptionPage",
    "SubscriptionRepository",
    "SubscriptionService",
    "SubscriptionSort",
    "SubscriptionStatus",
    "compute_pricing",
    "derive_status",
    "evaluate_status_rules",
    "format_credits",
    "generate_key_id",
    "normalise_date_range",
    "resolve_unit_price",
    "status_case_sql",
]
