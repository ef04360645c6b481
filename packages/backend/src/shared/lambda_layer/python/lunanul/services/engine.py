"""
Wiring for the entitlement engine inside a Lambda process.

Services are built per request. The in-flight guard and the replay cache
are process-wide and outlive a single invocation on a warm container.
"""

import os
from dataclasses import dataclass
from typing import Optional

from ..utils.inflight import InFlightGuard, ReplayCache
from .analytics_service import AnalyticsService
from .entitlement_service import EntitlementService
from .state_repository import EventRepository, OnboardingRepository, SubscriptionRepository
from .subscription_service import (
    DEFAULT_REFRESH_TIMEOUT_SECONDS,
    BillingClient,
    ReceiptVerifier,
    SubscriptionService,
)
from .suggestion_service import SuggestionService
from .tier_catalog import TierCatalog, default_catalog
from .usage_store import DynamoDBUsageCounterStore

PROCESS_GUARD = InFlightGuard()
PROCESS_REPLAY_CACHE = ReplayCache()


@dataclass
class EntitlementEngine:
    subscriptions: SubscriptionService
    entitlements: EntitlementService
    suggestions: SuggestionService
    analytics: AnalyticsService


def build_engine(
    table_name: str,
    catalog: Optional[TierCatalog] = None,
    billing_client: Optional[BillingClient] = None,
    receipt_verifier: Optional[ReceiptVerifier] = None,
    allow_manual_tier_changes: bool = False,
    guard: Optional[InFlightGuard] = None,
) -> EntitlementEngine:
    catalog = catalog or default_catalog()
    usage_store = DynamoDBUsageCounterStore(table_name)
    analytics = AnalyticsService(EventRepository(table_name))
    entitlements = EntitlementService(
        usage_store,
        catalog=catalog,
        guard=guard or PROCESS_GUARD,
        replay_cache=PROCESS_REPLAY_CACHE,
        analytics=analytics,
    )
    return EntitlementEngine(
        subscriptions=SubscriptionService(
            SubscriptionRepository(table_name),
            usage_store=usage_store,
            billing_client=billing_client,
            catalog=catalog,
            refresh_timeout=float(os.environ.get("REFRESH_TIMEOUT_SECONDS", DEFAULT_REFRESH_TIMEOUT_SECONDS)),
            allow_manual_tier_changes=allow_manual_tier_changes,
            receipt_verifier=receipt_verifier,
            analytics=analytics,
        ),
        entitlements=entitlements,
        suggestions=SuggestionService(entitlements, OnboardingRepository(table_name), analytics=analytics),
        analytics=analytics,
    )
