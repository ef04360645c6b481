"""
Subscription Service for Lunanul

Owns the subscription status lifecycle: load and save through the
repository, purchases and restores through the billing client, expiry,
manual tier changes and usage resets. Observers are notified of every saved
change.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from aws_lambda_powertools import Logger

from ..constants.subscription_tiers import CURRENCY, CURRENCY_SYMBOL, PRODUCTS
from ..models.analytics import SubscriptionEventType
from ..models.errors import (
    AlreadySubscribed,
    InvalidProduct,
    ManualTierChangeDisabled,
    PersistenceError,
    PlatformStoreError,
    PurchaseCancelled,
    RestorationFailed,
    SubscriptionError,
    UsageStoreError,
    VerificationFailed,
)
from ..models.subscription import (
    PurchaseState,
    PurchaseUpdate,
    Receipt,
    SubscriptionProduct,
    SubscriptionStatus,
    Tier,
    utc_now,
)
from ..utils.retry import RetryPolicy, retry_call
from .analytics_service import AnalyticsService
from .state_repository import SubscriptionRepository
from .tier_catalog import TierCatalog, default_catalog
from .usage_store import Clock, UsageCounterStore

logger = Logger()

StatusListener = Callable[[str, SubscriptionStatus], None]

DEFAULT_REFRESH_TIMEOUT_SECONDS = 10.0


class BillingClient(Protocol):
    """Platform billing collaborator. Receipts it returns are already verified or flagged as not."""

    def purchase(self, product: SubscriptionProduct) -> Receipt:
        ...

    def restore(self) -> List[Receipt]:
        ...

    def status_stream(self) -> Iterable[PurchaseUpdate]:
        ...


class ReceiptVerifier(Protocol):
    """Server-side receipt validation against the platform store"""

    def verify(self, receipt: Receipt) -> Receipt:
        """Return the receipt as the store sees it, with `verified` set by the store"""
        ...


def default_products(catalog: Optional[TierCatalog] = None) -> Dict[str, SubscriptionProduct]:
    catalog = catalog or default_catalog()
    return {
        product_id: SubscriptionProduct(
            id=product_id,
            currency=CURRENCY,
            features=sorted(d.key for d in catalog.features_for(Tier(data["tier"]))),
            **data,
        )
        for product_id, data in PRODUCTS.items()
    }


class SubscriptionService:
    """Service for managing user subscription status"""

    def __init__(
        self,
        repository: SubscriptionRepository,
        usage_store: Optional[UsageCounterStore] = None,
        billing_client: Optional[BillingClient] = None,
        catalog: Optional[TierCatalog] = None,
        products: Optional[Dict[str, SubscriptionProduct]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT_SECONDS,
        allow_manual_tier_changes: bool = False,
        receipt_verifier: Optional[ReceiptVerifier] = None,
        analytics: Optional[AnalyticsService] = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize subscription service

        Args:
            repository: Persistence for subscription status
            usage_store: Counters used for usage snapshots and resets
            billing_client: Platform billing collaborator, required for purchase and restore
            catalog: Tier catalog used for pricing
            products: Purchasable products keyed by product id
            retry_policy: Backoff for retryable billing failures
            refresh_timeout: Seconds to wait for the store during refresh
            allow_manual_tier_changes: Enables set_tier, for debugging and tests only
            receipt_verifier: Validates client-submitted receipts; without it they are refused
            analytics: Subscription event tracking
        """
        self.repository = repository
        self.usage_store = usage_store
        self.billing_client = billing_client
        self.catalog = catalog or default_catalog()
        self.products = products or default_products(self.catalog)
        self.retry_policy = retry_policy or RetryPolicy()
        self.refresh_timeout = refresh_timeout
        self.allow_manual_tier_changes = allow_manual_tier_changes
        self.receipt_verifier = receipt_verifier
        self.analytics = analytics or AnalyticsService(clock=clock)
        self.clock = clock
        self.sleep = sleep
        self._last_known: Dict[str, SubscriptionStatus] = {}
        self._listeners: List[StatusListener] = []
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="subscription-refresh")

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener. Returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, user_id: str, status: SubscriptionStatus) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(user_id, status)
            except Exception:
                logger.exception(f"Subscription listener failed for user {user_id}")

    def last_known_status(self, user_id: str) -> Optional[SubscriptionStatus]:
        with self._lock:
            return self._last_known.get(user_id)

    def _remember(self, user_id: str, status: SubscriptionStatus) -> None:
        with self._lock:
            self._last_known[user_id] = status

    def _with_usage(self, user_id: str, status: SubscriptionStatus) -> SubscriptionStatus:
        if self.usage_store is None:
            return status
        try:
            counts = self.usage_store.get_all_counts(user_id)
        except UsageStoreError as e:
            # Snapshot only; gating reads the store itself and fails closed
            logger.warning(f"Usage snapshot unavailable for user {user_id}: {str(e)}")
            return status
        return status.model_copy(update={"usage_counts": counts})

    def _save(
        self, user_id: str, status: SubscriptionStatus, previous: Optional[SubscriptionStatus] = None
    ) -> SubscriptionStatus:
        now = self.clock()
        status = status.model_copy(update={"last_updated": now})
        self.repository.save(user_id, status)
        if previous is not None:
            self._track_transition(user_id, previous, status, now)
        status = self._with_usage(user_id, status)
        self._remember(user_id, status)
        self._notify(user_id, status)
        return status

    def _track_transition(
        self, user_id: str, previous: SubscriptionStatus, status: SubscriptionStatus, now: datetime
    ) -> None:
        before = previous.effective_tier_at(now)
        after = status.effective_tier_at(now)
        if previous.is_active and not status.is_active and previous.tier != Tier.SEEKER:
            self.analytics.track(
                user_id, SubscriptionEventType.SUBSCRIPTION_EXPIRED, from_tier=previous.tier, to_tier=after
            )
        else:
            self.analytics.track_tier_change(user_id, before, after)

    def get_status(self, user_id: str) -> SubscriptionStatus:
        """
        Get the user's status, creating the default seeker status on first access.

        Falls back to the last known good status when the repository is
        unavailable.
        """
        try:
            status = self.repository.load(user_id)
        except PersistenceError:
            cached = self.last_known_status(user_id)
            if cached is None:
                raise
            logger.warning(f"Using last known subscription status for user {user_id}")
            return cached

        if status is None:
            logger.info(f"Creating default subscription for user {user_id}")
            return self._save(user_id, SubscriptionStatus.free())

        status = self._with_usage(user_id, status)
        self._remember(user_id, status)
        return status

    def _product(self, product_id: str) -> SubscriptionProduct:
        product = self.products.get(product_id)
        if product is None:
            raise InvalidProduct(f"Unknown product {product_id}")
        return product

    def _require_billing(self) -> BillingClient:
        if self.billing_client is None:
            raise PlatformStoreError("Billing is not available")
        return self.billing_client

    def apply_receipt(self, user_id: str, receipt: Receipt) -> SubscriptionStatus:
        """Apply a verified receipt. Unverified receipts never change the status."""
        if not receipt.verified:
            logger.warning(f"Rejected unverified receipt {receipt.transaction_id} for user {user_id}")
            raise VerificationFailed(f"Receipt {receipt.transaction_id} is not verified")
        product = self._product(receipt.product_id)
        current = self.get_status(user_id)
        is_active = receipt.expires_at is None or receipt.expires_at > self.clock()
        updated = current.model_copy(update={
            "tier": product.tier,
            "is_active": is_active,
            "expiration_date": receipt.expires_at,
            "platform_subscription_id": receipt.transaction_id,
        })
        logger.info(f"Applied {product.id} receipt for user {user_id} (active={is_active})")
        status = self._save(user_id, updated, previous=current)
        if (
            current.tier == product.tier != Tier.SEEKER
            and current.platform_subscription_id not in (None, receipt.transaction_id)
        ):
            self.analytics.track(
                user_id,
                SubscriptionEventType.SUBSCRIPTION_RENEWAL,
                from_tier=product.tier,
                to_tier=product.tier,
                properties={"product_id": product.id},
            )
        return status

    def submit_receipt(self, user_id: str, receipt: Receipt) -> SubscriptionStatus:
        """
        Apply a receipt sent by a client.

        Whatever the client claims about verification is discarded; only the
        configured verifier can mark the receipt as verified.
        """
        receipt = receipt.model_copy(update={"verified": False})
        if self.receipt_verifier is None:
            logger.warning(f"Refusing client receipt {receipt.transaction_id} for user {user_id}, no verifier")
            raise VerificationFailed("Receipt verification is not configured")
        try:
            verified = self.receipt_verifier.verify(receipt)
        except SubscriptionError as e:
            self.analytics.track_error(user_id, e, context="receipt_verification")
            raise
        return self.apply_receipt(user_id, verified)

    def purchase(self, user_id: str, product_id: str) -> SubscriptionStatus:
        """
        Purchase a product.

        Purchases are never retried. A cancelled purchase returns the prior
        status without raising.
        """
        product = self._product(product_id)
        billing = self._require_billing()
        current = self.get_status(user_id)
        if current.tier != Tier.SEEKER and current.effective_tier >= product.tier:
            raise AlreadySubscribed(f"User already has {current.tier.value}")

        try:
            receipt = billing.purchase(product)
        except PurchaseCancelled:
            logger.info(f"User {user_id} cancelled purchase of {product_id}")
            self.analytics.track(
                user_id,
                SubscriptionEventType.SUBSCRIPTION_CANCELLATION,
                from_tier=current.tier,
                to_tier=product.tier,
                properties={"product_id": product_id},
            )
            return current
        except SubscriptionError as e:
            self.analytics.track_error(user_id, e, tier=current.tier, context="purchase")
            raise
        status = self.apply_receipt(user_id, receipt)
        self.analytics.track(
            user_id,
            SubscriptionEventType.SUBSCRIPTION_PURCHASE,
            from_tier=current.tier,
            to_tier=status.tier,
            properties={"product_id": product_id, "price": product.price, "currency": product.currency},
        )
        return status

    def _restorable(self, receipts: Iterable[Receipt]) -> List[Receipt]:
        now = self.clock()
        return [
            r for r in receipts
            if r.verified and r.product_id in self.products and (r.expires_at is None or r.expires_at > now)
        ]

    def _apply_restored(self, user_id: str, receipts: Iterable[Receipt]) -> SubscriptionStatus:
        candidates = self._restorable(receipts)
        if not candidates:
            logger.info(f"No restorable purchases for user {user_id}")
            return self.get_status(user_id)
        far_future = datetime.max.replace(tzinfo=timezone.utc)
        best = max(
            candidates,
            key=lambda r: (self.products[r.product_id].tier.rank, r.expires_at or far_future),
        )
        return self.apply_receipt(user_id, best)

    def restore(self, user_id: str) -> SubscriptionStatus:
        """Restore purchases; the highest tier unexpired verified receipt wins"""
        billing = self._require_billing()
        try:
            receipts = retry_call(billing.restore, self.retry_policy, self.sleep)
        except SubscriptionError as e:
            self.analytics.track_error(user_id, e, context="restore")
            if e.retryable:
                raise RestorationFailed(f"Restore failed after retries: {e.message}") from e
            raise
        candidates = self._restorable(receipts)
        status = self._apply_restored(user_id, candidates)
        if candidates:
            self.analytics.track(
                user_id,
                SubscriptionEventType.SUBSCRIPTION_RESTORED,
                to_tier=status.tier,
                properties={"receipts": len(candidates)},
            )
        return status

    def refresh(self, user_id: str, timeout: Optional[float] = None) -> SubscriptionStatus:
        """
        Re-read entitlements from the store.

        A timeout or retryable failure keeps the last known good status.
        """
        current = self.get_status(user_id)
        if self.billing_client is None:
            return current

        future = self._executor.submit(retry_call, self.billing_client.restore, self.retry_policy, self.sleep)
        try:
            receipts = future.result(timeout=timeout if timeout is not None else self.refresh_timeout)
        except FuturesTimeoutError:
            logger.warning(f"Subscription refresh timed out for user {user_id}, keeping last known status")
            return current
        except SubscriptionError as e:
            if not e.retryable:
                raise
            logger.warning(f"Subscription refresh failed for user {user_id}: {e.message}")
            return current

        if not self._restorable(receipts):
            return self.expire_if_due(user_id)
        return self._apply_restored(user_id, receipts)

    def expire(self, user_id: str) -> SubscriptionStatus:
        current = self.get_status(user_id)
        logger.info(f"Expiring {current.tier.value} subscription for user {user_id}")
        return self._save(user_id, current.model_copy(update={"is_active": False}), previous=current)

    def expire_if_due(self, user_id: str) -> SubscriptionStatus:
        current = self.get_status(user_id)
        if current.is_active and current.expired_at(self.clock()):
            return self.expire(user_id)
        return current

    def set_tier(self, user_id: str, tier: Tier) -> SubscriptionStatus:
        """Manual tier change for debugging and tests"""
        if not self.allow_manual_tier_changes:
            raise ManualTierChangeDisabled()
        current = self.get_status(user_id)
        logger.info(f"Manually changing tier for user {user_id}: {current.tier.value} -> {tier.value}")
        return self._save(user_id, current.model_copy(update={
            "tier": tier,
            "is_active": True,
            "expiration_date": None,
        }), previous=current)

    def reset_usage(self, user_id: str) -> SubscriptionStatus:
        if self.usage_store is None:
            raise UsageStoreError("No usage store configured")
        self.usage_store.reset_period(user_id)
        status = self.get_status(user_id)
        self._notify(user_id, status)
        return status

    def consume_updates(self, user_id: str, updates: Iterable[PurchaseUpdate]) -> SubscriptionStatus:
        """Apply verified purchases from the billing status stream"""
        status: Optional[SubscriptionStatus] = None
        for update in updates:
            if update.state in (PurchaseState.PURCHASED, PurchaseState.RESTORED) and update.receipt:
                if not update.receipt.verified:
                    logger.warning(f"Skipping unverified {update.state.value} update for user {user_id}")
                    continue
                status = self.apply_receipt(user_id, update.receipt)
            elif update.state == PurchaseState.ERROR:
                logger.error(f"Purchase error for user {user_id}: {update.error_message}")
            else:
                logger.info(f"Purchase {update.state.value} for user {user_id}")
        return status or self.get_status(user_id)

    def watch(self, user_id: str) -> SubscriptionStatus:
        return self.consume_updates(user_id, self._require_billing().status_stream())

    def pricing(self) -> Dict[str, Any]:
        return {
            "tiers": [self.catalog.tier_summary(tier) for tier in sorted(Tier)],
            "products": [p.model_dump(mode="json") for p in self.products.values()],
            "currency": CURRENCY,
            "currency_symbol": CURRENCY_SYMBOL,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False)
