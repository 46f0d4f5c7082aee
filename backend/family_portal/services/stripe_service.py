"""Stripe API gateway

Every call passes the API key explicitly; nothing here touches the global
`stripe.api_key`, so engines can be handed a fake gateway in tests.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from family_portal.core.config import Settings, settings
from family_portal.core.errors import ProcessorError, WebhookSignatureError
from family_portal.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PriceCatalog:
    """Stripe Price ids of the family plan

    - base: one per cycle, quantity 1 (parent + first child)
    - additional child: one per cycle, quantity = children - 1
    """

    base_monthly: str
    base_yearly: str
    additional_monthly: str
    additional_yearly: str

    @classmethod
    def from_settings(cls, s: Settings) -> "PriceCatalog":
        return cls(
            base_monthly=s.STRIPE_PRICE_FAMILY_BASE_MONTHLY,
            base_yearly=s.STRIPE_PRICE_FAMILY_BASE_YEARLY,
            additional_monthly=s.STRIPE_PRICE_ADDITIONAL_CHILD_MONTHLY,
            additional_yearly=s.STRIPE_PRICE_ADDITIONAL_CHILD_YEARLY,
        )

    def base_price(self, billing_cycle: str) -> str:
        return self.base_monthly if billing_cycle == "monthly" else self.base_yearly

    def additional_price(self, billing_cycle: str) -> str:
        return self.additional_monthly if billing_cycle == "monthly" else self.additional_yearly

    def is_base(self, price_id: str) -> bool:
        return price_id in (self.base_monthly, self.base_yearly)

    def is_additional(self, price_id: str) -> bool:
        return price_id in (self.additional_monthly, self.additional_yearly)

    def cycle_of(self, price_id: str) -> Optional[str]:
        if price_id in (self.base_monthly, self.additional_monthly):
            return "monthly"
        if price_id in (self.base_yearly, self.additional_yearly):
            return "yearly"
        return None


# =========================================================
# Payload helpers (work on StripeObject and plain dicts alike)
# =========================================================

def to_datetime(ts: Optional[int]) -> Optional[datetime]:
    """Unix timestamp -> naive UTC datetime (the DB stores naive UTC)"""
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_timestamp(dt: datetime) -> int:
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


def subscription_items(subscription) -> list:
    items = subscription.get("items") or {}
    return list(items.get("data") or [])


def item_price_id(item) -> Optional[str]:
    price = item.get("price")
    if isinstance(price, str):
        return price
    return price.get("id") if price else None


def subscription_period_end(subscription) -> Optional[datetime]:
    """current_period_end lives on the subscription in older API versions
    and on each subscription item in newer ones."""
    ts = subscription.get("current_period_end")
    if not ts:
        items = subscription_items(subscription)
        if items:
            ts = items[0].get("current_period_end")
    return to_datetime(ts)


def object_id(value) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def invoice_subscription_id(invoice) -> Optional[str]:
    sub = object_id(invoice.get("subscription"))
    if sub:
        return sub
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription"))


def line_is_proration(line) -> bool:
    if line.get("proration") is not None:
        return bool(line.get("proration"))
    parent = line.get("parent") or {}
    for key in ("subscription_item_details", "invoice_item_details"):
        details = parent.get(key) or {}
        if details.get("proration"):
            return True
    return False


# =========================================================
# Gateway
# =========================================================

class StripeGateway:
    """Thin wrapper over the Stripe SDK; raises ProcessorError on API failure"""

    def __init__(self, api_key: str, catalog: PriceCatalog, webhook_secret: str = ""):
        self.api_key = api_key
        self.catalog = catalog
        self.webhook_secret = webhook_secret

    def _call(self, action: str, fn, *args, **kwargs) -> Any:
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe {action} failed: {e}")
            raise ProcessorError(f"Stripe {action} failed") from e

    # --- Subscriptions ---

    def retrieve_subscription(self, subscription_id: str):
        return self._call("subscription retrieve", stripe.Subscription.retrieve, subscription_id)

    def update_subscription(
        self,
        subscription_id: str,
        items: Optional[list[dict]] = None,
        proration_behavior: Optional[str] = None,
        metadata: Optional[dict] = None,
    ):
        params: dict = {}
        if items:
            params["items"] = items
        if proration_behavior:
            params["proration_behavior"] = proration_behavior
        if metadata is not None:
            params["metadata"] = metadata
        sub = self._call("subscription update", stripe.Subscription.modify, subscription_id, **params)
        logger.info(f"Stripe subscription updated: {subscription_id}, proration={proration_behavior}")
        return sub

    def preview_invoice(self, customer_id: str, subscription_id: str, items: list[dict]):
        """Upcoming invoice if `items` were applied now with prorations"""
        return self._call(
            "invoice preview",
            stripe.Invoice.create_preview,
            customer=customer_id,
            subscription=subscription_id,
            subscription_details={
                "items": items,
                "proration_behavior": "create_prorations",
            },
        )

    # --- Subscription schedules ---

    def list_subscription_schedules(self, customer_id: str) -> list:
        result = self._call("schedule list", stripe.SubscriptionSchedule.list, customer=customer_id)
        return list(result.get("data") or [])

    def create_schedule_from_subscription(self, subscription_id: str):
        return self._call(
            "schedule create", stripe.SubscriptionSchedule.create, from_subscription=subscription_id
        )

    def update_schedule(self, schedule_id: str, phases: list[dict], end_behavior: str = "release"):
        return self._call(
            "schedule update",
            stripe.SubscriptionSchedule.modify,
            schedule_id,
            phases=phases,
            end_behavior=end_behavior,
        )

    def release_schedule(self, schedule_id: str):
        """Detach the schedule; the subscription keeps running as-is"""
        logger.info(f"Stripe schedule release: {schedule_id}")
        return self._call("schedule release", stripe.SubscriptionSchedule.release, schedule_id)

    # --- Checkout / portal ---

    def create_checkout_session(
        self,
        line_items: list[dict],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> str:
        params = {
            "mode": "subscription",
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            params["customer_email"] = customer_email
        if metadata:
            params["metadata"] = metadata
            params["subscription_data"] = {"metadata": metadata}
        session = self._call("checkout session create", stripe.checkout.Session.create, **params)
        return session.get("url")

    def retrieve_checkout_session(self, session_id: str):
        return self._call("checkout session retrieve", stripe.checkout.Session.retrieve, session_id)

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "billing portal create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session.get("url")

    # --- Webhooks ---

    def construct_event(self, payload: bytes, sig_header: str):
        """Verify the Stripe-Signature header and parse the event"""
        if not sig_header:
            raise WebhookSignatureError("Falta la firma del webhook")
        try:
            return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.error(f"Stripe webhook signature verification failed: {e}")
            raise WebhookSignatureError() from e


def get_stripe_gateway() -> StripeGateway:
    """FastAPI dependency: gateway built from settings"""
    return StripeGateway(
        api_key=settings.STRIPE_SECRET_KEY,
        catalog=PriceCatalog.from_settings(settings),
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
    )
