from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from fastapi import status

from enrollment.core.logging import get_logger
from enrollment.core.retry import mask_email
from enrollment.core.settings import Settings
from enrollment.core.supabase_rest import SupabaseStore
from enrollment.core.timeutil import Clock, parse_iso, to_iso, utcnow

logger = get_logger("checkout.links")

_TOKEN_BYTES = 32
_PAYABLE_SUBSCRIPTION_STATUSES = {"pending"}


class CheckoutLinkError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "checkout_link_error"
    message = "This checkout link cannot be used."

    def __str__(self) -> str:
        return self.message


class CheckoutLinkNotFound(CheckoutLinkError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "checkout_link_not_found"
    message = "Checkout link not found. Check the address or ask for a new payment link."


class CheckoutLinkExpired(CheckoutLinkError):
    status_code = status.HTTP_410_GONE
    code = "checkout_link_expired"
    message = "This checkout link has expired. Ask for a new payment link."


class CheckoutLinkAlreadyUsed(CheckoutLinkError):
    status_code = status.HTTP_410_GONE
    code = "checkout_link_used"
    message = "This checkout link was already used to complete a payment."


class SubscriptionNotFound(CheckoutLinkError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "subscription_not_found"
    message = "Subscription not found."


class SubscriptionNotPayable(CheckoutLinkError):
    status_code = status.HTTP_409_CONFLICT
    code = "subscription_not_payable"
    message = "Subscription is not awaiting payment."


@dataclass(frozen=True)
class IssuedCheckoutLink:
    token: str
    url: str
    expires_at: datetime
    subscription_id: str


@dataclass(frozen=True)
class CheckoutView:
    subscription_id: str
    status: str
    plan_id: str | None
    plan_name: str | None
    plan_price: float | None
    customer_name: str | None
    customer_email: str | None
    customer_document: str
    expires_at: datetime


class CheckoutLinkIssuer:
    def __init__(
        self,
        settings: Settings,
        store: SupabaseStore,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.base_url = settings.CHECKOUT_BASE_URL.rstrip("/")
        self.ttl = timedelta(hours=settings.CHECKOUT_LINK_TTL_HOURS)
        self.retention = timedelta(days=max(0, settings.CHECKOUT_LINK_RETENTION_DAYS))
        self.clock = clock

    def url_for(self, token: str) -> str:
        return f"{self.base_url}/subscription-checkout/{token}"

    async def issue(self, subscription_id: str) -> IssuedCheckoutLink:
        subscription = await self.store.select_subscription(subscription_id)
        if not isinstance(subscription, dict):
            raise SubscriptionNotFound()
        if str(subscription.get("status") or "") not in _PAYABLE_SUBSCRIPTION_STATUSES:
            raise SubscriptionNotPayable()

        now = self.clock()
        token = secrets.token_urlsafe(_TOKEN_BYTES)
        expires_at = now + self.ttl
        await self.store.insert_checkout_link(
            {
                "token": token,
                "subscription_id": subscription_id,
                "expires_at": to_iso(expires_at),
                "is_used": False,
                "created_at": to_iso(now),
            }
        )
        logger.info(
            "checkout.link_issued",
            extra={
                "component": "checkout",
                "subscription_id": subscription_id,
                "expires_at": to_iso(expires_at),
            },
        )
        return IssuedCheckoutLink(
            token=token,
            url=self.url_for(token),
            expires_at=expires_at,
            subscription_id=subscription_id,
        )

    async def redeem(self, token: str) -> CheckoutView:
        """Resolve a token for rendering checkout. Never marks the link used."""
        token = token.strip()
        link = await self.store.select_checkout_link(token) if token else None
        if not isinstance(link, dict):
            raise CheckoutLinkNotFound()
        if bool(link.get("is_used")):
            raise CheckoutLinkAlreadyUsed()

        expires_at = parse_iso(link.get("expires_at"))
        if expires_at is None or self.clock() >= expires_at:
            raise CheckoutLinkExpired()

        subscription_id = str(link.get("subscription_id") or "")
        subscription = await self.store.select_subscription(subscription_id) if subscription_id else None
        if not isinstance(subscription, dict):
            raise CheckoutLinkNotFound()

        return _checkout_view(subscription, expires_at)

    async def consume(self, subscription_id: str) -> int:
        consumed = await self.store.consume_checkout_links(subscription_id, to_iso(self.clock()))
        if consumed:
            logger.info(
                "checkout.links_consumed",
                extra={"component": "checkout", "subscription_id": subscription_id, "count": len(consumed)},
            )
        return len(consumed)

    async def purge(self) -> int:
        cutoff = self.clock() - self.retention
        removed = await self.store.delete_checkout_links_before(to_iso(cutoff))
        logger.info(
            "checkout.links_purged",
            extra={"component": "checkout", "count": removed, "cutoff": to_iso(cutoff)},
        )
        return removed


def _checkout_view(subscription: dict[str, Any], expires_at: datetime) -> CheckoutView:
    price = subscription.get("plan_price")
    return CheckoutView(
        subscription_id=str(subscription.get("id") or ""),
        status=str(subscription.get("status") or "pending"),
        plan_id=_optional_str(subscription.get("plan_id")),
        plan_name=_optional_str(subscription.get("plan_name")),
        plan_price=float(price) if isinstance(price, int | float) else None,
        customer_name=mask_name(subscription.get("customer_name")),
        customer_email=mask_email(subscription.get("customer_email")),
        customer_document="***.***.***-**",
        expires_at=expires_at,
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def mask_name(value: object) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return " ".join(f"{part[0]}{'*' * (len(part) - 1)}" for part in value.split())
