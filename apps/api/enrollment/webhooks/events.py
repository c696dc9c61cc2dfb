"""Gateway callback envelopes parsed into typed event variants.

The gateway sends either a flat envelope (``{"id", "type", "data"}``) or a
nested one (``{"event": {"id", "type", "data"}}``). Resource references are
pulled out here once so handlers never touch the raw payload.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

PAYMENT_CAPTURED_TYPES = frozenset({"bill_paid", "charge_paid", "charge.paid"})
PAYMENT_FAILED_TYPES = frozenset({"charge_rejected", "charge.failed", "charge.rejected"})
SUBSCRIPTION_CANCELED_TYPES = frozenset({"subscription_canceled", "subscription.canceled"})
INVOICE_ISSUED_TYPES = frozenset({"bill_created", "invoice.issued"})


class MalformedEventError(ValueError):
    pass


@dataclass(frozen=True)
class GatewayEvent:
    event_id: str
    event_type: str
    raw: dict[str, Any] = field(repr=False)


@dataclass(frozen=True)
class PaymentCaptured(GatewayEvent):
    subscription_ref: str | None = None
    customer_ref: str | None = None
    bill_ref: str | None = None
    amount: float | None = None


@dataclass(frozen=True)
class PaymentFailed(GatewayEvent):
    subscription_ref: str | None = None
    bill_ref: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class SubscriptionCanceled(GatewayEvent):
    subscription_ref: str | None = None


@dataclass(frozen=True)
class InvoiceIssued(GatewayEvent):
    subscription_ref: str | None = None
    bill_ref: str | None = None
    amount: float | None = None


@dataclass(frozen=True)
class UnknownEvent(GatewayEvent):
    pass


def parse_event(raw_body: bytes) -> GatewayEvent:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedEventError("webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedEventError("webhook body must be a JSON object")
    return parse_payload(payload, fallback_id=derived_event_id(raw_body))


def parse_payload(payload: dict[str, Any], *, fallback_id: str | None = None) -> GatewayEvent:
    envelope = payload.get("event") if isinstance(payload.get("event"), dict) else payload

    event_type = _text(envelope.get("type")) or _text(payload.get("type")) or "unknown"
    event_id = _text(envelope.get("id")) or _text(payload.get("id")) or fallback_id
    if not event_id:
        raise MalformedEventError("webhook event has no identifier")

    data = envelope.get("data")
    if not isinstance(data, dict):
        data = {}

    if event_type in PAYMENT_CAPTURED_TYPES:
        bill = _first_dict(data, "bill", "charge") or data
        return PaymentCaptured(
            event_id=event_id,
            event_type=event_type,
            raw=payload,
            subscription_ref=_subscription_ref(data),
            customer_ref=_nested_id(bill, "customer") or _nested_id(data, "customer"),
            bill_ref=_text(bill.get("id")),
            amount=_amount(bill.get("amount")),
        )
    if event_type in PAYMENT_FAILED_TYPES:
        charge = _first_dict(data, "charge", "bill") or data
        last_transaction = charge.get("last_transaction")
        reason = None
        if isinstance(last_transaction, dict):
            reason = _text(last_transaction.get("gateway_message"))
        return PaymentFailed(
            event_id=event_id,
            event_type=event_type,
            raw=payload,
            subscription_ref=_subscription_ref(data),
            bill_ref=_nested_id(charge, "bill") or _text(charge.get("id")),
            reason=reason or _text(charge.get("status")),
        )
    if event_type in SUBSCRIPTION_CANCELED_TYPES:
        return SubscriptionCanceled(
            event_id=event_id,
            event_type=event_type,
            raw=payload,
            subscription_ref=_subscription_ref(data),
        )
    if event_type in INVOICE_ISSUED_TYPES:
        bill = _first_dict(data, "bill") or data
        return InvoiceIssued(
            event_id=event_id,
            event_type=event_type,
            raw=payload,
            subscription_ref=_subscription_ref(data),
            bill_ref=_text(bill.get("id")),
            amount=_amount(bill.get("amount")),
        )
    return UnknownEvent(event_id=event_id, event_type=event_type, raw=payload)


def derived_event_id(raw_body: bytes) -> str:
    return f"sha256:{hashlib.sha256(raw_body).hexdigest()}"


def _subscription_ref(data: dict[str, Any]) -> str | None:
    # bill.subscription, charge.bill.subscription, subscription
    for container_key in ("bill", "charge"):
        container = data.get(container_key)
        if not isinstance(container, dict):
            continue
        ref = _nested_id(container, "subscription")
        if ref:
            return ref
        bill = container.get("bill")
        if isinstance(bill, dict):
            ref = _nested_id(bill, "subscription")
            if ref:
                return ref
    return _nested_id(data, "subscription")


def _nested_id(container: dict[str, Any], key: str) -> str | None:
    value = container.get(key)
    if isinstance(value, dict):
        return _text(value.get("id"))
    return _text(value)


def _first_dict(data: dict[str, Any], *keys: str) -> dict[str, Any] | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, dict):
            return value
    return None


def _text(value: object) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float | str):
        text = str(value).strip()
        return text or None
    return None


def _amount(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None
