from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from enrollment.core.logging import get_logger
from enrollment.core.retry import sanitize_error
from enrollment.core.supabase_rest import SupabaseStore
from enrollment.core.timeutil import Clock, to_iso, utcnow
from enrollment.enrollments.state_machine import PAYMENT_CONFIRMED, PendingEnrollmentStateMachine
from enrollment.registry.client import RegistryAdherenceClient
from enrollment.registry.errors import RegistryError
from enrollment.registry.payload import external_code_for
from enrollment.webhooks.events import (
    GatewayEvent,
    InvoiceIssued,
    PaymentCaptured,
    PaymentFailed,
    SubscriptionCanceled,
    UnknownEvent,
    parse_payload,
)
from enrollment.webhooks.store import WebhookEventStore

logger = get_logger("webhooks.dispatcher")


class WebhookEventNotFound(Exception):
    pass


class WebhookEventAlreadyProcessed(Exception):
    pass


class EnrollmentInProgress(Exception):
    """Another delivery confirmed the payment and has not finished the registry step."""


@dataclass(frozen=True)
class IngestOutcome:
    success: bool
    event_id: str
    event_type: str
    result: dict[str, Any] | None = None
    duplicate: bool = False
    error: str | None = None


class EventDispatcher:
    """Exactly-once handling of gateway events over at-least-once delivery."""

    def __init__(
        self,
        events: WebhookEventStore,
        state_machine: PendingEnrollmentStateMachine,
        store: SupabaseStore,
        registry: RegistryAdherenceClient,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.events = events
        self.state_machine = state_machine
        self.store = store
        self.registry = registry
        self.clock = clock

    async def ingest(self, event: GatewayEvent) -> IngestOutcome:
        existing = await self.events.get(event.event_id)
        if existing is None:
            existing, created = await self.events.record(event.event_id, event.event_type, event.raw)
            if not created:
                logger.info(
                    "webhook.concurrent_delivery",
                    extra={"component": "webhooks", "event_id": event.event_id},
                )

        if bool(existing.get("processed")):
            logger.info(
                "webhook.duplicate",
                extra={"component": "webhooks", "event_id": event.event_id, "event_type": event.event_type},
            )
            return IngestOutcome(
                success=True,
                event_id=event.event_id,
                event_type=event.event_type,
                result=_stored_result(existing),
                duplicate=True,
            )

        return await self._dispatch(event, attempts=int(existing.get("attempts") or 0))

    async def replay(self, event_id: str) -> IngestOutcome:
        """Re-dispatch a stored event that has not been processed yet."""
        existing = await self.events.get(event_id)
        if existing is None:
            raise WebhookEventNotFound(event_id)
        if bool(existing.get("processed")):
            raise WebhookEventAlreadyProcessed(event_id)

        payload = existing.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        # The stored id wins; it may have been derived from the raw body.
        event = replace(parse_payload(payload, fallback_id=event_id), event_id=event_id)

        logger.info(
            "webhook.replay",
            extra={"component": "webhooks", "event_id": event_id, "event_type": event.event_type},
        )
        return await self._dispatch(event, attempts=int(existing.get("attempts") or 0))

    async def _dispatch(self, event: GatewayEvent, *, attempts: int) -> IngestOutcome:
        try:
            result = await self._handle(event)
        except EnrollmentInProgress as exc:
            # Left unprocessed so the redelivery reads the finished outcome.
            logger.info(
                "webhook.in_progress",
                extra={"component": "webhooks", "event_id": event.event_id, "event_type": event.event_type},
            )
            return IngestOutcome(
                success=False,
                event_id=event.event_id,
                event_type=event.event_type,
                error=str(exc),
            )
        except Exception as exc:
            error = sanitize_error(exc, default_message="webhook handler failed")
            logger.error(
                "webhook.handler_failed",
                extra={
                    "component": "webhooks",
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "error": error,
                },
            )
            try:
                await self.events.mark_failed(event.event_id, error, attempts=attempts + 1)
            except Exception as mark_exc:
                logger.error(
                    "webhook.mark_failed_error",
                    extra={
                        "component": "webhooks",
                        "event_id": event.event_id,
                        "error": sanitize_error(mark_exc, default_message="failed to persist webhook error"),
                    },
                )
            return IngestOutcome(
                success=False,
                event_id=event.event_id,
                event_type=event.event_type,
                error=error,
            )

        marked = await self.events.mark_processed(event.event_id, result)
        if marked is None and result.get("action") != "noop":
            await self.events.supersede_result(event.event_id, result)
        logger.info(
            "webhook.processed",
            extra={
                "component": "webhooks",
                "event_id": event.event_id,
                "event_type": event.event_type,
                "action": result.get("action"),
            },
        )
        return IngestOutcome(success=True, event_id=event.event_id, event_type=event.event_type, result=result)

    async def _handle(self, event: GatewayEvent) -> dict[str, Any]:
        if isinstance(event, PaymentCaptured):
            return await self._on_payment_captured(event)
        if isinstance(event, PaymentFailed):
            return await self._on_payment_failed(event)
        if isinstance(event, SubscriptionCanceled):
            return await self._on_subscription_canceled(event)
        if isinstance(event, InvoiceIssued):
            return {
                "action": "acknowledged",
                "billRef": event.bill_ref,
                "subscriptionRef": event.subscription_ref,
            }
        if isinstance(event, UnknownEvent):
            logger.info(
                "webhook.unknown_type",
                extra={"component": "webhooks", "event_id": event.event_id, "event_type": event.event_type},
            )
        return {"action": "ignored", "reason": f"unsupported event type {event.event_type}"}

    async def _on_payment_captured(self, event: PaymentCaptured) -> dict[str, Any]:
        if not event.subscription_ref:
            return {"action": "ignored", "reason": "event has no subscription reference"}

        transition = await self.state_machine.confirm_payment(event.subscription_ref, event.event_id)
        if transition.action == "noop" and transition.status == PAYMENT_CONFIRMED:
            raise EnrollmentInProgress(
                f"Enrollment {transition.pending_enrollment_id} is still being registered; retry later."
            )
        if transition.action == "not_found":
            return {
                "action": "ignored",
                "reason": "no pending enrollment for subscription",
                "subscriptionRef": event.subscription_ref,
            }
        return {**transition.as_result(), "subscriptionRef": event.subscription_ref}

    async def _on_payment_failed(self, event: PaymentFailed) -> dict[str, Any]:
        if not event.subscription_ref:
            return {"action": "ignored", "reason": "event has no subscription reference"}

        transition = await self.state_machine.fail_payment(event.subscription_ref, event.reason)
        if transition.action == "not_found":
            return {
                "action": "ignored",
                "reason": "no pending enrollment for subscription",
                "subscriptionRef": event.subscription_ref,
            }
        return {**transition.as_result(), "subscriptionRef": event.subscription_ref}

    async def _on_subscription_canceled(self, event: SubscriptionCanceled) -> dict[str, Any]:
        if not event.subscription_ref:
            return {"action": "ignored", "reason": "event has no subscription reference"}

        canceled = await self.store.update_subscription_status(
            event.subscription_ref,
            "canceled",
            from_statuses=("pending", "active"),
            updated_at=to_iso(self.clock()),
        )
        transition = await self.state_machine.fail_payment(event.subscription_ref, "subscription canceled")
        result: dict[str, Any] = {
            "action": "subscription_canceled",
            "subscriptionRef": event.subscription_ref,
            "subscriptionUpdated": bool(canceled),
            "enrollment": transition.as_result() if transition.action != "not_found" else None,
        }

        beneficiary = await self.store.select_beneficiary_by_subscription_ref(event.subscription_ref)
        if beneficiary is not None:
            result["registryCancellation"] = await self._cancel_at_registry(event.subscription_ref, beneficiary)
        return result

    async def _cancel_at_registry(self, subscription_ref: str, beneficiary: dict[str, Any]) -> dict[str, Any]:
        pending_id = beneficiary.get("pending_enrollment_id")
        document = beneficiary.get("document")
        if not document:
            return {"success": False, "errorKind": "validation", "error": "beneficiary document is unknown"}
        try:
            await self.registry.cancel_beneficiary(
                str(document),
                external_code_for(subscription_ref),
                pending_enrollment_id=str(pending_id) if pending_id else None,
            )
        except RegistryError as exc:
            return {"success": False, "errorKind": exc.kind, "error": exc.message, "attempts": exc.attempts}
        return {"success": True}


def _stored_result(row: dict[str, Any]) -> dict[str, Any] | None:
    result = row.get("result")
    return result if isinstance(result, dict) else None
