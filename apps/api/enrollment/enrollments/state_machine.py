"""Pending-enrollment lifecycle.

    awaiting_payment  -> payment_confirmed -> registry_confirmed
    payment_confirmed -> registry_failed   -> payment_confirmed (re-drive)
    awaiting_payment | payment_confirmed   -> payment_failed

Every transition is a PATCH filtered on the allowed source statuses. A PATCH
that matches no row means a concurrent request already moved the record, and
the caller gets a no-op result carrying the status it found.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from enrollment.checkout.links import CheckoutLinkIssuer
from enrollment.core.logging import get_logger
from enrollment.core.retry import sanitize_text
from enrollment.core.supabase_rest import SupabaseStore
from enrollment.core.timeutil import Clock, to_iso, utcnow
from enrollment.enrollments.materializer import BeneficiaryMaterializer
from enrollment.registry.client import RegistryAdherenceClient
from enrollment.registry.errors import RegistryError

logger = get_logger("enrollments.state_machine")

EnrollmentStatus = Literal[
    "awaiting_payment",
    "payment_confirmed",
    "registry_confirmed",
    "registry_failed",
    "payment_failed",
]

AWAITING_PAYMENT = "awaiting_payment"
PAYMENT_CONFIRMED = "payment_confirmed"
REGISTRY_CONFIRMED = "registry_confirmed"
REGISTRY_FAILED = "registry_failed"
PAYMENT_FAILED = "payment_failed"

TERMINAL_STATUSES = frozenset({REGISTRY_CONFIRMED, PAYMENT_FAILED})


class PendingEnrollmentNotFound(Exception):
    def __init__(self, pending_enrollment_id: str) -> None:
        super().__init__(f"Pending enrollment {pending_enrollment_id} not found.")
        self.pending_enrollment_id = pending_enrollment_id


class InvalidTransitionError(Exception):
    def __init__(self, pending_enrollment_id: str, current_status: str | None, target_status: str) -> None:
        super().__init__(
            f"Pending enrollment {pending_enrollment_id} cannot move from {current_status or 'unknown'} "
            f"to {target_status}."
        )
        self.pending_enrollment_id = pending_enrollment_id
        self.current_status = current_status
        self.target_status = target_status


@dataclass(frozen=True)
class TransitionResult:
    action: str
    pending_enrollment_id: str | None
    status: str | None
    beneficiary_id: str | None = None
    beneficiary_created: bool = False
    registry_error_kind: str | None = None
    registry_error: str | None = None
    registry_attempts: int = 0

    @property
    def changed(self) -> bool:
        return self.action not in {"noop", "not_found"}

    def as_result(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "action": self.action,
            "pendingEnrollmentId": self.pending_enrollment_id,
            "status": self.status,
        }
        if self.beneficiary_id is not None:
            result["beneficiaryId"] = self.beneficiary_id
            result["beneficiaryCreated"] = self.beneficiary_created
        if self.registry_error_kind is not None:
            result["registryErrorKind"] = self.registry_error_kind
            result["registryError"] = self.registry_error
        if self.registry_attempts:
            result["registryAttempts"] = self.registry_attempts
        return result


class PendingEnrollmentStateMachine:
    def __init__(
        self,
        store: SupabaseStore,
        registry: RegistryAdherenceClient,
        materializer: BeneficiaryMaterializer,
        checkout_links: CheckoutLinkIssuer,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.registry = registry
        self.materializer = materializer
        self.checkout_links = checkout_links
        self.clock = clock

    async def confirm_payment(self, subscription_ref: str, event_id: str) -> TransitionResult:
        """Move ``awaiting_payment`` to ``payment_confirmed`` and run the registry step.

        Only the request whose conditional update wins continues; every other
        delivery of the same payment gets a no-op.
        """
        pending = await self.store.select_pending_enrollment_by_subscription_ref(subscription_ref)
        if pending is None:
            return TransitionResult(action="not_found", pending_enrollment_id=None, status=None)

        pending_id = str(pending["id"])
        confirmed = await self.store.transition_pending_enrollment(
            pending_id,
            from_statuses=(AWAITING_PAYMENT,),
            payload={"status": PAYMENT_CONFIRMED, "updated_at": self._now()},
        )
        if confirmed is None:
            return await self._noop(pending_id, PAYMENT_CONFIRMED, event_id=event_id)

        logger.info(
            "enrollment.payment_confirmed",
            extra={
                "component": "enrollments",
                "pending_enrollment_id": pending_id,
                "event_id": event_id,
            },
        )
        subscription_id = confirmed.get("subscription_id")
        if subscription_id:
            await self.checkout_links.consume(str(subscription_id))
        return await self.run_registry_step(confirmed)

    async def fail_payment(self, subscription_ref: str, reason: str | None) -> TransitionResult:
        pending = await self.store.select_pending_enrollment_by_subscription_ref(subscription_ref)
        if pending is None:
            return TransitionResult(action="not_found", pending_enrollment_id=None, status=None)

        pending_id = str(pending["id"])
        failed = await self.store.transition_pending_enrollment(
            pending_id,
            from_statuses=(AWAITING_PAYMENT, PAYMENT_CONFIRMED),
            payload={
                "status": PAYMENT_FAILED,
                "payment_failure_reason": sanitize_text(reason) if reason else None,
                "updated_at": self._now(),
            },
        )
        if failed is None:
            return await self._noop(pending_id, PAYMENT_FAILED)

        logger.info(
            "enrollment.payment_failed",
            extra={"component": "enrollments", "pending_enrollment_id": pending_id},
        )
        return TransitionResult(action="payment_failed", pending_enrollment_id=pending_id, status=PAYMENT_FAILED)

    async def redrive(self, pending_enrollment_id: str) -> TransitionResult:
        """Retry the registry step of a ``registry_failed`` record.

        Raises ``InvalidTransitionError`` when the record is in any other state,
        including when a concurrent webhook or re-drive claimed it first.
        """
        pending = await self.store.select_pending_enrollment(pending_enrollment_id)
        if pending is None:
            raise PendingEnrollmentNotFound(pending_enrollment_id)

        claimed = await self.store.transition_pending_enrollment(
            pending_enrollment_id,
            from_statuses=(REGISTRY_FAILED,),
            payload={"status": PAYMENT_CONFIRMED, "updated_at": self._now()},
        )
        if claimed is None:
            current = await self.store.select_pending_enrollment(pending_enrollment_id)
            current_status = (current or pending).get("status")
            raise InvalidTransitionError(pending_enrollment_id, current_status, PAYMENT_CONFIRMED)

        logger.info(
            "enrollment.redrive_started",
            extra={
                "component": "enrollments",
                "pending_enrollment_id": pending_enrollment_id,
                "registry_attempt_count": claimed.get("registry_attempt_count"),
            },
        )
        return await self.run_registry_step(claimed)

    async def resume_stale(self, pending: dict[str, Any]) -> TransitionResult:
        """Reclaim a record left in ``payment_confirmed`` and finish it.

        The claim is an optimistic update on ``updated_at``, so two workers
        looking at the same stale row cannot both proceed.
        """
        pending_id = str(pending["id"])
        claimed = await self.store.transition_pending_enrollment(
            pending_id,
            from_statuses=(PAYMENT_CONFIRMED,),
            payload={"updated_at": self._now()},
            expected_updated_at=str(pending.get("updated_at") or ""),
        )
        if claimed is None:
            return await self._noop(pending_id, PAYMENT_CONFIRMED)

        logger.info(
            "enrollment.stale_resumed",
            extra={"component": "enrollments", "pending_enrollment_id": pending_id},
        )
        return await self.run_registry_step(claimed)

    async def run_registry_step(self, pending: dict[str, Any]) -> TransitionResult:
        """Register a ``payment_confirmed`` record and materialize the beneficiary."""
        pending_id = str(pending["id"])
        prior_attempts = int(pending.get("registry_attempt_count") or 0)

        try:
            plan_id = pending.get("plan_id")
            plan = await self.store.select_plan(str(plan_id)) if plan_id else None
            payload = self.registry.adherence_payload(pending, plan)
            success = await self.registry.register_beneficiary(payload, pending_id)
        except RegistryError as exc:
            return await self._record_registry_failure(pending_id, prior_attempts, exc)

        materialized = await self.materializer.materialize(
            pending,
            registry_attempt_count=prior_attempts + success.attempts,
        )
        if not materialized.transitioned:
            return await self._noop(pending_id, REGISTRY_CONFIRMED)

        subscription_ref = pending.get("gateway_subscription_ref")
        if subscription_ref:
            await self.store.update_subscription_status(
                str(subscription_ref),
                "active",
                from_statuses=("pending",),
                updated_at=self._now(),
            )

        logger.info(
            "enrollment.registry_confirmed",
            extra={
                "component": "enrollments",
                "pending_enrollment_id": pending_id,
                "beneficiary_id": materialized.beneficiary_id,
                "registry_attempts": success.attempts,
            },
        )
        return TransitionResult(
            action="registry_confirmed",
            pending_enrollment_id=pending_id,
            status=REGISTRY_CONFIRMED,
            beneficiary_id=materialized.beneficiary_id,
            beneficiary_created=materialized.created,
            registry_attempts=success.attempts,
        )

    async def _record_registry_failure(
        self,
        pending_id: str,
        prior_attempts: int,
        exc: RegistryError,
    ) -> TransitionResult:
        now = self._now()
        error_text = sanitize_text(exc.message)
        failed = await self.store.transition_pending_enrollment(
            pending_id,
            from_statuses=(PAYMENT_CONFIRMED,),
            payload={
                "status": REGISTRY_FAILED,
                "last_registry_error": error_text,
                "registry_error_kind": exc.kind,
                "registry_attempt_count": prior_attempts + max(1, exc.attempts),
                "last_registry_attempt_at": now,
                "updated_at": now,
            },
        )
        if failed is None:
            return await self._noop(pending_id, REGISTRY_FAILED)

        logger.warning(
            "enrollment.registry_failed",
            extra={
                "component": "enrollments",
                "pending_enrollment_id": pending_id,
                "error_kind": exc.kind,
                "registry_attempts": exc.attempts,
                "error": error_text,
            },
        )
        return TransitionResult(
            action="registry_failed",
            pending_enrollment_id=pending_id,
            status=REGISTRY_FAILED,
            registry_error_kind=exc.kind,
            registry_error=error_text,
            registry_attempts=exc.attempts,
        )

    async def _noop(self, pending_id: str, target_status: str, *, event_id: str | None = None) -> TransitionResult:
        current = await self.store.select_pending_enrollment(pending_id)
        current_status = current.get("status") if current else None
        logger.info(
            "enrollment.transition_skipped",
            extra={
                "component": "enrollments",
                "pending_enrollment_id": pending_id,
                "current_status": current_status,
                "target_status": target_status,
                "event_id": event_id,
            },
        )
        return TransitionResult(action="noop", pending_enrollment_id=pending_id, status=current_status)

    def _now(self) -> str:
        return to_iso(self.clock())
