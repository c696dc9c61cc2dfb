from __future__ import annotations

from datetime import timedelta

from enrollment.checkout.links import CheckoutLinkIssuer
from enrollment.core.logging import get_logger
from enrollment.core.retry import sanitize_error
from enrollment.core.settings import Settings
from enrollment.core.supabase_rest import SupabaseStore
from enrollment.core.timeutil import Clock, to_iso, utcnow
from enrollment.enrollments.state_machine import (
    PAYMENT_CONFIRMED,
    REGISTRY_FAILED,
    InvalidTransitionError,
    PendingEnrollmentStateMachine,
)

logger = get_logger("worker.redrive")

# Business and validation failures wait for an operator re-drive.
AUTO_REDRIVE_ERROR_KINDS = ("transient", "credentials")


class RedriveProcessor:
    """Durable retry schedule for enrollments the webhook request could not finish."""

    def __init__(
        self,
        settings: Settings,
        store: SupabaseStore,
        state_machine: PendingEnrollmentStateMachine,
        checkout_links: CheckoutLinkIssuer,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.state_machine = state_machine
        self.checkout_links = checkout_links
        self.batch_limit = max(1, settings.REDRIVE_BATCH_LIMIT)
        self.max_registry_attempts = max(1, settings.REDRIVE_MAX_REGISTRY_ATTEMPTS)
        self.stale_after = timedelta(seconds=max(60, settings.REDRIVE_STALE_AFTER_SECONDS))
        self.clock = clock

    async def redrive_failed(self) -> dict[str, int]:
        rows = await self.store.select_pending_enrollments(
            REGISTRY_FAILED,
            limit=self.batch_limit,
            max_attempts=self.max_registry_attempts,
            error_kinds=AUTO_REDRIVE_ERROR_KINDS,
        )
        counts = {"redriven": 0, "confirmed": 0, "failed": 0, "skipped": 0, "errors": 0}
        for row in rows:
            pending_id = str(row.get("id") or "")
            if not pending_id:
                continue
            try:
                result = await self.state_machine.redrive(pending_id)
            except InvalidTransitionError:
                counts["skipped"] += 1
                continue
            except Exception as exc:
                counts["errors"] += 1
                logger.error(
                    "redrive.failed",
                    extra={
                        "component": "worker",
                        "pending_enrollment_id": pending_id,
                        "error": sanitize_error(exc, default_message="redrive failed"),
                    },
                )
                continue

            counts["redriven"] += 1
            if result.action == "registry_confirmed":
                counts["confirmed"] += 1
            elif result.action == "registry_failed":
                counts["failed"] += 1
        return counts

    async def resume_stale(self) -> dict[str, int]:
        cutoff = to_iso(self.clock() - self.stale_after)
        rows = await self.store.select_pending_enrollments(
            PAYMENT_CONFIRMED,
            limit=self.batch_limit,
            updated_before=cutoff,
        )
        counts = {"resumed": 0, "errors": 0}
        for row in rows:
            try:
                result = await self.state_machine.resume_stale(row)
            except Exception as exc:
                counts["errors"] += 1
                logger.error(
                    "redrive.resume_failed",
                    extra={
                        "component": "worker",
                        "pending_enrollment_id": row.get("id"),
                        "error": sanitize_error(exc, default_message="stale resume failed"),
                    },
                )
                continue
            if result.changed:
                counts["resumed"] += 1
        return counts

    async def run_once(self) -> dict[str, int]:
        redrive_counts = await self.redrive_failed()
        stale_counts = await self.resume_stale()
        purged = await self.checkout_links.purge()
        metrics = {
            **redrive_counts,
            "resumed": stale_counts["resumed"],
            "errors": redrive_counts["errors"] + stale_counts["errors"],
            "links_purged": purged,
        }
        logger.info("redrive.tick", extra={"component": "worker", **metrics})
        return metrics
