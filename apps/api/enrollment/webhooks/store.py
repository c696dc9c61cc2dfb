from __future__ import annotations

from typing import Any

from enrollment.core.logging import get_logger
from enrollment.core.retry import sanitize_text
from enrollment.core.supabase_rest import SupabaseStore
from enrollment.core.timeutil import Clock, to_iso, utcnow

logger = get_logger("webhooks.store")


class WebhookEventStore:
    """Idempotency ledger keyed by the gateway event id.

    Rows are only ever inserted once; afterwards the outcome columns move while
    ``processed`` is still false.
    """

    def __init__(self, store: SupabaseStore, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    async def get(self, event_id: str) -> dict[str, Any] | None:
        return await self.store.select_webhook_event(event_id)

    async def record(self, event_id: str, event_type: str, payload: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        """Insert the event if unseen. Returns ``(row, created)``."""
        created = await self.store.insert_webhook_event(
            {
                "event_id": event_id,
                "event_type": event_type,
                "payload": payload,
                "processed": False,
                "attempts": 0,
                "created_at": to_iso(self.clock()),
            }
        )
        if created is not None:
            return created, True

        existing = await self.store.select_webhook_event(event_id)
        if existing is None:
            raise RuntimeError(f"Webhook event {event_id} conflicted on insert but could not be reloaded.")
        logger.info(
            "webhook.record_conflict",
            extra={"component": "webhooks", "event_id": event_id},
        )
        return existing, False

    async def mark_processed(self, event_id: str, result: dict[str, Any]) -> dict[str, Any] | None:
        return await self.store.update_unprocessed_webhook_event(
            event_id,
            {
                "processed": True,
                "processed_at": to_iso(self.clock()),
                "result": result,
                "error_message": None,
            },
        )

    async def supersede_result(self, event_id: str, result: dict[str, Any]) -> dict[str, Any] | None:
        """Replace the outcome a concurrent no-op delivery recorded first."""
        logger.info(
            "webhook.result_superseded",
            extra={"component": "webhooks", "event_id": event_id, "action": result.get("action")},
        )
        return await self.store.update_processed_webhook_event_result(
            event_id,
            {"result": result, "processed_at": to_iso(self.clock()), "error_message": None},
        )

    async def mark_failed(self, event_id: str, error_message: str, *, attempts: int) -> dict[str, Any] | None:
        return await self.store.update_unprocessed_webhook_event(
            event_id,
            {
                "error_message": sanitize_text(error_message),
                "attempts": attempts,
            },
        )

    async def list_events(self, *, processed: bool | None = None, limit: int = 50) -> list[dict[str, Any]]:
        return await self.store.select_webhook_events(processed=processed, limit=max(1, min(limit, 200)))
