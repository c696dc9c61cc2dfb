from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from enrollment.api.deps import get_components
from enrollment.api.v1.schemas.webhooks import WebhookAckOut, WebhookEventOut
from enrollment.core.components import Components
from enrollment.core.logging import get_logger
from enrollment.core.supabase_jwt import VerifiedSupabaseAuth, verify_supabase_auth
from enrollment.webhooks.dispatcher import WebhookEventAlreadyProcessed, WebhookEventNotFound

logger = get_logger("api.webhook_events")

router = APIRouter(tags=["webhook-events"])
supabase_auth_dependency = Depends(verify_supabase_auth)
components_dependency = Depends(get_components)


def to_webhook_event_out(row: dict[str, Any]) -> WebhookEventOut:
    result = row.get("result")
    return WebhookEventOut(
        id=str(row["id"]) if row.get("id") is not None else None,
        event_id=str(row.get("event_id") or ""),
        event_type=row.get("event_type"),
        processed=bool(row.get("processed")),
        processed_at=row.get("processed_at"),
        error_message=row.get("error_message"),
        attempts=int(row.get("attempts") or 0),
        result=result if isinstance(result, dict) else None,
        created_at=row.get("created_at"),
    )


@router.get("/webhook-events")
async def list_webhook_events(
    processed: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    _auth: VerifiedSupabaseAuth = supabase_auth_dependency,
    components: Components = components_dependency,
) -> list[WebhookEventOut]:
    rows = await components.webhook_events.list_events(processed=processed, limit=limit)
    return [to_webhook_event_out(row) for row in rows]


@router.post("/webhook-events/{event_id}/replay")
async def replay_webhook_event(
    event_id: str,
    auth: VerifiedSupabaseAuth = supabase_auth_dependency,
    components: Components = components_dependency,
) -> WebhookAckOut:
    try:
        outcome = await components.dispatcher.replay(event_id)
    except WebhookEventNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found") from None
    except WebhookEventAlreadyProcessed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Webhook event was already processed",
        ) from None

    logger.info(
        "webhook.replay_requested",
        extra={"component": "api", "event_id": event_id, "user_id": auth.user_id, "success": outcome.success},
    )
    if not outcome.success:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=outcome.error or "Webhook replay failed",
        )
    return WebhookAckOut(
        success=True,
        eventId=outcome.event_id,
        eventType=outcome.event_type,
        result=outcome.result,
    )
