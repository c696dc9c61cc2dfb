from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from enrollment.api.deps import get_components
from enrollment.api.v1.schemas.webhooks import WebhookAckOut, WebhookErrorOut
from enrollment.core.components import Components
from enrollment.core.logging import get_logger
from enrollment.core.retry import sanitize_error
from enrollment.webhooks.events import MalformedEventError, parse_event

logger = get_logger("api.webhooks")

router = APIRouter(tags=["webhooks"])
components_dependency = Depends(get_components)


def _error(
    status_code: int,
    error: str,
    *,
    code: str | None = None,
    event_id: str | None = None,
    event_type: str | None = None,
) -> JSONResponse:
    body = WebhookErrorOut(eventId=event_id, eventType=event_type, error=error, code=code)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.post(
    "/webhooks/payment",
    response_model=WebhookAckOut,
    responses={
        401: {"model": WebhookErrorOut},
        500: {"model": WebhookErrorOut},
    },
)
async def receive_payment_webhook(
    request: Request,
    x_signature: str | None = Header(default=None),
    components: Components = components_dependency,
):
    raw_body = await request.body()
    if not components.signature_verifier.check(raw_body, x_signature):
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature.", code="invalid_signature")

    try:
        event = parse_event(raw_body)
    except MalformedEventError as exc:
        logger.warning(
            "webhook.malformed",
            extra={"component": "webhooks", "error": str(exc), "body_bytes": len(raw_body)},
        )
        # 200 stops gateway redelivery.
        return _error(status.HTTP_200_OK, str(exc), code="malformed_event")

    logger.info(
        "webhook.received",
        extra={"component": "webhooks", "event_id": event.event_id, "event_type": event.event_type},
    )
    try:
        outcome = await components.dispatcher.ingest(event)
    except Exception as exc:
        error = sanitize_error(exc, default_message="webhook processing failed")
        logger.error(
            "webhook.ingest_failed",
            extra={
                "component": "webhooks",
                "event_id": event.event_id,
                "event_type": event.event_type,
                "error": error,
            },
        )
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            error,
            event_id=event.event_id,
            event_type=event.event_type,
        )

    if not outcome.success:
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            outcome.error or "webhook handler failed",
            event_id=outcome.event_id,
            event_type=outcome.event_type,
        )

    return WebhookAckOut(
        success=True,
        eventId=outcome.event_id,
        eventType=outcome.event_type,
        result=outcome.result,
        duplicate=outcome.duplicate,
    )
