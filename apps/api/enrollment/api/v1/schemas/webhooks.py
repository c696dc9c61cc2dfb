from typing import Any

from pydantic import BaseModel


class WebhookAckOut(BaseModel):
    success: bool
    eventId: str
    eventType: str
    result: dict[str, Any] | None = None
    duplicate: bool = False


class WebhookErrorOut(BaseModel):
    success: bool = False
    eventId: str | None = None
    eventType: str | None = None
    error: str
    code: str | None = None


class WebhookEventOut(BaseModel):
    id: str | None = None
    event_id: str
    event_type: str | None = None
    processed: bool
    processed_at: str | None = None
    error_message: str | None = None
    attempts: int = 0
    result: dict[str, Any] | None = None
    created_at: str | None = None
