from typing import Any

from pydantic import BaseModel


class PendingEnrollmentOut(BaseModel):
    id: str
    subscription_id: str | None = None
    plan_id: str | None = None
    name: str | None = None
    document: str | None = None
    email: str | None = None
    beneficiary_type: int | None = None
    gateway_subscription_ref: str | None = None
    status: str
    last_registry_error: str | None = None
    registry_error_kind: str | None = None
    registry_attempt_count: int = 0
    last_registry_attempt_at: str | None = None
    payment_failure_reason: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class RedriveOut(BaseModel):
    success: bool
    result: dict[str, Any]
