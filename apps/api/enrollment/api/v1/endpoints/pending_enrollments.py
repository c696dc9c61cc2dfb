from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from enrollment.api.deps import get_components
from enrollment.api.v1.schemas.pending_enrollments import PendingEnrollmentOut, RedriveOut
from enrollment.core.components import Components
from enrollment.core.logging import get_logger
from enrollment.core.retry import mask_document
from enrollment.core.supabase_jwt import VerifiedSupabaseAuth, verify_supabase_auth
from enrollment.enrollments.state_machine import InvalidTransitionError, PendingEnrollmentNotFound

logger = get_logger("api.pending_enrollments")

router = APIRouter(tags=["pending-enrollments"])
supabase_auth_dependency = Depends(verify_supabase_auth)
components_dependency = Depends(get_components)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_pending_enrollment_out(row: dict[str, Any]) -> PendingEnrollmentOut:
    beneficiary_type = row.get("beneficiary_type")
    return PendingEnrollmentOut(
        id=str(row.get("id")),
        subscription_id=_optional_text(row.get("subscription_id")),
        plan_id=_optional_text(row.get("plan_id")),
        name=_optional_text(row.get("name")),
        document=mask_document(row.get("document")),
        email=_optional_text(row.get("email")),
        beneficiary_type=beneficiary_type if isinstance(beneficiary_type, int) else None,
        gateway_subscription_ref=_optional_text(row.get("gateway_subscription_ref")),
        status=str(row.get("status") or ""),
        last_registry_error=_optional_text(row.get("last_registry_error")),
        registry_error_kind=_optional_text(row.get("registry_error_kind")),
        registry_attempt_count=int(row.get("registry_attempt_count") or 0),
        last_registry_attempt_at=_optional_text(row.get("last_registry_attempt_at")),
        payment_failure_reason=_optional_text(row.get("payment_failure_reason")),
        created_at=_optional_text(row.get("created_at")),
        updated_at=_optional_text(row.get("updated_at")),
    )


@router.get("/pending-enrollments/{pending_enrollment_id}")
async def get_pending_enrollment(
    pending_enrollment_id: str,
    _auth: VerifiedSupabaseAuth = supabase_auth_dependency,
    components: Components = components_dependency,
) -> PendingEnrollmentOut:
    row = await components.store.select_pending_enrollment(pending_enrollment_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pending enrollment not found")
    return to_pending_enrollment_out(row)


@router.post("/pending-enrollments/{pending_enrollment_id}/redrive")
async def redrive_pending_enrollment(
    pending_enrollment_id: str,
    auth: VerifiedSupabaseAuth = supabase_auth_dependency,
    components: Components = components_dependency,
) -> RedriveOut:
    try:
        transition = await components.state_machine.redrive(pending_enrollment_id)
    except PendingEnrollmentNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Pending enrollment not found",
        ) from None
    except InvalidTransitionError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Pending enrollment is {exc.current_status or 'unknown'}; only registry_failed can be re-driven",
        ) from None

    logger.info(
        "enrollment.redrive_requested",
        extra={
            "component": "api",
            "pending_enrollment_id": pending_enrollment_id,
            "user_id": auth.user_id,
            "action": transition.action,
        },
    )
    return RedriveOut(success=transition.action == "registry_confirmed", result=transition.as_result())
