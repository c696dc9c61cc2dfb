from fastapi import APIRouter

from enrollment.api.v1.endpoints import checkout, pending_enrollments, webhook_events

router = APIRouter()
router.include_router(checkout.router)
router.include_router(pending_enrollments.router)
router.include_router(webhook_events.router)
