from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from enrollment.api.v1.endpoints import checkout, webhooks
from enrollment.api.v1.router import router as v1_router
from enrollment.core.logging import configure_logging, get_logger
from enrollment.core.settings import get_settings
from enrollment.middleware.request_id import RequestIDMiddleware

configure_logging()
settings = get_settings()
logger = get_logger("api.main")

if settings.webhook_secret is None:
    logger.warning(
        "webhook.secret_missing",
        extra={
            "component": "webhooks",
            "environment": settings.ENROLLMENT_ENV,
            "reason": "PAYMENT_WEBHOOK_SECRET is not configured; callbacks are accepted unverified",
        },
    )

app = FastAPI(title="Enrollment Pipeline API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Signature"],
    expose_headers=["X-Request-ID"],
)
app.add_middleware(RequestIDMiddleware)

app.include_router(checkout.public_router)
app.include_router(webhooks.router)
app.include_router(v1_router, prefix="/api/v1")


@app.get("/healthz")
def root_healthz() -> dict[str, str]:
    return {"status": "ok"}
