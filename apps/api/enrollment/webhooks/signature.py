from __future__ import annotations

import hashlib
import hmac

from enrollment.core.logging import get_logger

logger = get_logger("webhooks.signature")

_SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str) -> bool:
    """Check an HMAC-SHA256 hex signature computed over the raw request bytes."""
    if not signature_header:
        return False
    provided = signature_header.strip().lower()
    if provided.startswith(_SIGNATURE_PREFIX):
        provided = provided[len(_SIGNATURE_PREFIX) :].strip()
    if not provided:
        return False

    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("ascii"), provided.encode("ascii", errors="replace"))


class SignatureVerifier:
    def __init__(self, secret: str | None) -> None:
        self.secret = (secret or "").strip() or None

    @property
    def enforced(self) -> bool:
        return self.secret is not None

    def check(self, raw_body: bytes, signature_header: str | None) -> bool:
        if self.secret is None:
            # Degraded unverified mode.
            logger.warning(
                "webhook.signature_unverified",
                extra={
                    "component": "webhooks",
                    "reason": "PAYMENT_WEBHOOK_SECRET is not configured; accepting unverified callback",
                },
            )
            return True

        valid = verify_signature(raw_body, signature_header, self.secret)
        if not valid:
            logger.warning(
                "webhook.signature_rejected",
                extra={"component": "webhooks", "header_present": bool(signature_header)},
            )
        return valid
