from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from enrollment.core.logging import get_logger
from enrollment.core.supabase_rest import SupabaseStore
from enrollment.core.timeutil import Clock, to_iso, utcnow

logger = get_logger("enrollments.materializer")

_COPIED_FIELDS = (
    "subscription_id",
    "unit_id",
    "plan_id",
    "name",
    "document",
    "email",
    "phone",
    "birth_date",
    "address",
    "address_number",
    "city",
    "state",
    "zip_code",
    "plan_price",
    "notes",
    "beneficiary_type",
    "holder_document",
    "gateway_customer_ref",
    "gateway_subscription_ref",
)


@dataclass(frozen=True)
class MaterializationResult:
    transitioned: bool
    created: bool
    beneficiary_id: str | None


def beneficiary_row(pending: dict[str, Any], enrollment_date: str) -> dict[str, Any]:
    row = {key: pending.get(key) for key in _COPIED_FIELDS}
    row.update(
        {
            "pending_enrollment_id": pending.get("id"),
            "status": "active",
            "payment_status": "paid",
            "enrollment_date": enrollment_date,
        }
    )
    return row


class BeneficiaryMaterializer:
    """Turns a registry-confirmed pending enrollment into a beneficiary.

    The status change and the insert happen inside one database function, and
    the unique key on ``gateway_subscription_ref`` keeps a second call from
    creating a duplicate.
    """

    def __init__(self, store: SupabaseStore, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    async def materialize(self, pending: dict[str, Any], *, registry_attempt_count: int) -> MaterializationResult:
        now = to_iso(self.clock())
        result = await self.store.rpc_materialize_beneficiary(
            {
                "p_pending_enrollment_id": pending.get("id"),
                "p_registry_attempt_count": registry_attempt_count,
                "p_attempted_at": now,
                "p_beneficiary": beneficiary_row(pending, now[:10]),
            }
        )
        beneficiary_id = result.get("beneficiary_id")
        outcome = MaterializationResult(
            transitioned=bool(result.get("transitioned")),
            created=bool(result.get("created")),
            beneficiary_id=str(beneficiary_id) if beneficiary_id else None,
        )
        logger.info(
            "enrollment.beneficiary_materialized",
            extra={
                "component": "enrollments",
                "pending_enrollment_id": pending.get("id"),
                "beneficiary_id": outcome.beneficiary_id,
                "created": outcome.created,
                "transitioned": outcome.transitioned,
            },
        )
        return outcome
