import asyncio
import copy
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import HTTPException, status

from enrollment.core.settings import Settings
from enrollment.core.timeutil import parse_iso

HOLDER_CPF = "529.982.247-25"
DEPENDENT_CPF = "111.444.777-35"
WEBHOOK_SECRET = "whsec-test-secret"
REGISTRY_ADHERENCE_URL = "https://registry.example.com/adesao"
REGISTRY_CANCELLATION_URL = "https://registry.example.com/cancelamento"


class FakeClock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _bad_gateway(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


class FakeStore:
    """In-memory stand-in for SupabaseStore with the same conditional-update rules."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.checkout_links: dict[str, dict[str, Any]] = {}
        self.webhook_events: dict[str, dict[str, Any]] = {}
        self.pending_enrollments: dict[str, dict[str, Any]] = {}
        self.beneficiaries: dict[str, dict[str, Any]] = {}
        self.registry_attempts: list[dict[str, Any]] = []
        self.plans: dict[str, dict[str, Any]] = {}
        self.fail_on: set[str] = set()

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise _bad_gateway(f"Failed to {operation} in Supabase.")

    # Seeding helpers

    def add_subscription(self, **fields: Any) -> dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "status": "pending",
            "gateway_subscription_ref": "S1",
            "customer_name": "Maria Silva",
            "customer_email": "maria@example.com",
            "customer_document": HOLDER_CPF,
            "plan_id": "plan-1",
            "plan_name": "Individual",
            "plan_price": 49.9,
            **fields,
        }
        self.subscriptions[row["id"]] = row
        return row

    def add_pending(self, **fields: Any) -> dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "subscription_id": None,
            "unit_id": "unit-1",
            "plan_id": "plan-1",
            "name": "Maria Silva",
            "document": HOLDER_CPF,
            "email": "maria@example.com",
            "phone": "(11) 98888-7777",
            "birth_date": "1990-05-17",
            "zip_code": "01234-567",
            "address_number": "100",
            "state": "sp",
            "beneficiary_type": 1,
            "holder_document": None,
            "gateway_subscription_ref": "S1",
            "status": "awaiting_payment",
            "registry_attempt_count": 0,
            "created_at": "2026-03-01T10:00:00Z",
            "updated_at": "2026-03-01T10:00:00Z",
            **fields,
        }
        self.pending_enrollments[row["id"]] = row
        return row

    def add_plan(self, plan_id: str = "plan-1", registry_plan_code: int | None = 102304) -> dict[str, Any]:
        row = {"id": plan_id, "name": "Individual", "registry_plan_code": registry_plan_code}
        self.plans[plan_id] = row
        return row

    # Checkout links

    async def insert_checkout_link(self, payload: dict[str, Any]) -> dict[str, Any]:
        self._check("insert_checkout_link")
        if payload["token"] in self.checkout_links:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Checkout link token already exists.")
        row = {"id": str(uuid.uuid4()), "used_at": None, **payload}
        self.checkout_links[payload["token"]] = row
        return copy.deepcopy(row)

    async def select_checkout_link(self, token: str) -> dict[str, Any] | None:
        self._check("select_checkout_link")
        row = self.checkout_links.get(token)
        return copy.deepcopy(row) if row else None

    async def consume_checkout_links(self, subscription_id: str, used_at: str) -> list[dict[str, Any]]:
        self._check("consume_checkout_links")
        consumed = []
        for row in self.checkout_links.values():
            if row["subscription_id"] == subscription_id and not row["is_used"]:
                row["is_used"] = True
                row["used_at"] = used_at
                consumed.append(copy.deepcopy(row))
        return consumed

    async def delete_checkout_links_before(self, cutoff: str) -> int:
        self._check("delete_checkout_links_before")
        cutoff_at = parse_iso(cutoff)
        assert cutoff_at is not None
        doomed = [
            token
            for token, row in self.checkout_links.items()
            if (parse_iso(row.get("expires_at")) or cutoff_at) < cutoff_at
            or (row.get("used_at") is not None and (parse_iso(row.get("used_at")) or cutoff_at) < cutoff_at)
        ]
        for token in doomed:
            del self.checkout_links[token]
        return len(doomed)

    # Subscriptions

    async def select_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        self._check("select_subscription")
        row = self.subscriptions.get(subscription_id)
        return copy.deepcopy(row) if row else None

    async def select_subscription_by_gateway_ref(self, gateway_subscription_ref: str) -> dict[str, Any] | None:
        for row in self.subscriptions.values():
            if row.get("gateway_subscription_ref") == gateway_subscription_ref:
                return copy.deepcopy(row)
        return None

    async def update_subscription_status(
        self,
        gateway_subscription_ref: str,
        status_value: str,
        *,
        from_statuses: tuple[str, ...],
        updated_at: str,
    ) -> list[dict[str, Any]]:
        self._check("update_subscription_status")
        updated = []
        for row in self.subscriptions.values():
            if row.get("gateway_subscription_ref") == gateway_subscription_ref and row["status"] in from_statuses:
                row["status"] = status_value
                row["updated_at"] = updated_at
                updated.append(copy.deepcopy(row))
        return updated

    # Webhook events

    async def select_webhook_event(self, event_id: str) -> dict[str, Any] | None:
        self._check("select_webhook_event")
        row = self.webhook_events.get(event_id)
        return copy.deepcopy(row) if row else None

    async def insert_webhook_event(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        self._check("insert_webhook_event")
        if payload["event_id"] in self.webhook_events:
            return None
        row = {
            "id": str(uuid.uuid4()),
            "processed_at": None,
            "error_message": None,
            "result": None,
            **copy.deepcopy(payload),
        }
        self.webhook_events[payload["event_id"]] = row
        return copy.deepcopy(row)

    async def update_unprocessed_webhook_event(self, event_id: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        self._check("update_unprocessed_webhook_event")
        row = self.webhook_events.get(event_id)
        if row is None or row["processed"]:
            return None
        row.update(copy.deepcopy(payload))
        return copy.deepcopy(row)

    async def update_processed_webhook_event_result(
        self,
        event_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        self._check("update_processed_webhook_event_result")
        row = self.webhook_events.get(event_id)
        if row is None or not row["processed"]:
            return None
        row.update(copy.deepcopy(payload))
        return copy.deepcopy(row)

    async def select_webhook_events(self, *, processed: bool | None = None, limit: int = 50) -> list[dict[str, Any]]:
        rows = [
            copy.deepcopy(row)
            for row in self.webhook_events.values()
            if processed is None or row["processed"] is processed
        ]
        rows.sort(key=lambda row: row.get("created_at") or "", reverse=True)
        return rows[:limit]

    # Pending enrollments

    async def select_pending_enrollment(self, pending_enrollment_id: str) -> dict[str, Any] | None:
        self._check("select_pending_enrollment")
        row = self.pending_enrollments.get(pending_enrollment_id)
        return copy.deepcopy(row) if row else None

    async def select_pending_enrollment_by_subscription_ref(
        self,
        gateway_subscription_ref: str,
    ) -> dict[str, Any] | None:
        self._check("select_pending_enrollment_by_subscription_ref")
        for row in self.pending_enrollments.values():
            if row.get("gateway_subscription_ref") == gateway_subscription_ref:
                return copy.deepcopy(row)
        return None

    async def transition_pending_enrollment(
        self,
        pending_enrollment_id: str,
        *,
        from_statuses: tuple[str, ...],
        payload: dict[str, Any],
        expected_updated_at: str | None = None,
    ) -> dict[str, Any] | None:
        self._check("transition_pending_enrollment")
        row = self.pending_enrollments.get(pending_enrollment_id)
        if row is None or row["status"] not in from_statuses:
            return None
        if expected_updated_at is not None and row.get("updated_at") != expected_updated_at:
            return None
        row.update(copy.deepcopy(payload))
        return copy.deepcopy(row)

    async def select_pending_enrollments(
        self,
        status_value: str,
        *,
        limit: int = 20,
        max_attempts: int | None = None,
        updated_before: str | None = None,
        error_kinds: tuple[str, ...] | None = None,
    ) -> list[dict[str, Any]]:
        self._check("select_pending_enrollments")
        before = parse_iso(updated_before) if updated_before else None
        rows = []
        for row in self.pending_enrollments.values():
            if row["status"] != status_value:
                continue
            if max_attempts is not None and int(row.get("registry_attempt_count") or 0) >= max_attempts:
                continue
            if error_kinds is not None and row.get("registry_error_kind") not in error_kinds:
                continue
            if before is not None and (parse_iso(row.get("updated_at")) or before) >= before:
                continue
            rows.append(copy.deepcopy(row))
        rows.sort(key=lambda row: row.get("updated_at") or "")
        return rows[:limit]

    # Beneficiaries

    async def select_beneficiary_by_subscription_ref(self, gateway_subscription_ref: str) -> dict[str, Any] | None:
        row = self.beneficiaries.get(gateway_subscription_ref)
        return copy.deepcopy(row) if row else None

    async def rpc_materialize_beneficiary(self, payload: dict[str, Any]) -> dict[str, Any]:
        self._check("rpc_materialize_beneficiary")
        pending = self.pending_enrollments.get(payload["p_pending_enrollment_id"])
        if pending is None or pending["status"] != "payment_confirmed":
            return {"transitioned": False, "created": False, "beneficiary_id": None}

        pending.update(
            {
                "status": "registry_confirmed",
                "registry_attempt_count": payload["p_registry_attempt_count"],
                "last_registry_attempt_at": payload["p_attempted_at"],
                "last_registry_error": None,
                "registry_error_kind": None,
                "updated_at": payload["p_attempted_at"],
            }
        )
        ref = pending["gateway_subscription_ref"]
        existing = self.beneficiaries.get(ref)
        if existing is not None:
            return {"transitioned": True, "created": False, "beneficiary_id": existing["id"]}

        row = {"id": str(uuid.uuid4()), **copy.deepcopy(payload["p_beneficiary"])}
        self.beneficiaries[ref] = row
        return {"transitioned": True, "created": True, "beneficiary_id": row["id"]}

    # Registry audit

    async def insert_registry_attempt(self, payload: dict[str, Any]) -> None:
        self._check("insert_registry_attempt")
        self.registry_attempts.append(copy.deepcopy(payload))

    async def select_plan(self, plan_id: str) -> dict[str, Any] | None:
        row = self.plans.get(plan_id)
        return copy.deepcopy(row) if row else None


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ("" if payload is None else str(payload))

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class RegistryScript:
    """Scripted registry responses consumed in order by a fake httpx.AsyncClient."""

    def __init__(self) -> None:
        self.responses: list[FakeResponse | Exception] = []
        self.calls: list[dict[str, Any]] = []

    def queue(self, *items: FakeResponse | Exception) -> None:
        self.responses.extend(items)

    def client_class(self):
        script = self

        class FakeAsyncClient:
            def __init__(self, *args, **kwargs) -> None:
                self.kwargs = kwargs

            async def __aenter__(self):
                return self

            async def __aexit__(self, exc_type, exc, tb) -> None:
                return None

            async def post(self, url: str, json: dict[str, Any], headers: dict[str, str]) -> FakeResponse:
                script.calls.append({"url": url, "json": json, "headers": headers})
                if not script.responses:
                    raise AssertionError("unexpected registry call")
                item = script.responses.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item

        return FakeAsyncClient


class SleepRecorder:
    """Records backoff delays and yields to the loop instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


def registry_success(message: str = "Beneficiário cadastrado com sucesso") -> FakeResponse:
    return FakeResponse(200, {"mensagem": message})


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "SUPABASE_URL": "https://example.supabase.co",
        "SUPABASE_ANON_KEY": "test-anon-key",
        "SUPABASE_SERVICE_ROLE_KEY": "service-role-key",
        "PAYMENT_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "CHECKOUT_BASE_URL": "https://app.example.com",
        "REGISTRY_ADHERENCE_URL": REGISTRY_ADHERENCE_URL,
        "REGISTRY_CANCELLATION_URL": REGISTRY_CANCELLATION_URL,
        "REGISTRY_API_KEY": "registry-key-123",
        "REGISTRY_CLIENT_ID": 10,
        "REGISTRY_CONTRACT_ID": 20,
    }
    values.update(overrides)
    return Settings(**values)


