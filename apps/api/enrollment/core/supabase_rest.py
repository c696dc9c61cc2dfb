from typing import Any

import httpx
from fastapi import HTTPException, status

from enrollment.core.settings import Settings


def _validated_list_payload(payload: Any, error_message: str) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_message)
    for item in payload:
        if not isinstance(item, dict):
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_message)
    return payload


def _in_filter(values: list[str] | tuple[str, ...]) -> str:
    return f"in.({','.join(values)})"


def _quoted(value: str) -> str:
    return f'"{value}"'


class SupabaseStore:
    """Service-role access to the enrollment tables through PostgREST.

    Every state change is a conditional PATCH filtered on the current state, so
    an update that matches no rows means another request got there first.
    """

    def __init__(self, settings: Settings) -> None:
        self.base_url = f"{settings.SUPABASE_URL.rstrip('/')}/rest/v1"
        self.service_role_key = (settings.SUPABASE_SERVICE_ROLE_KEY or "").strip()
        self.timeout = settings.SUPABASE_TIMEOUT_SECONDS

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        if not self.service_role_key:
            raise HTTPException(
                status_code=status.HTTP_501_NOT_IMPLEMENTED,
                detail="Supabase service role is not configured.",
            )
        headers = {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key,
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _select(
        self,
        table: str,
        params: dict[str, str],
        *,
        error_detail: str,
    ) -> list[dict[str, Any]]:
        url = f"{self.base_url}/{table}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

        return _validated_list_payload(response.json(), error_detail)

    async def _select_one(
        self,
        table: str,
        params: dict[str, str],
        *,
        error_detail: str,
    ) -> dict[str, Any] | None:
        rows = await self._select(table, {**params, "limit": "1"}, error_detail=error_detail)
        return rows[0] if rows else None

    async def _insert(
        self,
        table: str,
        payload: dict[str, Any],
        *,
        error_detail: str,
    ) -> dict[str, Any] | None:
        """Insert one row; returns None when a unique constraint rejects it."""
        url = f"{self.base_url}/{table}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers=self._headers("return=representation"),
                )
                if response.status_code == status.HTTP_409_CONFLICT:
                    return None
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

        rows = _validated_list_payload(response.json(), error_detail)
        created = rows[0] if rows else None
        if not isinstance(created, dict):
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail)
        return created

    async def _patch(
        self,
        table: str,
        params: dict[str, str],
        payload: dict[str, Any],
        *,
        error_detail: str,
    ) -> list[dict[str, Any]]:
        url = f"{self.base_url}/{table}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.patch(
                    url,
                    params=params,
                    json=payload,
                    headers=self._headers("return=representation"),
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

        return _validated_list_payload(response.json(), error_detail)

    async def _delete(
        self,
        table: str,
        params: dict[str, str],
        *,
        error_detail: str,
    ) -> int:
        url = f"{self.base_url}/{table}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.delete(
                    url,
                    params={**params, "select": "id"},
                    headers=self._headers("return=representation"),
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

        return len(_validated_list_payload(response.json(), error_detail))

    async def _rpc(self, function: str, payload: dict[str, Any], *, error_detail: str) -> Any:
        url = f"{self.base_url}/rpc/{function}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

        return response.json()

    # Checkout links

    async def insert_checkout_link(self, payload: dict[str, Any]) -> dict[str, Any]:
        created = await self._insert(
            "subscription_checkout_links",
            payload,
            error_detail="Failed to create checkout link in Supabase.",
        )
        if created is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Checkout link token already exists.",
            )
        return created

    async def select_checkout_link(self, token: str) -> dict[str, Any] | None:
        return await self._select_one(
            "subscription_checkout_links",
            {
                "select": "id,token,subscription_id,expires_at,is_used,used_at,created_at",
                "token": f"eq.{token}",
            },
            error_detail="Failed to fetch checkout link from Supabase.",
        )

    async def consume_checkout_links(self, subscription_id: str, used_at: str) -> list[dict[str, Any]]:
        return await self._patch(
            "subscription_checkout_links",
            {
                "subscription_id": f"eq.{subscription_id}",
                "is_used": "eq.false",
                "select": "id,token,subscription_id",
            },
            {"is_used": True, "used_at": used_at},
            error_detail="Failed to consume checkout links in Supabase.",
        )

    async def delete_checkout_links_before(self, cutoff: str) -> int:
        return await self._delete(
            "subscription_checkout_links",
            {"or": f"(expires_at.lt.{_quoted(cutoff)},used_at.lt.{_quoted(cutoff)})"},
            error_detail="Failed to purge checkout links in Supabase.",
        )

    # Subscriptions

    async def select_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        return await self._select_one(
            "subscriptions",
            {"select": "*", "id": f"eq.{subscription_id}"},
            error_detail="Failed to fetch subscription from Supabase.",
        )

    async def select_subscription_by_gateway_ref(self, gateway_subscription_ref: str) -> dict[str, Any] | None:
        return await self._select_one(
            "subscriptions",
            {"select": "*", "gateway_subscription_ref": f"eq.{gateway_subscription_ref}"},
            error_detail="Failed to fetch subscription from Supabase.",
        )

    async def update_subscription_status(
        self,
        gateway_subscription_ref: str,
        status_value: str,
        *,
        from_statuses: tuple[str, ...],
        updated_at: str,
    ) -> list[dict[str, Any]]:
        return await self._patch(
            "subscriptions",
            {
                "gateway_subscription_ref": f"eq.{gateway_subscription_ref}",
                "status": _in_filter(from_statuses),
                "select": "id,status,gateway_subscription_ref",
            },
            {"status": status_value, "updated_at": updated_at},
            error_detail="Failed to update subscription status in Supabase.",
        )

    # Webhook events

    async def select_webhook_event(self, event_id: str) -> dict[str, Any] | None:
        return await self._select_one(
            "payment_webhook_events",
            {"select": "*", "event_id": f"eq.{event_id}"},
            error_detail="Failed to fetch webhook event from Supabase.",
        )

    async def insert_webhook_event(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        return await self._insert(
            "payment_webhook_events",
            payload,
            error_detail="Failed to record webhook event in Supabase.",
        )

    async def update_unprocessed_webhook_event(
        self,
        event_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        rows = await self._patch(
            "payment_webhook_events",
            {"event_id": f"eq.{event_id}", "processed": "eq.false", "select": "*"},
            payload,
            error_detail="Failed to update webhook event in Supabase.",
        )
        return rows[0] if rows else None

    async def update_processed_webhook_event_result(
        self,
        event_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        rows = await self._patch(
            "payment_webhook_events",
            {"event_id": f"eq.{event_id}", "processed": "eq.true", "select": "*"},
            payload,
            error_detail="Failed to update webhook event in Supabase.",
        )
        return rows[0] if rows else None

    async def select_webhook_events(
        self,
        *,
        processed: bool | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        params = {
            "select": "id,event_id,event_type,processed,processed_at,error_message,attempts,result,created_at",
            "order": "created_at.desc",
            "limit": str(limit),
        }
        if processed is not None:
            params["processed"] = f"eq.{str(processed).lower()}"
        return await self._select(
            "payment_webhook_events",
            params,
            error_detail="Failed to list webhook events from Supabase.",
        )

    # Pending enrollments

    async def select_pending_enrollment(self, pending_enrollment_id: str) -> dict[str, Any] | None:
        return await self._select_one(
            "pending_enrollments",
            {"select": "*", "id": f"eq.{pending_enrollment_id}"},
            error_detail="Failed to fetch pending enrollment from Supabase.",
        )

    async def select_pending_enrollment_by_subscription_ref(
        self,
        gateway_subscription_ref: str,
    ) -> dict[str, Any] | None:
        return await self._select_one(
            "pending_enrollments",
            {
                "select": "*",
                "gateway_subscription_ref": f"eq.{gateway_subscription_ref}",
                "order": "created_at.desc",
            },
            error_detail="Failed to fetch pending enrollment from Supabase.",
        )

    async def transition_pending_enrollment(
        self,
        pending_enrollment_id: str,
        *,
        from_statuses: tuple[str, ...],
        payload: dict[str, Any],
        expected_updated_at: str | None = None,
    ) -> dict[str, Any] | None:
        params = {
            "id": f"eq.{pending_enrollment_id}",
            "status": _in_filter(from_statuses),
            "select": "*",
        }
        if expected_updated_at is not None:
            params["updated_at"] = f"eq.{expected_updated_at}"
        rows = await self._patch(
            "pending_enrollments",
            params,
            payload,
            error_detail="Failed to update pending enrollment in Supabase.",
        )
        return rows[0] if rows else None

    async def select_pending_enrollments(
        self,
        status_value: str,
        *,
        limit: int = 20,
        max_attempts: int | None = None,
        updated_before: str | None = None,
        error_kinds: tuple[str, ...] | None = None,
    ) -> list[dict[str, Any]]:
        params = {
            "select": "*",
            "status": f"eq.{status_value}",
            "order": "updated_at.asc",
            "limit": str(limit),
        }
        if max_attempts is not None:
            params["registry_attempt_count"] = f"lt.{max_attempts}"
        if error_kinds is not None:
            params["registry_error_kind"] = _in_filter(error_kinds)
        if updated_before is not None:
            params["updated_at"] = f"lt.{updated_before}"
        return await self._select(
            "pending_enrollments",
            params,
            error_detail="Failed to list pending enrollments from Supabase.",
        )

    # Beneficiaries

    async def select_beneficiary_by_subscription_ref(
        self,
        gateway_subscription_ref: str,
    ) -> dict[str, Any] | None:
        return await self._select_one(
            "beneficiaries",
            {
                "select": "id,pending_enrollment_id,gateway_subscription_ref,document,status,payment_status,enrollment_date",
                "gateway_subscription_ref": f"eq.{gateway_subscription_ref}",
            },
            error_detail="Failed to fetch beneficiary from Supabase.",
        )

    async def rpc_materialize_beneficiary(self, payload: dict[str, Any]) -> dict[str, Any]:
        result = await self._rpc(
            "materialize_beneficiary",
            payload,
            error_detail="Failed to materialize beneficiary in Supabase.",
        )
        if isinstance(result, list):
            result = result[0] if result else None
        if not isinstance(result, dict):
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Invalid materialize_beneficiary response from Supabase.",
            )
        return result

    # Registry audit

    async def insert_registry_attempt(self, payload: dict[str, Any]) -> None:
        await self._insert(
            "registry_attempts",
            payload,
            error_detail="Failed to record registry attempt in Supabase.",
        )

    async def select_plan(self, plan_id: str) -> dict[str, Any] | None:
        return await self._select_one(
            "plans",
            {"select": "id,name,registry_plan_code", "id": f"eq.{plan_id}"},
            error_detail="Failed to fetch plan from Supabase.",
        )
