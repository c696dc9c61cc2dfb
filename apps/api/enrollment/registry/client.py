from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
from fastapi import status

from enrollment.core.logging import get_logger
from enrollment.core.retry import backoff_seconds, mask_document, sanitize_error, sanitize_text
from enrollment.core.settings import Settings
from enrollment.core.supabase_rest import SupabaseStore
from enrollment.registry.errors import (
    RegistryBusinessError,
    RegistryConfigurationError,
    RegistryCredentialError,
    RegistryError,
    RegistryTransientError,
)
from enrollment.registry.payload import (
    build_adherence_payload,
    build_cancellation_payload,
    registry_plan_code,
)

logger = get_logger("registry.client")

Sleep = Callable[[float], Awaitable[None]]

OPERATION_ADHERENCE = "adherence"
OPERATION_CANCELLATION = "cancellation"

_SUCCESS_MARKERS = ("sucesso", "success")
_NOT_FOUND_MARKERS = ("não localizado", "nao localizado", "1063")
_NOT_FOUND_CODE = 1063
_TRANSIENT_STATUSES = {status.HTTP_408_REQUEST_TIMEOUT, status.HTTP_429_TOO_MANY_REQUESTS}
_CREDENTIAL_STATUSES = {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}
_DOCUMENT_KEYS = {"cpf", "cpfTitular"}


@dataclass(frozen=True)
class RegistrySuccess:
    operation: str
    attempts: int
    response_data: Any
    message: str | None = None
    attempt_errors: list[str] = field(default_factory=list)


class RegistryAdherenceClient:
    """Outbound calls to the external beneficiary registry.

    Transient failures are retried up to ``REGISTRY_MAX_ATTEMPTS`` times with
    exponential backoff awaited between attempts. Credential, business and
    configuration failures end the operation immediately.
    """

    def __init__(
        self,
        settings: Settings,
        store: SupabaseStore,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.adherence_url = (settings.REGISTRY_ADHERENCE_URL or "").strip() or None
        self.cancellation_url = (settings.REGISTRY_CANCELLATION_URL or "").strip() or None
        self.api_key = (settings.REGISTRY_API_KEY or "").strip() or None
        self.client_id = settings.REGISTRY_CLIENT_ID
        self.contract_id = settings.REGISTRY_CONTRACT_ID
        self.default_plan_code = settings.REGISTRY_DEFAULT_PLAN_CODE
        self.max_attempts = settings.REGISTRY_MAX_ATTEMPTS
        self.backoff_base = settings.REGISTRY_BACKOFF_BASE_SECONDS
        self.timeout = settings.REGISTRY_TIMEOUT_SECONDS
        self.sleep = sleep

    def adherence_payload(
        self,
        pending: dict[str, Any],
        plan: dict[str, Any] | None,
    ) -> dict[str, Any]:
        self._require_ids()
        return build_adherence_payload(
            pending,
            client_id=int(self.client_id or 0),
            contract_id=int(self.contract_id or 0),
            plan_code=registry_plan_code(plan, self.default_plan_code),
        )

    async def register_beneficiary(
        self,
        payload: dict[str, Any],
        pending_enrollment_id: str | None,
    ) -> RegistrySuccess:
        return await self._call(
            OPERATION_ADHERENCE,
            self.adherence_url,
            payload,
            pending_enrollment_id=pending_enrollment_id,
        )

    async def cancel_beneficiary(
        self,
        document: str,
        external_code: str,
        *,
        pending_enrollment_id: str | None = None,
    ) -> RegistrySuccess:
        self._require_ids()
        payload = build_cancellation_payload(
            document,
            external_code,
            client_id=int(self.client_id or 0),
            contract_id=int(self.contract_id or 0),
        )
        return await self._call(
            OPERATION_CANCELLATION,
            self.cancellation_url,
            payload,
            pending_enrollment_id=pending_enrollment_id,
        )

    def _require_ids(self) -> None:
        if not self.client_id or not self.contract_id:
            raise RegistryConfigurationError("Registry client and contract ids are not configured.")

    async def _call(
        self,
        operation: str,
        url: str | None,
        payload: dict[str, Any],
        *,
        pending_enrollment_id: str | None,
    ) -> RegistrySuccess:
        if not url or not self.api_key:
            logger.error(
                "registry.not_configured",
                extra={
                    "component": "registry",
                    "operation": operation,
                    "pending_enrollment_id": pending_enrollment_id,
                },
            )
            raise RegistryConfigurationError(f"Registry {operation} endpoint or API key is not configured.")

        attempt_errors: list[str] = []
        for attempt in range(1, self.max_attempts + 1):
            http_status: int | None = None
            response_data: Any = None
            try:
                response = await self._post(url, payload)
            except httpx.HTTPError as exc:
                error: RegistryError = RegistryTransientError(
                    sanitize_error(exc, default_message=f"Registry request failed ({exc.__class__.__name__}).")
                )
            else:
                http_status = response.status_code
                response_data, error_or_none = _classify(operation, response)
                if error_or_none is None:
                    await self._audit(
                        operation,
                        pending_enrollment_id,
                        attempt,
                        payload,
                        status_value="success",
                        http_status=http_status,
                        response_data=response_data,
                    )
                    logger.info(
                        "registry.call_succeeded",
                        extra={
                            "component": "registry",
                            "operation": operation,
                            "pending_enrollment_id": pending_enrollment_id,
                            "attempt": attempt,
                        },
                    )
                    return RegistrySuccess(
                        operation=operation,
                        attempts=attempt,
                        response_data=response_data,
                        message=_response_message(response_data),
                        attempt_errors=attempt_errors,
                    )
                error = error_or_none

            attempt_errors.append(error.message)
            await self._audit(
                operation,
                pending_enrollment_id,
                attempt,
                payload,
                status_value="error",
                http_status=http_status,
                response_data=response_data,
                error=error,
            )
            logger.warning(
                "registry.attempt_failed",
                extra={
                    "component": "registry",
                    "operation": operation,
                    "pending_enrollment_id": pending_enrollment_id,
                    "attempt": attempt,
                    "error_kind": error.kind,
                    "http_status": http_status,
                    "error": error.message,
                },
            )

            if error.retryable and attempt < self.max_attempts:
                await self.sleep(backoff_seconds(attempt, base=self.backoff_base))
                continue

            error.attempts = attempt
            error.attempt_errors = list(attempt_errors)
            error.http_status = http_status
            error.response_data = response_data
            raise error

        raise RegistryTransientError(  # pragma: no cover - loop always returns or raises
            "Registry retry budget exhausted.",
            attempts=self.max_attempts,
            attempt_errors=attempt_errors,
        )

    async def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "x-api-key": self.api_key or "",
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload, headers=headers)

    async def _audit(
        self,
        operation: str,
        pending_enrollment_id: str | None,
        attempt: int,
        payload: dict[str, Any],
        *,
        status_value: str,
        http_status: int | None,
        response_data: Any,
        error: RegistryError | None = None,
    ) -> None:
        record = {
            "pending_enrollment_id": pending_enrollment_id,
            "operation": operation,
            "attempt": attempt,
            "status": status_value,
            "error_kind": error.kind if error is not None else None,
            "error_message": error.message if error is not None else None,
            "http_status": http_status,
            "request_data": masked_request(payload),
            "response_data": response_data if isinstance(response_data, dict | list) else None,
        }
        try:
            await self.store.insert_registry_attempt(record)
        except Exception as exc:
            logger.error(
                "registry.audit_failed",
                extra={
                    "component": "registry",
                    "operation": operation,
                    "pending_enrollment_id": pending_enrollment_id,
                    "attempt": attempt,
                    "error": sanitize_error(exc, default_message="registry audit write failed"),
                },
            )


def masked_request(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: mask_document(value) if key in _DOCUMENT_KEYS else value for key, value in payload.items()}


def _classify(operation: str, response: httpx.Response) -> tuple[Any, RegistryError | None]:
    code = response.status_code
    try:
        body: Any = response.json()
    except ValueError:
        body = None
    body_text = _body_text(body, response)

    if code in _CREDENTIAL_STATUSES:
        return body, RegistryCredentialError(f"Registry rejected credentials (HTTP {code}).")
    if code in _TRANSIENT_STATUSES or code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        return body, RegistryTransientError(f"Registry unavailable (HTTP {code}): {body_text}")
    if not 200 <= code < 300:
        return body, RegistryBusinessError(f"Registry refused the request (HTTP {code}): {body_text}")
    if not isinstance(body, dict):
        return body, RegistryBusinessError("Registry returned an unreadable response body.")

    message = _response_message(body)
    lowered = (message or "").lower()
    if any(marker in lowered for marker in _SUCCESS_MARKERS):
        return body, None

    if operation == OPERATION_CANCELLATION and (
        body.get("codigo") == _NOT_FOUND_CODE or any(marker in lowered for marker in _NOT_FOUND_MARKERS)
    ):
        return body, RegistryBusinessError(
            f"Beneficiary not found in registry: {sanitize_text(message or str(_NOT_FOUND_CODE))}"
        )
    if message:
        return body, RegistryBusinessError(f"Registry reported a failure: {sanitize_text(message)}")
    return body, RegistryBusinessError(f"Registry response has no success confirmation for {operation}.")


def _response_message(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    for key in ("mensagem", "message"):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _body_text(body: Any, response: httpx.Response) -> str:
    message = _response_message(body)
    if message:
        return sanitize_text(message)
    return sanitize_text(response.text.strip()[:200] or "empty response")
