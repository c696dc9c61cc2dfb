from __future__ import annotations

from typing import Any


class RegistryError(Exception):
    """Base failure of a registry operation.

    ``attempts`` counts network attempts actually made; ``attempt_errors`` keeps
    the sanitized error text of each of them in order.
    """

    kind = "unknown"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        attempt_errors: list[str] | None = None,
        http_status: int | None = None,
        response_data: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.attempts = attempts
        self.attempt_errors = list(attempt_errors or [])
        self.http_status = http_status
        self.response_data = response_data


class RegistryCredentialError(RegistryError):
    kind = "credentials"


class RegistryConfigurationError(RegistryError):
    kind = "configuration"


class RegistryTransientError(RegistryError):
    kind = "transient"
    retryable = True


class RegistryBusinessError(RegistryError):
    kind = "business"


class RegistryValidationError(RegistryError):
    kind = "validation"

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("Registry payload is invalid: " + "; ".join(self.problems))
