from __future__ import annotations

import re
from typing import Any

from enrollment.core.timeutil import parse_iso
from enrollment.registry.errors import RegistryValidationError

HOLDER_BENEFICIARY_TYPE = 1
DEPENDENT_BENEFICIARY_TYPE = 3
EXTERNAL_CODE_PREFIX = "GATEWAY_"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_ISO_DATE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


def only_digits(value: object) -> str:
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def is_valid_cpf(value: object) -> bool:
    digits = only_digits(value)
    if len(digits) != 11 or digits == digits[0] * 11:
        return False

    for length in (9, 10):
        total = sum(int(digits[i]) * (length + 1 - i) for i in range(length))
        check = (total * 10) % 11
        if check == 10:
            check = 0
        if check != int(digits[length]):
            return False
    return True


def external_code_for(subscription_ref: str) -> str:
    return f"{EXTERNAL_CODE_PREFIX}{subscription_ref}"


def registry_plan_code(plan: dict[str, Any] | None, default_code: int) -> int:
    if isinstance(plan, dict):
        code = plan.get("registry_plan_code")
        if isinstance(code, int) and not isinstance(code, bool) and code > 0:
            return code
        if isinstance(code, str) and code.strip().isdigit():
            return int(code.strip())
    return default_code


def registry_birth_date(value: object) -> str | None:
    """Registry dates are ``DDMMYYYY``."""
    if isinstance(value, str):
        match = _ISO_DATE_PATTERN.match(value.strip())
        if match:
            year, month, day = match.groups()
            return f"{day}{month}{year}"
        digits = only_digits(value)
        if len(digits) == 8:
            return digits
    parsed = parse_iso(value)
    if parsed is not None:
        return parsed.strftime("%d%m%Y")
    return None


def build_adherence_payload(
    pending: dict[str, Any],
    *,
    client_id: int,
    contract_id: int,
    plan_code: int,
) -> dict[str, Any]:
    """Map a pending enrollment onto the registry's adherence request body.

    Raises ``RegistryValidationError`` listing every missing or invalid field.
    """
    problems: list[str] = []

    name = str(pending.get("name") or "").strip()
    if not name:
        problems.append("name is required")

    document = only_digits(pending.get("document"))
    if not document:
        problems.append("document is required")
    elif not is_valid_cpf(document):
        problems.append("document is not a valid CPF")

    email = str(pending.get("email") or "").strip()
    if not email:
        problems.append("email is required")
    elif not _EMAIL_PATTERN.match(email):
        problems.append("email is not valid")

    if not str(pending.get("plan_id") or "").strip():
        problems.append("plan is required")

    subscription_ref = str(pending.get("gateway_subscription_ref") or "").strip()
    if not subscription_ref:
        problems.append("gateway subscription reference is required")

    beneficiary_type = _beneficiary_type(pending.get("beneficiary_type"))
    holder_document = only_digits(pending.get("holder_document"))
    if beneficiary_type == DEPENDENT_BENEFICIARY_TYPE:
        if not holder_document:
            problems.append("holder document is required for dependents")
        elif not is_valid_cpf(holder_document):
            problems.append("holder document is not a valid CPF")

    if problems:
        raise RegistryValidationError(problems)

    payload: dict[str, Any] = {
        "idClienteContrato": contract_id,
        "idBeneficiarioTipo": beneficiary_type,
        "nome": name,
        "codigoExterno": external_code_for(subscription_ref),
        "idCliente": client_id,
        "cpf": document,
        "email": email,
        "tipoPlano": plan_code,
    }

    optional_fields = {
        "dataNascimento": registry_birth_date(pending.get("birth_date")),
        "celular": only_digits(pending.get("phone")) or None,
        "cep": only_digits(pending.get("zip_code")) or None,
        "numero": str(pending.get("address_number") or "").strip() or None,
        "uf": str(pending.get("state") or "").strip().upper() or None,
    }
    payload.update({key: value for key, value in optional_fields.items() if value})

    if beneficiary_type == DEPENDENT_BENEFICIARY_TYPE:
        payload["cpfTitular"] = holder_document
    return payload


def build_cancellation_payload(
    document: str,
    external_code: str,
    *,
    client_id: int,
    contract_id: int,
) -> dict[str, Any]:
    cpf = only_digits(document)
    if not is_valid_cpf(cpf):
        raise RegistryValidationError(["document is not a valid CPF"])
    return {
        "idClienteContrato": contract_id,
        "idCliente": client_id,
        "cpf": cpf,
        "codigoExterno": external_code.strip(),
    }


def _beneficiary_type(value: object) -> int:
    if isinstance(value, bool):
        return HOLDER_BENEFICIARY_TYPE
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return HOLDER_BENEFICIARY_TYPE
    return DEPENDENT_BENEFICIARY_TYPE if parsed == DEPENDENT_BENEFICIARY_TYPE else HOLDER_BENEFICIARY_TYPE
