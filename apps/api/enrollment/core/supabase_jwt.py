from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt import PyJWKClient
from jwt.exceptions import InvalidTokenError, PyJWKClientError

from enrollment.core.settings import Settings, get_settings


@dataclass(frozen=True)
class VerifiedSupabaseAuth:
    access_token: str
    claims: dict[str, Any]

    @property
    def user_id(self) -> str | None:
        subject = self.claims.get("sub")
        return subject if isinstance(subject, str) and subject else None


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise _unauthorized()

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized()

    return token.strip()


def decode_supabase_token(token: str, settings: Settings) -> dict[str, Any]:
    try:
        signing_key = PyJWKClient(settings.SUPABASE_JWKS_URL or "").get_signing_key_from_jwt(token).key
        decoded = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256", "ES256"],
            issuer=settings.SUPABASE_ISSUER,
            options={"verify_aud": False},
        )
        if not isinstance(decoded, dict):
            raise _unauthorized()
        return decoded
    except HTTPException:
        raise
    except (InvalidTokenError, PyJWKClientError, ValueError):
        raise _unauthorized() from None


def verify_supabase_auth(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> VerifiedSupabaseAuth:
    """Authenticate an operator request. No role or ownership checks happen here."""
    token = _extract_bearer_token(authorization)
    return VerifiedSupabaseAuth(access_token=token, claims=decode_supabase_token(token, settings))
