"""Auth0 bearer tokens for patient-facing endpoints.

The token ``sub`` claim is the owning account id stored on ``Patient.user_id``;
family members share their primary patient's account.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

VERIFICATION_AUDIENCE = "dental-assistant:verified-patient"


class _JwksCache:
    ttl_seconds = 3600

    def __init__(self) -> None:
        self.keys: list[dict[str, Any]] = []
        self.expires_at = 0.0

    async def signing_key(self, kid: str | None) -> dict[str, Any] | None:
        if not self.keys or time.time() >= self.expires_at:
            await self._refresh()
        return next((key for key in self.keys if key.get("kid") == kid), None)

    async def _refresh(self) -> None:
        if not settings.auth0_domain:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Auth0 domain is not configured",
            )
        url = f"https://{settings.auth0_domain}/.well-known/jwks.json"
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.get(url)
            response.raise_for_status()
            self.keys = response.json().get("keys", [])
        self.expires_at = time.time() + self.ttl_seconds
        logger.info("jwks_refreshed keys=%s", len(self.keys))


_jwks = _JwksCache()


def _bearer(credentials: HTTPAuthorizationCredentials | None) -> str | None:
    if not credentials or credentials.scheme.lower() != "bearer":
        return None
    return credentials.credentials


async def account_claims(token: str) -> dict[str, Any]:
    if not settings.auth0_audience:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Auth0 audience is not configured",
        )

    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token header",
        ) from exc

    rsa_key = await _jwks.signing_key(header.get("kid"))
    if rsa_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Signing key not found",
        )

    try:
        return jwt.decode(
            token,
            rsa_key,
            algorithms=["RS256"],
            audience=settings.auth0_audience,
            issuer=f"https://{settings.auth0_domain}/",
        )
    except JWTError as exc:
        logger.info("token_rejected error=%s", type(exc).__name__)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token validation failed",
        ) from exc


async def require_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict[str, Any]:
    token = _bearer(credentials)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )
    return await account_claims(token)


async def optional_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict[str, Any] | None:
    """Claims when a bearer token is sent; anonymous chat callers get ``None``."""
    token = _bearer(credentials)
    if token is None:
        return None
    return await account_claims(token)


def issue_verification_token(patient_id: str, account: str | None = None) -> str:
    """Sign the patient id a caller just proved, scoped to their account if any."""
    expires = datetime.now(timezone.utc) + timedelta(minutes=settings.verification_ttl_minutes)
    claims = {"sub": patient_id, "acct": account, "aud": VERIFICATION_AUDIENCE, "exp": expires}
    return jwt.encode(claims, settings.verification_secret, algorithm="HS256")


def verified_patient_from_token(token: str | None, account: str | None = None) -> str | None:
    if not token:
        return None
    try:
        claims = jwt.decode(
            token,
            settings.verification_secret,
            algorithms=["HS256"],
            audience=VERIFICATION_AUDIENCE,
        )
    except JWTError as exc:
        logger.info("verification_token_rejected error=%s", type(exc).__name__)
        return None
    if claims.get("acct") != account:
        logger.info("verification_token_rejected error=account_mismatch")
        return None
    return claims.get("sub")
