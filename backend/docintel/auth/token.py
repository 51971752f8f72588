"""
Bearer Token Verification

Every authenticated route resolves one verified Identity(user_id, org_id):

    sub                         → user_id
    org_id | custom:org_id      → org_id   (tenant; Cognito prefixes custom claims)

Tokens are RS256-signed by the configured OIDC issuer. The issuer's public
JWKS is cached for an hour; an unknown `kid` forces one refresh so key
rotation is picked up without a restart.
"""

from __future__ import annotations

import logging
import time
from typing import Annotated, Any
from uuid import UUID

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from docintel.core.config import settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=True)


class Identity(BaseModel):
    """The verified (user, tenant) pair handed to every service call."""
    user_id: UUID
    org_id:  UUID
    email:   str = ""


# ---------------------------------------------------------------------------
# JWKS cache
# ---------------------------------------------------------------------------

_JWKS_CACHE: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)
_JWKS_TTL = 3600


async def _fetch_jwks(issuer: str) -> dict:
    now = time.monotonic()
    cached = _JWKS_CACHE.get(issuer)
    if cached and (now - cached[1]) < _JWKS_TTL:
        return cached[0]

    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(f"{issuer.rstrip('/')}/.well-known/jwks.json")
        resp.raise_for_status()
        jwks = resp.json()

    _JWKS_CACHE[issuer] = (jwks, now)
    logger.debug("JWKS refreshed | issuer=%s keys=%d", issuer, len(jwks.get("keys", [])))
    return jwks


async def _signing_key(token: str) -> Any:
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid token header") from exc

    issuer = settings.auth_issuer
    for attempt in range(2):   # 0 = cached, 1 = forced refresh
        if attempt == 1:
            _JWKS_CACHE.pop(issuer, None)
        jwks = await _fetch_jwks(issuer)
        for key_data in jwks.get("keys", []):
            if key_data.get("kid") == kid:
                return jwk.construct(key_data)

    raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Unable to find signing key for kid={kid}")


# ---------------------------------------------------------------------------
# Claims → Identity
# ---------------------------------------------------------------------------

def _uuid_claim(claims: dict, *names: str) -> UUID:
    raw = next((claims[n] for n in names if claims.get(n)), None)
    if raw is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Token missing {names[0]} claim")
    try:
        return UUID(str(raw))
    except ValueError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Invalid {names[0]} in token")


def identity_from_claims(claims: dict) -> Identity:
    """
    >>> identity_from_claims({
    ...     "sub": "11111111-1111-1111-1111-111111111111",
    ...     "custom:org_id": "22222222-2222-2222-2222-222222222222",
    ... }).org_id
    UUID('22222222-2222-2222-2222-222222222222')
    """
    return Identity(
        user_id=_uuid_claim(claims, "sub"),
        org_id=_uuid_claim(claims, "org_id", "custom:org_id"),
        email=claims.get("email", ""),
    )


async def verify_token(token: str) -> Identity:
    key = await _signing_key(token)
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=settings.auth_audience or None,
            issuer=settings.auth_issuer,
            options={"verify_exp": True, "verify_aud": bool(settings.auth_audience)},
        )
    except ExpiredSignatureError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {exc}")
    return identity_from_claims(claims)


async def get_current_identity(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> Identity:
    return await verify_token(credentials.credentials)
