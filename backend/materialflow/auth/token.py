"""
JWT Token Verification (OIDC)

Bearer tokens are RS256 JWTs from the identity provider configured by
AUTH_ISSUER (Auth0, Cognito or any OIDC issuer publishing a JWKS). The
public key set is fetched from <issuer>/.well-known/jwks.json and cached for
an hour; an unknown kid forces one refresh so key rotation is transparent.

The pipeline needs only two things from a token: who the caller is (`sub`,
used as uploader id and for retrieval scoping) and their role (admin routes).

Roles, highest first: admin > member > viewer.
"""

from __future__ import annotations

import logging
import time
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from materialflow.core.config import settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=True)

VALID_ROLES = frozenset({"admin", "member", "viewer"})


class TokenPayload(BaseModel):
    """Verified claims handed to route handlers."""
    sub:   str
    email: str = ""
    role:  str = "viewer"
    exp:   int
    iss:   str


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


async def _get_signing_key(token: str):
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid token header") from exc

    issuer = settings.auth_issuer
    if not issuer:
        logger.error("AUTH_ISSUER is not configured; rejecting bearer token")
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Authentication is not configured")

    for refresh in (False, True):
        if refresh:
            _JWKS_CACHE.pop(issuer, None)
        try:
            jwks = await _fetch_jwks(issuer)
        except httpx.HTTPError as exc:
            logger.error("JWKS fetch failed | issuer=%s error=%s", issuer, exc)
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Identity provider unreachable") from exc
        for key_data in jwks.get("keys", []):
            if key_data.get("kid") == kid:
                return jwk.construct(key_data).public_key()

    raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Unable to find signing key for kid={kid}")


def extract_role(claims: dict) -> str:
    """
    Role claim, in order: `role`, Cognito `custom:role`, an Auth0 namespaced
    `<audience>/role`, then the first Cognito group. Unknown → viewer.
    """
    role = (
        claims.get("role")
        or claims.get("custom:role")
        or claims.get(f"{settings.auth_audience.rstrip('/')}/role")
    )
    if not role and claims.get("cognito:groups"):
        role = claims["cognito:groups"][0]

    if role not in VALID_ROLES:
        if role:
            logger.warning("Unknown role '%s' in token, treating as viewer", role)
        role = "viewer"
    return role


async def verify_token(token: str) -> TokenPayload:
    signing_key = await _get_signing_key(token)

    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.auth_audience or None,
            issuer=settings.auth_issuer,
            options={"verify_exp": True, "verify_aud": bool(settings.auth_audience)},
        )
    except ExpiredSignatureError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {exc}")

    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email", ""),
        role=extract_role(claims),
        exp=claims["exp"],
        iss=claims["iss"],
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> TokenPayload:
    """FastAPI dependency: verified caller for any authenticated route."""
    return await verify_token(credentials.credentials)
