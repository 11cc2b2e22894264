"""
JWT Authentication Module - token verification for the FastAPI backend

Access tokens are issued by the auth provider (Supabase-style HS256 tokens
signed with the project JWT secret). When JWKS_URL is configured, tokens are
verified against the published signing keys instead.

Usage:
    from marketplace.jwt_auth import verify_access_token

    payload = verify_access_token(token)
    user_id = payload["sub"]
"""

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import httpx
import jwt
from fastapi import HTTPException, status

from .core.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def fetch_jwks() -> dict:
    """
    Fetch the JWKS document from the configured auth provider.

    Cached to avoid a network round trip per request.
    """
    settings = get_settings()
    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.get(settings.jwks_url, headers={"User-Agent": "Marketplace-Backend/1.0"})
            response.raise_for_status()
            logger.info("Fetched JWKS from auth provider")
            return response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"HTTP {e.response.status_code} fetching JWKS: {e.response.text}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Unable to fetch JWKS: HTTP Error {e.response.status_code}",
        )
    except httpx.HTTPError as e:
        logger.error(f"Failed to fetch JWKS: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Unable to fetch JWKS",
        )


def _signing_key_for(token: str):
    settings = get_settings()
    if not settings.jwks_url:
        return settings.jwt_secret, [settings.jwt_algorithm]

    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise jwt.InvalidTokenError("Token header missing key ID (kid)")
    for key in fetch_jwks().get("keys", []):
        if key.get("kid") == kid:
            jwk = jwt.PyJWK.from_dict(key)
            return jwk.key, [jwk.algorithm_name]
    raise jwt.InvalidTokenError(f"No matching key found for kid: {kid}")


def verify_access_token(token: str) -> dict:
    """
    Verify an access token and return its decoded payload.

    Raises:
        HTTPException 401: If the token is invalid, expired, or its signature doesn't match
    """
    settings = get_settings()
    try:
        key, algorithms = _signing_key_for(token)
        decoded = jwt.decode(
            token,
            key,
            algorithms=algorithms,
            audience=settings.jwt_audience or None,
            issuer=settings.jwt_issuer or None,
            options={
                "verify_aud": bool(settings.jwt_audience),
                "verify_iss": bool(settings.jwt_issuer),
                "require": ["sub", "exp"],
            },
        )
        logger.debug(f"Token verified for user: {decoded.get('sub')}")
        return decoded
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token verification failed: Token has expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    except jwt.InvalidTokenError as e:
        logger.warning(f"Token verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def issue_access_token(
    user_id: str,
    expires_in: timedelta = timedelta(hours=1),
    extra_claims: Optional[dict] = None,
) -> str:
    """Sign an HS256 token with the configured secret (local development and tests)."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + expires_in,
    }
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    if settings.jwt_issuer:
        payload["iss"] = settings.jwt_issuer
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
