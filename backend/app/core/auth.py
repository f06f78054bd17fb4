"""Cloudflare Access JWT authentication for FastAPI.

The admin app sits behind Cloudflare Access. Every request carries the
Access assertion either in the ``Cf-Access-Jwt-Assertion`` header or in the
``CF_Authorization`` cookie; we verify it against the team's JWKS.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping

import jwt as pyjwt
import structlog
from fastapi import Request, WebSocket
from jwt import PyJWKClient

from app.core.config import get_settings
from app.core.exceptions import AuthRequiredError

logger = structlog.get_logger(__name__)

ACCESS_HEADER = "cf-access-jwt-assertion"
ACCESS_COOKIE = "CF_Authorization"


@lru_cache
def get_jwks_client() -> PyJWKClient:
    """Create a cached JWKS client pointing at the Access certs endpoint."""
    settings = get_settings()
    if not settings.access_team_domain:
        raise AuthRequiredError("Authentication is misconfigured: no Access team domain")
    jwks_url = f"https://{settings.access_team_domain}/cdn-cgi/access/certs"
    return PyJWKClient(jwks_url, cache_keys=True, lifespan=300)


@dataclass(frozen=True)
class AccessUser:
    """Authenticated operator extracted from an Access JWT."""

    email: str
    claims: dict


def extract_token(headers: Mapping[str, str], cookies: Mapping[str, str]) -> str | None:
    """Return the Access assertion from the header, falling back to the cookie."""
    token = headers.get(ACCESS_HEADER) or cookies.get(ACCESS_COOKIE)
    return token or None


def decode_access_jwt(token: str) -> AccessUser:
    """Verify and decode a Cloudflare Access JWT.

    Raises ``AuthRequiredError`` on any validation failure; an expired token
    is reported as ``session_expired`` so the caller re-authenticates.
    """
    settings = get_settings()
    try:
        client = get_jwks_client()
        signing_key = client.get_signing_key_from_jwt(token)

        payload = pyjwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=settings.access_audience or None,
            issuer=f"https://{settings.access_team_domain}",
            options={
                "verify_exp": True,
                "verify_aud": bool(settings.access_audience),
                "require": ["exp", "iat"],
            },
        )
    except pyjwt.ExpiredSignatureError as exc:
        raise AuthRequiredError("Session expired", expired=True) from exc
    except pyjwt.InvalidAudienceError as exc:
        raise AuthRequiredError("Unauthorized audience (aud mismatch)") from exc
    except pyjwt.InvalidIssuerError as exc:
        raise AuthRequiredError("Invalid issuer (iss mismatch)") from exc
    except pyjwt.PyJWTError as exc:
        raise AuthRequiredError(f"Invalid token: {exc}") from exc

    email = payload.get("email") or payload.get("sub")
    if not email:
        raise AuthRequiredError("Token missing email claim")

    return AccessUser(email=email, claims=payload)


def _authenticate(headers: Mapping[str, str], cookies: Mapping[str, str]) -> AccessUser:
    settings = get_settings()
    if settings.auth_disabled:
        return AccessUser(email=settings.dev_user_email, claims={"email": settings.dev_user_email})

    token = extract_token(headers, cookies)
    if token is None:
        raise AuthRequiredError("Missing Access assertion")
    return decode_access_jwt(token)


async def require_auth(request: Request) -> AccessUser:
    """FastAPI dependency that validates the Access session.

    Usage::

        @router.post("/stage")
        async def stage(user: AccessUser = Depends(require_auth)):
            ...
    """
    user = _authenticate(request.headers, request.cookies)
    # Downstream error handlers log the operator
    request.state.user_id = user.email
    return user


async def require_ws_auth(websocket: WebSocket) -> AccessUser | None:
    """WebSocket variant: returns None instead of raising so the route can close with 4401."""
    try:
        return _authenticate(websocket.headers, websocket.cookies)
    except AuthRequiredError as exc:
        logger.info("ws_auth_rejected", code=exc.code, reason=exc.message)
        return None
