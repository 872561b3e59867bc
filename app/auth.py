"""Bearer JWT auth middleware."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx
from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse


logger = logging.getLogger("recordbase.auth")

_JWKS_CACHE: Dict[str, Any] = {"keys": None, "url": None, "fetched_at": 0.0, "ttl": 600.0}

PUBLIC_PATHS = {"/health"}


def _fetch_jwks(jwks_url: str, force: bool = False) -> dict:
    now = time.time()
    cached = _JWKS_CACHE["keys"] and _JWKS_CACHE["url"] == jwks_url
    if not force and cached and now - _JWKS_CACHE["fetched_at"] < _JWKS_CACHE["ttl"]:
        return _JWKS_CACHE["keys"]
    resp = httpx.get(jwks_url, timeout=10.0)
    resp.raise_for_status()
    data = resp.json()
    _JWKS_CACHE["keys"] = data
    _JWKS_CACHE["url"] = jwks_url
    _JWKS_CACHE["fetched_at"] = now
    return data


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def _find_key(jwks: dict, kid: str | None) -> dict | None:
    for jwk in jwks.get("keys", []):
        if jwk.get("kid") == kid:
            return jwk
    return None


def _verify_jwt(token: str, jwks_url: str, issuer: str, audience: Optional[str]) -> dict:
    headers = jwt.get_unverified_header(token)
    kid = headers.get("kid")
    key = _find_key(_fetch_jwks(jwks_url), kid)
    if key is None:
        key = _find_key(_fetch_jwks(jwks_url, force=True), kid)
    if key is None:
        raise JWTError("Unknown kid")

    options = {"verify_aud": audience is not None}
    return jwt.decode(token, key, algorithms=[headers.get("alg", "RS256")], issuer=issuer, audience=audience, options=options)


def user_from_claims(claims: dict) -> dict:
    """Request user built from verified claims; tenant comes from ``tenant_id`` or app metadata."""
    app_meta = claims.get("app_metadata") if isinstance(claims.get("app_metadata"), dict) else {}
    return {
        "id": claims.get("sub"),
        "tenant_id": claims.get("tenant_id") or app_meta.get("tenant_id"),
        "email": claims.get("email"),
        "claims": claims,
    }


def _unauthorized(code: str, message: str, detail: dict | None = None) -> JSONResponse:
    return JSONResponse(
        {
            "ok": False,
            "errors": [{"code": code, "message": message, "path": "Authorization", "detail": detail}],
            "warnings": [],
        },
        status_code=401,
    )


class BearerAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, issuer_url: str, audience: Optional[str] = None, disabled: bool = False) -> None:
        super().__init__(app)
        self._issuer = issuer_url.rstrip("/")
        self._audience = audience
        self._jwks_url = f"{self._issuer}/.well-known/jwks.json"
        self._disabled = disabled

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        if self._disabled:
            return await call_next(request)
        if request.method == "OPTIONS" or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        token = _get_bearer_token(request)
        if not token:
            logger.warning("auth_missing_token path=%s", request.url.path)
            return _unauthorized("AUTH_MISSING_TOKEN", "Missing bearer token")

        try:
            claims = _verify_jwt(token, self._jwks_url, self._issuer, self._audience)
        except (JWTError, httpx.HTTPError) as exc:
            logger.warning(
                "auth_invalid_token path=%s issuer=%s audience=%s error=%s",
                request.url.path,
                self._issuer,
                self._audience,
                exc,
            )
            return _unauthorized("AUTH_INVALID_TOKEN", "Invalid bearer token", {"error": str(exc)})

        request.state.user = user_from_claims(claims)
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        return await call_next(request)
