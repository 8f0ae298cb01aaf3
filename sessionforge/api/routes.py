from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response

from sessionforge.api.schemas import (
    ClaimsResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PrincipalResponse,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
)
from sessionforge.logging import get_correlation_id, get_logger
from sessionforge.service.auth import PrincipalSummary, TokenPair
from sessionforge.service.errors import InvalidToken
from sessionforge.service.runtime import check_rate_limit, get_runtime
from sessionforge.service.tokens import AccessClaims
from sessionforge.service.validation import normalize_identifier

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMIT_WINDOW_SECONDS = 60


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _envelope(data: object) -> Envelope:
    cid = get_correlation_id()
    if cid:
        return Envelope(status="ok", data=data, request_id=cid)
    return Envelope(status="ok", data=data)


async def _enforce_rate_limit(runtime, key: str, limit: int, response: Response) -> None:
    """Apply a per-minute token bucket and expose its state in headers.

    Raises:
        HTTPException with 429 if the bucket is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS, return_remaining=True
    )
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    if not allowed:
        retry_after = str(max(1, reset_seconds))
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": retry_after},
        )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_claims(authorization: Optional[str] = Header(None)) -> AccessClaims:
    """Authorization gate dependency: verifies signature and expiry only."""
    token = _extract_bearer(authorization)
    if not token:
        raise InvalidToken()
    return get_runtime().auth.authenticate(token)


def _principal_response(summary: PrincipalSummary) -> PrincipalResponse:
    return PrincipalResponse(
        id=summary.id,
        login=summary.login,
        roles=list(summary.roles),
        is_locked=summary.is_locked,
        created_at=summary.created_at,
    )


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        principal_id=pair.principal_id,
        roles=list(pair.roles),
        access_token=pair.access_token,
        access_token_expires_at=pair.access_token_expires_at,
        refresh_token=pair.refresh_token,
        refresh_token_expires_at=pair.refresh_token_expires_at,
        token_type=pair.token_type,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a principal. Issues no tokens; call login afterwards.

    Raises:
        400: If the identifier, password or roles are rejected
        409: If the identifier is already registered
        429: If rate limit exceeded for this identifier
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{normalize_identifier(body.email)}",
        runtime.settings.register_rate_limit_per_minute,
        response,
    )
    summary = await runtime.auth.register(body.email, body.password, body.roles)
    return _envelope(_principal_response(summary))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with identifier and password; returns a new token chain.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this identifier
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{normalize_identifier(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
        response,
    )
    pair = await runtime.auth.login(body.email, body.password)
    return _envelope(_token_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return _envelope(_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    if body.refresh_token:
        await runtime.auth.logout(body.refresh_token)
    return _envelope({"message": "logged out"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, claims: AccessClaims = Depends(get_claims)
):
    """Replace the caller's password and end every session they hold."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        claims.principal_id, body.current_password, body.new_password
    )
    return _envelope({"message": "password changed", "revoked_sessions": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def whoami(claims: AccessClaims = Depends(get_claims)):
    return _envelope(
        ClaimsResponse(
            principal_id=claims.principal_id,
            roles=list(claims.roles),
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )
    )
