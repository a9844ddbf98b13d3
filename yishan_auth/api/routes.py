from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from yishan_auth.api.schemas import (
    CleanupResponse,
    CleanupStatusResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UserProfileResponse,
    ok,
)
from yishan_auth.service.auth import AuthContext, TokenPair
from yishan_auth.service.runtime import get_runtime

router = APIRouter(prefix="/api/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        access_token_expires_in=pair.access_token_expires_in,
        refresh_token_expires_in=pair.refresh_token_expires_in,
        access_token_expires_at=pair.access_token_expires_at,
        refresh_token_expires_at=pair.refresh_token_expires_at,
        token_type=pair.token_type,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def require_cleanup_key(
    x_cleanup_key: Optional[str] = Header(None, alias="X-Cleanup-Key"),
) -> None:
    expected = get_runtime().settings.cleanup_api_key
    if (
        not expected
        or not x_cleanup_key
        or not hmac.compare_digest(x_cleanup_key.encode(), expected.encode())
    ):
        raise _http_error("unauthorized", "invalid cleanup key", status_code=401)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with username (or email) and password.

    Raises:
        401: unknown user or wrong password
        403: account disabled or locked
    """
    runtime = get_runtime()
    pair = await runtime.auth.login(
        body.identifier,
        body.password,
        _client_ip(request),
        user_agent=request.headers.get("user-agent"),
        remember_me=body.remember_me,
    )
    return ok(_pair_response(pair), "login succeeded")


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    """Return the caller's profile."""
    runtime = get_runtime()
    profile = runtime.auth.get_profile(principal.user_id)
    return ok(UserProfileResponse(**profile))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    """Exchange a refresh token for a new pair; the presented token stops working.

    Raises:
        401: invalid, expired, revoked, already-rotated or non-refresh token
        403: account disabled or locked
    """
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token, _client_ip(request))
    return ok(_pair_response(pair), "token refreshed")


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    """Revoke the caller's session.

    Any genuine access token is accepted, even an expired or already revoked
    one, so repeating the call keeps succeeding.

    Raises:
        401: missing or forged token
    """
    runtime = get_runtime()
    token = runtime.auth.extract_bearer(authorization)
    user_id = runtime.auth.identify(token) if token else None
    if user_id is None:
        raise _http_error("unauthorized", "invalid token", status_code=401)
    await runtime.auth.logout(user_id, token)
    return ok(LogoutResponse(logged_out=True), "logged out")


@router.get("/menus/tree", response_model=Envelope, tags=["menus"])
async def menu_tree(principal: AuthContext = Depends(get_user)):
    """Menu tree visible to the caller's roles."""
    runtime = get_runtime()
    tree = await runtime.menus.get_authorized_tree(principal.role_ids)
    return ok(tree)


@router.get("/menus/paths", response_model=Envelope, tags=["menus"])
async def menu_paths(principal: AuthContext = Depends(get_user)):
    """Route paths the caller may navigate to."""
    runtime = get_runtime()
    paths = await runtime.menus.get_authorized_paths(principal.role_ids)
    return ok(paths)


@router.get("/menus/access", response_model=Envelope, tags=["menus"])
async def menu_access(
    path: str = Query(..., min_length=1, max_length=255),
    principal: AuthContext = Depends(get_user),
):
    """Check a single route path against the caller's authorized paths.

    Raises:
        403: path not granted to any of the caller's roles
    """
    runtime = get_runtime()
    await runtime.menus.ensure_path_allowed(principal.role_ids, path)
    return ok({"path": path, "allowed": True})


@router.post(
    "/system/cleanup/tokens",
    response_model=Envelope,
    tags=["system"],
    dependencies=[Depends(require_cleanup_key)],
)
async def cleanup_tokens():
    """Delete token records whose access and refresh expiries have both passed.

    Raises:
        401: missing or wrong X-Cleanup-Key
    """
    runtime = get_runtime()
    result = await runtime.cleanup.execute_cleanup()
    return ok(
        CleanupResponse(
            deleted_count=result.deleted_count,
            execution_time_ms=result.execution_time_ms,
            timestamp=result.timestamp,
        )
    )


@router.get(
    "/system/cleanup/status",
    response_model=Envelope,
    tags=["system"],
    dependencies=[Depends(require_cleanup_key)],
)
async def cleanup_status():
    """Token table counters and the time of the last sweep."""
    runtime = get_runtime()
    stats = await runtime.cleanup.get_cleanup_stats()
    return ok(CleanupStatusResponse(**stats))
