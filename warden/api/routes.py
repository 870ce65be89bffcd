from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from warden.api.schemas import (
    AccountResponse,
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UpdateProfileRequest,
    UpdateRolesRequest,
)
from warden.logging import get_logger
from warden.service.admin import MAX_PAGE_SIZE
from warden.service.guard import AuthContext
from warden.service.runtime import Runtime, check_rate_limit, get_runtime
from warden.storage.models import ROLE_ADMIN, Account, utcnow

logger = get_logger(__name__)

router = APIRouter()

REFRESH_COOKIE = "refresh_token"
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


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int) -> None:
    """Spend one token for ``key`` or reject the request with 429."""
    allowed, _, retry_after = await check_rate_limit(
        runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS
    )
    if not allowed:
        logger.info("rate_limited", bucket=key.split(":", 1)[0], retry_after=retry_after)
        raise _http_error(
            "rate_limited",
            "Too many requests, please try again later.",
            status_code=429,
            headers={"Retry-After": str(max(1, retry_after))},
        )


def _account_to_response(account: Account) -> dict:
    return AccountResponse.from_account(account).model_dump(mode="json")


def _set_refresh_cookie(response: Response, runtime: Runtime, token: str) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="strict",
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


async def get_current_account(
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return runtime.guard.authenticate(authorization, utcnow())


def require_roles(*roles: str):
    """Dependency factory: authenticate first (401), then check roles (403)."""

    async def _dependency(ctx: AuthContext = Depends(get_current_account)) -> AuthContext:
        return get_runtime().guard.require_roles(ctx, roles)

    return _dependency


get_admin_account = require_roles(ROLE_ADMIN)


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an unverified account and email its verification link.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        500: If the verification email could not be sent
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "Registration is disabled", status_code=403)
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit_per_minute,
    )
    account = await runtime.accounts.register(body.name, body.email, body.password)
    return Envelope(
        status="ok",
        data={
            "message": "Registration successful! Please check your email to verify your account.",
            "user": _account_to_response(account),
        },
    )


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(
    request: Request, token: Optional[str] = Query(None, max_length=256)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{_client_ip(request)}",
        runtime.settings.token_rate_limit_per_minute,
    )
    await runtime.accounts.verify_email(token or "")
    return Envelope(
        status="ok", data={"message": "Email verified successfully. You can now log in."}
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    await runtime.accounts.resend_verification(body.email)
    return Envelope(
        status="ok",
        data={
            "message": "If the account exists and is unverified, a verification link has been sent"
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Check credentials; return an access token and set the refresh cookie.

    Raises:
        401: Unknown email or wrong password (indistinguishable)
        403: Credentials matched but the email is not verified
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
    )
    result = await runtime.accounts.login(body.email, body.password)
    _set_refresh_cookie(response, runtime, result.refresh_token)
    return Envelope(
        status="ok",
        data={
            "message": "Login successful",
            "access_token": result.access_token,
            "token_type": "bearer",
            "expires_in": runtime.settings.access_token_ttl_minutes * 60,
            "user": _account_to_response(result.account),
        },
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_access_token(
    request: Request,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.token_rate_limit_per_minute,
    )
    access_token = await runtime.accounts.refresh(refresh_token)
    return Envelope(
        status="ok",
        data={
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": runtime.settings.access_token_ttl_minutes * 60,
        },
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response):
    # No server-side state: dropping the cookie is the whole operation
    runtime = get_runtime()
    response.delete_cookie(
        REFRESH_COOKIE,
        path="/",
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="strict",
    )
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    await runtime.accounts.forgot_password(body.email)
    # Same answer whether or not the address is registered
    return Envelope(
        status="ok", data={"message": "If the email exists, a reset link has been sent"}
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{_client_ip(request)}",
        runtime.settings.token_rate_limit_per_minute,
    )
    await runtime.accounts.reset_password(body.token, body.password)
    return Envelope(status="ok", data={"message": "Password reset successfully"})


# users
@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(ctx: AuthContext = Depends(get_current_account)):
    return Envelope(status="ok", data={"user": _account_to_response(ctx.account)})


@router.put("/users/me", response_model=Envelope, tags=["users"])
async def update_me(
    body: UpdateProfileRequest, ctx: AuthContext = Depends(get_current_account)
):
    runtime = get_runtime()
    account = await runtime.accounts.update_profile(
        ctx.account_id, name=body.name, email=body.email
    )
    return Envelope(
        status="ok",
        data={
            "message": "Profile updated successfully.",
            "user": _account_to_response(account),
        },
    )


@router.put("/users/update-password", response_model=Envelope, tags=["users"])
async def update_password(
    body: ChangePasswordRequest, ctx: AuthContext = Depends(get_current_account)
):
    runtime = get_runtime()
    await runtime.accounts.change_password(
        ctx.account_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "Password updated successfully."})


# admin
@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    search: Optional[str] = Query(None, max_length=254),
    ctx: AuthContext = Depends(get_admin_account),
):
    """List accounts oldest first; ``limit`` is capped rather than rejected."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:{ctx.account_id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    listing = runtime.admin.list_accounts(
        page=page, limit=min(limit, MAX_PAGE_SIZE), search=search
    )
    listing["users"] = [_account_to_response(a) for a in listing["users"]]
    return Envelope(status="ok", data=listing)


@router.delete("/admin/users/{user_id}", status_code=204, tags=["admin"])
async def admin_delete_user(user_id: str, ctx: AuthContext = Depends(get_admin_account)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:{ctx.account_id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    runtime.admin.delete_account(ctx.account_id, user_id)
    return Response(status_code=204)


@router.put("/admin/users/{user_id}/roles", response_model=Envelope, tags=["admin"])
async def admin_update_roles(
    user_id: str,
    body: UpdateRolesRequest,
    ctx: AuthContext = Depends(get_admin_account),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:{ctx.account_id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    account = runtime.admin.update_roles(ctx.account_id, user_id, body.roles)
    return Envelope(
        status="ok",
        data={
            "message": "User roles updated successfully.",
            "user": _account_to_response(account),
        },
    )
