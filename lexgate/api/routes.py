from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel

from lexgate.api.deps import get_admin_user, get_user
from lexgate.api.schemas import (
    AdjustQuotaRequest,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    PhoneLoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SendCodeRequest,
    SendCodeResponse,
    TokenPairResponse,
    UpdateRoleRequest,
    UpdateStatusRequest,
    UsageResponse,
    UserResponse,
)
from lexgate.logging import get_logger
from lexgate.service.access import AuthContext, extract_bearer
from lexgate.service.auth import LoginResult, TokenPair
from lexgate.service.errors import ServiceError
from lexgate.service.quota import UsageStats
from lexgate.service.runtime import get_runtime
from lexgate.storage.models import Credential

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def _dump(model: BaseModel) -> dict:
    return model.model_dump(by_alias=True, mode="json")


def _ok(data: Optional[BaseModel] = None) -> Envelope:
    return Envelope(data=_dump(data) if data is not None else None)


def _user_response(user: Credential) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        phone=user.phone,
        name=user.name,
        avatar=user.avatar,
        role=user.role,
        status=user.status,
        token_quota=user.token_quota,
        token_used=user.token_used,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def _token_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        token_type=pair.token_type,
    )


def _login_response(result: LoginResult) -> LoginResponse:
    return LoginResponse(user=_user_response(result.user), token=_token_response(result.token))


def _usage_response(stats: UsageStats) -> UsageResponse:
    return UsageResponse(
        user_id=stats.user_id,
        token_quota=stats.token_quota,
        token_used=stats.token_used,
        remaining=stats.remaining,
        usage_rate=stats.usage_rate,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: Unknown email or wrong password (indistinguishable)
        403: Account is not active
        429: Account temporarily locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.auth.login_by_email(body.email, body.password)
    return _ok(_login_response(result))


@router.post("/auth/login/phone", response_model=Envelope, tags=["auth"])
async def login_by_phone(body: PhoneLoginRequest):
    """Authenticate with a phone number and a ``login`` verification code.

    Raises:
        400: Code invalid or expired
        401: No account for this phone
        429: Too many verification attempts
    """
    runtime = get_runtime()
    result = await runtime.auth.login_by_phone(body.phone, body.code)
    return _ok(_login_response(result))


@router.post("/auth/send-code", response_model=Envelope, tags=["auth"])
async def send_code(body: SendCodeRequest):
    """Send a one-time code to an email address or phone.

    Raises:
        429: A code was sent to this destination too recently
        500: The email could not be delivered
        501: SMS delivery is not available
    """
    runtime = get_runtime()
    expires_in = await runtime.verification.send_code(body.identifier, body.purpose)
    return _ok(SendCodeResponse(sent=True, expires_in=expires_in))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account after verifying an emailed ``register`` code.

    Raises:
        400: Weak password, or code invalid or expired
        409: Email (or phone) already registered
    """
    runtime = get_runtime()
    user = await runtime.auth.register_with_code(
        body.email, body.code, body.password, body.name, body.phone
    )
    return _ok(_user_response(user))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    """Set a new password using a ``reset_password`` code."""
    runtime = get_runtime()
    await runtime.auth.reset_password(body.email, body.code, body.password)
    return _ok()


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Redeem a refresh token for a new pair. Each refresh token works once.

    Raises:
        401: Unknown, expired or already redeemed refresh token
        403: Account is not active
    """
    runtime = get_runtime()
    pair = await runtime.auth.refresh_token(body.refresh_token)
    return _ok(_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    """Revoke the presented access token. Always acknowledges."""
    runtime = get_runtime()
    try:
        token = extract_bearer(authorization)
        await runtime.auth.logout(token)
    except ServiceError as exc:
        logger.info("logout_token_ignored", reason=exc.kind.value)
    return _ok()


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_current_user(principal.user_id)
    return _ok(_user_response(user))


@router.get("/users/me/quota", response_model=Envelope, tags=["users"])
async def my_quota(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    stats = await runtime.quota.usage(principal.user_id)
    return _ok(_usage_response(stats))


@router.put("/users/me/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    """Change the caller's password.

    Raises:
        400: New password too short or too weak
        401: Current password is incorrect
    """
    runtime = get_runtime()
    await runtime.auth.change_password(principal.user_id, body.old_password, body.new_password)
    return _ok()


@router.put("/users/{user_id}/quota", response_model=Envelope, tags=["admin"])
async def adjust_quota(
    user_id: str,
    body: AdjustQuotaRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    """Set a user's token quota. Admin and super admin only.

    Raises:
        403: Caller lacks an admin role
        404: Unknown user
    """
    runtime = get_runtime()
    stats = await runtime.quota.adjust_quota(user_id, body.token_quota)
    logger.info("admin_quota_adjusted", admin_id=principal.user_id, user_id=user_id)
    return _ok(_usage_response(stats))


@router.put("/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def update_status(
    user_id: str,
    body: UpdateStatusRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    """Activate, deactivate or ban an account. Admin and super admin only.

    Raises:
        400: Unknown status, or the caller targets their own account
        403: Caller lacks an admin role
        404: Unknown user
    """
    runtime = get_runtime()
    user = await runtime.auth.update_status(principal.user_id, user_id, body.status)
    return _ok(_user_response(user))


@router.put("/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def update_role(
    user_id: str,
    body: UpdateRoleRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    """Change an account's role. Super admin only.

    Raises:
        400: Unknown role, or the caller targets their own account
        403: Caller is not a super admin
        404: Unknown user
    """
    runtime = get_runtime()
    user = await runtime.auth.update_role(principal.user_id, principal.role, user_id, body.role)
    return _ok(_user_response(user))
