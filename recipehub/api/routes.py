from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from recipehub.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    UpdateUserActiveRequest,
    UpdateUserRoleRequest,
    UserResponse,
)
from recipehub.logging import get_logger
from recipehub.service.auth import AuthContext, TokenPair
from recipehub.service.errors import ForbiddenError, RateLimitedError, UserNotFoundError
from recipehub.service.runtime import check_rate_limit, get_runtime
from recipehub.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise 429 with a Retry-After hint."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.info("rate_limit_exceeded", scope=key.split(":", 1)[0], retry_after=reset_seconds)
        raise RateLimitedError(reset_seconds)
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_response(user: User) -> UserResponse:
    return UserResponse.model_validate(user)


def _token_response(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(**tokens.to_dict())


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.is_admin:
        raise ForbiddenError()
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in.

    Raises:
        400: If the passwords differ or fail validation
        409: If the email is already registered
        429: If the rate limit is exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
    )
    user, tokens = await runtime.auth.register(
        body.email,
        body.password,
        body.confirm_password,
        first_name=body.first_name,
        last_name=body.last_name,
        avatar=body.avatar,
        bio=body.bio,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(user),
            tokens=_token_response(tokens),
            message="Registration successful",
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: If the credentials are wrong or the account is deactivated
        429: If the rate limit is exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    user, tokens = await runtime.auth.login(body.email, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(user),
            tokens=_token_response(tokens),
            message="Login successful",
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.auth.logout()
    logger.info("user_logged_out", user_id=principal.user_id)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.patch("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    """Change the caller's password.

    Every refresh token issued before the change stops working.
    """
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(**result))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.credentials.find_by_id(principal.user_id)
    if not user:
        raise UserNotFoundError()
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Start a password reset.

    The answer is the same whether or not the address has an account.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.recovery.request_password_reset(
        body.email,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.recovery.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/send-verification", response_model=Envelope, tags=["auth"])
async def send_verification(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"send_verification:{principal.user_id}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.recovery.send_email_verification(principal.user_id)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1, max_length=256),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.recovery.verify_email(token)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.patch("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def update_user_role(
    body: UpdateUserRoleRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    """Change a user's role; their refresh tokens are revoked."""
    runtime = get_runtime()
    user = await runtime.auth.set_user_role(principal.user_id, user_id, body.role)
    return Envelope(status="ok", data=_user_response(user))


@router.patch("/admin/users/{user_id}/active", response_model=Envelope, tags=["admin"])
async def update_user_active(
    body: UpdateUserActiveRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    if user_id == principal.user_id and not body.is_active:
        raise ForbiddenError("You cannot deactivate your own account")
    user = await runtime.auth.set_user_active(user_id, body.is_active)
    return Envelope(status="ok", data=_user_response(user))


@router.patch("/admin/users/{user_id}/verify-email", response_model=Envelope, tags=["admin"])
async def verify_user_email(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.mark_user_email_verified(principal.user_id, user_id)
    return Envelope(status="ok", data=_user_response(user))
