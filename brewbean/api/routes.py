from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from brewbean.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UpdateProfileRequest,
    UserResponse,
    VerifyOTPRequest,
)
from brewbean.logging import get_logger
from brewbean.service.runtime import Runtime, check_rate_limit, get_runtime
from brewbean.service.sessions import AuthContext

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

FIFTEEN_MINUTES = 15 * 60
ONE_HOUR = 60 * 60
ONE_MINUTE = 60

_MAX_DEVICE_INFO = 256


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def as_headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        for name, value in self.as_headers().items():
            response.headers[name] = value


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count the request against ``key`` and reject it with 429 once the window is full.

    The X-RateLimit headers are attached to ``response`` on success and to the
    429 error otherwise.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        headers = info.as_headers()
        headers["Retry-After"] = str(reset_seconds)
        raise _http_error(
            "rate_limited",
            "Too many requests. Please try again later.",
            status_code=429,
            headers=headers,
        )

    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _device_info(request: Request) -> Optional[str]:
    agent = request.headers.get("user-agent")
    return agent[:_MAX_DEVICE_INFO] if agent else None


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a customer account and sign it in on the calling device.

    Raises:
        400: If a field is invalid or the password is too weak
        409: If the email or phone number is already registered
        429: If this IP exceeded the registration rate limit
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{ip}",
        runtime.settings.register_rate_limit,
        FIFTEEN_MINUTES,
        response=response,
    )
    result = await runtime.auth.register(
        name=body.name,
        email=body.email,
        password=body.password,
        phone=body.phone,
        date_of_birth=body.date_of_birth,
        gender=body.gender,
        device_info=_device_info(request),
        ip=ip,
    )
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_user(result.user).to_wire(),
            "token": result.token.token,
            "expiresIn": result.token.expires_in,
        },
    )


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If the credentials are wrong
        403: If the account has been deactivated
        423: If the account is locked after repeated failures
        429: If this IP exceeded the login rate limit
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{ip}",
        runtime.settings.login_rate_limit,
        FIFTEEN_MINUTES,
        response=response,
    )
    result = await runtime.auth.login(
        email=body.email,
        password=body.password,
        remember_me=body.remember_me,
        device_info=_device_info(request),
        ip=ip,
    )
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_user(result.user).to_wire(),
            "token": result.token.token,
            "expiresIn": result.token.expires_in,
        },
    )


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(
    body: ForgotPasswordRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot-password:{_client_ip(request)}",
        runtime.settings.forgot_password_rate_limit,
        ONE_HOUR,
        response=response,
    )
    return Envelope(status="ok", data=await runtime.auth.forgot_password(body.email))


@router.post("/verify-otp", response_model=Envelope)
async def verify_otp(body: VerifyOTPRequest, request: Request, response: Response):
    """Exchange a valid OTP for the reset token issued with it."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify-otp:{_client_ip(request)}",
        runtime.settings.verify_otp_rate_limit,
        ONE_MINUTE,
        response=response,
    )
    reset_token = await runtime.auth.verify_otp(body.email, body.otp)
    return Envelope(
        status="ok",
        data={"message": "OTP verified successfully", "resetToken": reset_token},
    )


@router.post("/reset-password", response_model=Envelope)
async def reset_password(
    body: ResetPasswordRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset-password:{_client_ip(request)}",
        runtime.settings.reset_password_rate_limit,
        FIFTEEN_MINUTES,
        response=response,
    )
    data = await runtime.auth.reset_password(body.reset_token, body.new_password)
    return Envelope(status="ok", data=data)


@router.put("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the password and sign out every other device."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"change-password:{principal.user_id}",
        runtime.settings.change_password_rate_limit,
        FIFTEEN_MINUTES,
        response=response,
    )
    data = await runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=data)


@router.post("/logout", response_model=Envelope)
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"logout:{principal.user_id}",
        runtime.settings.logout_rate_limit,
        FIFTEEN_MINUTES,
        response=response,
    )
    return Envelope(status="ok", data=await runtime.auth.logout(principal))


@router.post("/logout-all", response_model=Envelope)
async def logout_all(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"logout-all:{principal.user_id}",
        runtime.settings.logout_all_rate_limit,
        FIFTEEN_MINUTES,
        response=response,
    )
    return Envelope(status="ok", data=await runtime.auth.logout_all(principal))


@router.get("/me", response_model=Envelope)
async def me(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"me:{principal.user_id}",
        runtime.settings.profile_rate_limit,
        FIFTEEN_MINUTES,
        response=response,
    )
    user = await runtime.auth.get_profile(principal)
    return Envelope(status="ok", data={"user": UserResponse.from_user(user).to_wire()})


@router.put("/profile", response_model=Envelope)
async def update_profile(
    body: UpdateProfileRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Edit name, phone, address or preferences of the signed-in customer.

    Raises:
        400: If a field is invalid or unknown
        409: If the phone number belongs to another account
        429: If this user exceeded the profile update rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"update-profile:{principal.user_id}",
        runtime.settings.update_profile_rate_limit,
        FIFTEEN_MINUTES,
        response=response,
    )
    user = await runtime.auth.update_profile(
        principal,
        name=body.name,
        phone=body.phone,
        address=body.address_changes(),
        preferences=body.preference_changes(),
    )
    return Envelope(
        status="ok",
        data={
            "message": "Profile updated successfully",
            "user": UserResponse.from_user(user).to_wire(),
        },
    )
