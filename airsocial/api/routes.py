from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import HTMLResponse

from airsocial.api.pages import reset_password_page, verification_page
from airsocial.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    TokenResponse,
)
from airsocial.logging import get_logger
from airsocial.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    ServiceError,
)
from airsocial.service.runtime import get_runtime
from airsocial.service.sessions import TokenInfo
from airsocial.service.tokens import AccessClaims, extract_bearer

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

FORGOT_PASSWORD_MESSAGE = (
    "If the email exists, we have sent instructions on how to reset your password."
)
RESEND_VERIFICATION_MESSAGE = (
    "If the account exists and is not yet verified, a new verification email has been sent."
)


@dataclass
class Principal:
    claims: AccessClaims
    access_token: str

    @property
    def user_id(self) -> int:
        return self.claims.user_id


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    runtime = get_runtime()
    claims = await runtime.sessions.authenticate(token)
    return Principal(claims=claims, access_token=token)


def _token_response(tokens: TokenInfo) -> TokenResponse:
    return TokenResponse(**tokens.as_dict())


@router.post("/auth/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and send the verification email."""
    runtime = get_runtime()
    user = await runtime.auth.register(body.email, body.username, body.password)
    return Envelope(status="ok", data=user.public_dict())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password; returns the user and a token pair."""
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(body.email, body.password, body.device_id)
    return Envelope(
        status="ok",
        data={"user": user.public_dict(), "token": _token_response(tokens).model_dump()},
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, authorization: Optional[str] = Header(None)):
    """Rotate a refresh token.

    A Bearer header is optional here; when present the old access token is
    blocked for the rest of its lifetime.
    """
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(
        body.refresh_token, access_token=extract_bearer(authorization)
    )
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    body = body or LogoutRequest()
    device_id = body.device_id or principal.claims.device_id
    await runtime.auth.logout(
        principal.user_id,
        device_id,
        body.all_devices,
        access_token=principal.access_token,
    )
    return Envelope(status="ok", data=MessageResponse(message="logout success"))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Always answers with the same message so account existence is not revealed."""
    runtime = get_runtime()
    try:
        await runtime.auth.forgot_password(body.email)
    except NotFoundError:
        pass
    except ServiceError as exc:
        logger.error(
            "forgot_password_failed",
            error=exc.message,
            error_type=type(exc).__name__,
        )
    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    try:
        await runtime.auth.resend_verification(body.email)
    except (NotFoundError, ConflictError):
        pass
    return Envelope(status="ok", data=MessageResponse(message=RESEND_VERIFICATION_MESSAGE))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.password)
    return Envelope(status="ok", data=MessageResponse(message="password update successfully"))


@router.get("/auth/verify-email", response_class=HTMLResponse, tags=["auth"])
async def verify_email(token: str = Query("", max_length=256)):
    """Landing page for the link in the verification email."""
    runtime = get_runtime()
    app_name = runtime.settings.email_from_name
    if not token:
        return HTMLResponse(verification_page(False, app_name), status_code=400)
    try:
        await runtime.auth.verify_email(token)
    except (BadRequestError, NotFoundError) as exc:
        logger.info("email_verification_rejected", reason=exc.message)
        return HTMLResponse(verification_page(False, app_name), status_code=400)
    return HTMLResponse(verification_page(True, app_name))


@router.get("/auth/reset-password", response_class=HTMLResponse, tags=["auth"])
async def show_reset_password_page(token: str = Query("", max_length=256)):
    """Form page for the link in the reset-password email."""
    runtime = get_runtime()
    if not await runtime.auth.is_reset_password_token_valid(token):
        return HTMLResponse(reset_password_page(False), status_code=400)
    action = f"{runtime.links.prefix}/auth/reset-password"
    return HTMLResponse(reset_password_page(True, token=token, action=action))
