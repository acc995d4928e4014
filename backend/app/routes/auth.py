# app/routes/auth.py
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends

from app.core.config import settings
from app.core.errors import InvalidTokenError, UnauthorizedError
from app.dependencies.auth import get_current_user
from app.dependencies.auth_flow import get_auth_flow
from app.dependencies.rate_limit import require_rate_limit
from app.models.user import User
from app.schemas.auth import (
    ForgotPasswordIn,
    LoginIn,
    LoginOut,
    LogoutIn,
    MessageOut,
    RefreshIn,
    RegisterIn,
    RegisterOut,
    ResendVerificationIn,
    ResetPasswordIn,
    ResetPasswordOut,
    ResetTokenStatusOut,
    SessionTokensOut,
    VerificationInfoOut,
    VerifyEmailIn,
    VerifyOut,
)
from app.services.auth_flow import AuthFlow

router = APIRouter(prefix="/auth", tags=["auth"])

login_rate_limit = require_rate_limit(
    "login",
    limit=settings.LOGIN_RATE_LIMIT,
    window_seconds=settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS,
)


# -----------------------------
# Registration / verification
# -----------------------------
@router.post("/register", response_model=RegisterOut)
def register(payload: RegisterIn, flow: AuthFlow = Depends(get_auth_flow)):
    result = flow.register(payload.email, payload.password, payload.nickname)
    return RegisterOut(
        message=result.message,
        email=result.email,
        verification_token=result.verification_token,
        notification_sent=result.notification_sent,
    )


@router.post("/verify-email", response_model=VerifyOut)
def verify_email(payload: VerifyEmailIn, flow: AuthFlow = Depends(get_auth_flow)):
    result = flow.verify_code(payload.email, payload.code)
    return VerifyOut(message=result.message, verified=result.verified)


@router.post("/resend-verification", response_model=MessageOut)
def resend_verification(payload: ResendVerificationIn, flow: AuthFlow = Depends(get_auth_flow)):
    result = flow.resend_verification(
        verification_token=payload.verification_token,
        email=payload.email,
        captcha_token=payload.captcha_token,
    )
    return {"message": result.message}


@router.get("/verification-info", response_model=VerificationInfoOut)
def verification_info(verification_token: str, flow: AuthFlow = Depends(get_auth_flow)):
    info = flow.verification_info(verification_token)
    return VerificationInfoOut(email=info.email, sent_at=info.sent_at, remaining_cooldown=info.remaining_cooldown)


# -----------------------------
# Sessions
# -----------------------------
@router.post("/login", response_model=LoginOut, dependencies=[Depends(login_rate_limit)])
def login(payload: LoginIn, flow: AuthFlow = Depends(get_auth_flow)):
    result = flow.login(payload.email, payload.password)
    return LoginOut(
        user_id=result.user_id,
        email=result.email,
        token=result.token,
        refresh_token=result.refresh_token,
        expires_at=result.expires_at,
        nickname=result.nickname,
        verified=result.verified,
    )


@router.post("/refresh", response_model=SessionTokensOut)
def refresh(payload: RefreshIn, flow: AuthFlow = Depends(get_auth_flow)):
    try:
        tokens = flow.refresh_session(payload.refresh_token)
    except InvalidTokenError as exc:
        # Clients treat 401 on refresh as "session over, log in again".
        raise UnauthorizedError(exc.message) from exc
    return SessionTokensOut(token=tokens.token, refresh_token=tokens.refresh_token, expires_at=tokens.expires_at)


@router.post("/logout", response_model=MessageOut)
def logout(payload: LogoutIn, flow: AuthFlow = Depends(get_auth_flow)):
    flow.logout(payload.refresh_token)
    return {"message": "Logged out"}


@router.post("/logout-all", response_model=MessageOut)
def logout_all(user: User = Depends(get_current_user), flow: AuthFlow = Depends(get_auth_flow)):
    revoked = flow.logout_all(user.id)
    return {"message": f"Logged out of {revoked} sessions"}


# -----------------------------
# Password reset
# -----------------------------
@router.post("/forgot-password", response_model=MessageOut)
def forgot_password(
    payload: ForgotPasswordIn,
    background_tasks: BackgroundTasks,
    flow: AuthFlow = Depends(get_auth_flow),
):
    message = flow.forgot_password(payload.email, captcha_token=payload.captcha_token, background=background_tasks)
    return {"message": message}


@router.get("/reset-password/verify", response_model=ResetTokenStatusOut)
def verify_reset_token(token: str, flow: AuthFlow = Depends(get_auth_flow)):
    status = flow.verify_reset_token(token)
    return ResetTokenStatusOut(valid=status.valid, email=status.email)


@router.post("/reset-password", response_model=ResetPasswordOut)
def reset_password(payload: ResetPasswordIn, flow: AuthFlow = Depends(get_auth_flow)):
    result = flow.reset_password(payload.reset_token, payload.new_password)
    return ResetPasswordOut(success=result.success, message=result.message, email=result.email)
