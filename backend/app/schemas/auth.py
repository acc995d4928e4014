# app/schemas/auth.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class RegisterIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    nickname: Optional[str] = Field(default=None, max_length=50)


class RegisterOut(BaseModel):
    message: str
    email: str
    verification_token: Optional[str] = None
    notification_sent: bool


class VerifyEmailIn(BaseModel):
    email: EmailStr
    code: str = Field(min_length=1, max_length=16)


class VerifyOut(BaseModel):
    message: str
    verified: bool


class ResendVerificationIn(BaseModel):
    verification_token: Optional[str] = None
    email: Optional[EmailStr] = None
    captcha_token: Optional[str] = None


class VerificationInfoOut(BaseModel):
    email: str
    sent_at: Optional[datetime] = None
    remaining_cooldown: Optional[int] = None


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class LoginOut(BaseModel):
    user_id: str
    email: str
    token: str
    refresh_token: str
    expires_at: datetime
    nickname: Optional[str] = None
    verified: bool


class RefreshIn(BaseModel):
    refresh_token: str = Field(min_length=1)


class SessionTokensOut(BaseModel):
    token: str
    refresh_token: str
    expires_at: datetime


class LogoutIn(BaseModel):
    refresh_token: Optional[str] = None


class ForgotPasswordIn(BaseModel):
    email: EmailStr
    captcha_token: Optional[str] = None


class ResetTokenStatusOut(BaseModel):
    valid: bool
    email: Optional[str] = None


class ResetPasswordIn(BaseModel):
    reset_token: str = Field(min_length=1)
    new_password: str = Field(min_length=1, max_length=128)


class ResetPasswordOut(BaseModel):
    success: bool
    message: str
    email: Optional[str] = None


class MessageOut(BaseModel):
    message: str
