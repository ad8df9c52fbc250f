"""
Bookflow Backend — Auth Schemas
=================================

What:  The authenticated-user value handed to routes, and the request bodies
       of the /api/auth endpoints.
Why:   Messages on this surface are user-facing in the Polish UI, so they are
       reproduced verbatim here.
How:   Email syntax is checked with `email-validator` (no DNS lookups).
"""

import uuid
from typing import Any, Optional

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, field_validator

from bookflow.schemas.common import RequestSchema, check_str, fail

INVALID_EMAIL = "Nieprawidłowy format e-mail"
PASSWORD_TOO_SHORT = "Hasło musi mieć minimum 6 znaków"
TOKEN_REQUIRED = "Token jest wymagany"
MIN_PASSWORD_LENGTH = 6


class AuthUser(BaseModel):
    """The user resolved from the session cookie or bearer token."""

    id: uuid.UUID
    email: Optional[str] = None


# ── Field checks ──────────────────────────────────────────────────────────
def check_email(value: Any) -> str:
    if not isinstance(value, str):
        fail(INVALID_EMAIL, "value_error")
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        fail(INVALID_EMAIL, "value_error")
    return value


def check_password(value: Any) -> str:
    password = check_str(value, "password")
    if len(password) < MIN_PASSWORD_LENGTH:
        fail(PASSWORD_TOO_SHORT, "too_short")
    return password


# ── Commands ──────────────────────────────────────────────────────────────
class LoginCommand(RequestSchema):
    email: str
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def validate_email_field(cls, value: Any) -> str:
        return check_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def validate_password_field(cls, value: Any) -> str:
        return check_password(value)


class RegisterCommand(LoginCommand):
    pass


class ForgotPasswordCommand(RequestSchema):
    email: str

    @field_validator("email", mode="before")
    @classmethod
    def validate_email_field(cls, value: Any) -> str:
        return check_email(value)


class ResetPasswordCommand(RequestSchema):
    required_messages = {"token": TOKEN_REQUIRED}

    token: str
    password: str

    @field_validator("password", mode="before")
    @classmethod
    def validate_password_field(cls, value: Any) -> str:
        return check_password(value)

    @field_validator("token", mode="before")
    @classmethod
    def validate_token(cls, value: Any) -> str:
        token = check_str(value, "token")
        if not token:
            fail(TOKEN_REQUIRED, "too_short")
        return token
