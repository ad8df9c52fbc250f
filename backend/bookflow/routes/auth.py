"""
Bookflow Backend — Auth Route Handlers
========================================

What:  Login, registration, logout and the password recovery flow.
Why:   The frontend never talks to Supabase Auth directly; these handlers
       forward credentials and keep the session in httpOnly cookies.
How:   Each handler validates the body, calls AuthService and maps GoTrue
       failures to the user-facing (Polish) messages shown by the UI.

Recovery Flow:
    1. POST /api/auth/forgot-password  → GoTrue emails a link to /api/auth/verify
    2. GET  /api/auth/verify           → token checked, 302 to /reset-password
    3. POST /api/auth/reset-password   → token exchanged, password updated

Cookies:
    sb-access-token / sb-refresh-token, httpOnly, SameSite=Lax, Secure unless
    COOKIE_SECURE=false (plain-http local development).
"""

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Request, Response
from fastapi.responses import RedirectResponse

from bookflow.config import settings
from bookflow.exceptions import (
    AuthServiceError,
    AuthenticationError,
    BadRequestError,
    BookflowError,
    ConflictError,
    ExternalServiceError,
)
from bookflow.routes.dependencies import INVALID_AUTH_BODY, get_access_token, read_json_body
from bookflow.schemas.auth import (
    ForgotPasswordCommand,
    LoginCommand,
    RegisterCommand,
    ResetPasswordCommand,
)
from bookflow.schemas.common import ErrorResponse, validate_input
from bookflow.services.auth_service import AuthResult, AuthSession, auth_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])

INVALID_CREDENTIALS = "Nieprawidłowy e-mail lub hasło"
ACCOUNT_EXISTS = "Konto z tym e-mailem już istnieje"
RESET_LINK_SENT = "Jeśli konto z tym e-mailem istnieje, otrzymasz link do resetu hasła"
TOKEN_EXPIRED = "Token wygasł lub jest nieprawidłowy. Wyślij nowy link do resetu hasła."
TRY_AGAIN_LATER = "Wystąpił błąd. Spróbuj ponownie później."


# ── Cookie helpers ────────────────────────────────────────────────────────
def set_session_cookies(response: Response, session: AuthSession) -> None:
    for name, value in (
        (settings.access_token_cookie, session.access_token),
        (settings.refresh_token_cookie, session.refresh_token),
    ):
        response.set_cookie(
            name,
            value,
            max_age=settings.cookie_max_age,
            path="/",
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
        )


def clear_session_cookies(response: Response) -> None:
    for name in (settings.access_token_cookie, settings.refresh_token_cookie):
        response.delete_cookie(
            name, path="/", httponly=True, secure=settings.cookie_secure, samesite="lax"
        )


def _user_body(result: AuthResult) -> dict:
    return {"id": str(result.user.id), "email": result.user.email}


def _mentions(error: AuthServiceError, *needles: str) -> bool:
    text = f"{error.message} {error.code or ''}".lower()
    return any(needle.lower() in text for needle in needles)


def is_invalid_credentials(error: AuthServiceError) -> bool:
    # Unconfirmed accounts get the same answer as a wrong password
    return _mentions(error, "Invalid login credentials", "invalid_credentials", "Email not confirmed")


def is_user_exists(error: AuthServiceError) -> bool:
    return _mentions(error, "already registered", "already exists", "user_already_exists")


def is_expired_or_invalid(error: AuthServiceError) -> bool:
    return _mentions(error, "expired", "invalid")


async def _verify_token(token: str) -> AuthResult:
    """PKCE codes are exchanged for a session; anything else is an OTP token hash."""
    if token.startswith("pkce_"):
        return await auth_service.exchange_code_for_session(token)
    return await auth_service.verify_recovery_token(token)


# ══════════════════════════════════════════════════════════════════════════
# Login / Register / Logout
# ══════════════════════════════════════════════════════════════════════════


@router.post(
    "/login",
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    summary="Sign in with e-mail and password",
)
async def login(request: Request, response: Response) -> dict:
    body = await read_json_body(request, INVALID_AUTH_BODY)
    command = validate_input(LoginCommand, body).unwrap()

    try:
        result = await auth_service.sign_in_with_password(command.email, command.password)
    except AuthServiceError as e:
        logger.warning("Login failed for %s: %s", command.email, e.message)
        if is_invalid_credentials(e):
            raise AuthenticationError(INVALID_CREDENTIALS) from e
        raise
    except ExternalServiceError as e:
        raise BookflowError(TRY_AGAIN_LATER) from e

    if result.user is None or result.session is None:
        logger.error("Login for %s returned no session", command.email)
        raise BookflowError("Failed to create session")

    set_session_cookies(response, result.session)
    logger.info("User %s logged in", result.user.id)
    return {"user": _user_body(result)}


@router.post(
    "/register",
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Create an account",
)
async def register(request: Request, response: Response) -> dict:
    """
    Register a new account.

    `requiresEmailConfirmation` is true when GoTrue created the user without
    signing them in; cookies are only set when a session came back.
    """
    body = await read_json_body(request, INVALID_AUTH_BODY)
    command = validate_input(RegisterCommand, body).unwrap()

    try:
        result = await auth_service.sign_up(command.email, command.password)
    except AuthServiceError as e:
        logger.warning("Registration failed for %s: %s", command.email, e.message)
        if is_user_exists(e):
            raise ConflictError(ACCOUNT_EXISTS) from e
        raise
    except ExternalServiceError as e:
        raise BookflowError(TRY_AGAIN_LATER) from e

    if result.user is None:
        logger.error("Registration for %s returned no user", command.email)
        raise BookflowError("Failed to create user")

    if result.session is not None:
        set_session_cookies(response, result.session)
    requires_confirmation = result.session is None
    logger.info(
        "Registered user %s (confirmation required: %s)", result.user.id, requires_confirmation
    )
    return {"user": _user_body(result), "requiresEmailConfirmation": requires_confirmation}


@router.post("/logout", summary="Sign out and clear the session cookies")
async def logout(request: Request, response: Response) -> dict:
    token = get_access_token(request)
    if token:
        try:
            await auth_service.sign_out(token)
        except AuthServiceError as e:
            # An expired token has nothing left to revoke
            if e.status_code not in (401, 403):
                logger.warning("Logout failed: %s", e.message)
                raise BadRequestError(e.message) from e
        except ExternalServiceError as e:
            raise BookflowError(TRY_AGAIN_LATER) from e
    clear_session_cookies(response)
    return {"success": True}


# ══════════════════════════════════════════════════════════════════════════
# Password Recovery
# ══════════════════════════════════════════════════════════════════════════


@router.post("/forgot-password", summary="Send a password reset link")
async def forgot_password(request: Request) -> dict:
    """
    Always answers 200 once the body validates, whether or not the address
    belongs to an account, so the endpoint cannot be used to probe e-mails.
    """
    body = await read_json_body(request, INVALID_AUTH_BODY)
    command = validate_input(ForgotPasswordCommand, body).unwrap()

    redirect_to = f"{settings.site_url}/reset-password"
    try:
        await auth_service.reset_password_for_email(command.email, redirect_to)
        logger.info("Password reset e-mail requested for %s", command.email)
    except (AuthServiceError, ExternalServiceError) as e:
        logger.warning("Password reset e-mail for %s failed: %s", command.email, e.message)
    return {"message": RESET_LINK_SENT}


@router.post(
    "/reset-password",
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    summary="Set a new password using a recovery token",
)
async def reset_password(request: Request, response: Response) -> dict:
    body = await read_json_body(request, INVALID_AUTH_BODY)
    command = validate_input(ResetPasswordCommand, body).unwrap()

    try:
        result = await _verify_token(command.token)
    except AuthServiceError as e:
        logger.warning("Recovery token rejected: %s", e.message)
        if is_expired_or_invalid(e):
            raise AuthenticationError(TOKEN_EXPIRED) from e
        raise
    except ExternalServiceError as e:
        raise BookflowError(TRY_AGAIN_LATER) from e

    if result.user is None or result.session is None:
        raise BookflowError("Failed to create session from token")

    try:
        user = await auth_service.update_password(result.session.access_token, command.password)
    except AuthServiceError as e:
        logger.warning("Password update for %s failed: %s", result.user.id, e.message)
        raise
    except ExternalServiceError as e:
        raise BookflowError(TRY_AGAIN_LATER) from e
    if user is None:
        raise BookflowError("Failed to update password")

    set_session_cookies(response, result.session)
    logger.info("Password reset for user %s", user.id)
    return {"user": {"id": str(user.id), "email": user.email}}


@router.get("/verify", summary="Check a recovery link and redirect to the reset form")
async def verify(
    token: Optional[str] = None,
    type: Optional[str] = None,
) -> RedirectResponse:
    def fail(reason: str) -> RedirectResponse:
        return RedirectResponse(f"/forgot-password?error={reason}", status_code=302)

    if not token or type != "recovery":
        logger.warning("Recovery link without token or with type %r", type)
        return fail("invalid_link")

    try:
        result = await _verify_token(token)
    except ExternalServiceError as e:
        logger.error("Supabase Auth unreachable during verification: %s", e.message)
        return fail("connection")
    except AuthServiceError as e:
        logger.warning("Recovery link rejected: %s", e.message)
        return fail("expired" if is_expired_or_invalid(e) else "invalid")

    if result.user is None or result.session is None:
        logger.error("Recovery link verified but no session was created")
        return fail("session_failed")

    redirect = RedirectResponse(
        f"/reset-password?token={quote(token, safe='')}&type=recovery", status_code=302
    )
    set_session_cookies(redirect, result.session)
    return redirect
