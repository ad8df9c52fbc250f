"""
Bookflow Backend — Supabase Auth (GoTrue) Client
==================================================

What:  Thin async client for the Supabase Auth REST API: password sign-in,
       sign-up, sign-out, password recovery and user lookup, plus the admin
       call that deletes an account.
Why:   Bookflow never stores passwords or mints tokens. It forwards
       credentials to GoTrue and keeps the returned session in cookies.
How:   httpx.AsyncClient against `{supabase_url}/auth/v1`. Every request
       carries the project's anon key in the `apikey` header; user-scoped
       calls add `Authorization: Bearer <access token>`.

Error Contract:
    GoTrue error payloads  → AuthServiceError(message, status_code, code)
    Transport failures     → ExternalServiceError
    Auth calls are never retried: a repeated sign-in or sign-up is not a
    harmless read.

GoTrue Error Shapes:
    Newer servers:  {"code": 400, "error_code": "invalid_credentials", "msg": "..."}
    Older servers:  {"error": "invalid_grant", "error_description": "..."}
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from bookflow.config import settings
from bookflow.exceptions import AuthServiceError, ExternalServiceError
from bookflow.schemas.auth import AuthUser

logger = logging.getLogger(__name__)


@dataclass
class AuthSession:
    """Tokens returned by GoTrue for a signed-in user."""

    access_token: str
    refresh_token: str
    expires_in: int
    user: AuthUser


@dataclass
class AuthResult:
    """
    Outcome of sign-in / sign-up / verification.

    `session` is None when GoTrue created the user but did not sign them in
    (sign-up with email confirmation enabled).
    """

    user: Optional[AuthUser]
    session: Optional[AuthSession]


def _parse_user(data: Optional[Dict[str, Any]]) -> Optional[AuthUser]:
    if not data or not data.get("id"):
        return None
    return AuthUser(id=data["id"], email=data.get("email"))


def _parse_result(data: Dict[str, Any]) -> AuthResult:
    """
    Normalize GoTrue's two success shapes.

    With a session the user sits under "user"; sign-up without a session
    returns the bare user object.
    """
    if data.get("access_token"):
        user = _parse_user(data.get("user"))
        session = None
        if user is not None:
            session = AuthSession(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token", ""),
                expires_in=int(data.get("expires_in") or 3600),
                user=user,
            )
        return AuthResult(user=user, session=session)
    return AuthResult(user=_parse_user(data.get("user") or data), session=None)


def _error_from_response(response: httpx.Response) -> AuthServiceError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = (
        body.get("msg")
        or body.get("error_description")
        or body.get("message")
        or body.get("error")
        or response.reason_phrase
        or "Authentication service error"
    )
    code = body.get("error_code") or body.get("error")
    return AuthServiceError(
        message=str(message),
        status_code=response.status_code,
        code=str(code) if code else None,
    )


class AuthService:
    """
    Async GoTrue client.

    Args:
        base_url:         Supabase project URL (defaults to settings)
        anon_key:         Public anon key sent as `apikey`
        service_role_key: Admin key, only used by `delete_user`
        transport:        Optional httpx transport (tests inject MockTransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        anon_key: Optional[str] = None,
        service_role_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = f"{base_url or settings.supabase_url}/auth/v1"
        self.anon_key = anon_key if anon_key is not None else settings.supabase_anon_key
        self.service_role_key = (
            service_role_key if service_role_key is not None else settings.supabase_service_role_key
        )
        self.timeout = timeout or settings.auth_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"apikey": self.anon_key, "Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        access_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Send one GoTrue request and return the decoded JSON body.

        Raises:
            AuthServiceError: GoTrue answered with a non-2xx status
            ExternalServiceError: GoTrue could not be reached
        """
        request_headers = dict(headers or {})
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"
        try:
            response = await self._get_client().request(
                method, path, json=json, params=params, headers=request_headers
            )
        except httpx.HTTPError as e:
            logger.error("Supabase Auth %s %s failed: %s", method, path, e)
            raise ExternalServiceError(
                message="Could not connect to the authentication service. Please try again later.",
                context={"path": path, "error": str(e)},
            ) from e

        if response.is_error:
            raise _error_from_response(response)
        if not response.content:
            return {}
        return response.json()

    # ── Password sign-in / sign-up ────────────────────────────────────────
    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        data = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return _parse_result(data)

    async def sign_up(self, email: str, password: str) -> AuthResult:
        data = await self._request("POST", "/signup", json={"email": email, "password": password})
        return _parse_result(data)

    async def sign_out(self, access_token: str) -> None:
        """Revoke the session's refresh tokens (scope=global is GoTrue's default)."""
        await self._request("POST", "/logout", access_token=access_token)

    # ── Password recovery ─────────────────────────────────────────────────
    async def reset_password_for_email(self, email: str, redirect_to: str) -> None:
        """
        Ask GoTrue to send a recovery email.

        GoTrue answers 200 whether or not the address is registered.
        """
        await self._request(
            "POST",
            "/recover",
            params={"redirect_to": redirect_to},
            json={"email": email},
        )

    async def verify_recovery_token(self, token: str) -> AuthResult:
        """Exchange a recovery `token_hash` from the email link for a session."""
        data = await self._request(
            "POST", "/verify", json={"type": "recovery", "token_hash": token}
        )
        return _parse_result(data)

    async def exchange_code_for_session(
        self, auth_code: str, code_verifier: Optional[str] = None
    ) -> AuthResult:
        """Exchange a PKCE authorization code for a session."""
        data = await self._request(
            "POST",
            "/token",
            params={"grant_type": "pkce"},
            json={"auth_code": auth_code, "code_verifier": code_verifier or ""},
        )
        return _parse_result(data)

    async def update_password(self, access_token: str, password: str) -> Optional[AuthUser]:
        data = await self._request(
            "PUT", "/user", json={"password": password}, access_token=access_token
        )
        return _parse_user(data)

    # ── Session lookup ────────────────────────────────────────────────────
    async def get_user(self, access_token: str) -> Optional[AuthUser]:
        """
        Resolve an access token to its user.

        Returns:
            AuthUser, or None when GoTrue rejects the token (expired, revoked,
            malformed). Other failures propagate.
        """
        try:
            data = await self._request("GET", "/user", access_token=access_token)
        except AuthServiceError as e:
            if e.status_code in (401, 403):
                return None
            raise
        return _parse_user(data)

    # ── Admin ─────────────────────────────────────────────────────────────
    async def delete_user(self, user_id: uuid.UUID) -> None:
        """Delete an auth user with the service-role key (admin API)."""
        if not self.service_role_key:
            raise AuthServiceError(
                message="SUPABASE_SERVICE_ROLE_KEY is not configured",
                status_code=500,
            )
        await self._request(
            "DELETE",
            f"/admin/users/{user_id}",
            headers={
                "apikey": self.service_role_key,
                "Authorization": f"Bearer {self.service_role_key}",
            },
        )


auth_service = AuthService()
