"""
Bookflow Backend — Auth Endpoint Tests
========================================

What:  HTTP-level tests for /api/auth.
How:   The module-level `auth_service` used by the routes is patched per test;
       requests go through the full app (middleware, exception handlers).

What we test:
    ✅ Login sets httpOnly session cookies; bad credentials → 401 (Polish)
    ✅ Register reports whether e-mail confirmation is required
    ✅ Forgot-password answers 200 even when GoTrue fails
    ✅ Logout tolerates an already-expired token
    ✅ /verify redirects to the reset form or to an error page
"""

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from bookflow.config import settings
from bookflow.exceptions import AuthServiceError, ExternalServiceError
from bookflow.routes import auth as auth_routes
from bookflow.schemas.auth import AuthUser
from bookflow.services.auth_service import AuthResult, AuthSession


def signed_in(email="reader@example.com") -> AuthResult:
    user = AuthUser(id=uuid4(), email=email)
    return AuthResult(
        user=user,
        session=AuthSession(
            access_token="access-123", refresh_token="refresh-456", expires_in=3600, user=user
        ),
    )


def patch_auth(method: str, **kwargs):
    return patch.object(auth_routes.auth_service, method, new_callable=AsyncMock, **kwargs)


def set_cookies(response) -> list:
    return response.headers.get_list("set-cookie")


class TestLogin:
    @pytest.mark.asyncio
    async def test_success_sets_cookies(self, anon_client):
        result = signed_in()
        with patch_auth("sign_in_with_password", return_value=result):
            response = await anon_client.post(
                "/api/auth/login", json={"email": "reader@example.com", "password": "secret1"}
            )

        assert response.status_code == 200
        assert response.json() == {
            "user": {"id": str(result.user.id), "email": "reader@example.com"}
        }
        cookies = set_cookies(response)
        access = next(c for c in cookies if c.startswith(f"{settings.access_token_cookie}="))
        assert "access-123" in access
        assert "HttpOnly" in access
        assert "samesite=lax" in access.lower()
        assert any(c.startswith(f"{settings.refresh_token_cookie}=refresh-456") for c in cookies)

    @pytest.mark.asyncio
    async def test_invalid_credentials(self, anon_client):
        error = AuthServiceError("Invalid login credentials", status_code=400)
        with patch_auth("sign_in_with_password", side_effect=error):
            response = await anon_client.post(
                "/api/auth/login", json={"email": "reader@example.com", "password": "wrong12"}
            )

        assert response.status_code == 401
        assert response.json()["message"] == auth_routes.INVALID_CREDENTIALS

    @pytest.mark.asyncio
    async def test_validation_error_in_polish(self, anon_client):
        response = await anon_client.post(
            "/api/auth/login", json={"email": "reader@example.com", "password": "123"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation error"
        assert body["message"] == "Hasło musi mieć minimum 6 znaków"
        assert body["details"][0]["path"] == ["password"]

    @pytest.mark.asyncio
    async def test_malformed_body(self, anon_client):
        response = await anon_client.post(
            "/api/auth/login",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid request body format"

    @pytest.mark.asyncio
    async def test_auth_unreachable(self, anon_client):
        with patch_auth("sign_in_with_password", side_effect=ExternalServiceError()):
            response = await anon_client.post(
                "/api/auth/login", json={"email": "reader@example.com", "password": "secret1"}
            )

        assert response.status_code == 500
        assert response.json()["message"] == auth_routes.TRY_AGAIN_LATER


class TestRegister:
    @pytest.mark.asyncio
    async def test_confirmation_required(self, anon_client):
        result = AuthResult(user=AuthUser(id=uuid4(), email="new@example.com"), session=None)
        with patch_auth("sign_up", return_value=result):
            response = await anon_client.post(
                "/api/auth/register", json={"email": "new@example.com", "password": "secret1"}
            )

        assert response.status_code == 200
        assert response.json()["requiresEmailConfirmation"] is True
        assert set_cookies(response) == []

    @pytest.mark.asyncio
    async def test_signed_in_immediately(self, anon_client):
        with patch_auth("sign_up", return_value=signed_in("new@example.com")):
            response = await anon_client.post(
                "/api/auth/register", json={"email": "new@example.com", "password": "secret1"}
            )

        assert response.json()["requiresEmailConfirmation"] is False
        assert len(set_cookies(response)) == 2

    @pytest.mark.asyncio
    async def test_existing_account(self, anon_client):
        error = AuthServiceError("User already registered", status_code=422)
        with patch_auth("sign_up", side_effect=error):
            response = await anon_client.post(
                "/api/auth/register", json={"email": "old@example.com", "password": "secret1"}
            )

        assert response.status_code == 409
        assert response.json()["message"] == auth_routes.ACCOUNT_EXISTS


class TestLogoutAndRecovery:
    @pytest.mark.asyncio
    async def test_logout_with_expired_token(self, anon_client):
        error = AuthServiceError("invalid JWT", status_code=401)
        with patch_auth("sign_out", side_effect=error) as sign_out:
            response = await anon_client.post(
                "/api/auth/logout", headers={"Authorization": "Bearer expired"}
            )

        sign_out.assert_awaited_once_with("expired")
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert len(set_cookies(response)) == 2

    @pytest.mark.asyncio
    async def test_logout_without_session(self, anon_client):
        with patch_auth("sign_out") as sign_out:
            response = await anon_client.post("/api/auth/logout")

        sign_out.assert_not_awaited()
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_forgot_password_never_reveals_accounts(self, anon_client):
        error = AuthServiceError("User not found", status_code=404)
        with patch_auth("reset_password_for_email", side_effect=error) as reset:
            response = await anon_client.post(
                "/api/auth/forgot-password", json={"email": "nobody@example.com"}
            )

        assert response.status_code == 200
        assert response.json() == {"message": auth_routes.RESET_LINK_SENT}
        assert reset.await_args.args == (
            "nobody@example.com",
            f"{settings.site_url}/reset-password",
        )

    @pytest.mark.asyncio
    async def test_reset_password_with_expired_token(self, anon_client):
        error = AuthServiceError("Token has expired or is invalid", status_code=403)
        with patch_auth("verify_recovery_token", side_effect=error):
            response = await anon_client.post(
                "/api/auth/reset-password", json={"token": "old", "password": "newsecret"}
            )

        assert response.status_code == 401
        assert response.json()["message"] == auth_routes.TOKEN_EXPIRED

    @pytest.mark.asyncio
    async def test_reset_password_success(self, anon_client):
        result = signed_in()
        with patch_auth("verify_recovery_token", return_value=result), patch_auth(
            "update_password", return_value=result.user
        ) as update:
            response = await anon_client.post(
                "/api/auth/reset-password", json={"token": "hash", "password": "newsecret"}
            )

        assert response.status_code == 200
        update.assert_awaited_once_with("access-123", "newsecret")
        assert response.json()["user"]["id"] == str(result.user.id)


class TestVerify:
    @pytest.mark.asyncio
    async def test_valid_link_redirects_to_reset_form(self, anon_client):
        with patch_auth("verify_recovery_token", return_value=signed_in()):
            response = await anon_client.get(
                "/api/auth/verify", params={"token": "hash/abc", "type": "recovery"}
            )

        assert response.status_code == 302
        assert response.headers["location"] == "/reset-password?token=hash%2Fabc&type=recovery"
        assert len(set_cookies(response)) == 2

    @pytest.mark.asyncio
    async def test_pkce_code_is_exchanged(self, anon_client):
        with patch_auth("exchange_code_for_session", return_value=signed_in()) as exchange:
            response = await anon_client.get(
                "/api/auth/verify", params={"token": "pkce_123", "type": "recovery"}
            )

        exchange.assert_awaited_once_with("pkce_123")
        assert response.status_code == 302

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params,side_effect,reason",
        [
            ({"type": "recovery"}, None, "invalid_link"),
            ({"token": "hash", "type": "signup"}, None, "invalid_link"),
            (
                {"token": "hash", "type": "recovery"},
                AuthServiceError("Token has expired", status_code=403),
                "expired",
            ),
            (
                {"token": "hash", "type": "recovery"},
                AuthServiceError("Something odd", status_code=400),
                "invalid",
            ),
            ({"token": "hash", "type": "recovery"}, ExternalServiceError(), "connection"),
        ],
    )
    async def test_failures_redirect_to_error_page(self, anon_client, params, side_effect, reason):
        with patch_auth("verify_recovery_token", side_effect=side_effect):
            response = await anon_client.get("/api/auth/verify", params=params)

        assert response.status_code == 302
        assert response.headers["location"] == f"/forgot-password?error={reason}"

    @pytest.mark.asyncio
    async def test_no_session_created(self, anon_client):
        result = AuthResult(user=None, session=None)
        with patch_auth("verify_recovery_token", return_value=result):
            response = await anon_client.get(
                "/api/auth/verify", params={"token": "hash", "type": "recovery"}
            )

        assert response.headers["location"] == "/forgot-password?error=session_failed"
