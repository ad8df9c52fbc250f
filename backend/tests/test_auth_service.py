"""
Bookflow Backend — Supabase Auth Client Tests
===============================================

What:  Tests for the GoTrue HTTP client and account deletion.
How:   httpx.MockTransport records each request and answers with canned
       GoTrue payloads.

What we test:
    ✅ Password sign-in parses the session; sign-up without a session
    ✅ GoTrue error payloads become AuthServiceError with status and code
    ✅ Unreachable GoTrue → ExternalServiceError
    ✅ get_user: 401 → None (anonymous), other errors propagate
    ✅ Admin delete uses the service-role key; failures → DatabaseError
"""

import json
from uuid import uuid4

import httpx
import pytest

from bookflow.exceptions import AuthServiceError, DatabaseError, ExternalServiceError
from bookflow.services.account_service import AccountService
from bookflow.services.auth_service import AuthService

USER_ID = "5d1c8e1a-2b3c-4d5e-8f90-a1b2c3d4e5f6"


def session_payload(**overrides):
    payload = {
        "access_token": "access-123",
        "refresh_token": "refresh-456",
        "expires_in": 3600,
        "user": {"id": USER_ID, "email": "reader@example.com"},
    }
    payload.update(overrides)
    return payload


class RecordingTransport:
    """Builds a MockTransport and keeps every request it served."""

    def __init__(self, response: httpx.Response):
        self.response = response
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    def service(self, **kwargs) -> AuthService:
        return AuthService(
            base_url="http://supabase.test",
            anon_key="anon",
            service_role_key=kwargs.pop("service_role_key", "service-role"),
            transport=httpx.MockTransport(self),
            **kwargs,
        )


class TestSignIn:
    @pytest.mark.asyncio
    async def test_password_grant(self):
        transport = RecordingTransport(httpx.Response(200, json=session_payload()))
        service = transport.service()

        result = await service.sign_in_with_password("reader@example.com", "secret1")

        request = transport.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/auth/v1/token"
        assert request.url.params["grant_type"] == "password"
        assert request.headers["apikey"] == "anon"
        assert json.loads(request.content) == {
            "email": "reader@example.com",
            "password": "secret1",
        }
        assert result.session.access_token == "access-123"
        assert result.session.refresh_token == "refresh-456"
        assert str(result.user.id) == USER_ID
        await service.close()

    @pytest.mark.asyncio
    async def test_sign_up_without_session(self):
        transport = RecordingTransport(
            httpx.Response(200, json={"id": USER_ID, "email": "new@example.com"})
        )

        result = await transport.service().sign_up("new@example.com", "secret1")

        assert result.session is None
        assert result.user.email == "new@example.com"

    @pytest.mark.asyncio
    async def test_error_payload(self):
        transport = RecordingTransport(
            httpx.Response(
                400,
                json={"error_code": "invalid_credentials", "msg": "Invalid login credentials"},
            )
        )

        with pytest.raises(AuthServiceError) as exc_info:
            await transport.service().sign_in_with_password("reader@example.com", "wrong1")

        error = exc_info.value
        assert error.status_code == 400
        assert error.code == "invalid_credentials"
        assert error.message == "Invalid login credentials"

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        service = AuthService(
            base_url="http://supabase.test", anon_key="anon", transport=httpx.MockTransport(handler)
        )
        with pytest.raises(ExternalServiceError):
            await service.sign_in_with_password("reader@example.com", "secret1")


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recover_sends_redirect(self):
        transport = RecordingTransport(httpx.Response(200, json={}))

        await transport.service().reset_password_for_email(
            "reader@example.com", "http://localhost:3000/reset-password"
        )

        request = transport.requests[0]
        assert request.url.path == "/auth/v1/recover"
        assert request.url.params["redirect_to"] == "http://localhost:3000/reset-password"

    @pytest.mark.asyncio
    async def test_verify_recovery_token(self):
        transport = RecordingTransport(httpx.Response(200, json=session_payload()))

        result = await transport.service().verify_recovery_token("hash-abc")

        assert json.loads(transport.requests[0].content) == {
            "type": "recovery",
            "token_hash": "hash-abc",
        }
        assert result.session is not None

    @pytest.mark.asyncio
    async def test_pkce_exchange(self):
        transport = RecordingTransport(httpx.Response(200, json=session_payload()))

        await transport.service().exchange_code_for_session("pkce_abc")

        request = transport.requests[0]
        assert request.url.params["grant_type"] == "pkce"
        assert json.loads(request.content)["auth_code"] == "pkce_abc"

    @pytest.mark.asyncio
    async def test_update_password_uses_bearer(self):
        transport = RecordingTransport(
            httpx.Response(200, json={"id": USER_ID, "email": "reader@example.com"})
        )

        user = await transport.service().update_password("access-123", "newsecret")

        request = transport.requests[0]
        assert request.method == "PUT"
        assert request.headers["Authorization"] == "Bearer access-123"
        assert str(user.id) == USER_ID


class TestGetUser:
    @pytest.mark.asyncio
    async def test_valid_token(self):
        transport = RecordingTransport(
            httpx.Response(200, json={"id": USER_ID, "email": "reader@example.com"})
        )
        user = await transport.service().get_user("access-123")
        assert str(user.id) == USER_ID

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_token_is_anonymous(self, status):
        transport = RecordingTransport(httpx.Response(status, json={"msg": "invalid JWT"}))
        assert await transport.service().get_user("expired") is None

    @pytest.mark.asyncio
    async def test_server_error_propagates(self):
        transport = RecordingTransport(httpx.Response(500, json={"msg": "boom"}))
        with pytest.raises(AuthServiceError) as exc_info:
            await transport.service().get_user("access-123")
        assert exc_info.value.status_code == 500


class TestDeleteAccount:
    @pytest.mark.asyncio
    async def test_admin_delete(self):
        transport = RecordingTransport(httpx.Response(200, json={}))
        user_id = uuid4()

        await AccountService(auth=transport.service()).delete_account(user_id)

        request = transport.requests[0]
        assert request.method == "DELETE"
        assert request.url.path == f"/auth/v1/admin/users/{user_id}"
        assert request.headers["Authorization"] == "Bearer service-role"
        assert request.headers["apikey"] == "service-role"

    @pytest.mark.asyncio
    async def test_missing_service_role_key(self):
        transport = RecordingTransport(httpx.Response(200, json={}))
        service = transport.service(service_role_key="")

        with pytest.raises(DatabaseError) as exc_info:
            await AccountService(auth=service).delete_account(uuid4())
        assert "SUPABASE_SERVICE_ROLE_KEY" in exc_info.value.message
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_admin_api_failure(self):
        transport = RecordingTransport(httpx.Response(404, json={"msg": "User not found"}))

        with pytest.raises(DatabaseError) as exc_info:
            await AccountService(auth=transport.service()).delete_account(uuid4())
        assert exc_info.value.message == "Failed to delete user account: User not found"
