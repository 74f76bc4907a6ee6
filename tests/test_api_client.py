"""
Tests for the transport client, the response envelope and the auth flow.

Run with: pytest tests/test_api_client.py -v
"""
import asyncio
import json

import httpx
import pytest

from api_client import CourtClient, filename_from_disposition
from conftest import API_BASE, envelope, failure
from errors import AuthError, NetworkError, ParseError, RequestError
from session import SessionContext, SessionUser

USER_PAYLOAD = {
    "id": 3,
    "name": "Jane Clerk",
    "email": "jane@court.test",
    "role": "clerk",
    "staffId": "CLK001",
    "department": "Registry",
}


@pytest.fixture
def session(storage):
    session = SessionContext(storage)
    session.start(SessionUser(name="Jane Clerk", role="clerk", staff_id="CLK001"), "tok", "rtok")
    return session


@pytest.fixture
def client(session, backend):
    return CourtClient(session, base_url=API_BASE, transport=backend.transport)


def bearer(request: httpx.Request) -> str:
    return request.headers.get("authorization", "")


class TestRequests:
    """Tests for request building and response mapping."""

    @pytest.mark.asyncio
    async def test_get_cases_sends_bearer_and_filters(self, client, backend):
        backend.route("GET", "/cases", envelope([{"id": "KDH/1"}], pagination={"page": 1}))

        rows = await client.get_cases(status="Filed", case_type="Civil")

        assert rows == [{"id": "KDH/1"}]
        request = backend.requests[0]
        assert bearer(request) == "Bearer tok"
        assert request.url.params["status"] == "Filed"
        assert request.url.params["type"] == "Civil"
        assert "search" not in request.url.params

    @pytest.mark.asyncio
    async def test_case_numbers_are_path_encoded(self, client, backend):
        backend.route("GET", "/cases/KDH/2024/1", envelope({"id": "KDH/2024/1"}))

        await client.get_case("KDH/2024/1")

        assert backend.requests[0].url.raw_path == b"/api/cases/KDH%2F2024%2F1"

    @pytest.mark.asyncio
    async def test_error_envelope_becomes_request_error(self, client, backend):
        backend.route("POST", "/motions", failure(400, "MISSING_FIELDS", "caseId is required"))

        with pytest.raises(RequestError) as exc_info:
            await client.create_motion({"title": "Bail"})

        assert exc_info.value.code == "MISSING_FIELDS"
        assert exc_info.value.status == 400
        assert exc_info.value.message == "caseId is required"

    @pytest.mark.asyncio
    async def test_success_false_with_200_is_a_failure(self, client, backend):
        backend.route("GET", "/orders", httpx.Response(
            200, json={"success": False, "error": {"code": "LOCKED", "message": "Try later"}}
        ))
        with pytest.raises(RequestError) as exc_info:
            await client.get_orders()
        assert exc_info.value.code == "LOCKED"

    @pytest.mark.asyncio
    async def test_non_json_body_is_a_parse_error(self, client, backend):
        backend.route("GET", "/cases", httpx.Response(
            502, text="<html>Bad gateway</html>", headers={"content-type": "text/html"}
        ))
        with pytest.raises(ParseError) as exc_info:
            await client.get_cases()
        assert exc_info.value.code == "INVALID_RESPONSE"
        assert exc_info.value.status == 502

    @pytest.mark.asyncio
    async def test_malformed_json_is_a_parse_error(self, client, backend):
        backend.route("GET", "/cases", httpx.Response(
            200, content=b"{oops", headers={"content-type": "application/json"}
        ))
        with pytest.raises(ParseError) as exc_info:
            await client.get_cases()
        assert exc_info.value.code == "PARSE_ERROR"

    @pytest.mark.asyncio
    async def test_json_body_that_is_not_utf8_is_a_parse_error(self, client, backend):
        backend.route("GET", "/cases", httpx.Response(
            200, content=b'{"success": true, "data": "\xff"}',
            headers={"content-type": "application/json"},
        ))
        with pytest.raises(ParseError) as exc_info:
            await client.get_cases()
        assert exc_info.value.code == "PARSE_ERROR"
        assert exc_info.value.status == 200

    @pytest.mark.asyncio
    async def test_body_without_envelope_is_a_parse_error(self, client, backend):
        backend.route("GET", "/cases", httpx.Response(200, json=[{"id": 1}]))
        with pytest.raises(ParseError):
            await client.get_cases()

    @pytest.mark.asyncio
    async def test_transport_failure_is_a_network_error(self, client, backend):
        backend.route("GET", "/cases", httpx.ConnectError("connection refused"))

        with pytest.raises(NetworkError) as exc_info:
            await client.get_cases()
        assert exc_info.value.status == 0

    @pytest.mark.asyncio
    async def test_counts_are_unwrapped(self, client, backend):
        backend.route("GET", "/motions/pending-count", envelope({"count": 4}))
        assert await client.get_pending_motions_count() == 4


class TestCredentialRefresh:
    """Tests for refresh-and-retry on auth failures."""

    @pytest.mark.asyncio
    async def test_401_refreshes_and_retries_once(self, client, backend, session, storage):
        backend.route("GET", "/cases", failure(401, "TOKEN_EXPIRED", "expired"), envelope([{"id": "KDH/1"}]))
        backend.route("POST", "/auth/refresh", envelope(None, token="tok-2", refreshToken="rtok-2"))

        assert await client.get_cases() == [{"id": "KDH/1"}]

        refresh = backend.calls("POST", "/auth/refresh")[0]
        assert json.loads(refresh.content) == {"refreshToken": "rtok"}
        retried = backend.calls("GET", "/cases")[1]
        assert bearer(retried) == "Bearer tok-2"
        assert session.token == "tok-2"
        assert storage.get("refresh_token") == "rtok-2"

    @pytest.mark.asyncio
    async def test_failed_refresh_clears_session(self, client, backend, session, storage):
        backend.route("GET", "/cases", failure(401, "TOKEN_EXPIRED", "expired"))
        backend.route("POST", "/auth/refresh", failure(401, "INVALID_REFRESH", "revoked"))

        with pytest.raises(AuthError) as exc_info:
            await client.get_cases()

        assert exc_info.value.code == "INVALID_REFRESH"
        assert not session.is_authenticated
        assert storage.get("auth_token") is None

    @pytest.mark.asyncio
    async def test_second_auth_failure_is_not_retried_again(self, client, backend, session):
        backend.route("GET", "/cases", failure(403, "FORBIDDEN", "nope"))
        backend.route("POST", "/auth/refresh", envelope(None, token="tok-2"))

        with pytest.raises(AuthError):
            await client.get_cases()

        assert len(backend.calls("GET", "/cases")) == 2
        assert len(backend.calls("POST", "/auth/refresh")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_request(self, client, backend):
        backend.route("POST", "/auth/refresh", envelope(None, token="tok-2"))

        tokens = await asyncio.gather(
            client.auth.refresh_access_token(), client.auth.refresh_access_token()
        )

        assert tokens == ["tok-2", "tok-2"]
        assert len(backend.calls("POST", "/auth/refresh")) == 1

    @pytest.mark.asyncio
    async def test_missing_refresh_token_fails_fast(self, storage, backend):
        session = SessionContext(storage)
        session.user = SessionUser(name="Jane Clerk", role="clerk", staff_id="CLK001")
        client = CourtClient(session, base_url=API_BASE, transport=backend.transport)

        with pytest.raises(AuthError) as exc_info:
            await client.auth.refresh_access_token()

        assert exc_info.value.code == "NO_REFRESH_TOKEN"
        assert backend.requests == []
        assert session.user is None


class TestAuth:
    """Tests for login and logout."""

    @pytest.mark.asyncio
    async def test_login_starts_session(self, storage, backend):
        session = SessionContext(storage)
        client = CourtClient(session, base_url=API_BASE, transport=backend.transport)
        backend.route("POST", "/auth/login", httpx.Response(200, json={
            "success": True, "token": "tok", "refreshToken": "rtok", "user": USER_PAYLOAD,
        }))

        user = await client.auth.login("CLK001", "secret", "clerk")

        assert user.staff_id == "CLK001"
        assert user.id == "3"
        assert session.is_authenticated
        assert storage.get("court_user")["department"] == "Registry"
        body = json.loads(backend.requests[0].content)
        assert body == {"username": "CLK001", "password": "secret", "role": "clerk"}

    @pytest.mark.asyncio
    async def test_login_with_unknown_role_is_rejected_locally(self, storage, backend):
        client = CourtClient(SessionContext(storage), base_url=API_BASE, transport=backend.transport)

        with pytest.raises(AuthError):
            await client.auth.login("CLK001", "secret", "janitor")
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_bad_credentials(self, storage, backend):
        session = SessionContext(storage)
        client = CourtClient(session, base_url=API_BASE, transport=backend.transport)
        backend.route("POST", "/auth/login", failure(401, "INVALID_CREDENTIALS", "Invalid credentials"))

        with pytest.raises(AuthError) as exc_info:
            await client.auth.login("CLK001", "wrong", "clerk")

        assert exc_info.value.code == "INVALID_CREDENTIALS"
        assert not session.is_authenticated

    @pytest.mark.asyncio
    async def test_logout_clears_even_when_backend_fails(self, client, backend, session, storage):
        backend.route("POST", "/auth/logout", httpx.ConnectError("offline"))

        await client.auth.logout()

        assert not session.is_authenticated
        assert storage.get("court_user") is None


class TestFiles:
    """Tests for multipart upload and binary download."""

    @pytest.mark.asyncio
    async def test_upload_is_multipart(self, client, backend):
        backend.route("POST", "/documents/upload", envelope({"id": 31, "name": "brief.pdf"}))

        doc = await client.upload_document("brief.pdf", b"%PDF-1.7", "KDH/1", "Brief")

        assert doc["id"] == 31
        request = backend.requests[0]
        assert request.headers["content-type"].startswith("multipart/form-data")
        assert b'name="caseId"' in request.content
        assert b"%PDF-1.7" in request.content

    @pytest.mark.asyncio
    async def test_download_uses_server_filename(self, client, backend):
        backend.route("GET", "/documents/31/download", httpx.Response(
            200,
            content=b"%PDF-1.7",
            headers={
                "content-type": "application/pdf",
                "content-disposition": "attachment; filename*=UTF-8''Ruling%20No.%204.pdf",
            },
        ))

        downloaded = await client.download_document(31)

        assert downloaded.filename == "Ruling No. 4.pdf"
        assert downloaded.content == b"%PDF-1.7"
        assert downloaded.content_type == "application/pdf"

    @pytest.mark.asyncio
    async def test_download_error_uses_envelope(self, client, backend):
        backend.route("GET", "/documents/99/download", failure(404, "NOT_FOUND", "Document not found"))

        with pytest.raises(RequestError) as exc_info:
            await client.download_document(99)
        assert exc_info.value.code == "NOT_FOUND"

    def test_disposition_parsing(self):
        assert filename_from_disposition('attachment; filename="order.pdf"', "x") == "order.pdf"
        assert filename_from_disposition("attachment; filename=order.pdf", "x") == "order.pdf"
        assert filename_from_disposition(None, "fallback") == "fallback"
        assert filename_from_disposition("inline", "fallback") == "fallback"


class TestSession:
    """Tests for session load/clear."""

    def test_load_round_trip(self, session, storage):
        reloaded = SessionContext(storage).load()
        assert reloaded.is_authenticated
        assert reloaded.user.staff_id == "CLK001"
        assert reloaded.refresh_token == "rtok"

    def test_malformed_stored_user_means_signed_out(self, storage):
        storage.set("court_user", {"unexpected": True})
        storage.set("auth_token", "tok")

        session = SessionContext(storage).load()

        assert session.user is None
        assert not session.is_authenticated

    def test_last_route_hint(self, session):
        assert session.get_last_route() is None
        session.set_last_route("/cases/KDH%2F1")
        assert session.get_last_route() == "/cases/KDH%2F1"
