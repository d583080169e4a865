"""Tests for the LMS REST backend client."""

from __future__ import annotations

import json

import httpx
import pytest

from lms_ui.api.client import (
    ApiError, BackendClient, NETWORK_ERROR_MESSAGE, ProfileRoleLookup, friendly_message,
    unwrap_envelope
)
from lms_ui.auth.errors import SessionExpiredError
from tests.conftest import make_provider_tokens


BASE_URL = "https://api.lms.example/prod"


class FakeSession:
    """Stands in for a SessionManager: tokens plus a counting refresh."""

    def __init__(self, refresh_error=None):
        self.access_token = "access-1"
        self.id_token = "id-1"
        self.refresh_error = refresh_error
        self.refreshes = 0

    async def refresh_session(self):
        self.refreshes += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        self.access_token = f"access-{self.refreshes + 1}"
        self.id_token = f"id-{self.refreshes + 1}"


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def backend(session):
    return BackendClient(BASE_URL, session, http_client=httpx.AsyncClient())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestFriendlyMessage:
    @pytest.mark.parametrize("status_code, fragment", [
        (None, "Network error"),
        (401, "session has expired"),
        (403, "permission"),
        (404, "not found"),
        (429, "Too many requests"),
        (500, "Server error"),
        (503, "Server error"),
        (418, "Something went wrong"),
    ])
    def test_messages(self, status_code, fragment):
        assert fragment in friendly_message(status_code)

    def test_messages_never_expose_status_codes(self):
        for status_code in (400, 401, 403, 404, 409, 422, 500):
            assert str(status_code) not in friendly_message(status_code)


class TestUnwrapEnvelope:
    def test_data_member(self):
        assert unwrap_envelope({"data": {"id": 1}}) == {"id": 1}

    def test_results_member(self):
        assert unwrap_envelope({"results": [1, 2], "count": 2}) == [1, 2]

    def test_plain_payload(self):
        assert unwrap_envelope({"id": 1}) == {"id": 1}
        assert unwrap_envelope([1, 2]) == [1, 2]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TestBackendClient:
    @pytest.mark.asyncio
    async def test_sends_both_tokens(self, backend, httpx_mock):
        httpx_mock.add_response(url=f"{BASE_URL}/courses", json={"results": [{"id": "c1"}]})

        courses = await backend.get("/courses")

        assert courses == [{"id": "c1"}]
        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == "Bearer access-1"
        assert request.headers["user-idToken"] == "id-1"

    @pytest.mark.asyncio
    async def test_post_json_body(self, backend, httpx_mock):
        httpx_mock.add_response(url=f"{BASE_URL}/courses", method="POST", json={"data": {"id": "c2"}})

        created = await backend.post("courses", json={"title": "Algorithms"})

        assert created == {"id": "c2"}
        assert json.loads(httpx_mock.get_requests()[0].content) == {"title": "Algorithms"}

    @pytest.mark.asyncio
    async def test_empty_body(self, backend, httpx_mock):
        httpx_mock.add_response(url=f"{BASE_URL}/courses/c1", method="DELETE", status_code=204)
        assert await backend.delete("/courses/c1") is None

    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_retries(self, backend, session, httpx_mock):
        httpx_mock.add_response(url=f"{BASE_URL}/profile", status_code=401)
        httpx_mock.add_response(url=f"{BASE_URL}/profile", json={"data": {"role": "Student"}})

        profile = await backend.get("/profile")

        assert profile == {"role": "Student"}
        assert session.refreshes == 1
        retried = httpx_mock.get_requests()[1]
        assert retried.headers["Authorization"] == "Bearer access-2"
        assert retried.headers["user-idToken"] == "id-2"

    @pytest.mark.asyncio
    async def test_second_401_is_not_retried(self, backend, session, httpx_mock):
        httpx_mock.add_response(url=f"{BASE_URL}/profile", status_code=401)
        httpx_mock.add_response(url=f"{BASE_URL}/profile", status_code=401)

        with pytest.raises(ApiError) as exc_info:
            await backend.get("/profile")

        assert exc_info.value.status_code == 401
        assert session.refreshes == 1
        assert len(httpx_mock.get_requests()) == 2

    @pytest.mark.asyncio
    async def test_failed_refresh(self, httpx_mock):
        session = FakeSession(refresh_error=SessionExpiredError())
        backend = BackendClient(BASE_URL, session, http_client=httpx.AsyncClient())
        httpx_mock.add_response(url=f"{BASE_URL}/profile", status_code=401)

        with pytest.raises(ApiError) as exc_info:
            await backend.get("/profile")

        assert exc_info.value.status_code == 401
        assert "sign in again" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_server_error_message(self, backend, httpx_mock):
        httpx_mock.add_response(url=f"{BASE_URL}/grades", status_code=502, text="Bad Gateway")

        with pytest.raises(ApiError) as exc_info:
            await backend.get("/grades")

        assert exc_info.value.status_code == 502
        assert exc_info.value.message == "Server error. Please try again later."

    @pytest.mark.asyncio
    async def test_network_error(self, backend, httpx_mock):
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"))

        with pytest.raises(ApiError) as exc_info:
            await backend.get("/grades")

        assert exc_info.value.status_code is None
        assert exc_info.value.message == NETWORK_ERROR_MESSAGE


class TestProfileRoleLookup:
    @pytest.mark.asyncio
    async def test_reads_role_from_profile(self, httpx_mock):
        tokens = make_provider_tokens()
        httpx_mock.add_response(url=f"{BASE_URL}/profile", json={"data": {"role": "Lecturer"}})

        lookup = ProfileRoleLookup(BASE_URL, httpx.AsyncClient())
        assert await lookup(tokens) == "Lecturer"
        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == f"Bearer {tokens.access_token}"
        assert request.headers["user-idToken"] == tokens.id_token

    @pytest.mark.asyncio
    async def test_http_error_propagates(self, httpx_mock):
        httpx_mock.add_response(url=f"{BASE_URL}/profile", status_code=500)

        lookup = ProfileRoleLookup(BASE_URL, httpx.AsyncClient())
        with pytest.raises(httpx.HTTPStatusError):
            await lookup(make_provider_tokens())

    @pytest.mark.asyncio
    async def test_without_tokens(self):
        lookup = ProfileRoleLookup(BASE_URL, httpx.AsyncClient())
        assert await lookup(None) is None
