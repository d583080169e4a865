"""Tests for the Cognito user pool identity provider."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json

import httpx
import pytest

from lms_ui.auth.cognito import COGNITO_TOKENS_KEY, CognitoIdentityProvider
from lms_ui.auth.errors import IdentityProviderError
from lms_ui.auth.store import MemorySessionStore
from lms_ui.models.auth import SignInStep
from tests.conftest import make_token


ENDPOINT = "https://cognito-idp.ap-southeast-1.amazonaws.com/"
TARGET = "AWSCognitoIdentityProviderService."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _settings(**overrides):
    settings = {
        "region": "ap-southeast-1",
        "user_pool_id": "ap-southeast-1_TestPool",
        "client_id": "test-client-id",
        "client_secret": None,
        "endpoint": ENDPOINT,
    }
    settings.update(overrides)
    return settings


def _auth_result(sub="user-1", refresh_token="refresh-1", role=None):
    id_claims = {"sub": sub, "email": "jane@example.edu", "cognito:username": "jane"}
    if role:
        id_claims["custom:role"] = role
    result = {
        "AccessToken": make_token({"sub": sub, "username": "jane", "token_use": "access"}),
        "IdToken": make_token(id_claims),
        "ExpiresIn": 3600,
        "TokenType": "Bearer",
    }
    if refresh_token:
        result["RefreshToken"] = refresh_token
    return result


def _add(httpx_mock, action, json_body, status_code=200):
    httpx_mock.add_response(
        url=ENDPOINT,
        method="POST",
        match_headers={"X-Amz-Target": TARGET + action},
        json=json_body,
        status_code=status_code,
    )


def _body(request: httpx.Request):
    return json.loads(request.content)


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def cognito(store):
    return CognitoIdentityProvider(store, http_client=httpx.AsyncClient(), settings=_settings())


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------

class TestSignIn:
    @pytest.mark.asyncio
    async def test_password_sign_in(self, cognito, store, httpx_mock):
        _add(httpx_mock, "InitiateAuth", {"AuthenticationResult": _auth_result(role="Admin")})

        result = await cognito.sign_in("jane@example.edu", "Secret123!")

        assert result.is_signed_in
        assert result.next_step == SignInStep.DONE
        request = httpx_mock.get_requests()[0]
        assert request.headers["Content-Type"] == "application/x-amz-json-1.1"
        body = _body(request)
        assert body["AuthFlow"] == "USER_PASSWORD_AUTH"
        assert body["ClientId"] == "test-client-id"
        assert body["AuthParameters"] == {"USERNAME": "jane@example.edu", "PASSWORD": "Secret123!"}

        record = store.load(COGNITO_TOKENS_KEY)
        assert record["refresh_token"] == "refresh-1"
        assert record["username"] == "jane"

        tokens = await cognito.fetch_auth_session()
        assert tokens.id_token_claims["custom:role"] == "Admin"

    @pytest.mark.asyncio
    async def test_secret_hash_sent_for_confidential_clients(self, store, httpx_mock):
        cognito = CognitoIdentityProvider(
            store, http_client=httpx.AsyncClient(), settings=_settings(client_secret="s3cr3t")
        )
        _add(httpx_mock, "InitiateAuth", {"AuthenticationResult": _auth_result()})

        await cognito.sign_in("jane@example.edu", "Secret123!")

        expected = base64.b64encode(hmac.new(
            b"s3cr3t", b"jane@example.edutest-client-id", hashlib.sha256
        ).digest()).decode()
        assert _body(httpx_mock.get_requests()[0])["AuthParameters"]["SECRET_HASH"] == expected

    @pytest.mark.asyncio
    async def test_wrong_password(self, cognito, httpx_mock):
        _add(httpx_mock, "InitiateAuth", {
            "__type": "NotAuthorizedException",
            "message": "Incorrect username or password.",
        }, status_code=400)

        with pytest.raises(IdentityProviderError) as exc_info:
            await cognito.sign_in("jane@example.edu", "wrong")

        assert exc_info.value.code == "NotAuthorizedException"
        assert exc_info.value.message == "Incorrect username or password."

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error_type, step", [
        ("UserNotConfirmedException", SignInStep.CONFIRM_SIGN_UP),
        ("com.amazonaws#PasswordResetRequiredException", SignInStep.RESET_PASSWORD),
    ])
    async def test_account_state_errors_become_steps(self, cognito, httpx_mock, error_type, step):
        _add(httpx_mock, "InitiateAuth", {"__type": error_type, "message": "..."}, status_code=400)

        result = await cognito.sign_in("jane@example.edu", "Secret123!")

        assert not result.is_signed_in
        assert result.next_step == step

    @pytest.mark.asyncio
    async def test_mfa_challenge(self, cognito, httpx_mock):
        _add(httpx_mock, "InitiateAuth", {"ChallengeName": "SOFTWARE_TOKEN_MFA", "Session": "sess"})

        result = await cognito.sign_in("jane@example.edu", "Secret123!")
        assert result.next_step == SignInStep.CONFIRM_SIGN_IN_WITH_TOTP_CODE

    @pytest.mark.asyncio
    async def test_network_failure(self, cognito, httpx_mock):
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))

        with pytest.raises(IdentityProviderError) as exc_info:
            await cognito.sign_in("jane@example.edu", "Secret123!")
        assert exc_info.value.code == "NetworkError"


class TestNewPasswordChallenge:
    @pytest.mark.asyncio
    async def test_challenge_round_trip(self, cognito, store, httpx_mock):
        _add(httpx_mock, "InitiateAuth", {
            "ChallengeName": "NEW_PASSWORD_REQUIRED",
            "Session": "challenge-session",
            "ChallengeParameters": {"USER_ID_FOR_SRP": "jane"},
        })
        _add(httpx_mock, "RespondToAuthChallenge", {"AuthenticationResult": _auth_result()})

        result = await cognito.sign_in("jane@example.edu", "Temp1234!")
        assert result.next_step == SignInStep.CONFIRM_SIGN_IN_WITH_NEW_PASSWORD_REQUIRED
        assert store.load(COGNITO_TOKENS_KEY) is None

        result = await cognito.confirm_sign_in("BrandNew123!")
        assert result.is_signed_in

        body = _body(httpx_mock.get_requests()[1])
        assert body["ChallengeName"] == "NEW_PASSWORD_REQUIRED"
        assert body["Session"] == "challenge-session"
        assert body["ChallengeResponses"] == {"USERNAME": "jane", "NEW_PASSWORD": "BrandNew123!"}
        assert store.load(COGNITO_TOKENS_KEY) is not None

    @pytest.mark.asyncio
    async def test_confirm_without_challenge(self, cognito):
        with pytest.raises(IdentityProviderError):
            await cognito.confirm_sign_in("BrandNew123!")


# ---------------------------------------------------------------------------
# Session, refresh and sign-out
# ---------------------------------------------------------------------------

class TestSession:
    @pytest.mark.asyncio
    async def test_no_record_means_no_session(self, cognito):
        assert await cognito.fetch_auth_session() is None

    @pytest.mark.asyncio
    async def test_force_refresh_keeps_refresh_token(self, cognito, store, httpx_mock):
        _add(httpx_mock, "InitiateAuth", {"AuthenticationResult": _auth_result()})
        _add(httpx_mock, "InitiateAuth", {"AuthenticationResult": _auth_result(refresh_token=None)})

        await cognito.sign_in("jane@example.edu", "Secret123!")
        first = await cognito.fetch_auth_session()
        refreshed = await cognito.fetch_auth_session(force_refresh=True)

        body = _body(httpx_mock.get_requests()[1])
        assert body["AuthFlow"] == "REFRESH_TOKEN_AUTH"
        assert body["AuthParameters"] == {"REFRESH_TOKEN": "refresh-1"}
        assert refreshed is not None
        assert first is not None
        assert store.load(COGNITO_TOKENS_KEY)["refresh_token"] == "refresh-1"

    @pytest.mark.asyncio
    async def test_rejected_refresh_clears_record(self, cognito, store, httpx_mock):
        _add(httpx_mock, "InitiateAuth", {"AuthenticationResult": _auth_result()})
        _add(httpx_mock, "InitiateAuth", {
            "__type": "NotAuthorizedException",
            "message": "Refresh Token has been revoked",
        }, status_code=400)

        await cognito.sign_in("jane@example.edu", "Secret123!")
        with pytest.raises(IdentityProviderError):
            await cognito.fetch_auth_session(force_refresh=True)

        assert store.load(COGNITO_TOKENS_KEY) is None
        assert await cognito.fetch_auth_session() is None

    @pytest.mark.asyncio
    async def test_current_user_and_attributes(self, cognito, httpx_mock):
        _add(httpx_mock, "InitiateAuth", {"AuthenticationResult": _auth_result(sub="abc-123")})
        _add(httpx_mock, "GetUser", {
            "Username": "jane",
            "UserAttributes": [
                {"Name": "email", "Value": "jane@example.edu"},
                {"Name": "custom:Role", "Value": "Lecturer"},
            ],
        })

        await cognito.sign_in("jane@example.edu", "Secret123!")
        current = await cognito.get_current_user()
        attributes = await cognito.fetch_user_attributes()

        assert current.user_id == "abc-123"
        assert current.username == "jane"
        assert attributes == {"email": "jane@example.edu", "custom:Role": "Lecturer"}

    @pytest.mark.asyncio
    async def test_current_user_requires_session(self, cognito):
        with pytest.raises(IdentityProviderError):
            await cognito.get_current_user()

    @pytest.mark.asyncio
    async def test_sign_out_clears_record_even_on_failure(self, cognito, store, httpx_mock):
        _add(httpx_mock, "InitiateAuth", {"AuthenticationResult": _auth_result()})
        _add(httpx_mock, "GlobalSignOut", {"__type": "InternalErrorException"}, status_code=500)

        await cognito.sign_in("jane@example.edu", "Secret123!")
        with pytest.raises(IdentityProviderError):
            await cognito.sign_out()

        assert store.load(COGNITO_TOKENS_KEY) is None

    @pytest.mark.asyncio
    async def test_sign_out_without_session_is_local_only(self, cognito, httpx_mock):
        await cognito.sign_out()
        assert httpx_mock.get_requests() == []


# ---------------------------------------------------------------------------
# Forgot password
# ---------------------------------------------------------------------------

class TestForgotPassword:
    @pytest.mark.asyncio
    async def test_request_reports_delivery(self, cognito, httpx_mock):
        _add(httpx_mock, "ForgotPassword", {
            "CodeDeliveryDetails": {
                "Destination": "j***@e***",
                "DeliveryMedium": "EMAIL",
                "AttributeName": "email",
            },
        })

        delivery = await cognito.forgot_password("jane@example.edu")

        assert delivery.destination == "j***@e***"
        assert delivery.delivery_medium == "EMAIL"
        body = _body(httpx_mock.get_requests()[0])
        assert body == {"ClientId": "test-client-id", "Username": "jane@example.edu"}

    @pytest.mark.asyncio
    async def test_confirm_sends_code_and_secret_hash(self, store, httpx_mock):
        cognito = CognitoIdentityProvider(
            store, http_client=httpx.AsyncClient(), settings=_settings(client_secret="s3cr3t")
        )
        _add(httpx_mock, "ConfirmForgotPassword", {})

        await cognito.confirm_forgot_password("jane@example.edu", "123456", "BrandNew123!")

        body = _body(httpx_mock.get_requests()[0])
        expected = base64.b64encode(hmac.new(
            b"s3cr3t", b"jane@example.edutest-client-id", hashlib.sha256
        ).digest()).decode()
        assert body["ConfirmationCode"] == "123456"
        assert body["Password"] == "BrandNew123!"
        assert body["SecretHash"] == expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error_type", [
        "CodeMismatchException", "ExpiredCodeException", "LimitExceededException",
    ])
    async def test_confirm_errors_carry_code(self, cognito, httpx_mock, error_type):
        _add(httpx_mock, "ConfirmForgotPassword", {"__type": error_type, "message": "nope"}, status_code=400)

        with pytest.raises(IdentityProviderError) as exc_info:
            await cognito.confirm_forgot_password("jane@example.edu", "000000", "BrandNew123!")
        assert exc_info.value.code == error_type
