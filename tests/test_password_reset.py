"""Tests for the forgot-password flow."""

from __future__ import annotations

import pytest

from lms_ui.auth.errors import (
    AuthError,
    ChallengeFailedError,
    CodeMismatchError,
    ExpiredCodeError,
    IdentityProviderError,
    LimitExceededError,
)
from lms_ui.auth.password_reset import confirm_password_reset, request_password_reset


class TestRequestPasswordReset:
    @pytest.mark.asyncio
    async def test_reports_delivery(self, provider):
        delivery = await request_password_reset(provider, "jane@example.edu")

        assert delivery.destination == "j***@example.edu"
        assert provider.reset_requests == ["jane@example.edu"]

    @pytest.mark.asyncio
    async def test_unknown_account_looks_like_known(self, provider):
        provider.reset_error = IdentityProviderError("UserNotFoundException", "User does not exist.")

        delivery = await request_password_reset(provider, "ghost@example.edu")

        assert delivery.destination is None
        assert delivery.delivery_medium is None

    @pytest.mark.asyncio
    async def test_rate_limit(self, provider):
        provider.reset_error = IdentityProviderError("LimitExceededException", "Attempt limit exceeded.")

        with pytest.raises(LimitExceededError):
            await request_password_reset(provider, "jane@example.edu")

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_generic(self, provider):
        provider.reset_error = RuntimeError("socket closed")

        with pytest.raises(AuthError) as exc_info:
            await request_password_reset(provider, "jane@example.edu")
        assert type(exc_info.value) is AuthError


class TestConfirmPasswordReset:
    @pytest.mark.asyncio
    async def test_sets_password(self, provider):
        await confirm_password_reset(provider, "jane@example.edu", " 123456\n", "Fresh@12345")

        assert provider.password_resets == [("jane@example.edu", "123456", "Fresh@12345")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,expected", [
        ("CodeMismatchException", CodeMismatchError),
        ("ExpiredCodeException", ExpiredCodeError),
        ("LimitExceededException", LimitExceededError),
        ("TooManyFailedAttemptsException", LimitExceededError),
        ("InvalidPasswordException", ChallengeFailedError),
    ])
    async def test_provider_errors_are_typed(self, provider, code, expected):
        provider.reset_error = IdentityProviderError(code, "rejected")

        with pytest.raises(expected):
            await confirm_password_reset(provider, "jane@example.edu", "123456", "Fresh@12345")

    @pytest.mark.asyncio
    async def test_unknown_account_reads_as_wrong_code(self, provider):
        provider.reset_error = IdentityProviderError("UserNotFoundException", "User does not exist.")

        with pytest.raises(CodeMismatchError):
            await confirm_password_reset(provider, "ghost@example.edu", "123456", "Fresh@12345")

    @pytest.mark.asyncio
    async def test_password_policy_message_is_shown(self, provider):
        provider.reset_error = IdentityProviderError(
            "InvalidPasswordException", "Password must have length greater than or equal to 8."
        )

        with pytest.raises(ChallengeFailedError) as exc_info:
            await confirm_password_reset(provider, "jane@example.edu", "123456", "short")
        assert exc_info.value.message == "Password must have length greater than or equal to 8."
