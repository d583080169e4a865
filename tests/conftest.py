"""Shared test fixtures and helpers."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
from jose import jwt

from lms_ui.auth.errors import IdentityProviderError
from lms_ui.auth.session import SessionManager
from lms_ui.auth.store import MemorySessionStore
from lms_ui.models.auth import (
    CodeDelivery, CurrentUser, ProviderTokens, SignInResult, SignInStep, utcnow
)


TEST_SECRET = "test-signing-secret"


def make_token(claims: Dict[str, Any], lifetime: timedelta = timedelta(hours=1)) -> str:
    """Encode an HS256 JWT with an 'exp' claim."""
    payload = dict(claims)
    payload.setdefault("exp", int((utcnow() + lifetime).timestamp()))
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


def put_raw(store: MemorySessionStore, key: str, raw: str) -> None:
    """Plant an unparsed record in a memory store."""
    store._records[key] = raw


def make_provider_tokens(
    sub: str = "user-1",
    id_claims: Optional[Dict[str, Any]] = None,
    lifetime: timedelta = timedelta(hours=1),
    serial: int = 0,
) -> ProviderTokens:
    claims = {"sub": sub, "token_use": "id", **(id_claims or {})}
    id_token = make_token(claims, lifetime)
    return ProviderTokens(
        access_token=make_token({"sub": sub, "token_use": "access", "serial": serial}, lifetime),
        id_token=id_token,
        expires_at=utcnow() + lifetime,
        id_token_claims=claims,
    )


class FakeIdentityProvider:
    """Scripted identity provider that records every call."""

    def __init__(
        self,
        sub: str = "user-1",
        username: str = "jane",
        attributes: Optional[Dict[str, Any]] = None,
        id_claims: Optional[Dict[str, Any]] = None,
    ):
        self.sub = sub
        self.username = username
        self.attributes = attributes if attributes is not None else {
            "email": "jane@example.edu",
            "name": "Jane Doe",
            "email_verified": "true",
        }
        self.id_claims = id_claims or {}
        self.signed_in = False
        self.tokens: Optional[ProviderTokens] = None
        self.calls: List[str] = []

        # Scripting hooks
        self.sign_in_result: Optional[SignInResult] = None
        self.sign_in_error: Optional[Exception] = None
        self.confirm_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.sign_out_error: Optional[Exception] = None
        self.reset_error: Optional[Exception] = None
        self.reset_requests: List[str] = []
        self.password_resets: List[tuple] = []
        self.sign_in_delay = 0.0
        self.refresh_delay = 0.0
        self.session_delay = 0.0
        self.closed = False
        self._serial = 0

    def count(self, name: str) -> int:
        return self.calls.count(name)

    def _issue(self):
        self._serial += 1
        self.tokens = make_provider_tokens(self.sub, self.id_claims, serial=self._serial)

    async def sign_in(self, username: str, password: str) -> SignInResult:
        self.calls.append("sign_in")
        if self.sign_in_delay:
            await asyncio.sleep(self.sign_in_delay)
        if self.sign_in_error is not None:
            raise self.sign_in_error
        result = self.sign_in_result or SignInResult(is_signed_in=True)
        if result.is_signed_in:
            self.signed_in = True
            self._issue()
        return result

    async def confirm_sign_in(self, challenge_response: str) -> SignInResult:
        self.calls.append("confirm_sign_in")
        if self.confirm_error is not None:
            raise self.confirm_error
        self.signed_in = True
        self._issue()
        return SignInResult(is_signed_in=True)

    async def fetch_auth_session(self, force_refresh: bool = False) -> Optional[ProviderTokens]:
        self.calls.append("refresh" if force_refresh else "fetch_auth_session")
        if force_refresh:
            if self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            if self.refresh_error is not None:
                raise self.refresh_error
        elif self.session_delay:
            await asyncio.sleep(self.session_delay)
        if not self.signed_in:
            return None
        if force_refresh:
            self._issue()
        return self.tokens

    async def get_current_user(self) -> CurrentUser:
        self.calls.append("get_current_user")
        if not self.signed_in:
            raise IdentityProviderError("UserUnAuthenticatedException", "User needs to be authenticated.")
        return CurrentUser(user_id=self.sub, username=self.username)

    async def fetch_user_attributes(self) -> Dict[str, Any]:
        self.calls.append("fetch_user_attributes")
        return dict(self.attributes)

    async def sign_out(self) -> None:
        self.calls.append("sign_out")
        if self.sign_out_error is not None:
            raise self.sign_out_error
        self.signed_in = False
        self.tokens = None

    async def forgot_password(self, username: str) -> CodeDelivery:
        self.calls.append("forgot_password")
        if self.reset_error is not None:
            raise self.reset_error
        self.reset_requests.append(username)
        return CodeDelivery(destination="j***@example.edu", delivery_medium="EMAIL")

    async def confirm_forgot_password(self, username: str, code: str, new_password: str) -> None:
        self.calls.append("confirm_forgot_password")
        if self.reset_error is not None:
            raise self.reset_error
        self.password_resets.append((username, code, new_password))

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def provider():
    return FakeIdentityProvider()


@pytest.fixture
def manager(provider, store):
    return SessionManager(provider, store)
