"""
Session management for user authentication
"""
import asyncio
import secrets
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Set, Tuple

from fastapi import Request, Response

from ..models.auth import (
    AuthStatus, ChallengeKind, LoginMethod, LoginResult, MFA_STEPS, ProviderTokens,
    SessionSnapshot, SessionStatus, SessionTokens, SignInResult, SignInStep, User, utcnow
)
from ..utils.logger import mask_email, setup_logger
from .errors import (
    AccountNotConfirmedError, AuthError, CHALLENGE_POLICY_CODES, IdentityProviderError,
    InvalidSessionStateError, LoginInProgressError, MfaNotSupportedError,
    PasswordResetRequiredError, SessionExpiredError, translate_provider_error
)
from .provider import IdentityProvider
from .roles import RoleLookup, resolve_role
from .store import AUTH_STORAGE_KEY, SessionStore
from .tokens import token_expiry

logger = setup_logger(__name__)

DEFAULT_RESTORE_TIMEOUT = 10.0
SNAPSHOT_VERSION = 0
DEFAULT_IDLE_TIMEOUT = 15 * 60
# Cookies remembered as having nothing to restore
REJECTED_CLIENT_MEMORY = 1024

# Fields a profile update may never touch
_PROTECTED_USER_FIELDS = frozenset({"id", "role"})


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _session_tokens(provider_tokens: ProviderTokens) -> SessionTokens:
    return SessionTokens(
        access_token=provider_tokens.access_token,
        id_token=provider_tokens.id_token,
        expires_at=provider_tokens.expires_at,
    )


class SessionManager:
    """
    Owns one client's authentication state

    States: anonymous, authenticating, challenge_required, authenticated,
    refreshing, error. Only the operations below mutate the state; the
    durable mirror is written after each in-memory commit and is never
    treated as the source of truth unless trust_persisted_session is set.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        store: SessionStore,
        storage_key: str = AUTH_STORAGE_KEY,
        role_lookup: Optional[RoleLookup] = None,
        restore_timeout: float = DEFAULT_RESTORE_TIMEOUT,
        trust_persisted_session: bool = False,
        login_method: LoginMethod = LoginMethod.COGNITO,
    ):
        self.provider = provider
        self.store = store
        self.storage_key = storage_key
        self.role_lookup = role_lookup
        self.restore_timeout = restore_timeout
        self.trust_persisted_session = trust_persisted_session
        self.login_method = login_method

        self.status = SessionStatus.ANONYMOUS
        self.user: Optional[User] = None
        self.tokens: Optional[SessionTokens] = None
        self.is_loading = False
        self.error: Optional[str] = None
        self.pending_challenge: Optional[ChallengeKind] = None

        self._auth_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None
        self._restore_task: Optional[asyncio.Task] = None
        # Bumped on every reset; in-flight work from an older generation is discarded
        self._generation = 0
        self._pending_email: Optional[str] = None

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    # Derived state

    @property
    def is_authenticated(self) -> bool:
        return (
            self.status in (SessionStatus.AUTHENTICATED, SessionStatus.REFRESHING)
            and self.user is not None
            and self.tokens is not None
            and self.pending_challenge is None
            and not self.tokens.is_expired()
        )

    @property
    def is_settling(self) -> bool:
        """True while the session is being established and no decision can be made"""
        return self.is_loading or self.status == SessionStatus.AUTHENTICATING

    @property
    def is_busy(self) -> bool:
        """True while a sign-in, restore or refresh is in flight"""
        return (
            self.is_settling
            or self._auth_lock.locked()
            or (self._refresh_task is not None and not self._refresh_task.done())
        )

    @property
    def is_disposable(self) -> bool:
        """True when nothing is in flight and there is no session or challenge worth keeping"""
        return not self.is_busy and not self.is_authenticated and self.pending_challenge is None

    @property
    def access_token(self) -> Optional[str]:
        return self.tokens.access_token if self.tokens else None

    @property
    def id_token(self) -> Optional[str]:
        return self.tokens.id_token if self.tokens else None

    def snapshot(self) -> SessionSnapshot:
        """Current state in durable-mirror form"""
        return SessionSnapshot(
            user=self.user,
            access_token=self.access_token,
            id_token=self.id_token,
            is_authenticated=self.is_authenticated,
        )

    def status_view(self) -> AuthStatus:
        """Current state as an API response"""
        authenticated = self.is_authenticated
        return AuthStatus(
            status=self.status,
            is_authenticated=authenticated,
            is_loading=self.is_loading,
            user_id=self.user.id if authenticated else None,
            email=self.user.email if authenticated else None,
            role=self.user.role if authenticated else None,
            pending_challenge=self.pending_challenge,
            error=self.error,
            session_expires_at=self.tokens.expires_at if authenticated else None,
        )

    # Operations

    async def login(self, email: str, password: str) -> LoginResult:
        """
        Sign in with email and password

        Args:
            email: Email used as the user pool username
            password: Password

        Returns:
            LoginResult: Success, or a pending new-password challenge

        Raises:
            AuthError: Typed failure (credentials, account state, MFA, busy)
        """
        if self._auth_lock.locked():
            raise LoginInProgressError()
        if self.is_authenticated:
            raise InvalidSessionStateError("You are already signed in. Sign out first.")

        async with self._auth_lock:
            self._begin_attempt()
            self.user = None
            self.tokens = None
            self.pending_challenge = None
            self._pending_email = email
            generation = self._generation
            logger.info(f"Sign-in attempt for {mask_email(email)}")
            try:
                result = await self.provider.sign_in(email, password)
                return await self._handle_sign_in_result(result, generation)
            except Exception as e:
                if generation != self._generation:
                    await self._abandon_sign_in()
                    raise InvalidSessionStateError("The sign-in was cancelled.") from e
                raise self._fail(e) from e
            finally:
                self.is_loading = False

    async def confirm_challenge(self, new_password: str) -> LoginResult:
        """
        Answer a pending new-password challenge

        Args:
            new_password: Password replacing the temporary one

        Returns:
            LoginResult: Success, or another pending challenge

        Raises:
            InvalidSessionStateError: No challenge is pending
            ChallengeFailedError: The password was rejected; the challenge stays open
        """
        if self._auth_lock.locked():
            raise LoginInProgressError()
        if self.status != SessionStatus.CHALLENGE_REQUIRED:
            raise InvalidSessionStateError("There is no pending sign-in step to confirm.")

        async with self._auth_lock:
            self._begin_attempt()
            generation = self._generation
            try:
                result = await self.provider.confirm_sign_in(new_password)
                return await self._handle_sign_in_result(result, generation)
            except Exception as e:
                if generation != self._generation:
                    await self._abandon_sign_in()
                    raise InvalidSessionStateError("The sign-in was cancelled.") from e
                keep_challenge = isinstance(e, IdentityProviderError) and e.code in CHALLENGE_POLICY_CODES
                raise self._fail(e, keep_challenge=keep_challenge) from e
            finally:
                self.is_loading = False

    async def refresh_session(self) -> SessionTokens:
        """
        Force a token refresh

        Concurrent callers share one in-flight refresh and receive the same
        token pair.

        Returns:
            SessionTokens: The new token pair

        Raises:
            InvalidSessionStateError: No session to refresh
            SessionExpiredError: The refresh failed; the session is now anonymous
        """
        if self._refresh_task is None:
            if self.status != SessionStatus.AUTHENTICATED or self.user is None:
                raise InvalidSessionStateError("There is no session to refresh.")
            self._refresh_task = asyncio.ensure_future(self._refresh(self._generation))
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self, generation: int) -> SessionTokens:
        self.status = SessionStatus.REFRESHING
        try:
            provider_tokens = await self.provider.fetch_auth_session(force_refresh=True)
            if provider_tokens is None:
                raise IdentityProviderError("NotAuthorizedException", "No session to refresh")
        except Exception as e:
            logger.warning(f"Token refresh failed: {e}")
            if generation == self._generation:
                self._reset()
                self._clear_persisted()
            raise SessionExpiredError() from e
        finally:
            self._refresh_task = None

        if generation != self._generation or self.user is None:
            logger.info("Discarding refreshed tokens for a session that was signed out or replaced")
            raise SessionExpiredError()

        tokens = _session_tokens(provider_tokens)
        self.tokens = tokens
        self.status = SessionStatus.AUTHENTICATED
        self.error = None
        self._persist()
        logger.info(f"Tokens refreshed for user: {self.user.id}")
        return tokens

    async def logout(self) -> None:
        """
        Sign out remotely, then clear local state

        Remote failures are logged only; the local session is always cleared.
        """
        user_id = self.user.id if self.user else None
        try:
            await self.provider.sign_out()
        except Exception as e:
            logger.warning(f"Remote sign-out failed, clearing local session anyway: {e}")
        finally:
            self._reset()
            self._clear_persisted()
            logger.info(f"Signed out user: {user_id}")

    def begin_restore(self) -> asyncio.Task:
        """Schedule restore() and mark the session as loading until it settles"""
        if self._restore_task is None or self._restore_task.done():
            self.is_loading = True
            self._restore_task = asyncio.ensure_future(self.restore())
        return self._restore_task

    async def restore(self) -> bool:
        """
        Restore the session once at start-up

        Never raises. A trusted, unexpired mirror is committed directly;
        otherwise the identity provider is asked for a live session within
        restore_timeout seconds.

        Returns:
            bool: True if the session is authenticated afterwards
        """
        if self._auth_lock.locked():
            # A sign-in owns the session; it clears is_loading when done
            return self.is_authenticated
        if self.status not in (SessionStatus.ANONYMOUS, SessionStatus.ERROR):
            self.is_loading = False
            return self.is_authenticated

        async with self._auth_lock:
            self.is_loading = True
            try:
                snapshot = self._load_snapshot()
                if snapshot is not None and self.trust_persisted_session and self._commit_snapshot(snapshot):
                    logger.info(f"Session restored from durable mirror for user: {self.user.id}")
                    return True

                generation = self._generation
                try:
                    restored = await asyncio.wait_for(
                        self._build_session(snapshot.user if snapshot else None),
                        timeout=self.restore_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(f"Session verification timed out after {self.restore_timeout}s")
                    return False
                except Exception as e:
                    logger.info(f"No live session to restore: {e}")
                    return False

                if restored is None:
                    self._clear_persisted()
                    return False
                if generation != self._generation:
                    return False

                user, tokens = restored
                self._commit_authenticated(user, tokens)
                logger.info(f"Session verified with identity provider for user: {user.id}")
                return True
            finally:
                self.is_loading = False

    def update_user(self, **changes: Any) -> User:
        """
        Merge profile changes into the current user

        Args:
            **changes: User fields to update (id and role are not editable)

        Returns:
            User: Updated user
        """
        if self.user is None:
            raise InvalidSessionStateError("There is no signed-in user to update.")
        unknown = set(changes) - set(User.model_fields)
        if unknown:
            raise ValueError(f"Unknown user fields: {', '.join(sorted(unknown))}")
        protected = set(changes) & _PROTECTED_USER_FIELDS
        if protected:
            raise ValueError(f"User fields cannot be changed: {', '.join(sorted(protected))}")

        data = self.user.model_dump()
        data.update(changes)
        data["updated_at"] = utcnow()
        self.user = User.model_validate(data)
        self._persist()
        return self.user

    def clear_error(self) -> None:
        self.error = None

    async def aclose(self) -> None:
        """Dispose of in-flight work and the identity provider"""
        for task in (self._refresh_task, self._restore_task):
            if task is not None and not task.done():
                task.cancel()
        await self.provider.aclose()

    # Internals

    def _begin_attempt(self) -> None:
        # A new attempt supersedes any refresh still in flight
        self._generation += 1
        self.status = SessionStatus.AUTHENTICATING
        self.is_loading = True
        self.error = None

    async def _abandon_sign_in(self) -> None:
        """Undo a sign-in that completed after the session was signed out"""
        logger.info("Sign-in finished after sign-out, discarding its provider session")
        try:
            await self.provider.sign_out()
        except Exception as e:
            logger.warning(f"Could not sign out abandoned sign-in: {e}")

    async def _handle_sign_in_result(self, result: SignInResult, generation: int) -> LoginResult:
        if generation != self._generation:
            raise InvalidSessionStateError("The sign-in was cancelled.")
        step = result.next_step

        if result.is_signed_in:
            built = await self._build_session(None)
            if built is None:
                raise AuthError("The identity provider did not return a session.")
            if generation != self._generation:
                raise InvalidSessionStateError("The sign-in was cancelled.")
            user, tokens = built
            self._commit_authenticated(user, tokens)
            logger.info(f"User {mask_email(user.email)} signed in as {user.role.value}")
            return LoginResult.success(user)

        if step == SignInStep.CONFIRM_SIGN_IN_WITH_NEW_PASSWORD_REQUIRED:
            self.status = SessionStatus.CHALLENGE_REQUIRED
            self.pending_challenge = ChallengeKind.NEW_PASSWORD_REQUIRED
            logger.info(f"New password required for {mask_email(self._pending_email)}")
            return LoginResult.new_password_required()
        if step == SignInStep.CONFIRM_SIGN_UP:
            raise AccountNotConfirmedError()
        if step == SignInStep.RESET_PASSWORD:
            raise PasswordResetRequiredError()
        if step in MFA_STEPS:
            raise MfaNotSupportedError()
        raise AuthError(f"Unsupported sign-in step: {step.value}")

    async def _build_session(self, previous: Optional[User]) -> Optional[Tuple[User, SessionTokens]]:
        """Ask the provider for the signed-in user and normalize it"""
        provider_tokens = await self.provider.fetch_auth_session()
        if provider_tokens is None:
            return None

        current = await self.provider.get_current_user()
        attributes = await self.provider.fetch_user_attributes()
        role = await resolve_role(
            provider_tokens.id_token_claims, attributes, self.role_lookup, provider_tokens
        )

        now = utcnow()
        full_name = attributes.get("name") or " ".join(
            part for part in (attributes.get("given_name"), attributes.get("family_name")) if part
        )
        email = attributes.get("email") or self._pending_email or (previous.email if previous else None)
        same_user = previous is not None and previous.id == current.user_id

        user = User(
            id=current.user_id,
            username=current.username,
            email=email or current.username,
            full_name=full_name,
            role=role,
            avatar=attributes.get("picture"),
            phone=attributes.get("phone_number"),
            is_email_verified=_as_bool(attributes.get("email_verified", False)),
            login_method=previous.login_method if same_user else self.login_method,
            last_login=now,
            created_at=previous.created_at if same_user else now,
            updated_at=now,
        )
        return user, _session_tokens(provider_tokens)

    def _commit_authenticated(self, user: User, tokens: SessionTokens) -> None:
        self.user = user
        self.tokens = tokens
        self.status = SessionStatus.AUTHENTICATED
        self.pending_challenge = None
        self.error = None
        self._pending_email = None
        self._persist()

    def _commit_snapshot(self, snapshot: SessionSnapshot) -> bool:
        if not (snapshot.is_authenticated and snapshot.user and snapshot.access_token and snapshot.id_token):
            return False
        expires_at = token_expiry(snapshot.access_token)
        if expires_at is None:
            return False
        tokens = SessionTokens(
            access_token=snapshot.access_token,
            id_token=snapshot.id_token,
            expires_at=expires_at,
        )
        if tokens.is_expired():
            return False
        self._commit_authenticated(snapshot.user, tokens)
        return True

    def _fail(self, error: Exception, keep_challenge: bool = False) -> AuthError:
        auth_error = translate_provider_error(error)
        if not isinstance(error, (AuthError, IdentityProviderError)):
            logger.error(f"Unexpected identity provider failure: {error!r}")
        else:
            logger.warning(f"Authentication failed: {auth_error.message}")

        self.error = auth_error.message
        if keep_challenge:
            self.status = SessionStatus.CHALLENGE_REQUIRED
        else:
            self.status = SessionStatus.ERROR
            self.user = None
            self.tokens = None
            self.pending_challenge = None
        return auth_error

    def _reset(self) -> None:
        self._generation += 1
        self.status = SessionStatus.ANONYMOUS
        self.user = None
        self.tokens = None
        self.is_loading = False
        self.error = None
        self.pending_challenge = None
        self._pending_email = None

    def _load_snapshot(self) -> Optional[SessionSnapshot]:
        try:
            record = self.store.load(self.storage_key)
        except Exception as e:
            logger.warning(f"Could not read persisted session: {e}")
            return None
        if not record:
            return None
        try:
            state = record.get("state") if isinstance(record, dict) else None
            return SessionSnapshot.model_validate(state)
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed persisted session: {e}")
            return None

    def _persist(self) -> None:
        record = {"state": self.snapshot().model_dump(mode="json"), "version": SNAPSHOT_VERSION}
        try:
            self.store.save(self.storage_key, record)
        except Exception as e:
            logger.warning(f"Could not persist session: {e}")

    def _clear_persisted(self) -> None:
        try:
            self.store.delete(self.storage_key)
        except Exception as e:
            logger.warning(f"Could not clear persisted session: {e}")


class SessionRegistry:
    """
    Maps browser session cookies to their SessionManager

    Created once per application and disposed on shutdown. A cookie that is
    unknown to this process (e.g. after a restart) gets a new manager that
    restores itself from the durable mirror; if that finds no session the
    manager is dropped and the cookie is not restored again.
    """

    def __init__(
        self,
        manager_factory: Callable[[str], SessionManager],
        cookie_name: str = "lms_session",
        cookie_max_age: int = 30 * 24 * 3600,
        cookie_secure: bool = False,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    ):
        self.manager_factory = manager_factory
        self.cookie_name = cookie_name
        self.cookie_max_age = cookie_max_age
        self.cookie_secure = cookie_secure
        self.idle_timeout = idle_timeout
        self._managers: Dict[str, SessionManager] = {}
        self._last_seen: Dict[str, float] = {}
        self._rejected: "OrderedDict[str, None]" = OrderedDict()
        self._closing: Set[asyncio.Task] = set()

        logger.debug(f"SessionRegistry initialized: cookie={cookie_name}, secure={cookie_secure}")

    def __len__(self) -> int:
        return len(self._managers)

    def _register(self, client_id: str, manager: SessionManager):
        self._managers[client_id] = manager
        self._last_seen[client_id] = time.monotonic()

    def _remember_rejected(self, client_id: str):
        self._rejected[client_id] = None
        while len(self._rejected) > REJECTED_CLIENT_MEMORY:
            self._rejected.popitem(last=False)

    def create_session(self) -> Tuple[str, SessionManager]:
        """
        Create a manager for a new browser session

        Returns:
            Tuple[str, SessionManager]: Client ID for the cookie and its manager
        """
        client_id = secrets.token_urlsafe(32)
        manager = self.manager_factory(client_id)
        self._register(client_id, manager)
        logger.debug(f"Session store now has {len(self._managers)} sessions")
        return client_id, manager

    def resume_session(self, client_id: str, restore: bool = True) -> SessionManager:
        """
        Get the manager for a known cookie, restoring unknown ones

        Args:
            client_id: Client ID from the session cookie
            restore: Start restoring a newly created manager from the durable mirror

        Returns:
            SessionManager: Manager for this browser session
        """
        manager = self._managers.get(client_id)
        if manager is not None:
            self._last_seen[client_id] = time.monotonic()
            return manager

        if client_id in self._rejected:
            del self._rejected[client_id]
            restore = False

        manager = self.manager_factory(client_id)
        self._register(client_id, manager)
        if restore:
            task = manager.begin_restore()
            task.add_done_callback(lambda done: self._restore_finished(client_id, manager, done))
            logger.info("Restoring session for returning browser")
        return manager

    def _restore_finished(self, client_id: str, manager: SessionManager, task: asyncio.Task):
        if task.cancelled() or task.exception() is not None or task.result():
            return
        if self._managers.get(client_id) is not manager or not manager.is_disposable:
            return
        self._forget(client_id)
        self._remember_rejected(client_id)
        closing = asyncio.ensure_future(self._close_manager(manager))
        self._closing.add(closing)
        closing.add_done_callback(self._closing.discard)
        logger.debug("Dropped session for browser with nothing to restore")

    def get_session_from_request(self, request: Request) -> Optional[SessionManager]:
        """
        Get the session manager for a request's cookie

        Args:
            request: FastAPI request object

        Returns:
            Optional[SessionManager]: Manager, or None without a usable cookie
        """
        client_id = request.cookies.get(self.cookie_name)
        if not client_id or client_id in self._rejected:
            return None
        return self.resume_session(client_id)

    def get_or_create_from_request(self, request: Request) -> Tuple[str, SessionManager, bool]:
        """
        Get the request's session manager, creating one when there is no cookie

        Returns:
            Tuple[str, SessionManager, bool]: Client ID, manager, and whether it is new
        """
        client_id = request.cookies.get(self.cookie_name)
        if client_id:
            return client_id, self.resume_session(client_id), False
        client_id, manager = self.create_session()
        return client_id, manager, True

    def _forget(self, client_id: str) -> Optional[SessionManager]:
        self._last_seen.pop(client_id, None)
        return self._managers.pop(client_id, None)

    async def _close_manager(self, manager: SessionManager):
        try:
            await manager.aclose()
        except Exception as e:
            logger.error(f"Failed to close session manager: {e}")

    async def discard(self, client_id: str) -> bool:
        """
        Dispose of a browser session's manager

        Args:
            client_id: Client ID

        Returns:
            bool: True if a manager was removed
        """
        manager = self._forget(client_id)
        if manager is None:
            return False
        await manager.aclose()
        return True

    async def cleanup_idle_sessions(self, now: Optional[float] = None) -> int:
        """
        Dispose of managers without a live session that have been idle for
        idle_timeout seconds (should be called periodically)

        Args:
            now: time.monotonic() reading to compare against

        Returns:
            int: Number of managers removed
        """
        now = time.monotonic() if now is None else now
        idle = [
            client_id for client_id, manager in self._managers.items()
            if not manager.is_busy and not manager.is_authenticated
            and now - self._last_seen.get(client_id, now) >= self.idle_timeout
        ]
        for client_id in idle:
            manager = self._forget(client_id)
            if manager is not None:
                await self._close_manager(manager)

        if idle:
            logger.info(f"Cleaned up {len(idle)} idle sessions")
        return len(idle)

    def set_session_cookie(self, response: Response, client_id: str):
        """Set session cookie in response"""
        response.set_cookie(
            key=self.cookie_name,
            value=client_id,
            max_age=self.cookie_max_age,
            httponly=True,
            secure=self.cookie_secure,
            samesite="lax",
            path="/",
        )

    def clear_session_cookie(self, response: Response):
        """Clear session cookie"""
        response.delete_cookie(
            key=self.cookie_name,
            path="/",
            secure=self.cookie_secure,
            httponly=True,
            samesite="lax",
        )

    async def aclose(self):
        """Dispose of every manager"""
        managers = list(self._managers.values())
        self._managers.clear()
        self._last_seen.clear()
        for manager in managers:
            await self._close_manager(manager)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        logger.info(f"Closed {len(managers)} sessions")
