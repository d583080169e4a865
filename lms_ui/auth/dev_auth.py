"""
Development identity provider for running without Cognito
"""
import secrets
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from jose import jwt

from ..models.auth import CodeDelivery, CurrentUser, ProviderTokens, SignInResult, SignInStep, utcnow
from ..utils.config import get_config
from ..utils.logger import mask_email, setup_logger
from .errors import IdentityProviderError
from .tokens import decode_claims

logger = setup_logger(__name__)

TOKEN_LIFETIME = timedelta(hours=1)
MIN_PASSWORD_LENGTH = 8
RESET_CODE_LIFETIME = timedelta(hours=1)
MAX_RESET_ATTEMPTS = 5


def default_test_users() -> Dict[str, Dict[str, Any]]:
    """Fixture users covering each role and account state"""
    return {
        "admin@lms.dev": {
            "sub": "dev-admin-001",
            "password": "Admin@12345",
            "name": "Dev Admin",
            "attributes": {"custom:role": "Admin"},
        },
        "lecturer@lms.dev": {
            "sub": "dev-lecturer-001",
            "password": "Lecturer@12345",
            "name": "Dev Lecturer",
            # Legacy attribute casing, still honoured by role resolution
            "attributes": {"custom:Role": "Lecturer"},
        },
        "student@lms.dev": {
            "sub": "dev-student-001",
            "password": "Student@12345",
            "name": "Dev Student",
            "attributes": {},
        },
        "newhire@lms.dev": {
            "sub": "dev-lecturer-002",
            "password": "Temp@12345",
            "name": "New Lecturer",
            "attributes": {"custom:role": "Lecturer"},
            "force_change_password": True,
        },
        "pending@lms.dev": {
            "sub": "dev-student-002",
            "password": "Pending@12345",
            "name": "Pending Student",
            "attributes": {},
            "unconfirmed": True,
        },
        "mfa@lms.dev": {
            "sub": "dev-admin-002",
            "password": "Mfa@123456",
            "name": "MFA Admin",
            "attributes": {"custom:role": "Admin"},
            "mfa": True,
        },
        "reset@lms.dev": {
            "sub": "dev-student-003",
            "password": "Reset@12345",
            "name": "Reset Student",
            "attributes": {},
            "reset_required": True,
        },
    }


class DevUserDirectory:
    """User pool stand-in shared by all development providers"""

    def __init__(self, users: Optional[Dict[str, Dict[str, Any]]] = None, secret_key: Optional[str] = None):
        self.users = users if users is not None else default_test_users()
        self.secret_key = secret_key or get_config().SECRET_KEY
        # username -> {"code", "expires_at", "attempts"}
        self.reset_codes: Dict[str, Dict[str, Any]] = {}

    def get(self, username: str) -> Dict[str, Any]:
        user = self.users.get(username.lower())
        if user is None:
            raise IdentityProviderError("UserNotFoundException", "User does not exist.")
        return user

    def issue_reset_code(self, username: str) -> str:
        """Create a six-digit reset code, replacing any earlier one"""
        username = username.lower()
        self.get(username)
        code = f"{secrets.randbelow(10 ** 6):06d}"
        self.reset_codes[username] = {
            "code": code,
            "expires_at": utcnow() + RESET_CODE_LIFETIME,
            "attempts": 0,
        }
        return code

    def reset_password(self, username: str, code: str, new_password: str):
        """Check a reset code and set the new password"""
        username = username.lower()
        user = self.get(username)
        pending = self.reset_codes.get(username)
        if pending is None:
            raise IdentityProviderError("ExpiredCodeException", "Invalid code provided, please request a code again.")
        if utcnow() >= pending["expires_at"]:
            del self.reset_codes[username]
            raise IdentityProviderError("ExpiredCodeException", "Invalid code provided, please request a code again.")
        if pending["code"] != code:
            pending["attempts"] += 1
            if pending["attempts"] >= MAX_RESET_ATTEMPTS:
                del self.reset_codes[username]
                raise IdentityProviderError("LimitExceededException", "Attempt limit exceeded, please try after some time.")
            raise IdentityProviderError("CodeMismatchException", "Invalid verification code provided, please try again.")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise IdentityProviderError(
                "InvalidPasswordException",
                f"Password must have length greater than or equal to {MIN_PASSWORD_LENGTH}.",
            )

        del self.reset_codes[username]
        user["password"] = new_password
        user["reset_required"] = False
        user["force_change_password"] = False

    def issue_tokens(self, username: str) -> ProviderTokens:
        """Issue HS256-signed access and ID tokens for a user"""
        user = self.get(username)
        now = utcnow()
        expires_at = now + TOKEN_LIFETIME
        common = {
            "sub": user["sub"],
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": "lms-ui-dev",
        }
        access_claims = dict(common, token_use="access", username=username, jti=uuid.uuid4().hex)
        id_claims = dict(common, token_use="id", email=username, **{"cognito:username": username})
        # Custom attributes travel in the ID token like a real user pool
        if "custom:role" in user["attributes"]:
            id_claims["custom:role"] = user["attributes"]["custom:role"]

        id_token = jwt.encode(id_claims, self.secret_key, algorithm="HS256")
        return ProviderTokens(
            access_token=jwt.encode(access_claims, self.secret_key, algorithm="HS256"),
            id_token=id_token,
            expires_at=expires_at,
            id_token_claims=decode_claims(id_token),
        )


class DevIdentityProvider:
    """Identity provider backed by DevUserDirectory, one instance per browser session"""

    def __init__(self, directory: Optional[DevUserDirectory] = None):
        self.directory = directory or DevUserDirectory()
        self._username: Optional[str] = None
        self._tokens: Optional[ProviderTokens] = None
        self._challenge_username: Optional[str] = None

    async def sign_in(self, username: str, password: str) -> SignInResult:
        username = username.lower()
        user = self.directory.get(username)
        if user["password"] != password:
            raise IdentityProviderError("NotAuthorizedException", "Incorrect username or password.")
        if user.get("unconfirmed"):
            return SignInResult(is_signed_in=False, next_step=SignInStep.CONFIRM_SIGN_UP)
        if user.get("reset_required"):
            return SignInResult(is_signed_in=False, next_step=SignInStep.RESET_PASSWORD)
        if user.get("mfa"):
            return SignInResult(is_signed_in=False, next_step=SignInStep.CONFIRM_SIGN_IN_WITH_TOTP_CODE)
        if user.get("force_change_password"):
            self._challenge_username = username
            return SignInResult(
                is_signed_in=False,
                next_step=SignInStep.CONFIRM_SIGN_IN_WITH_NEW_PASSWORD_REQUIRED,
            )

        self._start_session(username)
        return SignInResult(is_signed_in=True)

    async def confirm_sign_in(self, challenge_response: str) -> SignInResult:
        if self._challenge_username is None:
            raise IdentityProviderError("SignInException", "There is no sign-in in progress.")
        if len(challenge_response) < MIN_PASSWORD_LENGTH:
            raise IdentityProviderError(
                "InvalidPasswordException",
                f"Password must have length greater than or equal to {MIN_PASSWORD_LENGTH}.",
            )

        user = self.directory.get(self._challenge_username)
        user["password"] = challenge_response
        user["force_change_password"] = False
        self._start_session(self._challenge_username)
        self._challenge_username = None
        return SignInResult(is_signed_in=True)

    def _start_session(self, username: str):
        self._username = username
        self._tokens = self.directory.issue_tokens(username)
        logger.info(f"Development session started for {mask_email(username)}")

    async def fetch_auth_session(self, force_refresh: bool = False) -> Optional[ProviderTokens]:
        if self._username is None:
            return None
        if force_refresh or self._tokens is None or utcnow() >= self._tokens.expires_at:
            self._tokens = self.directory.issue_tokens(self._username)
        return self._tokens

    async def get_current_user(self) -> CurrentUser:
        if self._username is None:
            raise IdentityProviderError("UserUnAuthenticatedException", "User needs to be authenticated.")
        return CurrentUser(user_id=self.directory.get(self._username)["sub"], username=self._username)

    async def fetch_user_attributes(self) -> Dict[str, Any]:
        if self._username is None:
            raise IdentityProviderError("UserUnAuthenticatedException", "User needs to be authenticated.")
        user = self.directory.get(self._username)
        attributes = {
            "sub": user["sub"],
            "email": self._username,
            "email_verified": "true",
            "name": user.get("name", ""),
        }
        attributes.update(user["attributes"])
        return attributes

    async def sign_out(self) -> None:
        self._username = None
        self._tokens = None
        self._challenge_username = None

    async def forgot_password(self, username: str) -> CodeDelivery:
        username = username.lower()
        self.directory.issue_reset_code(username)
        # No mail is sent in development; the code stays in directory.reset_codes
        logger.info(f"Development reset code issued for {mask_email(username)}")
        return CodeDelivery(destination=mask_email(username), delivery_medium="EMAIL")

    async def confirm_forgot_password(self, username: str, code: str, new_password: str) -> None:
        self.directory.reset_password(username, code, new_password)
        logger.info(f"Development password reset for {mask_email(username)}")

    async def aclose(self) -> None:
        return None
