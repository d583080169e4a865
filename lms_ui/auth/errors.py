"""
Typed authentication failures

Identity provider errors are caught at the session manager boundary and
re-raised as one of the AuthError subclasses below. The message of an
AuthError is safe to show to the user.
"""
from typing import Optional


class IdentityProviderError(Exception):
    """Raw failure reported by an identity provider"""

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        self.message = message or code
        super().__init__(f"{code}: {self.message}")


class AuthError(Exception):
    """Base class for session manager failures"""

    default_message = "Sign-in failed. Please try again."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentialsError(AuthError):
    default_message = "Incorrect email or password."


class AccountNotConfirmedError(AuthError):
    default_message = "Your account has not been confirmed yet. Please verify your email first."


class PasswordResetRequiredError(AuthError):
    default_message = "You must reset your password before signing in."


class MfaNotSupportedError(AuthError):
    default_message = "Multi-factor authentication is not supported by this application."


class ChallengeFailedError(AuthError):
    default_message = "The new password could not be set. Please try again."


class SessionExpiredError(AuthError):
    default_message = "Your session has expired. Please sign in again."


class InvalidSessionStateError(AuthError):
    default_message = "This action is not available right now."


class LoginInProgressError(AuthError):
    default_message = "A sign-in is already in progress."


class CodeMismatchError(AuthError):
    default_message = "Invalid verification code provided, please try again."


class ExpiredCodeError(AuthError):
    default_message = "The verification code has expired. Please request a new code."


class LimitExceededError(AuthError):
    default_message = "Too many attempts. Please wait a while and try again."


_CODE_TO_ERROR = {
    "NotAuthorizedException": InvalidCredentialsError,
    "UserNotFoundException": InvalidCredentialsError,
    "UserNotConfirmedException": AccountNotConfirmedError,
    "PasswordResetRequiredException": PasswordResetRequiredError,
    "InvalidPasswordException": ChallengeFailedError,
    "InvalidParameterException": ChallengeFailedError,
    "CodeMismatchException": CodeMismatchError,
    "ExpiredCodeException": ExpiredCodeError,
    "LimitExceededException": LimitExceededError,
    "TooManyRequestsException": LimitExceededError,
    "TooManyFailedAttemptsException": LimitExceededError,
    "MFAMethodNotFoundException": MfaNotSupportedError,
    "SoftwareTokenMFANotFoundException": MfaNotSupportedError,
}

# Codes whose provider message is worth showing as-is
_VERBATIM_CODES = frozenset({
    "NotAuthorizedException",
    "InvalidPasswordException",
    "InvalidParameterException",
})

# Password policy failures during a challenge keep the challenge open
CHALLENGE_POLICY_CODES = frozenset({
    "InvalidPasswordException",
    "InvalidParameterException",
})


def translate_provider_error(error: Exception) -> AuthError:
    """
    Map an identity provider failure to a typed AuthError

    Args:
        error: Exception raised by the identity provider

    Returns:
        AuthError: Typed failure suitable for the UI layer
    """
    if isinstance(error, AuthError):
        return error
    if not isinstance(error, IdentityProviderError):
        return AuthError()

    error_class = _CODE_TO_ERROR.get(error.code, AuthError)
    if error.code in _VERBATIM_CODES and error.message != error.code:
        return error_class(error.message)
    return error_class()
