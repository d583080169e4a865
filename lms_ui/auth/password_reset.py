"""
Forgot-password flow: request a reset code, then set a new password with it

Neither step touches a browser session; both talk to the identity provider
directly and translate its failures into AuthError subclasses.
"""
from ..models.auth import CodeDelivery
from ..utils.logger import mask_email, setup_logger
from .errors import CodeMismatchError, IdentityProviderError, translate_provider_error
from .provider import IdentityProvider

logger = setup_logger(__name__)


async def request_password_reset(provider: IdentityProvider, email: str) -> CodeDelivery:
    """
    Ask the identity provider to send a reset code

    Unknown accounts get the same answer as known ones.

    Args:
        provider: Identity provider
        email: Email used as the user pool username

    Returns:
        CodeDelivery: Where the code went (empty for unknown accounts)

    Raises:
        AuthError: Typed failure, e.g. LimitExceededError
    """
    try:
        delivery = await provider.forgot_password(email)
    except IdentityProviderError as e:
        if e.code == "UserNotFoundException":
            logger.info(f"Password reset requested for unknown account {mask_email(email)}")
            return CodeDelivery()
        logger.warning(f"Password reset request failed for {mask_email(email)}: {e.code}")
        raise translate_provider_error(e) from e
    except Exception as e:
        logger.error(f"Unexpected password reset failure: {e!r}")
        raise translate_provider_error(e) from e

    logger.info(f"Password reset code sent for {mask_email(email)}")
    return delivery


async def confirm_password_reset(provider: IdentityProvider, email: str, code: str, new_password: str) -> None:
    """
    Set a new password using a reset code

    Raises:
        AuthError: CodeMismatchError, ExpiredCodeError, LimitExceededError,
            or ChallengeFailedError when the password policy rejects it
    """
    try:
        await provider.confirm_forgot_password(email, code.strip(), new_password)
    except Exception as e:
        if isinstance(e, IdentityProviderError) and e.code == "UserNotFoundException":
            auth_error = CodeMismatchError()
        else:
            auth_error = translate_provider_error(e)
        logger.warning(f"Password reset failed for {mask_email(email)}: {auth_error.message}")
        raise auth_error from e

    logger.info(f"Password reset completed for {mask_email(email)}")
