"""
Authentication API routes
"""
from fastapi import APIRouter, Request, HTTPException, status
from fastapi.responses import JSONResponse

from ..models.auth import (
    AuthStatus, ConfirmForgotPasswordRequest, ConfirmPasswordRequest, ForgotPasswordRequest,
    LoginRequest, LoginResponse, LoginResult, PasswordResetResponse, SessionStatus,
    TokenRefreshResponse, UserUpdateRequest
)
from ..utils.logger import setup_logger
from .errors import (
    AuthError, InvalidCredentialsError, InvalidSessionStateError, LimitExceededError,
    LoginInProgressError
)
from .guard import LOGIN_PATH, landing_page_for
from .password_reset import confirm_password_reset, request_password_reset

logger = setup_logger(__name__)

# Create router
router = APIRouter(prefix="/auth", tags=["authentication"])

# Client ID handed to the provider factory for reset calls, which keep no tokens
RESET_PROVIDER_ID = "password-reset"


def _registry(request: Request):
    return request.app.state.session_registry


def _error_status(error: AuthError) -> int:
    if isinstance(error, LoginInProgressError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, InvalidSessionStateError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, InvalidCredentialsError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(error, LimitExceededError):
        return status.HTTP_429_TOO_MANY_REQUESTS
    return status.HTTP_400_BAD_REQUEST


def _login_response(result: LoginResult) -> LoginResponse:
    if result.require_new_password:
        return LoginResponse(success=False, require_new_password=True)
    return LoginResponse(success=True, redirect_url=landing_page_for(result.user.role))


def _auth_error_response(error: AuthError) -> JSONResponse:
    return JSONResponse(
        content=LoginResponse(success=False, error_message=error.message).model_dump(),
        status_code=_error_status(error),
    )


@router.post("/login", response_model=LoginResponse)
async def login(request: Request, credentials: LoginRequest):
    """
    Sign in with email and password
    """
    registry = _registry(request)
    client_id, session, is_new = registry.get_or_create_from_request(request)

    try:
        result = await session.login(credentials.email, credentials.password)
        response = JSONResponse(content=_login_response(result).model_dump(), status_code=200)
    except AuthError as e:
        response = _auth_error_response(e)

    if is_new:
        if session.is_disposable:
            # Nothing to come back to; keep no manager and set no cookie
            await registry.discard(client_id)
        else:
            registry.set_session_cookie(response, client_id)
    return response


@router.post("/confirm-password", response_model=LoginResponse)
async def confirm_password(request: Request, body: ConfirmPasswordRequest):
    """
    Complete a forced password change
    """
    session = _registry(request).get_session_from_request(request)
    if session is None:
        return _auth_error_response(InvalidSessionStateError("There is no pending sign-in step to confirm."))

    if body.confirm_password is not None and body.confirm_password != body.new_password:
        return JSONResponse(
            content=LoginResponse(success=False, error_message="Passwords do not match.").model_dump(),
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    try:
        result = await session.confirm_challenge(body.new_password)
    except AuthError as e:
        return _auth_error_response(e)
    return _login_response(result)


@router.post("/refresh", response_model=TokenRefreshResponse)
async def refresh_tokens(request: Request):
    """
    Refresh the session's tokens
    """
    session = _registry(request).get_session_from_request(request)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No active session"
        )

    try:
        tokens = await session.refresh_session()
    except AuthError as e:
        return JSONResponse(
            content=TokenRefreshResponse(success=False, error_message=e.message).model_dump(),
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
    return TokenRefreshResponse(success=True, expires_at=tokens.expires_at)


@router.post("/logout")
async def logout(request: Request):
    """
    Logout user and clear session
    """
    registry = _registry(request)
    client_id = request.cookies.get(registry.cookie_name)

    if client_id:
        session = registry.resume_session(client_id, restore=False)
        await session.logout()
        await registry.discard(client_id)

    response = JSONResponse(
        content={"success": True, "message": "Logged out successfully"},
        status_code=200
    )
    registry.clear_session_cookie(response)
    return response


@router.get("/status", response_model=AuthStatus)
async def auth_status(request: Request):
    """
    Get current authentication status
    """
    session = _registry(request).get_session_from_request(request)
    if session is None:
        return AuthStatus(status=SessionStatus.ANONYMOUS, is_authenticated=False)
    return session.status_view()


@router.get("/user")
async def get_current_user_info(request: Request):
    """
    Get current user information (requires authentication)
    """
    session = _registry(request).get_session_from_request(request)
    if session is None or not session.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return session.user.model_dump(mode="json")


@router.patch("/user")
async def update_current_user(request: Request, changes: UserUpdateRequest):
    """
    Update the signed-in user's editable profile fields
    """
    session = _registry(request).get_session_from_request(request)
    if session is None or not session.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"}
        )
    try:
        user = session.update_user(**changes.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return user.model_dump(mode="json")


def _reset_error_response(error: AuthError) -> JSONResponse:
    return JSONResponse(
        content=PasswordResetResponse(success=False, error_message=error.message).model_dump(),
        status_code=_error_status(error),
    )


@router.post("/forgot-password", response_model=PasswordResetResponse)
async def forgot_password(request: Request, body: ForgotPasswordRequest):
    """
    Send a password reset code
    """
    provider = request.app.state.provider_factory(RESET_PROVIDER_ID)
    try:
        delivery = await request_password_reset(provider, body.email)
    except AuthError as e:
        return _reset_error_response(e)
    finally:
        await provider.aclose()

    return PasswordResetResponse(
        success=True,
        message="If an account exists for this email, a verification code has been sent.",
        destination=delivery.destination,
    )


@router.post("/confirm-forgot-password", response_model=PasswordResetResponse)
async def confirm_forgot_password(request: Request, body: ConfirmForgotPasswordRequest):
    """
    Set a new password with a reset code
    """
    if body.confirm_password is not None and body.confirm_password != body.new_password:
        return _reset_error_response(AuthError("Passwords do not match."))

    provider = request.app.state.provider_factory(RESET_PROVIDER_ID)
    try:
        await confirm_password_reset(provider, body.email, body.code, body.new_password)
    except AuthError as e:
        return _reset_error_response(e)
    finally:
        await provider.aclose()

    return PasswordResetResponse(
        success=True,
        message="Your password has been reset. You can now sign in with the new password.",
        redirect_url=LOGIN_PATH,
    )
