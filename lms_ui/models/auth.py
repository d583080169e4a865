"""
Authentication related data models
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Closed set of LMS roles, lowest privilege first"""
    STUDENT = "Student"
    LECTURER = "Lecturer"
    ADMIN = "Admin"


DEFAULT_ROLE = UserRole.STUDENT


class LoginMethod(str, Enum):
    """How the user signed in"""
    NORMAL = "normal"
    GOOGLE = "google"
    COGNITO = "cognito"


class SessionStatus(str, Enum):
    """Session manager states"""
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"
    CHALLENGE_REQUIRED = "challenge_required"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    ERROR = "error"


class ChallengeKind(str, Enum):
    """Additional steps the identity provider can demand before sign-in completes"""
    NEW_PASSWORD_REQUIRED = "new_password_required"


class User(BaseModel):
    """Normalized LMS user"""
    id: str = Field(..., description="Identity provider user ID (sub)")
    username: str = Field(..., description="Username")
    email: str = Field(..., description="User email")
    full_name: str = Field(default="", description="Display name")
    role: UserRole = Field(default=DEFAULT_ROLE, description="Resolved role")
    avatar: Optional[str] = Field(None, description="Avatar reference")
    phone: Optional[str] = Field(None, description="Phone number")
    is_email_verified: bool = Field(default=False, description="Email verification status")
    login_method: LoginMethod = Field(default=LoginMethod.COGNITO, description="Sign-in method")
    last_login: datetime = Field(default_factory=utcnow, description="Last sign-in time")
    created_at: datetime = Field(default_factory=utcnow, description="Account creation time")
    updated_at: datetime = Field(default_factory=utcnow, description="Last profile update time")


class SessionTokens(BaseModel):
    """Bearer credentials held by the session manager"""
    access_token: str = Field(..., description="JWT access token")
    id_token: str = Field(..., description="ID token")
    expires_at: datetime = Field(..., description="Access token expiration timestamp")

    class Config:
        frozen = True

    def is_expired(self) -> bool:
        """Check if the access token is expired"""
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return utcnow() >= expires_at


class SessionSnapshot(BaseModel):
    """Durable mirror of the session state"""
    user: Optional[User] = None
    access_token: Optional[str] = None
    id_token: Optional[str] = None
    is_authenticated: bool = False


class AuthStatus(BaseModel):
    """Authentication status response"""
    status: SessionStatus = Field(..., description="Session manager state")
    is_authenticated: bool = Field(..., description="Authentication status")
    is_loading: bool = Field(default=False, description="Verification in flight")
    user_id: Optional[str] = Field(None, description="User ID if authenticated")
    email: Optional[str] = Field(None, description="User email if authenticated")
    role: Optional[UserRole] = Field(None, description="User role if authenticated")
    pending_challenge: Optional[ChallengeKind] = Field(None, description="Pending sign-in step")
    error: Optional[str] = Field(None, description="Last operation failure")
    session_expires_at: Optional[datetime] = Field(None, description="Access token expiration time")


class LoginStatus(str, Enum):
    SUCCESS = "success"
    NEW_PASSWORD_REQUIRED = "new_password_required"


class LoginResult(BaseModel):
    """Outcome of a login or challenge confirmation that did not fail"""
    status: LoginStatus
    user: Optional[User] = None

    @property
    def require_new_password(self) -> bool:
        return self.status == LoginStatus.NEW_PASSWORD_REQUIRED

    @classmethod
    def success(cls, user: User) -> "LoginResult":
        return cls(status=LoginStatus.SUCCESS, user=user)

    @classmethod
    def new_password_required(cls) -> "LoginResult":
        return cls(status=LoginStatus.NEW_PASSWORD_REQUIRED)


class LoginRequest(BaseModel):
    """Login request data"""
    email: str = Field(..., min_length=1, description="Email used as the user pool username")
    password: str = Field(..., min_length=1, description="Password")


class ConfirmPasswordRequest(BaseModel):
    """New password for a forced password change"""
    new_password: str = Field(..., description="New password")
    confirm_password: Optional[str] = Field(None, description="Repeated new password")


class LoginResponse(BaseModel):
    """Login response data"""
    success: bool = Field(..., description="Login success status")
    require_new_password: bool = Field(default=False, description="Forced password change pending")
    redirect_url: Optional[str] = Field(None, description="Redirect URL after login")
    error_message: Optional[str] = Field(None, description="Error message if login failed")


class TokenRefreshResponse(BaseModel):
    """Token refresh response"""
    success: bool = Field(..., description="Refresh success status")
    expires_at: Optional[datetime] = Field(None, description="New access token expiration")
    error_message: Optional[str] = Field(None, description="Error message if refresh failed")


# Identity provider results

class SignInStep(str, Enum):
    """Next step reported by the identity provider after a sign-in call"""
    DONE = "DONE"
    CONFIRM_SIGN_IN_WITH_NEW_PASSWORD_REQUIRED = "CONFIRM_SIGN_IN_WITH_NEW_PASSWORD_REQUIRED"
    CONFIRM_SIGN_UP = "CONFIRM_SIGN_UP"
    RESET_PASSWORD = "RESET_PASSWORD"
    CONFIRM_SIGN_IN_WITH_SMS_CODE = "CONFIRM_SIGN_IN_WITH_SMS_CODE"
    CONFIRM_SIGN_IN_WITH_TOTP_CODE = "CONFIRM_SIGN_IN_WITH_TOTP_CODE"
    CONTINUE_SIGN_IN_WITH_MFA_SELECTION = "CONTINUE_SIGN_IN_WITH_MFA_SELECTION"
    CONTINUE_SIGN_IN_WITH_TOTP_SETUP = "CONTINUE_SIGN_IN_WITH_TOTP_SETUP"


MFA_STEPS = frozenset({
    SignInStep.CONFIRM_SIGN_IN_WITH_SMS_CODE,
    SignInStep.CONFIRM_SIGN_IN_WITH_TOTP_CODE,
    SignInStep.CONTINUE_SIGN_IN_WITH_MFA_SELECTION,
    SignInStep.CONTINUE_SIGN_IN_WITH_TOTP_SETUP,
})


class SignInResult(BaseModel):
    is_signed_in: bool
    next_step: SignInStep = SignInStep.DONE


class ProviderTokens(BaseModel):
    """Tokens as returned by the identity provider"""
    access_token: str
    id_token: str
    expires_at: datetime
    id_token_claims: Dict[str, Any] = Field(default_factory=dict)


class CurrentUser(BaseModel):
    user_id: str
    username: str


class CodeDelivery(BaseModel):
    """Where a verification code was sent"""
    destination: Optional[str] = None
    delivery_medium: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    """Request a password reset code"""
    email: str = Field(..., min_length=1, description="Email used as the user pool username")


class ConfirmForgotPasswordRequest(BaseModel):
    """Set a new password with a reset code"""
    email: str = Field(..., min_length=1, description="Email used as the user pool username")
    code: str = Field(..., min_length=1, description="Verification code from the reset email")
    new_password: str = Field(..., description="New password")
    confirm_password: Optional[str] = Field(None, description="Repeated new password")


class PasswordResetResponse(BaseModel):
    """Password reset response data"""
    success: bool = Field(..., description="Request success status")
    message: Optional[str] = Field(None, description="Message to show the user")
    destination: Optional[str] = Field(None, description="Masked address the code was sent to")
    redirect_url: Optional[str] = Field(None, description="Redirect URL after the reset")
    error_message: Optional[str] = Field(None, description="Error message if the request failed")


class UserUpdateRequest(BaseModel):
    """Editable profile fields; id and role are not among them"""
    full_name: Optional[str] = Field(None, description="Display name")
    avatar: Optional[str] = Field(None, description="Avatar reference")
    phone: Optional[str] = Field(None, description="Phone number")
