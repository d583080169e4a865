"""
Identity provider interface used by the session manager
"""
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from ..models.auth import CodeDelivery, CurrentUser, ProviderTokens, SignInResult


@runtime_checkable
class IdentityProvider(Protocol):
    """
    Narrow view of an identity provider SDK

    Implementations raise IdentityProviderError carrying the provider's own
    error code; translating those codes is the session manager's job.
    """

    async def sign_in(self, username: str, password: str) -> SignInResult: ...

    async def confirm_sign_in(self, challenge_response: str) -> SignInResult: ...

    async def fetch_auth_session(self, force_refresh: bool = False) -> Optional[ProviderTokens]: ...

    async def get_current_user(self) -> CurrentUser: ...

    async def fetch_user_attributes(self) -> Dict[str, Any]: ...

    async def sign_out(self) -> None: ...

    async def forgot_password(self, username: str) -> CodeDelivery: ...

    async def confirm_forgot_password(self, username: str, code: str, new_password: str) -> None: ...

    async def aclose(self) -> None: ...
