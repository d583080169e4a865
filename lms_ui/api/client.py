"""
LMS REST backend client authenticated with the current session
"""
from typing import Any, Dict, Optional

import httpx

from ..auth.errors import AuthError
from ..models.auth import ProviderTokens
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_TIMEOUT = 10.0

NETWORK_ERROR_MESSAGE = "Network error. Please check your connection."
DEFAULT_ERROR_MESSAGE = "Something went wrong. Please try again."

_STATUS_MESSAGES = {
    400: "The submitted data is invalid. Please check and try again.",
    401: "Your session has expired. Please sign in again.",
    403: "You do not have permission to perform this action.",
    404: "The requested data was not found.",
    405: "This action is not supported.",
    409: "The data is in conflict. Please try again.",
    422: "The submitted data is invalid. Please check and try again.",
    429: "Too many requests. Please try again in a few minutes.",
}


def friendly_message(status_code: Optional[int]) -> str:
    """
    User-facing message for a failed backend call

    Args:
        status_code: HTTP status, or None for network failures

    Returns:
        str: Message without status codes or backend details
    """
    if status_code is None:
        return NETWORK_ERROR_MESSAGE
    if status_code in _STATUS_MESSAGES:
        return _STATUS_MESSAGES[status_code]
    if status_code >= 500:
        return "Server error. Please try again later."
    return DEFAULT_ERROR_MESSAGE


def unwrap_envelope(payload: Any) -> Any:
    """Return the 'data' or 'results' member of a response envelope, else the payload"""
    if isinstance(payload, dict):
        if "data" in payload:
            return payload["data"]
        if "results" in payload:
            return payload["results"]
    return payload


def auth_headers(access_token: Optional[str], id_token: Optional[str]) -> Dict[str, str]:
    """Headers expected by the backend: bearer access token plus the ID token"""
    headers = {}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    if id_token:
        headers["user-idToken"] = id_token
    return headers


class ApiError(Exception):
    """Failed backend call with a user-facing message"""

    def __init__(self, status_code: Optional[int], message: Optional[str] = None):
        self.status_code = status_code
        self.message = message or friendly_message(status_code)
        super().__init__(self.message)


class BackendClient:
    """
    JSON client for the LMS REST API

    A 401 triggers one session refresh (shared with any concurrent callers)
    and a single retry of the original request.
    """

    def __init__(
        self,
        base_url: str,
        session,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        """
        Send an authenticated request and unwrap the response envelope

        Args:
            method: HTTP method
            path: Path relative to the API base URL
            params: Query parameters
            json: JSON body

        Returns:
            Any: Unwrapped response data (None for empty bodies)

        Raises:
            ApiError: Request failed
        """
        response = await self._send(method, path, params, json)

        if response.status_code == 401:
            logger.info(f"{method} {path} returned 401, refreshing session")
            try:
                await self.session.refresh_session()
            except AuthError as e:
                logger.warning(f"Session refresh failed: {e.message}")
                raise ApiError(401) from e
            response = await self._send(method, path, params, json)

        if response.status_code >= 400:
            logger.error(f"API error: status={response.status_code} method={method} url={path}")
            raise ApiError(response.status_code)

        if not response.content:
            return None
        try:
            return unwrap_envelope(response.json())
        except ValueError as e:
            logger.error(f"API returned non-JSON body for {method} {path}")
            raise ApiError(response.status_code, DEFAULT_ERROR_MESSAGE) from e

    async def _send(self, method, path, params, json) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        headers.update(auth_headers(self.session.access_token, self.session.id_token))
        try:
            return await self.http_client.request(
                method,
                f"{self.base_url}/{path.lstrip('/')}",
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"API request {method} {path} failed: {e}")
            raise ApiError(None) from e

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Any = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("DELETE", path, params=params)

    async def aclose(self):
        """Close HTTP client"""
        if self._owns_http_client:
            await self.http_client.aclose()


class ProfileRoleLookup:
    """
    Role lookup against the backend profile endpoint

    Used during sign-in, before the session holds tokens, so the freshly
    issued tokens are passed in explicitly.
    """

    def __init__(self, base_url: str, http_client: httpx.AsyncClient, path: str = "/profile"):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.path = path

    async def __call__(self, tokens: Optional[ProviderTokens]) -> Optional[str]:
        if tokens is None:
            return None
        response = await self.http_client.get(
            f"{self.base_url}/{self.path.lstrip('/')}",
            headers=auth_headers(tokens.access_token, tokens.id_token),
        )
        response.raise_for_status()
        profile = unwrap_envelope(response.json())
        if not isinstance(profile, dict):
            return None
        return profile.get("role")
