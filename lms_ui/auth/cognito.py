"""
Amazon Cognito user pool identity provider
"""
import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from ..models.auth import CodeDelivery, CurrentUser, ProviderTokens, SignInResult, SignInStep, utcnow
from ..utils.config import get_config
from ..utils.logger import setup_logger
from .errors import IdentityProviderError
from .store import SessionStore
from .tokens import decode_claims

logger = setup_logger(__name__)

COGNITO_TOKENS_KEY = "cognito-tokens"

# Refresh slightly before expiry so requests never carry a token about to lapse
EXPIRY_SKEW = timedelta(seconds=60)

_CHALLENGE_STEPS = {
    "NEW_PASSWORD_REQUIRED": SignInStep.CONFIRM_SIGN_IN_WITH_NEW_PASSWORD_REQUIRED,
    "SMS_MFA": SignInStep.CONFIRM_SIGN_IN_WITH_SMS_CODE,
    "SOFTWARE_TOKEN_MFA": SignInStep.CONFIRM_SIGN_IN_WITH_TOTP_CODE,
    "SELECT_MFA_TYPE": SignInStep.CONTINUE_SIGN_IN_WITH_MFA_SELECTION,
    "MFA_SETUP": SignInStep.CONTINUE_SIGN_IN_WITH_TOTP_SETUP,
}

# Account-state errors reported as next steps rather than failures
_ERROR_STEPS = {
    "UserNotConfirmedException": SignInStep.CONFIRM_SIGN_UP,
    "PasswordResetRequiredException": SignInStep.RESET_PASSWORD,
}


class CognitoIdentityProvider:
    """
    Amazon Cognito user pool client

    Speaks the user pool JSON API directly (no AWS credentials needed for
    these operations) and keeps its own token record, refresh token
    included, in the durable store.
    """

    TARGET_PREFIX = "AWSCognitoIdentityProviderService."

    def __init__(
        self,
        store: SessionStore,
        storage_key: str = COGNITO_TOKENS_KEY,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        cognito_config = settings or get_config().get_cognito_config()
        self.region = cognito_config["region"]
        self.client_id = cognito_config["client_id"]
        self.client_secret = cognito_config.get("client_secret")
        self.endpoint = cognito_config["endpoint"]

        self.store = store
        self.storage_key = storage_key

        # HTTP client may be shared across providers; only close it if we made it
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)

        self._challenge_session: Optional[str] = None
        self._challenge_username: Optional[str] = None

    def _secret_hash(self, username: str) -> Optional[str]:
        """
        Compute SECRET_HASH for app clients that have a secret

        Args:
            username: User pool username

        Returns:
            Optional[str]: Base64 HMAC-SHA256 of username + client ID, or None
        """
        if not self.client_secret:
            return None
        digest = hmac.new(
            self.client_secret.encode('utf-8'),
            (username + self.client_id).encode('utf-8'),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode('utf-8')

    def _with_secret_hash(self, params: Dict[str, str], username: str) -> Dict[str, str]:
        secret_hash = self._secret_hash(username)
        if secret_hash:
            params["SECRET_HASH"] = secret_hash
        return params

    async def _call(self, action: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Invoke a user pool API action

        Args:
            action: API action name, e.g. "InitiateAuth"
            payload: Request body

        Returns:
            Dict: Response body

        Raises:
            IdentityProviderError: Cognito error, carrying its exception type as code
        """
        headers = {
            'Content-Type': 'application/x-amz-json-1.1',
            'X-Amz-Target': self.TARGET_PREFIX + action,
        }
        try:
            response = await self.http_client.post(
                self.endpoint,
                content=json.dumps(payload),
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"Cognito {action} request failed: {e}")
            raise IdentityProviderError("NetworkError", "Could not reach the identity provider.") from e

        if response.status_code != 200:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            code = str(error_data.get('__type', f'HTTP{response.status_code}')).split('#')[-1]
            message = error_data.get('message') or error_data.get('Message') or code
            logger.debug(f"Cognito {action} failed with {code}")
            raise IdentityProviderError(code, message)

        return response.json() if response.content else {}

    # Token record

    def _load_record(self) -> Optional[Dict[str, Any]]:
        try:
            record = self.store.load(self.storage_key)
        except Exception as e:
            logger.warning(f"Could not read Cognito token record: {e}")
            return None
        if not record or not record.get('access_token') or not record.get('id_token'):
            return None
        return record

    def _save_record(self, auth_result: Dict[str, Any], username: str, refresh_token: Optional[str] = None):
        access_token = auth_result['AccessToken']
        expires_in = auth_result.get('ExpiresIn', 3600)
        record = {
            'username': decode_claims(access_token).get('username', username),
            'access_token': access_token,
            'id_token': auth_result['IdToken'],
            'refresh_token': auth_result.get('RefreshToken', refresh_token),
            'expires_at': (utcnow() + timedelta(seconds=expires_in)).isoformat(),
        }
        self.store.save(self.storage_key, record)

    def _clear_record(self):
        try:
            self.store.delete(self.storage_key)
        except Exception as e:
            logger.warning(f"Could not clear Cognito token record: {e}")

    @staticmethod
    def _to_provider_tokens(record: Dict[str, Any]) -> ProviderTokens:
        return ProviderTokens(
            access_token=record['access_token'],
            id_token=record['id_token'],
            expires_at=datetime.fromisoformat(record['expires_at']),
            id_token_claims=decode_claims(record['id_token']),
        )

    # Identity provider operations

    def _handle_auth_response(self, data: Dict[str, Any], username: str) -> SignInResult:
        if 'AuthenticationResult' in data:
            self._save_record(data['AuthenticationResult'], username)
            self._challenge_session = None
            self._challenge_username = None
            logger.info("Cognito sign-in completed")
            return SignInResult(is_signed_in=True)

        challenge = data.get('ChallengeName')
        step = _CHALLENGE_STEPS.get(challenge)
        if step is None:
            raise IdentityProviderError("UnsupportedChallenge", f"Unsupported challenge: {challenge}")

        self._challenge_session = data.get('Session')
        self._challenge_username = data.get('ChallengeParameters', {}).get('USER_ID_FOR_SRP', username)
        logger.info(f"Cognito sign-in requires challenge {challenge}")
        return SignInResult(is_signed_in=False, next_step=step)

    async def sign_in(self, username: str, password: str) -> SignInResult:
        params = self._with_secret_hash({'USERNAME': username, 'PASSWORD': password}, username)
        try:
            data = await self._call('InitiateAuth', {
                'AuthFlow': 'USER_PASSWORD_AUTH',
                'ClientId': self.client_id,
                'AuthParameters': params,
            })
        except IdentityProviderError as e:
            if e.code in _ERROR_STEPS:
                return SignInResult(is_signed_in=False, next_step=_ERROR_STEPS[e.code])
            raise
        return self._handle_auth_response(data, username)

    async def confirm_sign_in(self, challenge_response: str) -> SignInResult:
        if not self._challenge_session or not self._challenge_username:
            raise IdentityProviderError("SignInException", "There is no sign-in in progress.")

        username = self._challenge_username
        responses = self._with_secret_hash(
            {'USERNAME': username, 'NEW_PASSWORD': challenge_response}, username
        )
        data = await self._call('RespondToAuthChallenge', {
            'ChallengeName': 'NEW_PASSWORD_REQUIRED',
            'ClientId': self.client_id,
            'Session': self._challenge_session,
            'ChallengeResponses': responses,
        })
        return self._handle_auth_response(data, username)

    async def fetch_auth_session(self, force_refresh: bool = False) -> Optional[ProviderTokens]:
        record = self._load_record()
        if record is None:
            return None

        expires_at = datetime.fromisoformat(record['expires_at'])
        if force_refresh or utcnow() + EXPIRY_SKEW >= expires_at:
            record = await self._refresh(record)
        return self._to_provider_tokens(record)

    async def _refresh(self, record: Dict[str, Any]) -> Dict[str, Any]:
        refresh_token = record.get('refresh_token')
        if not refresh_token:
            raise IdentityProviderError("NotAuthorizedException", "Refresh token is missing.")

        username = record['username']
        params = self._with_secret_hash({'REFRESH_TOKEN': refresh_token}, username)
        try:
            data = await self._call('InitiateAuth', {
                'AuthFlow': 'REFRESH_TOKEN_AUTH',
                'ClientId': self.client_id,
                'AuthParameters': params,
            })
        except IdentityProviderError as e:
            if e.code == "NotAuthorizedException":
                self._clear_record()
            raise

        # Cognito does not rotate the refresh token on this flow
        self._save_record(data['AuthenticationResult'], username, refresh_token=refresh_token)
        logger.info("Successfully refreshed tokens")
        return self._load_record()

    async def get_current_user(self) -> CurrentUser:
        record = self._load_record()
        if record is None:
            raise IdentityProviderError("UserUnAuthenticatedException", "User needs to be authenticated.")

        id_claims = decode_claims(record['id_token'])
        access_claims = decode_claims(record['access_token'])
        user_id = id_claims.get('sub') or access_claims.get('sub')
        if not user_id:
            raise IdentityProviderError("UserUnAuthenticatedException", "Token is missing the subject.")
        username = access_claims.get('username') or id_claims.get('cognito:username') or record['username']
        return CurrentUser(user_id=user_id, username=username)

    async def fetch_user_attributes(self) -> Dict[str, Any]:
        tokens = await self.fetch_auth_session()
        if tokens is None:
            raise IdentityProviderError("UserUnAuthenticatedException", "User needs to be authenticated.")
        data = await self._call('GetUser', {'AccessToken': tokens.access_token})
        return {attr['Name']: attr.get('Value') for attr in data.get('UserAttributes', [])}

    async def sign_out(self) -> None:
        record = self._load_record()
        self._challenge_session = None
        self._challenge_username = None
        if record is None:
            return
        try:
            await self._call('GlobalSignOut', {'AccessToken': record['access_token']})
        finally:
            self._clear_record()

    async def forgot_password(self, username: str) -> CodeDelivery:
        """
        Send a password reset code to the user

        Args:
            username: User pool username

        Returns:
            CodeDelivery: Masked destination reported by Cognito
        """
        payload = {'ClientId': self.client_id, 'Username': username}
        secret_hash = self._secret_hash(username)
        if secret_hash:
            payload['SecretHash'] = secret_hash

        data = await self._call('ForgotPassword', payload)
        details = data.get('CodeDeliveryDetails', {})
        logger.info(f"Password reset code sent via {details.get('DeliveryMedium', 'unknown medium')}")
        return CodeDelivery(
            destination=details.get('Destination'),
            delivery_medium=details.get('DeliveryMedium'),
        )

    async def confirm_forgot_password(self, username: str, code: str, new_password: str) -> None:
        payload = {
            'ClientId': self.client_id,
            'Username': username,
            'ConfirmationCode': code,
            'Password': new_password,
        }
        secret_hash = self._secret_hash(username)
        if secret_hash:
            payload['SecretHash'] = secret_hash

        await self._call('ConfirmForgotPassword', payload)
        logger.info("Password reset confirmed")

    async def aclose(self) -> None:
        """Close HTTP client"""
        if self._owns_http_client:
            await self.http_client.aclose()
