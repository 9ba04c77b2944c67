"""
Amazon Cognito identity provider for the TensorTours client.

This module talks to a Cognito user pool through its JSON API over aiohttp,
covering sign-in, token refresh and the account lifecycle operations.
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any, List

import aiohttp
from aiohttp import ClientSession, ClientTimeout
from jose import jwt, JWTError

from tourshared.exceptions import (
    IdentityProviderError, UnreachableError, ValidationError, ErrorCode
)
from tourshared.interfaces import IIdentityProvider
from tourshared.models import ProviderSession, now_millis

logger = logging.getLogger(__name__)

TARGET_PREFIX = "AWSCognitoIdentityProviderService"
CONTENT_TYPE = "application/x-amz-json-1.1"


def parse_token_expiration(token: str) -> Optional[int]:
    """
    Read the expiry of a JWT without verifying it.

    Returns:
        Expiry in epoch milliseconds, or None if the token carries none
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.warning(f"Failed to parse token expiration: {e}")
        return None

    exp = claims.get('exp')
    return int(exp) * 1000 if exp else None


def parse_token_claims(token: str) -> Dict[str, Any]:
    """Unverified claims of a JWT; empty if it cannot be decoded."""
    try:
        return jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.warning(f"Failed to decode token claims: {e}")
        return {}


class CognitoIdentityProvider(IIdentityProvider):
    """
    Cognito user-pool client.

    The live handle is the most recent session obtained in this process; it is
    dropped on sign-out and is absent after a cold start until the first
    sign-in or refresh.
    """

    def __init__(
        self,
        region: str,
        client_id: str,
        user_pool_id: Optional[str] = None,
        timeout: float = 30.0,
        endpoint: Optional[str] = None
    ):
        self.region = region
        self.client_id = client_id
        self.user_pool_id = user_pool_id
        self.endpoint = endpoint or f"https://cognito-idp.{region}.amazonaws.com/"
        self.timeout = ClientTimeout(total=timeout)

        self._session: Optional[ClientSession] = None
        self._current: Optional[ProviderSession] = None

        logger.info(f"Identity provider initialized for region {region}")

    async def _ensure_session(self) -> None:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _call(self, operation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Invoke a user-pool API operation.

        Raises:
            IdentityProviderError: The provider answered with an error
            UnreachableError: No answer was received
        """
        await self._ensure_session()

        headers = {
            'X-Amz-Target': f"{TARGET_PREFIX}.{operation}",
            'Content-Type': CONTENT_TYPE,
        }

        logger.debug(f"Calling identity provider operation {operation}")

        try:
            async with self._session.post(self.endpoint, data=json.dumps(payload), headers=headers) as response:
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            raise UnreachableError(f"Identity provider timed out during {operation}",
                                   error_code=ErrorCode.NETWORK_TIMEOUT, cause=e)
        except aiohttp.ClientError as e:
            raise UnreachableError(f"Identity provider unreachable during {operation}: {e}", cause=e)

        try:
            data = json.loads(text) if text else {}
        except json.JSONDecodeError:
            data = {}

        if status >= 400:
            raise self._error_from_response(data, status)

        if not isinstance(data, dict):
            raise ValidationError(f"Unexpected {operation} response from identity provider")
        return data

    @staticmethod
    def _error_from_response(data: Any, status: int) -> IdentityProviderError:
        if not isinstance(data, dict):
            data = {}
        error_type = data.get('__type') or data.get('code') or 'UnknownError'
        # Types may be namespaced, e.g. "com.amazonaws...#NotAuthorizedException"
        provider_code = error_type.rsplit('#', 1)[-1]
        message = data.get('message') or data.get('Message') or provider_code
        return IdentityProviderError(message, provider_code=provider_code, status=status)

    def _session_from_result(
        self,
        result: Dict[str, Any],
        username: Optional[str],
        fallback_refresh_token: Optional[str] = None
    ) -> ProviderSession:
        auth = result.get('AuthenticationResult')
        if not isinstance(auth, dict) or not auth.get('IdToken'):
            challenge = result.get('ChallengeName')
            if challenge:
                raise IdentityProviderError(f"Unsupported authentication challenge: {challenge}",
                                            provider_code=challenge)
            raise ValidationError("Identity provider response carries no tokens")

        id_token = auth['IdToken']
        expires_at = parse_token_expiration(id_token)
        if expires_at is None:
            expires_at = now_millis() + int(auth.get('ExpiresIn', 3600)) * 1000

        claims = parse_token_claims(id_token)
        return ProviderSession(
            id_token=id_token,
            access_token=auth.get('AccessToken'),
            refresh_token=auth.get('RefreshToken') or fallback_refresh_token,
            expires_at_millis=expires_at,
            username=claims.get('cognito:username') or username,
        )

    # IIdentityProvider

    async def sign_in(self, username: str, password: str) -> ProviderSession:
        result = await self._call('InitiateAuth', {
            'AuthFlow': 'USER_PASSWORD_AUTH',
            'ClientId': self.client_id,
            'AuthParameters': {'USERNAME': username, 'PASSWORD': password},
        })
        self._current = self._session_from_result(result, username)
        return self._current

    async def sign_up(self, username: str, password: str, attributes: Dict[str, str]) -> Dict:
        user_attributes: List[Dict[str, str]] = [
            {'Name': name, 'Value': value} for name, value in attributes.items()
        ]
        return await self._call('SignUp', {
            'ClientId': self.client_id,
            'Username': username,
            'Password': password,
            'UserAttributes': user_attributes,
        })

    async def confirm_sign_up(self, username: str, code: str) -> None:
        await self._call('ConfirmSignUp', {
            'ClientId': self.client_id,
            'Username': username,
            'ConfirmationCode': code,
            'ForceAliasCreation': True,
        })

    async def resend_confirmation_code(self, username: str) -> Dict:
        return await self._call('ResendConfirmationCode', {
            'ClientId': self.client_id,
            'Username': username,
        })

    async def forgot_password(self, username: str) -> Dict:
        return await self._call('ForgotPassword', {
            'ClientId': self.client_id,
            'Username': username,
        })

    async def confirm_new_password(self, username: str, code: str, new_password: str) -> None:
        await self._call('ConfirmForgotPassword', {
            'ClientId': self.client_id,
            'Username': username,
            'ConfirmationCode': code,
            'Password': new_password,
        })

    async def delete_account(self, access_token: Optional[str] = None) -> None:
        token = access_token or (self._current.access_token if self._current else None)
        if not token:
            raise IdentityProviderError("No signed-in user to delete", provider_code='NotAuthorizedException')
        await self._call('DeleteUser', {'AccessToken': token})
        self._current = None

    async def get_current_session(self) -> Optional[ProviderSession]:
        current = self._current
        if current is None or not current.refresh_token:
            return None
        return await self.refresh_session(current.username, current.refresh_token)

    async def refresh_session(self, username: Optional[str], refresh_token: str) -> ProviderSession:
        result = await self._call('InitiateAuth', {
            'AuthFlow': 'REFRESH_TOKEN_AUTH',
            'ClientId': self.client_id,
            'AuthParameters': {'REFRESH_TOKEN': refresh_token},
        })
        # Refresh responses omit the refresh token; keep the one we used
        self._current = self._session_from_result(result, username, fallback_refresh_token=refresh_token)
        return self._current

    async def sign_out(self) -> None:
        self._current = None
        logger.debug("Identity provider handle dropped")

    def has_live_session(self) -> bool:
        return self._current is not None
