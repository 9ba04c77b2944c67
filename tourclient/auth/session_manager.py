"""
Session Manager for the TensorTours client.

This module owns the authentication state machine: it hands out valid ID
tokens, refreshes them proactively before expiry, collapses concurrent refresh
attempts into one provider call, and fronts the account operations of the
identity provider.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable, List

from tourclient.auth.auth_state import AuthStatePersistence
from tourclient.auth.identity_provider import parse_token_claims
from tourclient.scheduler import CancellableTimer
from tourshared.exceptions import (
    TourClientError, AuthenticationError, NoSessionError, RefreshRejectedError,
    UnverifiedAccountError, IdentityProviderError, UnreachableError, StorageError,
    ErrorCode, handle_exception, is_expected_auth_error
)
from tourshared.interfaces import ICredentialStore, IIdentityProvider
from tourshared.logging_config import AuditLogger
from tourshared.models import (
    Session, SessionState, TokenResult, AuthStatus, UserData, ProviderSession, now_millis
)

logger = logging.getLogger(__name__)

INVALID_CREDENTIAL_CODES = ('NotAuthorizedException', 'UserNotFoundException')


class SessionManager:
    """
    Manages the authenticated session with automatic refresh.

    State moves NO_SESSION -> VALID -> EXPIRING -> REFRESHING -> VALID or
    INVALID. INVALID holds until the next successful sign-in.
    """

    def __init__(
        self,
        credential_store: ICredentialStore,
        identity_provider: IIdentityProvider,
        auth_state: Optional[AuthStatePersistence] = None,
        refresh_buffer_seconds: int = 300,
        auto_refresh: bool = True,
        clock: Callable[[], int] = now_millis,
        timer: Optional[CancellableTimer] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.credential_store = credential_store
        self.identity_provider = identity_provider
        self.auth_state = auth_state
        self.refresh_buffer_millis = refresh_buffer_seconds * 1000
        self.auto_refresh = auto_refresh
        self._clock = clock
        self._timer = timer or CancellableTimer("session-refresh")
        self._audit = audit_logger or AuditLogger()

        self._state = SessionState.NO_SESSION
        self._session: Optional[Session] = None
        self._session_loaded = False
        self._refresh_task: Optional[asyncio.Task] = None
        # Bumped whenever the session is replaced or purged outside a refresh
        self._generation = 0

        self._auth_callbacks: List[Callable[[bool], None]] = []

        logger.info("Session manager initialized")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def timer(self) -> CancellableTimer:
        return self._timer

    def add_auth_callback(self, callback: Callable[[bool], None]) -> None:
        """
        Add callback for authentication state changes.

        Args:
            callback: Function called with authentication status (bool)
        """
        self._auth_callbacks.append(callback)

    def _notify_auth_change(self, is_authenticated: bool) -> None:
        for callback in self._auth_callbacks:
            try:
                callback(is_authenticated)
            except Exception as e:
                logger.error(f"Error in auth callback: {e}")

    async def _load_session(self) -> Optional[Session]:
        if not self._session_loaded:
            self._session = await self.credential_store.load()
            self._session_loaded = True
        return self._session

    async def _persist(self, session: Session) -> None:
        await self.credential_store.save(session)
        self._session = session
        self._session_loaded = True
        self._state = SessionState.VALID
        if session.refresh_token:
            self.schedule_background_refresh(session.expires_at_millis)

    async def _clear_local(self) -> None:
        self._timer.cancel()
        self._session = None
        self._session_loaded = True
        try:
            await self.credential_store.clear()
        finally:
            if self.auth_state:
                self.auth_state.clear_user_data()

    # Tokens

    async def get_token(self) -> TokenResult:
        """
        Get a valid ID token.

        Returns the stored token when it is outside the refresh buffer, without
        any network I/O; otherwise refreshes first.

        Returns:
            TokenResult with the token, or the reason there is none
        """
        try:
            session = await self._load_session()
        except StorageError as e:
            return TokenResult(error=e)

        if session is None and not self.identity_provider.has_live_session():
            if self._state is not SessionState.INVALID:
                self._state = SessionState.NO_SESSION
            logger.debug("No stored session")
            return TokenResult(error=NoSessionError())

        if session is not None and not session.expires_within(self.refresh_buffer_millis, self._clock()):
            self._state = SessionState.VALID
            return TokenResult(token=session.id_token)

        self._state = SessionState.EXPIRING
        return await self.refresh(force=False)

    async def refresh(self, force: bool = False) -> TokenResult:
        """
        Refresh the session, sharing one attempt between concurrent callers.

        Args:
            force: Refresh even if the stored token is still outside the buffer

        Returns:
            TokenResult with the new token, or the refresh error
        """
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.create_task(self._perform_refresh(force))
            self._refresh_task = task
            task.add_done_callback(self._refresh_done)
        else:
            logger.debug("Refresh already in flight; joining it")
        return await asyncio.shield(task)

    def _refresh_done(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _perform_refresh(self, force: bool) -> TokenResult:
        generation = self._generation
        try:
            return await self._refresh_session(force, generation)
        except TourClientError as e:
            logger.error(f"Token refresh error: {e}")
            return TokenResult(error=e)
        except Exception as e:
            logger.exception("Unexpected token refresh error")
            return TokenResult(error=handle_exception(e))

    async def _refresh_session(self, force: bool, generation: int) -> TokenResult:
        self._state = SessionState.REFRESHING
        stored = await self._load_session()

        if not force and stored is not None and not stored.expires_within(self.refresh_buffer_millis, self._clock()):
            self._state = SessionState.VALID
            return TokenResult(token=stored.id_token)

        provider_session: Optional[ProviderSession] = None
        last_error: Optional[TourClientError] = None
        path = None

        if self.identity_provider.has_live_session():
            try:
                provider_session = await self.identity_provider.get_current_session()
                path = "live"
            except (IdentityProviderError, UnreachableError) as e:
                logger.warning(f"Live session refresh failed: {e}")
                last_error = e

        if provider_session is None and stored is not None and stored.refresh_token:
            try:
                provider_session = await self.identity_provider.refresh_session(
                    stored.username, stored.refresh_token
                )
                path = "stored"
            except (IdentityProviderError, UnreachableError) as e:
                logger.warning(f"Stored refresh token failed: {e}")
                last_error = e

        username = stored.username if stored else None

        if generation != self._generation:
            logger.info("Session changed during refresh; discarding refreshed tokens")
            if self._session is None:
                # The late refresh re-opened the provider handle
                await self._drop_provider_session()
            return TokenResult(error=NoSessionError("Session ended during refresh"))

        if provider_session is not None:
            session = provider_session.to_session(
                fallback_refresh_token=stored.refresh_token if stored else None,
                fallback_username=username
            )
            await self._persist(session)
            self._audit.log_refresh(session.username, success=True, path=path)
            logger.info("Token refreshed successfully")
            return TokenResult(token=session.id_token)

        if last_error is None:
            error = NoSessionError("No refresh token available", error_code=ErrorCode.AUTH_NO_REFRESH_TOKEN)
        elif isinstance(last_error, UnreachableError):
            error = RefreshRejectedError(f"Session could not be refreshed: {last_error.message}",
                                         cause=last_error)
        else:
            error = RefreshRejectedError(f"Refresh token rejected: {last_error.message}", cause=last_error)

        self._audit.log_refresh(username, success=False, failure_reason=error.error_code.value)
        await self._purge(username, reason="refresh_failed")
        return TokenResult(error=error)

    def schedule_background_refresh(self, expires_at_millis: int) -> None:
        """
        Arm the refresh timer to fire one buffer before expiry.

        Fires immediately when that moment has already passed.
        """
        if not self.auto_refresh:
            return
        delay_millis = expires_at_millis - self.refresh_buffer_millis - self._clock()
        self._timer.schedule(delay_millis / 1000, self._background_refresh)

    async def _background_refresh(self) -> None:
        logger.info("Automatic token refresh triggered")
        result = await self.refresh(force=True)
        if not result.ok:
            logger.warning(f"Background refresh failed: {result.error}")

    async def _purge(self, username: Optional[str], reason: str) -> None:
        self._generation += 1
        try:
            await self._clear_local()
        except StorageError as e:
            logger.error(f"Failed to clear credentials: {e}")
        finally:
            self._state = SessionState.INVALID
        await self._drop_provider_session()
        self._audit.log_sign_out(username, reason=reason)
        self._notify_auth_change(False)

    async def _drop_provider_session(self) -> None:
        if not self.identity_provider.has_live_session():
            return
        try:
            await self.identity_provider.sign_out()
        except TourClientError as e:
            logger.warning(f"Identity provider sign-out failed: {e}")

    async def invalidate(self) -> None:
        """Purge the session after the backend rejected a freshly refreshed token."""
        username = self._session.username if self._session else None
        logger.warning("Session invalidated; clearing stored credentials")
        await self._purge(username, reason="invalidated")

    # Sign-in and sign-out

    async def sign_in(self, username: str, password: str) -> Session:
        """
        Sign in with username and password.

        Raises:
            UnverifiedAccountError: The account still needs confirmation
            AuthenticationError: Wrong username or password
            IdentityProviderError: Any other provider failure
        """
        try:
            provider_session = await self.identity_provider.sign_in(username, password)
        except IdentityProviderError as e:
            self._audit.log_sign_in(username, success=False, failure_reason=e.provider_code)
            raise self._map_sign_in_error(e, username) from e

        session = provider_session.to_session(fallback_username=username)
        self._generation += 1
        await self._persist(session)

        if self.auth_state:
            self.auth_state.save_user_data(self._user_data_from_token(session.id_token, session.username))

        self._audit.log_sign_in(session.username or username, success=True)
        self._notify_auth_change(True)
        return session

    @staticmethod
    def _map_sign_in_error(error: IdentityProviderError, username: str) -> TourClientError:
        if error.provider_code == 'UserNotConfirmedException':
            return UnverifiedAccountError(
                "Account is not verified. Please check your email for the confirmation code.",
                username=username, cause=error
            )
        if error.provider_code in INVALID_CREDENTIAL_CODES:
            return AuthenticationError("Incorrect username or password",
                                       ErrorCode.AUTH_INVALID_CREDENTIALS, cause=error)
        return error

    async def sign_out(self) -> None:
        """
        Sign out: cancel the refresh timer and clear stored credentials.

        Local storage is cleared even if the identity provider fails.
        """
        logger.info("Signing out and clearing authentication state")
        username = self._session.username if self._session else None
        self._generation += 1
        self._timer.cancel()

        try:
            await self._drop_provider_session()
        finally:
            await self._clear_local()
            self._state = SessionState.NO_SESSION

        self._audit.log_sign_out(username)
        self._notify_auth_change(False)

    async def is_authenticated(self) -> AuthStatus:
        """
        Check whether a valid session exists.

        Expected conditions (nothing stored) report no error; anything else is
        passed back for the caller to decide on guest fallback or sign-out.
        """
        result = await self.get_token()
        if result.ok:
            return AuthStatus(is_authenticated=True)
        if is_expected_auth_error(result.error):
            return AuthStatus(is_authenticated=False)
        return AuthStatus(is_authenticated=False, error=result.error)

    async def get_current_user_data(self) -> Optional[UserData]:
        """Profile of the signed-in user, from the cache or the stored ID token."""
        if self.auth_state:
            cached = self.auth_state.load_user_data()
            if cached:
                return cached

        session = await self._load_session()
        if session is None:
            return None

        user_data = self._user_data_from_token(session.id_token, session.username)
        if self.auth_state:
            self.auth_state.save_user_data(user_data)
        return user_data

    @staticmethod
    def _user_data_from_token(id_token: str, username: Optional[str]) -> UserData:
        user_data = UserData.from_claims(parse_token_claims(id_token))
        if not user_data.username:
            user_data.username = username
        return user_data

    # Account lifecycle

    async def sign_up(
        self,
        username: str,
        password: str,
        email: str,
        policy_version: str = "1.0",
        consent_timestamp: Optional[str] = None
    ) -> Dict[str, Any]:
        attributes = {
            'email': email,
            'custom:policyVersion': policy_version,
            'custom:consentDate': consent_timestamp or datetime.now().isoformat(),
        }
        try:
            result = await self.identity_provider.sign_up(username, password, attributes)
        except IdentityProviderError:
            self._audit.log_account_change("sign_up", username, success=False)
            raise
        self._audit.log_account_change("sign_up", username)
        return result

    async def confirm_sign_up(self, username: str, code: str) -> None:
        await self.identity_provider.confirm_sign_up(username, code)
        self._audit.log_account_change("confirm_sign_up", username)

    async def resend_confirmation_code(self, username: str) -> Dict[str, Any]:
        return await self.identity_provider.resend_confirmation_code(username)

    async def forgot_password(self, username: str) -> Dict[str, Any]:
        result = await self.identity_provider.forgot_password(username)
        self._audit.log_account_change("forgot_password", username)
        return result

    async def confirm_new_password(self, username: str, code: str, new_password: str) -> None:
        await self.identity_provider.confirm_new_password(username, code, new_password)
        self._audit.log_account_change("reset_password", username)

    async def delete_account(self) -> None:
        """
        Delete the signed-in account, then clear local credentials.

        A failure to clear local storage is logged, not raised.
        """
        session = await self._load_session()
        username = session.username if session else None
        access_token = session.access_token if session else None

        try:
            await self.identity_provider.delete_account(access_token)
        except TourClientError:
            self._audit.log_account_change("delete", username, success=False)
            raise

        self._generation += 1
        try:
            await self._clear_local()
        except StorageError as e:
            logger.error(f"Account deleted but local credentials could not be cleared: {e}")
        self._state = SessionState.NO_SESSION

        self._audit.log_account_change("delete", username)
        self._notify_auth_change(False)

    async def shutdown(self) -> None:
        """Cancel background work."""
        logger.info("Shutting down session manager")
        self._timer.cancel()

        task = self._refresh_task
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._timer.wait_closed()
