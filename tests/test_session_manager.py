"""
Tests for the session manager.

Covers the token fast path, single-flight refresh, refresh failure handling,
background refresh scheduling, sign-in/sign-out and account operations.
"""

import asyncio

import pytest

from conftest import (
    InMemoryCredentialStore, ScriptedIdentityProvider, FakeClock,
    make_session, make_provider_session, make_jwt, HOUR_MILLIS, MINUTE_MILLIS
)
from tourclient.auth.auth_state import AuthStatePersistence
from tourclient.auth.session_manager import SessionManager
from tourshared.exceptions import (
    NoSessionError, RefreshRejectedError, UnverifiedAccountError, AuthenticationError,
    IdentityProviderError, UnreachableError, ErrorCode
)
from tourshared.models import SessionState, ProviderSession


class TestGetToken:
    """Test token retrieval."""

    @pytest.mark.asyncio
    async def test_fresh_token_returned_without_refresh(self, session_manager, credential_store,
                                                        identity_provider, clock):
        """A token outside the buffer is returned as stored."""
        credential_store.data = make_session(clock, expires_in_millis=HOUR_MILLIS).to_dict()

        result = await session_manager.get_token()

        assert result.ok
        assert result.token == "id-token-1"
        assert identity_provider.refresh_calls == []
        assert session_manager.state == SessionState.VALID

    @pytest.mark.asyncio
    async def test_token_inside_buffer_is_refreshed(self, session_manager, credential_store,
                                                    identity_provider, clock):
        """A token expiring within five minutes is refreshed before use."""
        credential_store.data = make_session(clock, expires_in_millis=4 * MINUTE_MILLIS).to_dict()
        identity_provider.refresh_results = [make_provider_session(clock)]

        result = await session_manager.get_token()

        assert result.token == "id-token-2"
        assert identity_provider.refresh_calls == [{'username': 'alice', 'refresh_token': 'refresh-1'}]
        assert credential_store.data['id_token'] == "id-token-2"
        # Provider omitted the refresh token; the previous one is kept
        assert credential_store.data['refresh_token'] == "refresh-1"

    @pytest.mark.asyncio
    async def test_buffer_boundary_triggers_refresh(self, session_manager, credential_store,
                                                    identity_provider, clock):
        """Expiry exactly at the buffer edge counts as expiring."""
        credential_store.data = make_session(clock, expires_in_millis=5 * MINUTE_MILLIS).to_dict()
        identity_provider.refresh_results = [make_provider_session(clock)]

        result = await session_manager.get_token()

        assert result.token == "id-token-2"
        assert len(identity_provider.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_no_session(self, session_manager, identity_provider):
        """Nothing stored and no live handle is an expected NoSession result."""
        result = await session_manager.get_token()

        assert not result.ok
        assert isinstance(result.error, NoSessionError)
        assert result.error.error_code == ErrorCode.AUTH_NO_SESSION
        assert identity_provider.refresh_calls == []
        assert session_manager.state == SessionState.NO_SESSION


class TestRefresh:
    """Test refresh behaviour."""

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_provider_call(self, session_manager, credential_store,
                                                                identity_provider, clock):
        """N concurrent refreshes produce exactly one provider refresh."""
        credential_store.data = make_session(clock).to_dict()
        identity_provider.refresh_gate = asyncio.Event()
        identity_provider.refresh_results = [make_provider_session(clock)]

        tasks = [asyncio.create_task(session_manager.refresh(force=True)) for _ in range(5)]
        await asyncio.sleep(0.01)
        identity_provider.refresh_gate.set()
        results = await asyncio.gather(*tasks)

        assert len(identity_provider.refresh_calls) == 1
        assert all(result.token == "id-token-2" for result in results)
        assert all(result is results[0] for result in results)

    @pytest.mark.asyncio
    async def test_get_token_joins_in_flight_refresh(self, session_manager, credential_store,
                                                     identity_provider, clock):
        """get_token racing a refresh observes the same attempt."""
        credential_store.data = make_session(clock, expires_in_millis=MINUTE_MILLIS).to_dict()
        identity_provider.refresh_gate = asyncio.Event()
        identity_provider.refresh_results = [make_provider_session(clock)]

        forced = asyncio.create_task(session_manager.refresh(force=True))
        await asyncio.sleep(0.01)
        waiting = asyncio.create_task(session_manager.get_token())
        await asyncio.sleep(0.01)
        identity_provider.refresh_gate.set()

        assert (await forced).token == "id-token-2"
        assert (await waiting).token == "id-token-2"
        assert len(identity_provider.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_rejected_refresh_purges_credentials(self, session_manager, credential_store,
                                                       identity_provider, clock):
        """A rejected refresh token clears storage and ends in INVALID."""
        credential_store.data = make_session(clock, expires_in_millis=MINUTE_MILLIS).to_dict()
        identity_provider.refresh_results = [
            IdentityProviderError("Refresh Token has expired", provider_code='NotAuthorizedException')
        ]

        result = await session_manager.get_token()

        assert isinstance(result.error, RefreshRejectedError)
        assert credential_store.data is None
        assert session_manager.state == SessionState.INVALID

        status = await session_manager.is_authenticated()
        assert status.is_authenticated is False

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, session_manager, credential_store,
                                         identity_provider, clock):
        """An expiring session without a refresh token cannot be renewed."""
        credential_store.data = make_session(clock, expires_in_millis=MINUTE_MILLIS,
                                             refresh_token=None).to_dict()

        result = await session_manager.get_token()

        assert isinstance(result.error, NoSessionError)
        assert result.error.error_code == ErrorCode.AUTH_NO_REFRESH_TOKEN
        assert identity_provider.refresh_calls == []
        assert credential_store.data is None

    @pytest.mark.asyncio
    async def test_unreachable_provider_purges_credentials(self, session_manager, credential_store,
                                                           identity_provider, clock):
        """A refresh that cannot reach the provider ends the session like a rejection."""
        credential_store.data = make_session(clock, expires_in_millis=MINUTE_MILLIS).to_dict()
        identity_provider.refresh_results = [UnreachableError("offline")]

        result = await session_manager.get_token()

        assert isinstance(result.error, RefreshRejectedError)
        assert isinstance(result.error.cause, UnreachableError)
        assert credential_store.data is None
        assert session_manager.state == SessionState.INVALID

        status = await session_manager.is_authenticated()
        assert status.is_authenticated is False
        assert status.error is None

    @pytest.mark.asyncio
    async def test_sign_out_during_refresh_discards_tokens(self, session_manager, credential_store,
                                                           identity_provider, clock):
        """Tokens arriving after sign-out are not persisted."""
        credential_store.data = make_session(clock).to_dict()
        identity_provider.refresh_gate = asyncio.Event()
        identity_provider.refresh_results = [make_provider_session(clock)]

        refreshing = asyncio.create_task(session_manager.refresh(force=True))
        await asyncio.sleep(0.01)
        await session_manager.sign_out()
        identity_provider.refresh_gate.set()

        result = await refreshing
        assert isinstance(result.error, NoSessionError)
        assert credential_store.data is None

    @pytest.mark.asyncio
    async def test_sign_out_during_refresh_stays_signed_out(self, session_manager, credential_store,
                                                            identity_provider, clock):
        """A refresh finishing after sign-out does not leave a provider handle to revive the session."""
        credential_store.data = make_session(clock, expires_in_millis=MINUTE_MILLIS).to_dict()
        identity_provider.refresh_gate = asyncio.Event()
        identity_provider.refresh_results = [
            make_provider_session(clock),
            make_provider_session(clock, id_token="id-token-3"),
        ]

        pending = asyncio.create_task(session_manager.get_token())
        await asyncio.sleep(0.01)
        await session_manager.sign_out()
        identity_provider.refresh_gate.set()

        assert isinstance((await pending).error, NoSessionError)
        assert not identity_provider.has_live_session()

        result = await session_manager.get_token()

        assert isinstance(result.error, NoSessionError)
        assert result.token is None
        assert credential_store.data is None
        assert len(identity_provider.refresh_calls) == 1


class TestBackgroundRefresh:
    """Test proactive refresh scheduling."""

    @pytest.mark.asyncio
    async def test_timer_fires_immediately_when_inside_buffer(self, credential_store, identity_provider, clock):
        """A refresh moment in the past fires right away and re-arms the timer."""
        manager = SessionManager(credential_store, identity_provider, clock=clock, auto_refresh=True)
        credential_store.data = make_session(clock, expires_in_millis=MINUTE_MILLIS).to_dict()
        identity_provider.refresh_results = [make_provider_session(clock, expires_in_millis=HOUR_MILLIS)]

        manager.schedule_background_refresh(clock() + MINUTE_MILLIS)
        for _ in range(50):
            if credential_store.save_calls:
                break
            await asyncio.sleep(0.01)

        assert len(identity_provider.refresh_calls) == 1
        assert credential_store.data['id_token'] == "id-token-2"
        assert manager.timer.is_pending

        await manager.shutdown()
        assert not manager.timer.is_pending

    @pytest.mark.asyncio
    async def test_sign_out_cancels_timer(self, credential_store, identity_provider, clock):
        """After sign-out the timer never fires and no session remains."""
        manager = SessionManager(credential_store, identity_provider, clock=clock, auto_refresh=True)
        credential_store.data = make_session(clock).to_dict()

        manager.schedule_background_refresh(clock() + 5 * MINUTE_MILLIS + 50)
        assert manager.timer.is_pending

        await manager.sign_out()
        await asyncio.sleep(0.1)

        assert not manager.timer.is_pending
        assert identity_provider.refresh_calls == []
        assert await credential_store.load() is None
        result = await manager.get_token()
        assert isinstance(result.error, NoSessionError)

    @pytest.mark.asyncio
    async def test_no_timer_without_refresh_token(self, credential_store, identity_provider, clock):
        """A session that cannot be renewed serves until expiry without arming the timer."""
        manager = SessionManager(credential_store, identity_provider, clock=clock, auto_refresh=True)
        identity_provider.sign_in_result = make_provider_session(clock, refresh_token=None)

        await manager.sign_in("alice", "secret")

        assert not manager.timer.is_pending
        assert (await manager.get_token()).token == "id-token-2"
        assert identity_provider.refresh_calls == []

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_auto_refresh_disabled(self, session_manager, clock):
        """Scheduling is a no-op when automatic refresh is off."""
        session_manager.schedule_background_refresh(clock() + HOUR_MILLIS)
        assert not session_manager.timer.is_pending


class TestSignInAndOut:
    """Test sign-in, sign-out and profile data."""

    @pytest.fixture
    def auth_state(self, tmp_path):
        return AuthStatePersistence(tmp_path)

    @pytest.fixture
    def manager(self, credential_store, identity_provider, clock, auth_state):
        return SessionManager(credential_store, identity_provider, auth_state=auth_state,
                              clock=clock, auto_refresh=False)

    @pytest.mark.asyncio
    async def test_sign_in_persists_session_and_profile(self, manager, credential_store,
                                                        identity_provider, clock, auth_state):
        """Successful sign-in stores the session and user data."""
        id_token = make_jwt({'cognito:username': 'alice', 'email': 'alice@example.com', 'sub': 'sub-1'})
        identity_provider.sign_in_result = ProviderSession(
            id_token=id_token, access_token="access", refresh_token="refresh",
            expires_at_millis=clock() + HOUR_MILLIS, username="alice"
        )
        changes = []
        manager.add_auth_callback(changes.append)

        session = await manager.sign_in("alice", "secret")

        assert session.id_token == id_token
        assert credential_store.data['refresh_token'] == "refresh"
        assert manager.state == SessionState.VALID
        assert changes == [True]

        user = await manager.get_current_user_data()
        assert user.email == "alice@example.com"
        assert user.sub == "sub-1"
        assert auth_state.load_user_data().username == "alice"

    @pytest.mark.asyncio
    async def test_unconfirmed_account(self, manager, identity_provider):
        """UserNotConfirmedException maps to UnverifiedAccountError with the username."""
        identity_provider.sign_in_result = IdentityProviderError(
            "User is not confirmed.", provider_code='UserNotConfirmedException'
        )

        with pytest.raises(UnverifiedAccountError) as exc_info:
            await manager.sign_in("bob", "secret")

        assert exc_info.value.username == "bob"

    @pytest.mark.asyncio
    async def test_wrong_password(self, manager, identity_provider):
        """NotAuthorizedException maps to invalid credentials."""
        identity_provider.sign_in_result = IdentityProviderError(
            "Incorrect username or password.", provider_code='NotAuthorizedException'
        )

        with pytest.raises(AuthenticationError) as exc_info:
            await manager.sign_in("bob", "wrong")

        assert exc_info.value.error_code == ErrorCode.AUTH_INVALID_CREDENTIALS

    @pytest.mark.asyncio
    async def test_sign_out_clears_storage_even_if_provider_fails(self, manager, credential_store,
                                                                  identity_provider, clock):
        """Provider sign-out errors do not prevent clearing local credentials."""
        credential_store.data = make_session(clock).to_dict()
        identity_provider.live = True
        identity_provider.sign_out_error = IdentityProviderError("boom")

        await manager.sign_out()

        assert credential_store.data is None
        assert identity_provider.sign_out_calls == 1
        assert manager.state == SessionState.NO_SESSION

    @pytest.mark.asyncio
    async def test_is_authenticated_swallows_expected_error(self, manager):
        """No session is reported as unauthenticated without an error."""
        status = await manager.is_authenticated()

        assert status.is_authenticated is False
        assert status.error is None


class TestAccountOperations:
    """Test account lifecycle pass-throughs."""

    @pytest.mark.asyncio
    async def test_sign_up_attributes(self, session_manager, identity_provider):
        """Sign-up sends email and consent attributes."""
        await session_manager.sign_up("carol", "secret", "carol@example.com",
                                      policy_version="2.0", consent_timestamp="2024-01-01T00:00:00")

        name, username, attributes = identity_provider.account_calls[0]
        assert name == 'sign_up'
        assert attributes == {
            'email': 'carol@example.com',
            'custom:policyVersion': '2.0',
            'custom:consentDate': '2024-01-01T00:00:00',
        }

    @pytest.mark.asyncio
    async def test_password_reset_flow(self, session_manager, identity_provider):
        """Forgot-password and confirmation are delegated to the provider."""
        await session_manager.forgot_password("carol")
        await session_manager.confirm_new_password("carol", "123456", "new-secret")

        assert identity_provider.account_calls == [
            ('forgot_password', 'carol'),
            ('confirm_new_password', 'carol', '123456'),
        ]

    @pytest.mark.asyncio
    async def test_delete_account_clears_local_state(self, session_manager, credential_store,
                                                     identity_provider, clock):
        """Account deletion uses the access token and clears credentials."""
        credential_store.data = make_session(clock).to_dict()

        await session_manager.delete_account()

        assert identity_provider.account_calls == [('delete_account', 'access-1')]
        assert credential_store.data is None
        result = await session_manager.get_token()
        assert isinstance(result.error, NoSessionError)

    @pytest.mark.asyncio
    async def test_cold_start_refresh_with_persisted_token(self, clock):
        """A persisted refresh token and username suffice for one refresh without a live handle."""
        store = InMemoryCredentialStore(make_session(FakeClock(clock() - 2 * HOUR_MILLIS)))
        provider = ScriptedIdentityProvider()
        provider.refresh_results = [make_provider_session(clock)]
        manager = SessionManager(store, provider, clock=clock, auto_refresh=False)

        result = await manager.get_token()

        assert result.token == "id-token-2"
        assert provider.refresh_calls[0]['username'] == "alice"
