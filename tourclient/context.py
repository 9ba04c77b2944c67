"""
Client context for the TensorTours client core.

Builds every component once from configuration and hands them out by
reference, so nothing lives in module-level state.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from tourclient.api_client import TourApiClient
from tourclient.auth.auth_state import AuthStatePersistence
from tourclient.auth.credential_store import SecureCredentialStore
from tourclient.auth.identity_provider import CognitoIdentityProvider
from tourclient.auth.session_manager import SessionManager
from tourclient.config import ClientConfiguration
from tourclient.dispatcher import RequestDispatcher
from tourclient.preview_content import PreviewContentClient
from tourclient.response_cache import ResponseCache
from tourclient.tour_cache import TourPrefetchCache
from tourshared.interfaces import ICredentialStore, IIdentityProvider

logger = logging.getLogger(__name__)


@dataclass
class ClientContext:
    """The wired-up client core."""
    config: ClientConfiguration
    auth_state: AuthStatePersistence
    credential_store: ICredentialStore
    identity_provider: IIdentityProvider
    session_manager: SessionManager
    response_cache: ResponseCache
    tour_cache: TourPrefetchCache
    dispatcher: RequestDispatcher
    api: TourApiClient
    preview_content: PreviewContentClient

    @classmethod
    def from_config(
        cls,
        config: Optional[ClientConfiguration] = None,
        credential_store: Optional[ICredentialStore] = None,
        identity_provider: Optional[IIdentityProvider] = None
    ) -> "ClientContext":
        """
        Construct the client core.

        Args:
            config: Configuration (loaded from the default file if None)
            credential_store: Replacement credential store, e.g. for tests
            identity_provider: Replacement identity provider, e.g. for tests

        Raises:
            ConfigurationError: Identity settings are missing and no provider was given
        """
        config = config or ClientConfiguration()
        storage_dir = config.get_storage_directory()

        if identity_provider is None:
            identity = config.require_identity_settings()
            identity_provider = CognitoIdentityProvider(
                region=identity['region'],
                client_id=identity['client_id'],
                user_pool_id=identity['user_pool_id'] or None,
                timeout=config.get_api_timeout()
            )

        auth_state = AuthStatePersistence(storage_dir)
        if credential_store is None:
            credential_store = SecureCredentialStore(
                service_name=config.get_storage_service_name(),
                storage_dir=storage_dir,
                auth_state=auth_state
            )

        session_manager = SessionManager(
            credential_store,
            identity_provider,
            auth_state=auth_state,
            refresh_buffer_seconds=config.get_refresh_buffer_seconds(),
            auto_refresh=config.is_auto_refresh_enabled()
        )
        response_cache = ResponseCache(
            ttl_seconds=config.get_cache_ttl_seconds(),
            max_distance_meters=config.get_cache_max_distance_meters()
        )
        tour_cache = TourPrefetchCache(max_size=config.get_tour_cache_size())
        dispatcher = RequestDispatcher(
            session_manager,
            response_cache,
            base_url=config.get_api_base_url(),
            timeout=config.get_api_timeout()
        )

        context = cls(
            config=config,
            auth_state=auth_state,
            credential_store=credential_store,
            identity_provider=identity_provider,
            session_manager=session_manager,
            response_cache=response_cache,
            tour_cache=tour_cache,
            dispatcher=dispatcher,
            api=TourApiClient(dispatcher, tour_cache),
            preview_content=PreviewContentClient(dispatcher, config.get_preview_content_url()),
        )
        session_manager.add_auth_callback(context._on_auth_change)

        logger.info("Client context initialized")
        return context

    def _on_auth_change(self, is_authenticated: bool) -> None:
        # Cached data belongs to the previous user
        if not is_authenticated:
            self.response_cache.invalidate()
            self.tour_cache.clear()

    async def close(self) -> None:
        """Stop background work and release network sessions."""
        await self.session_manager.shutdown()
        self.tour_cache.clear()
        await self.tour_cache.wait_idle()
        await self.dispatcher.close()

        close_provider = getattr(self.identity_provider, 'close', None)
        if close_provider is not None:
            await close_provider()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
