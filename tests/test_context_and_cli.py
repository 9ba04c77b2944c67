"""
Tests for the client context wiring and the command-line entry point.
"""

from unittest.mock import patch

import pytest

from conftest import InMemoryCredentialStore, ScriptedIdentityProvider, make_jwt, make_provider_session, FakeClock
from tourclient import main as cli
from tourclient.config import ClientConfiguration
from tourclient.context import ClientContext
from tourshared.exceptions import ConfigurationError
from tourshared.models import SessionState


@pytest.fixture
def config(tmp_path):
    config = ClientConfiguration(str(tmp_path / "client.conf"), load_environment=False)
    config.set_override('storage.directory', str(tmp_path))
    return config


class TestClientContext:
    """Test construction and shutdown of the client core."""

    @pytest.mark.asyncio
    async def test_sign_out_drops_cached_data(self, config):
        provider = ScriptedIdentityProvider()
        provider.sign_in_result = make_provider_session(
            FakeClock(), id_token=make_jwt({'cognito:username': 'alice'}), refresh_token="refresh-1"
        )

        async with ClientContext.from_config(config, InMemoryCredentialStore(), provider) as context:
            await context.session_manager.sign_in("alice", "secret")
            assert context.session_manager.timer.is_pending

            context.response_cache.store(("places:history", 500), "a", 47.6, -122.3, {'places': []})
            context.tour_cache.set("p1", "history", {'tour': {}})

            await context.session_manager.sign_out()

            assert context.response_cache.stats()['entries'] == 0
            assert context.tour_cache.stats()['total'] == 0
            assert context.session_manager.state == SessionState.NO_SESSION

        assert not context.session_manager.timer.is_pending

    @pytest.mark.asyncio
    async def test_components_follow_configuration(self, config):
        config.set_override('cache.ttl_seconds', 60)
        config.set_override('cache.tour_cache_size', 10)
        config.set_override('api.base_url', "https://backend.example.com/")

        async with ClientContext.from_config(config, InMemoryCredentialStore(),
                                             ScriptedIdentityProvider()) as context:
            assert context.response_cache.ttl_millis == 60_000
            assert context.tour_cache.max_size == 10
            assert context.dispatcher.base_url == "https://backend.example.com"
            assert context.api.tour_cache is context.tour_cache

    def test_identity_settings_required_without_provider(self, config):
        with pytest.raises(ConfigurationError):
            ClientContext.from_config(config, InMemoryCredentialStore())


class TestCommandLine:
    """Test argument parsing and exit codes."""

    def test_places_accepts_negative_coordinates(self):
        _, args = cli.parse_arguments(["--places", "47.6062", "-122.3321", "--tour-type", "art"])

        assert args.places == [47.6062, -122.3321]
        assert args.tour_type == "art"

    def test_operations_are_exclusive(self):
        with pytest.raises(SystemExit):
            cli.parse_arguments(["--status", "--sign-out"])

    def test_no_operation_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "usage:" in capsys.readouterr().out

    def test_missing_identity_settings_exit_code(self, tmp_path, monkeypatch, capsys):
        for env_var in ClientConfiguration.ENV_MAPPINGS:
            monkeypatch.delenv(env_var, raising=False)

        with patch.object(cli, 'configure_logging'):
            code = cli.main(["--status", "--config", str(tmp_path / "client.conf")])

        assert code == 1
        assert "client id is not configured" in capsys.readouterr().err
