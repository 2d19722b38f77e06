"""Tests for the token cache file and GraphAuth cache persistence."""

import stat
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests
from cryptography.fernet import Fernet

from mailfilter.auth import GraphAuth, TokenCacheStore
from mailfilter.core.errors import AuthenticationError


@pytest.fixture
def cache_path(data_dir: Path) -> Path:
    return data_dir / "token_cache.json"


class TestTokenCacheStore:
    """Encrypted and plaintext cache files."""

    def test_absent_file_loads_none(self, cache_path: Path):
        assert TokenCacheStore(cache_path).load() is None

    def test_plaintext_round_trip(self, cache_path: Path):
        store = TokenCacheStore(cache_path)
        store.save('{"AccessToken": {}}')

        assert not store.encrypted
        assert store.load() == '{"AccessToken": {}}'

    def test_encrypted_at_rest(self, cache_path: Path):
        store = TokenCacheStore(cache_path, encryption_key=Fernet.generate_key().decode())
        store.save('{"RefreshToken": {"secret": 1}}')

        assert store.encrypted
        assert b"RefreshToken" not in cache_path.read_bytes()
        assert store.load() == '{"RefreshToken": {"secret": 1}}'

    def test_wrong_key_treated_as_absent(self, cache_path: Path):
        TokenCacheStore(cache_path, encryption_key=Fernet.generate_key().decode()).save("{}")
        other = TokenCacheStore(cache_path, encryption_key=Fernet.generate_key().decode())
        assert other.load() is None

    def test_file_is_owner_only(self, cache_path: Path):
        TokenCacheStore(cache_path).save("{}")
        assert stat.S_IMODE(cache_path.stat().st_mode) == 0o600

    def test_from_env(self, cache_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TEST_CACHE_KEY", Fernet.generate_key().decode())
        assert TokenCacheStore.from_env(cache_path, "TEST_CACHE_KEY").encrypted

        monkeypatch.delenv("TEST_CACHE_KEY")
        assert not TokenCacheStore.from_env(cache_path, "TEST_CACHE_KEY").encrypted

    def test_delete(self, cache_path: Path):
        store = TokenCacheStore(cache_path)
        store.save("{}")
        store.delete()
        store.delete()
        assert not cache_path.exists()


class TestGraphAuth:
    """Silent token acquisition and refresh persistence."""

    @pytest.fixture
    def auth(self, cache_path: Path, monkeypatch: pytest.MonkeyPatch) -> GraphAuth:
        # Constructing the real MSAL app would run authority discovery over the network
        monkeypatch.setattr("mailfilter.auth.msal_auth.msal.PublicClientApplication", MagicMock())
        return GraphAuth(
            client_id="test-client-id",
            tenant_id="test-tenant-id",
            scopes=["Mail.ReadWrite"],
            cache_store=TokenCacheStore(cache_path),
        )

    def test_empty_client_id_rejected(self, cache_path: Path):
        with pytest.raises(ValueError, match="client_id"):
            GraphAuth("", "common", [], TokenCacheStore(cache_path))

    def test_no_account_not_authenticated(self, auth: GraphAuth):
        auth.app.get_accounts.return_value = []

        assert not auth.is_authenticated()
        with pytest.raises(AuthenticationError, match="mailfilter login"):
            auth.get_access_token()

    def test_refresh_persisted_then_notified(self, auth: GraphAuth, cache_path: Path):
        notified = MagicMock()
        auth.on_cache_persisted = notified
        auth.app.get_accounts.return_value = [{"username": "me@example.com"}]
        auth.app.acquire_token_silent.return_value = {"access_token": "fresh"}
        auth.cache.has_state_changed = True

        assert auth.get_access_token() == "fresh"

        assert cache_path.exists()
        notified.assert_called_once()
        assert not auth.cache.has_state_changed

    def test_unchanged_cache_not_written(self, auth: GraphAuth, cache_path: Path):
        auth.app.get_accounts.return_value = [{"username": "me@example.com"}]
        auth.app.acquire_token_silent.return_value = {"access_token": "cached"}
        auth.cache.has_state_changed = False

        auth.get_access_token()

        assert not cache_path.exists()

    def test_rejected_refresh_raises(self, auth: GraphAuth):
        auth.app.get_accounts.return_value = [{"username": "me@example.com"}]
        auth.app.acquire_token_silent.return_value = {
            "error": "invalid_grant",
            "error_description": "AADSTS700082: refresh token expired",
        }
        with pytest.raises(AuthenticationError, match="AADSTS700082"):
            auth.get_access_token()

    def test_logout_removes_accounts_and_file(self, auth: GraphAuth, cache_path: Path):
        auth.cache_store.save("{}")
        auth.app.get_accounts.return_value = [{"username": "me@example.com"}]

        auth.logout()

        auth.app.remove_account.assert_called_once()
        assert not cache_path.exists()


class TestNetworkRetry:
    """Transport errors from MSAL's HTTP layer are retried, then surfaced."""

    @pytest.fixture
    def auth(self, cache_path: Path, monkeypatch: pytest.MonkeyPatch) -> GraphAuth:
        monkeypatch.setattr("mailfilter.auth.msal_auth.msal.PublicClientApplication", MagicMock())
        monkeypatch.setattr("mailfilter.auth.msal_auth.time.sleep", MagicMock())
        auth = GraphAuth(
            "test-client-id", "common", ["Mail.ReadWrite"], TokenCacheStore(cache_path)
        )
        auth.app.get_accounts.return_value = [{"username": "me@example.com"}]
        return auth

    @pytest.fixture
    def auth_logger(self, monkeypatch: pytest.MonkeyPatch) -> MagicMock:
        auth_logger = MagicMock()
        monkeypatch.setattr("mailfilter.auth.msal_auth.logger", auth_logger)
        return auth_logger

    def test_retry_logged_under_one_event(self, auth: GraphAuth, auth_logger: MagicMock):
        auth.app.acquire_token_silent.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            {"access_token": "fresh"},
        ]

        assert auth.get_access_token() == "fresh"

        assert auth_logger.warning.call_args.args == ("msal_retry",)
        assert auth_logger.warning.call_args.kwargs["operation"] == "silent_token"
        assert auth_logger.warning.call_args.kwargs["attempt"] == 1

    def test_exhausted_retries_raise(self, auth: GraphAuth, auth_logger: MagicMock):
        auth.app.acquire_token_silent.side_effect = requests.exceptions.ConnectionError("down")

        with pytest.raises(AuthenticationError, match="login.microsoftonline.com"):
            auth.get_access_token()

        assert auth.app.acquire_token_silent.call_count == 3
        assert [c.args[0] for c in auth_logger.warning.call_args_list] == ["msal_retry"] * 2
        auth_logger.error.assert_called_once_with(
            "msal_retries_exhausted", operation="silent_token", error="down"
        )
