"""Tests for the settings store and token storage."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from mediasync.client import credentials
from mediasync.client.credentials import KEYRING_SERVICE, TokenProvider
from mediasync.client.settings import JsonSettingsStore


class TestJsonSettingsStore:
    """Tests for JsonSettingsStore."""

    def test_persists_values(self, tmp_path: Path):
        """Should write values to disk and read them back."""
        path = tmp_path / "settings.json"
        store = JsonSettingsStore(path)
        store.set("folders", ["/media/photos"])
        store.set("max_retries", 5)

        reloaded = JsonSettingsStore(path)

        assert reloaded.get("folders") == ["/media/photos"]
        assert reloaded.get("max_retries") == 5
        assert json.loads(path.read_text())["max_retries"] == 5

    def test_missing_key_default(self):
        """Should return the default for unset keys."""
        store = JsonSettingsStore()

        assert store.get("server_url") is None
        assert store.get("server_url", "http://x") == "http://x"

    def test_notifies_subscribers(self):
        """Should call listeners with key and new value."""
        store = JsonSettingsStore()
        changes: list[tuple[str, object]] = []
        store.subscribe(lambda key, value: changes.append((key, value)))

        store.set("max_retries", 2)
        store.remove("max_retries")

        assert changes == [("max_retries", 2), ("max_retries", None)]

    def test_unchanged_value_not_notified(self):
        """Should skip writes that change nothing."""
        store = JsonSettingsStore()
        store.set("sync_interval", 60)
        changes: list[str] = []
        store.subscribe(lambda key, value: changes.append(key))

        store.set("sync_interval", 60)

        assert changes == []

    def test_unsubscribe(self):
        """Should stop notifying after unsubscribe."""
        store = JsonSettingsStore()
        changes: list[str] = []
        unsubscribe = store.subscribe(lambda key, value: changes.append(key))

        unsubscribe()
        store.set("max_retries", 1)

        assert changes == []

    def test_failing_listener_does_not_block_others(self):
        """Should keep notifying after a listener raises."""
        store = JsonSettingsStore()
        changes: list[str] = []

        def broken(key, value):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(lambda key, value: changes.append(key))

        store.set("max_retries", 1)

        assert changes == ["max_retries"]

    def test_corrupt_file_ignored(self, tmp_path: Path):
        """Should start empty when the file is not valid JSON."""
        path = tmp_path / "settings.json"
        path.write_text("{not json")

        store = JsonSettingsStore(path)

        assert store.as_dict() == {}

    def test_non_object_file_ignored(self, tmp_path: Path):
        """Should start empty when the file holds something other than an object."""
        path = tmp_path / "settings.json"
        path.write_text("[1, 2]")

        assert JsonSettingsStore(path).as_dict() == {}


class FakeKeyring:
    """In-memory keyring."""

    def __init__(self, broken: bool = False) -> None:
        self.passwords: dict[tuple[str, str], str] = {}
        self.broken = broken

    def _check(self) -> None:
        if self.broken:
            raise RuntimeError("No keyring backend")

    def get_password(self, service: str, username: str) -> str | None:
        self._check()
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self._check()
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        self._check()
        self.passwords.pop((service, username), None)


def install_keyring(monkeypatch: pytest.MonkeyPatch, fake: FakeKeyring) -> None:
    monkeypatch.setattr(credentials.keyring, "get_password", fake.get_password)
    monkeypatch.setattr(credentials.keyring, "set_password", fake.set_password)
    monkeypatch.setattr(credentials.keyring, "delete_password", fake.delete_password)


class TestTokenProvider:
    """Tests for TokenProvider."""

    def test_store_and_get(self, monkeypatch):
        """Should keep the token in the keyring only."""
        fake = FakeKeyring()
        install_keyring(monkeypatch, fake)
        store = JsonSettingsStore()
        provider = TokenProvider(store)

        provider.store_token("alice", "tok")

        assert provider.get_token() == "tok"
        assert provider.username == "alice"
        assert fake.passwords[(KEYRING_SERVICE, "alice")] == "tok"
        assert store.get("auth_token") is None

    def test_keyring_preferred(self, monkeypatch):
        """Should return the keyring token over the settings copy."""
        fake = FakeKeyring()
        fake.passwords[(KEYRING_SERVICE, "alice")] = "from-keyring"
        install_keyring(monkeypatch, fake)
        store = JsonSettingsStore()
        store.set("username", "alice")
        store.set("auth_token", "from-settings")

        assert TokenProvider(store).get_token() == "from-keyring"

    def test_falls_back_without_keyring(self, monkeypatch):
        """Should work from settings when the keyring is unavailable."""
        install_keyring(monkeypatch, FakeKeyring(broken=True))
        store = JsonSettingsStore()
        provider = TokenProvider(store)

        provider.store_token("alice", "tok")

        assert provider.get_token() == "tok"
        assert store.get("auth_token") == "tok"

    def test_stale_settings_copy_cleared(self, monkeypatch):
        """Should drop a token left in settings once the keyring holds one."""
        install_keyring(monkeypatch, FakeKeyring())
        store = JsonSettingsStore()
        store.set("auth_token", "old")
        provider = TokenProvider(store)

        provider.store_token("alice", "new")

        assert store.get("auth_token") is None
        assert provider.get_token() == "new"

    def test_clear(self, monkeypatch):
        """Should forget the token everywhere."""
        fake = FakeKeyring()
        install_keyring(monkeypatch, fake)
        store = JsonSettingsStore()
        provider = TokenProvider(store)
        provider.store_token("alice", "tok")

        provider.clear()

        assert provider.get_token() is None
        assert fake.passwords == {}

    def test_not_logged_in(self, monkeypatch):
        """Should return None without a token."""
        install_keyring(monkeypatch, FakeKeyring())

        assert TokenProvider(JsonSettingsStore()).get_token() is None
