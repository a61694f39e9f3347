"""Tests for CLI commands - login, logout, folders, config, sync."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from click.testing import CliRunner

from mediasync.client import credentials
from mediasync.client.cli import cli

SERVER = "http://test"


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_dir(tmp_path: Path) -> Iterator[Path]:
    """Point the CLI at a temporary config directory."""
    config = tmp_path / ".mediasync"
    config.mkdir()
    with patch("mediasync.client.cli.config.get_config_dir", return_value=config):
        yield config


@pytest.fixture(autouse=True)
def passwords(monkeypatch: pytest.MonkeyPatch) -> dict[tuple[str, str], str]:
    """Keep tests away from the real OS keyring."""
    stored: dict[tuple[str, str], str] = {}

    def set_password(service: str, user: str, password: str) -> None:
        stored[(service, user)] = password

    def delete_password(service: str, user: str) -> None:
        stored.pop((service, user), None)

    monkeypatch.setattr(
        credentials.keyring, "get_password", lambda service, user: stored.get((service, user))
    )
    monkeypatch.setattr(credentials.keyring, "set_password", set_password)
    monkeypatch.setattr(credentials.keyring, "delete_password", delete_password)
    return stored


def read_config(config_dir: Path) -> dict:
    return json.loads((config_dir / "config.json").read_text())


def write_config(config_dir: Path, **values: object) -> None:
    (config_dir / "config.json").write_text(json.dumps(values))


@pytest.fixture
def media_folder(tmp_path: Path) -> Path:
    """Folder holding one photo."""
    folder = tmp_path.resolve() / "photos"
    folder.mkdir()
    (folder / "a.jpg").write_bytes(b"JPEG")
    return folder


class TestCliGroup:
    """Tests for the command group."""

    def test_help_lists_commands(self, runner: CliRunner) -> None:
        """Should list every command."""
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("login", "logout", "folders", "config", "sync"):
            assert command in result.output


class TestConfigCommand:
    """Tests for 'mediasync config'."""

    def test_show_defaults(self, runner: CliRunner, config_dir: Path) -> None:
        """Should print defaults when nothing is configured."""
        result = runner.invoke(cli, ["config", "show"])
        assert result.exit_code == 0
        assert "server_url: http://localhost:3000" in result.output
        assert "max_retries: 3" in result.output
        assert "username: -" in result.output

    def test_set_number(self, runner: CliRunner, config_dir: Path) -> None:
        """Should store numbers as numbers."""
        result = runner.invoke(cli, ["config", "set", "max_retries", "5"])
        assert result.exit_code == 0
        assert read_config(config_dir)["max_retries"] == 5

    def test_set_list(self, runner: CliRunner, config_dir: Path) -> None:
        """Should split comma-separated lists."""
        result = runner.invoke(cli, ["config", "set", "media_extensions", ".jpg,.png"])
        assert result.exit_code == 0
        assert read_config(config_dir)["media_extensions"] == [".jpg", ".png"]

    def test_set_single_extension(self, runner: CliRunner, config_dir: Path) -> None:
        """Should store a single extension as a list."""
        result = runner.invoke(cli, ["config", "set", "media_extensions", ".raw"])
        assert result.exit_code == 0
        assert read_config(config_dir)["media_extensions"] == [".raw"]

    def test_set_boolean(self, runner: CliRunner, config_dir: Path) -> None:
        """Should store JSON booleans."""
        result = runner.invoke(cli, ["config", "set", "propagate_deletions", "true"])
        assert result.exit_code == 0
        assert read_config(config_dir)["propagate_deletions"] is True

    def test_set_non_boolean_flag(self, runner: CliRunner, config_dir: Path) -> None:
        """Should refuse words other than true and false for flags."""
        result = runner.invoke(cli, ["config", "set", "sync_directories", "no"])
        assert result.exit_code == 1
        assert "true or false" in result.output
        assert not (config_dir / "config.json").exists()

    def test_set_unknown_key(self, runner: CliRunner, config_dir: Path) -> None:
        """Should refuse keys that are not settable."""
        result = runner.invoke(cli, ["config", "set", "auth_token", "x"])
        assert result.exit_code == 1
        assert "Unknown setting" in result.output

    def test_set_invalid_value(self, runner: CliRunner, config_dir: Path) -> None:
        """Should refuse values that fail validation."""
        result = runner.invoke(cli, ["config", "set", "server_url", "nonsense"])
        assert result.exit_code == 1
        assert "Error" in result.output
        assert not (config_dir / "config.json").exists()


class TestFoldersCommand:
    """Tests for 'mediasync folders'."""

    def test_add_and_list(self, runner: CliRunner, config_dir: Path, media_folder: Path) -> None:
        """Should persist added folders."""
        result = runner.invoke(cli, ["folders", "add", str(media_folder)])
        assert result.exit_code == 0
        assert read_config(config_dir)["folders"] == [str(media_folder)]

        result = runner.invoke(cli, ["folders", "list"])
        assert str(media_folder) in result.output

    def test_add_missing_directory(self, runner: CliRunner, config_dir: Path, tmp_path: Path) -> None:
        """Should fail for a directory that does not exist."""
        result = runner.invoke(cli, ["folders", "add", str(tmp_path / "nope")])
        assert result.exit_code == 1
        assert "Not a directory" in result.output

    def test_add_nested_folder(self, runner: CliRunner, config_dir: Path, media_folder: Path) -> None:
        """Should not add a folder already covered by another."""
        (media_folder / "trip").mkdir()
        runner.invoke(cli, ["folders", "add", str(media_folder)])

        result = runner.invoke(cli, ["folders", "add", str(media_folder / "trip")])

        assert "Already synchronized" in result.output
        assert read_config(config_dir)["folders"] == [str(media_folder)]

    def test_add_parent_replaces_children(
        self, runner: CliRunner, config_dir: Path, media_folder: Path
    ) -> None:
        """Should replace folders nested in the one being added."""
        (media_folder / "trip").mkdir()
        runner.invoke(cli, ["folders", "add", str(media_folder / "trip")])

        result = runner.invoke(cli, ["folders", "add", str(media_folder)])

        assert "replaces" in result.output
        assert read_config(config_dir)["folders"] == [str(media_folder)]

    def test_remove(self, runner: CliRunner, config_dir: Path, media_folder: Path) -> None:
        """Should forget a folder."""
        runner.invoke(cli, ["folders", "add", str(media_folder)])

        result = runner.invoke(cli, ["folders", "remove", str(media_folder)])

        assert result.exit_code == 0
        assert read_config(config_dir)["folders"] == []

    def test_remove_unknown(self, runner: CliRunner, config_dir: Path, media_folder: Path) -> None:
        """Should report folders that were never added."""
        result = runner.invoke(cli, ["folders", "remove", str(media_folder)])
        assert "Not synchronized" in result.output

    def test_list_marks_missing(self, runner: CliRunner, config_dir: Path, tmp_path: Path) -> None:
        """Should flag folders that no longer exist."""
        write_config(config_dir, folders=[str(tmp_path / "gone")])

        result = runner.invoke(cli, ["folders", "list"])

        assert "(missing)" in result.output

    def test_list_empty(self, runner: CliRunner, config_dir: Path) -> None:
        """Should explain how to add a folder."""
        result = runner.invoke(cli, ["folders", "list"])
        assert "No folders" in result.output


class TestLoginCommand:
    """Tests for 'mediasync login' and 'mediasync logout'."""

    def test_login_stores_token(
        self, runner: CliRunner, config_dir: Path, passwords: dict, httpx_mock
    ) -> None:
        """Should store the server URL and keep the token in the keyring."""
        httpx_mock.add_response(
            url=f"{SERVER}/api/v1/auth/login",
            json={"success": True, "data": {"accessToken": "tok"}},
        )

        result = runner.invoke(
            cli, ["login", "--server", SERVER, "--username", "alice"], input="secret\n"
        )

        assert result.exit_code == 0
        assert "Logged in as alice" in result.output
        stored = read_config(config_dir)
        assert stored["server_url"] == SERVER
        assert stored["auth_token"] is None
        assert passwords[(credentials.KEYRING_SERVICE, "alice")] == "tok"
        assert stored["username"] == "alice"

    def test_login_rejected(self, runner: CliRunner, config_dir: Path, httpx_mock) -> None:
        """Should fail without storing anything."""
        httpx_mock.add_response(status_code=401, json={"message": "Bad credentials"})

        result = runner.invoke(
            cli, ["login", "--server", SERVER, "--username", "alice"], input="wrong\n"
        )

        assert result.exit_code == 1
        assert "Login failed" in result.output
        assert not (config_dir / "config.json").exists()

    def test_login_unreachable(self, runner: CliRunner, config_dir: Path, httpx_mock) -> None:
        """Should report connection failures."""
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))

        result = runner.invoke(
            cli, ["login", "--server", SERVER, "--username", "alice"], input="secret\n"
        )

        assert result.exit_code == 1
        assert "Cannot reach" in result.output

    def test_logout(self, runner: CliRunner, config_dir: Path) -> None:
        """Should forget the stored token."""
        write_config(config_dir, username="alice", auth_token="tok")

        result = runner.invoke(cli, ["logout"])

        assert result.exit_code == 0
        assert "Logged out" in result.output
        assert read_config(config_dir)["auth_token"] is None

    def test_logout_clears_keyring(self, runner: CliRunner, config_dir: Path, passwords: dict) -> None:
        """Should delete the token held in the keyring."""
        write_config(config_dir, username="alice")
        passwords[(credentials.KEYRING_SERVICE, "alice")] = "tok"

        result = runner.invoke(cli, ["logout"])

        assert "Logged out" in result.output
        assert passwords == {}

    def test_logout_when_logged_out(self, runner: CliRunner, config_dir: Path) -> None:
        """Should say so when there is nothing to forget."""
        result = runner.invoke(cli, ["logout"])
        assert "Not logged in" in result.output


class TestSyncCommand:
    """Tests for 'mediasync sync'."""

    def test_requires_folders(self, runner: CliRunner, config_dir: Path) -> None:
        """Should fail when no folder is configured."""
        write_config(config_dir, auth_token="tok")

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 1
        assert "No folders configured" in result.output

    def test_requires_login(self, runner: CliRunner, config_dir: Path, media_folder: Path) -> None:
        """Should fail when not logged in."""
        write_config(config_dir, folders=[str(media_folder)])

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 1
        assert "Not logged in" in result.output

    def test_uploads_files(
        self, runner: CliRunner, config_dir: Path, media_folder: Path, httpx_mock
    ) -> None:
        """Should upload every file and print a summary."""
        write_config(
            config_dir,
            server_url=SERVER,
            auth_token="tok",
            folders=[str(media_folder)],
            sync_directories=False,
        )
        httpx_mock.add_response(
            url=f"{SERVER}/api/v1/media/upload",
            method="POST",
            json={"success": True},
        )

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0, result.output
        assert "✓ photos/a.jpg" in result.output
        assert "Sync complete: 1 transferred" in result.output
        assert httpx_mock.get_request().headers["Authorization"] == "Bearer tok"
