"""Bearer token storage.

The token is kept in the OS keyring under the logged-in username. The
settings store only holds it when no keyring backend is available.
"""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING

import keyring

if TYPE_CHECKING:
    from mediasync.client.settings import SettingsStore

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "mediasync"


class TokenProvider:
    """Supplies the opaque bearer token to the engine."""

    def __init__(self, settings: SettingsStore) -> None:
        """Initialize with the settings store used as fallback."""
        self._settings = settings

    @property
    def username(self) -> str | None:
        """Last logged-in user."""
        return self._settings.get("username") or None

    def get_token(self) -> str | None:
        """Get the current token, keyring first.

        Returns:
            The token, or None when not logged in.
        """
        username = self.username
        if username:
            cached = None
            with contextlib.suppress(Exception):
                cached = keyring.get_password(KEYRING_SERVICE, username)
            if cached:
                return str(cached)
        return self._settings.get("auth_token") or None

    def store_token(self, username: str, token: str) -> None:
        """Remember a token after login.

        The token goes to the keyring. It is written to the settings store
        only when the keyring is unavailable; otherwise any stale copy
        there is cleared.
        """
        in_keyring = False
        with contextlib.suppress(Exception):
            keyring.set_password(KEYRING_SERVICE, username, token)
            in_keyring = True
        self._settings.set("username", username)
        self._settings.set("auth_token", None if in_keyring else token)
        where = "keyring" if in_keyring else "settings"
        logger.debug(f"Stored token for {username} in {where}")

    def clear(self) -> None:
        """Forget the token."""
        username = self.username
        if username:
            with contextlib.suppress(Exception):
                keyring.delete_password(KEYRING_SERVICE, username)
        self._settings.set("auth_token", None)
