"""Login commands for the mediasync CLI.

Commands:
- login: Obtain a bearer token from the server
- logout: Forget the stored token
"""

from __future__ import annotations

import sys

import click

from mediasync.client.cli.config import open_settings


@click.command()
@click.option(
    "--server",
    default=None,
    help="Server URL (e.g., http://localhost:3000). Defaults to the configured one.",
)
@click.option("--username", prompt=True, help="Account name.")
def login(server: str | None, username: str) -> None:
    """Log in to the media server and store the token."""
    from mediasync.client.api import TransportClient
    from mediasync.client.credentials import TokenProvider
    from mediasync.core.config import ServerConfig, SyncConfig
    from mediasync.core.errors import AuthenticationError, SyncError, ValidationError

    store = open_settings()
    try:
        current = SyncConfig.from_settings(store)
        server_config = ServerConfig(
            server_url=server or current.server_url,
            timeout=current.network_timeout,
        )
    except ValidationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    password = click.prompt("Password", hide_input=True)

    try:
        with TransportClient(server_config) as client:
            result = client.login(username, password)
    except AuthenticationError as e:
        click.echo(f"Error: Login failed: {e}", err=True)
        sys.exit(1)
    except SyncError as e:
        click.echo(f"Error: Cannot reach {server_config.server_url}: {e}", err=True)
        sys.exit(1)

    store.set("server_url", server_config.server_url)
    TokenProvider(store).store_token(result.username, result.token)
    click.echo(f"Logged in as {result.username} on {server_config.server_url}")


@click.command()
def logout() -> None:
    """Forget the stored token."""
    from mediasync.client.credentials import TokenProvider

    provider = TokenProvider(open_settings())
    if provider.get_token() is None:
        click.echo("Not logged in.")
        return
    provider.clear()
    click.echo("Logged out.")
