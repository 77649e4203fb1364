"""Maintenance commands registered on the Flask CLI."""
from __future__ import annotations

from typing import Optional

import click

from .ceremony import get_services
from .config import app
from .storage import DuplicateUser


@app.cli.command("init-db")
def init_db_command() -> None:
    """Create the database schema if it does not exist."""

    services = get_services()
    services.database.initialize()
    click.echo(f"Initialized database at {services.database.path}")


@app.cli.command("create-user")
@click.argument("username")
@click.option("--name", default=None, help="Display name shown by authenticators.")
def create_user_command(username: str, name: Optional[str]) -> None:
    services = get_services()
    try:
        user = services.users.create(username, name)
    except DuplicateUser as exc:
        raise click.ClickException(f"User {username!r} already exists") from exc
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created user {user.username} (id {user.id})")


@app.cli.command("list-credentials")
@click.argument("username")
def list_credentials_command(username: str) -> None:
    services = get_services()
    user = services.users.get_by_username(username)
    if user is None:
        raise click.ClickException(f"User {username!r} not found")

    credentials = services.credentials.list_for_user(user.id)
    if not credentials:
        click.echo(f"No passkeys registered for {user.username}")
        return
    for credential in credentials:
        created = credential.created_at.isoformat() if credential.created_at else "-"
        transports = ",".join(credential.transports) or "-"
        click.echo(
            f"{credential.id}\t{credential.credential_id_b64}\tcounter={credential.counter}"
            f"\ttransports={transports}\tcreated={created}"
        )


@app.cli.command("purge-challenges")
def purge_challenges_command() -> None:
    """Drop expired ceremony challenges."""

    removed = get_services().challenges.purge_expired()
    click.echo(f"Purged {removed} expired challenge(s)")
