"""Thin CLI wrapper over :class:`lmbridge.Client`."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Coroutine
from datetime import datetime
from typing import Any, TypeVar

import typer

from lmbridge.client import Client, load_or_create_installation_key
from lmbridge.dashboard import extract_power_from_dashboard, format_power
from lmbridge.exceptions import LaMarzoccoError

app = typer.Typer(help="Control La Marzocco espresso machines.", invoke_without_command=True)

_T = TypeVar("_T")


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Control La Marzocco espresso machines."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY, compact otherwise."""
    if sys.stdout.isatty():
        try:
            from rich.console import Console
            from rich.syntax import Syntax

            Console().print(Syntax(json.dumps(obj, indent=2), "json"))
        except ImportError:
            typer.echo(json.dumps(obj, indent=2))
    else:
        typer.echo(json.dumps(obj))


def _ensure_client() -> Client:
    """Load saved credentials or exit with an error."""
    try:
        return Client.from_saved()
    except FileNotFoundError:
        typer.echo("No saved credentials. Run `lmbridge login` first.", err=True)
        raise typer.Exit(1) from None
    except LaMarzoccoError as e:
        typer.echo(f"Invalid saved configuration: {e}", err=True)
        raise typer.Exit(1) from None


def _run(coro: Coroutine[Any, Any, _T]) -> _T:
    """Run *coro*, turning library errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except LaMarzoccoError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


def _parse_power(state: str) -> bool:
    """Map ``on``/``off`` (any case) to a power flag or exit with an error."""
    normalized = state.lower()
    if normalized not in ("on", "off"):
        typer.echo(f"Invalid power state '{state}'. Expected: on | off", err=True)
        raise typer.Exit(1)
    return normalized == "on"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def login(
    username: str = typer.Option(..., prompt=True, help="La Marzocco account email"),
    password: str = typer.Option(
        ..., prompt=True, hide_input=True, help="La Marzocco account password"
    ),
    serial: str = typer.Option(..., prompt=True, help="Machine serial number"),
) -> None:
    """Save credentials, register this installation if new, and sign in."""
    try:
        key, created = load_or_create_installation_key()
    except LaMarzoccoError as e:
        typer.echo(f"Invalid saved installation key: {e}", err=True)
        raise typer.Exit(1) from None

    client = Client(username, password, key, serial=serial)
    client.save_credentials()
    typer.echo(f"Logging in as {username}...")
    _run(_login_async(client, register=created))
    typer.echo(f"Logged in. Machine: {serial} (installation {client.installation_id})")


async def _login_async(client: Client, *, register: bool) -> None:
    """Async implementation of the login command."""
    if register:
        typer.echo("Registering new installation key...")
        try:
            await client.register_client()
        except LaMarzoccoError:
            typer.echo("Registration failed. Run `lmbridge register` to retry.", err=True)
            raise
    await client.sign_in()


@app.command()
def register() -> None:
    """Register the saved installation key with the account again."""
    client = _ensure_client()
    typer.echo(f"Registering installation {client.installation_id}...")
    _run(client.register_client())
    typer.echo("Installation key registration complete.")


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show whether the machine is on."""
    client = _ensure_client()
    dashboard = _run(client.get_dashboard())
    power = extract_power_from_dashboard(dashboard)
    if as_json:
        _print_json({"serial": client.serial, "power": power})
        return
    label = format_power(power)
    if sys.stdout.isatty():
        typer.echo(f"{typer.style(client.serial, bold=True)} Power: {label}")
    else:
        typer.echo(f"{client.serial} Power: {label}")


@app.command()
def dashboard() -> None:
    """Dump the raw dashboard returned by the cloud."""
    client = _ensure_client()
    _print_json(_run(client.get_dashboard()))


@app.command()
def power(state: str = typer.Argument(..., help="on | off")) -> None:
    """Switch the machine on (brewing mode) or off (standby)."""
    enabled = _parse_power(state)
    client = _ensure_client()
    typer.echo(f"Turning {client.serial} {state.lower()}...")
    _run(client.set_power(client.serial, enabled))
    typer.echo(f"Command accepted for {client.serial}.")


@app.command()
def watch(
    interval: float = typer.Option(30, "--interval", "-i", min=0, help="Seconds between polls"),
    count: int = typer.Option(0, "--count", "-n", min=0, help="Stop after N polls (0 = forever)"),
    power_state: str | None = typer.Option(
        None, "--power", "-p", help="Switch the machine on | off before polling"
    ),
) -> None:
    """Poll the machine and print power changes.

    \b
    Failed polls are reported and the last known state is kept.
    With --power, the state is recorded once the command is accepted.
    Press Ctrl+C to stop.
    """
    enabled = _parse_power(power_state) if power_state is not None else None
    client = _ensure_client()
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_watch_async(client, interval, count, enabled))


async def _watch_async(
    client: Client, interval: float, count: int, enabled: bool | None = None
) -> None:
    """Async implementation of the watch command."""
    is_tty = sys.stdout.isatty()

    last_known: bool | None = None
    if enabled is not None:
        try:
            await client.set_power(client.serial, enabled)
        except LaMarzoccoError as e:
            typer.echo(f"[{_timestamp()}] Failed to set power: {e}", err=True)
        else:
            last_known = enabled
            typer.echo(
                f"[{_timestamp()}] {client.serial} Power: {format_power(enabled)} (command accepted)"
            )

    typer.echo(f"Watching {client.serial} every {interval:g}s... (Ctrl+C to stop)")
    polls = 0
    while True:
        try:
            power = extract_power_from_dashboard(await client.get_dashboard())
        except LaMarzoccoError as e:
            typer.echo(f"[{_timestamp()}] Failed to fetch dashboard: {e}", err=True)
        else:
            if power is None:
                typer.echo(
                    f"[{_timestamp()}] Unable to determine machine power, "
                    f"keeping {format_power(last_known)}.",
                    err=True,
                )
            elif power != last_known:
                last_known = power
                label = format_power(power)
                if is_tty:
                    typer.echo(
                        f"[{_timestamp()}] {typer.style(client.serial, bold=True)} "
                        f"Power: {typer.style(label, fg='cyan')}"
                    )
                else:
                    typer.echo(f"[{_timestamp()}] {client.serial} Power: {label}")

        polls += 1
        if count and polls >= count:
            return
        await asyncio.sleep(interval)
