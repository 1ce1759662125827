from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import NoReturn

import click

from auth_client import AuthenticationClient
from console_errors import BridgeError, classify
from proxmox_client import ConsoleTarget, ProxmoxAPIError, ProxmoxClient
from session_store import SessionStore
from vm_console_launcher import MAX_PASSWORD_ATTEMPTS, launch_vm_console, login, resolve_target
from wizard import ConfigStore, ConfigurationError, ProxmuxConfig, run_setup_wizard

__version__ = "0.3.0"

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_CONFIGURATION = 2
EXIT_INTERRUPTED = 130

_log_handler: logging.Handler | None = None


def configure_logging(level: int, log_file: Path) -> None:
    """Send log records to a file; the terminal belongs to the console session.

    Handlers installed by an embedding application are left in place; only a
    file handler from an earlier call is replaced.
    """
    global _log_handler
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    if _log_handler is not None:
        root.removeHandler(_log_handler)
        _log_handler.close()
    root.addHandler(handler)
    root.setLevel(level)
    _log_handler = handler


def prompt_password(username: str, error: str | None) -> str | None:
    if error:
        click.echo(error, err=True)
    return click.prompt(f"Proxmox password for {username}", hide_input=True, default="", show_default=False)


def _store_from_context(ctx: click.Context) -> ConfigStore:
    return ctx.obj["store"]


def _fail(message: str, code: int = EXIT_FAILURE) -> NoReturn:
    click.echo(message, err=True)
    sys.exit(code)


def _require_config(store: ConfigStore) -> ProxmuxConfig:
    try:
        return store.require()
    except ConfigurationError as exc:
        _fail(str(exc), EXIT_CONFIGURATION)


def _api_client(config: ProxmuxConfig) -> ProxmoxClient:
    return ProxmoxClient(config.host, config.user, config.token_id, config.token_secret, tls=config.tls)


@click.group()
@click.version_option(__version__, "-v", "--version", prog_name="proxmux")
@click.option("--debug", is_flag=True, help="Log debug details to the log file.")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Where to write the log (default: ~/.config/proxmux/proxmux.log).",
)
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    envvar="PROXMUX_CONFIG_DIR",
    help="Directory holding config.json and the cached session.",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool, log_file: Path | None, config_dir: Path | None) -> None:
    """proxmux - terminal console access for Proxmox VE guests."""
    store = ConfigStore(config_dir)
    configure_logging(logging.DEBUG if debug else logging.INFO, log_file or store.log_file)
    ctx.ensure_object(dict)
    ctx.obj["store"] = store


def target_options(func):
    func = click.option(
        "--kind",
        type=click.Choice(["vm", "container"]),
        default=None,
        help="Guest type (looked up when omitted).",
    )(func)
    return click.option("--node", default=None, help="Node hosting the guest (looked up when omitted).")(func)


def _resolve(config: ProxmuxConfig, vmid: str, node: str | None, kind: str | None) -> ConsoleTarget:
    if node and kind:
        return ConsoleTarget(kind=kind, node=node, vmid=vmid)
    client = _api_client(config)
    try:
        return resolve_target(client, vmid, node=node, kind=kind)
    except ProxmoxAPIError as exc:
        _fail(classify(exc).message)
    finally:
        client.close()


@cli.command()
@click.argument("vmid")
@target_options
@click.pass_context
def console(ctx: click.Context, vmid: str, node: str | None, kind: str | None) -> None:
    """Open an interactive console for VMID. Press Ctrl+\\ to detach."""
    store = _store_from_context(ctx)
    config = _require_config(store)
    target = _resolve(config, vmid, node, kind)

    try:
        launch_vm_console(
            config,
            target,
            password_prompt=prompt_password,
            store=SessionStore(store.session_file),
            status_callback=lambda message: click.echo(message, err=True),
        )
    except BridgeError as exc:
        logger.info("Console for %s ended with %s", target.display_name, exc.category.value)
        _fail(f"\n{exc.message}")
    except KeyboardInterrupt:
        logger.info("Console for %s interrupted", target.display_name)
        _fail("\nInterrupted.", EXIT_INTERRUPTED)


@cli.command(name="list")
@click.option("--node", default=None, help="Only show guests on this node.")
@click.option("--kind", type=click.Choice(["vm", "container"]), default=None, help="Only show this guest type.")
@click.pass_context
def list_command(ctx: click.Context, node: str | None, kind: str | None) -> None:
    """List VMs and containers in the cluster."""
    config = _require_config(_store_from_context(ctx))
    client = _api_client(config)
    try:
        guests = client.list_guests(node=node, kind=kind)
    except ProxmoxAPIError as exc:
        _fail(classify(exc).message)
    finally:
        client.close()

    if not guests:
        click.echo("No guests found.")
        return
    rows = [("VMID", "TYPE", "NODE", "STATUS", "NAME")]
    for guest in guests:
        kind_label = "template" if guest.get("template") else guest["kind"]
        rows.append(
            (
                str(guest["vmid"]),
                kind_label,
                guest.get("node") or "",
                guest.get("status") or "",
                guest.get("name") or "",
            )
        )
    widths = [max(len(row[column]) for row in rows) for column in range(4)]
    for row in rows:
        cells = [cell.ljust(width) for cell, width in zip(row, widths)]
        click.echo("  ".join([*cells, row[4]]).rstrip())


POWER_MESSAGES = {
    "start": "Starting",
    "stop": "Stopping",
    "shutdown": "Shutting down",
    "reboot": "Rebooting",
}


def _power_action(ctx: click.Context, action: str, vmid: str, node: str | None, kind: str | None) -> None:
    config = _require_config(_store_from_context(ctx))
    target = _resolve(config, vmid, node, kind)
    client = _api_client(config)
    try:
        upid = client.guest_action(target, action)
    except ProxmoxAPIError as exc:
        _fail(classify(exc).message)
    finally:
        client.close()
    click.echo(f"{POWER_MESSAGES[action]} {target.display_name} on {target.node}.")
    if upid:
        click.echo(f"Task: {upid}")


@cli.command()
@click.argument("vmid")
@target_options
@click.pass_context
def start(ctx: click.Context, vmid: str, node: str | None, kind: str | None) -> None:
    """Start the guest VMID."""
    _power_action(ctx, "start", vmid, node, kind)


@cli.command()
@click.argument("vmid")
@target_options
@click.pass_context
def stop(ctx: click.Context, vmid: str, node: str | None, kind: str | None) -> None:
    """Stop the guest VMID immediately."""
    _power_action(ctx, "stop", vmid, node, kind)


@cli.command()
@click.argument("vmid")
@target_options
@click.pass_context
def shutdown(ctx: click.Context, vmid: str, node: str | None, kind: str | None) -> None:
    """Ask the guest VMID to shut down cleanly."""
    _power_action(ctx, "shutdown", vmid, node, kind)


@cli.command()
@click.argument("vmid")
@target_options
@click.pass_context
def reboot(ctx: click.Context, vmid: str, node: str | None, kind: str | None) -> None:
    """Reboot the guest VMID."""
    _power_action(ctx, "reboot", vmid, node, kind)



@cli.command(name="login")
@click.pass_context
def login_command(ctx: click.Context) -> None:
    """Log in with your password and cache a console session."""
    store = _store_from_context(ctx)
    config = _require_config(store)
    auth = AuthenticationClient(config.host, SessionStore(store.session_file), tls=config.tls)
    try:
        session = login(auth, config.user, prompt_password, max_attempts=MAX_PASSWORD_ATTEMPTS)
    except BridgeError as exc:
        _fail(exc.message)
    except ProxmoxAPIError as exc:
        _fail(classify(exc).message)
    finally:
        auth.close()
    click.echo(f"Logged in as {session.username}. The session is cached for about 100 minutes.")


@cli.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Forget the cached console session."""
    store = _store_from_context(ctx)
    SessionStore(store.session_file).clear()
    click.echo("Cached console session removed.")


@cli.command(name="config")
@click.pass_context
def config_command(ctx: click.Context) -> None:
    """Configure the Proxmox connection interactively."""
    store = _store_from_context(ctx)
    try:
        run_setup_wizard(store)
    except ValueError as exc:
        _fail(str(exc), EXIT_CONFIGURATION)


if __name__ == "__main__":
    cli()
