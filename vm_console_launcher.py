from __future__ import annotations

import logging
from typing import Callable

from auth_client import AuthenticationClient
from console_errors import BridgeError, ErrorCategory, classify
from console_session import ConsoleSessionNegotiator
from proxmox_client import (
    AuthenticationRequired,
    ConsoleTarget,
    InvalidCredentials,
    ProxmoxAPIError,
    ProxmoxClient,
)
from session_store import AuthSession, SessionStore
from terminal_bridge import TerminalBridge
from wizard import ProxmuxConfig

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None] | None
PasswordPrompt = Callable[[str, str | None], str | None]
MAX_PASSWORD_ATTEMPTS = 3


def resolve_target(
    client: ProxmoxClient,
    vmid: int | str,
    *,
    node: str | None = None,
    kind: str | None = None,
) -> ConsoleTarget:
    """Build a target, asking the API only for what the caller did not give."""
    if node and kind:
        return ConsoleTarget(kind=kind, node=node, vmid=vmid)
    found = client.find_guest(vmid)
    if kind and kind != found.kind:
        raise ProxmoxAPIError(f"Guest {vmid} is a {found.kind}, not a {kind}.")
    if node and node != found.node:
        raise ProxmoxAPIError(f"Guest {vmid} lives on node {found.node}, not {node}.")
    return found


def login(
    auth: AuthenticationClient,
    username: str,
    password_prompt: PasswordPrompt,
    *,
    max_attempts: int = MAX_PASSWORD_ATTEMPTS,
) -> AuthSession:
    """Prompt for a password until Proxmox issues a ticket or attempts run out."""
    error: str | None = None
    for _ in range(max_attempts):
        password = password_prompt(username, error)
        if not password:
            raise BridgeError.of(ErrorCategory.AUTHENTICATION_FAILED, "Console login cancelled.")
        try:
            return auth.authenticate(username, password)
        except InvalidCredentials as exc:
            logger.info("Password rejected for %s", username)
            error = str(exc)
    raise BridgeError.of(
        ErrorCategory.AUTHENTICATION_FAILED,
        f"Authentication failed after {max_attempts} attempts.",
    )


def launch_vm_console(
    config: ProxmuxConfig,
    target: ConsoleTarget,
    *,
    password_prompt: PasswordPrompt,
    store: SessionStore | None = None,
    status_callback: StatusCallback = None,
    negotiator: ConsoleSessionNegotiator | None = None,
    auth: AuthenticationClient | None = None,
    bridge: TerminalBridge | None = None,
    max_attempts: int = MAX_PASSWORD_ATTEMPTS,
) -> None:
    """Open an interactive console for ``target`` and block until it ends.

    A still-valid cached session is reused without prompting. Every failure
    surfaces as a ``BridgeError``.
    """

    def update_status(message: str) -> None:
        if status_callback:
            status_callback(message)

    store = store or SessionStore()
    tls = config.tls
    negotiator = negotiator or ConsoleSessionNegotiator(config.host, store, tls=tls)
    auth = auth or AuthenticationClient(config.host, store, tls=tls)

    try:
        update_status(f"Requesting console for {target.display_name}...")
        try:
            session = negotiator.ensure_session()
            ticket = negotiator.open_console_ticket(target, session)
        except AuthenticationRequired:
            update_status("Console access requires your Proxmox password.")
            session = login(auth, config.user, password_prompt, max_attempts=max_attempts)
            ticket = negotiator.open_console_ticket(target, session)
        descriptor = negotiator.build_connection_descriptor(target, ticket, session)
    except AuthenticationRequired as exc:
        raise BridgeError.of(ErrorCategory.AUTHENTICATION_FAILED, str(exc)) from exc
    except ProxmoxAPIError as exc:
        raise BridgeError(classify(exc)) from exc
    finally:
        negotiator.close()
        auth.close()

    update_status(f"Connecting to {target.display_name}...")
    (bridge or TerminalBridge()).run(descriptor)
    update_status(f"Console for {target.display_name} closed.")
