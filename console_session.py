from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, urlparse

import requests

from proxmox_client import (
    REQUEST_TIMEOUT,
    AuthenticationRequired,
    ConsoleTarget,
    ProxmoxAPIError,
    ProxmoxConnectionError,
    build_http_session,
    normalize_host,
    parse_response,
)
from session_store import AuthSession, SessionStore
from trust import TlsSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsoleTicket:
    port: int
    ticket: str
    user: str | None = None


@dataclass(frozen=True)
class ConnectionDescriptor:
    ws_url: str
    user: str
    ticket: str
    cookie: str
    origin: str
    title: str
    sslopt: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    fingerprint: str | None = None


class ConsoleSessionNegotiator:
    """Asks Proxmox for a one-shot termproxy port and ticket.

    The termproxy call must be made with the session ticket cookie and CSRF
    token; API tokens are rejected there.
    """

    def __init__(
        self,
        host: str,
        store: SessionStore,
        tls: TlsSettings | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = normalize_host(host)
        self.store = store
        self.tls = tls or TlsSettings()
        self.session = session or build_http_session(self.tls)

    def close(self) -> None:
        self.session.close()

    def ensure_session(self) -> AuthSession:
        session = self.store.load_valid()
        if session is None:
            raise AuthenticationRequired("Console access requires a password login.")
        return session

    def open_console_ticket(self, target: ConsoleTarget, session: AuthSession | None = None) -> ConsoleTicket:
        session = session or self.ensure_session()
        url = f"{self.base_url}/api2/json/nodes/{target.node}/{target.api_type}/{target.vmid}/termproxy"
        headers = {
            "Cookie": session.cookie,
            "CSRFPreventionToken": session.csrf_token,
        }
        logger.info("Requesting termproxy for %s %s on %s", target.kind, target.vmid, target.node)
        try:
            response = self.session.post(
                url,
                headers=headers,
                verify=self.tls.requests_verify(),
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ProxmoxConnectionError(str(exc)) from exc

        if response.status_code == 401:
            # The server no longer honours the cached ticket.
            self.store.clear()
            raise AuthenticationRequired("The console session has expired; please log in again.")

        data = parse_response(response).get("data") or {}
        if not isinstance(data, dict):
            raise ProxmoxAPIError("Unexpected termproxy format from Proxmox API.")
        port = data.get("port")
        ticket = data.get("ticket")
        if port in (None, "") or not ticket:
            raise ProxmoxAPIError("Termproxy response is missing the port or ticket.")
        try:
            port = int(port)
        except (TypeError, ValueError) as exc:
            raise ProxmoxAPIError(f"Invalid termproxy port: {port!r}") from exc
        return ConsoleTicket(port=port, ticket=ticket, user=data.get("user"))

    def build_connection_descriptor(
        self,
        target: ConsoleTarget,
        ticket: ConsoleTicket,
        session: AuthSession,
    ) -> ConnectionDescriptor:
        parsed = urlparse(self.base_url)
        ws_scheme = "wss" if parsed.scheme == "https" else "ws"
        origin = f"{parsed.scheme}://{parsed.netloc}"
        ws_url = (
            f"{ws_scheme}://{parsed.netloc}{parsed.path}/api2/json/nodes/{target.node}/"
            f"{target.api_type}/{target.vmid}/vncwebsocket"
            f"?port={ticket.port}&vncticket={quote(ticket.ticket, safe='')}"
        )
        return ConnectionDescriptor(
            ws_url=ws_url,
            user=ticket.user or session.username,
            ticket=ticket.ticket,
            cookie=session.cookie,
            origin=origin,
            title=target.display_name,
            sslopt=self.tls.websocket_sslopt(),
            fingerprint=self.tls.trusted_fingerprint,
        )
