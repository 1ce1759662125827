from __future__ import annotations

import logging
import time
from typing import Callable

import requests

from proxmox_client import (
    REQUEST_TIMEOUT,
    AuthenticationFailed,
    InvalidCredentials,
    ProxmoxConnectionError,
    SessionStorageError,
    build_http_session,
    normalize_host,
)
from session_store import AuthSession, SessionStore
from trust import TlsSettings

logger = logging.getLogger(__name__)


class AuthenticationClient:
    """Trades a username/password for a Proxmox ticket and caches it."""

    def __init__(
        self,
        host: str,
        store: SessionStore,
        tls: TlsSettings | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_url = normalize_host(host)
        self.store = store
        self.tls = tls or TlsSettings()
        self.session = session or build_http_session(self.tls)
        self.clock = clock

    def close(self) -> None:
        self.session.close()

    def authenticate(self, username: str, password: str) -> AuthSession:
        payload = {"username": username, "password": password}
        logger.info("Requesting console ticket for %s", username)
        try:
            response = self.session.post(
                f"{self.base_url}/api2/json/access/ticket",
                data=payload,
                verify=self.tls.requests_verify(),
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ProxmoxConnectionError(str(exc)) from exc

        if response.status_code == 401:
            raise InvalidCredentials(response.text)
        if not 200 <= response.status_code < 300:
            raise AuthenticationFailed(response.status_code, response.text)

        try:
            body = response.json()
        except ValueError as exc:
            raise AuthenticationFailed(response.status_code, response.text) from exc
        auth = body.get("data") if isinstance(body, dict) else None
        if not isinstance(auth, dict):
            raise AuthenticationFailed(response.status_code, "Unexpected ticket response format.")
        ticket = auth.get("ticket")
        csrf_token = auth.get("CSRFPreventionToken")
        if not ticket or not csrf_token:
            raise AuthenticationFailed(response.status_code, "Response is missing the ticket.")

        session = AuthSession(
            ticket=ticket,
            csrf_token=csrf_token,
            username=auth.get("username") or username,
            issued_at=int(self.clock() * 1000),
        )
        try:
            self.store.save(session)
        except OSError as exc:
            raise SessionStorageError(
                f"Could not save the console session to {self.store.path}: {exc}"
            ) from exc
        return session
