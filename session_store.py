from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Proxmox tickets live for two hours; stop trusting a cached one well before that.
SESSION_TTL = 100 * 60
DEFAULT_SESSION_FILE = Path.home() / ".config" / "proxmux" / "session.json"

DIR_MODE = 0o700
FILE_MODE = 0o600


@dataclass(frozen=True)
class AuthSession:
    ticket: str
    csrf_token: str
    username: str
    issued_at: int  # milliseconds since the epoch

    @property
    def cookie(self) -> str:
        return f"PVEAuthCookie={self.ticket}"

    def to_json(self) -> dict[str, Any]:
        return {
            "ticket": self.ticket,
            "csrfToken": self.csrf_token,
            "username": self.username,
            "timestampMs": self.issued_at,
        }

    @classmethod
    def from_json(cls, data: Any) -> "AuthSession | None":
        if not isinstance(data, dict):
            return None
        ticket = data.get("ticket")
        csrf_token = data.get("csrfToken")
        username = data.get("username")
        timestamp = data.get("timestampMs")
        if not all(isinstance(value, str) and value for value in (ticket, csrf_token, username)):
            return None
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            return None
        return cls(ticket=ticket, csrf_token=csrf_token, username=username, issued_at=int(timestamp))


class SessionStore:
    """Cached console session on disk, readable by the owner only."""

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        ttl: float = SESSION_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path) if path is not None else DEFAULT_SESSION_FILE
        self.ttl = ttl
        self.clock = clock

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def load(self) -> AuthSession | None:
        try:
            with self.path.open("r", encoding="utf-8") as file:
                data = json.load(file)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.debug("Ignoring unreadable session file %s: %s", self.path, exc)
            return None
        session = AuthSession.from_json(data)
        if session is None:
            logger.debug("Ignoring malformed session file %s", self.path)
        return session

    def is_valid(self, session: AuthSession) -> bool:
        age_ms = self.now_ms() - session.issued_at
        return age_ms < self.ttl * 1000

    def load_valid(self) -> AuthSession | None:
        session = self.load()
        if session is None or not self.is_valid(session):
            return None
        return session

    def save(self, session: AuthSession) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        os.chmod(directory, DIR_MODE)

        fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".session-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file:
                json.dump(session.to_json(), file)
            os.chmod(tmp_name, FILE_MODE)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        os.chmod(self.path, FILE_MODE)
        logger.debug("Saved console session for %s", session.username)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        logger.debug("Cleared cached console session %s", self.path)
