from __future__ import annotations

import os
from typing import Callable

import pytest

from console_session import ConnectionDescriptor
from session_store import AuthSession, SessionStore
from tests.fakes import NOW


@pytest.fixture
def clock() -> Callable[[], float]:
    return lambda: NOW


@pytest.fixture
def session_store(tmp_path, clock) -> SessionStore:
    return SessionStore(tmp_path / "proxmux" / "session.json", clock=clock)


@pytest.fixture
def auth_session() -> AuthSession:
    return AuthSession(
        ticket="PVE:root@pam:65A1B2C3::sig",
        csrf_token="65A1B2C3:csrf",
        username="root@pam",
        issued_at=int(NOW * 1000),
    )


@pytest.fixture
def stdin_pipe():
    read_fd, write_fd = os.pipe()
    yield read_fd, write_fd
    for fd in (read_fd, write_fd):
        try:
            os.close(fd)
        except OSError:
            pass


@pytest.fixture
def descriptor() -> ConnectionDescriptor:
    return ConnectionDescriptor(
        ws_url="wss://pve.example.com:8006/api2/json/nodes/pve1/qemu/100/vncwebsocket?port=5900&vncticket=T",
        user="root@pam",
        ticket="PVEVNC:TICKET",
        cookie="PVEAuthCookie=PVE:root@pam:65A1B2C3::sig",
        origin="https://pve.example.com:8006",
        title="web01",
    )
