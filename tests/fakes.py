from __future__ import annotations

import json
import queue
import struct
import threading
import time
from typing import Any, Callable

import requests
import websocket

from console_session import ConnectionDescriptor

HOST = "https://pve.example.com:8006"
NOW = 1_700_000_000.0


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition was not met in time")


def make_response(status: int, payload: Any = None, text: str | None = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.encoding = "utf-8"
    response.url = f"{HOST}/api2/json/"
    response.reason = "OK" if status < 400 else "Error"
    if payload is not None:
        response._content = json.dumps(payload).encode("utf-8")
    else:
        response._content = (text or "").encode("utf-8")
    return response


class FakeHttpSession:
    """Stands in for requests.Session; replies are routed by URL suffix."""

    def __init__(self, routes: dict[str, list[Any]] | None = None) -> None:
        self.routes = routes or {}
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def _reply(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        self.calls.append({"method": method, "url": url, **kwargs})
        for suffix, replies in self.routes.items():
            if url.endswith(suffix) and replies:
                reply = replies.pop(0) if len(replies) > 1 else replies[0]
                if isinstance(reply, BaseException):
                    raise reply
                return reply
        raise AssertionError(f"unexpected request {method} {url}")

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self._reply("POST", url, **kwargs)

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return self._reply(method, url, **kwargs)

    def close(self) -> None:
        self.closed = True


class FakePeerSocket:
    """The ``sock`` of a TLS WebSocket, reduced to the peer certificate."""

    def __init__(self, der_cert: bytes | None) -> None:
        self.der_cert = der_cert

    def getpeercert(self, binary_form: bool = False) -> Any:
        return self.der_cert if binary_form else {}


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[bytes] = []
        self.incoming: queue.Queue[Any] = queue.Queue()
        self.close_frame_sent = False
        self.aborted = False
        self.closed = False
        self.timeout: Any = "unset"
        self.sock = None

    def send(self, data: bytes, opcode: int = websocket.ABNF.OPCODE_TEXT) -> int:
        if self.aborted:
            raise websocket.WebSocketConnectionClosedException("socket is already closed.")
        self.sent.append(data)
        return len(data)

    def send_close(self, *args: Any, **kwargs: Any) -> None:
        self.close_frame_sent = True

    def settimeout(self, timeout: Any) -> None:
        self.timeout = timeout

    def recv_data(self, control_frame: bool = False) -> tuple[int, Any]:
        item = self.incoming.get()
        if item is None:
            raise websocket.WebSocketConnectionClosedException("Connection to remote host was lost.")
        if isinstance(item, BaseException):
            raise item
        return item

    def abort(self) -> None:
        self.aborted = True
        self.incoming.put(None)

    def close(self, *args: Any, **kwargs: Any) -> None:
        self.closed = True

    # Helpers for the remote side.

    def feed(self, data: bytes | str, opcode: int = websocket.ABNF.OPCODE_BINARY) -> None:
        self.incoming.put((opcode, data))

    def remote_close(self, code: int = 1000) -> None:
        self.incoming.put((websocket.ABNF.OPCODE_CLOSE, struct.pack("!H", code)))

    def fail(self, exc: BaseException) -> None:
        self.incoming.put(exc)

    def data_frames(self) -> list[bytes]:
        return [frame for frame in self.sent if frame.startswith(b"0:")]

    def resize_frames(self) -> list[bytes]:
        return [frame for frame in self.sent if frame.startswith(b"1:")]


class FakeConnector:
    def __init__(self, ws: FakeWebSocket | None = None, error: BaseException | None = None) -> None:
        self.ws = ws or FakeWebSocket()
        self.error = error
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.release = threading.Event()
        self.release.set()

    def block(self) -> None:
        self.release.clear()

    def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.calls.append((url, kwargs))
        self.release.wait()
        if self.error is not None:
            raise self.error
        return self.ws


class FakeTerminal:
    def __init__(self, size: tuple[int, int] = (120, 40)) -> None:
        self.calls: list[str] = []
        self.titles: list[str] = []
        self.raw = False
        self.size = size

    def enter_raw(self) -> None:
        self.calls.append("enter_raw")
        self.raw = True

    def exit_raw(self) -> None:
        self.calls.append("exit_raw")
        self.raw = False

    def clear_screen(self) -> None:
        self.calls.append("clear_screen")

    def set_title(self, text: str) -> None:
        self.calls.append("set_title")
        self.titles.append(text)

    def reset_title(self) -> None:
        self.calls.append("reset_title")

    def show_cursor(self) -> None:
        self.calls.append("show_cursor")

    def get_size(self) -> tuple[int, int]:
        return self.size


class FakeResizeHook:
    def __init__(self) -> None:
        self.callback: Callable[[], None] | None = None
        self.installed = 0
        self.removed = 0

    def __call__(self, callback: Callable[[], None]) -> Callable[[], None]:
        self.callback = callback
        self.installed += 1
        return self.remove

    def remove(self) -> None:
        self.removed += 1

    def fire(self) -> None:
        assert self.callback is not None
        self.callback()


class BridgeRun:
    """Runs TerminalBridge.run on a worker thread so the test can play the other side."""

    def __init__(self, bridge: Any, descriptor: ConnectionDescriptor) -> None:
        self.bridge = bridge
        self.error: BaseException | None = None
        self.finished = threading.Event()
        self.thread = threading.Thread(target=self._run, args=(descriptor,), daemon=True)

    def _run(self, descriptor: ConnectionDescriptor) -> None:
        try:
            self.bridge.run(descriptor)
        except BaseException as exc:  # noqa: BLE001 - surfaced to the test
            self.error = exc
        finally:
            self.finished.set()

    def start(self) -> "BridgeRun":
        self.thread.start()
        return self

    def join(self, timeout: float = 3.0) -> BaseException | None:
        self.thread.join(timeout)
        assert not self.thread.is_alive(), "bridge did not finish"
        return self.error


