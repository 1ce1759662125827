from __future__ import annotations

import enum
import logging
import os
import queue
import select
import signal
import ssl
import struct
import sys
import threading
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable

import websocket

from console_errors import (
    AUTH_MESSAGE,
    TIMEOUT_MESSAGE,
    BridgeError,
    ClassifiedError,
    ErrorCategory,
    classify,
)
from console_session import ConnectionDescriptor
from terminal_mode import TerminalModeManager
from trust import fingerprint_matches

logger = logging.getLogger(__name__)

DETACH_BYTE = b"\x1c"  # Ctrl+\
EXIT_HINT = "Ctrl+\\ to exit"
CONNECT_TIMEOUT = 10.0
RESIZE_SETTLE_DELAY = 0.3
STDIN_POLL_INTERVAL = 0.1
READ_CHUNK = 1024


class BridgeState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


_TRANSITIONS: dict[BridgeState, frozenset[BridgeState]] = {
    BridgeState.IDLE: frozenset({BridgeState.CONNECTING}),
    BridgeState.CONNECTING: frozenset({BridgeState.STREAMING, BridgeState.FAILED}),
    BridgeState.STREAMING: frozenset({BridgeState.CLOSING, BridgeState.CLOSED, BridgeState.FAILED}),
    BridgeState.CLOSING: frozenset({BridgeState.CLOSED, BridgeState.FAILED}),
    BridgeState.CLOSED: frozenset(),
    BridgeState.FAILED: frozenset(),
}
_FINAL_STATES = frozenset({BridgeState.CLOSED, BridgeState.FAILED})


@dataclass(frozen=True)
class DataFrame:
    payload: bytes


@dataclass(frozen=True)
class ResizeFrame:
    cols: int
    rows: int


OutboundFrame = DataFrame | ResizeFrame


def encode_frame(frame: OutboundFrame) -> bytes:
    """Encode a frame for the termproxy wire format.

    The data length is the byte count of the payload, not its character count.
    """
    if isinstance(frame, DataFrame):
        return b"0:%d:" % len(frame.payload) + frame.payload
    if isinstance(frame, ResizeFrame):
        return b"1:%d:%d:" % (frame.cols, frame.rows)
    raise TypeError(f"Unsupported frame: {frame!r}")


def encode_handshake(user: str, ticket: str) -> bytes:
    return f"{user}:{ticket}\n".encode("utf-8")


def install_sigwinch_handler(callback: Callable[[], None]) -> Callable[[], None] | None:
    """Route SIGWINCH to ``callback``; returns the function that undoes it."""
    sigwinch = getattr(signal, "SIGWINCH", None)
    if sigwinch is None or threading.current_thread() is not threading.main_thread():
        return None

    def handler(signum: int, frame: Any) -> None:
        callback()

    previous = signal.signal(sigwinch, handler)

    def restore() -> None:
        signal.signal(sigwinch, previous)

    return restore


def _close_code(data: bytes | None) -> int | None:
    if data and len(data) >= 2:
        return struct.unpack("!H", data[:2])[0]
    return None


class TerminalBridge:
    """Pumps bytes between the local terminal and a Proxmox termproxy socket.

    Worker threads (connector, socket reader, stdin reader) and timers only
    post events; ``run`` drains them on the calling thread and is the only
    place that changes state, writes to the socket or touches the terminal.
    """

    def __init__(
        self,
        terminal: TerminalModeManager | None = None,
        *,
        stdin_fd: int | None = None,
        stdout: BinaryIO | None = None,
        connect: Callable[..., Any] = websocket.create_connection,
        install_resize_handler: Callable[[Callable[[], None]], Callable[[], None] | None] = install_sigwinch_handler,
        connect_timeout: float = CONNECT_TIMEOUT,
        settle_delay: float = RESIZE_SETTLE_DELAY,
    ) -> None:
        self.terminal = terminal or TerminalModeManager()
        self.stdin_fd = stdin_fd if stdin_fd is not None else sys.stdin.fileno()
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.connect = connect
        self.install_resize_handler = install_resize_handler
        self.connect_timeout = connect_timeout
        self.settle_delay = settle_delay

        self._state = BridgeState.IDLE
        self._error: ClassifiedError | None = None
        self._events: queue.SimpleQueue[tuple[str, Any]] = queue.SimpleQueue()
        self._stop = threading.Event()
        self._socket_lock = threading.Lock()
        self._ws: Any = None
        self._timers: list[threading.Timer] = []
        self._threads: list[threading.Thread] = []
        self._restore_resize: Callable[[], None] | None = None
        self._received_data = False
        self._detached = False
        self._cleaned_up = False

    @property
    def state(self) -> BridgeState:
        return self._state

    def run(self, descriptor: ConnectionDescriptor) -> None:
        """Drive one console session; returns on detach, raises BridgeError on failure."""
        if self._state is not BridgeState.IDLE:
            raise RuntimeError("A TerminalBridge runs a single session.")
        try:
            self._transition(BridgeState.CONNECTING)
            self._start_connect(descriptor)
            while self._state not in _FINAL_STATES:
                kind, payload = self._events.get()
                self._dispatch(kind, payload, descriptor)
        except Exception as exc:
            logger.exception("Console session aborted")
            self._fail(ClassifiedError(ErrorCategory.UNKNOWN, str(exc) or type(exc).__name__))
        finally:
            self._cleanup()

        if self._error is not None:
            raise BridgeError(self._error)

    # State machine

    def _transition(self, new_state: BridgeState) -> bool:
        if new_state not in _TRANSITIONS[self._state]:
            logger.debug("Ignoring transition %s -> %s", self._state.value, new_state.value)
            return False
        logger.debug("Bridge %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        return True

    def _fail(self, error: ClassifiedError) -> None:
        if self._transition(BridgeState.FAILED):
            self._error = error
            logger.warning("Console session failed (%s): %s", error.category.value, error.message)

    def _dispatch(self, kind: str, payload: Any, descriptor: ConnectionDescriptor) -> None:
        state = self._state
        if kind == "open":
            if state is BridgeState.CONNECTING and self._transition(BridgeState.STREAMING):
                self._on_open(descriptor)
        elif kind == "timeout":
            if state is BridgeState.CONNECTING:
                self._fail(ClassifiedError(ErrorCategory.TIMEOUT, TIMEOUT_MESSAGE))
        elif kind == "error":
            self._on_error(payload)
        elif kind == "close":
            self._on_close(payload)
        elif kind == "message":
            if state is BridgeState.STREAMING:
                self._received_data = True
                self._write_output(payload)
        elif kind == "stdin":
            if state is BridgeState.STREAMING:
                self._on_input(payload)
        elif kind in ("resize", "settle"):
            if state is BridgeState.STREAMING:
                self._send_resize()

    def _on_open(self, descriptor: ConnectionDescriptor) -> None:
        self.terminal.enter_raw()
        self.terminal.clear_screen()
        title = descriptor.title or "Console"
        self.terminal.set_title(f"{title} - {EXIT_HINT}")

        # The handshake must be the first message on the socket.
        self._send(encode_handshake(descriptor.user, descriptor.ticket))
        if self._state is not BridgeState.STREAMING:
            return
        self._send_resize()
        self._start_timer(self.settle_delay, "settle")
        self._restore_resize = self.install_resize_handler(lambda: self._post("resize"))

        self._start_thread(self._socket_reader, "console-socket-reader")
        self._start_thread(self._stdin_reader, "console-stdin-reader")

    def _on_input(self, chunk: bytes) -> None:
        if chunk == DETACH_BYTE or not chunk:
            self._detach()
            return
        self._send(encode_frame(DataFrame(chunk)))

    def _on_error(self, error: Any) -> None:
        if self._state is BridgeState.CLOSING:
            self._transition(BridgeState.CLOSED)
        else:
            self._fail(classify(error))

    def _on_close(self, code: int | None) -> None:
        state = self._state
        if state is BridgeState.CONNECTING:
            self._fail(
                ClassifiedError(
                    ErrorCategory.PROTOCOL,
                    f"WebSocket closed before the console opened (code: {code}).",
                )
            )
        elif state is BridgeState.STREAMING:
            if not self._received_data and not self._detached:
                # Best-effort: Proxmox just drops the socket on a bad handshake ticket.
                self._fail(ClassifiedError(ErrorCategory.AUTHENTICATION_FAILED, AUTH_MESSAGE))
                return
            self._transition(BridgeState.CLOSING)
            self._transition(BridgeState.CLOSED)
        elif state is BridgeState.CLOSING:
            self._transition(BridgeState.CLOSED)

    def _detach(self) -> None:
        self._detached = True
        if not self._transition(BridgeState.CLOSING):
            return
        ws = self._ws
        if ws is not None:
            try:
                ws.send_close()
            except (websocket.WebSocketException, OSError) as exc:
                logger.debug("Close frame not sent: %s", exc)
        self._transition(BridgeState.CLOSED)

    # Outbound

    def _send(self, data: bytes) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            ws.send(data, opcode=websocket.ABNF.OPCODE_BINARY)
        except (websocket.WebSocketException, OSError) as exc:
            self._on_error(exc)

    def _send_resize(self) -> None:
        cols, rows = self.terminal.get_size()
        self._send(encode_frame(ResizeFrame(cols, rows)))

    def _write_output(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.stdout.write(data)
        self.stdout.flush()

    # Event sources

    def _post(self, kind: str, payload: Any = None) -> None:
        self._events.put((kind, payload))

    def _start_timer(self, delay: float, kind: str) -> None:
        timer = threading.Timer(delay, self._post, args=(kind,))
        timer.daemon = True
        self._timers.append(timer)
        timer.start()

    def _start_thread(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _start_connect(self, descriptor: ConnectionDescriptor) -> None:
        self._start_timer(self.connect_timeout, "timeout")
        self._start_thread(lambda: self._connector(descriptor), "console-connector")

    def _connector(self, descriptor: ConnectionDescriptor) -> None:
        logger.info("Opening console socket for %s", descriptor.title)
        try:
            ws = self.connect(
                descriptor.ws_url,
                timeout=self.connect_timeout,
                subprotocols=["binary"],
                header=[f"Cookie: {descriptor.cookie}"],
                origin=descriptor.origin,
                sslopt=dict(descriptor.sslopt),
            )
            if descriptor.fingerprint and descriptor.ws_url.startswith("wss://"):
                self._check_fingerprint(ws, descriptor.fingerprint)
            ws.settimeout(None)
        except websocket.WebSocketConnectionClosedException:
            self._post("close", None)
            return
        except Exception as exc:
            self._post("error", exc)
            return
        with self._socket_lock:
            if self._stop.is_set():
                # The session already ended (timeout); nobody will own this socket.
                _shutdown_socket(ws)
                return
            self._ws = ws
        self._post("open")

    @staticmethod
    def _check_fingerprint(ws: Any, expected: str) -> None:
        sock = getattr(ws, "sock", None)
        der_cert = sock.getpeercert(binary_form=True) if sock is not None else None
        if not fingerprint_matches(der_cert, expected):
            _shutdown_socket(ws)
            raise ssl.SSLError("Server certificate fingerprint does not match the trusted certificate.")

    def _socket_reader(self) -> None:
        ws = self._ws
        while not self._stop.is_set():
            try:
                opcode, data = ws.recv_data()
            except websocket.WebSocketConnectionClosedException:
                self._post("close", None)
                return
            except (websocket.WebSocketException, OSError) as exc:
                if not self._stop.is_set():
                    self._post("error", exc)
                return
            if opcode == websocket.ABNF.OPCODE_CLOSE:
                self._post("close", _close_code(data))
                return
            if data:
                self._post("message", data)

    def _stdin_reader(self) -> None:
        while not self._stop.is_set():
            try:
                ready, _, _ = select.select([self.stdin_fd], [], [], STDIN_POLL_INTERVAL)
                if not ready:
                    continue
                chunk = os.read(self.stdin_fd, READ_CHUNK)
            except OSError as exc:
                if not self._stop.is_set():
                    self._post("error", exc)
                return
            self._post("stdin", chunk)
            if not chunk:
                return

    # Cleanup

    def _cleanup(self) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self._stop.set()

        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

        restore_resize, self._restore_resize = self._restore_resize, None
        if restore_resize is not None:
            restore_resize()

        with self._socket_lock:
            ws, self._ws = self._ws, None
        if ws is not None:
            _shutdown_socket(ws)

        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=STDIN_POLL_INTERVAL * 5)
        self._threads.clear()

        self.terminal.exit_raw()
        self.terminal.show_cursor()
        self.terminal.reset_title()
        logger.info("Console session ended (%s)", self._state.value)


def _shutdown_socket(ws: Any) -> None:
    try:
        ws.abort()
    except (websocket.WebSocketException, OSError, AttributeError):
        pass
    try:
        ws.close(timeout=0)
    except (websocket.WebSocketException, OSError):
        pass
