from __future__ import annotations

import logging
import shutil
import sys
from typing import Any, TextIO

try:
    import termios
    import tty
except ImportError:  # pragma: no cover - not a POSIX host
    termios = None  # type: ignore[assignment]
    tty = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

CLEAR_SCREEN = "\x1b[2J\x1b[H"
SHOW_CURSOR = "\x1b[?25h"
FALLBACK_SIZE = (80, 24)


def _isatty(stream: Any) -> bool:
    try:
        return bool(stream.isatty())
    except (AttributeError, ValueError, OSError):
        return False


class TerminalModeManager:
    """Owns the local terminal's line discipline and title.

    Raw mode is process-wide state, so every toggle goes through here and
    both directions are idempotent.
    """

    def __init__(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self._saved_attrs: list[Any] | None = None

    @property
    def is_raw(self) -> bool:
        return self._saved_attrs is not None

    def _stdin_fd(self) -> int | None:
        if termios is None or not _isatty(self.stdin):
            return None
        try:
            return self.stdin.fileno()
        except (AttributeError, ValueError, OSError):
            return None

    def enter_raw(self) -> None:
        if self.is_raw:
            return
        fd = self._stdin_fd()
        if fd is None:
            return
        self._saved_attrs = termios.tcgetattr(fd)
        tty.setraw(fd)
        logger.debug("Terminal switched to raw mode")

    def exit_raw(self) -> None:
        if not self.is_raw:
            return
        attrs, self._saved_attrs = self._saved_attrs, None
        fd = self._stdin_fd()
        if fd is None:
            return
        termios.tcsetattr(fd, termios.TCSADRAIN, attrs)
        logger.debug("Terminal restored to cooked mode")

    def _write(self, text: str) -> None:
        if not _isatty(self.stdout):
            return
        try:
            self.stdout.write(text)
            self.stdout.flush()
        except (OSError, ValueError):
            pass

    def set_title(self, text: str) -> None:
        # BEL would end the sequence early.
        self._write(f"\x1b]0;{text.replace(chr(7), '')}\x07")

    def reset_title(self) -> None:
        self._write("\x1b]0;\x07")

    def clear_screen(self) -> None:
        self._write(CLEAR_SCREEN)

    def show_cursor(self) -> None:
        self._write(SHOW_CURSOR)

    def get_size(self) -> tuple[int, int]:
        size = shutil.get_terminal_size(FALLBACK_SIZE)
        return size.columns, size.lines
