from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    TLS_CERTIFICATE = "tls_certificate"
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    AUTHENTICATION_FAILED = "authentication_failed"
    PROTOCOL = "protocol"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    category: ErrorCategory
    message: str


TLS_MESSAGE = (
    "TLS certificate error - your Proxmox server likely uses a self-signed certificate.\n\n"
    "To fix this, run 'proxmux config' and answer 'y' to skip TLS verification "
    "(sets skip_tls_verify), or export PROXMOX_SKIP_TLS_VERIFY=1."
)
REFUSED_MESSAGE = "Connection refused - is Proxmox running and reachable at the configured host?"
TIMEOUT_MESSAGE = "Connection timed out after 10 seconds."
AUTH_MESSAGE = "Authentication failed - the console ticket was rejected. Log in again and retry."

# Checked in order; the first category with a matching pattern wins.
_PATTERNS: tuple[tuple[ErrorCategory, tuple[str, ...], str | None], ...] = (
    (
        ErrorCategory.TLS_CERTIFICATE,
        ("certificate", "ssl", "tls", "self signed", "self-signed", "unable to verify"),
        TLS_MESSAGE,
    ),
    (
        ErrorCategory.CONNECTION_REFUSED,
        ("refused", "unreachable", "no route to host", "name or service not known"),
        REFUSED_MESSAGE,
    ),
    (ErrorCategory.TIMEOUT, ("timed out", "timeout"), TIMEOUT_MESSAGE),
    (
        ErrorCategory.AUTHENTICATION_FAILED,
        ("401", "unauthorized", "authentication", "permission denied", "invalid ticket"),
        None,
    ),
)


def _raw_text(raw: object) -> str:
    if isinstance(raw, BaseException):
        text = str(raw)
        return text or type(raw).__name__
    return str(raw or "")


def classify(raw: object) -> ClassifiedError:
    """Map a low-level error (text or exception) to a user-facing category."""
    text = _raw_text(raw)
    lowered = text.lower()
    for category, patterns, message in _PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return ClassifiedError(category, message or text)
    return ClassifiedError(ErrorCategory.UNKNOWN, text)


class BridgeError(Exception):
    """The single failure type a console session resolves with."""

    def __init__(self, error: ClassifiedError) -> None:
        super().__init__(error.message)
        self.error = error

    @classmethod
    def of(cls, category: ErrorCategory, message: str) -> "BridgeError":
        return cls(ClassifiedError(category, message))

    @property
    def category(self) -> ErrorCategory:
        return self.error.category

    @property
    def message(self) -> str:
        return self.error.message
