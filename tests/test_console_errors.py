"""Unit tests for console_errors: mapping raw failures to user-facing categories."""

from __future__ import annotations

import ssl

import pytest

from console_errors import (
    AUTH_MESSAGE,
    REFUSED_MESSAGE,
    TIMEOUT_MESSAGE,
    BridgeError,
    ClassifiedError,
    ErrorCategory,
    classify,
)


class TestClassify:
    def test_self_signed_certificate(self) -> None:
        result = classify("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed: self signed certificate")
        assert result.category is ErrorCategory.TLS_CERTIFICATE
        assert "skip_tls_verify" in result.message
        assert "PROXMOX_SKIP_TLS_VERIFY" in result.message

    @pytest.mark.parametrize(
        "raw",
        [
            "unable to verify the first certificate",
            "TLS handshake failure",
            "self-signed certificate in certificate chain",
        ],
    )
    def test_other_tls_wordings(self, raw: str) -> None:
        assert classify(raw).category is ErrorCategory.TLS_CERTIFICATE

    def test_exception_input(self) -> None:
        exc = ssl.SSLCertVerificationError("certificate verify failed")
        assert classify(exc).category is ErrorCategory.TLS_CERTIFICATE

    @pytest.mark.parametrize(
        "raw",
        ["[Errno 111] Connection refused", "Network is unreachable", "[Errno 113] No route to host"],
    )
    def test_connection_refused(self, raw: str) -> None:
        result = classify(raw)
        assert result.category is ErrorCategory.CONNECTION_REFUSED
        assert result.message == REFUSED_MESSAGE

    def test_timeout(self) -> None:
        result = classify(TimeoutError("timed out"))
        assert result == ClassifiedError(ErrorCategory.TIMEOUT, TIMEOUT_MESSAGE)

    def test_authentication_keeps_raw_text(self) -> None:
        result = classify("Authentication failed (401): invalid username or password.")
        assert result.category is ErrorCategory.AUTHENTICATION_FAILED
        assert result.message == "Authentication failed (401): invalid username or password."

    def test_tls_beats_refused(self) -> None:
        # Both pattern sets match; the earlier category wins.
        result = classify("SSL handshake refused by peer")
        assert result.category is ErrorCategory.TLS_CERTIFICATE

    def test_refused_beats_timeout(self) -> None:
        assert classify("connect timed out, then refused").category is ErrorCategory.CONNECTION_REFUSED

    def test_unknown_passes_message_through(self) -> None:
        result = classify("something odd happened")
        assert result == ClassifiedError(ErrorCategory.UNKNOWN, "something odd happened")

    def test_empty_exception_uses_type_name(self) -> None:
        assert classify(RuntimeError()).message == "RuntimeError"

    def test_deterministic(self) -> None:
        raw = "certificate has expired"
        assert classify(raw) == classify(raw)


class TestBridgeError:
    def test_of(self) -> None:
        error = BridgeError.of(ErrorCategory.AUTHENTICATION_FAILED, AUTH_MESSAGE)
        assert error.category is ErrorCategory.AUTHENTICATION_FAILED
        assert error.message == AUTH_MESSAGE
        assert str(error) == AUTH_MESSAGE

    def test_wraps_classification(self) -> None:
        classified = classify("Connection refused")
        assert BridgeError(classified).error is classified
