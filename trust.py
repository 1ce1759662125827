from __future__ import annotations

import hashlib
import socket
import ssl
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse


def normalize_server_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        raise ValueError("Server URL is required.")
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url.rstrip("/")


def _host_port_from_url(url: str) -> tuple[str, int]:
    parsed = urlparse(url)
    hostname = parsed.hostname or url
    if parsed.port:
        port = parsed.port
    else:
        if parsed.scheme == "http":
            port = 80
        else:
            port = 8006
    return hostname, port


def normalize_fingerprint(value: str) -> str:
    return value.replace(":", "").strip().upper()


def format_fingerprint(value: str) -> str:
    tokens = normalize_fingerprint(value)
    return ":".join(tokens[i : i + 2] for i in range(0, len(tokens), 2))


def fingerprint_of_der(der_cert: bytes) -> str:
    return hashlib.sha256(der_cert).hexdigest().upper()


def fingerprint_matches(der_cert: bytes | None, expected: str) -> bool:
    if not der_cert:
        return False
    return fingerprint_of_der(der_cert) == normalize_fingerprint(expected)


def fetch_server_certificate(url: str, *, timeout: float = 10.0) -> tuple[str, str, str]:
    normalized = normalize_server_url(url)
    hostname, port = _host_port_from_url(normalized)

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE

    with socket.create_connection((hostname, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=hostname) as secure_sock:
            der_cert = secure_sock.getpeercert(binary_form=True)
            fingerprint = fingerprint_of_der(der_cert)
            chain_pems: list[str] = []
            if hasattr(secure_sock, "getpeercertchain"):
                try:
                    chain = secure_sock.getpeercertchain()
                    for cert in chain:
                        chain_pems.append(ssl.DER_cert_to_PEM_cert(cert))
                except Exception:
                    chain_pems.append(ssl.DER_cert_to_PEM_cert(der_cert))
            else:
                chain_pems.append(ssl.DER_cert_to_PEM_cert(der_cert))

    pem_bundle = "".join(chain_pems)
    return normalized, pem_bundle, fingerprint


@dataclass(frozen=True)
class TlsSettings:
    """How a connection to the Proxmox host validates the server certificate.

    A pinned fingerprint wins over a trusted PEM bundle, which wins over the
    plain ``verify_ssl`` flag.
    """

    verify_ssl: bool = True
    trusted_cert: str | None = None
    trusted_fingerprint: str | None = None

    @property
    def pins_fingerprint(self) -> bool:
        return bool(self.trusted_fingerprint)

    def requests_verify(self) -> bool | str:
        # The fingerprint adapter does its own check; requests must not.
        if self.pins_fingerprint:
            return False
        if self.trusted_cert:
            return self.trusted_cert
        return self.verify_ssl

    def websocket_sslopt(self) -> dict[str, Any]:
        if self.pins_fingerprint or (not self.trusted_cert and not self.verify_ssl):
            return {"cert_reqs": ssl.CERT_NONE, "check_hostname": False}
        if self.trusted_cert:
            return {
                "cert_reqs": ssl.CERT_REQUIRED,
                "ca_certs": self.trusted_cert,
                "check_hostname": False,
            }
        return {"cert_reqs": ssl.CERT_REQUIRED}
