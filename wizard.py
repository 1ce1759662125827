from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

import click

from trust import TlsSettings, fetch_server_certificate, format_fingerprint, normalize_server_url

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "proxmux"
ENV_VARS = ("PROXMOX_HOST", "PROXMOX_USER", "PROXMOX_TOKEN_ID", "PROXMOX_TOKEN_SECRET")
SKIP_TLS_ENV = "PROXMOX_SKIP_TLS_VERIFY"


class ConfigurationError(Exception):
    """Raised when proxmux cannot run because its configuration is missing or invalid."""


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "y"}


def normalize_token_id(token_id: str) -> str:
    # Accept the full "user@realm!name" id as shown in the Proxmox UI.
    token_id = token_id.strip()
    if "!" in token_id:
        token_id = token_id.rsplit("!", 1)[-1] or token_id
    return token_id


@dataclass
class ProxmuxConfig:
    host: str
    user: str
    token_id: str
    token_secret: str
    skip_tls_verify: bool = False
    trusted_cert: str | None = None
    trusted_fingerprint: str | None = None

    @property
    def tls(self) -> TlsSettings:
        if self.skip_tls_verify:
            return TlsSettings(verify_ssl=False)
        return TlsSettings(
            verify_ssl=True,
            trusted_cert=self.trusted_cert,
            trusted_fingerprint=self.trusted_fingerprint,
        )

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "ProxmuxConfig | None":
        fields = {
            "host": data.get("host"),
            "user": data.get("user"),
            "token_id": data.get("tokenId"),
            "token_secret": data.get("tokenSecret"),
        }
        if not all(isinstance(value, str) and value for value in fields.values()):
            return None
        return cls(
            **fields,
            skip_tls_verify=bool(data.get("skipTlsVerify", False)),
            trusted_cert=data.get("trustedCert") or None,
            trusted_fingerprint=data.get("trustedFingerprint") or None,
        )

    def to_json(self) -> dict[str, Any]:
        raw = asdict(self)
        data: dict[str, Any] = {
            "host": raw["host"],
            "user": raw["user"],
            "tokenId": raw["token_id"],
            "tokenSecret": raw["token_secret"],
            "skipTlsVerify": raw["skip_tls_verify"],
        }
        if self.trusted_cert:
            data["trustedCert"] = self.trusted_cert
        if self.trusted_fingerprint:
            data["trustedFingerprint"] = self.trusted_fingerprint
        return data


class ConfigStore:
    def __init__(self, config_dir: Path | str | None = None, environ: Mapping[str, str] | None = None) -> None:
        self.environ = environ if environ is not None else os.environ
        if config_dir is None:
            config_dir = self.environ.get("PROXMUX_CONFIG_DIR") or DEFAULT_CONFIG_DIR
        self.config_dir = Path(config_dir)

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def session_file(self) -> Path:
        return self.config_dir / "session.json"

    @property
    def trusted_cert_file(self) -> Path:
        return self.config_dir / "trusted_server.pem"

    @property
    def log_file(self) -> Path:
        return self.config_dir / "proxmux.log"

    def _load_from_env(self) -> ProxmuxConfig | None:
        host, user, token_id, token_secret = (self.environ.get(name) for name in ENV_VARS)
        if not (host and user and token_id and token_secret):
            return None
        return ProxmuxConfig(host=host, user=user, token_id=normalize_token_id(token_id), token_secret=token_secret)

    def _load_from_file(self) -> ProxmuxConfig | None:
        try:
            with self.config_file.open("r", encoding="utf-8") as file:
                data = json.load(file)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable config %s: %s", self.config_file, exc)
            return None
        if not isinstance(data, dict):
            return None
        return ProxmuxConfig.from_json(data)

    def load(self) -> ProxmuxConfig | None:
        config = self._load_from_env() or self._load_from_file()
        if config is not None and _truthy(self.environ.get(SKIP_TLS_ENV)):
            config.skip_tls_verify = True
        return config

    def require(self) -> ProxmuxConfig:
        config = self.load()
        if config is None:
            raise ConfigurationError(
                "No configuration found!\n\n"
                "Please configure proxmux by running:\n"
                "  proxmux config\n\n"
                "Or set environment variables:\n"
                "  PROXMOX_HOST=https://your-proxmox:8006\n"
                "  PROXMOX_USER=root@pam\n"
                "  PROXMOX_TOKEN_ID=your-token-name\n"
                "  PROXMOX_TOKEN_SECRET=your-token-secret"
            )
        return config

    def save(self, config: ProxmuxConfig) -> Path:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.config_dir, 0o700)
        with self.config_file.open("w", encoding="utf-8") as file:
            json.dump(config.to_json(), file, indent=2)
        os.chmod(self.config_file, 0o600)
        return self.config_file

    def save_trusted_cert(self, pem_data: str) -> str:
        cert_path = self.trusted_cert_file
        cert_path.parent.mkdir(parents=True, exist_ok=True)
        cert_path.write_text(pem_data, encoding="utf-8")
        return str(cert_path)


def run_setup_wizard(
    store: ConfigStore,
    *,
    prompt: Callable[..., Any] = click.prompt,
    confirm: Callable[..., bool] = click.confirm,
    echo: Callable[[str], None] = click.echo,
    fetch_certificate: Callable[[str], tuple[str, str, str]] = fetch_server_certificate,
) -> ProxmuxConfig:
    echo("Configure Proxmox connection\n")
    host = normalize_server_url(prompt("Proxmox host URL (e.g., https://192.168.1.100:8006)"))
    user = prompt("User (e.g., root@pam)").strip()
    raw_token_id = prompt("API token name (e.g., proxmux)")
    token_id = normalize_token_id(raw_token_id)
    if token_id != raw_token_id.strip():
        echo(f"  (Extracted token name: {token_id})")
    token_secret = prompt("API token secret", hide_input=True)

    echo("\n  Note: Proxmox uses self-signed certs by default.")
    echo("  If you haven't installed a trusted certificate, answer 'y'.\n")
    skip_tls_verify = confirm("Skip TLS certificate verification?", default=False)

    config = ProxmuxConfig(
        host=host,
        user=user,
        token_id=token_id,
        token_secret=token_secret,
        skip_tls_verify=skip_tls_verify,
    )

    if not skip_tls_verify and host.startswith("https://"):
        if confirm("Pin this server's current certificate instead of relying on system CAs?", default=False):
            try:
                _, pem_bundle, fingerprint = fetch_certificate(host)
            except (OSError, ValueError) as exc:
                echo(f"  Unable to fetch the server certificate: {exc}")
            else:
                echo(f"  SHA-256 fingerprint: {format_fingerprint(fingerprint)}")
                if confirm("Trust this certificate?", default=False):
                    config.trusted_cert = store.save_trusted_cert(pem_bundle)
                    config.trusted_fingerprint = fingerprint

    path = store.save(config)
    echo(f"\nConfiguration saved to {path}")
    if skip_tls_verify:
        echo("  (TLS verification disabled - suitable for self-signed certs)")
    return config
