from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass
from typing import Any

import requests
import urllib3
from requests.adapters import HTTPAdapter

from trust import TlsSettings, format_fingerprint

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 20
GUEST_KINDS = {"vm": "qemu", "container": "lxc"}
POWER_ACTIONS = ("start", "stop", "shutdown", "reboot")


class ProxmoxAPIError(Exception):
    """Raised when the Proxmox API returns an error response."""


class ProxmoxConnectionError(ProxmoxAPIError):
    """Raised when the Proxmox host could not be reached at all."""


class AuthenticationFailed(ProxmoxAPIError):
    def __init__(self, status: int, body: str = "", message: str | None = None) -> None:
        self.status = status
        self.body = body
        if message is None:
            message = f"Authentication failed ({status})"
            if body:
                message = f"{message}: {body}"
        super().__init__(message)


class InvalidCredentials(AuthenticationFailed):
    def __init__(self, body: str = "") -> None:
        super().__init__(401, body, "Authentication failed (401): invalid username or password.")


class AuthenticationRequired(ProxmoxAPIError):
    """No usable console session is cached; the user must log in again."""


class SessionStorageError(ProxmoxAPIError):
    """The console session could not be written to disk."""


def normalize_host(host: str) -> str:
    host = host.strip()
    if not host.startswith(("http://", "https://")):
        host = f"https://{host}"
    return host.rstrip("/")


@dataclass(frozen=True)
class ConsoleTarget:
    kind: str
    node: str
    vmid: int | str
    name: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in GUEST_KINDS:
            raise ValueError(f"Unknown console target kind: {self.kind!r}")

    @property
    def api_type(self) -> str:
        return GUEST_KINDS[self.kind]

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        prefix = "VM" if self.kind == "vm" else "CT"
        return f"{prefix} {self.vmid}"


class FingerprintAdapter(HTTPAdapter):
    def __init__(self, fingerprint: str, *args, **kwargs) -> None:
        self.fingerprint = format_fingerprint(fingerprint).lower()
        super().__init__(*args, **kwargs)

    def init_poolmanager(self, *args, **kwargs) -> None:
        kwargs.setdefault("assert_hostname", False)
        kwargs["assert_fingerprint"] = self.fingerprint
        kwargs["cert_reqs"] = ssl.CERT_NONE
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, *args, **kwargs):
        kwargs.setdefault("assert_hostname", False)
        kwargs["assert_fingerprint"] = self.fingerprint
        kwargs["cert_reqs"] = ssl.CERT_NONE
        return super().proxy_manager_for(*args, **kwargs)


def build_http_session(tls: TlsSettings) -> requests.Session:
    session = requests.Session()
    if tls.pins_fingerprint:
        session.mount("https://", FingerprintAdapter(tls.trusted_fingerprint or ""))
    session.verify = tls.requests_verify()
    if session.verify is False:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return session


def parse_response(response: requests.Response) -> dict[str, Any]:
    try:
        response.raise_for_status()
    except requests.HTTPError as exc:
        raise ProxmoxAPIError(f"API request failed: {exc}") from exc
    try:
        body = response.json()
    except ValueError as exc:
        raise ProxmoxAPIError("Invalid JSON response from Proxmox API.") from exc
    if not isinstance(body, dict):
        raise ProxmoxAPIError("Unexpected response format from Proxmox API.")
    return body


class ProxmoxClient:
    """API-token client for plain data calls.

    Console endpoints need the ticket/cookie credential instead; see
    ``console_session.ConsoleSessionNegotiator``.
    """

    def __init__(
        self,
        host: str,
        user: str,
        token_id: str,
        token_secret: str,
        tls: TlsSettings | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = normalize_host(host)
        self.user = user
        self.tls = tls or TlsSettings()
        self.session = session or build_http_session(self.tls)
        self._auth_header = f"PVEAPIToken={user}!{token_id}={token_secret}"

    def close(self) -> None:
        self.session.close()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": self._auth_header}

    def _parse_response(self, response: requests.Response) -> dict[str, Any]:
        if response.status_code == 401:
            raise ProxmoxAPIError(
                "Authentication failed (401). Check your API token:\n"
                "  - User format: user@realm (e.g., root@pam)\n"
                "  - Token name: just the name portion, not the full ID\n"
                "  - Ensure \"Privilege Separation\" is unchecked in Proxmox\n"
                "  - Run 'proxmux config' to reconfigure"
            )
        return parse_response(response)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/api2/json/{path.lstrip('/')}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                data=data,
                headers=self._headers(),
                verify=self.tls.requests_verify(),
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ProxmoxConnectionError(str(exc)) from exc
        return self._parse_response(response)

    def _get(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self._request("GET", path, params=params)

    def get_version(self) -> dict[str, Any]:
        return self._get("version").get("data", {})

    def get_nodes(self) -> list[dict[str, Any]]:
        return self._get("nodes").get("data", [])

    def get_cluster_resources(self, resource_type: str | None = None) -> list[dict[str, Any]]:
        params = {"type": resource_type} if resource_type else None
        return self._get("cluster/resources", params=params).get("data", [])

    def find_guest(self, vmid: int | str) -> ConsoleTarget:
        """Locate the node and guest type that own ``vmid``."""
        wanted = str(vmid)
        for resource in self.get_cluster_resources("vm"):
            if str(resource.get("vmid")) != wanted:
                continue
            kind = "container" if resource.get("type") == "lxc" else "vm"
            node = resource.get("node")
            if not node:
                break
            logger.debug("Resolved guest %s to %s on node %s", wanted, kind, node)
            return ConsoleTarget(kind=kind, node=node, vmid=resource.get("vmid", vmid), name=resource.get("name"))
        raise ProxmoxAPIError(f"Guest {wanted} was not found in the cluster.")

    def list_guests(self, node: str | None = None, kind: str | None = None) -> list[dict[str, Any]]:
        """VMs and containers across the cluster, ordered by VMID.

        Each row carries ``kind`` ("vm" or "container") next to the raw
        cluster resource fields.
        """
        guests = []
        for resource in self.get_cluster_resources("vm"):
            if resource.get("type") not in ("qemu", "lxc") or resource.get("vmid") is None:
                continue
            guest_kind = "container" if resource["type"] == "lxc" else "vm"
            if node and resource.get("node") != node:
                continue
            if kind and guest_kind != kind:
                continue
            guests.append({**resource, "kind": guest_kind})
        return sorted(guests, key=lambda guest: int(guest["vmid"]))

    def guest_action(self, target: ConsoleTarget, action: str) -> str:
        """Run a power action and return the task UPID."""
        if action not in POWER_ACTIONS:
            raise ValueError(f"Unknown power action: {action!r}")
        logger.info("Requesting %s of %s %s on %s", action, target.kind, target.vmid, target.node)
        path = f"nodes/{target.node}/{target.api_type}/{target.vmid}/status/{action}"
        return self._request("POST", path, data={}).get("data") or ""

    def start_guest(self, target: ConsoleTarget) -> str:
        return self.guest_action(target, "start")

    def stop_guest(self, target: ConsoleTarget) -> str:
        return self.guest_action(target, "stop")

    def shutdown_guest(self, target: ConsoleTarget) -> str:
        return self.guest_action(target, "shutdown")

    def reboot_guest(self, target: ConsoleTarget) -> str:
        return self.guest_action(target, "reboot")
