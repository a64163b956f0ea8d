"""Detection of the tsh client version a Teleport proxy expects."""

from __future__ import annotations

import http.client
import json
import os
import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Mapping, Optional

USER_AGENT = "tkube/1.1.0"
DEFAULT_TIMEOUT = 10.0

_HOSTNAME_PATTERNS = (
    re.compile(r"teleport-v?(\d+)(?:\.(\d+))?(?:\.(\d+))?"),
    re.compile(r"teleport(\d+)(?:\.(\d+))?(?:\.(\d+))?"),
    re.compile(r"tsh-v?(\d+)(?:\.(\d+))?(?:\.(\d+))?"),
)

_GLOBAL_ENV_VARS = ("TELEPORT_VERSION", "TSH_VERSION", "TELEPORT_TSH_VERSION")


class VersionDetectionError(Exception):
    """Raised when no tsh version can be determined."""


@dataclass(frozen=True)
class ServerInfo:
    """Version fields reported by a Teleport server."""

    server_version: str = ""
    version: str = ""
    build: str = ""

    @classmethod
    def from_json(cls, data: Any) -> "ServerInfo":
        """Build from decoded JSON; raise ValueError if its shape is wrong."""
        if not isinstance(data, dict):
            raise ValueError("server info must be a JSON object")
        fields = {}
        for name in ("server_version", "version", "build"):
            value = data.get(name, "")
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise ValueError(f"field {name!r} must be a string")
            fields[name] = value
        return cls(**fields)

    @property
    def reported_version(self) -> Optional[str]:
        """The normalized version, preferring server_version, then version, then build."""
        for candidate in (self.server_version, self.version, self.build):
            if candidate:
                return normalize_version(candidate)
        return None


def normalize_version(version: str) -> str:
    """Strip a leading 'v', 'teleport-' and 'tsh-' prefix, keeping the full version."""
    for prefix in ("v", "teleport-", "tsh-"):
        if version.startswith(prefix):
            version = version[len(prefix):]
    return version


def extract_version_from_hostname(proxy: str) -> Optional[str]:
    """Find a version embedded in a proxy hostname such as 'teleport-v14.example.com'."""
    for pattern in _HOSTNAME_PATTERNS:
        match = pattern.search(proxy)
        if match:
            return ".".join(part for part in match.groups() if part)
    return None


def version_from_environment(proxy: str, environ: Mapping[str, str]) -> Optional[str]:
    """Look up a version in global or proxy-specific environment variables."""
    for name in _GLOBAL_ENV_VARS:
        value = environ.get(name, "")
        if value:
            return normalize_version(value)

    proxy_key = proxy.replace(":", "_").replace(".", "_").upper()
    for name in (f"{proxy_key}_TELEPORT_VERSION", f"{proxy_key}_TSH_VERSION"):
        value = environ.get(name, "")
        if value:
            return normalize_version(value)
    return None


class VersionDetector:
    """Works out which tsh version a Teleport proxy requires."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.timeout = timeout
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def detect_tsh_version(self, proxy: str) -> str:
        """Ask the server first, then fall back to the hostname and environment."""
        try:
            return self.version_from_server(proxy)
        except VersionDetectionError:
            pass
        try:
            return self.extract_version_from_proxy(proxy)
        except VersionDetectionError as exc:
            raise VersionDetectionError(f"failed to detect tsh version: {exc}") from exc

    def version_from_server(self, proxy: str) -> str:
        """Query the proxy's ping endpoint for its version."""
        endpoint = f"https://{proxy}/webapi/ping"
        try:
            version = self.query_endpoint(endpoint)
        except VersionDetectionError as exc:
            raise VersionDetectionError(
                f"could not determine version from server endpoint: {endpoint}"
            ) from exc
        if not version:
            raise VersionDetectionError(
                f"could not determine version from server endpoint: {endpoint}"
            )
        return version

    def query_endpoint(self, endpoint: str) -> str:
        """Fetch an endpoint and return the normalized version it reports."""
        request = urllib.request.Request(
            endpoint,
            method="GET",
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                status = response.status
                body = response.read()
        except (OSError, ValueError, OverflowError, http.client.HTTPException) as exc:
            raise VersionDetectionError(f"request to {endpoint} failed: {exc}") from exc

        if status == 200:
            try:
                info = ServerInfo.from_json(json.loads(body))
            except ValueError:
                info = None
            if info is not None and info.reported_version is not None:
                return info.reported_version

        raise VersionDetectionError("no version information found")

    def extract_version_from_proxy(self, proxy: str) -> str:
        """Take the version from the proxy hostname or, failing that, the environment."""
        version = extract_version_from_hostname(proxy)
        if version is not None:
            return version
        version = version_from_environment(proxy, self.environ)
        if version:
            return version
        raise VersionDetectionError(f"could not extract version from proxy: {proxy}")

    def suggest_installation(self, required_version: str) -> str:
        """A message telling the user how to install the required version."""
        return (
            f"💡 Required tsh version {required_version} is not installed.\n"
            "\n"
            "To install it, run:\n"
            f"  tkube config install-tsh {required_version}\n"
            "\n"
            "Or for automatic installation:\n"
            f"  tkube config auto-install-tsh {required_version}\n"
            "\n"
            "After installation, the version will be automatically configured "
            "for this environment."
        )