"""Teleport operations driven through per-environment tsh clients."""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Protocol, Sequence

from .installer import TSHInstaller
from .version_detector import VersionDetectionError, VersionDetector

_LOGGED_IN_MARKERS = ("logged in", "Valid until")
_VALID_UNTIL = "Valid until:"
_VALID_FOR = "[valid for "


class TeleportError(Exception):
    """Raised when a Teleport operation cannot be carried out."""


class _Environment(Protocol):
    proxy: str
    tsh_version: str


class _Config(Protocol):
    environments: Mapping[str, _Environment]


class _ConfigManager(Protocol):
    def load(self) -> _Config: ...

    def get_environment(self, env: str) -> _Environment: ...

    def update_environment_tsh_version(self, env: str, version: str) -> None: ...


@dataclass
class SessionInfo:
    """What tsh reports about the current login session."""

    is_authenticated: bool = False
    valid_until: str = ""
    time_remaining: str = ""
    is_expired: bool = False


def is_logged_in(output: str) -> bool:
    """Whether 'tsh status' output shows an active login."""
    return any(marker in output for marker in _LOGGED_IN_MARKERS)


def parse_session_info(output: str) -> SessionInfo:
    """Read the session state out of 'tsh status' output."""
    info = SessionInfo()
    if not is_logged_in(output):
        return info
    info.is_authenticated = True

    for raw_line in output.split("\n"):
        line = raw_line.strip()
        if _VALID_UNTIL not in line:
            continue
        time_info = line.split(_VALID_UNTIL)[1].strip()
        if "EXPIRED" in time_info:
            info.is_expired = True
            info.time_remaining = "EXPIRED"
            info.valid_until = time_info
        else:
            if _VALID_FOR in time_info and "]" in time_info:
                start = time_info.index(_VALID_FOR) + len(_VALID_FOR)
                end = time_info.index("]")
                if start < end:
                    info.time_remaining = time_info[start:end]
            bracket = time_info.find(" [")
            info.valid_until = time_info[:bracket].strip() if bracket > 0 else time_info
        break
    return info


def parse_cluster_names(output: Any) -> List[str]:
    """Cluster names from 'tsh kube ls --format=json'; raise ValueError on bad JSON."""
    data = json.loads(output)
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError("cluster list must be a JSON array")
    names: List[str] = []
    for entry in data:
        if entry is None:
            continue
        if not isinstance(entry, dict):
            raise ValueError("cluster entries must be JSON objects")
        name = entry.get("kube_cluster_name")
        if isinstance(name, str):
            names.append(name)
    return names


def _combined_output(args: Sequence[str]) -> Optional[str]:
    """Run a command and return stdout and stderr together, or None if it failed."""
    try:
        result = subprocess.run(
            list(args),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
    except OSError:
        return None
    if result.returncode != 0:
        return None
    return result.stdout.decode(errors="replace")


def _output(args: Sequence[str]) -> bytes:
    """Run a command and return its stdout, raising TeleportError on failure."""
    try:
        result = subprocess.run(
            list(args),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
        )
    except OSError as exc:
        raise TeleportError(str(exc)) from exc
    if result.returncode != 0:
        raise TeleportError(f"exit status {result.returncode}")
    return result.stdout


def _run_interactive(args: Sequence[str]) -> None:
    """Run a command attached to the terminal, raising TeleportError on failure."""
    try:
        result = subprocess.run(list(args), check=False)
    except OSError as exc:
        raise TeleportError(f"failed to run {args[0]}: {exc}") from exc
    if result.returncode != 0:
        raise TeleportError(f"{args[0]} exited with status {result.returncode}")


class TeleportClient:
    """Runs tsh for configured environments, installing the right version as needed."""

    def __init__(
        self,
        config_manager: _ConfigManager,
        installer: Optional[TSHInstaller] = None,
        detector: Optional[VersionDetector] = None,
    ) -> None:
        self.config_manager = config_manager
        if installer is None:
            try:
                installer = TSHInstaller()
            except Exception as exc:
                raise TeleportError(f"failed to create tsh installer: {exc}") from exc
        self.installer = installer
        self.detector = detector if detector is not None else VersionDetector()

    def _environment(self, env: str) -> Optional[_Environment]:
        try:
            config = self.config_manager.load()
        except Exception:
            return None
        return config.environments.get(env)

    def _required_tsh_version(self, env: str) -> str:
        environment = self._environment(env)
        if environment is None:
            return ""
        return environment.tsh_version or ""

    def _tsh_path(self, env: str) -> Optional[str]:
        environment = self._environment(env)
        if environment is None or not environment.tsh_version:
            return None
        if self.installer.is_version_installed(environment.tsh_version):
            return self.installer.tsh_path(environment.tsh_version)
        return None

    def _ready_tsh_path(self, env: str) -> str:
        try:
            self.ensure_tsh_version(env)
        except TeleportError as exc:
            raise TeleportError(
                f"failed to ensure tsh version for environment {env}: {exc}"
            ) from exc
        tsh = self._tsh_path(env)
        if tsh is None:
            raise TeleportError(f"no tsh path available for environment {env}")
        return tsh

    def is_authenticated(self, proxy: str) -> bool:
        """Whether the tsh on PATH reports a login to the proxy."""
        output = _combined_output(["tsh", "status", f"--proxy={proxy}"])
        return output is not None and is_logged_in(output)

    def is_authenticated_with_env(self, env: str, proxy: str) -> bool:
        """Whether the environment's tsh reports a login, installing it if needed."""
        try:
            self.ensure_tsh_version(env)
        except TeleportError as exc:
            print(f"⚠️  Failed to ensure tsh version for environment {env}: {exc}")
            return False
        tsh = self._tsh_path(env)
        if tsh is None:
            print(f"⚠️  No tsh path available for environment {env}")
            return False
        output = _combined_output([tsh, "status", f"--proxy={proxy}"])
        return output is not None and is_logged_in(output)

    def check_authentication_status(self, env: str, proxy: str) -> bool:
        """Whether the environment's tsh reports a login, without installing anything."""
        tsh = self._tsh_path(env)
        if tsh is None:
            return False
        if not self.installer.is_version_installed(self._required_tsh_version(env)):
            return False
        output = _combined_output([tsh, "status", f"--proxy={proxy}"])
        return output is not None and is_logged_in(output)

    def session_info(self, env: str, proxy: str) -> SessionInfo:
        """Details of the environment's login session."""
        tsh = self._tsh_path(env)
        if tsh is None:
            return SessionInfo()
        if not self.installer.is_version_installed(self._required_tsh_version(env)):
            return SessionInfo()
        output = _combined_output([tsh, "status", f"--proxy={proxy}"])
        if output is None:
            return SessionInfo()
        return parse_session_info(output)

    def login(self, proxy: str) -> None:
        """Log in to the proxy with the tsh on PATH."""
        _run_interactive(["tsh", "login", f"--proxy={proxy}"])

    def login_with_env(self, env: str, proxy: str) -> None:
        """Log in to the proxy with the environment's tsh."""
        tsh = self._ready_tsh_path(env)
        _run_interactive([tsh, "login", f"--proxy={proxy}"])

    def kube_login(self, proxy: str, cluster: str) -> None:
        """Log in to a Kubernetes cluster with the tsh on PATH."""
        _run_interactive(["tsh", f"--proxy={proxy}", "kube", "login", cluster])

    def kube_login_with_env(self, env: str, proxy: str, cluster: str) -> None:
        """Log in to a Kubernetes cluster with the environment's tsh."""
        tsh = self._ready_tsh_path(env)
        _run_interactive([tsh, f"--proxy={proxy}", "kube", "login", cluster])

    def clusters(self, env: str) -> List[str]:
        """Kubernetes clusters available in an environment."""
        environment = self.config_manager.get_environment(env)
        tsh = self._ready_tsh_path(env)
        try:
            output = _output([tsh, f"--proxy={environment.proxy}", "kube", "ls", "--format=json"])
        except TeleportError as exc:
            raise TeleportError(f"failed to get clusters: {exc}") from exc
        try:
            return parse_cluster_names(output)
        except ValueError as exc:
            raise TeleportError(f"failed to parse cluster output: {exc}") from exc

    def clusters_for_completion(self, env: str) -> List[str]:
        """Cluster names for shell completion, or a single explanatory message."""
        try:
            environment = self.config_manager.get_environment(env)
        except Exception:
            return [f"❌ Environment '{env}' not found"]

        required = self._required_tsh_version(env)
        if not required:
            try:
                version = self.detector.detect_tsh_version(environment.proxy)
            except VersionDetectionError:
                return ["⚠️  No tsh version configured and auto-detection failed"]
            try:
                self.config_manager.update_environment_tsh_version(env, version)
            except Exception:
                return ["⚠️  Auto-detected version but failed to save config"]
            required = version

        if not self.installer.is_version_installed(required):
            return [f"📦 tsh v{required} not installed - run: tkube install-tsh {required}"]

        tsh = self._tsh_path(env)
        if tsh is None:
            return [f"⚠️  No tsh path available for environment '{env}'"]

        if not self.check_authentication_status(env, environment.proxy):
            return [f"🔐 Not authenticated - run: tkube {env} <cluster> to authenticate"]

        try:
            output = _output([tsh, f"--proxy={environment.proxy}", "kube", "ls", "--format=json"])
        except TeleportError:
            return [f"⚠️  Failed to get clusters - check connection to {environment.proxy}"]
        try:
            names = parse_cluster_names(output)
        except ValueError:
            return [f"⚠️  Failed to parse cluster list for environment '{env}'"]
        if not names:
            return [f"ℹ️  No clusters available in environment '{env}'"]
        return names

    def is_tsh_version_installed(self, version: str) -> bool:
        """Whether the version's tsh exists and answers 'version --client'."""
        return _combined_output([self.installer.tsh_path(version), "version", "--client"]) is not None

    def tsh_version_info(self, tsh_path: str) -> str:
        """The first line of 'tsh version --client', or 'unknown version'."""
        try:
            output = _output([tsh_path, "version", "--client"])
        except TeleportError:
            return "unknown version"
        return output.decode(errors="replace").split("\n")[0].strip()

    def installed_tsh_versions(self) -> List[str]:
        """The tsh versions installed and working."""
        return self.installer.installed_versions()

    def install_tsh_version(self, version: str) -> None:
        """Download and install a tsh version."""
        self.installer.install_tsh(version)

    def uninstall_tsh_version(self, version: str) -> None:
        """Remove an installed tsh version."""
        self.installer.uninstall_version(version)

    def ensure_tsh_version(self, env: str) -> None:
        """Make sure the environment's tsh version is known and installed."""
        try:
            config = self.config_manager.load()
        except Exception as exc:
            raise TeleportError(f"failed to load config: {exc}") from exc

        environment = config.environments.get(env)
        if environment is None:
            raise TeleportError(f"environment '{env}' not found")

        version = environment.tsh_version or ""
        if not version:
            try:
                version = self.detector.detect_tsh_version(environment.proxy)
            except VersionDetectionError as exc:
                raise TeleportError(
                    f"no tsh version configured for environment '{env}' "
                    f"and auto-detection failed: {exc}"
                ) from exc
            try:
                self.config_manager.update_environment_tsh_version(env, version)
            except Exception as exc:
                raise TeleportError(f"failed to update config with detected version: {exc}") from exc

        if not self.installer.is_version_installed(version):
            try:
                self.installer.install_tsh(version)
            except Exception as exc:
                raise TeleportError(f"failed to install tsh version {version}: {exc}") from exc