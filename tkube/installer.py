"""Download, install and manage per-version tsh clients."""

from __future__ import annotations

import os
import platform
import shutil
import stat
import subprocess
import tarfile
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

BASE_URL = "https://cdn.teleport.dev"
DOWNLOAD_TIMEOUT = 600.0

_MACHINE_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
    "armv6l": "arm",
}


class InstallError(Exception):
    """Raised when a tsh version cannot be installed, found or removed."""


@dataclass(frozen=True)
class PackageInfo:
    """Where to download a Teleport package and what kind of archive it is."""

    version: str
    url: str
    package_ext: str


def _current_system() -> str:
    return platform.system().lower()


def _arch_name(machine: str) -> str:
    arch = _MACHINE_ALIASES.get(machine.lower(), machine.lower())
    return "x86_64" if arch == "amd64" else arch


def _strip_prefix(text: str, prefix: str) -> str:
    return text[len(prefix):] if text.startswith(prefix) else text


def _strip_suffix(text: str, suffix: str) -> str:
    return text[: -len(suffix)] if suffix and text.endswith(suffix) else text


def package_info(
    version: str, system: Optional[str] = None, machine: Optional[str] = None
) -> PackageInfo:
    """Describe the tar.gz package of a version for the given platform."""
    version = _strip_prefix(version, "v")
    system = (system or _current_system()).lower()
    arch = _arch_name(machine or platform.machine())

    if system in ("darwin", "linux"):
        name = f"teleport-v{version}-{system}-{arch}-bin.tar.gz"
    else:
        raise InstallError(f"unsupported operating system: {system}")

    return PackageInfo(version=version, url=f"{BASE_URL}/{name}", package_ext="tar.gz")


def pkg_package_info(version: str) -> PackageInfo:
    """Describe the macOS .pkg package of a version."""
    version = _strip_prefix(version, "v")
    major = version.split(".")[0]
    # The major version is compared as a string, as the naming rule was defined.
    if major >= "17":
        name = f"teleport-{version}.pkg"
    else:
        name = f"tsh-{version}.pkg"
    return PackageInfo(version=version, url=f"{BASE_URL}/{name}", package_ext="pkg")


def version_from_package_path(path: str) -> str:
    """Take the version out of a name like 'teleport-17.7.1.pkg' or 'tsh-16.5.12.pkg'."""
    name = os.path.basename(path)
    name = _strip_suffix(name, ".pkg")
    name = _strip_suffix(name, ".tar.gz")
    name = _strip_prefix(name, "teleport-")
    return _strip_prefix(name, "tsh-")


def extract_tar_gz(archive_path: str, dest_dir: str) -> None:
    """Unpack the directories and regular files of a gzip-compressed tar archive."""
    dest_root = os.path.realpath(dest_dir)
    try:
        with tarfile.open(archive_path, "r:gz") as archive:
            for member in archive:
                path = os.path.normpath(os.path.join(dest_dir, member.name))
                resolved = os.path.realpath(path)
                if os.path.commonpath([dest_root, resolved]) != dest_root:
                    raise InstallError(f"archive entry escapes destination: {member.name}")
                try:
                    os.makedirs(os.path.dirname(path), mode=0o755, exist_ok=True)
                except OSError as exc:
                    raise InstallError(f"failed to create directory: {exc}") from exc

                mode = member.mode & 0o7777
                if member.isdir():
                    try:
                        os.makedirs(path, mode=mode, exist_ok=True)
                    except OSError as exc:
                        raise InstallError(f"failed to create directory: {exc}") from exc
                elif member.isreg():
                    source = archive.extractfile(member)
                    if source is None:
                        raise InstallError(f"failed to extract file: {member.name}")
                    try:
                        with source, open(path, "wb") as target:
                            shutil.copyfileobj(source, target)
                    except OSError as exc:
                        raise InstallError(f"failed to extract file: {exc}") from exc
                    try:
                        os.chmod(path, mode)
                    except OSError as exc:
                        raise InstallError(f"failed to set file permissions: {exc}") from exc
    except (tarfile.TarError, EOFError) as exc:
        raise InstallError(f"failed to read tar: {exc}") from exc
    except OSError as exc:
        raise InstallError(f"failed to open tar file: {exc}") from exc


def _walk(root: str) -> Iterator[Tuple[str, os.stat_result]]:
    """Yield every path under root, root first, in lexical pre-order, without following links."""
    info = os.lstat(root)
    yield root, info
    if stat.S_ISDIR(info.st_mode):
        for name in sorted(os.listdir(root)):
            yield from _walk(os.path.join(root, name))


def find_tsh_in_directory(directory: str, system: Optional[str] = None) -> str:
    """Locate a tsh binary, or on macOS a tsh.app bundle, below a directory."""
    system = (system or _current_system()).lower()
    tsh_paths: List[str] = []
    app_bundles: List[str] = []

    try:
        for path, info in _walk(directory):
            name = os.path.basename(path)
            if stat.S_ISDIR(info.st_mode):
                if name.endswith("tsh.app"):
                    app_bundles.append(path)
            elif name == "tsh" and (info.st_mode & 0o111 or system == "darwin"):
                tsh_paths.append(path)
    except OSError as exc:
        raise InstallError(str(exc)) from exc

    if system == "darwin":
        for app in app_bundles:
            if os.path.exists(os.path.join(app, "Contents", "MacOS", "tsh")):
                return app
        for path in tsh_paths:
            if "teleport/tsh" in path and ".app" not in path:
                return path

    if not tsh_paths and not app_bundles:
        raise InstallError(f"tsh binary not found in directory {directory}")
    if tsh_paths:
        return tsh_paths[0]
    raise InstallError("no suitable tsh found")


def _copy_directory(src: str, dst: str) -> None:
    for path, info in _walk(src):
        rel = os.path.relpath(path, src)
        target = os.path.normpath(os.path.join(dst, rel))
        if stat.S_ISDIR(info.st_mode):
            os.makedirs(target, mode=stat.S_IMODE(info.st_mode), exist_ok=True)
        else:
            os.makedirs(os.path.dirname(target), mode=0o755, exist_ok=True)
            shutil.copyfile(path, target)
            os.chmod(target, stat.S_IMODE(info.st_mode))


def copy_tsh_to_destination(src_path: str, dest_dir: str) -> None:
    """Copy a tsh binary, or a whole .app bundle plus a tsh symlink, into dest_dir."""
    if not os.path.exists(src_path):
        raise InstallError(f"failed to stat source: {src_path}")

    if os.path.isdir(src_path):
        app_path = os.path.join(dest_dir, os.path.basename(src_path))
        try:
            _copy_directory(src_path, app_path)
        except OSError as exc:
            raise InstallError(f"failed to copy app bundle: {exc}") from exc

        executable = os.path.join(app_path, "Contents", "MacOS", "tsh")
        link_path = os.path.join(dest_dir, "tsh")
        if os.path.lexists(link_path):
            try:
                os.remove(link_path)
            except OSError:
                pass
        try:
            os.symlink(executable, link_path)
        except OSError as exc:
            raise InstallError(f"failed to create symlink: {exc}") from exc
        return

    dest_tsh = os.path.join(dest_dir, "tsh")
    try:
        shutil.copyfile(src_path, dest_tsh)
    except OSError as exc:
        raise InstallError(f"failed to copy tsh binary: {exc}") from exc
    try:
        os.chmod(dest_tsh, 0o755)
    except OSError as exc:
        raise InstallError(f"failed to make tsh executable: {exc}") from exc


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


class TSHInstaller:
    """Keeps one tsh client per version under a base directory."""

    def __init__(self, base_dir: Optional[str] = None) -> None:
        if base_dir is None:
            try:
                home = str(Path.home())
            except RuntimeError as exc:
                raise InstallError(f"failed to get home directory: {exc}") from exc
            base_dir = os.path.join(home, ".tkube", "tsh")
        self.base_dir = str(base_dir)
        self.system = _current_system()
        self.machine = platform.machine()

    def install_tsh(self, version: str) -> None:
        """Download and install a tsh version, trying tar.gz and then, on macOS, .pkg."""
        version_dir = os.path.join(self.base_dir, version)
        try:
            os.makedirs(version_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise InstallError(f"failed to create version directory: {exc}") from exc

        last_error: Optional[InstallError] = None
        try:
            info = package_info(version, self.system, self.machine)
        except InstallError as exc:
            last_error = exc
        else:
            try:
                self._try_install_package(info, version_dir)
                return
            except InstallError as exc:
                last_error = exc

        if self.system == "darwin":
            try:
                self._try_install_package(pkg_package_info(version), version_dir)
                return
            except InstallError as exc:
                last_error = exc

        raise InstallError(f"failed to install tsh version {version}: {last_error}") from last_error

    def _try_install_package(self, info: PackageInfo, version_dir: str) -> None:
        package_path = os.path.join(version_dir, f"teleport-{info.version}.{info.package_ext}")
        try:
            self._download(info.url, package_path)
        except InstallError as exc:
            raise InstallError(f"failed to download package: {exc}") from exc

        try:
            if info.package_ext == "pkg":
                self._extract_from_pkg(package_path, version_dir)
            elif info.package_ext == "tar.gz":
                self._extract_from_tar_gz(package_path, version_dir)
            else:
                raise InstallError(f"unsupported package type: {info.package_ext}")
        except InstallError as exc:
            _remove_quietly(package_path)
            raise InstallError(f"failed to extract package: {exc}") from exc

        tsh = os.path.join(version_dir, "tsh")
        if not os.path.exists(tsh):
            _remove_quietly(package_path)
            raise InstallError(f"tsh binary not found after installation: {tsh}")
        try:
            os.chmod(tsh, 0o755)
        except OSError as exc:
            raise InstallError(f"failed to make tsh executable: {exc}") from exc
        _remove_quietly(package_path)

    @staticmethod
    def _download(url: str, dest_path: str) -> None:
        try:
            with urllib.request.urlopen(url, timeout=DOWNLOAD_TIMEOUT) as response:
                status = getattr(response, "status", 200)
                if status != 200:
                    raise InstallError(f"download failed with status: {status}")
                try:
                    with open(dest_path, "wb") as target:
                        shutil.copyfileobj(response, target)
                except OSError as exc:
                    raise InstallError(f"failed to save file: {exc}") from exc
        except urllib.error.HTTPError as exc:
            raise InstallError(f"download failed with status: {exc.code}") from exc
        except (OSError, ValueError) as exc:
            raise InstallError(f"failed to download: {exc}") from exc

    def _extract_from_pkg(self, pkg_path: str, dest_dir: str) -> None:
        temp_dir = os.path.join(dest_dir, "temp_extract")
        try:
            os.makedirs(temp_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise InstallError(f"failed to create temp directory: {exc}") from exc
        try:
            print("🔧 Extracting .pkg file...")
            extracted = os.path.join(temp_dir, "extracted")
            try:
                self._run_command("pkgutil", "--expand-full", pkg_path, extracted)
            except InstallError as exc:
                raise InstallError(f"failed to extract pkg: {exc}") from exc
            try:
                tsh = find_tsh_in_directory(extracted, self.system)
            except InstallError as exc:
                raise InstallError(f"tsh not found in package: {exc}") from exc
            try:
                copy_tsh_to_destination(tsh, dest_dir)
            except InstallError as exc:
                raise InstallError(f"failed to copy tsh: {exc}") from exc
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def _extract_from_tar_gz(self, archive_path: str, dest_dir: str) -> None:
        temp_dir = os.path.join(dest_dir, "temp_extract")
        try:
            os.makedirs(temp_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise InstallError(f"failed to create temp directory: {exc}") from exc
        try:
            try:
                extract_tar_gz(archive_path, temp_dir)
            except InstallError as exc:
                raise InstallError(f"failed to extract tar.gz: {exc}") from exc
            try:
                tsh = find_tsh_in_directory(temp_dir, self.system)
            except InstallError as exc:
                raise InstallError(f"tsh not found in package: {exc}") from exc
            copy_tsh_to_destination(tsh, dest_dir)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    @staticmethod
    def _run_command(name: str, *args: str) -> None:
        try:
            result = subprocess.run(
                [name, *args], stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
            )
        except OSError as exc:
            raise InstallError(f"command '{name} {list(args)}' failed: {exc}") from exc
        if result.returncode != 0:
            output = result.stdout.decode(errors="replace")
            raise InstallError(
                f"command '{name} {list(args)}' failed: exit status {result.returncode}\n"
                f"Output: {output}"
            )

    @staticmethod
    def _verify_tsh_binary(tsh: str) -> bool:
        try:
            info = os.stat(tsh)
        except OSError:
            return False
        if not info.st_mode & 0o111:
            return False
        try:
            result = subprocess.run(
                [tsh, "version", "--client"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError:
            return False
        return result.returncode == 0

    def is_version_installed(self, version: str) -> bool:
        """Whether the version's tsh exists, is executable and runs."""
        tsh = self.tsh_path(version)
        if not os.path.exists(tsh):
            return False
        return self._verify_tsh_binary(tsh)

    def installed_versions(self) -> List[str]:
        """Names of the version directories holding a working tsh, sorted."""
        if not os.path.exists(self.base_dir):
            return []
        try:
            names = sorted(os.listdir(self.base_dir))
        except OSError as exc:
            raise InstallError(f"failed to read tsh directory: {exc}") from exc
        return [
            name
            for name in names
            if os.path.isdir(os.path.join(self.base_dir, name)) and self.is_version_installed(name)
        ]

    def uninstall_version(self, version: str) -> None:
        """Remove a version's directory."""
        version_dir = os.path.join(self.base_dir, version)
        if not os.path.lexists(version_dir):
            raise InstallError(f"version {version} is not installed")
        try:
            if os.path.isdir(version_dir) and not os.path.islink(version_dir):
                shutil.rmtree(version_dir)
            else:
                os.remove(version_dir)
        except OSError as exc:
            raise InstallError(f"failed to remove version directory: {exc}") from exc

    def tsh_path(self, version: str) -> str:
        """Where the tsh of a version lives."""
        return os.path.join(self.base_dir, version, "tsh")

    def auto_install_for_environment(self, env_name: str, required_version: str) -> None:
        """Install the required version unless it is already installed."""
        if self.is_version_installed(required_version):
            return
        self.install_tsh(required_version)

    def tsh_version_info(self, tsh_path: str) -> str:
        """The first line of 'tsh version --client', or a note on where tsh is."""
        try:
            result = subprocess.run(
                [tsh_path, "version", "--client"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError:
            return f"installed at {tsh_path} (version check failed)"
        if result.returncode != 0:
            return f"installed at {tsh_path} (version check failed)"
        first_line = result.stdout.decode(errors="replace").split("\n")[0].strip()
        if first_line:
            return first_line
        return f"installed at {tsh_path}"