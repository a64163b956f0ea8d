# tkube

`tkube` is a library that keeps a separate Teleport `tsh` client for every
environment you work with. Different Teleport clusters often need different
client versions. The library works out which version a proxy wants, downloads
and unpacks that release into `~/.tkube/tsh/<version>/tsh`, and runs the right
binary when you check a session, log in, or list Kubernetes clusters.

It uses only the Python standard library (Python 3.10 or later) and supports
Linux and macOS.

## Modules

- `tkube.version_detector`: `VersionDetector`, `ServerInfo`,
  `VersionDetectionError`, and the helpers `normalize_version`,
  `extract_version_from_hostname` and `version_from_environment`.
- `tkube.installer`: `TSHInstaller`, `PackageInfo`, `InstallError`, and the
  helpers `package_info`, `pkg_package_info`, `version_from_package_path`,
  `extract_tar_gz`, `find_tsh_in_directory` and `copy_tsh_to_destination`.
- `tkube.teleport`: `TeleportClient`, `SessionInfo`, `TeleportError`, and the
  parsers `is_logged_in`, `parse_session_info` and `parse_cluster_names`.

## Detecting the tsh version for a proxy

`VersionDetector.detect_tsh_version` first asks the proxy's
`https://<proxy>/webapi/ping` endpoint and uses `server_version`, then
`version`, then `build` from the JSON reply. If that fails, it looks for a
version in the host name (`teleport-v17.7.1.example.com`,
`teleport14.example.com`, `tsh-16.5.12.example.com`), and then in the
environment variables `TELEPORT_VERSION`, `TSH_VERSION`,
`TELEPORT_TSH_VERSION`, or the proxy-specific `<PROXY>_TELEPORT_VERSION` and
`<PROXY>_TSH_VERSION` (the proxy upper-cased, with `.` and `:` turned into
`_`). If nothing turns up, it raises `VersionDetectionError`.

```python
from tkube.version_detector import VersionDetector, VersionDetectionError

detector = VersionDetector(timeout=5.0)
try:
    version = detector.detect_tsh_version("teleport-v17.7.1.example.com:443")
except VersionDetectionError as exc:
    print(f"could not detect: {exc}")
else:
    print(version)  # "17.7.1" when the server cannot be reached
```

`VersionDetector` takes an optional `environ` mapping to use in place of
`os.environ`. `normalize_version` strips a leading `v`, `teleport-` and `tsh-`.
`suggest_installation(version)` returns a ready-made hint message for users.

## Installing tsh clients

```python
from tkube.installer import TSHInstaller, InstallError

installer = TSHInstaller()          # defaults to ~/.tkube/tsh
if not installer.is_version_installed("17.7.1"):
    try:
        installer.install_tsh("17.7.1")
    except InstallError as exc:
        print(exc)

print(installer.tsh_path("17.7.1"))
print(installer.installed_versions())
print(installer.tsh_version_info(installer.tsh_path("17.7.1")))
installer.uninstall_version("17.7.1")
```

Pass `TSHInstaller(base_dir=...)` to keep clients somewhere else.

Releases are fetched from `https://cdn.teleport.dev` as `tar.gz` archives for
the running platform; on macOS a `.pkg` download is tried as a fallback and is
unpacked with `pkgutil`. A version only counts as installed when its `tsh` is
executable and `tsh version --client` succeeds. `installed_versions` returns
such versions in sorted order, and `uninstall_version` raises `InstallError`
for a version that has no directory.

## Sessions and clusters

`TeleportClient` ties the installer and the detector to your environment
configuration. It needs a configuration manager object that you supply, with:

- `load()` returning an object whose `environments` maps environment names to
  objects with `proxy` and `tsh_version` attributes;
- `get_environment(env)` returning one such object, or raising when the
  environment is unknown;
- `update_environment_tsh_version(env, version)` recording an auto-detected
  version.

```python
from dataclasses import dataclass, field

from tkube.teleport import TeleportClient, TeleportError


@dataclass
class Environment:
    proxy: str
    tsh_version: str = ""


@dataclass
class Config:
    environments: dict = field(default_factory=dict)


class MemoryConfigManager:
    def __init__(self, config):
        self.config = config

    def load(self):
        return self.config

    def get_environment(self, env):
        return self.config.environments[env]

    def update_environment_tsh_version(self, env, version):
        self.config.environments[env].tsh_version = version


manager = MemoryConfigManager(
    Config({"prod": Environment("teleport.example.com:443", "17.7.1")})
)
client = TeleportClient(manager)

info = client.session_info("prod", "teleport.example.com:443")
if info.is_authenticated and not info.is_expired:
    print(info.valid_until, info.time_remaining)

try:
    client.ensure_tsh_version("prod")
    print(client.clusters("prod"))
except TeleportError as exc:
    print(exc)
```

- `ensure_tsh_version(env)` detects and records a missing version, then
  installs it if needed; it raises `TeleportError` on failure.
- `is_authenticated_with_env`, `login_with_env` and `kube_login_with_env` call
  `ensure_tsh_version` first, so they may download a client.
- `check_authentication_status` and `session_info` never install anything.
- `is_authenticated`, `login` and `kube_login` use the `tsh` found on `PATH`.
- The login methods run `tsh` attached to your terminal and raise
  `TeleportError` if it exits with a non-zero status.
- `clusters_for_completion` does not raise. When something is missing, such as
  an unknown environment, a client that is not installed, or no login, it
  returns a single explanatory message instead of cluster names, which suits
  shell completion.

You can also parse output from `tsh` directly with `is_logged_in`,
`parse_session_info` and `parse_cluster_names`.

## What this package does not do

This package is a library only. It has no command-line program and no
configuration store. You supply the configuration manager described above.
Some messages it returns (from `suggest_installation` and
`clusters_for_completion`) mention `tkube ...` commands. This package does not
provide those commands.