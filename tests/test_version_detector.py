import json
import urllib.error
import urllib.request

import pytest

from tkube.version_detector import (
    ServerInfo,
    VersionDetectionError,
    VersionDetector,
    extract_version_from_hostname,
    normalize_version,
    version_from_environment,
)


class _FakeResponse:
    def __init__(self, body, status=200):
        self.status = status
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def offline(monkeypatch):
    requests = []

    def fail(request, timeout=None):
        requests.append(request)
        raise urllib.error.URLError("network disabled in tests")

    monkeypatch.setattr(urllib.request, "urlopen", fail)
    return requests


def _serve(monkeypatch, body, status=200):
    requests = []

    def respond(request, timeout=None):
        requests.append(request)
        return _FakeResponse(body, status)

    monkeypatch.setattr(urllib.request, "urlopen", respond)
    return requests


@pytest.mark.parametrize(
    "proxy,expected",
    [
        ("teleport-v14.2.1.prod.company.com:443", "14.2.1"),
        ("teleport-14.2.1.prod.company.com:443", "14.2.1"),
        ("teleport14.prod.company.com:443", "14"),
        ("teleport-14.2.prod.company.com:443", "14.2"),
        ("tsh-v14.0.0.test.company.com:443", "14.0.0"),
        ("teleport-v17.7.1.prod.company.com:443", "17.7.1"),
        ("teleport-17.7.1.prod.company.com:443", "17.7.1"),
        ("teleport17.prod.company.com:443", "17"),
        ("teleport-17.7.prod.company.com:443", "17.7"),
        ("tsh-v17.7.1.test.company.com:443", "17.7.1"),
        ("tsh-17.7.1.test.company.com:443", "17.7.1"),
        ("teleport-v14.0.0.test.com:443", "14.0.0"),
        ("teleport-14.0.0.test.com:443", "14.0.0"),
        ("teleport-teleport-14.0.0.test.com:443", "14.0.0"),
        ("tsh-tsh-14.0.0.test.com:443", "14.0.0"),
        ("teleport-v14.prod.company.com:443", "14"),
        ("teleport14.test.company.com:443", "14"),
    ],
)
def test_detect_from_hostname(offline, proxy, expected):
    detector = VersionDetector(environ={})
    assert detector.detect_tsh_version(proxy) == expected


@pytest.mark.parametrize(
    "proxy",
    [
        "teleport.prod.company.com:443",
        "auth.prod.company.com:443",
        "invalid-proxy",
        "invalid-proxy-that-does-not-exist:443",
        "",
        "localhost:99999",
        "127.0.0.1:1",
    ],
)
def test_detect_fails_without_version(offline, proxy):
    detector = VersionDetector(environ={})
    with pytest.raises(VersionDetectionError, match="failed to detect tsh version"):
        detector.detect_tsh_version(proxy)


def test_detect_queries_ping_endpoint_first(offline):
    version = VersionDetector(environ={}).detect_tsh_version(
        "teleport-v14.prod.company.com:443"
    )
    assert version == "14"
    assert len(offline) == 1
    assert offline[0].full_url == "https://teleport-v14.prod.company.com:443/webapi/ping"


@pytest.mark.parametrize(
    "name", ["TELEPORT_VERSION", "TSH_VERSION", "TELEPORT_TSH_VERSION"]
)
def test_detect_uses_global_environment(offline, name):
    detector = VersionDetector(environ={name: "v16.5.12"})
    assert detector.detect_tsh_version("teleport.prod.company.com:443") == "16.5.12"


def test_detect_uses_teleport_version_env(offline):
    detector = VersionDetector(environ={"TELEPORT_VERSION": "v15.0.0"})
    assert detector.detect_tsh_version("unknown.proxy.com:443") == "15.0.0"


def test_detect_uses_proxy_specific_environment(offline):
    detector = VersionDetector(environ={"TEST_PROXY_COM_443_TSH_VERSION": "15.0.0"})
    assert detector.detect_tsh_version("test.proxy.com:443") == "15.0.0"


def test_hostname_takes_priority_over_environment(offline):
    detector = VersionDetector(environ={"TELEPORT_VERSION": "15.0.0"})
    assert detector.detect_tsh_version("teleport-v17.7.1.prod.company.com:443") == "17.7.1"


def test_server_version_takes_priority(monkeypatch):
    body = json.dumps({"server_version": "v17.7.1", "version": "1.0.0"}).encode()
    requests = _serve(monkeypatch, body)
    detector = VersionDetector(environ={})
    assert detector.detect_tsh_version("teleport-v14.example.com") == "17.7.1"
    request = requests[0]
    assert request.full_url == "https://teleport-v14.example.com/webapi/ping"
    assert request.get_header("User-agent") == "tkube/1.1.0"
    assert request.get_header("Accept") == "application/json"


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"server_version": "16.5.12"}, "16.5.12"),
        ({"version": "v15.1.2"}, "15.1.2"),
        ({"build": "teleport-14.0.0"}, "14.0.0"),
        ({"server_version": "", "version": "", "build": "tsh-13.1.0"}, "13.1.0"),
    ],
)
def test_query_endpoint_field_priority(monkeypatch, payload, expected):
    _serve(monkeypatch, json.dumps(payload).encode())
    detector = VersionDetector(environ={})
    assert detector.query_endpoint("https://proxy.example.com/webapi/ping") == expected


@pytest.mark.parametrize(
    "body,status",
    [
        (b"{}", 200),
        (b"not json", 200),
        (b"[1, 2]", 200),
        (b'{"server_version": 17}', 200),
        (b'{"server_version": "17.0.0"}', 204),
    ],
)
def test_query_endpoint_without_version(monkeypatch, body, status):
    _serve(monkeypatch, body, status)
    detector = VersionDetector(environ={})
    with pytest.raises(VersionDetectionError, match="no version information found"):
        detector.query_endpoint("https://proxy.example.com/webapi/ping")


def test_query_endpoint_http_error(monkeypatch):
    def not_found(request, timeout=None):
        raise urllib.error.HTTPError(request.full_url, 404, "Not Found", {}, None)

    monkeypatch.setattr(urllib.request, "urlopen", not_found)
    with pytest.raises(VersionDetectionError):
        VersionDetector(environ={}).query_endpoint("https://proxy.example.com/webapi/ping")


def test_version_from_server_reports_endpoint(offline):
    detector = VersionDetector(environ={})
    with pytest.raises(VersionDetectionError, match="https://proxy.example.com/webapi/ping"):
        detector.version_from_server("proxy.example.com")


def test_server_empty_falls_back_to_hostname(monkeypatch):
    _serve(monkeypatch, b"{}")
    detector = VersionDetector(environ={})
    assert detector.detect_tsh_version("teleport-14.2.example.com") == "14.2"


def test_extract_version_from_proxy_error_message():
    detector = VersionDetector(environ={})
    with pytest.raises(VersionDetectionError, match="could not extract version from proxy: auth.example.com"):
        detector.extract_version_from_proxy("auth.example.com")


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("v14.0.0", "14.0.0"),
        ("14.0.0", "14.0.0"),
        ("teleport-14.0.0", "14.0.0"),
        ("tsh-14.0.0", "14.0.0"),
        ("v17.7.1", "17.7.1"),
        ("vv1", "v1"),
    ],
)
def test_normalize_version(raw, expected):
    assert normalize_version(raw) == expected


def test_extract_version_from_hostname_none():
    assert extract_version_from_hostname("teleport.prod.company.com:443") is None


def test_version_from_environment_order():
    environ = {"TSH_VERSION": "2.0.0", "TELEPORT_VERSION": "1.0.0"}
    assert version_from_environment("x.example.com", environ) == "1.0.0"


def test_version_from_environment_skips_empty_values():
    environ = {"TELEPORT_VERSION": "", "TELEPORT_TSH_VERSION": "v3.0.0"}
    assert version_from_environment("x.example.com", environ) == "3.0.0"


def test_version_from_environment_proxy_teleport_key():
    environ = {"PROXY_EXAMPLE_COM_443_TELEPORT_VERSION": "v12.1.0"}
    assert version_from_environment("proxy.example.com:443", environ) == "12.1.0"


def test_version_from_environment_missing():
    assert version_from_environment("proxy.example.com:443", {}) is None


def test_server_info_from_json():
    info = ServerInfo.from_json({"server_version": "v17.7.1", "build": "x"})
    assert info == ServerInfo(server_version="v17.7.1", version="", build="x")
    assert info.reported_version == "17.7.1"


def test_server_info_rejects_non_object():
    with pytest.raises(ValueError):
        ServerInfo.from_json(["17.0.0"])


def test_server_info_without_version():
    assert ServerInfo().reported_version is None


def test_suggest_installation_contents():
    suggestion = VersionDetector(environ={}).suggest_installation("14.0.0")
    assert "14.0.0" in suggestion
    assert "tkube config install-tsh 14.0.0" in suggestion
    assert "tkube config auto-install-tsh 14.0.0" in suggestion


@pytest.mark.parametrize("version", ["14.0.0", "15.1.2", "16.0.0-beta.1", "17.7.1"])
def test_suggest_installation_formatting(version):
    suggestion = VersionDetector(environ={}).suggest_installation(version)
    assert suggestion.startswith(f"💡 Required tsh version {version} is not installed.")
    assert "install" in suggestion
    assert "tkube" in suggestion
    assert suggestion.count(version) == 3