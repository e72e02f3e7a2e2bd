import hashlib
import json
import unittest

import httpx

from skillpm.config import SourceConfig
from skillpm.errors import ErrorCode, SkillpmError
from skillpm.registry import RegistryClient, RegistryProvider, parse_search_response, retry_delay
from skillpm.sources import ResolveRequest

BASE = "https://reg.example.test/"


def _client(handler, sleeps: list[float] | None = None) -> RegistryClient:
    return RegistryClient(
        transport=httpx.MockTransport(handler),
        sleep=(sleeps.append if sleeps is not None else (lambda _s: None)),
    )


def _source(**kwargs) -> SourceConfig:
    values = {"name": "clawhub", "kind": "registry", "registry": BASE, "site": BASE}
    values.update(kwargs)
    return SourceConfig(**values)


class TestRetry(unittest.TestCase):
    def test_retry_after_is_honored_and_capped(self) -> None:
        self.assertEqual(retry_delay("3", 0), 3.0)
        self.assertEqual(retry_delay("60", 0), 10.0)
        self.assertEqual(retry_delay(None, 2), 2.0)
        self.assertEqual(retry_delay("soon", 1), 1.0)

    def test_429_then_success(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(429, headers={"Retry-After": "2"})
            return httpx.Response(200, json={"ok": True})

        sleeps: list[float] = []
        resp = _client(handler, sleeps).get(BASE + "api/v1/search")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(calls["n"], 3)
        self.assertEqual(sleeps, [2.0, 2.0])

    def test_server_error_is_returned_after_last_attempt(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        sleeps: list[float] = []
        resp = _client(handler, sleeps).get(BASE + "api/v1/search")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(sleeps, [0.5, 1.0, 2.0, 4.0])

    def test_network_errors_exhaust_to_registry_http(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        sleeps: list[float] = []
        with self.assertRaises(SkillpmError) as ctx:
            _client(handler, sleeps).get(BASE + "api/v1/search")
        self.assertEqual(ctx.exception.code, ErrorCode.REGISTRY_HTTP)
        self.assertEqual(len(sleeps), 4)

    def test_legacy_path_fallback_on_404(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            if request.url.path == "/api/v1/search":
                return httpx.Response(404)
            return httpx.Response(200, json=[{"slug": "weather"}])

        resp = _client(handler).get_with_fallback(BASE, "/api/v1/search", {"q": "w"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(seen, ["/api/v1/search", "/api/search"])


class TestDiscovery(unittest.TestCase):
    def test_discovery_sets_registry_fields(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/.well-known/clawhub.json":
                return httpx.Response(
                    200,
                    json={"apiBase": "https://api.example.test", "authBase": "https://auth.example.test/", "minCliVersion": "0.3.0"},
                )
            return httpx.Response(404)

        provider = RegistryProvider(_client(handler))
        result = provider.update(_source(registry=""))
        self.assertEqual(result.note, "discovered via /.well-known/clawhub.json")
        self.assertEqual(result.source.registry, "https://api.example.test/")
        self.assertEqual(result.source.cached_registry, "https://api.example.test/")
        self.assertEqual(result.source.auth_base, "https://auth.example.test/")
        self.assertEqual(result.source.min_cli_version, "0.3.0")
        self.assertEqual(result.source.api_version, "v1")

    def test_second_well_known_document(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/.well-known/clawdhub.json":
                return httpx.Response(200, json={"registry": "https://legacy.example.test/"})
            return httpx.Response(404)

        result = RegistryProvider(_client(handler)).update(_source(registry=""))
        self.assertEqual(result.source.registry, "https://legacy.example.test/")

    def test_failure_keeps_configured_registry(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        source = _source()
        with self.assertLogs("skillpm.registry", level="WARNING"):
            result = RegistryProvider(_client(handler)).update(source)
        self.assertEqual(result.note, "discovery failed, kept configured registry")
        self.assertIs(result.source, source)

    def test_failure_without_registry_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        with self.assertRaises(SkillpmError) as ctx:
            RegistryProvider(_client(handler)).update(_source(registry=""))
        self.assertEqual(ctx.exception.code, ErrorCode.REGISTRY_DISCOVERY)

    def test_invalid_json_is_discovery_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>")

        with self.assertRaises(SkillpmError) as ctx:
            RegistryProvider(_client(handler)).update(_source(registry=""))
        self.assertEqual(ctx.exception.code, ErrorCode.REGISTRY_DISCOVERY)


class TestSearch(unittest.TestCase):
    def test_parse_search_response_shapes(self) -> None:
        payload = {"items": [{"slug": "a", "description": "first"}], "results": [{"slug": "a"}, {"name": "b"}]}
        results = parse_search_response("hub", payload)
        self.assertEqual([r.slug for r in results], ["a", "b"])
        self.assertEqual(results[0].name, "a")
        self.assertEqual(results[0].description, "first")
        self.assertEqual(parse_search_response("hub", [{"slug": "x", "displayName": "X"}])[0].name, "X")
        self.assertEqual(parse_search_response("hub", "nonsense"), [])

    def test_search_non_200(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400)

        with self.assertRaises(SkillpmError) as ctx:
            RegistryProvider(_client(handler)).search(_source(), "weather")
        self.assertEqual(ctx.exception.code, ErrorCode.REGISTRY_SEARCH)


class FakeRegistry:
    """Answers the registry endpoints a resolve touches and records download params."""

    def __init__(self) -> None:
        self.moderation: dict | None = None
        self.versions = ["1.2.0", "1.10.0", "1.9.0"]
        self.download_body: bytes = b"# Weather\nCurrent conditions.\n"
        self.download_params: dict[str, str] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        params = dict(request.url.params)
        if path == "/api/v1/skills/weather":
            if self.moderation is None:
                return httpx.Response(404)
            return httpx.Response(200, json={"moderation": self.moderation})
        if path == "/api/v1/skills/weather/versions":
            return httpx.Response(200, json={"items": [{"version": v} for v in self.versions]})
        if path == "/api/v1/resolve":
            return httpx.Response(200, json={"version": "1.0.0", "hash": params.get("hash")})
        if path == "/api/v1/download":
            self.download_params = params
            return httpx.Response(200, content=self.download_body)
        return httpx.Response(404)


class TestResolve(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FakeRegistry()
        self.provider = RegistryProvider(_client(self.registry))

    def test_latest_picks_highest_semver(self) -> None:
        result = self.provider.resolve(_source(), ResolveRequest(skill="weather"))
        self.assertEqual(result.resolved_version, "1.10.0")
        self.assertEqual(self.registry.download_params, {"slug": "weather", "version": "1.10.0"})
        self.assertEqual(result.checksum, "sha256:" + hashlib.sha256(self.registry.download_body).hexdigest())
        self.assertEqual(result.content, "# Weather\nCurrent conditions.\n")
        self.assertEqual(result.source_ref, "clawhub://reg.example.test/skills/weather@1.10.0")
        self.assertFalse(result.moderation.is_suspicious)

    def test_hash_constraint_sets_resolver_hash(self) -> None:
        result = self.provider.resolve(_source(), ResolveRequest(skill="weather", constraint="sha256:feed"))
        self.assertEqual(result.resolved_version, "1.0.0")
        self.assertEqual(result.resolver_hash, "sha256:feed")

    def test_exact_version_pin(self) -> None:
        result = self.provider.resolve(_source(), ResolveRequest(skill="weather", constraint="1.2.0"))
        self.assertEqual(result.resolved_version, "1.2.0")
        self.assertEqual(self.registry.download_params["version"], "1.2.0")

    def test_tag_with_json_envelope(self) -> None:
        self.registry.download_body = json.dumps({"version": "2.0.0-beta", "content": "# Weather beta\n"}).encode()
        result = self.provider.resolve(_source(), ResolveRequest(skill="weather", constraint="tag:beta"))
        self.assertEqual(self.registry.download_params, {"slug": "weather", "tag": "beta"})
        self.assertEqual(result.resolved_version, "2.0.0-beta")
        self.assertEqual(result.content, "# Weather beta\n")
        self.assertEqual(result.checksum, "sha256:" + hashlib.sha256(b"# Weather beta\n").hexdigest())

    def test_bare_word_is_a_tag_and_unknown_version_is_latest(self) -> None:
        result = self.provider.resolve(_source(), ResolveRequest(skill="weather", constraint="stable"))
        self.assertEqual(self.registry.download_params, {"slug": "weather", "tag": "stable"})
        self.assertEqual(result.resolved_version, "latest")

    def test_moderation_flags(self) -> None:
        self.registry.moderation = {"isSuspicious": True, "isMalwareBlocked": True}
        result = self.provider.resolve(_source(), ResolveRequest(skill="weather", constraint="1.2.0"))
        self.assertTrue(result.moderation.is_suspicious)
        self.assertTrue(result.moderation.is_malware_blocked)

    def test_download_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("download"):
                return httpx.Response(410)
            return httpx.Response(404)

        with self.assertRaises(SkillpmError) as ctx:
            RegistryProvider(_client(handler)).resolve(_source(), ResolveRequest(skill="weather", constraint="1.0.0"))
        self.assertEqual(ctx.exception.code, ErrorCode.REGISTRY_DOWNLOAD)


if __name__ == "__main__":
    unittest.main()
