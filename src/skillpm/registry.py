from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import replace
from typing import Any, Callable
from urllib.parse import quote, urljoin, urlsplit

import httpx

from .config import DEFAULT_REGISTRY_SITE, DEFAULT_TIMEOUT_S, DEFAULT_WELL_KNOWN, SourceConfig
from .errors import ErrorCode, SkillpmError
from .sources import Moderation, ResolveRequest, ResolveResult, SearchResult, UpdateResult
from .versions import choose_latest, looks_like_version

logger = logging.getLogger(__name__)

USER_AGENT = "skillpm/0.1 (python-httpx)"
MAX_ATTEMPTS = 5
MAX_RETRY_AFTER_S = 10.0
BASE_BACKOFF_S = 0.5
LEGACY_PREFIX = ("/api/v1/", "/api/")


def _ensure_trailing_slash(value: str) -> str:
    return value if value.endswith("/") else value + "/"


def _build_url(base: str, endpoint: str) -> str:
    return urljoin(_ensure_trailing_slash(base), endpoint.lstrip("/"))


def _backoff(attempt: int) -> float:
    return BASE_BACKOFF_S * (2**attempt)


def retry_delay(retry_after: str | None, attempt: int) -> float:
    """Seconds to wait before retry ``attempt + 1``: ``Retry-After`` when numeric (capped), else exponential."""
    if retry_after:
        try:
            secs = int(retry_after.strip())
        except ValueError:
            return _backoff(attempt)
        if secs >= 0:
            return min(float(secs), MAX_RETRY_AFTER_S)
    return _backoff(attempt)


class RegistryClient:
    """
    Thin httpx wrapper with bounded retries for registry calls.

    Network errors, 429 and 5xx are retried up to ``max_attempts`` times. The final
    response is returned whatever its status; only exhausted network failures raise.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self._http = httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )
        self._sleep = sleep
        self.max_attempts = max_attempts

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get(self, url: str, params: dict[str, str] | None = None) -> httpx.Response:
        last_error: httpx.HTTPError | None = None
        for attempt in range(self.max_attempts):
            try:
                resp = self._http.get(url, params=params)
            except httpx.HTTPError as e:
                last_error = e
                logger.debug("GET %s failed (attempt %d): %s", url, attempt + 1, e)
                if attempt < self.max_attempts - 1:
                    self._sleep(_backoff(attempt))
                continue
            retryable = resp.status_code == 429 or resp.status_code >= 500
            if retryable and attempt < self.max_attempts - 1:
                delay = retry_delay(resp.headers.get("Retry-After"), attempt)
                logger.debug("GET %s returned %d, retrying in %.1fs", url, resp.status_code, delay)
                self._sleep(delay)
                continue
            return resp
        raise SkillpmError(ErrorCode.REGISTRY_HTTP, f"GET {url}: {last_error}") from last_error

    def get_with_fallback(self, base: str, endpoint: str, params: dict[str, str] | None = None) -> httpx.Response:
        resp = self.get(_build_url(base, endpoint), params)
        new, legacy = LEGACY_PREFIX
        if resp.status_code != 404 or new not in endpoint:
            return resp
        logger.debug("%s not found, retrying legacy path", endpoint)
        return self.get(_build_url(base, endpoint.replace(new, legacy, 1)), params)


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def _first_str(row: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = row.get(key)
        if isinstance(value, str):
            return value
    return ""


def _extract_list(obj: Any, keys: tuple[str, ...]) -> list[Any]:
    if isinstance(obj, list):
        return obj
    out: list[Any] = []
    if isinstance(obj, dict):
        for key in keys:
            value = obj.get(key)
            if isinstance(value, list):
                out.extend(value)
    return out


def parse_search_response(source_name: str, payload: Any) -> list[SearchResult]:
    out: list[SearchResult] = []
    seen: set[str] = set()
    for row in _extract_list(payload, ("items", "skills", "data", "results")):
        if not isinstance(row, dict):
            continue
        slug = _first_str(row, "slug", "name", "id")
        if not slug or slug in seen:
            continue
        seen.add(slug)
        out.append(
            SearchResult(
                source=source_name,
                slug=slug,
                name=_first_str(row, "title", "displayName", "name", "slug") or slug,
                description=_first_str(row, "description", "summary"),
            )
        )
    return out


def parse_versions(payload: Any) -> list[str]:
    versions: list[str] = []
    for item in _extract_list(payload, ("items", "versions", "data", "results")):
        if isinstance(item, str):
            value = item
        elif isinstance(item, dict):
            value = _first_str(item, "version", "name", "id")
        else:
            continue
        if value and value not in versions:
            versions.append(value)
    return versions


def resolved_registry(source: SourceConfig) -> str:
    for candidate in (source.registry, source.cached_registry, source.site):
        if candidate:
            return _ensure_trailing_slash(candidate)
    return DEFAULT_REGISTRY_SITE


def _host(base: str) -> str:
    return urlsplit(base).netloc or "clawhub.ai"


class RegistryProvider:
    """Sources backed by a registry HTTP API with well-known discovery."""

    def __init__(self, client: RegistryClient) -> None:
        self.client = client

    def _discover(self, site: str, paths: list[str]) -> tuple[dict[str, Any], str]:
        base = _ensure_trailing_slash(site)
        for wk in paths:
            resp = self.client.get(_build_url(base, wk))
            if resp.status_code != 200:
                continue
            try:
                payload = resp.json()
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise SkillpmError(ErrorCode.REGISTRY_DISCOVERY, f"invalid well-known payload at {wk}: {e}") from e
            if not isinstance(payload, dict):
                raise SkillpmError(ErrorCode.REGISTRY_DISCOVERY, f"invalid well-known payload at {wk}")
            if payload.get("apiBase") or payload.get("registry"):
                return payload, wk
        raise SkillpmError(ErrorCode.REGISTRY_DISCOVERY, f"no valid well-known payload found at {site}")

    def update(self, source: SourceConfig) -> UpdateResult:
        site = source.site or source.registry or DEFAULT_REGISTRY_SITE
        well_known = list(source.well_known) or list(DEFAULT_WELL_KNOWN)
        try:
            payload, used = self._discover(site, well_known)
        except SkillpmError as e:
            if source.registry:
                logger.warning("registry discovery for %s failed, keeping %s: %s", source.name, source.registry, e)
                return UpdateResult(source=source, note="discovery failed, kept configured registry")
            raise SkillpmError(ErrorCode.REGISTRY_DISCOVERY, f"{source.name}: {e.detail}") from e

        resolved = (
            _first_str(payload, "apiBase") or _first_str(payload, "registry") or source.registry or DEFAULT_REGISTRY_SITE
        )
        resolved = _ensure_trailing_slash(resolved)
        updated = replace(
            source,
            registry=resolved,
            cached_registry=resolved,
            site=source.site or _ensure_trailing_slash(site),
            auth_base=_first_str(payload, "authBase"),
            min_cli_version=_first_str(payload, "minCliVersion"),
            api_version=source.api_version or "v1",
            well_known=well_known,
        )
        return UpdateResult(source=updated, note=f"discovered via {used}")

    def search(self, source: SourceConfig, query: str) -> list[SearchResult]:
        if not query.strip():
            raise SkillpmError(ErrorCode.SOURCE_SEARCH, "query is required")
        resp = self.client.get_with_fallback(resolved_registry(source), "/api/v1/search", {"q": query})
        if resp.status_code != 200:
            raise SkillpmError(ErrorCode.REGISTRY_SEARCH, f"{source.name}: status {resp.status_code}")
        return parse_search_response(source.name, _json_or_none(resp))

    def fetch_moderation(self, base: str, slug: str) -> Moderation:
        resp = self.client.get_with_fallback(base, f"/api/v1/skills/{quote(slug, safe='')}")
        if resp.status_code != 200:
            return Moderation()
        payload = _json_or_none(resp)
        mod = payload.get("moderation") if isinstance(payload, dict) else None
        if not isinstance(mod, dict):
            return Moderation()
        return Moderation(
            is_suspicious=mod.get("isSuspicious") is True,
            is_malware_blocked=mod.get("isMalwareBlocked") is True,
        )

    def _resolve_by_hash(self, base: str, slug: str, digest: str) -> tuple[str, str]:
        resp = self.client.get_with_fallback(base, "/api/v1/resolve", {"slug": slug, "hash": digest})
        if resp.status_code != 200:
            raise SkillpmError(ErrorCode.REGISTRY_RESOLVE, f"hash resolve returned status {resp.status_code}")
        payload = _json_or_none(resp)
        if not isinstance(payload, dict):
            raise SkillpmError(ErrorCode.REGISTRY_RESOLVE, "bad resolve payload")
        version = _first_str(payload, "version")
        if not version:
            raise SkillpmError(ErrorCode.REGISTRY_RESOLVE, "resolve payload missing version")
        return version, _first_str(payload, "hash") or digest

    def _resolve_latest(self, base: str, slug: str) -> str:
        resp = self.client.get_with_fallback(base, f"/api/v1/skills/{quote(slug, safe='')}/versions")
        if resp.status_code != 200:
            raise SkillpmError(ErrorCode.REGISTRY_RESOLVE, f"versions returned status {resp.status_code}")
        versions = parse_versions(_json_or_none(resp))
        if not versions:
            raise SkillpmError(ErrorCode.REGISTRY_RESOLVE, f"no versions found for {slug}")
        return choose_latest(versions)

    def _download(self, base: str, slug: str, version: str, tag: str) -> tuple[str, str, str]:
        params = {"slug": slug}
        if version:
            params["version"] = version
        if tag:
            params["tag"] = tag
        resp = self.client.get_with_fallback(base, "/api/v1/download", params)
        if resp.status_code != 200:
            raise SkillpmError(ErrorCode.REGISTRY_DOWNLOAD, f"{slug}: status {resp.status_code}")

        body = resp.content
        checksum = "sha256:" + hashlib.sha256(body).hexdigest()
        content = body.decode("utf-8", errors="replace")
        envelope_version = ""
        payload = _json_or_none(resp)
        if isinstance(payload, dict):
            envelope_version = _first_str(payload, "version")
            embedded = payload.get("content")
            if isinstance(embedded, str):
                content = embedded
                checksum = "sha256:" + hashlib.sha256(embedded.encode("utf-8")).hexdigest()
        return checksum, envelope_version, content

    def resolve(self, source: SourceConfig, request: ResolveRequest) -> ResolveResult:
        slug = request.skill.strip()
        if not slug:
            raise SkillpmError(ErrorCode.REGISTRY_RESOLVE, "empty skill")
        base = resolved_registry(source)
        moderation = self.fetch_moderation(base, slug)

        constraint = request.constraint.strip()
        version = ""
        tag = ""
        resolver_hash = ""
        if constraint.startswith("sha256:"):
            version, resolver_hash = self._resolve_by_hash(base, slug, constraint)
        elif not constraint or constraint.lower() == "latest":
            version = self._resolve_latest(base, slug)
        elif constraint.startswith("tag:"):
            tag = constraint[len("tag:") :]
        elif looks_like_version(constraint):
            version = constraint
        else:
            tag = constraint

        checksum, envelope_version, content = self._download(base, slug, version, tag)
        version = version or envelope_version or "latest"
        return ResolveResult(
            skill_ref=f"{source.name}/{slug}",
            source=source.name,
            skill=slug,
            resolved_version=version,
            checksum=checksum,
            source_ref=f"clawhub://{_host(base)}/skills/{slug}@{version}",
            content=content,
            moderation=moderation,
            resolver_hash=resolver_hash,
        )
