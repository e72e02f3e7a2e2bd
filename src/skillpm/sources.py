from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .config import Config, SourceConfig
from .errors import ErrorCode, SkillpmError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdateResult:
    source: SourceConfig
    note: str = ""


@dataclass(frozen=True)
class SearchResult:
    source: str
    slug: str
    name: str
    description: str = ""


@dataclass(frozen=True)
class ResolveRequest:
    skill: str
    constraint: str = ""


@dataclass(frozen=True)
class Moderation:
    is_suspicious: bool = False
    is_malware_blocked: bool = False


@dataclass(frozen=True)
class ResolveResult:
    skill_ref: str
    source: str
    skill: str
    resolved_version: str
    checksum: str
    source_ref: str
    content: str
    files: dict[str, str] = field(default_factory=dict)
    moderation: Moderation = field(default_factory=Moderation)
    resolver_hash: str = ""


class Provider(Protocol):
    def update(self, source: SourceConfig) -> UpdateResult:
        ...

    def search(self, source: SourceConfig, query: str) -> list[SearchResult]:
        ...

    def resolve(self, source: SourceConfig, request: ResolveRequest) -> ResolveResult:
        ...


def compute_checksum(content: str | bytes, files: dict[str, str] | None = None) -> str:
    """
    SHA-256 over the primary content, then each ancillary (path, content) pair in sorted path order.

    The result is independent of the order in which ``files`` was populated.
    """
    h = hashlib.sha256()
    h.update(content.encode("utf-8") if isinstance(content, str) else content)
    for path in sorted(files or {}):
        h.update(path.encode("utf-8"))
        h.update(files[path].encode("utf-8"))
    return "sha256:" + h.hexdigest()


class SourceManager:
    """
    Dispatches update/search/resolve to the provider registered for a source kind.
    """

    def __init__(self, providers: dict[str, Provider]) -> None:
        self._providers = dict(providers)

    @classmethod
    def default(cls, *, cache_root: Path, timeout_s: float = 30.0, transport=None) -> "SourceManager":
        from .git_source import DirProvider, GitProvider
        from .registry import RegistryClient, RegistryProvider

        registry = RegistryProvider(RegistryClient(timeout_s=timeout_s, transport=transport))
        return cls(
            {
                "git": GitProvider(cache_root=cache_root),
                "dir": DirProvider(),
                "registry": registry,
                "clawhub": registry,
            }
        )

    def provider(self, kind: str) -> Provider:
        try:
            return self._providers[kind]
        except KeyError as e:
            raise SkillpmError(ErrorCode.SOURCE_PROVIDER, f"unsupported source kind {kind!r}") from e

    def update(self, config: Config | None, name: str = "") -> list[UpdateResult]:
        if config is None:
            raise SkillpmError(ErrorCode.SOURCE_UPDATE, "no config")
        if name:
            src = config.find_source(name)
            if src is None:
                raise SkillpmError(ErrorCode.SOURCE_UPDATE, f"source {name!r} not found")
            targets = [src]
        else:
            targets = list(config.sources)

        results: list[UpdateResult] = []
        for src in targets:
            res = self.provider(src.kind).update(src)
            logger.debug("updated source %s: %s", src.name, res.note)
            results.append(res)
            config.replace_source(res.source)
        results.sort(key=lambda r: r.source.name)
        return results

    def search(self, config: Config, query: str, source_name: str = "") -> list[SearchResult]:
        if not query.strip():
            raise SkillpmError(ErrorCode.SOURCE_SEARCH, "query is required")
        if source_name:
            src = config.find_source(source_name)
            if src is None:
                raise SkillpmError(ErrorCode.SOURCE_SEARCH, f"source {source_name!r} not found")
            sources = [src]
        else:
            sources = list(config.sources)

        out: list[SearchResult] = []
        for src in sources:
            out.extend(self.provider(src.kind).search(src, query))
        out.sort(key=lambda r: (r.source, r.slug))
        return out

    def resolve(self, source: SourceConfig, request: ResolveRequest) -> ResolveResult:
        return self.provider(source.kind).resolve(source, request)
