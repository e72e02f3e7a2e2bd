from __future__ import annotations

import copy
import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path, user_data_path

from .errors import ErrorCode, SkillpmError

SCHEMA_VERSION = 1
PROJECT_DIRNAME = ".skillpm"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_REGISTRY_SITE = "https://clawhub.ai/"
DEFAULT_WELL_KNOWN = ("/.well-known/clawhub.json", "/.well-known/clawdhub.json")

SOURCE_KINDS = ("git", "dir", "registry", "clawhub")
TRUST_TIERS = ("trusted", "review", "untrusted")


@dataclass
class SourceConfig:
    name: str
    kind: str
    url: str = ""
    branch: str = ""
    scan_paths: list[str] = field(default_factory=list)
    trust_tier: str = "review"
    # registry-only fields, filled in by discovery
    site: str = ""
    registry: str = ""
    cached_registry: str = ""
    auth_base: str = ""
    well_known: list[str] = field(default_factory=list)
    api_version: str = ""
    min_cli_version: str = ""


@dataclass
class AdapterConfig:
    name: str
    enabled: bool = True
    # "global", "project", or empty to follow the runtime's paths
    scope: str = ""


@dataclass
class SecurityConfig:
    profile: str = "strict"
    scan_enabled: bool = True
    block_severity: str = "high"
    disabled_rules: list[str] = field(default_factory=list)


@dataclass
class Config:
    version: int = SCHEMA_VERSION
    sources: list[SourceConfig] = field(default_factory=list)
    adapters: list[AdapterConfig] = field(default_factory=list)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    timeout_s: float = DEFAULT_TIMEOUT_S

    def find_source(self, name: str) -> SourceConfig | None:
        for src in self.sources:
            if src.name == name:
                return src
        return None

    def find_adapter(self, name: str) -> AdapterConfig | None:
        for adp in self.adapters:
            if adp.name == name:
                return adp
        return None

    def replace_source(self, updated: SourceConfig) -> None:
        for i, src in enumerate(self.sources):
            if src.name == updated.name:
                self.sources[i] = updated
                return
        raise SkillpmError(ErrorCode.CONFIG_SOURCE, f"source {updated.name!r} not found")

    def add_source(self, src: SourceConfig) -> None:
        if self.find_source(src.name) is not None:
            raise SkillpmError(ErrorCode.CONFIG_SOURCE, f"source {src.name!r} already exists")
        validate_source(src)
        self.sources.append(src)

    def clone(self) -> "Config":
        return copy.deepcopy(self)


@dataclass(frozen=True)
class Paths:
    """Filesystem roots threaded through every component."""

    store_root: Path
    cache_root: Path
    home: Path
    project_root: Path | None = None

    @classmethod
    def default(cls) -> "Paths":
        if env := os.getenv("SKILLPM_HOME"):
            root = Path(env).expanduser()
            return cls(store_root=root, cache_root=root / "cache", home=Path.home())
        return cls(
            store_root=user_data_path("skillpm"),
            cache_root=user_cache_path("skillpm") / "sources",
            home=Path.home(),
        )

    @classmethod
    def under(cls, root: Path, *, home: Path | None = None) -> "Paths":
        root = Path(root)
        return cls(store_root=root / "store", cache_root=root / "cache", home=home or root / "home")

    def for_project(self, project_root: Path) -> "Paths":
        """Same cache and home, with the store moved into ``<project>/.skillpm``."""
        project_root = Path(project_root)
        return Paths(
            store_root=project_root / PROJECT_DIRNAME,
            cache_root=self.cache_root,
            home=self.home,
            project_root=project_root,
        )


def default_config() -> Config:
    return Config(
        sources=[
            SourceConfig(
                name="anthropic",
                kind="git",
                url="https://github.com/anthropics/skills.git",
                branch="main",
                scan_paths=["skills"],
                trust_tier="review",
            ),
            SourceConfig(
                name="clawhub",
                kind="registry",
                site=DEFAULT_REGISTRY_SITE,
                registry=DEFAULT_REGISTRY_SITE,
                auth_base=DEFAULT_REGISTRY_SITE,
                well_known=list(DEFAULT_WELL_KNOWN),
                api_version="v1",
                trust_tier="review",
            ),
        ],
        adapters=[
            AdapterConfig(name="codex"),
            AdapterConfig(name="openclaw"),
        ],
    )


def validate_source(src: SourceConfig) -> None:
    if not src.name.strip():
        raise SkillpmError(ErrorCode.CONFIG_SOURCE, "source name must not be empty")
    if src.kind not in SOURCE_KINDS:
        raise SkillpmError(ErrorCode.CONFIG_SOURCE, f"source {src.name!r} has unsupported kind {src.kind!r}")
    if src.trust_tier not in TRUST_TIERS:
        raise SkillpmError(ErrorCode.CONFIG_SOURCE, f"source {src.name!r} has invalid trust tier {src.trust_tier!r}")


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLPM_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillpm") / "config.json"


def _filtered(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    allowed = {f.name for f in fields(cls)}
    return {k: v for k, v in raw.items() if k in allowed}


def sources_from_list(raw: Any) -> list[SourceConfig]:
    return [SourceConfig(**_filtered(SourceConfig, s)) for s in raw or [] if isinstance(s, dict)]


def adapters_from_list(raw: Any) -> list[AdapterConfig]:
    return [AdapterConfig(**_filtered(AdapterConfig, a)) for a in raw or [] if isinstance(a, dict)]


def config_from_dict(raw: dict[str, Any]) -> Config:
    sources = sources_from_list(raw.get("sources"))
    adapters = adapters_from_list(raw.get("adapters"))
    security_raw = raw.get("security")
    security = SecurityConfig(**_filtered(SecurityConfig, security_raw)) if isinstance(security_raw, dict) else SecurityConfig()
    top = _filtered(Config, raw)
    top.update(sources=sources, adapters=adapters, security=security)
    return Config(**top)


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return default_config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise SkillpmError(ErrorCode.CONFIG_PARSE, f"{path}: {e}") from e
    if not isinstance(raw, dict):
        return default_config()
    return config_from_dict(raw)


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path
