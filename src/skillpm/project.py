from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .config import (
    PROJECT_DIRNAME,
    AdapterConfig,
    Config,
    Paths,
    SourceConfig,
    adapters_from_list,
    sources_from_list,
    validate_source,
)
from .errors import ErrorCode, SkillpmError
from .store import write_json_atomic

MANIFEST_VERSION = 1
MANIFEST_FILENAME = "skills.json"
LOCK_FILENAME = "skills.lock.json"

SCOPE_GLOBAL = "global"
SCOPE_PROJECT = "project"

_MAX_ANCESTORS = 50


@dataclass
class ManifestEntry:
    ref: str
    constraint: str = ""

    @property
    def spec(self) -> str:
        """The entry as a reference string accepted by ``parse_ref``."""
        return f"{self.ref}@{self.constraint}" if self.constraint else self.ref


@dataclass
class ProjectManifest:
    skills: list[ManifestEntry] = field(default_factory=list)
    # overrides merged over the user config by name
    sources: list[SourceConfig] = field(default_factory=list)
    adapters: list[AdapterConfig] = field(default_factory=list)

    def refs(self) -> list[str]:
        return [e.ref for e in self.skills]

    def find(self, ref: str) -> ManifestEntry | None:
        for e in self.skills:
            if e.ref == ref:
                return e
        return None


def manifest_path(root: Path) -> Path:
    return Path(root) / PROJECT_DIRNAME / MANIFEST_FILENAME


def project_lock_path(root: Path) -> Path:
    return Path(root) / PROJECT_DIRNAME / LOCK_FILENAME


def find_project_root(start: Path) -> Path | None:
    """Nearest directory at or above ``start`` holding a project manifest."""
    current = Path(start).expanduser().resolve()
    for _ in range(_MAX_ANCESTORS):
        if manifest_path(current).is_file():
            return current
        if current.parent == current:
            return None
        current = current.parent
    return None


def load_manifest(root: Path) -> ProjectManifest:
    path = manifest_path(root)
    if not path.exists():
        return ProjectManifest()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SkillpmError(ErrorCode.PROJECT_MANIFEST, f"{path}: {e}") from e
    if not isinstance(raw, dict):
        raise SkillpmError(ErrorCode.PROJECT_MANIFEST, f"{path}: expected an object")
    version = raw.get("schema_version") or MANIFEST_VERSION
    if version != MANIFEST_VERSION:
        raise SkillpmError(ErrorCode.PROJECT_MANIFEST, f"unsupported manifest version {version}")

    manifest = ProjectManifest()
    for item in raw.get("skills") or []:
        if not isinstance(item, dict):
            continue
        ref = item.get("ref")
        if not isinstance(ref, str) or not ref.strip():
            raise SkillpmError(ErrorCode.PROJECT_MANIFEST, f"{path}: entry missing ref")
        constraint = item.get("constraint")
        entry = ManifestEntry(ref=ref.strip(), constraint=constraint.strip() if isinstance(constraint, str) else "")
        if manifest.find(entry.ref) is not None:
            raise SkillpmError(ErrorCode.PROJECT_MANIFEST, f"{path}: duplicate ref {entry.ref!r}")
        manifest.skills.append(entry)
    try:
        manifest.sources = sources_from_list(raw.get("sources"))
        manifest.adapters = adapters_from_list(raw.get("adapters"))
    except TypeError as e:
        raise SkillpmError(ErrorCode.PROJECT_MANIFEST, f"{path}: {e}") from e
    for src in manifest.sources:
        try:
            validate_source(src)
        except SkillpmError as e:
            raise SkillpmError(ErrorCode.PROJECT_MANIFEST, f"{path}: {e.detail}") from e
    return manifest


def save_manifest(root: Path, manifest: ProjectManifest) -> Path:
    path = manifest_path(root)
    skills: list[dict[str, Any]] = []
    for e in sorted(manifest.skills, key=lambda e: e.ref):
        item: dict[str, Any] = {"ref": e.ref}
        if e.constraint:
            item["constraint"] = e.constraint
        skills.append(item)
    data: dict[str, Any] = {"schema_version": MANIFEST_VERSION, "skills": skills}
    if manifest.sources:
        data["sources"] = [asdict(s) for s in manifest.sources]
    if manifest.adapters:
        data["adapters"] = [asdict(a) for a in manifest.adapters]
    try:
        write_json_atomic(path, data)
    except OSError as e:
        raise SkillpmError(ErrorCode.PROJECT_MANIFEST, f"could not write {path}: {e}") from e
    return path


def upsert_skill(manifest: ProjectManifest, ref: str, constraint: str = "") -> bool:
    """Add or update one entry. Returns True when the manifest changed."""
    existing = manifest.find(ref)
    if existing is None:
        manifest.skills.append(ManifestEntry(ref=ref, constraint=constraint))
        return True
    if existing.constraint == constraint:
        return False
    existing.constraint = constraint
    return True


def remove_skill(manifest: ProjectManifest, ref: str) -> bool:
    for i, e in enumerate(manifest.skills):
        if e.ref == ref:
            del manifest.skills[i]
            return True
    return False


def init_project(directory: Path) -> Path:
    """Create an empty manifest under ``directory``. Fails if one already exists."""
    root = Path(directory).expanduser().resolve()
    path = manifest_path(root)
    if path.exists():
        raise SkillpmError(ErrorCode.PROJECT_INIT, f"project already initialized at {path}")
    save_manifest(root, ProjectManifest())
    return path


def _merged(base: list, overrides: list) -> list:
    by_name = {item.name: item for item in base}
    order = [item.name for item in base]
    for item in overrides:
        if item.name not in by_name:
            order.append(item.name)
        by_name[item.name] = item
    return [by_name[name] for name in order]


def merged_config(config: Config, manifest: ProjectManifest) -> Config:
    """A copy of ``config`` with the manifest's sources and adapters overriding same-named entries."""
    merged = config.clone()
    merged.sources = _merged(merged.sources, list(manifest.sources))
    merged.adapters = _merged(merged.adapters, list(manifest.adapters))
    return merged


@dataclass
class ProjectScope:
    """Everything that differs between a global run and a run inside a project."""

    scope: str
    paths: Paths
    config: Config
    project_root: Path | None = None
    manifest: ProjectManifest | None = None
    lock_path: Path | None = None


def resolve_scope(explicit: str, cwd: Path, paths: Paths, config: Config) -> ProjectScope:
    """
    Pick global or project scope.

    An empty ``explicit`` auto-detects: a manifest at or above ``cwd`` selects
    project scope. Project scope moves the store into ``<project>/.skillpm``,
    merges the manifest's sources and adapters into the config and uses the
    project lockfile.
    """
    explicit = explicit.strip().lower()
    if explicit not in ("", SCOPE_GLOBAL, SCOPE_PROJECT):
        raise SkillpmError(ErrorCode.PROJECT_SCOPE, f"invalid scope {explicit!r}; use 'global' or 'project'")
    if explicit == SCOPE_GLOBAL:
        return ProjectScope(SCOPE_GLOBAL, paths, config)

    root = find_project_root(cwd)
    if root is None:
        if explicit == SCOPE_PROJECT:
            raise SkillpmError(ErrorCode.PROJECT_NO_MANIFEST, f"no project manifest found at or above {cwd}")
        return ProjectScope(SCOPE_GLOBAL, paths, config)

    manifest = load_manifest(root)
    return ProjectScope(
        SCOPE_PROJECT,
        paths.for_project(root),
        merged_config(config, manifest),
        project_root=root,
        manifest=manifest,
        lock_path=project_lock_path(root),
    )
