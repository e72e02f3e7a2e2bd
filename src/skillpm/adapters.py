from __future__ import annotations

import json
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .config import AdapterConfig, Config, Paths
from .errors import ErrorCode, SkillpmError
from .store import (
    META_FILENAME,
    PRIMARY_FILENAME,
    InjectionRecord,
    adapter_state_root,
    ensure_layout,
    find_artifact_dirs,
    load_state,
    save_state,
    snapshot_root,
    utc_now,
    write_json_atomic,
)

logger = logging.getLogger(__name__)

INJECTED_FILENAME = "injected.json"
CAPABILITIES = ("inject", "remove", "list", "harvest", "validate")


@dataclass(frozen=True)
class ProbeResult:
    name: str
    available: bool
    capabilities: tuple[str, ...] = ()
    message: str = ""


@dataclass(frozen=True)
class InjectResult:
    agent: str
    injected: list[str]
    snapshot_path: Path | None = None
    rollback_possible: bool = False


@dataclass(frozen=True)
class RemoveResult:
    agent: str
    removed: list[str]
    snapshot_path: Path | None = None


@dataclass(frozen=True)
class HarvestCandidate:
    path: Path
    name: str
    adapter: str


@dataclass(frozen=True)
class ValidateResult:
    agent: str
    valid: bool
    warnings: list[str] = field(default_factory=list)
    root_paths: list[Path] = field(default_factory=list)


class Adapter(Protocol):
    name: str

    def probe(self) -> ProbeResult:
        ...

    def inject(self, skill_refs: list[str]) -> InjectResult:
        ...

    def remove(self, skill_refs: list[str]) -> RemoveResult:
        ...

    def list_injected(self) -> list[str]:
        ...

    def harvest_candidates(self) -> list[HarvestCandidate]:
        ...

    def validate_environment(self) -> ValidateResult:
        ...


def short_skill_name(skill_ref: str) -> str:
    return skill_ref.rsplit("/", 1)[-1] or skill_ref


def _openclaw_state_dir(home: Path) -> Path:
    if env := os.getenv("OPENCLAW_STATE_DIR"):
        return Path(env).expanduser()
    return home / ".openclaw" / "state"


def agent_skills_dir(name: str, home: Path) -> Path:
    """Directory an agent reads skills from."""
    name = name.lower()
    if name in ("gemini", "antigravity"):
        return home / ".gemini" / "skills"
    if name in ("copilot", "vscode"):
        return home / ".copilot" / "skills"
    if name == "opencode":
        return home / ".config" / "opencode" / "skills"
    if name == "openclaw":
        return _openclaw_state_dir(home).parent / "workspace" / "skills"
    return home / f".{name}" / "skills"


def agent_project_skills_dir(name: str, project_root: Path) -> Path:
    """Directory an agent reads project-local skills from."""
    name = name.lower()
    if name in ("gemini", "antigravity"):
        return project_root / ".gemini" / "skills"
    if name in ("copilot", "vscode"):
        return project_root / ".copilot" / "skills"
    return project_root / f".{name}" / "skills"


def agent_root_paths(name: str, home: Path) -> list[Path]:
    roots = [agent_skills_dir(name, home)]
    if name == "openclaw":
        config = os.getenv("OPENCLAW_CONFIG_PATH")
        roots.append(_openclaw_state_dir(home))
        roots.append(Path(config).expanduser() if config else home / ".openclaw" / "config.toml")
    return roots


@dataclass(frozen=True)
class Detection:
    name: str
    path: Path
    reason: str


def detect_available(home: Path) -> list[Detection]:
    checks = [
        ("claude", home / ".claude", "claude root exists"),
        ("codex", home / ".codex", "codex root exists"),
        ("copilot", home / ".copilot", "copilot root exists"),
        ("cursor", home / ".cursor", "cursor root exists"),
        ("gemini", home / ".gemini", "gemini root exists"),
        ("antigravity", home / ".gemini", "gemini/antigravity root exists"),
        ("kiro", home / ".kiro", "kiro root exists"),
        ("opencode", home / ".config" / "opencode", "opencode config exists"),
        ("trae", home / ".trae", "trae root exists"),
        ("vscode", home / ".vscode", "vscode root exists"),
        ("openclaw", _openclaw_state_dir(home), "openclaw state path exists"),
    ]
    out = [Detection(name, path, reason) for name, path, reason in checks if path.is_dir()]
    out.sort(key=lambda d: d.name)
    return out


class FileAdapter:
    """
    Projects installed artifacts into one agent's skills directory.

    The adapter keeps its own record of injected refs in ``<state dir>/injected.json``;
    every inject/remove first snapshots that record so a failed write can be undone.
    """

    def __init__(
        self,
        name: str,
        *,
        store_root: Path,
        state_dir: Path,
        skills_dir: Path,
        snapshot_dir: Path,
        root_paths: list[Path] | None = None,
    ) -> None:
        self.name = name
        self.store_root = Path(store_root)
        self.state_dir = Path(state_dir)
        self.skills_dir = Path(skills_dir)
        self.snapshot_dir = Path(snapshot_dir)
        self.root_paths = list(root_paths) if root_paths is not None else [self.skills_dir]

    @property
    def record_path(self) -> Path:
        return self.state_dir / INJECTED_FILENAME

    def _read_record(self) -> list[str]:
        path = self.record_path
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SkillpmError(ErrorCode.ADAPTER_STATE_PARSE, f"{self.name}: {e}") from e
        skills = raw.get("skills") if isinstance(raw, dict) else None
        if not isinstance(skills, list):
            raise SkillpmError(ErrorCode.ADAPTER_STATE_PARSE, f"{self.name}: expected a skills list in {path}")
        return [s for s in skills if isinstance(s, str)]

    def _write_record(self, skills: list[str]) -> None:
        write_json_atomic(self.record_path, {"skills": sorted(skills)})

    def _restore(self, previous: list[str]) -> None:
        try:
            self._write_record(previous)
        except OSError as e:
            logger.warning("could not restore injected record for %s: %s", self.name, e)

    def _snapshot(self) -> tuple[Path, list[str]]:
        previous = self._read_record()
        snap = self.snapshot_dir / f"{self.name}-{time.time_ns()}.json"
        try:
            write_json_atomic(snap, {"skills": sorted(previous)})
        except OSError as e:
            raise SkillpmError(ErrorCode.ADAPTER_SNAPSHOT, f"{self.name}: {e}") from e
        return snap, previous

    def _copy_skill(self, skill_ref: str, dest: Path) -> None:
        dirs = find_artifact_dirs(self.store_root, skill_ref)
        if not dirs:
            logger.debug("%s has no installed artifact, nothing to copy for %s", skill_ref, self.name)
            return
        if dest.exists():
            shutil.rmtree(dest)
        shutil.copytree(dirs[-1], dest, ignore=shutil.ignore_patterns(META_FILENAME))

    def probe(self) -> ProbeResult:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return ProbeResult(self.name, False, message=str(e))
        return ProbeResult(self.name, True, CAPABILITIES)

    def inject(self, skill_refs: list[str]) -> InjectResult:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        snap, previous = self._snapshot()
        merged = sorted(set(previous) | set(skill_refs))

        try:
            self._write_record(merged)
        except OSError as e:
            self._restore(previous)
            raise SkillpmError(ErrorCode.ADAPTER_INJECT_WRITE, f"{self.name}: {e}") from e

        created: list[Path] = []
        try:
            self.skills_dir.mkdir(parents=True, exist_ok=True)
            for ref in skill_refs:
                dest = self.skills_dir / short_skill_name(ref)
                if not dest.exists():
                    created.append(dest)
                self._copy_skill(ref, dest)
        except OSError as e:
            # Directories this call created are removed; replaced ones cannot be restored.
            for dest in created:
                shutil.rmtree(dest, ignore_errors=True)
            self._restore(previous)
            raise SkillpmError(ErrorCode.ADAPTER_INJECT_COPY, f"{self.name}: {e}") from e

        logger.debug("injected %s into %s", ", ".join(skill_refs), self.name)
        return InjectResult(self.name, merged, snapshot_path=snap, rollback_possible=True)

    def remove(self, skill_refs: list[str]) -> RemoveResult:
        snap, previous = self._snapshot()
        if not skill_refs:
            removed = sorted(previous)
            kept: list[str] = []
        else:
            wanted = set(skill_refs)
            removed = sorted(s for s in previous if s in wanted)
            kept = [s for s in previous if s not in wanted]

        try:
            self._write_record(kept)
        except OSError as e:
            self._restore(previous)
            raise SkillpmError(ErrorCode.ADAPTER_REMOVE_WRITE, f"{self.name}: {e}") from e

        for ref in removed:
            shutil.rmtree(self.skills_dir / short_skill_name(ref), ignore_errors=True)
        return RemoveResult(self.name, removed, snapshot_path=snap)

    def list_injected(self) -> list[str]:
        return sorted(self._read_record())

    def harvest_candidates(self) -> list[HarvestCandidate]:
        seen: set[Path] = set()
        out: list[HarvestCandidate] = []
        for root in self.root_paths:
            if not root.is_dir():
                continue
            for dirpath, _dirnames, filenames in os.walk(root):
                if PRIMARY_FILENAME not in filenames:
                    continue
                parent = Path(dirpath)
                if parent in seen:
                    continue
                seen.add(parent)
                out.append(HarvestCandidate(path=parent, name=parent.name, adapter=self.name))
        out.sort(key=lambda c: str(c.path))
        return out

    def validate_environment(self) -> ValidateResult:
        warnings: list[str] = []
        for p in self.root_paths:
            try:
                p.stat()
            except FileNotFoundError:
                continue
            except OSError as e:
                warnings.append(str(e))
        return ValidateResult(self.name, valid=not warnings, warnings=warnings, root_paths=list(self.root_paths))


def adapter_scope(adp: AdapterConfig, paths: Paths) -> str:
    """Effective scope of one adapter: its own setting, else project when the paths carry a project."""
    scope = adp.scope.strip().lower()
    if scope not in ("", "global", "project"):
        raise SkillpmError(ErrorCode.PROJECT_SCOPE, f"adapter {adp.name!r} has invalid scope {adp.scope!r}")
    if scope == "project" and paths.project_root is None:
        raise SkillpmError(ErrorCode.PROJECT_SCOPE, f"adapter {adp.name!r} is project-scoped but no project is active")
    if scope:
        return scope
    return "project" if paths.project_root is not None else "global"


def build_file_adapter(name: str, paths: Paths, scope: str = "global") -> FileAdapter:
    name = name.lower()
    if scope == "project" and paths.project_root is not None:
        skills_dir = agent_project_skills_dir(name, paths.project_root)
        root_paths = [skills_dir]
    else:
        skills_dir = agent_skills_dir(name, paths.home)
        root_paths = agent_root_paths(name, paths.home)
    return FileAdapter(
        name,
        store_root=paths.store_root,
        state_dir=adapter_state_root(paths.store_root) / name,
        skills_dir=skills_dir,
        snapshot_dir=snapshot_root(paths.store_root) / "adapters",
        root_paths=root_paths,
    )


class AdapterRuntime:
    """
    One adapter per enabled agent in the config, looked up by name.

    With project paths, adapters without an explicit ``scope`` write into the
    project's agent directories; ``scope = "global"`` keeps an adapter on the
    user's home.
    """

    def __init__(self, paths: Paths, config: Config) -> None:
        ensure_layout(paths.store_root)
        self.paths = paths
        self._adapters: dict[str, Adapter] = {}
        for adp in config.adapters:
            if adp.enabled:
                self._adapters[adp.name.lower()] = build_file_adapter(adp.name, paths, adapter_scope(adp, paths))

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def get(self, name: str) -> Adapter:
        try:
            return self._adapters[name.lower()]
        except KeyError as e:
            raise SkillpmError(ErrorCode.ADAPTER_NOT_SUPPORTED, f"adapter {name!r} is not configured") from e

    def probe_all(self) -> list[ProbeResult]:
        return [self._adapters[name].probe() for name in self.names()]

    def inject_and_record(self, name: str, skill_refs: list[str]) -> InjectResult:
        """Inject into one agent and mirror the agent's record into State."""
        result = self.get(name).inject(skill_refs)
        state = load_state(self.paths.store_root)
        state.set_injection(InjectionRecord(agent=name.lower(), skills=list(result.injected), updated_at=utc_now()))
        save_state(self.paths.store_root, state)
        return result

    def remove_and_record(self, name: str, skill_refs: list[str]) -> RemoveResult:
        adapter = self.get(name)
        result = adapter.remove(skill_refs)
        state = load_state(self.paths.store_root)
        remaining = adapter.list_injected()
        if remaining:
            state.set_injection(InjectionRecord(agent=name.lower(), skills=remaining, updated_at=utc_now()))
        else:
            state.remove_injection(name.lower())
        save_state(self.paths.store_root, state)
        return result
