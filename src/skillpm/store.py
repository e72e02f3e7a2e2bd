from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import ErrorCode, SkillpmError

STATE_VERSION = 1
LOCK_VERSION = 1
STATE_FILENAME = "state.json"
META_FILENAME = ".skillpm-meta.json"
PRIMARY_FILENAME = "SKILL.md"


def installed_root(root: Path) -> Path:
    return root / "installed"


def staging_root(root: Path) -> Path:
    return root / "staging"


def snapshot_root(root: Path) -> Path:
    return root / "snapshots"


def adapter_state_root(root: Path) -> Path:
    return root / "adapters"


def inbox_root(root: Path) -> Path:
    return root / "inbox"


def state_path(root: Path) -> Path:
    return root / STATE_FILENAME


def audit_path(root: Path) -> Path:
    return root / "audit.log"


def ensure_layout(root: Path) -> None:
    for d in (root, installed_root(root), staging_root(root), snapshot_root(root), adapter_state_root(root), inbox_root(root)):
        try:
            d.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SkillpmError(ErrorCode.STORE_LAYOUT, f"could not create {d}: {e}") from e
        if not d.is_dir():
            raise SkillpmError(ErrorCode.STORE_LAYOUT, f"not a directory: {d}")


def safe_entry_name(value: str) -> str:
    out = value
    for ch in ("/", "\\", ":", "@"):
        out = out.replace(ch, "_")
    out = out.replace(" ", "-")
    return out or "unknown"


def artifact_dir_name(skill_ref: str, version: str) -> str:
    return safe_entry_name(skill_ref) + "@" + safe_entry_name(version)


def find_artifact_dirs(root: Path, skill_ref: str) -> list[Path]:
    base = installed_root(root)
    if not base.is_dir():
        return []
    prefix = safe_entry_name(skill_ref) + "@"
    return sorted(p for p in base.iterdir() if p.is_dir() and p.name.startswith(prefix) and ".bak-" not in p.name)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_ts(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_ts(value: Any) -> datetime:
    if isinstance(value, str) and value.strip():
        try:
            return datetime.strptime(value.strip(), "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.fromtimestamp(0, timezone.utc)


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name("." + path.name + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    try:
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def _str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    return value.strip() if isinstance(value, str) else ""


@dataclass
class InstalledSkillRecord:
    skill_ref: str
    source: str
    skill: str
    resolved_version: str
    checksum: str
    source_ref: str
    installed_at: datetime = field(default_factory=utc_now)
    trust_tier: str = "review"
    is_suspicious: bool = False
    is_malware_blocked: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "skill_ref": self.skill_ref,
            "source": self.source,
            "skill": self.skill,
            "resolved_version": self.resolved_version,
            "checksum": self.checksum,
            "source_ref": self.source_ref,
            "installed_at": format_ts(self.installed_at),
            "trust_tier": self.trust_tier,
        }
        if self.is_suspicious:
            data["is_suspicious"] = True
        if self.is_malware_blocked:
            data["is_malware_blocked"] = True
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "InstalledSkillRecord":
        return cls(
            skill_ref=_str(raw, "skill_ref"),
            source=_str(raw, "source"),
            skill=_str(raw, "skill"),
            resolved_version=_str(raw, "resolved_version"),
            checksum=_str(raw, "checksum"),
            source_ref=_str(raw, "source_ref"),
            installed_at=parse_ts(raw.get("installed_at")),
            trust_tier=_str(raw, "trust_tier") or "review",
            is_suspicious=bool(raw.get("is_suspicious")),
            is_malware_blocked=bool(raw.get("is_malware_blocked")),
        )


@dataclass
class InjectionRecord:
    agent: str
    skills: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {"agent": self.agent, "skills": sorted(self.skills), "updated_at": format_ts(self.updated_at)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "InjectionRecord":
        skills = raw.get("skills")
        return cls(
            agent=_str(raw, "agent"),
            skills=[s for s in skills if isinstance(s, str)] if isinstance(skills, list) else [],
            updated_at=parse_ts(raw.get("updated_at")),
        )


@dataclass
class State:
    installed: list[InstalledSkillRecord] = field(default_factory=list)
    injections: list[InjectionRecord] = field(default_factory=list)

    def find_installed(self, skill_ref: str) -> InstalledSkillRecord | None:
        for rec in self.installed:
            if rec.skill_ref == skill_ref:
                return rec
        return None

    def upsert_installed(self, rec: InstalledSkillRecord) -> None:
        for i, existing in enumerate(self.installed):
            if existing.skill_ref == rec.skill_ref:
                self.installed[i] = rec
                return
        self.installed.append(rec)

    def remove_installed(self, skill_ref: str) -> bool:
        for i, existing in enumerate(self.installed):
            if existing.skill_ref == skill_ref:
                del self.installed[i]
                return True
        return False

    def set_injection(self, rec: InjectionRecord) -> None:
        for i, existing in enumerate(self.injections):
            if existing.agent == rec.agent:
                self.injections[i] = rec
                return
        self.injections.append(rec)

    def remove_injection(self, agent: str) -> bool:
        for i, existing in enumerate(self.injections):
            if existing.agent == agent:
                del self.injections[i]
                return True
        return False


@dataclass
class LockEntry:
    skill_ref: str
    resolved_version: str
    checksum: str
    source_ref: str
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "skill_ref": self.skill_ref,
            "resolved_version": self.resolved_version,
            "checksum": self.checksum,
            "source_ref": self.source_ref,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data


@dataclass
class Lockfile:
    skills: list[LockEntry] = field(default_factory=list)

    def find(self, skill_ref: str) -> LockEntry | None:
        for entry in self.skills:
            if entry.skill_ref == skill_ref:
                return entry
        return None

    def upsert(self, entry: LockEntry) -> None:
        for i, existing in enumerate(self.skills):
            if existing.skill_ref == entry.skill_ref:
                self.skills[i] = entry
                return
        self.skills.append(entry)

    def remove(self, skill_ref: str) -> bool:
        for i, existing in enumerate(self.skills):
            if existing.skill_ref == skill_ref:
                del self.skills[i]
                return True
        return False


def _read_json(path: Path, parse_code: ErrorCode) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise SkillpmError(parse_code, f"{path}: {e}") from e
    except OSError as e:
        raise SkillpmError(parse_code, f"could not read {path}: {e}") from e


def load_state(root: Path) -> State:
    ensure_layout(root)
    path = state_path(root)
    if not path.exists():
        return State()
    raw = _read_json(path, ErrorCode.STATE_PARSE)
    if not isinstance(raw, dict):
        raise SkillpmError(ErrorCode.STATE_PARSE, f"{path}: expected an object")
    version = raw.get("schema_version") or STATE_VERSION
    if version != STATE_VERSION:
        raise SkillpmError(ErrorCode.STATE_VERSION, f"unsupported state version {version}")

    state = State()
    for item in raw.get("installed") or []:
        if not isinstance(item, dict):
            continue
        rec = InstalledSkillRecord.from_dict(item)
        if not rec.skill_ref:
            raise SkillpmError(ErrorCode.STATE_SCHEMA, "installed entry missing skill_ref")
        state.installed.append(rec)
    for item in raw.get("injections") or []:
        if isinstance(item, dict):
            inj = InjectionRecord.from_dict(item)
            if inj.agent:
                state.injections.append(inj)
    return state


def save_state(root: Path, state: State) -> None:
    ensure_layout(root)
    payload = {
        "schema_version": STATE_VERSION,
        "installed": [r.to_dict() for r in sorted(state.installed, key=lambda r: r.skill_ref)],
        "injections": [i.to_dict() for i in sorted(state.injections, key=lambda i: i.agent)],
    }
    write_json_atomic(state_path(root), payload)


def load_lockfile(path: Path | None) -> Lockfile:
    if path is None or not path.exists():
        return Lockfile()
    raw = _read_json(path, ErrorCode.LOCK_PARSE)
    if not isinstance(raw, dict):
        raise SkillpmError(ErrorCode.LOCK_PARSE, f"{path}: expected an object")
    version = raw.get("schema_version") or LOCK_VERSION
    if version != LOCK_VERSION:
        raise SkillpmError(ErrorCode.LOCK_VERSION, f"unsupported lockfile version {version}")

    lock = Lockfile()
    seen: set[str] = set()
    for item in raw.get("skills") or []:
        if not isinstance(item, dict):
            raise SkillpmError(ErrorCode.LOCK_SCHEMA, "lock entry must be an object")
        skill_ref = _str(item, "skill_ref")
        if not skill_ref:
            raise SkillpmError(ErrorCode.LOCK_SCHEMA, "missing skill_ref")
        if skill_ref in seen:
            raise SkillpmError(ErrorCode.LOCK_SCHEMA, f"duplicate skill_ref {skill_ref!r}")
        seen.add(skill_ref)
        entry = LockEntry(
            skill_ref=skill_ref,
            resolved_version=_str(item, "resolved_version"),
            checksum=_str(item, "checksum"),
            source_ref=_str(item, "source_ref"),
        )
        if not entry.resolved_version or not entry.checksum or not entry.source_ref:
            raise SkillpmError(ErrorCode.LOCK_SCHEMA, f"incomplete record for {skill_ref!r}")
        meta = item.get("metadata")
        if isinstance(meta, dict):
            entry.metadata = {str(k): str(v) for k, v in meta.items()}
        lock.skills.append(entry)
    return lock


def save_lockfile(path: Path, lock: Lockfile) -> None:
    payload = {
        "schema_version": LOCK_VERSION,
        "skills": [e.to_dict() for e in sorted(lock.skills, key=lambda e: e.skill_ref)],
    }
    write_json_atomic(path, payload)
