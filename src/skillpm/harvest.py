from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .adapters import AdapterRuntime
from .errors import ErrorCode, SkillpmError
from .store import PRIMARY_FILENAME, ensure_layout, format_ts, inbox_root, utc_now, write_json_atomic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkillDir:
    name: str
    root: Path
    skill_file: Path


def validate_skill_dir(path: Path) -> SkillDir:
    """Check that ``path`` looks like an importable skill: a named directory holding ``SKILL.md``."""
    root = Path(path)
    skill_file = root / PRIMARY_FILENAME
    if not skill_file.exists():
        raise SkillpmError(ErrorCode.IMPORT_SKILL_SHAPE, f"missing {PRIMARY_FILENAME} in {str(root)!r}")
    if skill_file.is_dir():
        raise SkillpmError(ErrorCode.IMPORT_SKILL_SHAPE, f"{PRIMARY_FILENAME} is a directory")
    name = root.name
    if not name.strip() or name in (".", ".."):
        raise SkillpmError(ErrorCode.IMPORT_SKILL_SHAPE, "invalid skill directory name")
    return SkillDir(name=name, root=root, skill_file=skill_file)


@dataclass(frozen=True)
class InboxEntry:
    agent: str
    path: Path
    skill_name: str
    valid: bool
    reason: str = ""
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "agent": self.agent,
            "path": str(self.path),
            "skillName": self.skill_name,
            "valid": self.valid,
            "createdAt": self.created_at,
        }
        if self.reason:
            data["reason"] = self.reason
        return data


class Harvester:
    """Collects skills found in an agent's directories into an inbox file under the store."""

    def __init__(self, runtime: AdapterRuntime | None, store_root: Path) -> None:
        self.runtime = runtime
        self.store_root = Path(store_root)

    def harvest(self, agent: str) -> tuple[list[InboxEntry], Path]:
        if self.runtime is None:
            raise SkillpmError(ErrorCode.HARVEST_RUNTIME, "adapter runtime not configured")
        adapter = self.runtime.get(agent)

        created_at = format_ts(utc_now())
        entries: list[InboxEntry] = []
        for candidate in adapter.harvest_candidates():
            try:
                validate_skill_dir(candidate.path)
            except SkillpmError as e:
                entries.append(InboxEntry(agent, candidate.path, candidate.name, False, str(e), created_at))
                continue
            entries.append(InboxEntry(agent, candidate.path, candidate.name, True, created_at=created_at))

        path = inbox_root(self.store_root) / f"harvest-{time.time_ns()}.json"
        try:
            ensure_layout(self.store_root)
            write_json_atomic(path, [e.to_dict() for e in entries])
        except OSError as e:
            raise SkillpmError(ErrorCode.HARVEST_WRITE, f"{path}: {e}") from e
        logger.debug("harvested %d candidate(s) from %s into %s", len(entries), agent, path)
        return entries, path
