from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .adapters import AdapterRuntime, FileAdapter, short_skill_name
from .config import Paths
from .errors import SkillpmError
from .store import (
    LockEntry,
    State,
    artifact_dir_name,
    installed_root,
    load_lockfile,
    load_state,
    save_lockfile,
    save_state,
    snapshot_root,
    staging_root,
)

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_FIXED = "fixed"
STATUS_WARN = "warn"
STATUS_ERROR = "error"

SNAPSHOTS_KEPT_PER_AGENT = 10


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: str
    message: str
    fix: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = {"name": self.name, "status": self.status, "message": self.message}
        if self.fix:
            data["fix"] = self.fix
        return data


@dataclass
class DoctorReport:
    checks: list[CheckResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for c in self.checks if c.status == status)

    @property
    def healthy(self) -> bool:
        return self._count(STATUS_ERROR) == 0

    @property
    def fixed(self) -> int:
        return self._count(STATUS_FIXED)

    @property
    def warnings(self) -> int:
        return self._count(STATUS_WARN)

    @property
    def errors(self) -> int:
        return self._count(STATUS_ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checks": [c.to_dict() for c in self.checks],
            "fixed": self.fixed,
            "warnings": self.warnings,
            "errors": self.errors,
        }


class Doctor:
    """
    Repairs drift between installed artifacts, State, the lockfile and adapter records.

    Checks run in dependency order; each one reloads what it needs so a fix made
    by an earlier check is visible to the next. With ``apply=False`` nothing is
    written and every problem is reported as a warning.
    """

    def __init__(self, paths: Paths, runtime: AdapterRuntime | None = None, lock_path: Path | None = None) -> None:
        self.paths = paths
        self.root = paths.store_root
        self.runtime = runtime
        self.lock_path = Path(lock_path) if lock_path is not None else None

    def run(self, apply: bool = True) -> DoctorReport:
        report = DoctorReport()
        for check in (
            self._check_state,
            self._check_installed_dirs,
            self._check_injections,
            self._check_adapter_state,
            self._check_agent_files,
            self._check_snapshots,
            self._check_lockfile,
        ):
            result = check(apply)
            logger.debug("doctor %s: %s %s", result.name, result.status, result.fix)
            report.checks.append(result)
        return report

    def _result(self, name: str, message: str, fixes: list[str], apply: bool) -> CheckResult:
        if not fixes:
            return CheckResult(name, STATUS_OK, message)
        return CheckResult(name, STATUS_FIXED if apply else STATUS_WARN, message, "; ".join(fixes))

    def _check_state(self, apply: bool) -> CheckResult:
        name = "state"
        try:
            load_state(self.root)
        except SkillpmError as e:
            if not apply:
                return CheckResult(name, STATUS_WARN, str(e), "reset corrupt state")
            try:
                save_state(self.root, State())
            except OSError as save_err:
                return CheckResult(name, STATUS_ERROR, str(save_err))
            return CheckResult(name, STATUS_FIXED, "state valid", "reset corrupt state")
        return CheckResult(name, STATUS_OK, "state valid")

    def _load(self, name: str) -> State | CheckResult:
        try:
            return load_state(self.root)
        except SkillpmError as e:
            return CheckResult(name, STATUS_ERROR, str(e))

    def _check_installed_dirs(self, apply: bool) -> CheckResult:
        name = "installed-dirs"
        state = self._load(name)
        if isinstance(state, CheckResult):
            return state

        expected = {artifact_dir_name(r.skill_ref, r.resolved_version) for r in state.installed}
        base = installed_root(self.root)
        on_disk = {p.name for p in base.iterdir() if p.is_dir()} if base.is_dir() else set()

        fixes: list[str] = []
        for dirname in sorted(on_disk - expected):
            label = "stray backup" if ".bak-" in dirname else "orphan dir"
            fixes.append(f"removed {label}: {dirname}")
            if apply:
                shutil.rmtree(base / dirname, ignore_errors=True)

        stage = staging_root(self.root)
        for leftover in sorted(p for p in stage.iterdir()) if stage.is_dir() else []:
            fixes.append(f"removed stale staging dir: {leftover.name}")
            if apply:
                shutil.rmtree(leftover, ignore_errors=True)

        ghosts = [r.skill_ref for r in state.installed if artifact_dir_name(r.skill_ref, r.resolved_version) not in on_disk]
        for ref in ghosts:
            fixes.append(f"removed ghost state entry: {ref}")
            state.remove_installed(ref)
        if ghosts and apply:
            try:
                save_state(self.root, state)
            except OSError as e:
                return CheckResult(name, STATUS_ERROR, str(e))
        return self._result(name, "installed dirs reconciled", fixes, apply)

    def _check_injections(self, apply: bool) -> CheckResult:
        name = "injections"
        state = self._load(name)
        if isinstance(state, CheckResult):
            return state

        installed = {r.skill_ref for r in state.installed}
        fixes: list[str] = []
        for inj in list(state.injections):
            valid = [ref for ref in inj.skills if ref in installed]
            for ref in inj.skills:
                if ref not in installed:
                    fixes.append(f"removed stale ref {ref} from {inj.agent}")
            if not valid:
                fixes.append(f"removed empty agent entry: {inj.agent}")
                state.remove_injection(inj.agent)
            else:
                inj.skills = valid
        if fixes and apply:
            try:
                save_state(self.root, state)
            except OSError as e:
                return CheckResult(name, STATUS_ERROR, str(e))
        return self._result(name, "injection refs valid", fixes, apply)

    def _check_adapter_state(self, apply: bool) -> CheckResult:
        name = "adapter-state"
        if self.runtime is None:
            return CheckResult(name, STATUS_OK, "no adapters configured")
        state = self._load(name)
        if isinstance(state, CheckResult):
            return state

        # State is authoritative: an adapter record that disagrees is rebuilt from it.
        fixes: list[str] = []
        for inj in state.injections:
            try:
                adapter = self.runtime.get(inj.agent)
                listed = adapter.list_injected()
            except SkillpmError as e:
                logger.debug("adapter-state: skipping %s: %s", inj.agent, e)
                continue
            if sorted(set(listed)) == sorted(set(inj.skills)):
                continue
            fixes.append(f"{inj.agent}: synced injected record")
            if apply:
                try:
                    adapter.remove([])
                    if inj.skills:
                        adapter.inject(list(inj.skills))
                except (SkillpmError, OSError) as e:
                    return CheckResult(name, STATUS_ERROR, f"{inj.agent}: {e}")
        return self._result(name, "adapter records match state", fixes, apply)

    def _check_agent_files(self, apply: bool) -> CheckResult:
        name = "agent-files"
        if self.runtime is None:
            return CheckResult(name, STATUS_OK, "no adapters configured")
        state = self._load(name)
        if isinstance(state, CheckResult):
            return state

        installed = {r.skill_ref for r in state.installed}
        fixes: list[str] = []
        for agent in self.runtime.names():
            adapter = self.runtime.get(agent)
            try:
                listed = adapter.list_injected()
            except SkillpmError as e:
                return CheckResult(name, STATUS_ERROR, str(e))

            # Only refs the adapter itself recorded are touched; anything else in
            # the agent's directory may be user-authored.
            stale = [ref for ref in listed if ref not in installed]
            if stale:
                fixes.append(f"{agent}: removed {', '.join(stale)}")
                if apply:
                    try:
                        adapter.remove(stale)
                    except (SkillpmError, OSError) as e:
                        return CheckResult(name, STATUS_ERROR, f"{agent}: {e}")

            if not isinstance(adapter, FileAdapter):
                continue
            missing = [
                ref for ref in listed if ref in installed and not (adapter.skills_dir / short_skill_name(ref)).is_dir()
            ]
            if missing:
                fixes.append(f"{agent}: restored {', '.join(missing)}")
                if apply:
                    try:
                        adapter.inject(missing)
                    except (SkillpmError, OSError) as e:
                        return CheckResult(name, STATUS_ERROR, f"{agent}: {e}")
        return self._result(name, "agent skill files consistent", fixes, apply)

    def _check_snapshots(self, apply: bool) -> CheckResult:
        name = "snapshots"
        base = snapshot_root(self.root) / "adapters"
        by_agent: dict[str, list[tuple[int, Path]]] = {}
        for path in base.glob("*.json") if base.is_dir() else []:
            agent, _, stamp = path.stem.rpartition("-")
            if not agent or not stamp.isdigit():
                continue
            by_agent.setdefault(agent, []).append((int(stamp), path))

        fixes: list[str] = []
        for agent in sorted(by_agent):
            snaps = sorted(by_agent[agent])
            stale = snaps[:-SNAPSHOTS_KEPT_PER_AGENT]
            if not stale:
                continue
            fixes.append(f"{agent}: pruned {len(stale)} old snapshot(s)")
            if apply:
                for _stamp, path in stale:
                    path.unlink(missing_ok=True)
        return self._result(name, "adapter snapshots pruned", fixes, apply)

    def _check_lockfile(self, apply: bool) -> CheckResult:
        name = "lockfile"
        if self.lock_path is None:
            return CheckResult(name, STATUS_OK, "no lockfile configured")
        try:
            lock = load_lockfile(self.lock_path)
        except SkillpmError as e:
            return CheckResult(name, STATUS_WARN, f"lockfile unreadable: {e}")
        state = self._load(name)
        if isinstance(state, CheckResult):
            return state

        fixes: list[str] = []
        for entry in list(lock.skills):
            if state.find_installed(entry.skill_ref) is None:
                lock.remove(entry.skill_ref)
                fixes.append(f"removed stale lock entry: {entry.skill_ref}")
        for rec in sorted(state.installed, key=lambda r: r.skill_ref):
            if lock.find(rec.skill_ref) is None:
                lock.upsert(
                    LockEntry(
                        skill_ref=rec.skill_ref,
                        resolved_version=rec.resolved_version,
                        checksum=rec.checksum,
                        source_ref=rec.source_ref,
                    )
                )
                fixes.append(f"added missing lock entry: {rec.skill_ref}")

        if fixes and apply:
            try:
                save_lockfile(self.lock_path, lock)
            except OSError as e:
                return CheckResult(name, STATUS_ERROR, str(e))
        return self._result(name, f"{len(lock.skills)} lock entries verified", fixes, apply)
