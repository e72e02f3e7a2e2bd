from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .adapters import AdapterRuntime
from .config import Config
from .errors import ErrorCode, SkillpmError
from .installer import Installer
from .project import ProjectManifest
from .resolver import ResolvedSkill, Resolver
from .security import Scanner
from .sources import SourceManager
from .store import load_lockfile, load_state

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    updated_sources: list[str] = field(default_factory=list)
    upgraded_skills: list[str] = field(default_factory=list)
    reinjected_agents: list[str] = field(default_factory=list)
    skipped_reinjects: list[str] = field(default_factory=list)
    failed_reinjects: list[str] = field(default_factory=list)
    dry_run: bool = False

    def normalize(self) -> None:
        for name in (
            "updated_sources",
            "upgraded_skills",
            "reinjected_agents",
            "skipped_reinjects",
            "failed_reinjects",
        ):
            setattr(self, name, sorted(set(getattr(self, name))))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "updatedSources": list(self.updated_sources),
            "upgradedSkills": list(self.upgraded_skills),
            "reinjectedAgents": list(self.reinjected_agents),
        }
        if self.skipped_reinjects:
            data["skippedReinjects"] = list(self.skipped_reinjects)
        if self.failed_reinjects:
            data["failedReinjects"] = list(self.failed_reinjects)
        if self.dry_run:
            data["dryRun"] = True
        return data


class SyncService:
    """
    One reconciliation pass: refresh sources, upgrade what moved, reinject every tracked agent.

    A dry run works on a copy of the config and never writes State, the lockfile
    or any adapter record. Per-agent reinjection failures are reported, not raised.
    """

    def __init__(
        self,
        *,
        sources: SourceManager | None,
        resolver: Resolver | None,
        installer: Installer | None,
        store_root: Path,
        runtime: AdapterRuntime | None = None,
        scanner: Scanner | None = None,
        manifest: ProjectManifest | None = None,
    ) -> None:
        self.sources = sources
        self.resolver = resolver
        self.installer = installer
        self.store_root = Path(store_root)
        self.runtime = runtime
        self.scanner = scanner
        self.manifest = manifest

    def _refs_to_check(self, installed_refs: list[str]) -> list[str]:
        if self.manifest is not None and self.manifest.skills:
            return [e.spec for e in self.manifest.skills]
        return list(installed_refs)

    def run(
        self,
        config: Config | None,
        lock_path: Path | None,
        force: bool = False,
        dry_run: bool = False,
        source_name: str = "",
    ) -> SyncReport:
        if self.sources is None or self.resolver is None or self.installer is None:
            raise SkillpmError(ErrorCode.SYNC_SETUP, "sync dependencies not configured")
        if config is None:
            raise SkillpmError(ErrorCode.CONFIG_MISSING, "sync requires a loaded config")

        run_config = config.clone() if dry_run else config
        report = SyncReport(dry_run=dry_run)

        for update in self.sources.update(run_config, source_name):
            report.updated_sources.append(update.source.name)
            if update.note:
                logger.debug("source %s: %s", update.source.name, update.note)

        state = load_state(self.store_root)
        refs = self._refs_to_check([r.skill_ref for r in state.installed])
        if not refs:
            report.normalize()
            return report

        installed_version = {r.skill_ref: r.resolved_version for r in state.installed}
        lock = load_lockfile(Path(lock_path) if lock_path is not None else None)
        resolved = self.resolver.resolve_many(run_config, refs, lock)

        upgrades: list[ResolvedSkill] = []
        for item in resolved:
            if installed_version.get(item.skill_ref) != item.resolved_version:
                upgrades.append(item)
                report.upgraded_skills.append(item.skill_ref)

        if upgrades and not dry_run:
            if self.scanner is not None:
                self.scanner.enforce(self.scanner.scan([u.scan_content() for u in upgrades]), force)
            self.installer.install(upgrades, lock_path, force=force)

        self._reinject(state.injections, report, dry_run)
        report.normalize()
        return report

    def _reinject(self, injections, report: SyncReport, dry_run: bool) -> None:
        if self.runtime is None:
            report.skipped_reinjects.extend(inj.agent for inj in injections)
            return

        for inj in injections:
            try:
                if dry_run:
                    self.runtime.get(inj.agent)
                else:
                    self.runtime.inject_and_record(inj.agent, list(inj.skills))
            except (SkillpmError, OSError) as e:
                logger.warning("reinject into %s failed: %s", inj.agent, e)
                report.failed_reinjects.append(f"{inj.agent} ({e})")
                continue
            report.reinjected_agents.append(inj.agent)
