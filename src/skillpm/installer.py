from __future__ import annotations

import json
import logging
import shutil
import time
from datetime import datetime
from pathlib import Path

from .audit import AuditEvent, AuditLogger
from .errors import ErrorCode, SkillpmError
from .resolver import ResolvedSkill
from .security import Scanner, SecurityPolicy, safe_join
from .store import (
    META_FILENAME,
    PRIMARY_FILENAME,
    InstalledSkillRecord,
    LockEntry,
    Lockfile,
    artifact_dir_name,
    ensure_layout,
    find_artifact_dirs,
    installed_root,
    load_lockfile,
    load_state,
    save_lockfile,
    save_state,
    staging_root,
    state_path,
    utc_now,
)

logger = logging.getLogger(__name__)


def read_artifact_meta(artifact_dir: Path) -> dict | None:
    try:
        data = json.loads((artifact_dir / META_FILENAME).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


class _Transaction:
    """Compensating log for one install call: committed dirs plus backups, undone in reverse."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.committed: list[Path] = []
        self.backups: list[tuple[Path, Path]] = []
        path = state_path(root)
        self._state_bytes = path.read_bytes() if path.exists() else None

    def backup(self, target: Path) -> None:
        backup = target.with_name(f"{target.name}.bak-{time.time_ns()}")
        try:
            target.rename(backup)
        except OSError as e:
            raise SkillpmError(ErrorCode.INSTALL_COMMIT_BACKUP, f"{target.name}: {e}") from e
        self.backups.append((target, backup))

    def rollback(self) -> None:
        for final in reversed(self.committed):
            shutil.rmtree(final, ignore_errors=True)
        for final, backup in reversed(self.backups):
            try:
                if final.exists():
                    shutil.rmtree(final)
                backup.rename(final)
            except OSError as e:
                logger.warning("rollback could not restore %s from %s: %s", final, backup, e)
        path = state_path(self.root)
        try:
            if self._state_bytes is None:
                path.unlink(missing_ok=True)
            elif not path.exists() or path.read_bytes() != self._state_bytes:
                path.write_bytes(self._state_bytes)
        except OSError as e:
            logger.warning("rollback could not restore %s: %s", path, e)

    def discard_backups(self) -> None:
        for _final, backup in self.backups:
            shutil.rmtree(backup, ignore_errors=True)


class Installer:
    """
    Transactional install/uninstall of resolved skills into the store.

    Every install call either commits all of its skills (artifacts, State, Lockfile)
    or leaves the store exactly as it found it.
    """

    def __init__(
        self,
        root: Path,
        *,
        policy: SecurityPolicy | None = None,
        scanner: Scanner | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.root = Path(root)
        self.policy = policy
        self.scanner = scanner
        self.audit = audit or AuditLogger(None)

    def _is_current(self, item: ResolvedSkill, existing: InstalledSkillRecord | None) -> bool:
        if existing is None:
            return False
        if existing.resolved_version != item.resolved_version or existing.checksum != item.checksum:
            return False
        final = installed_root(self.root) / artifact_dir_name(item.skill_ref, item.resolved_version)
        meta = read_artifact_meta(final)
        if meta is None or meta.get("checksum") != item.checksum:
            return False
        return [p.name for p in find_artifact_dirs(self.root, item.skill_ref)] == [final.name]

    def _check_security(self, skills: list[ResolvedSkill], force: bool) -> None:
        if self.policy is not None:
            for item in skills:
                self.policy.check_trust_tier(item.trust_tier)
                self.policy.check_moderation(
                    is_suspicious=item.is_suspicious,
                    is_malware_blocked=item.is_malware_blocked,
                    force=force,
                )
        if self.scanner is not None:
            report = self.scanner.scan([s.scan_content() for s in skills])
            self.scanner.enforce(report, force)

    def _stage(self, stage: Path, item: ResolvedSkill, installed_at: datetime) -> Path:
        staged = stage / artifact_dir_name(item.skill_ref, item.resolved_version)
        try:
            staged.mkdir(parents=True)
            (staged / PRIMARY_FILENAME).write_text(item.content, encoding="utf-8")
            for rel in sorted(item.files):
                target = safe_join(staged, rel)
                if target.name == META_FILENAME or rel == PRIMARY_FILENAME:
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(item.files[rel], encoding="utf-8")
            meta = {
                "skill_ref": item.skill_ref,
                "source": item.source,
                "skill": item.skill,
                "resolved_version": item.resolved_version,
                "checksum": item.checksum,
                "source_ref": item.source_ref,
                "installed_at": installed_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
            (staged / META_FILENAME).write_text(json.dumps(meta, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        except OSError as e:
            raise SkillpmError(ErrorCode.INSTALL_STAGE_WRITE, f"{item.skill_ref}: {e}") from e
        return staged

    def install(
        self, skills: list[ResolvedSkill], lock_path: Path | None = None, force: bool = False
    ) -> list[InstalledSkillRecord]:
        ensure_layout(self.root)
        self.audit.log(AuditEvent("install", "start", "ok", message=f"skills={len(skills)}"))
        state = load_state(self.root)
        lock = load_lockfile(lock_path)

        try:
            self._check_security(skills, force)
        except SkillpmError as e:
            self.audit.log(AuditEvent("install", "security", "blocked", code=e.code.value, message=e.detail))
            raise

        stage = staging_root(self.root) / f"install-{time.time_ns()}"
        try:
            stage.mkdir(parents=True)
        except OSError as e:
            raise SkillpmError(ErrorCode.INSTALL_STAGE_CREATE, str(e)) from e

        # A ref listed more than once installs its last entry only.
        batch = list({item.skill_ref: item for item in skills}.values())

        tx = _Transaction(self.root)
        installed: list[InstalledSkillRecord] = []
        lock_changed = False
        try:
            for item in batch:
                existing = state.find_installed(item.skill_ref)
                if self._is_current(item, existing):
                    logger.debug("%s@%s already installed", item.skill_ref, item.resolved_version)
                    installed.append(existing)
                    lock_changed |= self._upsert_lock(lock, item)
                    continue

                now = utc_now()
                staged = self._stage(stage, item, now)
                final = installed_root(self.root) / staged.name

                # Any artifact dir for this ref (same or older version) is moved aside,
                # so exactly one remains after commit.
                for old in find_artifact_dirs(self.root, item.skill_ref):
                    if old in tx.committed:
                        tx.committed.remove(old)
                        shutil.rmtree(old, ignore_errors=True)
                    else:
                        tx.backup(old)

                try:
                    staged.rename(final)
                except OSError as e:
                    raise SkillpmError(ErrorCode.INSTALL_COMMIT, f"{item.skill_ref}: {e}") from e
                tx.committed.append(final)

                rec = InstalledSkillRecord(
                    skill_ref=item.skill_ref,
                    source=item.source,
                    skill=item.skill,
                    resolved_version=item.resolved_version,
                    checksum=item.checksum,
                    source_ref=item.source_ref,
                    installed_at=now,
                    trust_tier=item.trust_tier,
                    is_suspicious=item.is_suspicious,
                    is_malware_blocked=item.is_malware_blocked,
                )
                state.upsert_installed(rec)
                installed.append(rec)
                lock_changed |= self._upsert_lock(lock, item)

            if tx.committed:
                try:
                    save_state(self.root, state)
                except OSError as e:
                    raise SkillpmError(ErrorCode.INSTALL_STATE_SAVE, str(e)) from e
            if lock_path is not None and (lock_changed or not Path(lock_path).exists()):
                try:
                    save_lockfile(Path(lock_path), lock)
                except OSError as e:
                    raise SkillpmError(ErrorCode.INSTALL_LOCK_SAVE, str(e)) from e
        except SkillpmError as e:
            tx.rollback()
            self.audit.log(AuditEvent("install", "rollback", "error", code=e.code.value, message=e.detail))
            raise
        finally:
            shutil.rmtree(stage, ignore_errors=True)

        tx.discard_backups()
        self.audit.log(AuditEvent("install", "commit", "ok", message=f"installed={len(tx.committed)}"))
        installed.sort(key=lambda r: r.skill_ref)
        return installed

    @staticmethod
    def _upsert_lock(lock: Lockfile, item: ResolvedSkill) -> bool:
        entry = LockEntry(
            skill_ref=item.skill_ref,
            resolved_version=item.resolved_version,
            checksum=item.checksum,
            source_ref=item.source_ref,
            metadata={"resolverHash": item.resolver_hash} if item.resolver_hash else {},
        )
        if lock.find(item.skill_ref) == entry:
            return False
        lock.upsert(entry)
        return True

    def uninstall(self, skill_refs: list[str], lock_path: Path | None = None) -> list[str]:
        state = load_state(self.root)
        lock = load_lockfile(lock_path)
        removed: list[str] = []
        for ref in skill_refs:
            if not state.remove_installed(ref):
                continue
            lock.remove(ref)
            for d in find_artifact_dirs(self.root, ref):
                shutil.rmtree(d, ignore_errors=True)
            removed.append(ref)

        try:
            save_state(self.root, state)
            if lock_path is not None:
                save_lockfile(Path(lock_path), lock)
        except OSError as e:
            raise SkillpmError(ErrorCode.UNINSTALL_SAVE, str(e)) from e
        self.audit.log(AuditEvent("uninstall", "commit", "ok", message=f"removed={len(removed)}"))
        return sorted(set(removed))
