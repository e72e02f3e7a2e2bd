import tempfile
import unittest
from pathlib import Path

from skillpm.adapters import AdapterRuntime
from skillpm.config import AdapterConfig, Config, Paths
from skillpm.doctor import SNAPSHOTS_KEPT_PER_AGENT, Doctor
from skillpm.installer import Installer
from skillpm.resolver import ResolvedSkill
from skillpm.sources import compute_checksum
from skillpm.store import (
    InjectionRecord,
    LockEntry,
    installed_root,
    load_lockfile,
    load_state,
    save_lockfile,
    save_state,
    staging_root,
    state_path,
)


def _skill(ref: str) -> ResolvedSkill:
    source, skill = ref.split("/", 1)
    content = f"# {skill}\n"
    return ResolvedSkill(
        skill_ref=ref,
        source=source,
        skill=skill,
        resolved_version="1.0.0",
        checksum=compute_checksum(content),
        source_ref=f"https://example.test/{source}.git@1.0.0",
        content=content,
    )


class DoctorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        tmp = Path(self._tmp.name)
        self.paths = Paths.under(tmp)
        self.lock_path = tmp / "skills.lock.json"
        self.installer = Installer(self.paths.store_root)
        self.installer.install([_skill("anthropic/pdf"), _skill("anthropic/docx")], self.lock_path)
        self.runtime = AdapterRuntime(self.paths, Config(adapters=[AdapterConfig(name="codex")]))
        self.runtime.inject_and_record("codex", ["anthropic/pdf", "anthropic/docx"])
        self.doctor = Doctor(self.paths, runtime=self.runtime, lock_path=self.lock_path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _status(self, report) -> dict[str, str]:
        return {c.name: c.status for c in report.checks}


class TestDoctor(DoctorTestCase):
    def test_healthy_store(self) -> None:
        report = self.doctor.run()
        self.assertEqual([c.name for c in report.checks], [
                "state",
                "installed-dirs",
                "injections",
                "adapter-state",
                "agent-files",
                "snapshots",
                "lockfile",
            ])
        self.assertEqual(set(self._status(report).values()), {"ok"})
        self.assertTrue(report.healthy)
        self.assertEqual(report.fixed, 0)

    def test_corrupt_state_is_reset(self) -> None:
        state_path(self.paths.store_root).write_text("{", encoding="utf-8")
        report = self.doctor.run()
        self.assertEqual(report.checks[0].status, "fixed")
        self.assertEqual(report.checks[0].fix, "reset corrupt state")
        self.assertEqual(load_state(self.paths.store_root).installed, [])

    def test_orphans_backups_and_ghosts(self) -> None:
        base = installed_root(self.paths.store_root)
        (base / "team_unknown@0.1.0").mkdir()
        (base / "anthropic_pdf@0.9.0.bak-123").mkdir()
        (staging_root(self.paths.store_root) / "install-42").mkdir()
        for child in (base / "anthropic_docx@1.0.0").iterdir():
            child.unlink()
        (base / "anthropic_docx@1.0.0").rmdir()

        report = self.doctor.run()

        self.assertEqual(self._status(report)["installed-dirs"], "fixed")
        self.assertEqual(sorted(p.name for p in base.iterdir()), ["anthropic_pdf@1.0.0"])
        self.assertEqual(list(staging_root(self.paths.store_root).iterdir()), [])
        self.assertIsNone(load_state(self.paths.store_root).find_installed("anthropic/docx"))
        # The ghost's lock entry and injection follow in later checks.
        self.assertIsNone(load_lockfile(self.lock_path).find("anthropic/docx"))
        self.assertEqual(load_state(self.paths.store_root).injections[0].skills, ["anthropic/pdf"])

    def test_stale_injections_are_pruned(self) -> None:
        state = load_state(self.paths.store_root)
        state.set_injection(InjectionRecord(agent="cursor", skills=["gone/skill"]))
        save_state(self.paths.store_root, state)

        report = self.doctor.run()

        self.assertEqual(self._status(report)["injections"], "fixed")
        self.assertEqual([i.agent for i in load_state(self.paths.store_root).injections], ["codex"])

    def test_agent_files_for_uninstalled_refs_are_removed(self) -> None:
        skills_dir = self.paths.home / ".codex" / "skills"
        (skills_dir / "mine").mkdir()
        (skills_dir / "mine" / "SKILL.md").write_text("# Mine\n", encoding="utf-8")
        self.installer.uninstall(["anthropic/docx"], self.lock_path)
        state = load_state(self.paths.store_root)
        state.remove_injection("codex")
        save_state(self.paths.store_root, state)

        report = self.doctor.run()

        self.assertEqual(self._status(report)["adapter-state"], "ok")
        self.assertEqual(self._status(report)["agent-files"], "fixed")
        self.assertFalse((skills_dir / "docx").exists())
        self.assertTrue((skills_dir / "pdf").is_dir())
        self.assertTrue((skills_dir / "mine" / "SKILL.md").is_file())
        self.assertEqual(self.runtime.get("codex").list_injected(), ["anthropic/pdf"])

    def test_adapter_record_rebuilt_from_state(self) -> None:
        skills_dir = self.paths.home / ".codex" / "skills"
        self.runtime.get("codex").remove(["anthropic/docx"])
        self.assertFalse((skills_dir / "docx").exists())

        report = self.doctor.run()

        self.assertEqual(self._status(report)["adapter-state"], "fixed")
        self.assertEqual(self.runtime.get("codex").list_injected(), ["anthropic/docx", "anthropic/pdf"])
        self.assertTrue((skills_dir / "docx" / "SKILL.md").is_file())
        self.assertTrue((skills_dir / "pdf" / "SKILL.md").is_file())

    def test_adapter_record_drift_reported_without_apply(self) -> None:
        self.runtime.get("codex").remove(["anthropic/docx"])
        report = self.doctor.run(apply=False)
        self.assertEqual(self._status(report)["adapter-state"], "warn")
        self.assertEqual(self.runtime.get("codex").list_injected(), ["anthropic/pdf"])

    def test_old_snapshots_are_pruned(self) -> None:
        snapshots = self.paths.store_root / "snapshots" / "adapters"
        for _ in range(SNAPSHOTS_KEPT_PER_AGENT + 3):
            self.runtime.get("codex").inject(["anthropic/pdf"])
        (snapshots / "notes.json").write_text("{}", encoding="utf-8")
        newest = sorted(snapshots.glob("codex-*.json"), key=lambda p: int(p.stem.rpartition("-")[2]))[-1]

        report = self.doctor.run()

        self.assertEqual(self._status(report)["snapshots"], "fixed")
        remaining = list(snapshots.glob("codex-*.json"))
        self.assertEqual(len(remaining), SNAPSHOTS_KEPT_PER_AGENT)
        self.assertIn(newest, remaining)
        self.assertTrue((snapshots / "notes.json").is_file())

    def test_missing_agent_files_are_restored(self) -> None:
        skills_dir = self.paths.home / ".codex" / "skills"
        (skills_dir / "pdf" / "SKILL.md").unlink()
        (skills_dir / "pdf").rmdir()

        report = self.doctor.run()

        self.assertEqual(self._status(report)["agent-files"], "fixed")
        self.assertEqual((skills_dir / "pdf" / "SKILL.md").read_text(encoding="utf-8"), "# pdf\n")

    def test_lockfile_reconciled_with_state(self) -> None:
        lock = load_lockfile(self.lock_path)
        lock.remove("anthropic/docx")
        lock.upsert(LockEntry("stale/entry", "1.0.0", "sha256:00", "s@1.0.0"))
        save_lockfile(self.lock_path, lock)

        report = self.doctor.run()

        self.assertEqual(self._status(report)["lockfile"], "fixed")
        refs = [e.skill_ref for e in load_lockfile(self.lock_path).skills]
        self.assertEqual(sorted(refs), ["anthropic/docx", "anthropic/pdf"])

    def test_report_only_mode_changes_nothing(self) -> None:
        base = installed_root(self.paths.store_root)
        (base / "team_unknown@0.1.0").mkdir()
        lock = load_lockfile(self.lock_path)
        lock.upsert(LockEntry("stale/entry", "1.0.0", "sha256:00", "s@1.0.0"))
        save_lockfile(self.lock_path, lock)
        lock_bytes = self.lock_path.read_bytes()

        report = self.doctor.run(apply=False)

        self.assertEqual(self._status(report)["installed-dirs"], "warn")
        self.assertEqual(self._status(report)["lockfile"], "warn")
        self.assertEqual(report.fixed, 0)
        self.assertTrue((base / "team_unknown@0.1.0").is_dir())
        self.assertEqual(self.lock_path.read_bytes(), lock_bytes)
        self.assertEqual(report.to_dict()["warnings"], 2)

    def test_without_runtime_or_lockfile(self) -> None:
        report = Doctor(self.paths).run()
        status = self._status(report)
        self.assertEqual(status["agent-files"], "ok")
        self.assertEqual(status["lockfile"], "ok")


if __name__ == "__main__":
    unittest.main()
