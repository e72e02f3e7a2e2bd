import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillpm.adapters import (
    AdapterRuntime,
    FileAdapter,
    adapter_scope,
    agent_project_skills_dir,
    agent_root_paths,
    agent_skills_dir,
    build_file_adapter,
    detect_available,
    short_skill_name,
)
from skillpm.config import AdapterConfig, Config, Paths
from skillpm.errors import ErrorCode, SkillpmError
from skillpm.installer import Installer
from skillpm.resolver import ResolvedSkill
from skillpm.sources import compute_checksum
from skillpm.store import META_FILENAME, load_state


def _skill(ref: str) -> ResolvedSkill:
    source, skill = ref.split("/", 1)
    content = f"# {skill}\n"
    files = {"notes/usage.md": "Usage.\n"}
    return ResolvedSkill(
        skill_ref=ref,
        source=source,
        skill=skill,
        resolved_version="1.0.0",
        checksum=compute_checksum(content, files),
        source_ref=f"https://example.test/{source}.git@1.0.0",
        content=content,
        files=files,
    )


class FlakyAdapter(FileAdapter):
    """Fails copying one named ref after the others succeed."""

    fail_on = ""

    def _copy_skill(self, skill_ref: str, dest: Path) -> None:
        if skill_ref == self.fail_on:
            raise OSError("no space left on device")
        super()._copy_skill(skill_ref, dest)


class AdapterTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.paths = Paths.under(Path(self._tmp.name))
        Installer(self.paths.store_root).install([_skill("anthropic/pdf"), _skill("anthropic/docx"), _skill("team/lint")])
        self.codex = build_file_adapter("codex", self.paths)

    def tearDown(self) -> None:
        self._tmp.cleanup()


class TestFileAdapter(AdapterTestCase):
    def test_inject_copies_without_meta_and_records(self) -> None:
        result = self.codex.inject(["anthropic/pdf"])

        target = self.paths.home / ".codex" / "skills" / "pdf"
        self.assertEqual((target / "SKILL.md").read_text(encoding="utf-8"), "# pdf\n")
        self.assertTrue((target / "notes" / "usage.md").is_file())
        self.assertFalse((target / META_FILENAME).exists())
        self.assertEqual(result.injected, ["anthropic/pdf"])
        self.assertTrue(result.rollback_possible)
        self.assertTrue(result.snapshot_path.is_file())
        self.assertEqual(self.codex.list_injected(), ["anthropic/pdf"])

    def test_inject_merges_sorted_union(self) -> None:
        self.codex.inject(["team/lint"])
        result = self.codex.inject(["anthropic/pdf", "team/lint"])
        self.assertEqual(result.injected, ["anthropic/pdf", "team/lint"])
        record = json.loads(self.codex.record_path.read_text(encoding="utf-8"))
        self.assertEqual(record["skills"], ["anthropic/pdf", "team/lint"])

    def test_agents_are_isolated(self) -> None:
        claude = build_file_adapter("claude", self.paths)
        self.codex.inject(["anthropic/pdf"])
        claude.inject(["team/lint"])
        self.assertEqual(self.codex.list_injected(), ["anthropic/pdf"])
        self.assertEqual(claude.list_injected(), ["team/lint"])
        self.assertFalse((self.paths.home / ".claude" / "skills" / "pdf").exists())

    def test_remove_selected_and_all(self) -> None:
        self.codex.inject(["anthropic/pdf", "anthropic/docx", "team/lint"])
        removed = self.codex.remove(["anthropic/docx", "not/injected"])
        self.assertEqual(removed.removed, ["anthropic/docx"])
        self.assertEqual(self.codex.list_injected(), ["anthropic/pdf", "team/lint"])
        self.assertFalse((self.codex.skills_dir / "docx").exists())

        everything = self.codex.remove([])
        self.assertEqual(everything.removed, ["anthropic/pdf", "team/lint"])
        self.assertEqual(self.codex.list_injected(), [])
        self.assertFalse((self.codex.skills_dir / "pdf").exists())

    def test_copy_failure_restores_record_and_removes_new_dirs(self) -> None:
        flaky = FlakyAdapter(
            "codex",
            store_root=self.codex.store_root,
            state_dir=self.codex.state_dir,
            skills_dir=self.codex.skills_dir,
            snapshot_dir=self.codex.snapshot_dir,
        )
        flaky.inject(["team/lint"])
        flaky.fail_on = "anthropic/pdf"

        with self.assertRaises(SkillpmError) as ctx:
            flaky.inject(["anthropic/docx", "anthropic/pdf"])

        self.assertEqual(ctx.exception.code, ErrorCode.ADAPTER_INJECT_COPY)
        self.assertEqual(flaky.list_injected(), ["team/lint"])
        self.assertFalse((flaky.skills_dir / "docx").exists())
        self.assertTrue((flaky.skills_dir / "lint" / "SKILL.md").is_file())

    def test_corrupt_record(self) -> None:
        self.codex.state_dir.mkdir(parents=True, exist_ok=True)
        self.codex.record_path.write_text("not json", encoding="utf-8")
        with self.assertRaises(SkillpmError) as ctx:
            self.codex.inject(["anthropic/pdf"])
        self.assertEqual(ctx.exception.code, ErrorCode.ADAPTER_STATE_PARSE)

    def test_harvest_candidates(self) -> None:
        user_skill = self.codex.skills_dir / "handwritten"
        user_skill.mkdir(parents=True)
        (user_skill / "SKILL.md").write_text("# Mine\n", encoding="utf-8")
        self.codex.inject(["anthropic/pdf"])

        candidates = self.codex.harvest_candidates()
        self.assertEqual([c.name for c in candidates], ["handwritten", "pdf"])
        self.assertTrue(all(c.adapter == "codex" for c in candidates))

    def test_availability_and_environment(self) -> None:
        status = self.codex.probe()
        self.assertTrue(status.available)
        self.assertIn("inject", status.capabilities)
        result = self.codex.validate_environment()
        self.assertTrue(result.valid)
        self.assertEqual(result.warnings, [])


class TestAgentPaths(unittest.TestCase):
    def test_skills_dir_table(self) -> None:
        home = Path("/home/u")
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("OPENCLAW_STATE_DIR", None)
            self.assertEqual(agent_skills_dir("claude", home), home / ".claude" / "skills")
            self.assertEqual(agent_skills_dir("Gemini", home), home / ".gemini" / "skills")
            self.assertEqual(agent_skills_dir("antigravity", home), home / ".gemini" / "skills")
            self.assertEqual(agent_skills_dir("vscode", home), home / ".copilot" / "skills")
            self.assertEqual(agent_skills_dir("opencode", home), home / ".config" / "opencode" / "skills")
            self.assertEqual(agent_skills_dir("openclaw", home), home / ".openclaw" / "workspace" / "skills")

    def test_openclaw_environment_overrides(self) -> None:
        home = Path("/home/u")
        env = {"OPENCLAW_STATE_DIR": "/srv/claw/state", "OPENCLAW_CONFIG_PATH": "/srv/claw/config.toml"}
        with patch.dict(os.environ, env):
            self.assertEqual(agent_skills_dir("openclaw", home), Path("/srv/claw/workspace/skills"))
            roots = agent_root_paths("openclaw", home)
        self.assertEqual(roots[1:], [Path("/srv/claw/state"), Path("/srv/claw/config.toml")])

    def test_short_skill_name(self) -> None:
        self.assertEqual(short_skill_name("org_repo/skills/x"), "x")
        self.assertEqual(short_skill_name("anthropic/pdf"), "pdf")

    def test_detect_available(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            home = Path(td)
            (home / ".claude").mkdir()
            (home / ".gemini").mkdir()
            with patch.dict(os.environ, {}, clear=False):
                os.environ.pop("OPENCLAW_STATE_DIR", None)
                names = [d.name for d in detect_available(home)]
        self.assertEqual(names, ["antigravity", "claude", "gemini"])


class TestAdapterRuntime(AdapterTestCase):
    def _runtime(self) -> AdapterRuntime:
        config = Config(adapters=[AdapterConfig(name="codex"), AdapterConfig(name="claude", enabled=False)])
        return AdapterRuntime(self.paths, config)

    def test_only_enabled_adapters(self) -> None:
        runtime = self._runtime()
        self.assertEqual(runtime.names(), ["codex"])
        self.assertEqual([p.name for p in runtime.probe_all()], ["codex"])
        with self.assertRaises(SkillpmError) as ctx:
            runtime.get("claude")
        self.assertEqual(ctx.exception.code, ErrorCode.ADAPTER_NOT_SUPPORTED)

    def test_inject_and_remove_are_mirrored_in_state(self) -> None:
        runtime = self._runtime()
        runtime.inject_and_record("codex", ["anthropic/pdf", "team/lint"])
        injections = load_state(self.paths.store_root).injections
        self.assertEqual([(i.agent, i.skills) for i in injections], [("codex", ["anthropic/pdf", "team/lint"])])

        runtime.remove_and_record("codex", ["team/lint"])
        self.assertEqual(load_state(self.paths.store_root).injections[0].skills, ["anthropic/pdf"])

        runtime.remove_and_record("codex", [])
        self.assertEqual(load_state(self.paths.store_root).injections, [])



class TestProjectScope(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.global_paths = Paths.under(self.tmp)
        self.project = self.tmp / "app"
        self.paths = self.global_paths.for_project(self.project)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_project_skills_dirs(self) -> None:
        self.assertEqual(agent_project_skills_dir("Gemini", self.project), self.project / ".gemini" / "skills")
        self.assertEqual(agent_project_skills_dir("vscode", self.project), self.project / ".copilot" / "skills")
        self.assertEqual(agent_project_skills_dir("claude", self.project), self.project / ".claude" / "skills")

    def test_adapter_scope(self) -> None:
        self.assertEqual(adapter_scope(AdapterConfig(name="codex"), self.global_paths), "global")
        self.assertEqual(adapter_scope(AdapterConfig(name="codex"), self.paths), "project")
        self.assertEqual(adapter_scope(AdapterConfig(name="codex", scope="Global"), self.paths), "global")

        for adp, paths in (
            (AdapterConfig(name="codex", scope="workspace"), self.paths),
            (AdapterConfig(name="codex", scope="project"), self.global_paths),
        ):
            with self.subTest(scope=adp.scope, project=paths.project_root):
                with self.assertRaises(SkillpmError) as ctx:
                    adapter_scope(adp, paths)
                self.assertEqual(ctx.exception.code, ErrorCode.PROJECT_SCOPE)

    def test_runtime_writes_into_project_dirs(self) -> None:
        Installer(self.paths.store_root).install([_skill("anthropic/pdf")])
        config = Config(adapters=[AdapterConfig(name="codex"), AdapterConfig(name="claude", scope="global")])
        runtime = AdapterRuntime(self.paths, config)

        runtime.inject_and_record("codex", ["anthropic/pdf"])
        runtime.inject_and_record("claude", ["anthropic/pdf"])

        self.assertTrue((self.project / ".codex" / "skills" / "pdf" / "SKILL.md").is_file())
        self.assertFalse((self.global_paths.home / ".codex" / "skills" / "pdf").exists())
        self.assertTrue((self.global_paths.home / ".claude" / "skills" / "pdf" / "SKILL.md").is_file())
        self.assertEqual(runtime.get("codex").root_paths, [self.project / ".codex" / "skills"])
        self.assertEqual([i.agent for i in load_state(self.paths.store_root).injections], ["claude", "codex"])


if __name__ == "__main__":
    unittest.main()
