import json
import tempfile
import unittest
from pathlib import Path

from skillpm.audit import AuditEvent, AuditLogger


class TestAuditLogger(unittest.TestCase):
    def test_appends_json_lines(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "logs" / "audit.log"
            audit = AuditLogger(path)
            audit.log(AuditEvent("install", "start", "ok", message="skills=2"))
            audit.log(AuditEvent("install", "rollback", "error", code="INS_COMMIT", fields={"ref": "a/b"}))

            lines = path.read_text(encoding="utf-8").splitlines()

        self.assertEqual(len(lines), 2)
        first, second = (json.loads(line) for line in lines)
        self.assertEqual(first["message"], "skills=2")
        self.assertNotIn("code", first)
        self.assertTrue(first["timestamp"].endswith("Z"))
        self.assertEqual(second["fields"], {"ref": "a/b"})
        self.assertEqual(second["status"], "error")

    def test_disabled_logger_writes_nothing(self) -> None:
        AuditLogger(None).log(AuditEvent("install", "start", "ok"))

    def test_write_failure_is_logged(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            blocker = Path(td) / "file"
            blocker.write_text("x", encoding="utf-8")
            audit = AuditLogger(blocker / "audit.log")
            with self.assertLogs("skillpm.audit", level="WARNING") as logs:
                audit.log(AuditEvent("install", "start", "ok"))
        self.assertIn("audit log write", logs.output[0])


if __name__ == "__main__":
    unittest.main()
