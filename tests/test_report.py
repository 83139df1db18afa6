from __future__ import annotations

import json
import sys
import tempfile
import unittest
from pathlib import Path


class TestReport(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        repo_root = Path(__file__).resolve().parents[1]
        cls.paths = [repo_root / "src"]
        for path in cls.paths:
            sys.path.insert(0, str(path))

        from lab_grader import report as report_module  # noqa: E402
        from lab_grader.probes import ok, warn  # noqa: E402
        from lab_grader.scoring import BandScore, GroupScore, ReportMeta, aggregate  # noqa: E402

        cls.report_module = report_module
        groups = [
            GroupScore(name="TODO_1", title="Server Setup (`/`)", band=BandScore(8, 4, 4), notes=(ok("`/` reachable."),)),
            GroupScore(name="TODO_2", title="`/echo` route", band=BandScore(4, 0, 0), notes=(warn("`/echo` did not return JSON."),)),
        ]
        meta = ReportMeta(
            title="6-3 Express Request Data",
            graded_at_utc="2025-11-01T10:00:00+00:00",
            project_dir="/tmp/lab",
            command_used="node server.js",
            detected_base_url="http://127.0.0.1:3000",
            detected_port=3000,
            deadline="2025-11-12T23:59:59+03:00",
            is_late=False,
        )
        cls.report = aggregate(groups, submission_points=20, submission_max=20, meta=meta)

    @classmethod
    def tearDownClass(cls) -> None:
        for path in cls.paths:
            try:
                sys.path.remove(str(path))
            except ValueError:
                pass

    def test_render_text_layout(self) -> None:
        text = self.report_module.render_text(self.report)
        self.assertTrue(text.startswith("==== 6-3 Express Request Data - Grade Summary ===="))
        self.assertIn("Late submission? No (20/20)", text)
        self.assertIn("Detected base URL: http://127.0.0.1:3000", text)
        self.assertIn("- TODO_1: 16/16", text)
        self.assertIn("Lab Points: 32/32", text)
        self.assertIn("TOTAL: 52/52", text)
        self.assertIn("## TODO 1: Server Setup (`/`) - 16/16", text)
        self.assertIn("Completeness: 4/8, Correctness: 0/4, Quality: 0/4", text)
        self.assertIn("⚠️ `/echo` did not return JSON.", text)

    def test_write_report(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            json_path, text_path = self.report_module.write_report(self.report, Path(tmp) / "dist" / "grading")
            data = json.loads(json_path.read_text(encoding="utf-8"))
            self.assertEqual(data["scoring"]["raw_lab_points"], 20)
            self.assertEqual(data["meta"]["command_used"], "node server.js")
            self.assertIn("Per-group Points:", text_path.read_text(encoding="utf-8"))

    def test_step_summary(self) -> None:
        self.assertFalse(self.report_module.append_step_summary(self.report, {}))
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "summary.md"
            target.write_text("existing\n", encoding="utf-8")
            self.assertTrue(self.report_module.append_step_summary(self.report, {"GITHUB_STEP_SUMMARY": str(target)}))
            content = target.read_text(encoding="utf-8")
            self.assertTrue(content.startswith("existing\n## 6-3 Express Request Data - Grade Summary"))
            self.assertIn("**Project dir:** /tmp/lab", content)

    def test_step_summary_failure_is_swallowed(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "no-such-dir" / "summary.md"
            self.assertFalse(self.report_module.append_step_summary(self.report, {"GITHUB_STEP_SUMMARY": str(target)}))


if __name__ == "__main__":
    unittest.main()
