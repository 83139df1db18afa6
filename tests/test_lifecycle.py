from __future__ import annotations

import os
import shutil
import socket
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestLifecycle(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        repo_root = Path(__file__).resolve().parents[1]
        cls.fixture = repo_root / "tests" / "fixtures" / "lab_target.py"
        cls.paths = [repo_root / "src", repo_root / "tests" / "fixtures"]
        for path in cls.paths:
            sys.path.insert(0, str(path))

        from lab_grader import api, lifecycle  # noqa: E402
        from lab_grader.config import GraderSettings  # noqa: E402
        from lab_grader.fetch import fetch  # noqa: E402
        from lab_grader.launcher import launch  # noqa: E402
        from lab_target import serve_in_thread  # noqa: E402

        cls.api = api
        cls.lifecycle = lifecycle
        cls.GraderSettings = GraderSettings
        cls.fetch = staticmethod(fetch)
        cls.launch = staticmethod(launch)
        cls.serve_in_thread = staticmethod(serve_in_thread)

    @classmethod
    def tearDownClass(cls) -> None:
        for path in cls.paths:
            try:
                sys.path.remove(str(path))
            except ValueError:
                pass

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.project = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _settings(self, port: int, **extra):
        values = {
            "profile": "python",
            "scan_base_port": port,
            "scan_port_count": 1,
            "startup_timeout_s": 10.0,
            "poll_interval_s": 0.05,
        }
        values.update(extra)
        return self.GraderSettings(**values)

    def test_full_run_against_correct_service(self) -> None:
        shutil.copy(self.fixture, self.project / "server.py")
        port = _free_port()
        with mock.patch.dict(os.environ, {"PORT": str(port)}):
            outcome = self.api.grade(self.project, settings=self._settings(port))

        report = outcome.report
        self.assertEqual(outcome.discovery.detected_port, port)
        self.assertEqual(report.per_group(), {"TODO_1": 16, "TODO_2": 16, "TODO_3": 16, "TODO_4": 16, "TODO_5": 16})
        self.assertEqual(report.lab_points, 80)
        self.assertEqual(report.total_points, 100)
        self.assertEqual(report.meta.detected_base_url, f"http://127.0.0.1:{port}")
        Stage = self.lifecycle.Stage
        self.assertEqual(
            outcome.stages,
            (Stage.IDLE, Stage.LAUNCHING, Stage.DISCOVERING, Stage.PROBING, Stage.REPORTING, Stage.TERMINATING, Stage.DONE),
        )
        # the child is gone once the run returns
        self.assertFalse(self.fetch(f"http://127.0.0.1:{port}/", timeout_s=1.0).reachable)

    def test_no_entry_reaches_done_with_zero(self) -> None:
        outcome = self.api.grade(self.project, settings=self._settings(_free_port()))
        report = outcome.report
        self.assertEqual(report.lab_points, 0)
        self.assertEqual(report.submission_points, 20)
        self.assertEqual(report.meta.command_used, "(no entry found)")
        self.assertIsNone(report.meta.detected_base_url)
        self.assertEqual(outcome.stages[-1], self.lifecycle.Stage.DONE)
        self.assertEqual(report.meta.notes[0].code, "entry_not_found")

    def test_child_that_never_listens(self) -> None:
        (self.project / "server.py").write_text("import sys\nprint('crashing')\nsys.exit(3)\n", encoding="utf-8")
        outcome = self.api.grade(self.project, settings=self._settings(_free_port()))
        self.assertEqual(outcome.report.lab_points, 0)
        self.assertIsNone(outcome.discovery.base_url)
        self.assertIn("crashing", outcome.startup_logs)
        notes = outcome.report.meta.notes
        self.assertEqual(notes[-1].code, "child_unreachable")
        self.assertIn("status 3", notes[-1].message)

    def test_teardown_runs_when_probing_crashes(self) -> None:
        shutil.copy(self.fixture, self.project / "server.py")
        port = _free_port()
        handles = []

        def recording_launcher(project_dir, profile):
            result = self.launch(project_dir, profile)
            handles.append(result.handle)
            return result

        controller = self.lifecycle.LifecycleController(self._settings(port), launcher=recording_launcher)
        with mock.patch.dict(os.environ, {"PORT": str(port)}), mock.patch.object(
            self.lifecycle, "aggregate", side_effect=RuntimeError("report bug")
        ):
            with self.assertRaises(RuntimeError):
                controller.run(self.project)

        self.assertEqual(len(handles), 1)
        self.assertIsNotNone(handles[0].exit_status)

    def test_probe_failure_is_graded_not_raised(self) -> None:
        shutil.copy(self.fixture, self.project / "server.py")
        port = _free_port()
        calls = []

        def flaky_fetcher(url, **kwargs):
            calls.append(url)
            if "/profile/" in url:
                raise RuntimeError("socket gremlin")
            return self.fetch(url, **kwargs)

        controller = self.lifecycle.LifecycleController(self._settings(port), fetcher=flaky_fetcher)
        with mock.patch.dict(os.environ, {"PORT": str(port)}):
            outcome = controller.run(self.project)
        per_group = outcome.report.per_group()
        self.assertEqual(per_group["TODO_1"], 16)
        self.assertEqual(per_group["TODO_3"], 0)
        self.assertEqual(per_group["TODO_5"], 0)
        self.assertEqual(outcome.report.lab_points, 60)
        self.assertFalse(self.fetch(f"http://127.0.0.1:{port}/", timeout_s=1.0).reachable)

    def test_probe_external_service(self) -> None:
        server, base_url = self.serve_in_thread()
        try:
            report = self.api.probe(base_url + "/")
        finally:
            server.shutdown()
            server.server_close()
        self.assertEqual(report.lab_points, 80)
        self.assertEqual(report.meta.command_used, "(external service)")
        self.assertEqual(report.meta.detected_base_url, base_url)

    def test_discover_only(self) -> None:
        shutil.copy(self.fixture, self.project / "server.py")
        port = _free_port()
        with mock.patch.dict(os.environ, {"PORT": str(port)}):
            found = self.api.discover(self.project, settings=self._settings(port))
        self.assertEqual(found.detected_port, port)
        self.assertEqual(found.sniffed_port, port)
        self.assertFalse(self.fetch(f"http://127.0.0.1:{port}/", timeout_s=1.0).reachable)

    def test_discover_only_turns_errors_into_unreachable(self) -> None:
        shutil.copy(self.fixture, self.project / "server.py")
        port = _free_port()
        handles = []

        def recording_launch(project_dir, profile):
            result = self.launch(project_dir, profile)
            handles.append(result.handle)
            return result

        with mock.patch.dict(os.environ, {"PORT": str(port)}), mock.patch.object(
            self.api, "launch", side_effect=recording_launch
        ), mock.patch.object(self.api, "discover_endpoint", side_effect=RuntimeError("log decoder bug")):
            found = self.api.discover(self.project, settings=self._settings(port))
        self.assertIsNone(found.base_url)
        self.assertTrue(found.used_command.endswith(" server.py"))
        self.assertEqual(len(handles), 1)
        self.assertIsNotNone(handles[0].exit_status)

    def test_stages_tolerate_missing_discovery(self) -> None:
        controller = self.lifecycle.LifecycleController(self.GraderSettings())
        ctx = self.lifecycle.GradingContext(settings=controller.settings, suite=controller.suite, timing=controller.timing)
        controller._probe(ctx)
        self.assertEqual([g.points for g in ctx.group_scores], [0, 0, 0, 0, 0])
        controller._report(ctx)
        self.assertIsNotNone(ctx.report)
        self.assertIsNone(ctx.report.meta.detected_base_url)
        self.assertEqual(ctx.report.lab_points, 0)

    def test_illegal_transition(self) -> None:
        ctx = self.lifecycle.GradingContext(settings=self.GraderSettings(), suite=None, timing=None)
        ctx.advance(self.lifecycle.Stage.PROBING)
        with self.assertRaises(RuntimeError):
            ctx.advance(self.lifecycle.Stage.LAUNCHING)


if __name__ == "__main__":
    unittest.main()
