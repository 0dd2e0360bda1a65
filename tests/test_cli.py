"""
Tests for ui/cli.py - subcommand wiring and exit codes.
"""

import logging
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

from buildlink.core.build import log_begin_work
from buildlink.core.connection import BuildEnv
from buildlink.core.errors import Outcome
from buildlink.daemon.protocol import BuildOptions
from buildlink.ui.cli import _setup_telemetry, app


class TestBuildCommand(unittest.TestCase):

    def setUp(self):
        self.runner = CliRunner()
        self.root = Path(tempfile.mkdtemp())
        config_patch = patch("buildlink.ui.cli.load_raw_config", return_value={})
        config_patch.start()
        self.addCleanup(config_patch.stop)
        telemetry_patch = patch("buildlink.ui.cli._setup_telemetry")
        telemetry_patch.start()
        self.addCleanup(telemetry_patch.stop)

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def _invoke_build(self, outcome, *args):
        with patch("buildlink.ui.cli.BuildOrchestrator") as orchestrator:
            orchestrator.return_value.run.return_value = outcome
            result = self.runner.invoke(app, ["build", str(self.root), *args])
        return result, orchestrator

    def test_exit_code_comes_from_outcome(self):
        for code in (0, 1, 2):
            with self.subTest(code=code):
                result, _ = self._invoke_build(Outcome(exit_code=code, terminated_cleanly=code != 1))
                self.assertEqual(result.exit_code, code)

    def test_flags_reach_build_env(self):
        result, orchestrator = self._invoke_build(
            Outcome(0, True), "--wait", "--incremental", "--retries", "5"
        )
        self.assertEqual(result.exit_code, 0)

        env, settings = orchestrator.call_args.args
        self.assertEqual(env.root, self.root.resolve())
        self.assertTrue(env.options.wait)
        self.assertTrue(env.options.incremental)
        self.assertEqual(settings.retries, 5)

    def test_default_retry_budget(self):
        _, orchestrator = self._invoke_build(Outcome(0, True))
        _, settings = orchestrator.call_args.args
        self.assertEqual(settings.retries, 800)

    def test_missing_root_exits_1(self):
        result = self.runner.invoke(app, ["build", str(self.root / "nope")])
        self.assertEqual(result.exit_code, 1)

    def test_bad_config_exits_1(self):
        with patch("buildlink.ui.cli.load_raw_config", return_value={"build_retries": "lots"}):
            result = self.runner.invoke(app, ["build", str(self.root)])
        self.assertEqual(result.exit_code, 1)


class TestServerCommands(unittest.TestCase):

    def setUp(self):
        self.runner = CliRunner()
        self.root = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_status_without_server(self):
        with patch("buildlink.ui.cli.DaemonClient") as client:
            client.return_value.health.return_value = None
            result = self.runner.invoke(app, ["status", str(self.root)])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("No server running", result.output)

    def test_status_shows_stats(self):
        with patch("buildlink.ui.cli.DaemonClient") as client:
            client.return_value.health.return_value = {"builds_run": 3, "initialized": True}
            result = self.runner.invoke(app, ["status", str(self.root)])
        self.assertEqual(result.exit_code, 0)
        self.assertIn("builds_run", result.output)

    def test_stop_without_server(self):
        with patch("buildlink.ui.cli.DaemonClient") as client:
            client.return_value.shutdown.return_value = False
            result = self.runner.invoke(app, ["stop", str(self.root)])
        self.assertEqual(result.exit_code, 1)

    def test_restart_starts_server(self):
        with patch("buildlink.ui.cli.DaemonClient") as client, \
                patch("buildlink.ui.cli.start_server") as start:
            client.return_value.shutdown.return_value = False
            result = self.runner.invoke(app, ["restart", str(self.root)])
        self.assertEqual(result.exit_code, 0)
        start.assert_called_once_with(self.root.resolve())



class TestTelemetry(unittest.TestCase):

    def setUp(self):
        self.runtime_dir = Path(tempfile.mkdtemp())
        env_patch = patch.dict(os.environ, {"BUILDLINK_RUNTIME_DIR": str(self.runtime_dir)})
        env_patch.start()
        self.addCleanup(env_patch.stop)

        self.events = logging.getLogger("buildlink.events")
        self.saved = (self.events.handlers[:], self.events.level, self.events.propagate)
        self.events.handlers = []

    def tearDown(self):
        for handler in self.events.handlers:
            handler.close()
        self.events.handlers, level, self.events.propagate = self.saved
        self.events.setLevel(level)
        shutil.rmtree(self.runtime_dir, ignore_errors=True)

    def test_begin_work_recorded_without_verbose(self):
        _setup_telemetry()
        log_begin_work(BuildEnv(root=Path("/src/app"), options=BuildOptions(incremental=True)))
        for handler in self.events.handlers:
            handler.flush()

        text = (self.runtime_dir / "client-events.log").read_text()
        self.assertIn("begin_work command=build root=/src/app incremental=True", text)

    def test_handler_installed_once(self):
        _setup_telemetry()
        _setup_telemetry()
        self.assertEqual(len(self.events.handlers), 1)


if __name__ == "__main__":
    unittest.main()
