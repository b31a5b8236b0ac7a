import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch


ROOT = Path(__file__).resolve().parents[1]
HERE = Path(__file__).resolve().parent
for path in (ROOT, HERE):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from permissions_exporter import main as cli
from permissions_exporter.graph_client import GraphError
from permissions_exporter.models import RetrievalResult
from test_permission_export import site_graph


VALID_ENV = {
    "ENTRA_TENANT_ID": "tenant",
    "ENTRA_CLIENT_ID": "client",
    "ENTRA_CLIENT_SECRET": "secret",
    "SHAREPOINT_SITE_URL": "https://contoso.sharepoint.com/sites/Finance",
}


def outcome(output_path, error_count=2, throttle_count=1):
    return {
        "stages": {},
        "result": RetrievalResult(error_count=error_count, throttle_count=throttle_count),
        "output_path": output_path,
        "summary": {
            "total_permissions": 0 if output_path is None else 3,
            "unique_files": 2,
            "inherited_permissions": 1,
            "direct_permissions": 2,
            "unique_grantees": 2,
            "elapsed_seconds": 0.5,
            "top_roles": [("write", 2)],
        },
    }


@patch("permissions_exporter.main.emit")
@patch("permissions_exporter.main.GraphClient")
@patch("permissions_exporter.main.TokenProvider")
class MainTests(unittest.TestCase):
    @patch.dict(os.environ, {"ENTRA_TENANT_ID": "your-tenant-id-here"}, clear=True)
    def test_invalid_configuration_exits_non_zero(self, mock_tokens, _graph, mock_emit):
        self.assertEqual(cli.main([]), 1)
        mock_tokens.assert_not_called()
        messages = [c.args[2] for c in mock_emit.call_args_list]
        self.assertIn("Configuration validation failed", messages)

    @patch.dict(os.environ, VALID_ENV, clear=True)
    def test_successful_run_exits_zero(self, mock_tokens, _graph, mock_emit):
        with patch("permissions_exporter.main.run_permission_export", return_value=outcome("/tmp/p.csv")) as run:
            self.assertEqual(cli.main(["--format", "json", "--sequential", "--exclude-inherited"]), 0)
        settings = run.call_args.args[0]
        self.assertEqual(settings.export_format, "json")
        self.assertEqual(settings.mode, "sequential")
        self.assertFalse(settings.include_inherited)
        messages = [c.args[2] for c in mock_emit.call_args_list]
        self.assertIn("Errors encountered: 2", messages)
        self.assertIn("Throttle events: 1", messages)

    @patch.dict(os.environ, VALID_ENV, clear=True)
    def test_empty_library_is_not_an_error(self, mock_tokens, _graph, mock_emit):
        with patch("permissions_exporter.main.run_permission_export", return_value=outcome(None, 0, 0)):
            self.assertEqual(cli.main([]), 0)
        messages = [c.args[2] for c in mock_emit.call_args_list]
        self.assertNotIn("Summary Statistics", messages)
        self.assertFalse(any(m.startswith("Errors encountered") for m in messages))

    @patch.dict(os.environ, VALID_ENV, clear=True)
    def test_all_files_failed_still_reports_error_counts(self, mock_tokens, _graph, mock_emit):
        with patch("permissions_exporter.main.run_permission_export", return_value=outcome(None)):
            self.assertEqual(cli.main([]), 0)
        messages = [c.args[2] for c in mock_emit.call_args_list]
        self.assertIn("Errors encountered: 2", messages)
        self.assertIn("Throttle events: 1", messages)
        self.assertNotIn("Process completed successfully", messages)

    def test_sequential_run_with_every_file_failing(self, mock_tokens, mock_graph, mock_emit):
        mock_graph.return_value = site_graph(failing_files={"a", "b"})
        with tempfile.TemporaryDirectory() as tmp:
            env = dict(VALID_ENV, EXPORT_DELAY_MS="0", EXPORT_OUTPUT_FILE=os.path.join(tmp, "perms"))
            with patch.dict(os.environ, env, clear=True), patch(
                "permissions_exporter.jobs.permission_export.emit"
            ) as job_emit:
                self.assertEqual(cli.main(["--sequential"]), 0)
            self.assertEqual(os.listdir(tmp), [])
        job_emit.assert_any_call("ERROR", "CLI", "No permissions retrieved; 2 of 2 files failed (throttle_events=0)")
        messages = [c.args[2] for c in mock_emit.call_args_list]
        self.assertIn("Errors encountered: 2", messages)
        self.assertIn("Throttle events: 0", messages)

    @patch.dict(os.environ, VALID_ENV, clear=True)
    def test_retry_exhaustion_exits_non_zero(self, mock_tokens, _graph, mock_emit):
        error = GraphError(503, "unavailable", "$batch")
        with patch("permissions_exporter.main.run_permission_export", side_effect=error):
            self.assertEqual(cli.main([]), 1)
        messages = [c.args[2] for c in mock_emit.call_args_list]
        self.assertIn("Fatal error: Graph error 503: unavailable", messages)

    @patch.dict(os.environ, VALID_ENV, clear=True)
    def test_authentication_failure_exits_non_zero(self, mock_tokens, _graph, _emit):
        mock_tokens.return_value.get_token.side_effect = RuntimeError("Failed to acquire Graph token")
        with patch("permissions_exporter.main.run_permission_export") as run:
            self.assertEqual(cli.main([]), 1)
        run.assert_not_called()

    @patch.dict(os.environ, VALID_ENV, clear=True)
    def test_blank_credentials_rejected_before_network(self, mock_tokens, _graph, _emit):
        mock_tokens.return_value.validate_credentials.return_value = False
        with patch("permissions_exporter.main.run_permission_export") as run:
            self.assertEqual(cli.main([]), 1)
        run.assert_not_called()
        mock_tokens.return_value.get_token.assert_not_called()

    @patch.dict(os.environ, VALID_ENV, clear=True)
    def test_package_runs_as_module(self, mock_tokens, _graph, _emit):
        import runpy

        with patch("permissions_exporter.main.main", return_value=0) as run_main:
            with self.assertRaises(SystemExit) as raised:
                runpy.run_module("permissions_exporter", run_name="__main__")
        self.assertEqual(raised.exception.code, 0)
        run_main.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
