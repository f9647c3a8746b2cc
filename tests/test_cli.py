"""
Tests for the command-line interface.

Uses Python's unittest module.
Tests argument parsing and drives main() against a temporary config and
data directory, checking exit codes and output.
"""

from __future__ import annotations

import io
import json
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

from govflow.cli import create_parser, main, set_output_mode


class TestCreateParser(unittest.TestCase):
    """Tests for argument parsing."""

    def setUp(self) -> None:
        """Create parser without tenant or actor in the environment."""
        with patch.dict(os.environ, {}, clear=True):
            self.parser = create_parser()

    def test_no_command(self) -> None:
        """Test that no subcommand leaves command unset."""
        args = self.parser.parse_args([])
        self.assertIsNone(args.command)
        self.assertIsNone(args.tenant)

    def test_global_options(self) -> None:
        """Test tenant, actor and verbosity flags."""
        args = self.parser.parse_args(["-vv", "--tenant", "acme", "--actor", "alice", "info"])
        self.assertEqual(args.verbose, 2)
        self.assertEqual(args.tenant, "acme")
        self.assertEqual(args.actor, "alice")

    def test_tenant_from_environment(self) -> None:
        """Test that GOVFLOW_TENANT provides the default tenant."""
        with patch.dict(os.environ, {"GOVFLOW_TENANT": "globex"}, clear=True):
            args = create_parser().parse_args(["info"])
        self.assertEqual(args.tenant, "globex")

    def test_evidence_upload(self) -> None:
        """Test evidence upload arguments."""
        args = self.parser.parse_args(
            [
                "evidence", "upload", "stmt.pdf",
                "--mime", "application/pdf", "--source", "bank",
                "--source-id", "STMT-1", "--title", "Statement",
                "--tag", "q1", "--tag", "bank", "--pii", "low",
            ]
        )
        self.assertEqual(args.path, "stmt.pdf")
        self.assertEqual(args.tag, ["q1", "bank"])
        self.assertEqual(args.pii, "LOW")

    def test_subcommand_requires_action(self) -> None:
        """Test that a command group without an action is an error."""
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                self.parser.parse_args(["run"])

    def test_item_list_states(self) -> None:
        """Test state filters are upper-cased and validated."""
        args = self.parser.parse_args(["item", "list", "--state", "open", "--state", "SUBMITTED"])
        self.assertEqual(args.state, ["OPEN", "SUBMITTED"])

        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                self.parser.parse_args(["item", "list", "--state", "PARKED"])

    def test_binder_format(self) -> None:
        """Test the binder format choice."""
        args = self.parser.parse_args(["binder", "build", "m-1", "--format", "tar"])
        self.assertEqual(args.format, "TAR")

    def test_sla_tick_all(self) -> None:
        """Test the --all flag of sla tick."""
        args = self.parser.parse_args(["sla", "tick", "--all"])
        self.assertTrue(args.all_tenants)


class TestMain(unittest.TestCase):
    """Tests for main() end to end."""

    def setUp(self) -> None:
        """Create a config file pointing at a temporary data directory."""
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = Path(self.temp_dir) / "config.yaml"
        with open(self.config_path, "w") as f:
            yaml.safe_dump(
                {
                    "govflow": {"data_dir": str(Path(self.temp_dir) / "data")},
                    "events": {"sink": "none"},
                },
                f,
            )
        self.env = patch.dict(os.environ, {}, clear=True)
        self.env.start()

    def tearDown(self) -> None:
        """Restore environment and clean up."""
        self.env.stop()
        set_output_mode()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_cli(self, *argv: str, tenant: str | None = "acme") -> tuple[int, str, str]:
        full = ["govflow", "--config", str(self.config_path), "--actor", "alice"]
        if tenant:
            full += ["--tenant", tenant]
        full += list(argv)
        with patch.object(sys, "argv", full), \
                patch("sys.stdout", new_callable=io.StringIO) as out, \
                patch("sys.stderr", new_callable=io.StringIO) as err:
            with self.assertRaises(SystemExit) as ctx:
                main()
        return ctx.exception.code, out.getvalue(), err.getvalue()

    def test_no_command_prints_help(self) -> None:
        """Test that running without a command exits cleanly."""
        code, out, _ = self.run_cli()
        self.assertEqual(code, 0)
        self.assertIn("usage:", out)

    def test_run_lifecycle(self) -> None:
        """Test creating and starting a run from the command line."""
        code, out, _ = self.run_cli("--json", "run", "create", "2025-01", "--owner", "alice")
        self.assertEqual(code, 0)
        run_id = json.loads(out)["id"]

        code, out, _ = self.run_cli("--json", "run", "start", run_id, "--assign", "BANK_RECONCILE=bob")
        self.assertEqual(code, 0)
        items = {i["code"]: i for i in json.loads(out)["items"]}
        self.assertEqual(len(items), 10)
        self.assertEqual(items["BANK_RECONCILE"]["owner"], "bob")

        code, out, _ = self.run_cli("run", "progress", run_id)
        self.assertEqual(code, 0)
        self.assertIn("0.0% complete", out)

    def test_duplicate_run_is_conflict(self) -> None:
        """Test that errors map to exit code 1 with their kind."""
        self.run_cli("run", "create", "2025-01")

        code, _, err = self.run_cli("run", "create", "2025-01")

        self.assertEqual(code, 1)
        self.assertIn("Error [CONFLICT]", err)

    def test_locked_period(self) -> None:
        """Test that a locked period blocks run creation."""
        self.assertEqual(self.run_cli("run", "lock", "2025-02")[0], 0)

        code, _, err = self.run_cli("run", "create", "2025-02")

        self.assertEqual(code, 1)
        self.assertIn("Error [LOCKED]", err)

    def test_missing_tenant(self) -> None:
        """Test that tenant-scoped commands need a tenant."""
        code, _, err = self.run_cli("run", "list", tenant=None)

        self.assertEqual(code, 1)
        self.assertIn("Error [VALIDATION]", err)

    def test_invalid_config(self) -> None:
        """Test that a broken config file exits with code 2."""
        self.config_path.write_text("govflow: [unclosed\n")

        code, _, err = self.run_cli("run", "list")

        self.assertEqual(code, 2)
        self.assertIn("Configuration error", err)

    def test_evidence_and_manifest(self) -> None:
        """Test uploading evidence and building a verified manifest."""
        path = Path(self.temp_dir) / "statement.pdf"
        path.write_bytes(b"%PDF statement")

        code, out, _ = self.run_cli(
            "--json", "evidence", "upload", str(path),
            "--mime", "application/pdf", "--source", "bank", "--source-id", "S-1",
            "--title", "Statement", "--link-kind", "CLOSE_TASK", "--link-ref", "item-1",
        )
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["link"], "CLOSE_TASK:item-1")

        code, out, _ = self.run_cli("--json", "manifest", "build", "CLOSE_TASK", "item-1")
        self.assertEqual(code, 0)
        manifest = json.loads(out)
        self.assertEqual(manifest["object_count"], 1)

        code, out, _ = self.run_cli("manifest", "verify", manifest["id"])
        self.assertEqual(code, 0)
        self.assertIn("OK", out)

        code, out, _ = self.run_cli("--json", "binder", "build", manifest["id"], "--format", "tar")
        self.assertEqual(code, 0)
        binder = json.loads(out)

        code, out, _ = self.run_cli(
            "--json", "attest", "sign", binder["id"], "--role", "controller",
            "--statement", "Complete.",
        )
        self.assertEqual(code, 0)
        attestation_id = json.loads(out)["id"]
        self.assertEqual(self.run_cli("attest", "verify", attestation_id)[0], 0)

    def test_upload_missing_file(self) -> None:
        """Test that uploading a missing file fails cleanly."""
        code, _, err = self.run_cli(
            "evidence", "upload", str(Path(self.temp_dir) / "missing.pdf"),
            "--mime", "application/pdf", "--source", "bank", "--source-id", "S-1",
            "--title", "Statement",
        )
        self.assertEqual(code, 1)
        self.assertIn("File not found", err)

    def test_unknown_manifest(self) -> None:
        """Test that verifying an unknown manifest is NOT_FOUND."""
        code, _, err = self.run_cli("manifest", "verify", "missing")
        self.assertEqual(code, 1)
        self.assertIn("Error [NOT_FOUND]", err)

    def test_submit_invalid_answers(self) -> None:
        """Test that --answers must be a JSON object."""
        code, _, err = self.run_cli("item", "submit", "item-1", "--answers", "[1, 2]")
        self.assertEqual(code, 1)
        self.assertIn("JSON object", err)

    def test_sla_policy_and_tick(self) -> None:
        """Test storing a policy, ticking and reading the daemon status."""
        code, out, _ = self.run_cli("sla", "policy", "--tz", "Europe/Berlin", "--grace-hours", "2")
        self.assertEqual(code, 0)
        self.assertIn("Europe/Berlin", out)
        self.assertIn("grace 2", out)

        code, out, _ = self.run_cli("--json", "run", "create", "2025-01")
        self.assertEqual(code, 0)
        self.run_cli("run", "start", json.loads(out)["id"])

        code, out, _ = self.run_cli("--json", "sla", "tick")
        self.assertEqual(code, 0)
        result = json.loads(out)[0]
        self.assertEqual(result["evaluated"], 10)

        code, _, _ = self.run_cli("sla", "daemon", "--once")
        self.assertEqual(code, 0)

        code, out, _ = self.run_cli("--json", "sla", "daemon", "--status")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["total_runs"], 1)

    def test_attest_keygen(self) -> None:
        """Test creating a signing key, and refusing to overwrite it."""
        key_path = Path(self.temp_dir) / "keys" / "signing.pem"

        self.assertEqual(self.run_cli("attest", "keygen", str(key_path))[0], 0)
        self.assertTrue(key_path.exists())

        code, _, err = self.run_cli("attest", "keygen", str(key_path))
        self.assertEqual(code, 2)
        self.assertIn("already exists", err)

    def test_quiet_mode(self) -> None:
        """Test that -q suppresses regular output."""
        code, out, _ = self.run_cli("-q", "run", "list")
        self.assertEqual(code, 0)
        self.assertEqual(out, "")


if __name__ == "__main__":
    unittest.main()
