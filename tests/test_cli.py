"""
CLI tests, run against the in-memory backend.
"""
import json
import os
import subprocess
import sys

import pytest
from click.testing import CliRunner

from stackplan.cli import cli

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
ENV = {"STACKPLAN_DB_PASSWORD_SECRET": "three-tier/db-password"}


@pytest.fixture(autouse=True)
def _workdir(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)


class TestCli:
    def setup_method(self):
        self.runner = CliRunner()

    def _invoke(self, *args, **kwargs):
        return self.runner.invoke(cli, list(args), env=ENV, **kwargs)

    def test_help(self):
        result = self._invoke("--help")
        assert result.exit_code == 0
        for command in ("plan", "apply", "destroy", "checks"):
            assert command in result.output

    def test_version(self):
        result = self._invoke("--version")
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_plan_stack(self, tmp_path):
        report = tmp_path / "plan.json"
        result = self._invoke(
            "plan", "--stack", "three-tier", "--backend", "memory",
            "--format", "json", "-o", str(report),
        )
        assert result.exit_code == 0, result.output
        data = json.loads(report.read_text())
        assert data["order"][0] == "api-sg"
        assert data["state"] is None

    def test_plan_file_markdown(self, tmp_path):
        report = tmp_path / "plan.md"
        result = self._invoke(
            "plan", os.path.join(FIXTURES, "website.yaml"), "--backend", "memory", "-o", str(report),
        )
        assert result.exit_code == 0, result.output
        assert "# Provisioning Report: website" in report.read_text(encoding="utf-8")

    def test_needs_exactly_one_source(self):
        assert self._invoke("plan", "--backend", "memory").exit_code == 2
        both = self._invoke(
            "plan", os.path.join(FIXTURES, "website.yaml"), "--stack", "three-tier", "--backend", "memory",
        )
        assert both.exit_code == 2

    def test_cycle_is_invalid(self):
        result = self._invoke("plan", os.path.join(FIXTURES, "cycle.yaml"), "--backend", "memory")
        assert result.exit_code == 2
        assert "cycle" in result.output.lower()

    def test_missing_secret_setting_is_invalid(self):
        result = self.runner.invoke(
            cli, ["plan", "--stack", "three-tier", "--backend", "memory"],
            env={"STACKPLAN_DB_PASSWORD_SECRET": ""},
        )
        assert result.exit_code == 2

    def test_bad_worker_setting_is_invalid(self):
        result = self.runner.invoke(
            cli, ["plan", "--stack", "three-tier", "--backend", "memory"],
            env={**ENV, "STACKPLAN_MAX_WORKERS": "many"},
        )
        assert result.exit_code == 2
        assert "max_workers must be a number" in result.output

    def test_checks_rejects_plaintext_secret(self):
        result = self._invoke("checks", os.path.join(FIXTURES, "plaintext_secret.yaml"), "--backend", "memory")
        assert result.exit_code == 2
        assert "ERROR" in result.output

    def test_checks_clean_plan(self):
        result = self._invoke("checks", os.path.join(FIXTURES, "website.yaml"), "--backend", "memory")
        assert result.exit_code == 0
        assert "No findings" in result.output

    def test_apply_is_idempotent(self, tmp_path):
        state = str(tmp_path / "state.json")
        first = tmp_path / "first.json"
        second = tmp_path / "second.json"
        args = ["apply", "--stack", "three-tier", "--backend", "memory", "--state", state, "--format", "json"]

        result = self._invoke(*args, "-o", str(first))
        assert result.exit_code == 0, result.output
        created = json.loads(first.read_text())
        assert created["summary"]["create"] == len(created["order"])
        assert created["outputs"]["website_url"].startswith("http://three-tier-site.s3-website-")

        result = self._invoke(*args, "-o", str(second))
        assert result.exit_code == 0, result.output
        again = json.loads(second.read_text())
        assert again["summary"]["create"] == 0
        assert again["summary"]["noop"] == len(again["order"])

    def test_destroy(self, tmp_path):
        state = str(tmp_path / "state.json")
        common = ["--stack", "three-tier", "--backend", "memory", "--state", state]
        assert self._invoke("apply", *common, "-o", str(tmp_path / "r.md")).exit_code == 0

        result = self._invoke("destroy", *common, "--yes")
        assert result.exit_code == 0, result.output
        assert "Destroyed" in result.output
        with open(state) as fh:
            assert json.load(fh) == {}

    def test_destroy_declined(self, tmp_path):
        state = str(tmp_path / "state.json")
        result = self._invoke(
            "destroy", "--stack", "three-tier", "--backend", "memory", "--state", state, input="n\n",
        )
        assert result.exit_code == 1
        assert "cancelled" in result.output


def test_module_entry_point():
    result = subprocess.run(
        [sys.executable, "-m", "stackplan", "--help"],
        capture_output=True,
        text=True,
        cwd=os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    )
    assert result.returncode == 0
    assert "apply" in result.stdout
