"""
Report generator tests.
"""
import json

from rich.console import Console

from stackplan.backends.memory import InMemoryBackend
from stackplan.config import PlannerConfig
from stackplan.planner import Planner
from stackplan.reporters import json_reporter, markdown
from stackplan.stacks import three_tier

QUIET = Console(quiet=True)


def _planner():
    config = PlannerConfig(retry_initial=0, retry_max=0, stack={"db_password_secret": "demo/db"})
    return three_tier.build(Planner("three-tier", InMemoryBackend(), config=config, console=QUIET))


class TestJsonReporter:
    def test_plan_only(self):
        planner = _planner()
        order = planner.plan()
        data = json.loads(json_reporter.build_report(planner, "stack:three-tier", order))
        assert data["meta"]["tool"] == "stackplan"
        assert data["meta"]["backend"] == "memory"
        assert data["order"] == order
        assert data["state"] is None
        assert data["summary"]["create"] == 0
        db = next(r for r in data["resources"] if r["name"] == "db")
        assert db["depends_on"] == ["db-password", "db-sg", "db-subnets"]
        assert db["action"] is None

    def test_after_apply(self):
        planner = _planner()
        order = planner.plan()
        outputs = planner.apply()
        data = json.loads(json_reporter.build_report(planner, "stack:three-tier", order, outputs))
        assert data["summary"]["create"] == len(order)
        assert data["state"]["operation"] == "apply"
        assert data["outputs"]["db_host"] == outputs["db_host"]
        assert all(r["action"] == "create" for r in data["resources"])


class TestMarkdownReporter:
    def setup_method(self):
        self.planner = _planner()
        self.order = self.planner.plan()

    def test_sections(self):
        report = markdown.build_report(self.planner, "stack:three-tier", self.order)
        assert report.startswith("# Provisioning Report: three-tier")
        assert "## Apply Order" in report
        assert "Plan only; no backend calls were made." in report
        assert "```mermaid" in report

    def test_mermaid_groups_by_tier(self):
        report = markdown.build_report(self.planner, "stack:three-tier", self.order)
        for tier in ("Website", "Networking", "Identity", "Compute", "Data"):
            assert f"subgraph {tier}" in report
        assert "site_bap --> site_policy" in report

    def test_actions_and_outputs_after_apply(self):
        outputs = self.planner.apply()
        report = markdown.build_report(self.planner, "stack:three-tier", self.order, outputs)
        assert "Apply completed" in report
        assert "## Outputs" in report
        assert outputs["website_url"] in report
        assert "🟢 create" in report

    def test_ascii_mode(self):
        self.planner.apply()
        report = markdown.build_report(self.planner, "x", self.order, ascii_mode=True)
        assert "[+] create" in report
        assert "🟢" not in report

    def test_sanitize_node_id(self):
        assert markdown._sanitize_node_id("ec2-prof") == "ec2_prof"
