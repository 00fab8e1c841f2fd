"""
Three-tier stack tests against the in-memory backend.
"""
import pytest
from rich.console import Console

from stackplan.backends.memory import InMemoryBackend
from stackplan.config import PlannerConfig
from stackplan.errors import InvalidPlanError
from stackplan.models.values import Derived, Reference
from stackplan.planner import Planner
from stackplan.stacks import STACKS, three_tier

QUIET = Console(quiet=True)

STACK_RESOURCES = {
    "site", "site-bap", "site-website", "site-cors", "site-policy",
    "api-sg", "ec2-role", "ec2-ssm", "ec2-cw", "ec2-prof", "api",
    "db-sg", "db-subnets", "db",
}


def _config(**stack):
    settings = {"db_password_secret": "three-tier/db-password"}
    settings.update(stack)
    return PlannerConfig(region="us-east-1", retry_initial=0, retry_max=0, stack=settings)


def _planner(backend=None, **stack):
    config = _config(**stack)
    planner = Planner("three-tier", backend or InMemoryBackend(), config=config, console=QUIET)
    return three_tier.build(planner)


class TestDeclarations:
    def setup_method(self):
        self.planner = _planner()
        self.order = self.planner.plan()

    def _before(self, first, second):
        return self.order.index(first) < self.order.index(second)

    def test_registered_stack(self):
        assert STACKS["three-tier"] is three_tier.build

    def test_every_resource_declared(self):
        assert set(self.order) == STACK_RESOURCES

    def test_policy_after_public_access_block(self):
        assert self._before("site-bap", "site-policy")
        assert "site-bap" in self.planner.graph.dependencies("site-policy")

    def test_api_host_after_security_group_and_profile(self):
        assert self._before("api-sg", "api")
        assert self._before("ec2-prof", "api")
        assert self._before("ec2-role", "ec2-prof")

    def test_database_after_its_network(self):
        assert self._before("api-sg", "db-sg")
        assert self._before("db-sg", "db")
        assert self._before("db-subnets", "db")

    def test_password_comes_from_secret_lookup(self):
        db = self.planner.get("db")
        assert db.inputs["password"] == Reference("db-password", "value")
        assert self.planner.get("db-password").kind == "aws_secret"

    def test_no_plaintext_findings(self):
        assert self.planner.findings == []

    def test_database_is_private(self):
        db = self.planner.get("db")
        assert db.inputs["publicly_accessible"] is False
        assert db.inputs["engine"] == "postgres"
        assert db.inputs["port"] == three_tier.POSTGRES_PORT

    def test_api_security_group_opens_http(self):
        ingress = self.planner.get("api-sg").inputs["ingress"]
        assert ingress[0]["from_port"] == 80
        assert ingress[0]["cidr_blocks"] == ["0.0.0.0/0"]

    def test_role_trust_policy_is_derived(self):
        role = next(r for r in self.planner.resources if r.name == "ec2-role")
        assert isinstance(role.inputs["assume_role_policy"], Derived)

    def test_outputs(self):
        assert {o.name for o in self.planner.outputs} == {
            "bucket", "website_url", "api_ip", "api_dns", "db_host",
        }


class TestSettings:
    def test_secret_required(self):
        planner = Planner("three-tier", InMemoryBackend(), config=PlannerConfig(), console=QUIET)
        with pytest.raises(InvalidPlanError, match="db_password_secret"):
            three_tier.build(planner)

    def test_unknown_setting_rejected(self):
        with pytest.raises(InvalidPlanError, match="bogus"):
            _planner(bogus=1)

    def test_secret_key_passed_to_lookup(self):
        planner = _planner(db_password_secret_key="password")
        assert planner.get("db-password").params["key"] == "password"

    def test_user_data_runs_image(self):
        settings = three_tier.ThreeTierSettings(api_image="ghcr.io/acme/tasks-api:1.0")
        script = three_tier.render_user_data(settings)
        assert script.startswith("#!/bin/bash")
        assert "-p 80:5000" in script
        assert "ghcr.io/acme/tasks-api:1.0" in script

    def test_user_data_without_image(self):
        script = three_tier.render_user_data(three_tier.ThreeTierSettings())
        assert "systemctl start docker" in script
        assert "docker run" not in script

    def test_frontend_upload(self, tmp_path):
        (tmp_path / "index.html").write_text("<h1>tasks</h1>")
        planner = _planner(frontend_dir=str(tmp_path))
        content = planner.get("site-content")
        assert content.resource_type == "aws_s3_bucket_objects"
        assert planner.graph.dependencies("site-content") == {"site", "site-policy"}

    def test_frontend_digest_changes_with_content(self, tmp_path):
        page = tmp_path / "index.html"
        page.write_text("v1")
        before = three_tier.directory_digest(str(tmp_path))
        page.write_text("v2")
        assert three_tier.directory_digest(str(tmp_path)) != before

    def test_frontend_dir_must_exist(self, tmp_path):
        with pytest.raises(InvalidPlanError):
            _planner(frontend_dir=str(tmp_path / "missing"))


class TestApply:
    def setup_method(self):
        self.backend = InMemoryBackend(region="us-east-1")

    def test_outputs(self):
        outputs = _planner(self.backend).apply()
        assert outputs["bucket"] == "three-tier-site"
        assert outputs["website_url"] == "http://three-tier-site.s3-website-us-east-1.amazonaws.com"
        assert outputs["api_ip"].startswith("203.0.113.")
        assert outputs["db_host"].endswith(".rds.amazonaws.com")

    def test_lookups_before_resources(self):
        _planner(self.backend).apply()
        first_create = next(i for i, c in enumerate(self.backend.calls) if c[0] == "create")
        lookups = [i for i, c in enumerate(self.backend.calls) if c[0] == "lookup"]
        assert lookups and max(lookups) < first_create

    def test_password_resolved_from_secret(self):
        _planner(self.backend).apply()
        stored = self.backend._store["three-tier/db"]["inputs"]
        assert stored["password"] == "in-memory-secret"

    def test_reapply_is_noop(self):
        _planner(self.backend).apply()
        created = list(self.backend.calls_for("create"))
        _planner(self.backend).apply()
        assert self.backend.calls_for("create") == created
        assert self.backend.calls_for("update") == []

    def test_destroy(self):
        _planner(self.backend).apply()
        deleted = _planner(self.backend).destroy()
        assert set(deleted) == STACK_RESOURCES
        assert deleted.index("api") < deleted.index("api-sg")
        assert deleted.index("db") < deleted.index("db-sg")
        assert deleted.index("site-policy") < deleted.index("site")
