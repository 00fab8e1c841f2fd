"""
Three-tier demo stack: a public S3 static website for the frontend, an EC2
host for the tasks API and a private RDS Postgres database.

The database password is never declared literally; it is read from Secrets
Manager through an aws_secret lookup.
"""
import hashlib
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from jinja2 import Environment, StrictUndefined

from stackplan.config import PlannerConfig
from stackplan.errors import InvalidPlanError
from stackplan.models.values import Derived, interpolate, to_json
from stackplan.planner import Planner

AMAZON_LINUX_OWNER = "137112412989"
AMAZON_LINUX_2_NAME = "amzn2-ami-hvm-*-x86_64-gp2"
SSM_CORE_POLICY = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
CLOUDWATCH_AGENT_POLICY = "arn:aws:iam::aws:policy/CloudWatchAgentServerPolicy"
POSTGRES_PORT = 5432

_ALL_EGRESS = [{"protocol": "-1", "from_port": 0, "to_port": 0, "cidr_blocks": ["0.0.0.0/0"]}]

_USER_DATA = """\
#!/bin/bash
set -e
yum update -y
amazon-linux-extras install docker -y || yum install -y docker
systemctl enable docker
systemctl start docker
usermod -aG docker ec2-user
{% if api_image %}
docker run -d --restart unless-stopped --name api \\
  -p {{ api_port }}:{{ container_port }} \\
  -e PORT={{ container_port }} \\
  {{ api_image }}
{% endif %}
"""


@dataclass(frozen=True)
class ThreeTierSettings:
    db_password_secret: str = ""
    db_password_secret_key: Optional[str] = None
    instance_type: str = "t3.micro"
    api_port: int = 80
    api_image: Optional[str] = None
    container_port: int = 5000
    db_engine_version: str = "16"
    db_instance_class: str = "db.t3.micro"
    db_allocated_storage: int = 20
    db_name: str = "appdb"
    db_username: str = "appuser"
    frontend_dir: Optional[str] = None

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "ThreeTierSettings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidPlanError("unknown three-tier settings: " + ", ".join(unknown))
        return cls(**values)


def render_user_data(settings: ThreeTierSettings) -> str:
    env = Environment(autoescape=False, undefined=StrictUndefined, trim_blocks=True)
    return env.from_string(_USER_DATA).render(
        api_image=settings.api_image,
        api_port=settings.api_port,
        container_port=settings.container_port,
    )


def directory_digest(path: str) -> str:
    """Content hash of a directory tree so changed files trigger a re-upload."""
    h = hashlib.sha256()
    for root, dirs, fnames in os.walk(path):
        dirs.sort()
        for fname in sorted(fnames):
            full = os.path.join(root, fname)
            h.update(os.path.relpath(full, path).replace(os.sep, "/").encode("utf-8"))
            with open(full, "rb") as fh:
                h.update(hashlib.sha256(fh.read()).digest())
    return h.hexdigest()


def _public_read_policy(bucket_id: Any) -> Derived:
    return to_json({
        "Version": "2012-10-17",
        "Statement": [{
            "Sid": "PublicReadGetObject",
            "Effect": "Allow",
            "Principal": "*",
            "Action": ["s3:GetObject"],
            "Resource": [bucket_id.apply(lambda b: f"arn:aws:s3:::{b}/*")],
        }],
    })


def _assume_role_policy(service: str) -> Derived:
    return to_json({
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": service},
            "Action": "sts:AssumeRole",
        }],
    })


def declare_website(planner: Planner, settings: ThreeTierSettings) -> None:
    site = planner.declare("site", "aws_s3_bucket", {"force_destroy": True})
    # turn off Block Public Access so the public-read policy is accepted
    site_bap = planner.declare("site-bap", "aws_s3_bucket_public_access_block", {
        "bucket": site.ref("id"),
        "block_public_acls": False,
        "block_public_policy": False,
        "ignore_public_acls": False,
        "restrict_public_buckets": False,
    })
    planner.declare("site-website", "aws_s3_bucket_website_configuration", {
        "bucket": site.ref("id"),
        "index_document": {"suffix": "index.html"},
        "error_document": {"key": "index.html"},
    })
    planner.declare("site-cors", "aws_s3_bucket_cors_configuration", {
        "bucket": site.ref("id"),
        "cors_rules": [{
            "allowed_methods": ["GET", "HEAD"],
            "allowed_origins": ["*"],
            "allowed_headers": ["*"],
        }],
    })
    planner.declare(
        "site-policy",
        "aws_s3_bucket_policy",
        {"bucket": site.ref("id"), "policy": _public_read_policy(site.ref("id"))},
        depends_on=[site_bap],
    )
    if settings.frontend_dir:
        if not os.path.isdir(settings.frontend_dir):
            raise InvalidPlanError(f"frontend_dir '{settings.frontend_dir}' is not a directory")
        planner.declare(
            "site-content",
            "aws_s3_bucket_objects",
            {
                "bucket": site.ref("id"),
                "source_dir": os.path.abspath(settings.frontend_dir),
                "digest": directory_digest(settings.frontend_dir),
            },
            depends_on=["site-policy"],
        )


def declare_compute(planner: Planner, settings: ThreeTierSettings) -> None:
    vpc = planner.lookup("aws_vpc", name="vpc", default=True)
    api_sg = planner.declare("api-sg", "aws_security_group", {
        "vpc_id": vpc.ref("id"),
        "description": "Allow HTTP to API",
        "ingress": [{
            "protocol": "tcp",
            "from_port": settings.api_port,
            "to_port": settings.api_port,
            "cidr_blocks": ["0.0.0.0/0"],
        }],
        "egress": _ALL_EGRESS,
    })

    role = planner.declare("ec2-role", "aws_iam_role", {
        "assume_role_policy": _assume_role_policy("ec2.amazonaws.com"),
    })
    planner.declare("ec2-ssm", "aws_iam_role_policy_attachment", {
        "role": role.ref("name"),
        "policy_arn": SSM_CORE_POLICY,
    })
    planner.declare("ec2-cw", "aws_iam_role_policy_attachment", {
        "role": role.ref("name"),
        "policy_arn": CLOUDWATCH_AGENT_POLICY,
    })
    profile = planner.declare("ec2-prof", "aws_iam_instance_profile", {"role": role.ref("name")})

    ami = planner.lookup(
        "aws_ami",
        name="ami",
        most_recent=True,
        owners=[AMAZON_LINUX_OWNER],
        filters=[{"name": "name", "values": [AMAZON_LINUX_2_NAME]}],
    )
    planner.declare("api", "aws_instance", {
        "instance_type": settings.instance_type,
        "ami": ami.ref("id"),
        "vpc_security_group_ids": [api_sg.ref("id")],
        "iam_instance_profile": profile.ref("name"),
        "user_data": render_user_data(settings),
        "tags": {"Name": "api"},
    })


def declare_database(planner: Planner, settings: ThreeTierSettings) -> None:
    if not settings.db_password_secret:
        raise InvalidPlanError(
            "db_password_secret is required: set stack.db_password_secret in the "
            "config file or STACKPLAN_DB_PASSWORD_SECRET"
        )
    vpc = planner.get("vpc")
    subnets = planner.lookup("aws_subnet_ids", name="subnets", vpc_id=vpc.ref("id"))
    secret_params: Dict[str, Any] = {"secret_id": settings.db_password_secret}
    if settings.db_password_secret_key:
        secret_params["key"] = settings.db_password_secret_key
    password = planner.lookup("aws_secret", name="db-password", **secret_params)

    db_sg = planner.declare("db-sg", "aws_security_group", {
        "vpc_id": vpc.ref("id"),
        "description": "Allow Postgres from API SG only",
        "ingress": [{
            "protocol": "tcp",
            "from_port": POSTGRES_PORT,
            "to_port": POSTGRES_PORT,
            "security_groups": [planner.reference("api-sg", "id")],
        }],
        "egress": _ALL_EGRESS,
    })
    subnet_group = planner.declare("db-subnets", "aws_db_subnet_group", {
        "subnet_ids": subnets.ref("ids"),
        "description": "Default VPC subnets",
    })
    planner.declare("db", "aws_db_instance", {
        "engine": "postgres",
        "engine_version": settings.db_engine_version,
        "instance_class": settings.db_instance_class,
        "allocated_storage": settings.db_allocated_storage,
        "db_name": settings.db_name,
        "username": settings.db_username,
        "password": password.ref("value"),
        "publicly_accessible": False,
        "vpc_security_group_ids": [db_sg.ref("id")],
        "db_subnet_group_name": subnet_group.ref("name"),
        "skip_final_snapshot": True,
        "port": POSTGRES_PORT,
    })


def build(planner: Planner, config: Optional[PlannerConfig] = None) -> Planner:
    """Declare the full stack on ``planner`` and register its outputs."""
    config = config or planner.config
    settings = ThreeTierSettings.from_dict(config.stack)

    declare_website(planner, settings)
    declare_compute(planner, settings)
    declare_database(planner, settings)
    region = planner.lookup("aws_region", name="region")

    planner.output("bucket", planner.reference("site", "bucket"))
    planner.output("website_url", interpolate(
        "http://{}.s3-website-{}.amazonaws.com",
        planner.reference("site", "bucket"),
        region.ref("name"),
    ))
    planner.output("api_ip", planner.reference("api", "public_ip"))
    planner.output("api_dns", planner.reference("api", "public_dns"))
    planner.output("db_host", planner.reference("db", "address"))
    return planner
