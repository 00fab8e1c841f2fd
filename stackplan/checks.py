"""
Static checks over a declared plan, run during validation before any backend
call. ERROR findings make the plan invalid; WARNING findings are reported only.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List

from stackplan.graph import DependencyGraph
from stackplan.models.resource import Resource
from stackplan.models.values import Reference, is_deferred


class Severity(str, Enum):
    ERROR   = "ERROR"
    WARNING = "WARNING"


@dataclass
class Finding:
    rule: str
    severity: Severity
    resource_name: str
    resource_type: str
    message: str
    trigger_property: str = ""

    def to_dict(self) -> dict:
        return {
            "rule": self.rule,
            "severity": self.severity.value,
            "resource_name": self.resource_name,
            "resource_type": self.resource_type,
            "message": self.message,
            "trigger_property": self.trigger_property,
        }


_SENSITIVE_KEYS = {
    "password",
    "master_password",
    "master_user_password",
    "secret",
    "secret_key",
    "secret_string",
    "token",
    "api_key",
}


def _sensitive_literals(val: Any, path: str) -> List[str]:
    """Dotted paths of sensitive keys holding a literal, non-empty string."""
    hits: List[str] = []
    if isinstance(val, dict):
        for k, v in val.items():
            child = f"{path}.{k}" if path else str(k)
            if str(k).lower() in _SENSITIVE_KEYS and isinstance(v, str) and v:
                hits.append(child)
            elif not is_deferred(v):
                hits.extend(_sensitive_literals(v, child))
    elif isinstance(val, list):
        for i, item in enumerate(val):
            hits.extend(_sensitive_literals(item, f"{path}[{i}]"))
    return hits


def check_plaintext_secrets(resources: List[Resource], graph: DependencyGraph) -> List[Finding]:
    findings = []
    for r in resources:
        for prop in _sensitive_literals(r.inputs, ""):
            findings.append(Finding(
                rule="plaintext-secret",
                severity=Severity.ERROR,
                resource_name=r.name,
                resource_type=r.resource_type,
                message=(
                    f"'{prop}' is a literal value. Read it from a secret store "
                    "(an aws_secret lookup) instead."
                ),
                trigger_property=prop,
            ))
    return findings


def _bucket_target(r: Resource) -> Any:
    bucket = r.inputs.get("bucket")
    if isinstance(bucket, Reference):
        return bucket.target
    return bucket


def check_policy_after_public_access(resources: List[Resource], graph: DependencyGraph) -> List[Finding]:
    """A public bucket policy is rejected by S3 while the access block is still on."""
    blocks: Dict[Any, str] = {
        _bucket_target(r): r.name
        for r in resources
        if r.resource_type == "aws_s3_bucket_public_access_block"
    }
    findings = []
    for r in resources:
        if r.resource_type != "aws_s3_bucket_policy":
            continue
        block = blocks.get(_bucket_target(r))
        if block and block not in graph.ancestors(r.name):
            findings.append(Finding(
                rule="policy-before-public-access",
                severity=Severity.WARNING,
                resource_name=r.name,
                resource_type=r.resource_type,
                message=(
                    f"Bucket policy may be applied before '{block}' relaxes the "
                    f"public access block; add depends_on=['{block}']."
                ),
                trigger_property="depends_on",
            ))
    return findings


CHECKS: List[Callable[[List[Resource], DependencyGraph], List[Finding]]] = [
    check_plaintext_secrets,
    check_policy_after_public_access,
]


def run(resources: List[Resource], graph: DependencyGraph) -> List[Finding]:
    findings: List[Finding] = []
    for fn in CHECKS:
        findings.extend(fn(resources, graph))
    findings.sort(key=lambda f: (f.severity != Severity.ERROR, f.resource_name, f.rule))
    return findings
