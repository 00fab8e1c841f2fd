"""
In-process backend for tests and dry runs.

Keeps resources in a dict keyed by (plan, logical name), synthesises the
attributes AWS would assign and can persist its state to a JSON file so that
idempotence is visible across CLI invocations.
"""
import hashlib
import json
import os
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from stackplan.backends.base import Backend, physical_name
from stackplan.errors import TransientBackendError
from stackplan.models.resource import Lookup, Observed, Resource

DEFAULT_LOOKUPS: Dict[str, Dict[str, Any]] = {
    "aws_vpc": {"id": "vpc-0a1b2c3d", "cidr_block": "172.31.0.0/16"},
    "aws_subnet_ids": {"ids": ["subnet-0aa11111", "subnet-0bb22222", "subnet-0cc33333"]},
    "aws_ami": {"id": "ami-0abcdef1234567890", "name": "amzn2-ami-hvm-2.0.20240306.2-x86_64-gp2"},
    "aws_secret": {"value": "in-memory-secret", "arn": "arn:aws:secretsmanager:::secret:in-memory"},
}


def _digest(*parts: str) -> str:
    return hashlib.sha1("/".join(parts).encode("utf-8")).hexdigest()


def _attributes(resource: Resource, inputs: Dict[str, Any], region: str) -> Dict[str, Any]:
    """Backend-assigned attributes for a newly created resource."""
    rt = resource.resource_type
    digest = _digest(resource.plan, resource.name)
    name = inputs.get("name") or physical_name(resource)

    if rt == "aws_s3_bucket":
        bucket = inputs.get("bucket") or physical_name(resource)
        return {
            "id": bucket,
            "bucket": bucket,
            "arn": f"arn:aws:s3:::{bucket}",
            "region": region,
            "bucket_regional_domain_name": f"{bucket}.s3.{region}.amazonaws.com",
        }
    if rt.startswith("aws_s3_bucket_"):
        return {"id": inputs.get("bucket", name), "bucket": inputs.get("bucket", name)}
    if rt == "aws_security_group":
        return {
            "id": f"sg-{digest[:17]}",
            "name": name,
            "arn": f"arn:aws:ec2:{region}:000000000000:security-group/sg-{digest[:17]}",
        }
    if rt == "aws_iam_role":
        return {"id": name, "name": name, "arn": f"arn:aws:iam::000000000000:role/{name}"}
    if rt == "aws_iam_instance_profile":
        return {"id": name, "name": name, "arn": f"arn:aws:iam::000000000000:instance-profile/{name}"}
    if rt == "aws_iam_role_policy_attachment":
        return {"id": f"{inputs.get('role')}-{digest[:8]}"}
    if rt == "aws_instance":
        octet = int(digest[:2], 16)
        ip = f"203.0.113.{octet}"
        return {
            "id": f"i-{digest[:17]}",
            "public_ip": ip,
            "public_dns": f"ec2-{ip.replace('.', '-')}.compute-1.amazonaws.com",
            "private_ip": f"172.31.0.{octet}",
            "arn": f"arn:aws:ec2:{region}:000000000000:instance/i-{digest[:17]}",
        }
    if rt == "aws_db_subnet_group":
        return {"id": name, "name": name, "arn": f"arn:aws:rds:{region}:000000000000:subgrp:{name}"}
    if rt == "aws_db_instance":
        address = f"{name}.{digest[:12]}.{region}.rds.amazonaws.com"
        port = inputs.get("port", 5432)
        return {
            "id": name,
            "address": address,
            "endpoint": f"{address}:{port}",
            "port": port,
            "arn": f"arn:aws:rds:{region}:000000000000:db:{name}",
        }
    return {"id": f"{rt}-{digest[:12]}", "name": name}


class InMemoryBackend(Backend):
    name = "memory"

    def __init__(
        self,
        region: str = "us-east-1",
        lookups: Optional[Dict[str, Dict[str, Any]]] = None,
        state_path: Optional[str] = None,
        fail_on: Optional[Dict[Tuple[str, str], BaseException]] = None,
        transient: Optional[Dict[Tuple[str, str], int]] = None,
        on_call: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        """
        ``fail_on`` maps (operation, node name) to an exception raised on every
        call; ``transient`` maps (operation, node name) to the number of times
        a TransientBackendError is raised before the call succeeds.
        """
        self.region = region
        self.lookup_results = {**DEFAULT_LOOKUPS, "aws_region": {"name": region}}
        self.lookup_results.update(lookups or {})
        self.state_path = state_path
        self.fail_on = dict(fail_on or {})
        self.transient = dict(transient or {})
        self.on_call = on_call
        self.calls: List[Tuple[str, str]] = []
        self._store: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        if state_path and os.path.exists(state_path):
            with open(state_path, "r", encoding="utf-8") as fh:
                self._store = json.load(fh)

    @staticmethod
    def _key(resource: Resource) -> str:
        return f"{resource.plan}/{resource.name}"

    def _enter(self, operation: str, node: str) -> None:
        with self._lock:
            self.calls.append((operation, node))
            remaining = self.transient.get((operation, node), 0)
            if remaining:
                self.transient[(operation, node)] = remaining - 1
        if self.on_call:
            self.on_call(operation, node)
        if remaining:
            raise TransientBackendError(f"{operation} {node}: throttled")
        exc = self.fail_on.get((operation, node))
        if exc is not None:
            raise exc

    def _save(self) -> None:
        if not self.state_path:
            return
        tmp = self.state_path + ".tmp"
        with open(tmp, "w", encoding="utf-8", newline="\n") as fh:
            json.dump(self._store, fh, indent=2, sort_keys=True, default=str)
        os.replace(tmp, self.state_path)

    def calls_for(self, operation: str) -> List[str]:
        return [node for op, node in self.calls if op == operation]

    def lookup(self, lookup: Lookup, params: Dict[str, Any]) -> Dict[str, Any]:
        self._enter("lookup", lookup.name)
        if lookup.kind not in self.lookup_results:
            raise KeyError(f"no canned result for lookup kind '{lookup.kind}'")
        return dict(self.lookup_results[lookup.kind])

    def read(self, resource: Resource, inputs: Dict[str, Any]) -> Optional[Observed]:
        self._enter("read", resource.name)
        with self._lock:
            entry = self._store.get(self._key(resource))
        if entry is None:
            return None
        return Observed(outputs=dict(entry["outputs"]), fingerprint=entry["fingerprint"])

    def create(self, resource: Resource, inputs: Dict[str, Any], fingerprint: str) -> Dict[str, Any]:
        self._enter("create", resource.name)
        outputs = _attributes(resource, inputs, self.region)
        with self._lock:
            self._store[self._key(resource)] = {
                "type": resource.resource_type,
                "inputs": inputs,
                "outputs": outputs,
                "fingerprint": fingerprint,
            }
            self._save()
        return dict(outputs)

    def update(
        self,
        resource: Resource,
        inputs: Dict[str, Any],
        fingerprint: str,
        observed: Observed,
    ) -> Dict[str, Any]:
        self._enter("update", resource.name)
        with self._lock:
            entry = self._store[self._key(resource)]
            entry["inputs"] = inputs
            entry["fingerprint"] = fingerprint
            self._save()
            return dict(entry["outputs"])

    def delete(self, resource: Resource, observed: Observed) -> None:
        self._enter("delete", resource.name)
        with self._lock:
            self._store.pop(self._key(resource), None)
            self._save()

    def exists(self, plan: str, name: str) -> bool:
        with self._lock:
            return f"{plan}/{name}" in self._store
