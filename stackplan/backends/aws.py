"""
AWS backend built on boto3.

One handler per resource type; lookups are plain functions. Identity is kept
on the AWS side: deterministic names for named resources, stackplan:* tags on
taggable ones (security groups, instances, RDS), a marker object for bucket
uploads. Throttling and connection failures surface as TransientBackendError.
"""
import base64
import hashlib
import json
import mimetypes
import os
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from stackplan.backends.base import (
    FINGERPRINT_TAG,
    PLAN_TAG,
    RESOURCE_TAG,
    Backend,
    identity_tags,
    physical_name,
)
from stackplan.config import PlannerConfig
from stackplan.errors import ReplacementRequiredError, TransientBackendError
from stackplan.models.resource import Lookup, Observed, Resource
from stackplan.models.values import is_deferred

_TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "TooManyRequestsException",
    "SlowDown",
    "ServiceUnavailable",
    "InternalError",
    "PriorRequestNotComplete",
}

_MARKER_PREFIX = ".stackplan/"


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _is(exc: ClientError, *codes: str) -> bool:
    return _error_code(exc) in codes


@contextmanager
def _translate() -> Iterator[None]:
    """Turn retryable botocore failures into TransientBackendError."""
    try:
        yield
    except ClientError as exc:
        if _error_code(exc) in _TRANSIENT_CODES:
            raise TransientBackendError(str(exc)) from exc
        raise
    except (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError) as exc:
        raise TransientBackendError(str(exc)) from exc


def _tag_list(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"Key": k, "Value": str(v)} for k, v in sorted(tags.items())]


def _tag_dict(tags: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
    return {t["Key"]: t["Value"] for t in (tags or [])}


def _literal(resource: Resource, key: str, default: Any = None) -> Any:
    """A declared input usable before resolution, e.g. force_destroy."""
    val = resource.inputs.get(key, default)
    return default if is_deferred(val) else val


def _all_tags(resource: Resource, inputs: Dict[str, Any], fingerprint: Optional[str]) -> Dict[str, str]:
    tags = dict(inputs.get("tags") or {})
    tags.update(identity_tags(resource, fingerprint))
    return tags


def _as_policy_document(val: Any) -> str:
    return val if isinstance(val, str) else json.dumps(val)


def _same_json(a: Any, b: Any) -> bool:
    try:
        left = json.loads(a) if isinstance(a, str) else a
        right = json.loads(b) if isinstance(b, str) else b
    except ValueError:
        return False
    return left == right


# ------------------------------------------------------------------ handlers
class _Handler:
    service = ""

    def __init__(self, backend: "AwsBackend") -> None:
        self.backend = backend

    @property
    def client(self):
        return self.backend.client(self.service)

    def read(self, resource: Resource, inputs: Dict[str, Any]) -> Optional[Observed]:
        raise NotImplementedError

    def create(self, resource: Resource, inputs: Dict[str, Any], fingerprint: str) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, resource: Resource, inputs: Dict[str, Any], fingerprint: str, observed: Observed) -> Dict[str, Any]:
        # put-style APIs are idempotent: re-applying the configuration is the update
        return self.create(resource, inputs, fingerprint)

    def delete(self, resource: Resource, observed: Observed) -> None:
        raise NotImplementedError


class BucketHandler(_Handler):
    service = "s3"

    def bucket_name(self, resource: Resource, inputs: Dict[str, Any]) -> str:
        if inputs.get("bucket"):
            return inputs["bucket"]
        # bucket names are global; the account id keeps them unique and stable
        suffix = self.backend.account_id
        return f"{physical_name(resource, 63 - len(suffix) - 1)}-{suffix}"

    def _outputs(self, bucket: str) -> Dict[str, Any]:
        region = self.backend.region
        return {
            "id": bucket,
            "bucket": bucket,
            "arn": f"arn:aws:s3:::{bucket}",
            "region": region,
            "bucket_regional_domain_name": f"{bucket}.s3.{region}.amazonaws.com",
        }

    def read(self, resource, inputs):
        bucket = self.bucket_name(resource, inputs)
        try:
            self.client.head_bucket(Bucket=bucket)
        except ClientError as exc:
            if _is(exc, "404", "NoSuchBucket", "NotFound"):
                return None
            raise
        try:
            tags = _tag_dict(self.client.get_bucket_tagging(Bucket=bucket).get("TagSet"))
        except ClientError as exc:
            if not _is(exc, "NoSuchTagSet"):
                raise
            tags = {}
        return Observed(self._outputs(bucket), fingerprint=tags.get(FINGERPRINT_TAG))

    def create(self, resource, inputs, fingerprint):
        bucket = self.bucket_name(resource, inputs)
        kwargs: Dict[str, Any] = {"Bucket": bucket}
        if self.backend.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.backend.region}
        try:
            self.client.create_bucket(**kwargs)
        except ClientError as exc:
            if not _is(exc, "BucketAlreadyOwnedByYou"):
                raise
        self.client.put_bucket_tagging(
            Bucket=bucket,
            Tagging={"TagSet": _tag_list(_all_tags(resource, inputs, fingerprint))},
        )
        return self._outputs(bucket)

    def delete(self, resource, observed):
        bucket = observed.outputs["bucket"]
        if _literal(resource, "force_destroy", False):
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket):
                keys = [{"Key": o["Key"]} for o in page.get("Contents", [])]
                if keys:
                    self.client.delete_objects(Bucket=bucket, Delete={"Objects": keys, "Quiet": True})
        self.client.delete_bucket(Bucket=bucket)


class PublicAccessBlockHandler(_Handler):
    service = "s3"
    _FLAGS = {
        "block_public_acls": "BlockPublicAcls",
        "block_public_policy": "BlockPublicPolicy",
        "ignore_public_acls": "IgnorePublicAcls",
        "restrict_public_buckets": "RestrictPublicBuckets",
    }

    def _desired(self, inputs):
        return {api: bool(inputs.get(key, True)) for key, api in self._FLAGS.items()}

    def read(self, resource, inputs):
        bucket = inputs["bucket"]
        try:
            resp = self.client.get_public_access_block(Bucket=bucket)
        except ClientError as exc:
            if _is(exc, "NoSuchPublicAccessBlockConfiguration", "NoSuchBucket"):
                return None
            raise
        current = resp.get("PublicAccessBlockConfiguration", {})
        return Observed({"id": bucket, "bucket": bucket}, in_sync=current == self._desired(inputs))

    def create(self, resource, inputs, fingerprint):
        bucket = inputs["bucket"]
        self.client.put_public_access_block(
            Bucket=bucket, PublicAccessBlockConfiguration=self._desired(inputs)
        )
        return {"id": bucket, "bucket": bucket}

    def delete(self, resource, observed):
        self.client.delete_public_access_block(Bucket=observed.outputs["bucket"])


class WebsiteConfigurationHandler(_Handler):
    service = "s3"

    def _desired(self, inputs):
        config = {"IndexDocument": {"Suffix": inputs.get("index_document", {}).get("suffix", "index.html")}}
        error_key = inputs.get("error_document", {}).get("key")
        if error_key:
            config["ErrorDocument"] = {"Key": error_key}
        return config

    def _outputs(self, bucket):
        return {
            "id": bucket,
            "bucket": bucket,
            "website_endpoint": f"{bucket}.s3-website-{self.backend.region}.amazonaws.com",
        }

    def read(self, resource, inputs):
        bucket = inputs["bucket"]
        try:
            resp = self.client.get_bucket_website(Bucket=bucket)
        except ClientError as exc:
            if _is(exc, "NoSuchWebsiteConfiguration", "NoSuchBucket"):
                return None
            raise
        current = {k: resp[k] for k in ("IndexDocument", "ErrorDocument") if k in resp}
        return Observed(self._outputs(bucket), in_sync=current == self._desired(inputs))

    def create(self, resource, inputs, fingerprint):
        bucket = inputs["bucket"]
        self.client.put_bucket_website(Bucket=bucket, WebsiteConfiguration=self._desired(inputs))
        return self._outputs(bucket)

    def delete(self, resource, observed):
        self.client.delete_bucket_website(Bucket=observed.outputs["bucket"])


class CorsConfigurationHandler(_Handler):
    service = "s3"

    @staticmethod
    def _rule(rule: Dict[str, Any]) -> Dict[str, Any]:
        out = {
            "AllowedMethods": list(rule.get("allowed_methods", [])),
            "AllowedOrigins": list(rule.get("allowed_origins", [])),
        }
        if rule.get("allowed_headers"):
            out["AllowedHeaders"] = list(rule["allowed_headers"])
        if rule.get("max_age_seconds") is not None:
            out["MaxAgeSeconds"] = int(rule["max_age_seconds"])
        return out

    def read(self, resource, inputs):
        bucket = inputs["bucket"]
        try:
            resp = self.client.get_bucket_cors(Bucket=bucket)
        except ClientError as exc:
            if _is(exc, "NoSuchCORSConfiguration", "NoSuchBucket"):
                return None
            raise
        desired = [self._rule(r) for r in inputs.get("cors_rules", [])]
        current = [{k: v for k, v in r.items() if k != "ID"} for r in resp.get("CORSRules", [])]
        return Observed({"id": bucket, "bucket": bucket}, in_sync=current == desired)

    def create(self, resource, inputs, fingerprint):
        bucket = inputs["bucket"]
        rules = [self._rule(r) for r in inputs.get("cors_rules", [])]
        self.client.put_bucket_cors(Bucket=bucket, CORSConfiguration={"CORSRules": rules})
        return {"id": bucket, "bucket": bucket}

    def delete(self, resource, observed):
        self.client.delete_bucket_cors(Bucket=observed.outputs["bucket"])


class BucketPolicyHandler(_Handler):
    service = "s3"

    def read(self, resource, inputs):
        bucket = inputs["bucket"]
        try:
            resp = self.client.get_bucket_policy(Bucket=bucket)
        except ClientError as exc:
            if _is(exc, "NoSuchBucketPolicy", "NoSuchBucket"):
                return None
            raise
        in_sync = _same_json(resp.get("Policy", ""), inputs.get("policy", ""))
        return Observed({"id": bucket, "bucket": bucket}, in_sync=in_sync)

    def create(self, resource, inputs, fingerprint):
        bucket = inputs["bucket"]
        self.client.put_bucket_policy(Bucket=bucket, Policy=_as_policy_document(inputs["policy"]))
        return {"id": bucket, "bucket": bucket}

    def delete(self, resource, observed):
        self.client.delete_bucket_policy(Bucket=observed.outputs["bucket"])


class BucketObjectsHandler(_Handler):
    """Uploads a local directory; a marker object records keys and fingerprint."""
    service = "s3"

    def _marker(self, resource: Resource) -> str:
        return f"{_MARKER_PREFIX}{resource.plan}-{resource.name}.json"

    def read(self, resource, inputs):
        bucket = inputs["bucket"]
        try:
            body = self.client.get_object(Bucket=bucket, Key=self._marker(resource))["Body"].read()
        except ClientError as exc:
            if _is(exc, "NoSuchKey", "NoSuchBucket", "404"):
                return None
            raise
        marker = json.loads(body)
        outputs = {"id": bucket, "bucket": bucket, "keys": marker["keys"], "count": len(marker["keys"])}
        return Observed(outputs, fingerprint=marker.get("fingerprint"))

    def create(self, resource, inputs, fingerprint):
        bucket = inputs["bucket"]
        source_dir = inputs["source_dir"]
        prefix = inputs.get("prefix", "")
        keys: List[str] = []
        for root, _, fnames in os.walk(source_dir):
            for fname in sorted(fnames):
                path = os.path.join(root, fname)
                rel = os.path.relpath(path, source_dir).replace(os.sep, "/")
                key = f"{prefix}{rel}"
                content_type = mimetypes.guess_type(fname)[0] or "application/octet-stream"
                with open(path, "rb") as fh:
                    self.client.put_object(Bucket=bucket, Key=key, Body=fh.read(), ContentType=content_type)
                keys.append(key)
        marker = {"fingerprint": fingerprint, "keys": sorted(keys)}
        self.client.put_object(
            Bucket=bucket,
            Key=self._marker(resource),
            Body=json.dumps(marker).encode("utf-8"),
            ContentType="application/json",
        )
        return {"id": bucket, "bucket": bucket, "keys": sorted(keys), "count": len(keys)}

    def delete(self, resource, observed):
        bucket = observed.outputs["bucket"]
        keys = list(observed.outputs.get("keys", [])) + [self._marker(resource)]
        for start in range(0, len(keys), 1000):
            chunk = [{"Key": k} for k in keys[start:start + 1000]]
            self.client.delete_objects(Bucket=bucket, Delete={"Objects": chunk, "Quiet": True})


class SecurityGroupHandler(_Handler):
    service = "ec2"

    @staticmethod
    def _permissions(rules: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        perms = []
        for rule in rules or []:
            perm: Dict[str, Any] = {"IpProtocol": str(rule.get("protocol", "tcp"))}
            if perm["IpProtocol"] != "-1":
                perm["FromPort"] = int(rule.get("from_port", 0))
                perm["ToPort"] = int(rule.get("to_port", 0))
            if rule.get("cidr_blocks"):
                perm["IpRanges"] = [{"CidrIp": c} for c in rule["cidr_blocks"]]
            if rule.get("security_groups"):
                perm["UserIdGroupPairs"] = [{"GroupId": g} for g in rule["security_groups"]]
            perms.append(perm)
        return perms

    def _outputs(self, group: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": group["GroupId"],
            "name": group["GroupName"],
            "vpc_id": group.get("VpcId"),
            "arn": f"arn:aws:ec2:{self.backend.region}:{self.backend.account_id}:security-group/{group['GroupId']}",
        }

    def _find(self, resource: Resource) -> Optional[Dict[str, Any]]:
        resp = self.client.describe_security_groups(Filters=[
            {"Name": f"tag:{PLAN_TAG}", "Values": [resource.plan]},
            {"Name": f"tag:{RESOURCE_TAG}", "Values": [resource.name]},
        ])
        groups = resp.get("SecurityGroups", [])
        return groups[0] if groups else None

    def _authorize(self, group_id: str, inputs: Dict[str, Any]) -> None:
        for direction, call in (
            ("ingress", self.client.authorize_security_group_ingress),
            ("egress", self.client.authorize_security_group_egress),
        ):
            perms = self._permissions(inputs.get(direction, []))
            if not perms:
                continue
            try:
                call(GroupId=group_id, IpPermissions=perms)
            except ClientError as exc:
                # default egress rule, or a rule left by an interrupted create
                if not _is(exc, "InvalidPermission.Duplicate"):
                    raise

    def read(self, resource, inputs):
        group = self._find(resource)
        if group is None:
            return None
        tags = _tag_dict(group.get("Tags"))
        missing = (
            (inputs.get("ingress") and not group.get("IpPermissions"))
            or (inputs.get("egress") and not group.get("IpPermissionsEgress"))
        )
        return Observed(
            self._outputs(group),
            fingerprint=tags.get(FINGERPRINT_TAG),
            in_sync=False if missing else None,
        )

    def _create_group(self, resource: Resource, inputs: Dict[str, Any]) -> Dict[str, Any]:
        name = inputs.get("name") or physical_name(resource, 255)
        try:
            resp = self.client.create_security_group(
                GroupName=name,
                Description=inputs.get("description", "Managed by stackplan"),
                VpcId=inputs["vpc_id"],
                TagSpecifications=[{
                    "ResourceType": "security-group",
                    "Tags": _tag_list(_all_tags(resource, inputs, None)),
                }],
            )
        except ClientError as exc:
            if not _is(exc, "InvalidGroup.Duplicate"):
                raise
            groups = self.client.describe_security_groups(Filters=[
                {"Name": "group-name", "Values": [name]},
                {"Name": "vpc-id", "Values": [inputs["vpc_id"]]},
            ]).get("SecurityGroups", [])
            if not groups:
                raise
            return groups[0]
        return {"GroupId": resp["GroupId"], "GroupName": name, "VpcId": inputs["vpc_id"]}

    def create(self, resource, inputs, fingerprint):
        # the fingerprint tag goes on last, once every rule is in place
        group = self._find(resource) or self._create_group(resource, inputs)
        self._authorize(group["GroupId"], inputs)
        self.client.create_tags(
            Resources=[group["GroupId"]], Tags=_tag_list(_all_tags(resource, inputs, fingerprint))
        )
        return self._outputs(group)

    def update(self, resource, inputs, fingerprint, observed):
        group = self._find(resource)
        group_id = group["GroupId"]
        if group.get("IpPermissions"):
            self.client.revoke_security_group_ingress(GroupId=group_id, IpPermissions=group["IpPermissions"])
        if group.get("IpPermissionsEgress"):
            self.client.revoke_security_group_egress(GroupId=group_id, IpPermissions=group["IpPermissionsEgress"])
        self._authorize(group_id, inputs)
        self.client.create_tags(Resources=[group_id], Tags=_tag_list(_all_tags(resource, inputs, fingerprint)))
        return self._outputs(group)

    def delete(self, resource, observed):
        try:
            self.client.delete_security_group(GroupId=observed.outputs["id"])
        except ClientError as exc:
            # still attached to an instance that is shutting down
            if _is(exc, "DependencyViolation"):
                raise TransientBackendError(str(exc)) from exc
            raise


class IamRoleHandler(_Handler):
    service = "iam"

    def read(self, resource, inputs):
        name = inputs.get("name") or physical_name(resource, 64)
        try:
            role = self.client.get_role(RoleName=name)["Role"]
        except ClientError as exc:
            if _is(exc, "NoSuchEntity"):
                return None
            raise
        tags = _tag_dict(role.get("Tags"))
        outputs = {"id": name, "name": name, "arn": role["Arn"]}
        return Observed(outputs, fingerprint=tags.get(FINGERPRINT_TAG))

    def create(self, resource, inputs, fingerprint):
        name = inputs.get("name") or physical_name(resource, 64)
        role = self.client.create_role(
            RoleName=name,
            AssumeRolePolicyDocument=_as_policy_document(inputs["assume_role_policy"]),
            Description=inputs.get("description", "Managed by stackplan"),
            Tags=_tag_list(_all_tags(resource, inputs, fingerprint)),
        )["Role"]
        return {"id": name, "name": name, "arn": role["Arn"]}

    def update(self, resource, inputs, fingerprint, observed):
        name = observed.outputs["name"]
        self.client.update_assume_role_policy(
            RoleName=name,
            PolicyDocument=_as_policy_document(inputs["assume_role_policy"]),
        )
        self.client.tag_role(RoleName=name, Tags=_tag_list(_all_tags(resource, inputs, fingerprint)))
        return dict(observed.outputs)

    def delete(self, resource, observed):
        self.client.delete_role(RoleName=observed.outputs["name"])


class RolePolicyAttachmentHandler(_Handler):
    service = "iam"

    def read(self, resource, inputs):
        role, arn = inputs["role"], inputs["policy_arn"]
        try:
            paginator = self.client.get_paginator("list_attached_role_policies")
            attached = [
                p["PolicyArn"]
                for page in paginator.paginate(RoleName=role)
                for p in page.get("AttachedPolicies", [])
            ]
        except ClientError as exc:
            if _is(exc, "NoSuchEntity"):
                return None
            raise
        if arn not in attached:
            return None
        return Observed({"id": f"{role}/{arn}", "role": role, "policy_arn": arn}, in_sync=True)

    def create(self, resource, inputs, fingerprint):
        role, arn = inputs["role"], inputs["policy_arn"]
        self.client.attach_role_policy(RoleName=role, PolicyArn=arn)
        return {"id": f"{role}/{arn}", "role": role, "policy_arn": arn}

    def delete(self, resource, observed):
        self.client.detach_role_policy(
            RoleName=observed.outputs["role"], PolicyArn=observed.outputs["policy_arn"]
        )


class InstanceProfileHandler(_Handler):
    service = "iam"

    def read(self, resource, inputs):
        name = inputs.get("name") or physical_name(resource, 128)
        try:
            profile = self.client.get_instance_profile(InstanceProfileName=name)["InstanceProfile"]
        except ClientError as exc:
            if _is(exc, "NoSuchEntity"):
                return None
            raise
        roles = [r["RoleName"] for r in profile.get("Roles", [])]
        outputs = {"id": name, "name": name, "arn": profile["Arn"], "roles": roles}
        # a missing or extra role is drift whatever the stored fingerprint says
        in_sync = None if roles == [inputs.get("role")] else False
        tags = _tag_dict(profile.get("Tags"))
        return Observed(outputs, fingerprint=tags.get(FINGERPRINT_TAG), in_sync=in_sync)

    def create(self, resource, inputs, fingerprint):
        name = inputs.get("name") or physical_name(resource, 128)
        try:
            profile = self.client.create_instance_profile(
                InstanceProfileName=name,
                Tags=_tag_list(_all_tags(resource, inputs, None)),
            )["InstanceProfile"]
        except ClientError as exc:
            if not _is(exc, "EntityAlreadyExists"):
                raise
            profile = self.client.get_instance_profile(InstanceProfileName=name)["InstanceProfile"]
        roles = [r["RoleName"] for r in profile.get("Roles", [])]
        if inputs["role"] not in roles:
            self.client.add_role_to_instance_profile(InstanceProfileName=name, RoleName=inputs["role"])
        if self.backend.wait:
            self.client.get_waiter("instance_profile_exists").wait(InstanceProfileName=name)
        self.client.tag_instance_profile(
            InstanceProfileName=name, Tags=_tag_list(_all_tags(resource, inputs, fingerprint))
        )
        return {"id": name, "name": name, "arn": profile["Arn"], "roles": [inputs["role"]]}

    def update(self, resource, inputs, fingerprint, observed):
        name = observed.outputs["name"]
        current = observed.outputs.get("roles", [])
        for role in current:
            if role != inputs["role"]:
                self.client.remove_role_from_instance_profile(InstanceProfileName=name, RoleName=role)
        if inputs["role"] not in current:
            self.client.add_role_to_instance_profile(InstanceProfileName=name, RoleName=inputs["role"])
        self.client.tag_instance_profile(
            InstanceProfileName=name, Tags=_tag_list(_all_tags(resource, inputs, fingerprint))
        )
        return {**observed.outputs, "roles": [inputs["role"]]}

    def delete(self, resource, observed):
        name = observed.outputs["name"]
        for role in observed.outputs.get("roles", []):
            self.client.remove_role_from_instance_profile(InstanceProfileName=name, RoleName=role)
        self.client.delete_instance_profile(InstanceProfileName=name)


class InstanceHandler(_Handler):
    service = "ec2"
    _LIVE_STATES = ["pending", "running", "stopping", "stopped"]

    def _find(self, resource: Resource) -> Optional[Dict[str, Any]]:
        resp = self.client.describe_instances(Filters=[
            {"Name": f"tag:{PLAN_TAG}", "Values": [resource.plan]},
            {"Name": f"tag:{RESOURCE_TAG}", "Values": [resource.name]},
            {"Name": "instance-state-name", "Values": self._LIVE_STATES},
        ])
        for reservation in resp.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        return None

    def _outputs(self, instance: Dict[str, Any]) -> Dict[str, Any]:
        iid = instance["InstanceId"]
        return {
            "id": iid,
            "public_ip": instance.get("PublicIpAddress", ""),
            "public_dns": instance.get("PublicDnsName", ""),
            "private_ip": instance.get("PrivateIpAddress", ""),
            "arn": f"arn:aws:ec2:{self.backend.region}:{self.backend.account_id}:instance/{iid}",
        }

    def read(self, resource, inputs):
        instance = self._find(resource)
        if instance is None:
            return None
        tags = _tag_dict(instance.get("Tags"))
        return Observed(self._outputs(instance), fingerprint=tags.get(FINGERPRINT_TAG))

    def create(self, resource, inputs, fingerprint):
        tags = _all_tags(resource, inputs, fingerprint)
        kwargs: Dict[str, Any] = {
            "ImageId": inputs["ami"],
            "InstanceType": inputs.get("instance_type", "t3.micro"),
            "MinCount": 1,
            "MaxCount": 1,
            # same token for the same plan/resource: a retried call is not duplicated
            "ClientToken": hashlib.sha256(f"{resource.plan}/{resource.name}".encode()).hexdigest()[:64],
            "TagSpecifications": [{"ResourceType": "instance", "Tags": _tag_list(tags)}],
        }
        if inputs.get("vpc_security_group_ids"):
            kwargs["SecurityGroupIds"] = list(inputs["vpc_security_group_ids"])
        if inputs.get("iam_instance_profile"):
            kwargs["IamInstanceProfile"] = {"Name": inputs["iam_instance_profile"]}
        if inputs.get("user_data"):
            kwargs["UserData"] = inputs["user_data"]
        if inputs.get("subnet_id"):
            kwargs["SubnetId"] = inputs["subnet_id"]
        try:
            resp = self.client.run_instances(**kwargs)
        except ClientError as exc:
            # a fresh instance profile takes a few seconds to become usable
            if _is(exc, "InvalidParameterValue") and "iamInstanceProfile" in str(exc):
                raise TransientBackendError(str(exc)) from exc
            raise
        iid = resp["Instances"][0]["InstanceId"]
        if self.backend.wait:
            self.client.get_waiter("instance_running").wait(InstanceIds=[iid])
        described = self.client.describe_instances(InstanceIds=[iid])
        instance = described["Reservations"][0]["Instances"][0]
        return self._outputs(instance)

    def _replace_only_changes(self, iid: str, inputs: Dict[str, Any]) -> List[str]:
        instance = self.client.describe_instances(InstanceIds=[iid])["Reservations"][0]["Instances"][0]
        changed = []
        if instance.get("ImageId") != inputs["ami"]:
            changed.append("ami")
        if instance.get("InstanceType") != inputs.get("instance_type", "t3.micro"):
            changed.append("instance_type")
        attr = self.client.describe_instance_attribute(InstanceId=iid, Attribute="userData")
        encoded = attr.get("UserData", {}).get("Value")
        current = base64.b64decode(encoded).decode("utf-8") if encoded else ""
        if current != (inputs.get("user_data") or ""):
            changed.append("user_data")
        return changed

    def update(self, resource, inputs, fingerprint, observed):
        iid = observed.outputs["id"]
        changed = self._replace_only_changes(iid, inputs)
        if changed:
            raise ReplacementRequiredError(resource.name, changed)
        if inputs.get("vpc_security_group_ids"):
            self.client.modify_instance_attribute(InstanceId=iid, Groups=list(inputs["vpc_security_group_ids"]))
        self.client.create_tags(Resources=[iid], Tags=_tag_list(_all_tags(resource, inputs, fingerprint)))
        return dict(observed.outputs)

    def delete(self, resource, observed):
        iid = observed.outputs["id"]
        self.client.terminate_instances(InstanceIds=[iid])
        if self.backend.wait:
            self.client.get_waiter("instance_terminated").wait(InstanceIds=[iid])


class DbSubnetGroupHandler(_Handler):
    service = "rds"

    def read(self, resource, inputs):
        name = inputs.get("name") or physical_name(resource, 255)
        try:
            groups = self.client.describe_db_subnet_groups(DBSubnetGroupName=name)["DBSubnetGroups"]
        except ClientError as exc:
            if _is(exc, "DBSubnetGroupNotFoundFault"):
                return None
            raise
        arn = groups[0]["DBSubnetGroupArn"]
        tags = _tag_dict(self.client.list_tags_for_resource(ResourceName=arn).get("TagList"))
        return Observed({"id": name, "name": name, "arn": arn}, fingerprint=tags.get(FINGERPRINT_TAG))

    def create(self, resource, inputs, fingerprint):
        name = inputs.get("name") or physical_name(resource, 255)
        group = self.client.create_db_subnet_group(
            DBSubnetGroupName=name,
            DBSubnetGroupDescription=inputs.get("description", "Managed by stackplan"),
            SubnetIds=list(inputs["subnet_ids"]),
            Tags=_tag_list(_all_tags(resource, inputs, fingerprint)),
        )["DBSubnetGroup"]
        return {"id": name, "name": name, "arn": group["DBSubnetGroupArn"]}

    def update(self, resource, inputs, fingerprint, observed):
        name = observed.outputs["name"]
        self.client.modify_db_subnet_group(
            DBSubnetGroupName=name,
            DBSubnetGroupDescription=inputs.get("description", "Managed by stackplan"),
            SubnetIds=list(inputs["subnet_ids"]),
        )
        self.client.add_tags_to_resource(
            ResourceName=observed.outputs["arn"],
            Tags=_tag_list(_all_tags(resource, inputs, fingerprint)),
        )
        return dict(observed.outputs)

    def delete(self, resource, observed):
        self.client.delete_db_subnet_group(DBSubnetGroupName=observed.outputs["name"])


class DbInstanceHandler(_Handler):
    service = "rds"

    def _outputs(self, db: Dict[str, Any]) -> Dict[str, Any]:
        endpoint = db.get("Endpoint") or {}
        address = endpoint.get("Address", "")
        port = endpoint.get("Port", 5432)
        return {
            "id": db["DBInstanceIdentifier"],
            "address": address,
            "port": port,
            "endpoint": f"{address}:{port}",
            "arn": db["DBInstanceArn"],
        }

    def _describe(self, identifier: str) -> Optional[Dict[str, Any]]:
        try:
            dbs = self.client.describe_db_instances(DBInstanceIdentifier=identifier)["DBInstances"]
        except ClientError as exc:
            if _is(exc, "DBInstanceNotFound", "DBInstanceNotFoundFault"):
                return None
            raise
        return dbs[0] if dbs else None

    def read(self, resource, inputs):
        db = self._describe(inputs.get("identifier") or physical_name(resource, 63))
        if db is None or db.get("DBInstanceStatus") == "deleting":
            return None
        tags = _tag_dict(db.get("TagList"))
        return Observed(self._outputs(db), fingerprint=tags.get(FINGERPRINT_TAG))

    def create(self, resource, inputs, fingerprint):
        identifier = inputs.get("identifier") or physical_name(resource, 63)
        kwargs: Dict[str, Any] = {
            "DBInstanceIdentifier": identifier,
            "Engine": inputs.get("engine", "postgres"),
            "DBInstanceClass": inputs.get("instance_class", "db.t3.micro"),
            "AllocatedStorage": int(inputs.get("allocated_storage", 20)),
            "MasterUsername": inputs["username"],
            "MasterUserPassword": inputs["password"],
            "PubliclyAccessible": bool(inputs.get("publicly_accessible", False)),
            "Tags": _tag_list(_all_tags(resource, inputs, fingerprint)),
        }
        if inputs.get("engine_version"):
            kwargs["EngineVersion"] = str(inputs["engine_version"])
        if inputs.get("db_name"):
            kwargs["DBName"] = inputs["db_name"]
        if inputs.get("vpc_security_group_ids"):
            kwargs["VpcSecurityGroupIds"] = list(inputs["vpc_security_group_ids"])
        if inputs.get("db_subnet_group_name"):
            kwargs["DBSubnetGroupName"] = inputs["db_subnet_group_name"]
        try:
            self.client.create_db_instance(**kwargs)
        except ClientError as exc:
            if not _is(exc, "DBInstanceAlreadyExists", "DBInstanceAlreadyExistsFault"):
                raise
        if self.backend.wait:
            self.client.get_waiter("db_instance_available").wait(
                DBInstanceIdentifier=identifier,
                WaiterConfig={"Delay": 30, "MaxAttempts": 80},
            )
        return self._outputs(self._describe(identifier))

    def update(self, resource, inputs, fingerprint, observed):
        identifier = observed.outputs["id"]
        kwargs: Dict[str, Any] = {
            "DBInstanceIdentifier": identifier,
            "DBInstanceClass": inputs.get("instance_class", "db.t3.micro"),
            "AllocatedStorage": int(inputs.get("allocated_storage", 20)),
            "MasterUserPassword": inputs["password"],
            "ApplyImmediately": True,
        }
        if inputs.get("vpc_security_group_ids"):
            kwargs["VpcSecurityGroupIds"] = list(inputs["vpc_security_group_ids"])
        self.client.modify_db_instance(**kwargs)
        self.client.add_tags_to_resource(
            ResourceName=observed.outputs["arn"],
            Tags=_tag_list(_all_tags(resource, inputs, fingerprint)),
        )
        return dict(observed.outputs)

    def delete(self, resource, observed):
        identifier = observed.outputs["id"]
        kwargs: Dict[str, Any] = {"DBInstanceIdentifier": identifier}
        if _literal(resource, "skip_final_snapshot", False):
            kwargs["SkipFinalSnapshot"] = True
        else:
            kwargs["SkipFinalSnapshot"] = False
            kwargs["FinalDBSnapshotIdentifier"] = f"{identifier}-final"
        self.client.delete_db_instance(**kwargs)
        if self.backend.wait:
            self.client.get_waiter("db_instance_deleted").wait(
                DBInstanceIdentifier=identifier,
                WaiterConfig={"Delay": 30, "MaxAttempts": 80},
            )


HANDLERS = {
    "aws_s3_bucket":                       BucketHandler,
    "aws_s3_bucket_public_access_block":   PublicAccessBlockHandler,
    "aws_s3_bucket_website_configuration": WebsiteConfigurationHandler,
    "aws_s3_bucket_cors_configuration":    CorsConfigurationHandler,
    "aws_s3_bucket_policy":                BucketPolicyHandler,
    "aws_s3_bucket_objects":               BucketObjectsHandler,
    "aws_security_group":                  SecurityGroupHandler,
    "aws_iam_role":                        IamRoleHandler,
    "aws_iam_role_policy_attachment":      RolePolicyAttachmentHandler,
    "aws_iam_instance_profile":            InstanceProfileHandler,
    "aws_instance":                        InstanceHandler,
    "aws_db_subnet_group":                 DbSubnetGroupHandler,
    "aws_db_instance":                     DbInstanceHandler,
}


# ------------------------------------------------------------------- lookups
def _lookup_vpc(backend: "AwsBackend", params: Dict[str, Any]) -> Dict[str, Any]:
    if params.get("id"):
        filters = [{"Name": "vpc-id", "Values": [params["id"]]}]
    else:
        filters = [{"Name": "isDefault", "Values": ["true" if params.get("default", True) else "false"]}]
    vpcs = backend.client("ec2").describe_vpcs(Filters=filters).get("Vpcs", [])
    if not vpcs:
        raise LookupError(f"no VPC matches {filters}")
    return {"id": vpcs[0]["VpcId"], "cidr_block": vpcs[0].get("CidrBlock", "")}


def _lookup_subnet_ids(backend: "AwsBackend", params: Dict[str, Any]) -> Dict[str, Any]:
    resp = backend.client("ec2").describe_subnets(
        Filters=[{"Name": "vpc-id", "Values": [params["vpc_id"]]}]
    )
    ids = sorted(s["SubnetId"] for s in resp.get("Subnets", []))
    if not ids:
        raise LookupError(f"VPC {params['vpc_id']} has no subnets")
    return {"ids": ids}


def _lookup_ami(backend: "AwsBackend", params: Dict[str, Any]) -> Dict[str, Any]:
    filters = [
        {"Name": f["name"], "Values": list(f["values"])}
        for f in params.get("filters", [])
    ]
    resp = backend.client("ec2").describe_images(Owners=list(params.get("owners", [])), Filters=filters)
    images = resp.get("Images", [])
    if not images:
        raise LookupError(f"no AMI matches owners={params.get('owners')} filters={filters}")
    if params.get("most_recent", True):
        images = sorted(images, key=lambda i: i.get("CreationDate", ""), reverse=True)
    return {"id": images[0]["ImageId"], "name": images[0].get("Name", "")}


def _lookup_region(backend: "AwsBackend", params: Dict[str, Any]) -> Dict[str, Any]:
    return {"name": backend.region}


def _lookup_secret(backend: "AwsBackend", params: Dict[str, Any]) -> Dict[str, Any]:
    resp = backend.client("secretsmanager").get_secret_value(SecretId=params["secret_id"])
    value = resp.get("SecretString", "")
    if params.get("key"):
        value = json.loads(value)[params["key"]]
    return {"value": value, "arn": resp.get("ARN", "")}


LOOKUPS = {
    "aws_vpc":        _lookup_vpc,
    "aws_subnet_ids": _lookup_subnet_ids,
    "aws_ami":        _lookup_ami,
    "aws_region":     _lookup_region,
    "aws_secret":     _lookup_secret,
}


# ------------------------------------------------------------------- backend
class AwsBackend(Backend):
    name = "aws"

    def __init__(self, config: PlannerConfig, session=None, wait: bool = True) -> None:
        self.config = config
        self.wait = wait
        self._session = session or boto3.session.Session(
            region_name=config.region, profile_name=config.profile
        )
        self._clients: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._account_id: Optional[str] = None
        self._handlers = {rt: cls(self) for rt, cls in HANDLERS.items()}

    @property
    def region(self) -> str:
        return self._session.region_name or self.config.region

    def client(self, service: str):
        # boto3 sessions are not thread-safe; clients are
        with self._lock:
            if service not in self._clients:
                self._clients[service] = self._session.client(service, region_name=self.region)
            return self._clients[service]

    @property
    def account_id(self) -> str:
        if self._account_id is None:
            with _translate():
                self._account_id = self.client("sts").get_caller_identity()["Account"]
        return self._account_id

    def _handler(self, resource: Resource) -> _Handler:
        try:
            return self._handlers[resource.resource_type]
        except KeyError:
            raise ValueError(f"unsupported resource type '{resource.resource_type}'") from None

    def lookup(self, lookup: Lookup, params: Dict[str, Any]) -> Dict[str, Any]:
        fn = LOOKUPS.get(lookup.kind)
        if fn is None:
            raise ValueError(f"unsupported lookup kind '{lookup.kind}'")
        with _translate():
            return fn(self, params)

    def read(self, resource: Resource, inputs: Dict[str, Any]) -> Optional[Observed]:
        with _translate():
            return self._handler(resource).read(resource, inputs)

    def create(self, resource: Resource, inputs: Dict[str, Any], fingerprint: str) -> Dict[str, Any]:
        with _translate():
            return self._handler(resource).create(resource, inputs, fingerprint)

    def update(self, resource: Resource, inputs: Dict[str, Any], fingerprint: str, observed: Observed) -> Dict[str, Any]:
        with _translate():
            return self._handler(resource).update(resource, inputs, fingerprint, observed)

    def delete(self, resource: Resource, observed: Observed) -> None:
        with _translate():
            self._handler(resource).delete(resource, observed)
