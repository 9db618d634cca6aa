"""
AWS provider built on boto3.

Covers the resources a single-instance deployment needs: an SSH key
pair, a security group, an IAM role with its instance profile, and the
EC2 instance itself.

Every object that has a deterministic name (key name, group name, role
name, Name tag) can be found again with lookup(), so a create that was
interrupted before its state was committed is adopted on the next run
instead of duplicated.
"""

import json
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from ..core.expressions import is_known
from ..errors import NotFoundError, ProviderError
from .base import Provider, ResourceHandler, ResourceSchema

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {
    "InvalidKeyPair.NotFound",
    "InvalidGroup.NotFound",
    "InvalidInstanceID.NotFound",
    "NoSuchEntity",
}

RETRYABLE_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "DependencyViolation",
    "IncorrectInstanceState",
    "InvalidParameterValue",  # instance profile not yet visible to EC2
    "ServiceUnavailable",
    "InternalError",
}

LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]


class AwsProvider(Provider):
    """
    Configuration (provider "aws" block):
        region: AWS region (falls back to AWS_REGION, then the boto3 default chain)
        profile: Named credentials profile
        waiter_delay: Seconds between state polls (default 5)
        waiter_max_attempts: Polls before giving up (default 120)
    """

    name = "aws"

    def __init__(self, config: Optional[Dict[str, Any]] = None, session: Optional[Any] = None):
        super().__init__(config)
        region = self.config.get("region") or os.environ.get("AWS_REGION")
        self.session = session or boto3.session.Session(
            region_name=region,
            profile_name=self.config.get("profile"),
        )
        self.region = self.session.region_name
        self._client_config = Config(
            retries={"max_attempts": 3, "mode": "standard"},
            connect_timeout=10,
            read_timeout=60,
        )
        self._clients: Dict[str, Any] = {}
        logger.debug(f"AWS provider configured for region {self.region}")

    def client(self, service: str):
        with self._lock:
            if service not in self._clients:
                self._clients[service] = self.session.client(service, config=self._client_config)
            return self._clients[service]

    @property
    def waiter_config(self) -> Dict[str, int]:
        return {
            "Delay": int(self.config.get("waiter_delay", 5)),
            "MaxAttempts": int(self.config.get("waiter_max_attempts", 120)),
        }


def aws_call(description: str, func: Callable[..., Any], **kwargs) -> Any:
    """
    Call a boto3 client method, translating errors into ProviderErrors.

    Raises:
        NotFoundError: For not-found error codes
        ProviderError: For everything else (retryable where it may pass later)
    """
    try:
        return func(**kwargs)
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        message = e.response.get("Error", {}).get("Message", str(e))
        if code in NOT_FOUND_CODES:
            raise NotFoundError(f"{description}: {message}")
        raise ProviderError(f"{description}: {code}: {message}", retryable=code in RETRYABLE_CODES)
    except WaiterError as e:
        raise ProviderError(f"{description}: {e}", retryable=True)
    except BotoCoreError as e:
        raise ProviderError(f"{description}: {e}", retryable=True)


def tag_list(tags: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [{"Key": str(k), "Value": str(v)} for k, v in sorted((tags or {}).items())]


def tag_dict(tags: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
    return {t["Key"]: t["Value"] for t in tags or []}


def tag_specifications(resource_type: str, tags: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not tags:
        return []
    return [{"ResourceType": resource_type, "Tags": tag_list(tags)}]


class Ec2Handler(ResourceHandler):
    """Shared helpers for EC2 resource types."""

    @property
    def ec2(self):
        return self.provider.client("ec2")

    def sync_tags(self, resource_id: str, before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]):
        before = before or {}
        after = after or {}
        removed = [{"Key": k} for k in before if k not in after]
        changed = {k: v for k, v in after.items() if before.get(k) != v}
        if removed:
            aws_call(f"delete tags on {resource_id}", self.ec2.delete_tags,
                     Resources=[resource_id], Tags=removed)
        if changed:
            aws_call(f"create tags on {resource_id}", self.ec2.create_tags,
                     Resources=[resource_id], Tags=tag_list(changed))

    def wait(self, waiter_name: str, **kwargs):
        waiter = self.ec2.get_waiter(waiter_name)
        aws_call(waiter_name, waiter.wait, WaiterConfig=self.provider.waiter_config, **kwargs)


class KeyPairHandler(Ec2Handler):
    """
    aws_key_pair. The id is the key name.

    Without public_key, AWS generates the key and the private key material
    is returned once as the private_key_pem output.
    """

    type_name = "aws_key_pair"
    schema = ResourceSchema(
        immutable=frozenset({"key_name", "public_key", "key_type"}),
        computed=frozenset({"key_pair_id", "fingerprint", "private_key_pem"}),
        required=frozenset({"key_name"}),
        supports_lookup=True,
        sensitive=frozenset({"private_key_pem"}),
    )

    def create(self, arguments: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        key_name = arguments["key_name"]
        specs = tag_specifications("key-pair", arguments.get("tags"))
        outputs: Dict[str, Any] = {}

        if arguments.get("public_key"):
            response = aws_call(
                f"import key pair {key_name}", self.ec2.import_key_pair,
                KeyName=key_name,
                PublicKeyMaterial=str(arguments["public_key"]).encode("utf-8"),
                TagSpecifications=specs,
            )
        else:
            response = aws_call(
                f"create key pair {key_name}", self.ec2.create_key_pair,
                KeyName=key_name,
                KeyType=arguments.get("key_type", "rsa"),
                TagSpecifications=specs,
            )
            outputs["private_key_pem"] = response["KeyMaterial"]

        logger.info(f"Created key pair {key_name}")
        outputs.update({
            "key_pair_id": response.get("KeyPairId"),
            "fingerprint": response.get("KeyFingerprint"),
        })
        return key_name, outputs

    def read(self, resource_id: str) -> Dict[str, Any]:
        response = aws_call(f"describe key pair {resource_id}", self.ec2.describe_key_pairs,
                            KeyNames=[resource_id])
        pairs = response.get("KeyPairs", [])
        if not pairs:
            raise NotFoundError(f"Key pair {resource_id} not found")
        pair = pairs[0]
        return {
            "key_name": pair["KeyName"],
            "key_pair_id": pair.get("KeyPairId"),
            "fingerprint": pair.get("KeyFingerprint"),
            "tags": tag_dict(pair.get("Tags")),
        }

    def update(self, resource_id: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        if "tags" in diff:
            key_pair_id = self.read(resource_id)["key_pair_id"]
            self.sync_tags(key_pair_id, diff["tags"].before, diff["tags"].after)
        return self.read(resource_id)

    def delete(self, resource_id: str) -> None:
        aws_call(f"delete key pair {resource_id}", self.ec2.delete_key_pair, KeyName=resource_id)
        logger.info(f"Deleted key pair {resource_id}")

    def lookup(self, arguments: Dict[str, Any]) -> Optional[str]:
        try:
            self.read(arguments["key_name"])
        except NotFoundError:
            return None
        logger.warning(
            f"Key pair {arguments['key_name']} already exists; adopting it "
            "(generated private key material is not recoverable)"
        )
        return arguments["key_name"]


def canonical_rules(rules: Any) -> Any:
    """Normalize security group rule blocks into a sorted canonical list."""
    if not is_known(rules):
        return rules
    canonical = []
    for rule in rules or []:
        canonical.append({
            "from_port": int(rule.get("from_port", 0)),
            "to_port": int(rule.get("to_port", 0)),
            "protocol": str(rule.get("protocol", "tcp")),
            "cidr_blocks": sorted(rule.get("cidr_blocks", []) or []),
            "description": rule.get("description", "") or "",
        })
    return sorted(canonical, key=lambda r: json.dumps(r, sort_keys=True))


def rules_to_permissions(rules: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    permissions = []
    for rule in rules:
        permission: Dict[str, Any] = {
            "IpProtocol": rule["protocol"],
            "IpRanges": [
                {"CidrIp": cidr, **({"Description": rule["description"]} if rule["description"] else {})}
                for cidr in rule["cidr_blocks"]
            ],
        }
        if rule["protocol"] != "-1":
            permission["FromPort"] = rule["from_port"]
            permission["ToPort"] = rule["to_port"]
        permissions.append(permission)
    return permissions


def permissions_to_rules(permissions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rules = []
    for permission in permissions or []:
        ranges = permission.get("IpRanges", [])
        descriptions = {r.get("Description", "") for r in ranges}
        rules.append({
            "from_port": permission.get("FromPort", 0),
            "to_port": permission.get("ToPort", 0),
            "protocol": permission.get("IpProtocol", "-1"),
            "cidr_blocks": [r["CidrIp"] for r in ranges],
            "description": descriptions.pop() if len(descriptions) == 1 else "",
        })
    return canonical_rules(rules)


class SecurityGroupHandler(Ec2Handler):
    """aws_security_group with inline ingress/egress rule blocks."""

    type_name = "aws_security_group"
    schema = ResourceSchema(
        immutable=frozenset({"name", "description", "vpc_id"}),
        computed=frozenset({"owner_id"}),
        required=frozenset({"name"}),
        supports_lookup=True,
    )

    DEFAULT_DESCRIPTION = "Managed by Groundwork"

    @classmethod
    def normalize(cls, arguments: Dict[str, Any]) -> Dict[str, Any]:
        normalized = dict(arguments)
        normalized.setdefault("description", cls.DEFAULT_DESCRIPTION)
        for key in ("ingress", "egress"):
            if key in normalized:
                normalized[key] = canonical_rules(normalized[key])
        return normalized

    def create(self, arguments: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        arguments = self.normalize(arguments)
        kwargs: Dict[str, Any] = {
            "GroupName": arguments["name"],
            "Description": arguments["description"],
            "TagSpecifications": tag_specifications("security-group", arguments.get("tags")),
        }
        if arguments.get("vpc_id"):
            kwargs["VpcId"] = arguments["vpc_id"]

        response = aws_call(f"create security group {arguments['name']}",
                            self.ec2.create_security_group, **kwargs)
        group_id = response["GroupId"]
        logger.info(f"Created security group {arguments['name']} ({group_id})")

        self._replace_rules(group_id, "ingress", [], arguments.get("ingress", []))
        if "egress" in arguments:
            current = self.read(group_id).get("egress", [])
            self._replace_rules(group_id, "egress", current, arguments["egress"])

        return group_id, self.read(group_id)

    def _replace_rules(self, group_id: str, direction: str, before: List[Dict], after: List[Dict]):
        before_keys = {json.dumps(r, sort_keys=True) for r in before}
        after_keys = {json.dumps(r, sort_keys=True) for r in after}
        revoke = [r for r in before if json.dumps(r, sort_keys=True) not in after_keys]
        authorize = [r for r in after if json.dumps(r, sort_keys=True) not in before_keys]

        if direction == "ingress":
            revoke_call = self.ec2.revoke_security_group_ingress
            authorize_call = self.ec2.authorize_security_group_ingress
        else:
            revoke_call = self.ec2.revoke_security_group_egress
            authorize_call = self.ec2.authorize_security_group_egress

        if revoke:
            aws_call(f"revoke {direction} on {group_id}", revoke_call,
                     GroupId=group_id, IpPermissions=rules_to_permissions(revoke))
        if authorize:
            aws_call(f"authorize {direction} on {group_id}", authorize_call,
                     GroupId=group_id, IpPermissions=rules_to_permissions(authorize))

    def read(self, resource_id: str) -> Dict[str, Any]:
        response = aws_call(f"describe security group {resource_id}",
                            self.ec2.describe_security_groups, GroupIds=[resource_id])
        groups = response.get("SecurityGroups", [])
        if not groups:
            raise NotFoundError(f"Security group {resource_id} not found")
        group = groups[0]
        return {
            "name": group["GroupName"],
            "description": group.get("Description", ""),
            "vpc_id": group.get("VpcId"),
            "owner_id": group.get("OwnerId"),
            "ingress": permissions_to_rules(group.get("IpPermissions", [])),
            "egress": permissions_to_rules(group.get("IpPermissionsEgress", [])),
            "tags": tag_dict(group.get("Tags")),
        }

    def update(self, resource_id: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        for direction in ("ingress", "egress"):
            if direction in diff:
                self._replace_rules(
                    resource_id, direction,
                    canonical_rules(diff[direction].before or []),
                    canonical_rules(diff[direction].after or []),
                )
        if "tags" in diff:
            self.sync_tags(resource_id, diff["tags"].before, diff["tags"].after)
        return self.read(resource_id)

    def delete(self, resource_id: str) -> None:
        aws_call(f"delete security group {resource_id}", self.ec2.delete_security_group,
                 GroupId=resource_id)
        logger.info(f"Deleted security group {resource_id}")

    def lookup(self, arguments: Dict[str, Any]) -> Optional[str]:
        filters = [{"Name": "group-name", "Values": [arguments["name"]]}]
        if arguments.get("vpc_id"):
            filters.append({"Name": "vpc-id", "Values": [arguments["vpc_id"]]})
        response = aws_call(f"find security group {arguments['name']}",
                            self.ec2.describe_security_groups, Filters=filters)
        groups = response.get("SecurityGroups", [])
        if groups:
            logger.info(f"Adopting existing security group {groups[0]['GroupId']}")
            return groups[0]["GroupId"]
        return None


class IamHandler(ResourceHandler):
    @property
    def iam(self):
        return self.provider.client("iam")


def canonical_policy(policy: Any) -> Any:
    """Render a policy document (JSON string or map) as canonical JSON."""
    if not is_known(policy):
        return policy
    if isinstance(policy, str):
        try:
            policy = json.loads(policy)
        except json.JSONDecodeError:
            return policy
    return json.dumps(policy, sort_keys=True, separators=(",", ":"))


class IamRoleHandler(IamHandler):
    """aws_iam_role. The id is the role name."""

    type_name = "aws_iam_role"
    schema = ResourceSchema(
        immutable=frozenset({"name", "path"}),
        computed=frozenset({"arn", "unique_id"}),
        required=frozenset({"name", "assume_role_policy"}),
        supports_lookup=True,
    )

    @classmethod
    def normalize(cls, arguments: Dict[str, Any]) -> Dict[str, Any]:
        normalized = dict(arguments)
        if "assume_role_policy" in normalized:
            normalized["assume_role_policy"] = canonical_policy(normalized["assume_role_policy"])
        if is_known(normalized.get("managed_policy_arns")) and "managed_policy_arns" in normalized:
            normalized["managed_policy_arns"] = sorted(normalized["managed_policy_arns"] or [])
        return normalized

    def create(self, arguments: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        arguments = self.normalize(arguments)
        name = arguments["name"]
        kwargs: Dict[str, Any] = {
            "RoleName": name,
            "AssumeRolePolicyDocument": arguments["assume_role_policy"],
            "Path": arguments.get("path", "/"),
            "Description": arguments.get("description", ""),
        }
        if arguments.get("tags"):
            kwargs["Tags"] = tag_list(arguments["tags"])
        aws_call(f"create role {name}", self.iam.create_role, **kwargs)
        logger.info(f"Created IAM role {name}")

        for policy_arn in arguments.get("managed_policy_arns", []):
            aws_call(f"attach {policy_arn} to {name}", self.iam.attach_role_policy,
                     RoleName=name, PolicyArn=policy_arn)

        return name, self.read(name)

    def _attached_policies(self, name: str) -> List[str]:
        paginator = self.iam.get_paginator("list_attached_role_policies")

        def _collect(**kwargs) -> List[str]:
            return [
                policy["PolicyArn"]
                for page in paginator.paginate(**kwargs)
                for policy in page.get("AttachedPolicies", [])
            ]

        return sorted(aws_call(f"list policies of {name}", _collect, RoleName=name))

    def read(self, resource_id: str) -> Dict[str, Any]:
        role = aws_call(f"get role {resource_id}", self.iam.get_role, RoleName=resource_id)["Role"]
        return {
            "name": role["RoleName"],
            "path": role.get("Path", "/"),
            "arn": role["Arn"],
            "unique_id": role.get("RoleId"),
            "description": role.get("Description", ""),
            "assume_role_policy": canonical_policy(role.get("AssumeRolePolicyDocument", {})),
            "managed_policy_arns": self._attached_policies(resource_id),
            "tags": tag_dict(role.get("Tags")),
        }

    def update(self, resource_id: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        if "assume_role_policy" in diff:
            aws_call(f"update trust policy of {resource_id}", self.iam.update_assume_role_policy,
                     RoleName=resource_id, PolicyDocument=diff["assume_role_policy"].after)
        if "description" in diff:
            aws_call(f"update role {resource_id}", self.iam.update_role,
                     RoleName=resource_id, Description=diff["description"].after or "")
        if "managed_policy_arns" in diff:
            before = set(diff["managed_policy_arns"].before or [])
            after = set(diff["managed_policy_arns"].after or [])
            for arn in sorted(before - after):
                aws_call(f"detach {arn}", self.iam.detach_role_policy, RoleName=resource_id, PolicyArn=arn)
            for arn in sorted(after - before):
                aws_call(f"attach {arn}", self.iam.attach_role_policy, RoleName=resource_id, PolicyArn=arn)
        if "tags" in diff:
            before = diff["tags"].before or {}
            after = diff["tags"].after or {}
            removed = [k for k in before if k not in after]
            if removed:
                aws_call(f"untag role {resource_id}", self.iam.untag_role,
                         RoleName=resource_id, TagKeys=removed)
            if after:
                aws_call(f"tag role {resource_id}", self.iam.tag_role,
                         RoleName=resource_id, Tags=tag_list(after))
        return self.read(resource_id)

    def delete(self, resource_id: str) -> None:
        for arn in self._attached_policies(resource_id):
            aws_call(f"detach {arn}", self.iam.detach_role_policy, RoleName=resource_id, PolicyArn=arn)
        profiles = aws_call(f"list instance profiles of {resource_id}",
                            self.iam.list_instance_profiles_for_role, RoleName=resource_id)
        for profile in profiles.get("InstanceProfiles", []):
            aws_call(f"detach role from {profile['InstanceProfileName']}",
                     self.iam.remove_role_from_instance_profile,
                     InstanceProfileName=profile["InstanceProfileName"], RoleName=resource_id)
        aws_call(f"delete role {resource_id}", self.iam.delete_role, RoleName=resource_id)
        logger.info(f"Deleted IAM role {resource_id}")

    def lookup(self, arguments: Dict[str, Any]) -> Optional[str]:
        try:
            aws_call(f"get role {arguments['name']}", self.iam.get_role, RoleName=arguments["name"])
        except NotFoundError:
            return None
        logger.info(f"Adopting existing IAM role {arguments['name']}")
        return arguments["name"]


class InstanceProfileHandler(IamHandler):
    """aws_iam_instance_profile. The id is the profile name."""

    type_name = "aws_iam_instance_profile"
    schema = ResourceSchema(
        immutable=frozenset({"name", "path"}),
        computed=frozenset({"arn", "unique_id"}),
        required=frozenset({"name"}),
        supports_lookup=True,
    )

    def create(self, arguments: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        name = arguments["name"]
        aws_call(f"create instance profile {name}", self.iam.create_instance_profile,
                 InstanceProfileName=name, Path=arguments.get("path", "/"))
        if arguments.get("role"):
            aws_call(f"add role to {name}", self.iam.add_role_to_instance_profile,
                     InstanceProfileName=name, RoleName=arguments["role"])
        logger.info(f"Created instance profile {name}")
        return name, self.read(name)

    def read(self, resource_id: str) -> Dict[str, Any]:
        profile = aws_call(f"get instance profile {resource_id}", self.iam.get_instance_profile,
                           InstanceProfileName=resource_id)["InstanceProfile"]
        roles = profile.get("Roles", [])
        return {
            "name": profile["InstanceProfileName"],
            "path": profile.get("Path", "/"),
            "arn": profile["Arn"],
            "unique_id": profile.get("InstanceProfileId"),
            "role": roles[0]["RoleName"] if roles else None,
        }

    def update(self, resource_id: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        if "role" in diff:
            if diff["role"].before:
                aws_call(f"remove role from {resource_id}", self.iam.remove_role_from_instance_profile,
                         InstanceProfileName=resource_id, RoleName=diff["role"].before)
            if diff["role"].after:
                aws_call(f"add role to {resource_id}", self.iam.add_role_to_instance_profile,
                         InstanceProfileName=resource_id, RoleName=diff["role"].after)
        return self.read(resource_id)

    def delete(self, resource_id: str) -> None:
        role = self.read(resource_id).get("role")
        if role:
            aws_call(f"remove role from {resource_id}", self.iam.remove_role_from_instance_profile,
                     InstanceProfileName=resource_id, RoleName=role)
        aws_call(f"delete instance profile {resource_id}", self.iam.delete_instance_profile,
                 InstanceProfileName=resource_id)
        logger.info(f"Deleted instance profile {resource_id}")

    def lookup(self, arguments: Dict[str, Any]) -> Optional[str]:
        try:
            self.read(arguments["name"])
        except NotFoundError:
            return None
        return arguments["name"]


class InstanceHandler(Ec2Handler):
    """
    aws_instance. Changing instance_type stops and restarts the instance;
    security groups and tags change in place; everything else replaces it.
    """

    type_name = "aws_instance"
    schema = ResourceSchema(
        immutable=frozenset({
            "ami", "key_name", "subnet_id", "user_data", "iam_instance_profile",
            "associate_public_ip_address", "root_block_device",
        }),
        computed=frozenset({
            "arn", "public_ip", "private_ip", "public_dns", "instance_state", "availability_zone",
        }),
        required=frozenset({"ami", "instance_type"}),
        supports_lookup=True,
    )

    @classmethod
    def normalize(cls, arguments: Dict[str, Any]) -> Dict[str, Any]:
        normalized = dict(arguments)
        groups = normalized.get("vpc_security_group_ids")
        if groups is not None and is_known(groups):
            normalized["vpc_security_group_ids"] = sorted(groups)
        return normalized

    def create(self, arguments: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        arguments = self.normalize(arguments)
        kwargs: Dict[str, Any] = {
            "ImageId": arguments["ami"],
            "InstanceType": arguments["instance_type"],
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": tag_specifications("instance", arguments.get("tags")),
        }
        if arguments.get("key_name"):
            kwargs["KeyName"] = arguments["key_name"]
        if arguments.get("user_data"):
            kwargs["UserData"] = arguments["user_data"]
        if arguments.get("iam_instance_profile"):
            kwargs["IamInstanceProfile"] = {"Name": arguments["iam_instance_profile"]}

        groups = arguments.get("vpc_security_group_ids") or []
        if arguments.get("associate_public_ip_address") is not None:
            interface: Dict[str, Any] = {
                "DeviceIndex": 0,
                "AssociatePublicIpAddress": bool(arguments["associate_public_ip_address"]),
                "Groups": groups,
            }
            if arguments.get("subnet_id"):
                interface["SubnetId"] = arguments["subnet_id"]
            kwargs["NetworkInterfaces"] = [interface]
        else:
            if groups:
                kwargs["SecurityGroupIds"] = groups
            if arguments.get("subnet_id"):
                kwargs["SubnetId"] = arguments["subnet_id"]

        for device in arguments.get("root_block_device", []) or []:
            kwargs["BlockDeviceMappings"] = [{
                "DeviceName": device.get("device_name", "/dev/xvda"),
                "Ebs": {
                    "VolumeSize": int(device.get("volume_size", 8)),
                    "VolumeType": device.get("volume_type", "gp3"),
                    "Encrypted": bool(device.get("encrypted", True)),
                    "DeleteOnTermination": True,
                },
            }]

        response = aws_call("run instance", self.ec2.run_instances, **kwargs)
        instance_id = response["Instances"][0]["InstanceId"]
        logger.info(f"Launched instance {instance_id}, waiting for it to run")

        self.wait("instance_running", InstanceIds=[instance_id])
        return instance_id, self.read(instance_id)

    def _describe(self, resource_id: str) -> Dict[str, Any]:
        response = aws_call(f"describe instance {resource_id}", self.ec2.describe_instances,
                            InstanceIds=[resource_id])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                if instance.get("State", {}).get("Name") != "terminated":
                    return instance
        raise NotFoundError(f"Instance {resource_id} not found")

    def read(self, resource_id: str) -> Dict[str, Any]:
        instance = self._describe(resource_id)
        profile_arn = instance.get("IamInstanceProfile", {}).get("Arn", "")
        return {
            "ami": instance.get("ImageId"),
            "instance_type": instance.get("InstanceType"),
            "key_name": instance.get("KeyName"),
            "subnet_id": instance.get("SubnetId"),
            "vpc_security_group_ids": sorted(g["GroupId"] for g in instance.get("SecurityGroups", [])),
            "iam_instance_profile": profile_arn.rsplit("/", 1)[-1] if profile_arn else None,
            "tags": tag_dict(instance.get("Tags")),
            "public_ip": instance.get("PublicIpAddress"),
            "private_ip": instance.get("PrivateIpAddress"),
            "public_dns": instance.get("PublicDnsName"),
            "instance_state": instance.get("State", {}).get("Name"),
            "availability_zone": instance.get("Placement", {}).get("AvailabilityZone"),
        }

    def update(self, resource_id: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        if "instance_type" in diff:
            logger.info(f"Stopping {resource_id} to change instance type")
            aws_call(f"stop {resource_id}", self.ec2.stop_instances, InstanceIds=[resource_id])
            self.wait("instance_stopped", InstanceIds=[resource_id])
            aws_call(f"modify {resource_id}", self.ec2.modify_instance_attribute,
                     InstanceId=resource_id, InstanceType={"Value": diff["instance_type"].after})
            aws_call(f"start {resource_id}", self.ec2.start_instances, InstanceIds=[resource_id])
            self.wait("instance_running", InstanceIds=[resource_id])
        if "vpc_security_group_ids" in diff:
            aws_call(f"modify {resource_id}", self.ec2.modify_instance_attribute,
                     InstanceId=resource_id, Groups=list(diff["vpc_security_group_ids"].after or []))
        if "tags" in diff:
            self.sync_tags(resource_id, diff["tags"].before, diff["tags"].after)
        return self.read(resource_id)

    def delete(self, resource_id: str) -> None:
        aws_call(f"terminate {resource_id}", self.ec2.terminate_instances, InstanceIds=[resource_id])
        logger.info(f"Terminating instance {resource_id}")
        self.wait("instance_terminated", InstanceIds=[resource_id])

    def lookup(self, arguments: Dict[str, Any]) -> Optional[str]:
        name = (arguments.get("tags") or {}).get("Name")
        if not name:
            return None
        response = aws_call(f"find instance {name}", self.ec2.describe_instances, Filters=[
            {"Name": "tag:Name", "Values": [name]},
            {"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES},
        ])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                logger.info(f"Adopting existing instance {instance['InstanceId']} tagged {name}")
                return instance["InstanceId"]
        return None


AwsProvider.resource_types = {
    handler.type_name: handler
    for handler in (
        KeyPairHandler,
        SecurityGroupHandler,
        IamRoleHandler,
        InstanceProfileHandler,
        InstanceHandler,
    )
}
