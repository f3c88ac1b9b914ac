"""Thin boto3 wrapper for the EC2 calls the AWS tasks need."""

from collections.abc import Mapping
from typing import Any

import boto3
from botocore.exceptions import ClientError

ACCESS_DENIED_CODES = {"UnauthorizedOperation", "AccessDenied", "AccessDeniedException"}
NOT_FOUND_CODES = {"InvalidVpcID.NotFound", "InvalidGroup.NotFound", "InvalidGroupId.NotFound"}

# Keys accepted back by RevokeSecurityGroupIngress.
_PERMISSION_KEYS = (
    "IpProtocol",
    "FromPort",
    "ToPort",
    "IpRanges",
    "Ipv6Ranges",
    "PrefixListIds",
    "UserIdGroupPairs",
)


def error_code(error: Exception) -> str | None:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


def is_access_denied(error: Exception) -> bool:
    return error_code(error) in ACCESS_DENIED_CODES


def tags_to_dict(tags: list[dict[str, str]] | None) -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in tags or []}


def dict_to_tags(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]


class EC2Client:
    """Wraps boto3 EC2 calls and returns plain response dicts."""

    def __init__(self, region: str | None = None):
        self._client = boto3.client("ec2", **({"region_name": region} if region else {}))

    def find_vpc(self, vpc_id: str | None = None, name: str | None = None) -> dict | None:
        """Look a VPC up by ID, or else by its Name tag."""
        if vpc_id:
            try:
                resp = self._client.describe_vpcs(VpcIds=[vpc_id])
            except ClientError as e:
                if error_code(e) in NOT_FOUND_CODES:
                    return None
                raise
            vpcs = resp["Vpcs"]
        else:
            paginator = self._client.get_paginator("describe_vpcs")
            vpcs = []
            for page in paginator.paginate(Filters=[{"Name": "tag:Name", "Values": [name]}]):
                vpcs.extend(page["Vpcs"])

        if len(vpcs) > 1:
            ids = ", ".join(v["VpcId"] for v in vpcs)
            raise ValueError(f"Found multiple VPCs matching {vpc_id or name!r}: {ids}")
        return vpcs[0] if vpcs else None

    def vpc_attribute(self, vpc_id: str, attribute: str) -> bool:
        """Read a boolean VPC attribute, e.g. ``enableDnsSupport``."""
        resp = self._client.describe_vpc_attribute(VpcId=vpc_id, Attribute=attribute)
        key = attribute[0].upper() + attribute[1:]
        return bool(resp[key]["Value"])

    def set_vpc_attribute(self, vpc_id: str, attribute: str, value: bool) -> None:
        key = attribute[0].upper() + attribute[1:]
        self._client.modify_vpc_attribute(VpcId=vpc_id, **{key: {"Value": value}})

    def create_vpc(self, cidr: str, tags: Mapping[str, str]) -> str:
        kwargs: dict[str, Any] = {"CidrBlock": cidr}
        if tags:
            kwargs["TagSpecifications"] = [{"ResourceType": "vpc", "Tags": dict_to_tags(tags)}]
        resp = self._client.create_vpc(**kwargs)
        return resp["Vpc"]["VpcId"]

    def find_security_group(
        self,
        name: str | None = None,
        vpc_id: str | None = None,
        group_id: str | None = None,
    ) -> dict | None:
        """Look a security group up by ID, or else by name within a VPC."""
        if group_id:
            try:
                resp = self._client.describe_security_groups(GroupIds=[group_id])
            except ClientError as e:
                if error_code(e) in NOT_FOUND_CODES:
                    return None
                raise
            groups = resp["SecurityGroups"]
        else:
            filters = [{"Name": "group-name", "Values": [name]}]
            if vpc_id:
                filters.append({"Name": "vpc-id", "Values": [vpc_id]})
            paginator = self._client.get_paginator("describe_security_groups")
            groups = []
            for page in paginator.paginate(Filters=filters):
                groups.extend(page["SecurityGroups"])

        if len(groups) > 1:
            ids = ", ".join(g["GroupId"] for g in groups)
            raise ValueError(f"Found multiple security groups matching {group_id or name!r}: {ids}")
        return groups[0] if groups else None

    def create_security_group(
        self,
        name: str,
        description: str,
        vpc_id: str | None,
        tags: Mapping[str, str],
    ) -> str:
        kwargs: dict[str, Any] = {"GroupName": name, "Description": description}
        if vpc_id:
            kwargs["VpcId"] = vpc_id
        if tags:
            kwargs["TagSpecifications"] = [
                {"ResourceType": "security-group", "Tags": dict_to_tags(tags)}
            ]
        resp = self._client.create_security_group(**kwargs)
        return resp["GroupId"]

    def delete_security_group(self, group_id: str) -> None:
        self._client.delete_security_group(GroupId=group_id)

    def revoke_ingress(self, group_id: str, permission: Mapping[str, Any]) -> None:
        cleaned = {k: permission[k] for k in _PERMISSION_KEYS if permission.get(k) not in (None, [])}
        self._client.revoke_security_group_ingress(GroupId=group_id, IpPermissions=[cleaned])

    def update_tags(
        self,
        resource_id: str,
        expected: Mapping[str, str],
        actual: Mapping[str, str],
    ) -> None:
        """Make the resource's tags equal ``expected``."""
        stale = [k for k in actual if k not in expected]
        changed = {k: v for k, v in expected.items() if actual.get(k) != v}
        if stale:
            self._client.delete_tags(Resources=[resource_id], Tags=[{"Key": k} for k in stale])
        if changed:
            self._client.create_tags(Resources=[resource_id], Tags=dict_to_tags(changed))
