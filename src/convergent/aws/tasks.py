"""EC2 resource tasks: VPCs and security groups."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from convergent.aws.client import is_access_denied, tags_to_dict
from convergent.errors import ApplyError, InsufficientAccessError
from convergent.models import ChangeKind
from convergent.removal import Permission, parse_removal_rules
from convergent.task import Deletion, Task, computed, not_compared, replace_on_change

logger = logging.getLogger(__name__)


@contextmanager
def _access_checked(task_name: str) -> Iterator[None]:
    """Turn EC2 permission errors into InsufficientAccessError."""
    try:
        yield
    except ClientError as e:
        if is_access_denied(e):
            raise InsufficientAccessError(task_name, str(e)) from e
        raise


@dataclass(kw_only=True, eq=False)
class VPC(Task):
    """A VPC, found by ID when one is given and by its Name tag otherwise."""

    cidr: str | None = replace_on_change()
    enable_dns_support: bool | None = None
    enable_dns_hostnames: bool | None = None
    tags: dict[str, str] | None = None
    id: str | None = computed()

    @property
    def tag_name(self) -> str:
        return (self.tags or {}).get("Name", self.name)

    def find(self, ctx):
        cloud = ctx.cloud
        with _access_checked(self.name):
            vpc = cloud.find_vpc(vpc_id=self.id, name=self.tag_name)
            if vpc is None:
                return None
            vpc_id = vpc["VpcId"]
            return VPC(
                name=self.name,
                lifecycle=self.lifecycle,
                cidr=vpc["CidrBlock"],
                enable_dns_support=cloud.vpc_attribute(vpc_id, "enableDnsSupport"),
                enable_dns_hostnames=cloud.vpc_attribute(vpc_id, "enableDnsHostnames"),
                tags=self._live_tags(vpc),
                id=vpc_id,
            )

    def apply(self, ctx, actual, changes):
        cloud = ctx.cloud
        if changes.kind == ChangeKind.REPLACE:
            raise ApplyError(
                self.name,
                f"cannot change {', '.join(d.field for d in changes.deltas if d.replace)} "
                "of an existing VPC",
            )

        if changes.kind == ChangeKind.CREATE:
            if self.cidr is None:
                raise ApplyError(self.name, "cidr is required to create a VPC")
            self.id = cloud.create_vpc(self.cidr, self.tag_dict())
            logger.info("Created VPC %s (%s)", self.name, self.id)
            vpc_id = self.id
        else:
            vpc_id = actual.id

        for delta in changes.deltas:
            if delta.field == "enable_dns_support":
                cloud.set_vpc_attribute(vpc_id, "enableDnsSupport", self.enable_dns_support)
            elif delta.field == "enable_dns_hostnames":
                cloud.set_vpc_attribute(vpc_id, "enableDnsHostnames", self.enable_dns_hostnames)
            elif delta.field == "tags" and changes.kind == ChangeKind.UPDATE:
                cloud.update_tags(vpc_id, self.tag_dict(), actual.tags or {})

    def tag_dict(self) -> dict[str, str]:
        tags = dict(self.tags or {})
        tags.setdefault("Name", self.name)
        return tags

    def _live_tags(self, vpc: dict[str, Any]) -> dict[str, str]:
        tags = tags_to_dict(vpc.get("Tags"))
        if "Name" not in (self.tags or {}):
            # Name is implied by the task name unless set explicitly.
            tags.pop("Name", None)
        return tags


@dataclass(kw_only=True, eq=False)
class SecurityGroup(Task):
    """A security group, optionally inside a VPC task.

    ``removal_rules`` name ingress permissions that must not exist; they are
    pruned by the deletion pass.
    """

    description: str | None = replace_on_change()
    vpc: VPC | None = replace_on_change()
    tags: dict[str, str] | None = None
    removal_rules: list[str] | None = not_compared()
    id: str | None = computed()

    def dependencies(self) -> list[Task]:
        return [self.vpc] if self.vpc is not None else []

    def validate(self) -> None:
        parse_removal_rules(self.removal_rules or [])

    def find(self, ctx):
        vpc_id = None
        if self.vpc is not None:
            vpc_id = self.vpc.id
            if vpc_id is None:
                # VPC has not been created yet.
                return None

        with _access_checked(self.name):
            sg = ctx.cloud.find_security_group(self.name, vpc_id=vpc_id, group_id=self.id)
        if sg is None:
            return None

        vpc = None
        if sg.get("VpcId"):
            vpc_name = self.vpc.name if self.vpc is not None else sg["VpcId"]
            vpc = VPC(name=vpc_name, id=sg["VpcId"])

        return SecurityGroup(
            name=self.name,
            lifecycle=self.lifecycle,
            description=sg.get("Description"),
            vpc=vpc,
            tags=tags_to_dict(sg.get("Tags")),
            removal_rules=self.removal_rules,
            id=sg["GroupId"],
        )

    def apply(self, ctx, actual, changes):
        cloud = ctx.cloud
        if changes.kind == ChangeKind.UPDATE:
            if "tags" in changes.fields:
                cloud.update_tags(actual.id, dict(self.tags or {}), actual.tags or {})
            return

        if changes.kind == ChangeKind.REPLACE:
            logger.info("Replacing security group %s (%s)", self.name, actual.id)
            cloud.delete_security_group(actual.id)

        vpc_id = self.vpc.id if self.vpc is not None else None
        self.id = cloud.create_security_group(
            self.name,
            self.description or self.name,
            vpc_id,
            dict(self.tags or {}),
        )
        logger.info("Created security group %s (%s)", self.name, self.id)

    def find_deletions(self, ctx) -> list[Deletion]:
        rules = parse_removal_rules(self.removal_rules or [])
        if not rules or self.id is None:
            return []

        with _access_checked(self.name):
            sg = ctx.cloud.find_security_group(group_id=self.id)
        if sg is None:
            return []

        deletions: list[Deletion] = []
        for permission in sg.get("IpPermissions", []):
            if any(rule.matches(Permission.from_boto(permission)) for rule in rules):
                deletions.append(SecurityGroupRuleDeletion(self, permission))
        return deletions


class SecurityGroupRuleDeletion(Deletion):
    """An ingress permission matched by one of a group's removal rules."""

    def __init__(self, group: SecurityGroup, permission: dict[str, Any]):
        self.group = group
        self.permission = permission

    @property
    def task_name(self) -> str:
        p = Permission.from_boto(self.permission)
        return f"{self.group.name}/ingress/{p.protocol}/{p.from_port}-{p.to_port}"

    @property
    def description(self) -> str:
        p = Permission.from_boto(self.permission)
        return (
            f"ingress {p.protocol} {p.from_port}-{p.to_port} "
            f"on security group {self.group.name} ({self.group.id})"
        )

    def delete(self, ctx) -> None:
        ctx.cloud.revoke_ingress(self.group.id, self.permission)
