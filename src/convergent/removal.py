"""Removal rules: small textual predicates for pruning live firewall rules.

Grammar, one rule per string::

    port=<int>          same as port=<int>:<int>
    port=<int>:<int>

Negative ports are valid (EC2 uses -1 for "all").
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from convergent.errors import RemovalRuleSyntaxError

_PORT_RULE = re.compile(r"port=(-?[0-9]+)(?::(-?[0-9]+))?")


@dataclass(frozen=True)
class Permission:
    """The parts of a firewall permission a removal rule can look at.

    Ports are None when the provider omits them, which is not the same as 0.
    """

    from_port: int | None = None
    to_port: int | None = None
    protocol: str | None = None

    @classmethod
    def from_boto(cls, permission: Mapping[str, Any]) -> "Permission":
        """Build from an EC2 ``IpPermissions`` entry."""
        return cls(
            from_port=permission.get("FromPort"),
            to_port=permission.get("ToPort"),
            protocol=permission.get("IpProtocol"),
        )


class RemovalRule(ABC):
    """A predicate selecting permissions that must not exist."""

    @abstractmethod
    def matches(self, permission: Permission) -> bool:
        """True if ``permission`` should be removed."""


@dataclass(frozen=True)
class PortRemovalRule(RemovalRule):
    """Matches permissions spanning exactly ``from_port``..``to_port``."""

    from_port: int
    to_port: int

    def matches(self, permission: Permission) -> bool:
        if permission.from_port is None or permission.to_port is None:
            return False
        return permission.from_port == self.from_port and permission.to_port == self.to_port

    def __str__(self) -> str:
        return f"port={self.from_port}:{self.to_port}"


def parse_removal_rule(rule: str) -> RemovalRule:
    """Parse one rule string, raising RemovalRuleSyntaxError if it is malformed."""
    match = _PORT_RULE.fullmatch(rule.strip())
    if match is None:
        raise RemovalRuleSyntaxError(rule)
    from_port = int(match.group(1))
    to_port = int(match.group(2)) if match.group(2) is not None else from_port
    return PortRemovalRule(from_port=from_port, to_port=to_port)


def parse_removal_rules(rules: list[str]) -> list[RemovalRule]:
    return [parse_removal_rule(r) for r in rules]
