"""Load a JSON task manifest into AWS tasks.

Example::

    {
      "vpcs": [{"name": "main", "cidr": "10.0.0.0/16", "tags": {"Name": "main"}}],
      "security_groups": [
        {"name": "nodes", "description": "Nodes", "vpc": "main", "removal_rules": ["port=22"]}
      ]
    }

Live objects are found by name: a VPC by its ``Name`` tag, a security group
by its group name. Provider ids are assigned during a run and cannot be set
here.
"""

import json
from pathlib import Path
from typing import Any

from convergent.aws.tasks import VPC, SecurityGroup
from convergent.errors import ConfigurationError
from convergent.models import Lifecycle
from convergent.task import Task

_VPC_KEYS = {"name", "lifecycle", "cidr", "enable_dns_support", "enable_dns_hostnames", "tags"}
_SG_KEYS = {"name", "lifecycle", "description", "vpc", "tags", "removal_rules"}


def _lifecycle(value: str | None, where: str) -> Lifecycle:
    if value is None:
        return Lifecycle.SYNC
    try:
        return Lifecycle(value)
    except ValueError:
        choices = ", ".join(lc.value for lc in Lifecycle)
        raise ConfigurationError(f"{where}: unknown lifecycle {value!r} (one of {choices})") from None


def _check_entry(entry: Any, allowed: set[str], where: str) -> None:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"{where}: expected an object, got {type(entry).__name__}")
    if "name" not in entry:
        raise ConfigurationError(f"{where}: missing 'name'")
    unknown = set(entry) - allowed
    if unknown:
        raise ConfigurationError(f"{where}: unknown field(s) {', '.join(sorted(unknown))}")


def build_tasks(data: dict[str, Any]) -> dict[str, Task]:
    """Build tasks from an already-parsed manifest."""
    tasks: dict[str, Task] = {}
    vpcs: dict[str, VPC] = {}

    def add(task: Task, where: str) -> None:
        if task.name in tasks:
            raise ConfigurationError(f"{where}: duplicate task name {task.name!r}")
        tasks[task.name] = task

    for i, entry in enumerate(data.get("vpcs", [])):
        where = f"vpcs[{i}]"
        _check_entry(entry, _VPC_KEYS, where)
        fields = {k: v for k, v in entry.items() if k != "lifecycle"}
        vpc = VPC(lifecycle=_lifecycle(entry.get("lifecycle"), where), **fields)
        vpcs[vpc.name] = vpc
        add(vpc, where)

    for i, entry in enumerate(data.get("security_groups", [])):
        where = f"security_groups[{i}]"
        _check_entry(entry, _SG_KEYS, where)
        fields = {k: v for k, v in entry.items() if k not in ("lifecycle", "vpc")}
        vpc = None
        if entry.get("vpc") is not None:
            vpc = vpcs.get(entry["vpc"])
            if vpc is None:
                raise ConfigurationError(f"{where}: unknown vpc {entry['vpc']!r}")
        sg = SecurityGroup(lifecycle=_lifecycle(entry.get("lifecycle"), where), vpc=vpc, **fields)
        add(sg, where)

    return tasks


def load_manifest(path: str | Path) -> dict[str, Task]:
    """Read a manifest file and build its tasks."""
    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid manifest {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid manifest {path}: expected a JSON object")
    return build_tasks(data)
