"""Resource task and deletion interfaces.

A task is a keyword-only dataclass describing the desired state of one
resource. Fields left as ``None`` are unset and never produce a diff. Field
policies are carried in dataclass metadata:

* ``computed()`` marks a provider-assigned value (an ID). It is never diffed
  and is written at most once, by the task's own execution.
* ``replace_on_change()`` marks a field that cannot be changed in place.
* ``not_compared()`` marks configuration that is not part of live state.

Tasks reference one another by holding the other task object and listing it
in ``dependencies()``.
"""

from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from convergent.changes import COMPARE, COMPUTED, REPLACE, compute_changes
from convergent.errors import (
    ApplyError,
    ConvergentError,
    DiscoveryError,
    InsufficientAccessError,
    LifecycleViolation,
)
from convergent.models import ChangeDescriptor, ChangeKind, Lifecycle

if TYPE_CHECKING:
    from convergent.context import RunContext

logger = logging.getLogger(__name__)


def computed(**kwargs: Any) -> Any:
    """A provider-assigned field, populated only by executing the task."""
    return dataclasses.field(default=None, metadata={COMPUTED: True}, **kwargs)


def replace_on_change(**kwargs: Any) -> Any:
    """A field whose change requires destroying and recreating the resource."""
    return dataclasses.field(default=None, metadata={REPLACE: True}, **kwargs)


def not_compared(**kwargs: Any) -> Any:
    """Task configuration that is never compared against live state."""
    if "default_factory" not in kwargs:
        kwargs.setdefault("default", None)
    return dataclasses.field(metadata={COMPARE: False}, **kwargs)


@dataclass(kw_only=True, eq=False)
class Task(ABC):
    """Desired state of a single resource."""

    name: str
    lifecycle: Lifecycle = not_compared(default=Lifecycle.SYNC)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def dependencies(self) -> list[Task]:
        """Tasks that must complete before this one."""
        return []

    def reference_key(self) -> Any:
        """Value used when another task's field refers to this one."""
        return getattr(self, "id", None) or self.name

    def validate(self) -> None:
        """Reject malformed configuration before anything runs."""

    @abstractmethod
    def find(self, ctx: RunContext) -> Task | None:
        """Return the live state as an instance of the same kind, or None."""

    @abstractmethod
    def apply(self, ctx: RunContext, actual: Task | None, changes: ChangeDescriptor) -> None:
        """Realize ``changes`` against the provider."""

    def find_deletions(self, ctx: RunContext) -> list[Deletion]:
        """Live objects owned by this task that should be pruned."""
        return []

    def run(self, ctx: RunContext) -> ChangeDescriptor:
        """Find, diff, check lifecycle and dispatch to the run's target."""
        try:
            actual = self.find(ctx)
        except (InsufficientAccessError, DiscoveryError):
            raise
        except Exception as e:
            raise DiscoveryError(self.name, e) from e

        change = compute_changes(self, actual)
        logger.debug("%s %s: %s %s", self.kind, self.name, change.kind, change.fields)

        if actual is None and self.lifecycle in (
            Lifecycle.EXISTS_AND_VALIDATES,
            Lifecycle.EXISTS_AND_WARN_IF_CHANGES,
        ):
            raise LifecycleViolation(
                self.name, f"{self.kind} does not exist and lifecycle is {self.lifecycle}"
            )

        if change.has_changes and self.lifecycle == Lifecycle.EXISTS_AND_VALIDATES:
            raise LifecycleViolation(
                self.name,
                f"{self.kind} differs from desired state in {', '.join(change.fields)}",
            )

        if change.has_changes and self.lifecycle == Lifecycle.EXISTS_AND_WARN_IF_CHANGES:
            for delta in change.deltas:
                ctx.warn(
                    self.name,
                    f"{delta.field} is {delta.actual!r}, desired {delta.expected!r}; not changing",
                )
            change = ChangeDescriptor.no_change(self.name, self.kind)

        try:
            ctx.target.render(ctx, self, actual, change)
        except ConvergentError:
            raise
        except Exception as e:
            raise ApplyError(self.name, str(e)) from e

        if actual is not None and change.kind in (ChangeKind.NO_CHANGE, ChangeKind.UPDATE):
            self.adopt_computed(actual)
        return change

    def adopt_computed(self, actual: Task) -> None:
        """Copy provider-assigned values from the live object if still unset."""
        for f in dataclasses.fields(self):
            if f.metadata.get(COMPUTED) and getattr(self, f.name) is None:
                setattr(self, f.name, getattr(actual, f.name))


class Deletion(ABC):
    """A live object scheduled for removal during a garbage-collection pass."""

    @property
    @abstractmethod
    def task_name(self) -> str:
        """Unique name of this deletion within a pass."""

    @property
    def description(self) -> str:
        return self.task_name

    def dependencies(self) -> list[Deletion]:
        """Deletions this one depends on in creation order.

        They are removed after this one.
        """
        return []

    @abstractmethod
    def delete(self, ctx: RunContext) -> None:
        """Remove the object from the provider."""
