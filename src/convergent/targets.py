"""Execution targets: where a computed change ends up."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from convergent.models import ChangeDescriptor

if TYPE_CHECKING:
    from convergent.context import RunContext
    from convergent.task import Deletion, Task

logger = logging.getLogger(__name__)


class Target(ABC):
    """Sink that realizes or records change descriptors."""

    @abstractmethod
    def render(
        self,
        ctx: RunContext,
        desired: Task,
        actual: Task | None,
        changes: ChangeDescriptor,
    ) -> None:
        """Realize or record the change for one task."""

    @abstractmethod
    def delete(self, ctx: RunContext, deletion: Deletion) -> None:
        """Realize or record one deletion."""

    def reset(self) -> None:
        """Forget anything accumulated by a previous run."""


class APITarget(Target):
    """Applies changes against the live provider."""

    def render(self, ctx, desired, actual, changes):
        if not changes.has_changes:
            return
        logger.info("%s %s %s", changes.kind, changes.task_kind, changes.task_name)
        desired.apply(ctx, actual, changes)

    def delete(self, ctx, deletion):
        logger.info("Deleting %s", deletion.description)
        deletion.delete(ctx)


class DryRunTarget(Target):
    """Records changes instead of applying them.

    Used for plan output and to assert that a converged run is a no-op.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._changes: list[ChangeDescriptor] = []
        self._deletions: list[Deletion] = []

    def render(self, ctx, desired, actual, changes):
        if not changes.has_changes:
            return
        logger.debug("Would %s %s %s", changes.kind, changes.task_kind, changes.task_name)
        with self._lock:
            self._changes.append(changes)

    def delete(self, ctx, deletion):
        logger.debug("Would delete %s", deletion.description)
        with self._lock:
            self._deletions.append(deletion)

    def reset(self) -> None:
        with self._lock:
            self._changes.clear()
            self._deletions.clear()

    def changes(self) -> list[ChangeDescriptor]:
        with self._lock:
            return list(self._changes)

    def deletions(self) -> list[Deletion]:
        with self._lock:
            return list(self._deletions)

    def has_changes(self) -> bool:
        with self._lock:
            return bool(self._changes or self._deletions)
