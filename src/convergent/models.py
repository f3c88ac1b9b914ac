"""Core data models for task-graph reconciliation."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from convergent.errors import DiscoveryError, RunFailedError


class Lifecycle(StrEnum):
    """How far the engine may go in reconciling a task."""

    SYNC = "Sync"
    EXISTS_AND_VALIDATES = "ExistsAndValidates"
    EXISTS_AND_WARN_IF_CHANGES = "ExistsAndWarnIfChanges"
    WARN_IF_INSUFFICIENT_ACCESS = "WarnIfInsufficientAccess"


class TaskState(StrEnum):
    """Scheduler state of a single task."""

    PENDING = "Pending"
    READY = "Ready"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.SKIPPED)


class ChangeKind(StrEnum):
    """Classification of the diff between desired and actual state."""

    NO_CHANGE = "NoChange"
    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"


@dataclass(frozen=True)
class FieldDelta:
    """A single field whose desired value differs from the live one."""

    field: str
    expected: Any
    actual: Any
    replace: bool = False


@dataclass(frozen=True)
class ChangeDescriptor:
    """The outcome of diffing one task against the provider."""

    task_name: str
    task_kind: str
    kind: ChangeKind
    deltas: tuple[FieldDelta, ...] = ()

    @property
    def has_changes(self) -> bool:
        return self.kind != ChangeKind.NO_CHANGE

    @property
    def fields(self) -> list[str]:
        return [d.field for d in self.deltas]

    @classmethod
    def no_change(cls, task_name: str, task_kind: str) -> "ChangeDescriptor":
        return cls(task_name=task_name, task_kind=task_kind, kind=ChangeKind.NO_CHANGE)


@dataclass(frozen=True)
class RunOptions:
    """Knobs for a single run of the scheduler."""

    max_workers: int = 10
    tolerate_skipped_dependencies: bool = False
    lifecycle_violations_warn_only: bool = False
    taint_on_warning: bool = False
    timeout: float | None = None
    poll_interval: float = 0.1

    def __post_init__(self):
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")


@dataclass
class TaskOutcome:
    """Final state of one task after a run."""

    name: str
    state: TaskState = TaskState.PENDING
    change: ChangeDescriptor | None = None
    error: Exception | None = None
    cause: str | None = None
    warnings: list[str] = field(default_factory=list)
    tainted: bool = False


@dataclass(frozen=True)
class TaskFailure:
    """A task that failed, with the error that failed it."""

    task_name: str
    error: Exception
    dependencies: tuple[str, ...] = ()

    @property
    def retryable(self) -> bool:
        return isinstance(self.error, DiscoveryError)

    def __str__(self) -> str:
        return f"{self.task_name}: {self.error}"


@dataclass(frozen=True)
class TaskSkip:
    """A task that never ran, and why."""

    task_name: str
    cause: str
    chain: tuple[str, ...] = ()

    def __str__(self) -> str:
        if len(self.chain) > 1:
            return f"{self.task_name}: {self.cause} ({' -> '.join(self.chain)})"
        return f"{self.task_name}: {self.cause}"


@dataclass(frozen=True)
class RunResult:
    """Aggregated result of a run: every outcome, every failure, every skip."""

    outcomes: dict[str, TaskOutcome]
    failures: list[TaskFailure]
    skipped: list[TaskSkip]
    cancelled: bool = False
    cancel_reason: str | None = None

    @property
    def success(self) -> bool:
        return not self.failures and not self.skipped and not self.cancelled

    @property
    def changes(self) -> list[ChangeDescriptor]:
        return [
            o.change for o in self.outcomes.values() if o.change is not None and o.change.has_changes
        ]

    @property
    def warnings(self) -> dict[str, list[str]]:
        return {name: list(o.warnings) for name, o in self.outcomes.items() if o.warnings}

    def state_of(self, name: str) -> TaskState:
        return self.outcomes[name].state

    def raise_for_status(self) -> None:
        """Raise RunFailedError if any task failed or was skipped."""
        if not self.success:
            raise RunFailedError(self.failures, self.skipped, cancel_reason=self.cancel_reason)
