"""Exception hierarchy for the reconciliation engine."""


class ConvergentError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ConvergentError):
    """The desired state is malformed; raised before any task executes."""


class CycleError(ConfigurationError):
    """The task graph contains a dependency cycle."""

    def __init__(self, path: list[str]):
        self.path = list(path)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.path)}")


class SelfReferenceError(ConfigurationError):
    """A task lists itself as one of its own dependencies."""

    def __init__(self, task_name: str):
        self.task_name = task_name
        super().__init__(f"Task {task_name!r} depends on itself")


class RemovalRuleSyntaxError(ConfigurationError, ValueError):
    """A removal rule string does not match the rule grammar."""

    def __init__(self, rule: str, reason: str = "expected port=<int> or port=<int>:<int>"):
        self.rule = rule
        super().__init__(f"Cannot parse removal rule {rule!r}: {reason}")


class DiscoveryError(ConvergentError):
    """Looking up the live state of a task failed. Safe to retry the run."""

    def __init__(self, task_name: str, cause: Exception):
        self.task_name = task_name
        self.cause = cause
        super().__init__(f"Error finding current state of {task_name!r}: {cause}")


class InsufficientAccessError(ConvergentError):
    """The caller is not permitted to inspect a resource."""

    def __init__(self, task_name: str, message: str):
        self.task_name = task_name
        super().__init__(f"Insufficient access to inspect {task_name!r}: {message}")


class ApplyError(ConvergentError):
    """Realizing a change against the provider failed."""

    def __init__(self, task_name: str, message: str):
        self.task_name = task_name
        super().__init__(f"Error applying {task_name!r}: {message}")


class LifecycleViolation(ApplyError):
    """A task's lifecycle forbids the change the diff calls for."""


class RunFailedError(ConvergentError):
    """A run finished with failed or skipped tasks."""

    def __init__(self, failures, skipped, cancel_reason: str | None = None):
        self.failures = list(failures)
        self.skipped = list(skipped)
        self.cancel_reason = cancel_reason
        lines = [f"{len(self.failures)} task(s) failed, {len(self.skipped)} skipped"]
        if cancel_reason:
            lines.append(f"run cancelled: {cancel_reason}")
        lines.extend(f"  failed: {f}" for f in self.failures)
        lines.extend(f"  skipped: {s}" for s in self.skipped)
        super().__init__("\n".join(lines))


class ChangesDetectedError(ConvergentError):
    """A run that was expected to be a no-op reported changes."""

    def __init__(self, changes):
        self.changes = list(changes)
        names = ", ".join(f"{c.task_name} ({c.kind})" for c in self.changes)
        super().__init__(f"Expected no changes, found {len(self.changes)}: {names}")
