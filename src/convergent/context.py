"""Run-scoped state threaded through every task call."""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from convergent.models import RunOptions
from convergent.targets import Target

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything a run needs: target, provider handle, options, cancellation.

    ``cloud`` is opaque to the engine; tasks know what to do with it.

    A context can be reused for several runs. Warnings belong to a single
    run and are cleared when the next one starts. A cancel request does not
    expire: every later run on a cancelled context skips all of its tasks.
    """

    target: Target
    cloud: Any = None
    options: RunOptions = field(default_factory=RunOptions)
    _cancel_event: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _cancel_reason: str | None = field(default=None, init=False, repr=False)
    _warnings: dict[str, list[str]] = field(
        default_factory=lambda: defaultdict(list), init=False, repr=False
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def cancel(self, reason: str = "cancelled") -> None:
        """Stop starting new tasks. Running tasks are allowed to finish."""
        with self._lock:
            if self._cancel_reason is None:
                self._cancel_reason = reason
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def cancel_reason(self) -> str | None:
        with self._lock:
            return self._cancel_reason

    def begin_run(self) -> None:
        """Drop warnings left over from an earlier run."""
        with self._lock:
            self._warnings.clear()

    def warn(self, task_name: str, message: str) -> None:
        logger.warning("%s: %s", task_name, message)
        with self._lock:
            self._warnings[task_name].append(message)

    def warnings_for(self, task_name: str) -> list[str]:
        with self._lock:
            return list(self._warnings.get(task_name, ()))
