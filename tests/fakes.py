"""In-memory provider and task used to drive the engine without AWS."""

import itertools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from convergent.errors import InsufficientAccessError
from convergent.models import ChangeKind
from convergent.task import Deletion, Task, computed, not_compared, replace_on_change


class FakeCloud:
    """Stores resources by task name and records every call made against it."""

    def __init__(self):
        self.resources: dict[str, dict] = {}
        self.events: list[tuple[str, str]] = []
        self.fail_find: set[str] = set()
        self.fail_apply: set[str] = set()
        self.denied: set[str] = set()
        self.active = 0
        self.max_active = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def record(self, event: str, name: str) -> None:
        with self._lock:
            self.events.append((event, name))

    def calls(self, event: str) -> list[str]:
        with self._lock:
            return [name for e, name in self.events if e == event]

    def index(self, event: str, name: str) -> int:
        with self._lock:
            return self.events.index((event, name))

    def enter(self) -> None:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def leave(self) -> None:
        with self._lock:
            self.active -= 1

    def create(self, name: str, **fields) -> str:
        resource_id = f"res-{next(self._ids)}"
        with self._lock:
            self.resources[name] = {"id": resource_id, **fields}
        return resource_id

    def update(self, name: str, **fields) -> None:
        with self._lock:
            self.resources[name].update(fields)


@dataclass(kw_only=True, eq=False)
class Thing(Task):
    """A resource with one mutable field, one replace-only field and a parent."""

    size: int | None = None
    zone: str | None = replace_on_change()
    parent: "Thing | None" = None
    after: list[Task] = not_compared(default_factory=list)
    delay: float = not_compared(default=0.0)
    on_apply: Callable | None = not_compared()
    id: str | None = computed()

    def dependencies(self) -> list[Task]:
        deps = list(self.after)
        if self.parent is not None:
            deps.append(self.parent)
        return deps

    def find(self, ctx):
        cloud: FakeCloud = ctx.cloud
        cloud.record("find", self.name)
        if self.name in cloud.denied:
            raise InsufficientAccessError(self.name, "not authorized")
        if self.name in cloud.fail_find:
            raise RuntimeError("provider unavailable")
        stored = cloud.resources.get(self.name)
        if stored is None:
            return None
        parent = None
        if stored.get("parent_id"):
            parent = Thing(name=stored["parent_name"], id=stored["parent_id"])
        return Thing(
            name=self.name,
            size=stored.get("size"),
            zone=stored.get("zone"),
            parent=parent,
            id=stored["id"],
        )

    def apply(self, ctx, actual, changes):
        cloud: FakeCloud = ctx.cloud
        cloud.enter()
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.on_apply is not None:
                self.on_apply(ctx)
            if self.name in cloud.fail_apply:
                raise RuntimeError("quota exceeded")

            if changes.kind == ChangeKind.UPDATE:
                cloud.update(self.name, size=self.size)
            else:
                parent_id = None
                if self.parent is not None:
                    if self.parent.id is None:
                        raise AssertionError(f"{self.parent.name} has no id yet")
                    parent_id = self.parent.id
                self.id = cloud.create(
                    self.name,
                    size=self.size,
                    zone=self.zone,
                    parent_id=parent_id,
                    parent_name=self.parent.name if self.parent else None,
                )
            cloud.record("applied", self.name)
        finally:
            cloud.leave()


@dataclass
class FakeDeletion(Deletion):
    """A deletion that records itself on the fake cloud."""

    name: str
    after: list["FakeDeletion"] = field(default_factory=list)
    fail: bool = False

    @property
    def task_name(self) -> str:
        return self.name

    def dependencies(self):
        return list(self.after)

    def delete(self, ctx) -> None:
        if self.fail:
            raise RuntimeError("still in use")
        ctx.cloud.record("deleted", self.name)


def by_name(*tasks) -> dict:
    return {t.name: t for t in tasks}
