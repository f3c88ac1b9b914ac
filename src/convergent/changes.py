"""Field-by-field diff between a desired task and its live counterpart."""

import dataclasses
from typing import Any

from convergent.models import ChangeDescriptor, ChangeKind, FieldDelta

COMPUTED = "computed"
REPLACE = "replace"
COMPARE = "compare"

_IDENTITY_FIELDS = frozenset({"name"})


def diffable_fields(task: Any) -> list[dataclasses.Field]:
    """Fields of ``task`` that take part in a diff, in declaration order."""
    return [
        f
        for f in dataclasses.fields(task)
        if f.name not in _IDENTITY_FIELDS
        and not f.metadata.get(COMPUTED, False)
        and f.metadata.get(COMPARE, True)
    ]


def _comparable(value: Any) -> Any:
    """Reduce task references to their reference key, recursively."""
    if hasattr(value, "reference_key") and dataclasses.is_dataclass(value):
        return value.reference_key()
    if isinstance(value, (list, tuple)):
        return [_comparable(v) for v in value]
    if isinstance(value, dict):
        return {k: _comparable(v) for k, v in value.items()}
    return value


def values_equal(expected: Any, actual: Any) -> bool:
    return _comparable(expected) == _comparable(actual)


def compute_changes(desired: Any, actual: Any | None) -> ChangeDescriptor:
    """Diff ``desired`` against ``actual``.

    Unset (None) desired fields never produce a delta. A missing ``actual``
    is a create carrying every set field.
    """
    kind_name = type(desired).__name__
    deltas: list[FieldDelta] = []

    for f in diffable_fields(desired):
        expected = getattr(desired, f.name)
        if expected is None:
            continue
        current = getattr(actual, f.name) if actual is not None else None
        if actual is not None and values_equal(expected, current):
            continue
        deltas.append(
            FieldDelta(
                field=f.name,
                expected=_comparable(expected),
                actual=_comparable(current),
                replace=bool(f.metadata.get(REPLACE, False)),
            )
        )

    if actual is None:
        kind = ChangeKind.CREATE
    elif not deltas:
        kind = ChangeKind.NO_CHANGE
    elif any(d.replace for d in deltas):
        kind = ChangeKind.REPLACE
    else:
        kind = ChangeKind.UPDATE

    return ChangeDescriptor(
        task_name=desired.name,
        task_kind=kind_name,
        kind=kind,
        deltas=tuple(deltas),
    )
