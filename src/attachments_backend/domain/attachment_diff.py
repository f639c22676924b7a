from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any


# Wire names of the only fields a partial update may change.
MUTABLE_FIELDS: frozenset[str] = frozenset({"parentId", "parentType", "parentSubtype"})

_MISSING = object()


def _same_value(existing: Any, proposed: Any) -> bool:
    # Strict: 1 and True, or 1 and 1.0, are different values on the wire.
    if existing is _MISSING:
        return False
    return type(existing) is type(proposed) and existing == proposed


def compute_diff(current: Mapping[str, Any], patch: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the fields of `patch` that are both mutable and actually changing.

    Keys keep the patch's order. Keys outside MUTABLE_FIELDS are dropped
    silently, as are keys whose value equals the current one. A key the
    current document does not carry at all always counts as a change.

    The result is a read-only mapping; an empty one means "nothing to write".
    """

    diff: dict[str, Any] = {}
    for key, value in patch.items():
        if key not in MUTABLE_FIELDS:
            continue
        if _same_value(current.get(key, _MISSING), value):
            continue
        diff[key] = value
    return MappingProxyType(diff)
