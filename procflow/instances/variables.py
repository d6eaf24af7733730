"""Variable bag merge."""

from __future__ import annotations

import copy
from typing import Any, List, Mapping, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from ..errors import InvalidVariables
from .models import Variables

_variables_adapter = TypeAdapter(Variables)


def validate_variables(update: Optional[Mapping[str, Any]]) -> dict:
    """Check that ``update`` only holds JSON values and return a plain copy.

    Raises:
        InvalidVariables: naming every key whose value is not JSON.
    """
    if not update:
        return {}
    try:
        return _variables_adapter.validate_python(dict(update))
    except ValidationError as exc:
        keys: List[str] = []
        for error in exc.errors():
            key = str(error["loc"][0]) if error["loc"] else "<root>"
            if key not in keys:
                keys.append(key)
        raise InvalidVariables(keys) from exc


def _differs(old: Any, new: Any) -> bool:
    # True == 1 and 0.0 == 0 in Python but not in the stored JSON
    if type(old) is not type(new):
        return True
    if isinstance(new, dict):
        return old.keys() != new.keys() or any(_differs(old[k], new[k]) for k in new)
    if isinstance(new, list):
        return len(old) != len(new) or any(_differs(o, n) for o, n in zip(old, new))
    return old != new


def merge_variables(
    current: Mapping[str, Any], update: Optional[Mapping[str, Any]]
) -> Tuple[dict, List[str]]:
    """Shallow-merge ``update`` onto ``current``.

    Keys in ``update`` overwrite existing values, other keys are untouched and
    nested values are replaced wholesale. Neither input is modified. A value
    counts as changed when it differs in type as well as in equality, so
    ``True`` replaces ``1``.

    Returns:
        The merged mapping and the keys whose value actually changed, in the
        order they appear in ``update``.

    Raises:
        InvalidVariables: ``update`` holds a value that is not JSON.
    """
    validated = validate_variables(update)
    merged = copy.deepcopy(dict(current))
    changed: List[str] = []
    for key, value in validated.items():
        if key not in merged or _differs(merged[key], value):
            changed.append(key)
        merged[key] = copy.deepcopy(value)
    return merged, changed
