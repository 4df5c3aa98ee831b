"""JSON merge patches (RFC 7386).

Objects are merged member by member, a ``None`` member deletes the key and
anything that is not an object (lists included) replaces the target whole.
"""

import copy
from typing import Any


def create_merge_patch(original: Any, modified: Any) -> Any:
    """Return the merge patch turning ``original`` into ``modified``.

    The patch is an empty dict when both documents are equal.
    """
    if not isinstance(original, dict) or not isinstance(modified, dict):
        return copy.deepcopy(modified)

    patch = {}
    for key in original:
        if key not in modified:
            patch[key] = None
    for key, value in modified.items():
        if key not in original:
            patch[key] = copy.deepcopy(value)
            continue
        current = original[key]
        if isinstance(current, dict) and isinstance(value, dict):
            nested = create_merge_patch(current, value)
            if nested:
                patch[key] = nested
        elif current != value:
            patch[key] = copy.deepcopy(value)
    return patch


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """Apply a merge patch, returning a new document."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result
