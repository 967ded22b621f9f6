"""List diffs by longest common subsequence.

An edit script is a list of index-addressed operations applied one after
the other:

    {"op": "remove", "index": i, "value": v}   # value must match, checked on apply
    {"op": "insert", "index": i, "value": v}

Removals come first, highest index first, so each index refers to the
original list. Insertions follow in ascending order and address the final
list. ``[1, 2, 3] -> [1, 3, 4]`` gives remove@1 (2) then insert@2 (4).
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Dict, List, Sequence

from .errors import PatchError, PatchTargetMissing
from .model import values_equal

Equal = Callable[[Any, Any], bool]


def diff_lists(old: Sequence[Any], new: Sequence[Any], eq: Equal = values_equal) -> List[Dict[str, Any]]:
    n, m = len(old), len(new)
    # lcs[i][j] = LCS length of old[i:] and new[j:]
    lcs = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(n - 1, -1, -1):
        for j in range(m - 1, -1, -1):
            if eq(old[i], new[j]):
                lcs[i][j] = lcs[i + 1][j + 1] + 1
            else:
                lcs[i][j] = max(lcs[i + 1][j], lcs[i][j + 1])

    removed: List[int] = []
    inserted: List[int] = []
    i = j = 0
    while i < n and j < m:
        if eq(old[i], new[j]):
            i += 1
            j += 1
        elif lcs[i + 1][j] >= lcs[i][j + 1]:
            removed.append(i)
            i += 1
        else:
            inserted.append(j)
            j += 1
    removed.extend(range(i, n))
    inserted.extend(range(j, m))

    ops = [{"op": "remove", "index": k, "value": copy.deepcopy(old[k])} for k in reversed(removed)]
    ops += [{"op": "insert", "index": k, "value": copy.deepcopy(new[k])} for k in inserted]
    return ops


def apply_list_ops(
    items: Sequence[Any], ops: Sequence[Dict[str, Any]], eq: Equal = values_equal, **ctx
) -> List[Any]:
    """Apply an edit script to a copy of ``items``."""

    if not isinstance(ops, (list, tuple)):
        raise PatchError(f"An edit script is a list of operations, got {ops!r}", **ctx)
    out = list(items)
    for op in ops:
        if not isinstance(op, dict):
            raise PatchError(f"List operation must be an object, got {op!r}", **ctx)
        index = op.get("index")
        kind = op.get("op")
        if not isinstance(index, int) or isinstance(index, bool):
            raise PatchError(f"List operation without an index: {op!r}", **ctx)
        if kind == "remove":
            if not 0 <= index < len(out):
                raise PatchTargetMissing(
                    f"Cannot remove index {index} from a list of {len(out)}", **{**ctx, "index": index}
                )
            if not eq(out[index], op.get("value")):
                raise PatchTargetMissing(
                    f"Value at index {index} is not the one the patch removes", **{**ctx, "index": index}
                )
            del out[index]
        elif kind == "insert":
            if not 0 <= index <= len(out):
                raise PatchTargetMissing(
                    f"Cannot insert at index {index} into a list of {len(out)}", **{**ctx, "index": index}
                )
            out.insert(index, copy.deepcopy(op.get("value")))
        else:
            raise PatchError(f"Unknown list operation {kind!r}", **ctx)
    return out
