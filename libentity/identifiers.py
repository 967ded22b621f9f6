"""libentity.identifiers

Entity id helpers.

Ids in a graph are strings. Ids that came from a resource are always the
64-bit value as 16 lowercase hex digits. Entities without an explicit id in
the resource get a derived one:

    md5("<blueprint id>:<index path>").digest()[:8]   as 16 hex digits

where the index path is the chain of sub-entity indices from the top-most
local ancestor down to the entity, joined with "/" (e.g. "0/4/7"). The
derivation only depends on the blueprint id and the hierarchy, so it is
stable across decodes of the same resource.
"""

from __future__ import annotations

import hashlib
import re
from typing import Callable, List, Optional

from .errors import DecodeError

_HEX_ID = re.compile(r"[0-9a-fA-F]{1,16}")
# decimal spelling of a numeric property id, no sign, no leading zeros
_NUMERIC_NAME = re.compile(r"0|[1-9][0-9]{0,9}")

U64_MASK = 0xFFFFFFFFFFFFFFFF
U32_MAX = 0xFFFFFFFF


def format_id(value: int) -> str:
    return f"{value & U64_MASK:016x}"


def is_hex_id(entity_id: str) -> bool:
    return bool(_HEX_ID.fullmatch(entity_id))


def normalize_id(entity_id: str) -> str:
    """``"ABC"`` -> ``"0000000000000abc"``; non-hex ids are returned as-is."""
    if is_hex_id(entity_id):
        return format_id(int(entity_id, 16))
    return entity_id


def id_to_u64(entity_id: str) -> int:
    """Numeric id to store in a resource.

    Hex ids map to their value. Any other string (hand-written ids such as
    ``"door_frame"``) maps to the first 8 bytes of its md5, so it survives an
    encode but comes back as hex on the next decode.
    """
    if is_hex_id(entity_id):
        return int(entity_id, 16)
    return int.from_bytes(hashlib.md5(entity_id.encode("utf-8")).digest()[:8], "big")


def derive_entity_id(blueprint_id: str, index_path: List[int]) -> str:
    key = f"{blueprint_id}:{'/'.join(str(i) for i in index_path)}"
    return hashlib.md5(key.encode("utf-8")).hexdigest()[:16]


def index_path(index: int, parent_of: Callable[[int], Optional[int]], count: int) -> List[int]:
    """Indices from the top-most local ancestor down to ``index``.

    ``parent_of`` returns the local parent index or None. Walking more than
    ``count`` steps means the parent chain loops.
    """

    path = [index]
    node = parent_of(index)
    while node is not None:
        if len(path) > count:
            raise DecodeError("Parent chain contains a cycle", index=index, field="parent")
        path.append(node)
        node = parent_of(node)
    path.reverse()
    return path


def is_numeric_property_name(name: str) -> bool:
    """True for property names that stand for a numeric (u32) property id.

    Only the canonical decimal spelling counts, so ``"007"`` or ``"²"`` stay
    string names and survive a round trip as written.
    """
    return bool(_NUMERIC_NAME.fullmatch(name)) and int(name) <= U32_MAX
