"""libentity.types

The closed set of property type tags.

Both the resource reader/writer (bytes <-> records) and the variant converter
(records <-> intermediate values) dispatch on these names. Anything not listed
here is rejected with UnsupportedType rather than passed through, since an
unknown payload could not be written back byte for byte.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from .errors import UnsupportedType

# tag -> struct format (little endian) for fixed-size scalars
SCALAR_FORMATS: Dict[str, str] = {
    "bool": "<?",
    "int8": "<b",
    "uint8": "<B",
    "int16": "<h",
    "uint16": "<H",
    "int32": "<i",
    "uint32": "<I",
    "int64": "<q",
    "uint64": "<Q",
    "float32": "<f",
    "float64": "<d",
}

FLOAT_TYPES = frozenset(("float32", "float64"))

# Fixed-layout structs ("ZDatatypes"). Every field is float32 unless noted.
STRUCT_FIELDS: Dict[str, Tuple[str, ...]] = {
    "SColorRGB": ("r", "g", "b"),
    "SColorRGBA": ("r", "g", "b", "a"),
    "SVector2": ("x", "y"),
    "SVector3": ("x", "y", "z"),
    "SVector4": ("x", "y", "z", "w"),
}

MATRIX_AXES: Tuple[str, ...] = ("XAxis", "YAxis", "ZAxis", "Trans")

GUID_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("_a", "I"),
    ("_b", "H"),
    ("_c", "H"),
    ("_d", "B"),
    ("_e", "B"),
    ("_f", "B"),
    ("_g", "B"),
    ("_h", "B"),
    ("_i", "B"),
    ("_j", "B"),
    ("_k", "B"),
)

OTHER_TYPES = frozenset(
    (
        "ZString",
        "ZGuid",
        "ZRepositoryID",
        "SMatrix43",
        "SEntityTemplateReference",
        "ZRuntimeResourceID",
        "ZVariant",
        "TPair<ZString,ZVariant>",
    )
)

VOID = "void"
ENTITY_REF = "SEntityTemplateReference"
RESOURCE_ID = "ZRuntimeResourceID"
PAIR = "TPair<ZString,ZVariant>"

# m_IDLow / m_IDHigh value meaning "no resource"
NULL_RESOURCE_INDEX = 0xFFFFFFFF


def array_member(type_name: str) -> Optional[str]:
    """``"TArray<int32>"`` -> ``"int32"``; None for non-array tags."""
    if type_name.startswith("TArray<") and type_name.endswith(">"):
        return type_name[len("TArray<"):-1]
    return None


def is_known(type_name: str) -> bool:
    member = array_member(type_name)
    if member is not None:
        return member != VOID and is_known(member)
    return (
        type_name in SCALAR_FORMATS
        or type_name in STRUCT_FIELDS
        or type_name in OTHER_TYPES
    )


def require_known(type_name: str, **ctx) -> str:
    if not isinstance(type_name, str) or not is_known(type_name):
        raise UnsupportedType(f"Unsupported property type {type_name!r}", **ctx)
    return type_name
