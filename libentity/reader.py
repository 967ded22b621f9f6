"""libentity.reader

Resource container reader: bytes -> (BehaviorRecord, PropertyRecord).

Layout:

  b"QNTR"           magic
  int32             container version (1)
  chunks until EOF:
    int32 type      4-char ASCII tag ("TBLU" = behavior record, "TEMP" = property record)
    int32 length    includes the 4-byte type, not the length field itself
    body            length - 4 bytes

Both chunks are required exactly once. Inside a body every integer is little
endian, strings are uint32 length + UTF-8 and lists are uint32 count + items.
A body must be consumed exactly; trailing bytes mean the reader and the
writer disagree about the layout, which is reported rather than ignored.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Callable, List, Tuple, TypeVar

from .errors import DecodeError
from .model import ResourceReference
from .records import (
    BehaviorRecord,
    BlueprintSubEntity,
    EntityReference,
    ExposedEntityRecord,
    ExternalPinConnectionRecord,
    FactorySubEntity,
    PinConnectionRecord,
    PlatformPropertyValue,
    PropertyAliasRecord,
    PropertyOverrideRecord,
    PropertyRecord,
    PropertyValue,
    ResourceChunk,
    ResourceHeader,
    Variant,
)
from .types import (
    ENTITY_REF,
    GUID_FIELDS,
    MATRIX_AXES,
    PAIR,
    RESOURCE_ID,
    SCALAR_FORMATS,
    STRUCT_FIELDS,
    VOID,
    array_member,
    require_known,
)

_log = logging.getLogger(__name__)

MAGIC = b"QNTR"
CONTAINER_VERSION = 1
BEHAVIOR_TAG = "TBLU"
PROPERTY_TAG = "TEMP"

# property id encodings
PROPERTY_ID_NUMERIC = 0
PROPERTY_ID_NAME = 1

T = TypeVar("T")


@dataclass
class _Bin:
    data: bytes
    ofs: int = 0

    def tell(self) -> int:
        return self.ofs

    def remaining(self) -> int:
        return len(self.data) - self.ofs

    def read(self, n: int) -> bytes:
        b = self.data[self.ofs : self.ofs + n]
        if len(b) != n:
            raise DecodeError(f"Unexpected EOF at {self.ofs}, need {n}")
        self.ofs += n
        return b

    def unpack(self, fmt: str):
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))[0]

    def s32(self) -> int:
        return self.unpack("<i")

    def u32(self) -> int:
        return self.unpack("<I")

    def u64(self) -> int:
        return self.unpack("<Q")

    def flag(self) -> bool:
        ofs = self.ofs
        raw = self.read(1)[0]
        if raw > 1:
            raise DecodeError(f"Invalid boolean byte {raw} at {ofs}")
        return bool(raw)

    def string(self) -> str:
        ofs = self.ofs
        raw = self.read(self.u32())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"Invalid UTF-8 string at {ofs}") from exc

    def many(self, item: Callable[[], T]) -> List[T]:
        count = self.u32()
        # every item takes at least one byte; catches garbage counts early
        if count > self.remaining():
            raise DecodeError(f"List count {count} at {self.ofs - 4} exceeds the remaining data")
        return [item() for _ in range(count)]


def _tag_from_int(i: int) -> str:
    # Chunk types are stored as int32 but are 4-byte ASCII tags.
    return struct.pack("<I", i & 0xFFFFFFFF).decode("ascii", errors="replace")


# -----------------------------
# container
# -----------------------------

def _parse_header(b: _Bin) -> ResourceHeader:
    start = b.tell()
    if b.read(4) != MAGIC:
        raise DecodeError("Not an entity resource (missing 'QNTR' magic)")
    version = b.s32()
    if version != CONTAINER_VERSION:
        raise DecodeError(f"Unsupported container version {version}")
    return ResourceHeader(version=version, raw=b.data[start:b.tell()])


def read_container(data: bytes) -> Tuple[ResourceHeader, List[ResourceChunk]]:
    b = _Bin(data)
    header = _parse_header(b)
    data_len = len(data)

    chunks: List[ResourceChunk] = []
    while b.tell() < data_len:
        if b.tell() + 8 > data_len:
            raise DecodeError(f"Truncated chunk header at offset {b.tell()}")

        chunk_ofs = b.tell()
        type_int = b.s32()
        length = b.s32()

        if length < 8:
            raise DecodeError(f"Bad section length {length} at offset {chunk_ofs}")

        body_len = length - 4
        if b.tell() + body_len > data_len:
            raise DecodeError(
                f"Section overruns file: type={_tag_from_int(type_int)} len={length} at {chunk_ofs}"
            )

        chunks.append(
            ResourceChunk(
                type_int=type_int,
                type_tag=_tag_from_int(type_int),
                length=length,
                body=b.read(body_len),
                offset=chunk_ofs,
            )
        )
    return header, chunks


# -----------------------------
# record bodies
# -----------------------------

def _entity_ref(b: _Bin) -> EntityReference:
    return EntityReference(
        entity_id=b.u64(),
        external_scene_index=b.s32(),
        entity_index=b.s32(),
        exposed_entity=b.string(),
    )


def _payload(b: _Bin, type_name: str):
    member = array_member(type_name)
    if member is not None:
        return b.many(lambda: _payload(b, member))
    if type_name == "bool":
        return b.flag()
    if type_name in SCALAR_FORMATS:
        return b.unpack(SCALAR_FORMATS[type_name])
    if type_name in ("ZString", "ZRepositoryID"):
        return b.string()
    if type_name == "ZGuid":
        return {name: b.unpack("<" + fmt) for name, fmt in GUID_FIELDS}
    if type_name in STRUCT_FIELDS:
        return {name: b.unpack("<f") for name in STRUCT_FIELDS[type_name]}
    if type_name == "SMatrix43":
        return {axis: {a: b.unpack("<f") for a in ("x", "y", "z")} for axis in MATRIX_AXES}
    if type_name == ENTITY_REF:
        return _entity_ref(b)
    if type_name == RESOURCE_ID:
        return {"m_IDLow": b.u32(), "m_IDHigh": b.u32()}
    if type_name == PAIR:
        return [b.string(), _variant(b)]
    if type_name == "ZVariant":
        return _variant(b)
    raise DecodeError(f"No reader for type {type_name!r}")


def _variant(b: _Bin) -> Variant:
    type_name = b.string()
    if type_name == VOID:
        return Variant.void()
    require_known(type_name, index=b.tell())
    return Variant(type_name, _payload(b, type_name))


def _property(b: _Bin) -> PropertyValue:
    kind = b.read(1)[0]
    if kind == PROPERTY_ID_NUMERIC:
        property_id = b.u32()
    elif kind == PROPERTY_ID_NAME:
        property_id = b.string()
    else:
        raise DecodeError(f"Invalid property id kind {kind} at {b.tell() - 1}")
    value = _variant(b)
    if value.is_void:
        raise DecodeError(f"Property {property_id!r} has no value")
    return PropertyValue(property_id, value)


def _dependency(b: _Bin) -> ResourceReference:
    return ResourceReference(b.string(), b.string())


def _pin(b: _Bin) -> PinConnectionRecord:
    return PinConnectionRecord(b.s32(), b.s32(), b.string(), b.string(), _variant(b))


def _external_pin(b: _Bin) -> ExternalPinConnectionRecord:
    return ExternalPinConnectionRecord(_entity_ref(b), _entity_ref(b), b.string(), b.string(), _variant(b))


def _blueprint_entity(b: _Bin) -> BlueprintSubEntity:
    parent = _entity_ref(b)
    type_index = b.s32()
    name = b.string()
    entity_id = b.u64() if b.flag() else None
    return BlueprintSubEntity(
        logical_parent=parent,
        entity_type_resource_index=type_index,
        entity_name=name,
        entity_id=entity_id,
        editor_only=b.flag(),
        property_aliases=b.many(lambda: PropertyAliasRecord(b.string(), b.s32(), b.string())),
        exposed_entities=b.many(
            lambda: ExposedEntityRecord(b.string(), b.flag(), b.many(lambda: _entity_ref(b)))
        ),
        exposed_interfaces=b.many(lambda: (b.string(), b.s32())),
        entity_subsets=b.many(lambda: (b.string(), b.many(b.s32))),
    )


def _factory_entity(b: _Bin) -> FactorySubEntity:
    return FactorySubEntity(
        logical_parent=_entity_ref(b),
        entity_type_resource_index=b.s32(),
        property_values=b.many(lambda: _property(b)),
        post_init_property_values=b.many(lambda: _property(b)),
        platform_specific_property_values=b.many(
            lambda: PlatformPropertyValue(b.string(), b.flag(), _property(b))
        ),
    )


def _behavior_record(body: bytes) -> BehaviorRecord:
    b = _Bin(body)
    record = BehaviorRecord(
        resource_id=b.string(),
        sub_type=b.s32(),
        root_entity_index=b.s32(),
        sub_entities=b.many(lambda: _blueprint_entity(b)),
        external_scene_type_indices_in_resource_header=b.many(b.s32),
        pin_connections=b.many(lambda: _pin(b)),
        input_pin_forwardings=b.many(lambda: _pin(b)),
        output_pin_forwardings=b.many(lambda: _pin(b)),
        override_deletes=b.many(lambda: _entity_ref(b)),
        pin_connection_overrides=b.many(lambda: _external_pin(b)),
        pin_connection_override_deletes=b.many(lambda: _external_pin(b)),
        dependencies=b.many(lambda: _dependency(b)),
    )
    if b.remaining():
        raise DecodeError(f"{b.remaining()} trailing bytes after {BEHAVIOR_TAG} record")
    return record


def _property_record(body: bytes) -> PropertyRecord:
    b = _Bin(body)
    record = PropertyRecord(
        resource_id=b.string(),
        sub_type=b.s32(),
        blueprint_index_in_resource_header=b.s32(),
        root_entity_index=b.s32(),
        sub_entities=b.many(lambda: _factory_entity(b)),
        property_overrides=b.many(lambda: PropertyOverrideRecord(_entity_ref(b), _property(b))),
        external_scene_type_indices_in_resource_header=b.many(b.s32),
        dependencies=b.many(lambda: _dependency(b)),
    )
    if b.remaining():
        raise DecodeError(f"{b.remaining()} trailing bytes after {PROPERTY_TAG} record")
    return record


def decode_structural(data: bytes) -> Tuple[BehaviorRecord, PropertyRecord]:
    _header, chunks = read_container(data)

    bodies = {}
    for ch in chunks:
        if ch.type_tag not in (BEHAVIOR_TAG, PROPERTY_TAG):
            raise DecodeError(f"Unknown chunk {ch.type_tag!r} at offset {ch.offset}")
        if ch.type_tag in bodies:
            raise DecodeError(f"Chunk {ch.type_tag!r} appears twice (offset {ch.offset})")
        bodies[ch.type_tag] = ch.body
    for tag in (BEHAVIOR_TAG, PROPERTY_TAG):
        if tag not in bodies:
            raise DecodeError(f"Missing {tag} chunk")

    behavior = _behavior_record(bodies[BEHAVIOR_TAG])
    prop = _property_record(bodies[PROPERTY_TAG])
    _log.debug("Read %d bytes: %d sub-entities", len(data), len(behavior.sub_entities))
    return behavior, prop


def read_resource(path: str) -> Tuple[BehaviorRecord, PropertyRecord]:
    with open(path, "rb") as f:
        data = f.read()
    return decode_structural(data)
