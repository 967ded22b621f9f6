"""libentity.writer

Resource container writer: (BehaviorRecord, PropertyRecord) -> bytes.

The exact mirror of ``reader``: the header, then the TBLU chunk, then the
TEMP chunk. Nothing is padded or aligned, so equal records always produce
equal bytes.
"""

from __future__ import annotations

import struct
from typing import Any, Callable, Iterable, TypeVar

from .errors import EncodeError
from .records import (
    BehaviorRecord,
    BlueprintSubEntity,
    EntityReference,
    ExternalPinConnectionRecord,
    FactorySubEntity,
    PinConnectionRecord,
    PropertyRecord,
    PropertyValue,
    Variant,
)
from .reader import (
    BEHAVIOR_TAG,
    CONTAINER_VERSION,
    MAGIC,
    PROPERTY_ID_NAME,
    PROPERTY_ID_NUMERIC,
    PROPERTY_TAG,
)
from .types import (
    ENTITY_REF,
    GUID_FIELDS,
    MATRIX_AXES,
    PAIR,
    RESOURCE_ID,
    SCALAR_FORMATS,
    STRUCT_FIELDS,
    array_member,
    require_known,
)

T = TypeVar("T")


class _Out:
    def __init__(self) -> None:
        self.buf = bytearray()

    def pack(self, fmt: str, value: Any) -> None:
        try:
            self.buf += struct.pack(fmt, value)
        except (struct.error, OverflowError) as exc:
            raise EncodeError(f"Cannot pack {value!r} as {fmt}") from exc

    def s32(self, value: int) -> None:
        self.pack("<i", value)

    def u32(self, value: int) -> None:
        self.pack("<I", value)

    def u64(self, value: int) -> None:
        self.pack("<Q", value)

    def flag(self, value: bool) -> None:
        self.buf.append(1 if value else 0)

    def string(self, value: str) -> None:
        raw = value.encode("utf-8")
        self.u32(len(raw))
        self.buf += raw

    def many(self, items: Iterable[T], item: Callable[[T], None]) -> None:
        items = list(items)
        self.u32(len(items))
        for x in items:
            item(x)


def _entity_ref(o: _Out, ref: EntityReference) -> None:
    o.u64(ref.entity_id)
    o.s32(ref.external_scene_index)
    o.s32(ref.entity_index)
    o.string(ref.exposed_entity)


def _payload(o: _Out, type_name: str, value: Any) -> None:
    member = array_member(type_name)
    if member is not None:
        o.many(value, lambda v: _payload(o, member, v))
    elif type_name == "bool":
        o.flag(value)
    elif type_name in SCALAR_FORMATS:
        o.pack(SCALAR_FORMATS[type_name], value)
    elif type_name in ("ZString", "ZRepositoryID"):
        o.string(value)
    elif type_name == "ZGuid":
        for name, fmt in GUID_FIELDS:
            o.pack("<" + fmt, value[name])
    elif type_name in STRUCT_FIELDS:
        for name in STRUCT_FIELDS[type_name]:
            o.pack("<f", value[name])
    elif type_name == "SMatrix43":
        for axis in MATRIX_AXES:
            for a in ("x", "y", "z"):
                o.pack("<f", value[axis][a])
    elif type_name == ENTITY_REF:
        _entity_ref(o, value)
    elif type_name == RESOURCE_ID:
        o.u32(value["m_IDLow"])
        o.u32(value["m_IDHigh"])
    elif type_name == PAIR:
        key, inner = value
        o.string(key)
        _variant(o, inner)
    elif type_name == "ZVariant":
        _variant(o, value)
    else:
        raise EncodeError(f"No writer for type {type_name!r}")


def _variant(o: _Out, variant: Variant) -> None:
    o.string(variant.type)
    if not variant.is_void:
        require_known(variant.type)
        _payload(o, variant.type, variant.value)


def _property(o: _Out, prop: PropertyValue) -> None:
    if isinstance(prop.property_id, int):
        o.buf.append(PROPERTY_ID_NUMERIC)
        o.u32(prop.property_id)
    else:
        o.buf.append(PROPERTY_ID_NAME)
        o.string(prop.property_id)
    _variant(o, prop.value)


def _pin(o: _Out, pin: PinConnectionRecord) -> None:
    o.s32(pin.from_index)
    o.s32(pin.to_index)
    o.string(pin.from_pin_name)
    o.string(pin.to_pin_name)
    _variant(o, pin.constant_pin_value)


def _external_pin(o: _Out, pin: ExternalPinConnectionRecord) -> None:
    _entity_ref(o, pin.from_entity)
    _entity_ref(o, pin.to_entity)
    o.string(pin.from_pin_name)
    o.string(pin.to_pin_name)
    _variant(o, pin.constant_pin_value)


def _dependencies(o: _Out, deps) -> None:
    def one(dep):
        o.string(dep.resource)
        o.string(dep.flag)

    o.many(deps, one)


def _blueprint_entity(o: _Out, e: BlueprintSubEntity) -> None:
    _entity_ref(o, e.logical_parent)
    o.s32(e.entity_type_resource_index)
    o.string(e.entity_name)
    o.flag(e.entity_id is not None)
    if e.entity_id is not None:
        o.u64(e.entity_id)
    o.flag(e.editor_only)

    def alias(a):
        o.string(a.alias_name)
        o.s32(a.entity_index)
        o.string(a.property_name)

    def exposed(x):
        o.string(x.name)
        o.flag(x.is_array)
        o.many(x.targets, lambda r: _entity_ref(o, r))

    def interface(pair):
        o.string(pair[0])
        o.s32(pair[1])

    def subset(pair):
        o.string(pair[0])
        o.many(pair[1], o.s32)

    o.many(e.property_aliases, alias)
    o.many(e.exposed_entities, exposed)
    o.many(e.exposed_interfaces, interface)
    o.many(e.entity_subsets, subset)


def _factory_entity(o: _Out, e: FactorySubEntity) -> None:
    def platform(p):
        o.string(p.platform)
        o.flag(p.post_init)
        _property(o, p.property)

    _entity_ref(o, e.logical_parent)
    o.s32(e.entity_type_resource_index)
    o.many(e.property_values, lambda p: _property(o, p))
    o.many(e.post_init_property_values, lambda p: _property(o, p))
    o.many(e.platform_specific_property_values, platform)


def _behavior_body(r: BehaviorRecord) -> bytes:
    o = _Out()
    o.string(r.resource_id)
    o.s32(r.sub_type)
    o.s32(r.root_entity_index)
    o.many(r.sub_entities, lambda e: _blueprint_entity(o, e))
    o.many(r.external_scene_type_indices_in_resource_header, o.s32)
    o.many(r.pin_connections, lambda p: _pin(o, p))
    o.many(r.input_pin_forwardings, lambda p: _pin(o, p))
    o.many(r.output_pin_forwardings, lambda p: _pin(o, p))
    o.many(r.override_deletes, lambda ref: _entity_ref(o, ref))
    o.many(r.pin_connection_overrides, lambda p: _external_pin(o, p))
    o.many(r.pin_connection_override_deletes, lambda p: _external_pin(o, p))
    _dependencies(o, r.dependencies)
    return bytes(o.buf)


def _property_body(r: PropertyRecord) -> bytes:
    def override(ov):
        _entity_ref(o, ov.property_owner)
        _property(o, ov.property_value)

    o = _Out()
    o.string(r.resource_id)
    o.s32(r.sub_type)
    o.s32(r.blueprint_index_in_resource_header)
    o.s32(r.root_entity_index)
    o.many(r.sub_entities, lambda e: _factory_entity(o, e))
    o.many(r.property_overrides, override)
    o.many(r.external_scene_type_indices_in_resource_header, o.s32)
    _dependencies(o, r.dependencies)
    return bytes(o.buf)


def _chunk(tag: str, body: bytes) -> bytes:
    # int32 type, int32 length (type + body), body
    type_int = struct.unpack("<i", tag.encode("ascii"))[0]
    return struct.pack("<ii", type_int, len(body) + 4) + body


def encode_structural(behavior: BehaviorRecord, prop: PropertyRecord) -> bytes:
    out = bytearray(MAGIC)
    out += struct.pack("<i", CONTAINER_VERSION)
    out += _chunk(BEHAVIOR_TAG, _behavior_body(behavior))
    out += _chunk(PROPERTY_TAG, _property_body(prop))
    return bytes(out)


def write_resource(behavior: BehaviorRecord, prop: PropertyRecord, out_path: str) -> None:
    with open(out_path, "wb") as f:
        f.write(encode_structural(behavior, prop))
