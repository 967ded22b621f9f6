"""libentity.variants

Property payloads <-> intermediate values.

The reader hands over payloads in the shape the resource stores them (see
``records.Variant``). This module turns them into the editable forms used in
documents and back:

  ZGuid                       "01234567-89ab-cdef-0123-456789abcdef"
  ZRepositoryID               the stored string, which must parse as a UUID
  SColorRGB / SColorRGBA      "#rrggbb" / "#rrggbbaa" when every channel is an
                              exact k/255 single, otherwise {"r", "g", "b"[, "a"]}
  SMatrix43                   {"XAxis": {...}, ..., "Trans": {...}}, or
                              {"rotation", "position"[, "scale"]} with euler_matrices
  SEntityTemplateReference    a reference (see document.ref_to_json)
  ZRuntimeResourceID          null or a resource reference into the factory
                              dependency table
  TPair<ZString,ZVariant>     {"key": str, "value": {"type", "value"}}
  ZVariant                    {"type", "value"}; type "void" has value null

Everything else passes through unchanged. Indices are resolved through the
context objects, never through module state.
"""

from __future__ import annotations

import math
import re
import struct
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Mapping, Optional, Sequence

from .document import ref_from_json, ref_to_json, resource_ref_from_json, resource_ref_to_json
from .errors import DecodeError, EncodeError, MalformedReference, UnresolvedReference
from .identifiers import format_id, is_hex_id
from .model import EntityGraph, Ref, ResourceReference, SimpleProperty, values_equal
from .options import DEFAULT_OPTIONS, ConvertOptions
from .records import EXTERNAL_INDEX, NULL_ENTITY_ID, NULL_INDEX, EntityReference, Variant
from .types import (
    ENTITY_REF,
    FLOAT_TYPES,
    GUID_FIELDS,
    MATRIX_AXES,
    NULL_RESOURCE_INDEX,
    PAIR,
    RESOURCE_ID,
    SCALAR_FORMATS,
    STRUCT_FIELDS,
    VOID,
    array_member,
    require_known,
)

if TYPE_CHECKING:
    from .encoder import DependencyTable

_HEX_COLOR = re.compile(r"^#([0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
_AXIS = ("x", "y", "z")


def _f32(value: float) -> float:
    return struct.unpack("<f", struct.pack("<f", value))[0]


def is_repository_id(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


# -----------------------------
# contexts
# -----------------------------

@dataclass
class DecodeContext:
    ids: Sequence[str]
    scenes: Sequence[str]
    factory_deps: Sequence[ResourceReference]
    options: ConvertOptions = DEFAULT_OPTIONS

    def ref(self, reference: EntityReference, **ctx) -> Optional[Ref]:
        exposed = reference.exposed_entity or None
        if reference.entity_index == NULL_INDEX:
            if (
                reference.entity_id != NULL_ENTITY_ID
                or reference.external_scene_index != -1
                or reference.exposed_entity
            ):
                raise DecodeError("Null reference carries data", **ctx)
            return None
        if reference.entity_index == EXTERNAL_INDEX:
            scene = reference.external_scene_index
            if not 0 <= scene < len(self.scenes):
                raise MalformedReference(
                    f"External scene index {scene} out of range ({len(self.scenes)} scenes)",
                    **{**ctx, "index": scene},
                )
            return Ref(format_id(reference.entity_id), self.scenes[scene], exposed)
        if 0 <= reference.entity_index < len(self.ids):
            if reference.entity_id != NULL_ENTITY_ID or reference.external_scene_index != -1:
                raise DecodeError("Local reference carries an external id", **ctx)
            return Ref(self.ids[reference.entity_index], None, exposed)
        raise MalformedReference(
            f"Entity index {reference.entity_index} out of range ({len(self.ids)} entities)",
            **{**ctx, "index": reference.entity_index},
        )

    def local_id(self, entity_index: int, **ctx) -> str:
        if not 0 <= entity_index < len(self.ids):
            raise MalformedReference(
                f"Entity index {entity_index} out of range ({len(self.ids)} entities)",
                **{**ctx, "index": entity_index},
            )
        return self.ids[entity_index]


@dataclass
class EncodeContext:
    index_of: Mapping[str, int]
    scene_index: Mapping[str, int]
    factory_deps: "DependencyTable"

    def entity_reference(self, ref: Optional[Ref], **ctx) -> EntityReference:
        if ref is None:
            return EntityReference()
        exposed = ref.exposed_entity or ""
        if ref.is_local:
            return EntityReference.local(self.local_index(ref.entity_id, **ctx), exposed)
        scene = self.scene_index.get(ref.external_scene)
        if scene is None:
            raise UnresolvedReference(
                f"External scene {ref.external_scene!r} is not listed in externalScenes", **ctx
            )
        if not is_hex_id(ref.entity_id):
            raise EncodeError(f"External entity id {ref.entity_id!r} is not a hex id", **ctx)
        return EntityReference(
            entity_id=int(ref.entity_id, 16),
            external_scene_index=scene,
            entity_index=EXTERNAL_INDEX,
            exposed_entity=exposed,
        )

    def local_index(self, target_id: str, **ctx) -> int:
        try:
            return self.index_of[target_id]
        except KeyError as exc:
            raise UnresolvedReference(f"Unknown entity {target_id!r}", **ctx) from exc


# -----------------------------
# payload -> intermediate
# -----------------------------

def format_guid(payload: Mapping[str, int]) -> str:
    a, b, c = payload["_a"], payload["_b"], payload["_c"]
    tail = [payload[name] for name, _ in GUID_FIELDS[3:]]
    return (
        f"{a:08x}-{b:04x}-{c:04x}-{tail[0]:02x}{tail[1]:02x}-"
        + "".join(f"{x:02x}" for x in tail[2:])
    )


def _color_to_value(payload: Mapping[str, float], fields: Sequence[str]) -> Any:
    channels = []
    for name in fields:
        value = payload[name]
        if not math.isfinite(value):
            return {f: payload[f] for f in fields}
        k = round(value * 255)
        # -0.0 has no hex spelling
        if not 0 <= k <= 255 or not values_equal(_f32(k / 255), value):
            return {f: payload[f] for f in fields}
        channels.append(k)
    return "#" + "".join(f"{k:02x}" for k in channels)


def _matrix_to_euler(payload: Mapping[str, Mapping[str, float]], keep_scale: bool) -> Dict[str, Any]:
    xa, ya, za, trans = (payload[axis] for axis in MATRIX_AXES)
    sx = math.sqrt(xa["x"] ** 2 + xa["y"] ** 2 + xa["z"] ** 2)
    sy = math.sqrt(ya["x"] ** 2 + ya["y"] ** 2 + ya["z"] ** 2)
    sz = math.sqrt(za["x"] ** 2 + za["y"] ** 2 + za["z"] ** 2)

    det = (
        xa["x"] * (ya["y"] * za["z"] - ya["z"] * za["y"])
        - ya["x"] * (xa["y"] * za["z"] - xa["z"] * za["y"])
        + za["x"] * (xa["y"] * ya["z"] - xa["z"] * ya["y"])
    )
    if det < 0:
        sx = -sx

    # rotation part, columns are the normalized axes
    dx, dy, dz = sx or 1.0, sy or 1.0, sz or 1.0
    m11, m21, m31 = xa["x"] / dx, xa["y"] / dx, xa["z"] / dx
    m12, m22, m32 = ya["x"] / dy, ya["y"] / dy, ya["z"] / dy
    m13, m23, m33 = za["x"] / dz, za["y"] / dz, za["z"] / dz

    ry = math.asin(max(-1.0, min(1.0, m13)))
    if abs(m13) < 0.9999999:
        rx = math.atan2(-m23, m33)
        rz = math.atan2(-m12, m11)
    else:
        rx = math.atan2(m32, m22)
        rz = 0.0

    out: Dict[str, Any] = {
        "rotation": {"x": math.degrees(rx), "y": math.degrees(ry), "z": math.degrees(rz)},
        "position": {a: trans[a] for a in _AXIS},
    }
    scale = {"x": sx, "y": sy, "z": sz}
    if keep_scale or any(abs(v - 1.0) > 1e-6 for v in scale.values()):
        out["scale"] = scale
    return out


def _payload_to_value(type_name: str, payload: Any, ctx: DecodeContext, where: Dict[str, Any]) -> Any:
    member = array_member(type_name)
    if member is not None:
        return [_payload_to_value(member, item, ctx, where) for item in payload]
    if type_name in SCALAR_FORMATS or type_name == "ZString":
        return payload
    if type_name == "ZRepositoryID":
        # kept in its stored spelling so it is written back unchanged
        if not is_repository_id(payload):
            raise DecodeError(f"Invalid ZRepositoryID {payload!r}", **where)
        return payload
    if type_name == "ZGuid":
        return format_guid(payload)
    if type_name in ("SColorRGB", "SColorRGBA"):
        return _color_to_value(payload, STRUCT_FIELDS[type_name])
    if type_name in STRUCT_FIELDS:
        return {f: payload[f] for f in STRUCT_FIELDS[type_name]}
    if type_name == "SMatrix43":
        if ctx.options.euler_matrices:
            return _matrix_to_euler(payload, ctx.options.keep_scale)
        return {axis: {a: payload[axis][a] for a in _AXIS} for axis in MATRIX_AXES}
    if type_name == ENTITY_REF:
        return ref_to_json(ctx.ref(payload, **where))
    if type_name == RESOURCE_ID:
        low, high = payload["m_IDLow"], payload["m_IDHigh"]
        if low == NULL_RESOURCE_INDEX and high == NULL_RESOURCE_INDEX:
            return None
        if high != 0 or not 0 <= low < len(ctx.factory_deps):
            raise MalformedReference(
                f"Runtime resource id ({low}, {high}) is not a dependency index",
                **{**where, "index": low},
            )
        return resource_ref_to_json(ctx.factory_deps[low])
    if type_name == PAIR:
        key, inner = payload
        return {"key": key, "value": _variant_to_json(inner, ctx, where)}
    if type_name == "ZVariant":
        return _variant_to_json(payload, ctx, where)
    require_known(type_name, **where)
    raise DecodeError(f"No conversion for type {type_name!r}", **where)


def _variant_to_json(variant: Variant, ctx: DecodeContext, where: Dict[str, Any]) -> Dict[str, Any]:
    if variant.is_void:
        return {"type": VOID, "value": None}
    require_known(variant.type, **where)
    return {"type": variant.type, "value": _payload_to_value(variant.type, variant.value, ctx, where)}


def decode_variant(variant: Variant, ctx: DecodeContext, **where) -> SimpleProperty:
    require_known(variant.type, **where)
    return SimpleProperty(variant.type, _payload_to_value(variant.type, variant.value, ctx, where))


def decode_optional_variant(variant: Variant, ctx: DecodeContext, **where) -> Optional[SimpleProperty]:
    """Pin constants: ``void`` means "no value"."""
    if variant.is_void:
        return None
    return decode_variant(variant, ctx, **where)


# -----------------------------
# intermediate -> payload
# -----------------------------

def _bad(type_name: str, value: Any, where: Dict[str, Any]) -> EncodeError:
    return EncodeError(f"Invalid {type_name} value {value!r}", **where)


def _number(type_name: str, value: Any, where: Dict[str, Any]) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _bad(type_name, value, where)
    try:
        return float(value)
    except OverflowError as exc:
        raise _bad(type_name, value, where) from exc


def _vector(type_name: str, value: Any, fields: Sequence[str], where: Dict[str, Any]) -> Dict[str, float]:
    if not isinstance(value, dict) or set(value) != set(fields):
        raise _bad(type_name, value, where)
    return {f: _number(type_name, value[f], where) for f in fields}


def _euler_to_matrix(value: Mapping[str, Any], where: Dict[str, Any]) -> Dict[str, Dict[str, float]]:
    rotation = _vector("SMatrix43 rotation", value.get("rotation"), _AXIS, where)
    position = _vector("SMatrix43 position", value.get("position"), _AXIS, where)
    scale = _vector("SMatrix43 scale", value.get("scale", {"x": 1.0, "y": 1.0, "z": 1.0}), _AXIS, where)

    x, y, z = (math.radians(rotation[a]) for a in _AXIS)
    a, b = math.cos(x), math.sin(x)
    c, d = math.cos(y), math.sin(y)
    e, f = math.cos(z), math.sin(z)
    ae, af, be, bf = a * e, a * f, b * e, b * f

    m11, m12, m13 = c * e, -c * f, d
    m21, m22, m23 = af + be * d, ae - bf * d, -b * c
    m31, m32, m33 = bf - ae * d, be + af * d, a * c

    sx, sy, sz = scale["x"], scale["y"], scale["z"]
    return {
        "XAxis": {"x": m11 * sx, "y": m21 * sx, "z": m31 * sx},
        "YAxis": {"x": m12 * sy, "y": m22 * sy, "z": m32 * sy},
        "ZAxis": {"x": m13 * sz, "y": m23 * sz, "z": m33 * sz},
        "Trans": position,
    }


def _value_to_payload(type_name: str, value: Any, ctx: EncodeContext, where: Dict[str, Any]) -> Any:
    member = array_member(type_name)
    if member is not None:
        if not isinstance(value, list):
            raise _bad(type_name, value, where)
        return [_value_to_payload(member, item, ctx, where) for item in value]

    if type_name == "bool":
        if not isinstance(value, bool):
            raise _bad(type_name, value, where)
        return value
    if type_name in FLOAT_TYPES:
        number = _number(type_name, value, where)
        if type_name == "float32":
            try:
                struct.pack("<f", number)
            except OverflowError as exc:
                raise EncodeError(f"{value} does not fit in float32", **where) from exc
        return number
    if type_name in SCALAR_FORMATS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise _bad(type_name, value, where)
        try:
            struct.pack(SCALAR_FORMATS[type_name], value)
        except struct.error as exc:
            raise EncodeError(f"{value} does not fit in {type_name}", **where) from exc
        return value
    if type_name == "ZString":
        if not isinstance(value, str):
            raise _bad(type_name, value, where)
        return value
    if type_name == "ZRepositoryID":
        if not is_repository_id(value):
            raise _bad(type_name, value, where)
        return value
    if type_name == "ZGuid":
        if not isinstance(value, str):
            raise _bad(type_name, value, where)
        try:
            guid = uuid.UUID(value)
        except ValueError as exc:
            raise _bad(type_name, value, where) from exc
        raw = guid.hex
        out = {"_a": int(raw[0:8], 16), "_b": int(raw[8:12], 16), "_c": int(raw[12:16], 16)}
        for i, (name, _) in enumerate(GUID_FIELDS[3:]):
            out[name] = int(raw[16 + 2 * i:18 + 2 * i], 16)
        return out
    if type_name in ("SColorRGB", "SColorRGBA"):
        fields = STRUCT_FIELDS[type_name]
        if isinstance(value, str):
            match = _HEX_COLOR.match(value)
            if not match or len(match.group(1)) != 2 * len(fields):
                raise _bad(type_name, value, where)
            digits = match.group(1)
            return {
                f: _f32(int(digits[2 * i:2 * i + 2], 16) / 255) for i, f in enumerate(fields)
            }
        return _vector(type_name, value, fields, where)
    if type_name in STRUCT_FIELDS:
        return _vector(type_name, value, STRUCT_FIELDS[type_name], where)
    if type_name == "SMatrix43":
        if isinstance(value, dict) and "rotation" in value:
            return _euler_to_matrix(value, where)
        if not isinstance(value, dict) or set(value) != set(MATRIX_AXES):
            raise _bad(type_name, value, where)
        return {axis: _vector(type_name, value[axis], _AXIS, where) for axis in MATRIX_AXES}
    if type_name == ENTITY_REF:
        return ctx.entity_reference(ref_from_json(value, **where), **where)
    if type_name == RESOURCE_ID:
        if value is None:
            return {"m_IDLow": NULL_RESOURCE_INDEX, "m_IDHigh": NULL_RESOURCE_INDEX}
        ref = resource_ref_from_json(value, **where)
        return {"m_IDLow": ctx.factory_deps.index_of(ref, **where), "m_IDHigh": 0}
    if type_name == PAIR:
        if not isinstance(value, dict) or not isinstance(value.get("key"), str):
            raise _bad(type_name, value, where)
        return [value["key"], _json_to_variant(value.get("value"), ctx, where)]
    if type_name == "ZVariant":
        return _json_to_variant(value, ctx, where)
    require_known(type_name, **where)
    raise EncodeError(f"No conversion for type {type_name!r}", **where)


def _json_to_variant(value: Any, ctx: EncodeContext, where: Dict[str, Any]) -> Variant:
    if not isinstance(value, dict) or "type" not in value:
        raise _bad("ZVariant", value, where)
    type_name = value["type"]
    if type_name == VOID:
        if value.get("value") is not None:
            raise _bad("ZVariant", value, where)
        return Variant.void()
    require_known(type_name, **where)
    return Variant(type_name, _value_to_payload(type_name, value.get("value"), ctx, where))


def encode_variant(prop: SimpleProperty, ctx: EncodeContext, **where) -> Variant:
    require_known(prop.type, **where)
    return Variant(prop.type, _value_to_payload(prop.type, prop.value, ctx, where))


def encode_optional_variant(prop: Optional[SimpleProperty], ctx: EncodeContext, **where) -> Variant:
    if prop is None:
        return Variant.void()
    return encode_variant(prop, ctx, **where)


def iter_resource_references(type_name: str, value: Any) -> Iterator[ResourceReference]:
    """Every runtime resource id inside an intermediate value, in order.

    Malformed shapes are skipped here; the conversion proper reports them.
    """

    member = array_member(type_name)
    if member is not None:
        if isinstance(value, list):
            for item in value:
                yield from iter_resource_references(member, item)
    elif type_name == RESOURCE_ID:
        if isinstance(value, str) or (isinstance(value, dict) and isinstance(value.get("resource"), str)):
            yield resource_ref_from_json(value)
    elif type_name == PAIR:
        if isinstance(value, dict):
            yield from iter_resource_references("ZVariant", value.get("value"))
    elif type_name == "ZVariant":
        if isinstance(value, dict) and isinstance(value.get("type"), str):
            yield from iter_resource_references(value["type"], value.get("value"))


def graph_resource_references(graph: EntityGraph) -> List[ResourceReference]:
    """Runtime resource ids used anywhere in ``graph``, in encode order."""

    found: List[ResourceReference] = []

    def visit(prop: Optional[SimpleProperty]) -> None:
        if prop is not None:
            found.extend(iter_resource_references(prop.type, prop.value))

    def visit_pins(pins) -> None:
        for targets_by_pin in pins.values():
            for targets in targets_by_pin.values():
                for target in targets:
                    visit(target.value)

    for entity in graph.sub_entities.values():
        for prop in entity.properties.values():
            visit(prop)
        for props in entity.platform_specific_properties.values():
            for prop in props.values():
                visit(prop)
        visit_pins(entity.events)
        visit_pins(entity.input_copying)
        visit_pins(entity.output_copying)
    for override in graph.property_overrides:
        for prop in override.properties.values():
            visit(prop)
    for pin_override in graph.pin_connection_overrides + graph.pin_connection_override_deletes:
        visit(pin_override.value)
    return found
