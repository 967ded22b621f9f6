"""libentity.document

The intermediate (IR) document: an EntityGraph as JSON text.

Field names and property type tags are the compatibility surface, so they are
spelled out here rather than derived from dataclass field names. Key order of
every mapping is preserved in both directions. Empty per-entity collections
are omitted when writing and default to empty when reading.

Numbers go through the stdlib json module unchanged: ints are arbitrary
precision and floats are written with their shortest round-trip repr, so a
document never loses precision.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from .errors import DocumentError
from .model import (
    Comment,
    EntityGraph,
    ExposedEntity,
    PinConnectionOverride,
    PinMap,
    PinTarget,
    Property,
    PropertyAlias,
    PropertyOverride,
    Ref,
    ResourceReference,
    SimpleProperty,
    SubEntity,
    SubType,
    DEFAULT_FLAG,
    values_equal,
)
from .types import require_known

_log = logging.getLogger(__name__)

FORMAT_VERSION = 1


# -----------------------------
# small value forms
# -----------------------------

def ref_to_json(ref: Optional[Ref]) -> Any:
    if ref is None:
        return None
    if ref.external_scene is None and ref.exposed_entity is None:
        return ref.entity_id
    return {
        "ref": ref.entity_id,
        "externalScene": ref.external_scene,
        "exposedEntity": ref.exposed_entity,
    }


def ref_from_json(value: Any, **ctx) -> Optional[Ref]:
    if value is None:
        return None
    if isinstance(value, str):
        return Ref(value)
    if isinstance(value, dict):
        entity_id = value.get("ref")
        scene = value.get("externalScene")
        exposed = value.get("exposedEntity")
        if not isinstance(entity_id, str):
            raise DocumentError("Reference needs a string 'ref'", **ctx)
        if scene is not None and not isinstance(scene, str):
            raise DocumentError("'externalScene' must be a string or null", **ctx)
        if exposed is not None and not isinstance(exposed, str):
            raise DocumentError("'exposedEntity' must be a string or null", **ctx)
        return Ref(entity_id, scene, exposed)
    raise DocumentError(f"Invalid reference {value!r}", **ctx)


def required_ref_from_json(value: Any, **ctx) -> Ref:
    ref = ref_from_json(value, **ctx)
    if ref is None:
        raise DocumentError("Reference may not be null here", **ctx)
    return ref


def resource_ref_to_json(ref: ResourceReference) -> Any:
    if ref.flag == DEFAULT_FLAG:
        return ref.resource
    return {"resource": ref.resource, "flag": ref.flag}


def resource_ref_from_json(value: Any, **ctx) -> ResourceReference:
    if isinstance(value, str):
        return ResourceReference(value)
    if isinstance(value, dict):
        resource = value.get("resource")
        flag = value.get("flag", DEFAULT_FLAG)
        if isinstance(resource, str) and isinstance(flag, str):
            return ResourceReference(resource, flag)
    raise DocumentError(f"Invalid resource reference {value!r}", **ctx)


def _simple_to_json(prop: SimpleProperty) -> Dict[str, Any]:
    return {"type": prop.type, "value": prop.value}


def _simple_from_json(value: Any, **ctx) -> SimpleProperty:
    obj = _as_dict(value, **ctx)
    type_name = obj.get("type")
    if "value" not in obj:
        raise DocumentError("Property without 'value'", **ctx)
    return SimpleProperty(require_known(type_name, **ctx), obj["value"])


def _property_to_json(prop: Property) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": prop.type, "value": prop.value}
    if prop.post_init:
        out["postInit"] = True
    return out


def _property_from_json(value: Any, **ctx) -> Property:
    simple = _simple_from_json(value, **ctx)
    post_init = value.get("postInit", False)
    if not isinstance(post_init, bool):
        raise DocumentError("'postInit' must be a boolean", **ctx)
    return Property(simple.type, simple.value, post_init)


# -----------------------------
# strict shape helpers
# -----------------------------

def _as_dict(value: Any, **ctx) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise DocumentError(f"Expected an object, got {type(value).__name__}", **ctx)
    return value


def _as_list(value: Any, **ctx) -> List[Any]:
    if not isinstance(value, list):
        raise DocumentError(f"Expected an array, got {type(value).__name__}", **ctx)
    return value


def _as_str(value: Any, **ctx) -> str:
    if not isinstance(value, str):
        raise DocumentError(f"Expected a string, got {type(value).__name__}", **ctx)
    return value


def _as_bool(value: Any, **ctx) -> bool:
    if not isinstance(value, bool):
        raise DocumentError(f"Expected a boolean, got {type(value).__name__}", **ctx)
    return value


# -----------------------------
# sub-entities
# -----------------------------

def _pins_to_json(pins: PinMap) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for pin, targets_by_pin in pins.items():
        out[pin] = {}
        for to_pin, targets in targets_by_pin.items():
            out[pin][to_pin] = [
                ref_to_json(t.ref) if t.value is None
                else {"ref": ref_to_json(t.ref), "value": _simple_to_json(t.value)}
                for t in targets
            ]
    return out


def _pins_from_json(value: Any, **ctx) -> PinMap:
    pins: PinMap = {}
    for pin, targets_by_pin in _as_dict(value, **ctx).items():
        pins[pin] = {}
        for to_pin, targets in _as_dict(targets_by_pin, **ctx).items():
            wires: List[PinTarget] = []
            for raw in _as_list(targets, **ctx):
                if isinstance(raw, dict) and "value" in raw:
                    wires.append(
                        PinTarget(
                            required_ref_from_json(raw.get("ref"), **ctx),
                            _simple_from_json(raw["value"], **ctx),
                        )
                    )
                else:
                    wires.append(PinTarget(required_ref_from_json(raw, **ctx)))
            pins[pin][to_pin] = wires
    return pins


def sub_entity_to_json(entity: SubEntity) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "parent": ref_to_json(entity.parent),
        "name": entity.name,
        "factory": resource_ref_to_json(entity.factory),
        "blueprint": resource_ref_to_json(entity.blueprint),
    }
    if entity.editor_only:
        out["editorOnly"] = True
    if entity.properties:
        out["properties"] = {k: _property_to_json(p) for k, p in entity.properties.items()}
    if entity.platform_specific_properties:
        out["platformSpecificProperties"] = {
            platform: {k: _property_to_json(p) for k, p in props.items()}
            for platform, props in entity.platform_specific_properties.items()
        }
    if entity.events:
        out["events"] = _pins_to_json(entity.events)
    if entity.input_copying:
        out["inputCopying"] = _pins_to_json(entity.input_copying)
    if entity.output_copying:
        out["outputCopying"] = _pins_to_json(entity.output_copying)
    if entity.property_aliases:
        out["propertyAliases"] = {
            alias: [
                {"originalProperty": a.original_property, "originalEntity": a.original_entity}
                for a in aliases
            ]
            for alias, aliases in entity.property_aliases.items()
        }
    if entity.exposed_entities:
        out["exposedEntities"] = {
            name: {"isArray": e.is_array, "refersTo": [ref_to_json(r) for r in e.refers_to]}
            for name, e in entity.exposed_entities.items()
        }
    if entity.exposed_interfaces:
        out["exposedInterfaces"] = dict(entity.exposed_interfaces)
    if entity.subsets:
        out["subsets"] = {name: list(ids) for name, ids in entity.subsets.items()}
    return out


def sub_entity_from_json(value: Any, entity_id: str) -> SubEntity:
    obj = _as_dict(value, entity_id=entity_id)

    def ctx(name: str) -> Dict[str, Any]:
        return {"entity_id": entity_id, "field": name}

    for key in ("name", "factory", "blueprint"):
        if key not in obj:
            raise DocumentError(f"Missing '{key}'", **ctx(key))

    properties = {
        name: _property_from_json(p, **ctx(f"properties.{name}"))
        for name, p in _as_dict(obj.get("properties", {}), **ctx("properties")).items()
    }
    platform_props = {
        platform: {
            name: _property_from_json(p, **ctx(f"platformSpecificProperties.{platform}.{name}"))
            for name, p in _as_dict(props, **ctx("platformSpecificProperties")).items()
        }
        for platform, props in _as_dict(
            obj.get("platformSpecificProperties", {}), **ctx("platformSpecificProperties")
        ).items()
    }

    aliases: Dict[str, List[PropertyAlias]] = {}
    for alias, entries in _as_dict(obj.get("propertyAliases", {}), **ctx("propertyAliases")).items():
        aliases[alias] = []
        for entry in _as_list(entries, **ctx("propertyAliases")):
            entry = _as_dict(entry, **ctx("propertyAliases"))
            aliases[alias].append(
                PropertyAlias(
                    _as_str(entry.get("originalProperty"), **ctx("propertyAliases")),
                    _as_str(entry.get("originalEntity"), **ctx("propertyAliases")),
                )
            )

    exposed: Dict[str, ExposedEntity] = {}
    for name, entry in _as_dict(obj.get("exposedEntities", {}), **ctx("exposedEntities")).items():
        entry = _as_dict(entry, **ctx("exposedEntities"))
        exposed[name] = ExposedEntity(
            _as_bool(entry.get("isArray"), **ctx("exposedEntities")),
            [
                required_ref_from_json(r, **ctx("exposedEntities"))
                for r in _as_list(entry.get("refersTo", []), **ctx("exposedEntities"))
            ],
        )

    interfaces = {
        name: _as_str(target, **ctx("exposedInterfaces"))
        for name, target in _as_dict(obj.get("exposedInterfaces", {}), **ctx("exposedInterfaces")).items()
    }
    subsets = {
        name: [_as_str(m, **ctx("subsets")) for m in _as_list(members, **ctx("subsets"))]
        for name, members in _as_dict(obj.get("subsets", {}), **ctx("subsets")).items()
    }

    return SubEntity(
        name=_as_str(obj["name"], **ctx("name")),
        factory=resource_ref_from_json(obj["factory"], **ctx("factory")),
        blueprint=resource_ref_from_json(obj["blueprint"], **ctx("blueprint")),
        parent=ref_from_json(obj.get("parent"), **ctx("parent")),
        editor_only=_as_bool(obj.get("editorOnly", False), **ctx("editorOnly")),
        properties=properties,
        platform_specific_properties=platform_props,
        events=_pins_from_json(obj.get("events", {}), **ctx("events")),
        input_copying=_pins_from_json(obj.get("inputCopying", {}), **ctx("inputCopying")),
        output_copying=_pins_from_json(obj.get("outputCopying", {}), **ctx("outputCopying")),
        property_aliases=aliases,
        exposed_entities=exposed,
        exposed_interfaces=interfaces,
        subsets=subsets,
    )


# -----------------------------
# graph-level lists
# -----------------------------

def property_override_to_json(override: PropertyOverride) -> Dict[str, Any]:
    return {
        "entities": [ref_to_json(r) for r in override.entities],
        "properties": {k: _simple_to_json(p) for k, p in override.properties.items()},
    }


def property_override_from_json(value: Any, **ctx) -> PropertyOverride:
    obj = _as_dict(value, **ctx)
    return PropertyOverride(
        [required_ref_from_json(r, **ctx) for r in _as_list(obj.get("entities"), **ctx)],
        {
            name: _simple_from_json(p, **ctx)
            for name, p in _as_dict(obj.get("properties"), **ctx).items()
        },
    )


def pin_override_to_json(override: PinConnectionOverride) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "fromEntity": ref_to_json(override.from_entity),
        "fromPin": override.from_pin,
        "toEntity": ref_to_json(override.to_entity),
        "toPin": override.to_pin,
    }
    if override.value is not None:
        out["value"] = _simple_to_json(override.value)
    return out


def pin_override_from_json(value: Any, **ctx) -> PinConnectionOverride:
    obj = _as_dict(value, **ctx)
    return PinConnectionOverride(
        from_entity=required_ref_from_json(obj.get("fromEntity"), **ctx),
        from_pin=_as_str(obj.get("fromPin"), **ctx),
        to_entity=required_ref_from_json(obj.get("toEntity"), **ctx),
        to_pin=_as_str(obj.get("toPin"), **ctx),
        value=_simple_from_json(obj["value"], **ctx) if "value" in obj else None,
    )


def comment_to_json(comment: Comment) -> Dict[str, Any]:
    return {"parent": ref_to_json(comment.parent), "name": comment.name, "text": comment.text}


def comment_from_json(value: Any, **ctx) -> Comment:
    obj = _as_dict(value, **ctx)
    return Comment(
        ref_from_json(obj.get("parent"), **ctx),
        _as_str(obj.get("name"), **ctx),
        _as_str(obj.get("text"), **ctx),
    )


# graph list attribute -> (document key, to_json, from_json)
GRAPH_LISTS = {
    "external_scenes": ("externalScenes", lambda s: s, _as_str),
    "property_overrides": ("propertyOverrides", property_override_to_json, property_override_from_json),
    "override_deletes": ("overrideDeletes", ref_to_json, required_ref_from_json),
    "pin_connection_overrides": ("pinConnectionOverrides", pin_override_to_json, pin_override_from_json),
    "pin_connection_override_deletes": (
        "pinConnectionOverrideDeletes", pin_override_to_json, pin_override_from_json,
    ),
    "extra_factory_dependencies": (
        "extraFactoryDependencies", resource_ref_to_json, resource_ref_from_json,
    ),
    "extra_blueprint_dependencies": (
        "extraBlueprintDependencies", resource_ref_to_json, resource_ref_from_json,
    ),
    "comments": ("comments", comment_to_json, comment_from_json),
}


# -----------------------------
# whole graph
# -----------------------------

def graph_to_document(graph: EntityGraph) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "formatVersion": FORMAT_VERSION,
        "factoryHash": graph.factory_hash,
        "blueprintHash": graph.blueprint_hash,
        "rootEntity": graph.root_id,
        "subType": graph.sub_type.value,
        "entities": {eid: sub_entity_to_json(e) for eid, e in graph.sub_entities.items()},
    }
    for attr, (key, to_json, _) in GRAPH_LISTS.items():
        doc[key] = [to_json(item) for item in getattr(graph, attr)]
    return doc


def graph_from_document(doc: Any) -> EntityGraph:
    doc = _as_dict(doc)
    version = doc.get("formatVersion")
    if version != FORMAT_VERSION:
        raise DocumentError(
            f"Unsupported formatVersion {version!r} (expected {FORMAT_VERSION})",
            field="formatVersion",
        )
    for key in ("factoryHash", "blueprintHash", "rootEntity", "entities"):
        if key not in doc:
            raise DocumentError(f"Missing '{key}'", field=key)

    try:
        sub_type = SubType(doc.get("subType", SubType.TEMPLATE.value))
    except ValueError as exc:
        raise DocumentError(f"Invalid subType {doc.get('subType')!r}", field="subType") from exc

    entities = {
        _as_str(eid, field="entities"): sub_entity_from_json(e, eid)
        for eid, e in _as_dict(doc["entities"], field="entities").items()
    }

    lists: Dict[str, list] = {}
    for attr, (key, _, from_json) in GRAPH_LISTS.items():
        lists[attr] = [
            from_json(item, field=key, index=i)
            for i, item in enumerate(_as_list(doc.get(key, []), field=key))
        ]

    graph = EntityGraph(
        factory_hash=_as_str(doc["factoryHash"], field="factoryHash"),
        blueprint_hash=_as_str(doc["blueprintHash"], field="blueprintHash"),
        root_id=_as_str(doc["rootEntity"], field="rootEntity"),
        sub_entities=entities,
        sub_type=sub_type,
        **lists,
    )
    _log.debug("Loaded document %s with %d entities", graph.factory_hash, len(entities))
    return graph


def dumps(graph: EntityGraph) -> str:
    return json.dumps(graph_to_document(graph), indent=2, ensure_ascii=False) + "\n"


def loads(text: str) -> EntityGraph:
    try:
        doc = json.loads(text)
    except ValueError as exc:
        raise DocumentError(f"Not a JSON document: {exc}") from exc
    return graph_from_document(doc)


def canonical_text(graph: EntityGraph) -> str:
    """Compact, key-sorted JSON; equal graphs give equal text."""
    return json.dumps(
        graph_to_document(graph), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def graph_digest(graph: EntityGraph) -> str:
    return hashlib.sha256(canonical_text(graph).encode("utf-8")).hexdigest()


def graphs_equal(a: EntityGraph, b: EntityGraph) -> bool:
    return values_equal(graph_to_document(a), graph_to_document(b))
