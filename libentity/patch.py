"""libentity.patch

Structural diffs between two entity graphs, and applying them.

Diffs are computed over the document form of the graphs (see ``document``),
so every operation is plain JSON and a patch file is just those operations
plus the identity of the graphs it was made from.

Operations, in the order ``apply`` runs them:

  SetRootEntity    new root id
  SetSubType       new sub type
  RemoveEntity     drop a sub-entity
  AddEntity        a whole sub-entity document, placed after ``after``
                   (None = first)
  ModifyEntity     per-field changes of one sub-entity
  PatchCollection  list edits of a graph-level list (externalScenes, comments, ...)

Entities are matched by id only; a renamed id is a remove plus an add.

A field change is one of:

  {"set": value}                                          whole value
  {"list": [edit script]}                                 see ``sequence``
  {"map": {"added": {k: v}, "removed": [k], "changed": {k: change}}}
  {"fields": {"value": change}}                           inside one property value
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .document import (
    GRAPH_LISTS,
    graph_digest,
    graph_from_document,
    graph_to_document,
)
from .errors import DocumentError, EntityError, PatchBaseMismatch, PatchError, PatchTargetMissing
from .model import EntityGraph, SubType, values_equal
from .sequence import apply_list_ops, diff_lists

_log = logging.getLogger(__name__)

PATCH_FORMAT_VERSION = 1
PATCH_VERSION = 1

# sub-entity field -> shape used for diffing
_MAP_OF_VALUES = ("map", "value")
_MAP_OF_PROPERTIES = ("map", "property")
_PINS = ("map", ("map", "list"))
ENTITY_FIELDS: Dict[str, Any] = {
    "parent": "value",
    "name": "value",
    "factory": "value",
    "blueprint": "value",
    "editorOnly": "value",
    "properties": _MAP_OF_PROPERTIES,
    "platformSpecificProperties": ("map", _MAP_OF_PROPERTIES),
    "events": _PINS,
    "inputCopying": _PINS,
    "outputCopying": _PINS,
    "propertyAliases": ("map", "list"),
    "exposedEntities": _MAP_OF_VALUES,
    "exposedInterfaces": _MAP_OF_VALUES,
    "subsets": ("map", "list"),
}
_FIELD_DEFAULTS: Dict[str, Any] = {"parent": None, "editorOnly": False}

COLLECTION_FIELDS = [key for key, _, _ in GRAPH_LISTS.values()]


# -----------------------------
# operations
# -----------------------------

@dataclass
class SetRootEntity:
    entity_id: str


@dataclass
class SetSubType:
    sub_type: SubType


@dataclass
class RemoveEntity:
    entity_id: str


@dataclass
class AddEntity:
    entity_id: str
    entity: Dict[str, Any]
    after: Optional[str] = None


@dataclass
class ModifyEntity:
    entity_id: str
    changes: Dict[str, Dict[str, Any]]


@dataclass
class PatchCollection:
    field: str
    ops: List[Dict[str, Any]]


Operation = Union[SetRootEntity, SetSubType, RemoveEntity, AddEntity, ModifyEntity, PatchCollection]

_APPLY_ORDER = (SetRootEntity, SetSubType, RemoveEntity, AddEntity, ModifyEntity, PatchCollection)


@dataclass
class GraphIdentity:
    factory_hash: str
    blueprint_hash: str
    digest: Optional[str] = None

    @classmethod
    def of(cls, graph: EntityGraph) -> "GraphIdentity":
        return cls(graph.factory_hash, graph.blueprint_hash, graph_digest(graph))


@dataclass
class Patch:
    base: GraphIdentity
    target: GraphIdentity
    operations: List[Operation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.operations and (
            self.base.factory_hash == self.target.factory_hash
            and self.base.blueprint_hash == self.target.blueprint_hash
        )


# -----------------------------
# diff
# -----------------------------

def _full_entity(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Entity document with every diffable field present."""
    out = {}
    for key, shape in ENTITY_FIELDS.items():
        if key in doc:
            out[key] = doc[key]
        elif key in _FIELD_DEFAULTS:
            out[key] = _FIELD_DEFAULTS[key]
        elif shape != "value":
            out[key] = {}
    return out


def _diff_shape(shape: Any, old: Any, new: Any) -> Optional[Dict[str, Any]]:
    if shape == "value":
        return None if values_equal(old, new) else {"set": copy.deepcopy(new)}
    if shape == "list":
        ops = diff_lists(old, new)
        return {"list": ops} if ops else None
    if shape == "property":
        return _diff_property(old, new)

    _, inner = shape
    added = {k: copy.deepcopy(v) for k, v in new.items() if k not in old}
    removed = [k for k in old if k not in new]
    changed = {}
    for k, v in old.items():
        if k in new:
            sub = _diff_shape(inner, v, new[k])
            if sub is not None:
                changed[k] = sub
    if not (added or removed or changed):
        return None
    out: Dict[str, Any] = {}
    if added:
        out["added"] = added
    if removed:
        out["removed"] = removed
    if changed:
        out["changed"] = changed
    return {"map": out}


def _diff_property(old: Any, new: Any) -> Optional[Dict[str, Any]]:
    """Array values of an otherwise unchanged property are diffed element-wise."""
    if (
        isinstance(old, dict)
        and isinstance(new, dict)
        and isinstance(old.get("value"), list)
        and isinstance(new.get("value"), list)
        and values_equal(
            {k: v for k, v in old.items() if k != "value"},
            {k: v for k, v in new.items() if k != "value"},
        )
    ):
        ops = diff_lists(old["value"], new["value"])
        return {"fields": {"value": {"list": ops}}} if ops else None
    return _diff_shape("value", old, new)


def diff_entity(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    old, new = _full_entity(old), _full_entity(new)
    changes = {}
    for key, shape in ENTITY_FIELDS.items():
        change = _diff_shape(shape, old.get(key), new.get(key))
        if change is not None:
            changes[key] = change
    return changes


def diff(old: EntityGraph, new: EntityGraph) -> Patch:
    """Operations that turn ``old`` into ``new``."""

    old_doc, new_doc = graph_to_document(old), graph_to_document(new)
    old_entities, new_entities = old_doc["entities"], new_doc["entities"]
    ops: List[Operation] = []

    if old.root_id != new.root_id:
        ops.append(SetRootEntity(new.root_id))
    if old.sub_type != new.sub_type:
        ops.append(SetSubType(new.sub_type))

    for entity_id in old_entities:
        if entity_id not in new_entities:
            ops.append(RemoveEntity(entity_id))

    previous: Optional[str] = None
    for entity_id, entity in new_entities.items():
        if entity_id not in old_entities:
            ops.append(AddEntity(entity_id, copy.deepcopy(entity), previous))
        previous = entity_id

    for entity_id, entity in new_entities.items():
        if entity_id in old_entities:
            changes = diff_entity(old_entities[entity_id], entity)
            if changes:
                ops.append(ModifyEntity(entity_id, changes))

    for key in COLLECTION_FIELDS:
        list_ops = diff_lists(old_doc[key], new_doc[key])
        if list_ops:
            ops.append(PatchCollection(key, list_ops))

    _log.debug("Diff %s -> %s: %d operations", old.factory_hash, new.factory_hash, len(ops))
    return Patch(
        GraphIdentity.of(old),
        GraphIdentity(new.factory_hash, new.blueprint_hash),
        ops,
    )


# -----------------------------
# apply
# -----------------------------

_CHANGE_KINDS = {"set": object, "list": list, "fields": dict, "map": dict}
_MAP_EDITS = {"added": dict, "removed": list, "changed": dict}


def _check_change(change: Any, **ctx) -> str:
    """The kind of a change object, after checking its shape."""
    if not isinstance(change, dict) or len(change) != 1:
        raise PatchError(f"A change must be an object with one key, got {change!r}", **ctx)
    kind, body = next(iter(change.items()))
    expected = _CHANGE_KINDS.get(kind)
    if expected is None:
        raise PatchError(f"Unknown change {kind!r}", **ctx)
    if not isinstance(body, expected):
        raise PatchError(f"Malformed {kind!r} change: {body!r}", **ctx)
    if kind == "map":
        for key, value in body.items():
            if key not in _MAP_EDITS or not isinstance(value, _MAP_EDITS[key]):
                raise PatchError(f"Malformed map edit {key!r}: {value!r}", **ctx)
    return kind


def _apply_change(current: Any, change: Any, **ctx) -> Any:
    kind = _check_change(change, **ctx)
    if kind == "set":
        return copy.deepcopy(change["set"])
    if kind == "list":
        if not isinstance(current, list):
            raise PatchTargetMissing("Patch edits a list that is not there", **ctx)
        return apply_list_ops(current, change["list"], **ctx)
    if kind == "fields":
        if not isinstance(current, dict):
            raise PatchTargetMissing("Patch edits an object that is not there", **ctx)
        out = dict(current)
        for key, sub in change["fields"].items():
            if key not in out:
                raise PatchTargetMissing(f"Cannot change missing field {key!r}", **ctx)
            out[key] = _apply_change(out[key], sub, **ctx)
        return out

    if not isinstance(current, dict):
        raise PatchTargetMissing("Patch edits a mapping that is not there", **ctx)
    edits = change["map"]
    out = dict(current)
    for key in edits.get("removed", []):
        if not isinstance(key, str):
            raise PatchError(f"Map keys are strings, got {key!r}", **ctx)
        if key not in out:
            raise PatchTargetMissing(f"Cannot remove missing key {key!r}", **ctx)
        del out[key]
    for key, value in edits.get("added", {}).items():
        if key in out:
            raise PatchError(f"Key {key!r} already exists", **ctx)
        out[key] = copy.deepcopy(value)
    for key, sub in edits.get("changed", {}).items():
        if key not in out:
            raise PatchTargetMissing(f"Cannot change missing key {key!r}", **ctx)
        field_name = f"{ctx['field']}.{key}" if ctx.get("field") else key
        out[key] = _apply_change(out[key], sub, **{**ctx, "field": field_name})
    return out


def check_base(patch: Patch, base: EntityGraph, strict: bool = False) -> None:
    if (base.factory_hash, base.blueprint_hash) != (patch.base.factory_hash, patch.base.blueprint_hash):
        raise PatchBaseMismatch(
            f"Patch was made for {patch.base.factory_hash}/{patch.base.blueprint_hash}, "
            f"not {base.factory_hash}/{base.blueprint_hash}"
        )
    if strict and patch.base.digest is not None and graph_digest(base) != patch.base.digest:
        raise PatchBaseMismatch("Base graph content differs from the one the patch was made for")


def apply(patch: Patch, base: EntityGraph, strict: bool = False) -> EntityGraph:
    """A new graph with ``patch`` applied to ``base``; ``base`` is left untouched."""

    check_base(patch, base, strict)
    doc = copy.deepcopy(graph_to_document(base))
    entities: Dict[str, Any] = doc["entities"]

    ops = sorted(patch.operations, key=lambda op: _APPLY_ORDER.index(type(op)))
    for op in ops:
        if isinstance(op, SetRootEntity):
            doc["rootEntity"] = op.entity_id
        elif isinstance(op, SetSubType):
            doc["subType"] = op.sub_type.value
        elif isinstance(op, RemoveEntity):
            if op.entity_id not in entities:
                raise PatchTargetMissing("Cannot remove missing entity", entity_id=op.entity_id)
            del entities[op.entity_id]
        elif isinstance(op, AddEntity):
            if op.entity_id in entities:
                raise PatchError("Entity already exists", entity_id=op.entity_id)
            items = list(entities.items())
            if op.after is None:
                position = 0
            else:
                keys = [k for k, _ in items]
                if op.after not in keys:
                    raise PatchTargetMissing(
                        f"Anchor entity {op.after!r} is missing", entity_id=op.entity_id, field="after"
                    )
                position = keys.index(op.after) + 1
            items.insert(position, (op.entity_id, copy.deepcopy(op.entity)))
            entities = dict(items)
            doc["entities"] = entities
        elif isinstance(op, ModifyEntity):
            if op.entity_id not in entities:
                raise PatchTargetMissing("Cannot modify missing entity", entity_id=op.entity_id)
            entity = _full_entity(entities[op.entity_id])
            for key, change in op.changes.items():
                if key not in ENTITY_FIELDS:
                    raise PatchError(f"Unknown entity field {key!r}", entity_id=op.entity_id, field=key)
                entity[key] = _apply_change(entity.get(key), change, entity_id=op.entity_id, field=key)
            entities[op.entity_id] = entity
        else:
            if op.field not in COLLECTION_FIELDS:
                raise PatchError(f"Unknown graph list {op.field!r}", field=op.field)
            doc[op.field] = apply_list_ops(doc.get(op.field, []), op.ops, field=op.field)

    doc["factoryHash"] = patch.target.factory_hash
    doc["blueprintHash"] = patch.target.blueprint_hash

    if doc["rootEntity"] not in entities:
        raise PatchTargetMissing("Root entity is missing after the patch", entity_id=doc["rootEntity"])
    try:
        result = graph_from_document(doc)
    except EntityError as exc:
        raise PatchError(f"Patched graph is not valid: {exc}") from exc
    _log.debug("Applied %d operations to %s", len(ops), base.factory_hash)
    return result


# -----------------------------
# patch documents
# -----------------------------

def _op_to_json(op: Operation) -> Dict[str, Any]:
    if isinstance(op, SetRootEntity):
        return {"type": "SetRootEntity", "entity": op.entity_id}
    if isinstance(op, SetSubType):
        return {"type": "SetSubType", "subType": op.sub_type.value}
    if isinstance(op, RemoveEntity):
        return {"type": "RemoveEntity", "entity": op.entity_id}
    if isinstance(op, AddEntity):
        return {"type": "AddEntity", "entity": op.entity_id, "after": op.after, "value": op.entity}
    if isinstance(op, ModifyEntity):
        return {"type": "ModifyEntity", "entity": op.entity_id, "changes": op.changes}
    return {"type": "PatchCollection", "field": op.field, "ops": op.ops}


def _op_from_json(value: Any, index: int) -> Operation:
    if not isinstance(value, dict):
        raise DocumentError("Patch operation must be an object", field="patch", index=index)
    kind = value.get("type")
    try:
        if kind == "SetRootEntity":
            return SetRootEntity(_str(value["entity"]))
        if kind == "SetSubType":
            return SetSubType(SubType(value["subType"]))
        if kind == "RemoveEntity":
            return RemoveEntity(_str(value["entity"]))
        if kind == "AddEntity":
            after = value.get("after")
            entity = value["value"]
            if not isinstance(entity, dict) or (after is not None and not isinstance(after, str)):
                raise ValueError("bad AddEntity")
            return AddEntity(_str(value["entity"]), entity, after)
        if kind == "ModifyEntity":
            changes = value["changes"]
            if not isinstance(changes, dict):
                raise ValueError("bad changes")
            return ModifyEntity(_str(value["entity"]), changes)
        if kind == "PatchCollection":
            ops = value["ops"]
            if not isinstance(ops, list):
                raise ValueError("bad ops")
            return PatchCollection(_str(value["field"]), ops)
    except (KeyError, ValueError) as exc:
        raise DocumentError(f"Malformed {kind} operation: {exc}", field="patch", index=index) from exc
    raise DocumentError(f"Unknown patch operation {kind!r}", field="patch", index=index)


def _str(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


def patch_to_document(patch: Patch) -> Dict[str, Any]:
    return {
        "formatVersion": PATCH_FORMAT_VERSION,
        "patchVersion": PATCH_VERSION,
        "base": {
            "factoryHash": patch.base.factory_hash,
            "blueprintHash": patch.base.blueprint_hash,
            "digest": patch.base.digest,
        },
        "target": {
            "factoryHash": patch.target.factory_hash,
            "blueprintHash": patch.target.blueprint_hash,
        },
        "patch": [_op_to_json(op) for op in patch.operations],
    }


def _identity(value: Any, key: str) -> GraphIdentity:
    if not isinstance(value, dict):
        raise DocumentError(f"'{key}' must be an object", field=key)
    factory_hash, blueprint_hash = value.get("factoryHash"), value.get("blueprintHash")
    digest = value.get("digest")
    if not isinstance(factory_hash, str) or not isinstance(blueprint_hash, str):
        raise DocumentError(f"'{key}' needs factoryHash and blueprintHash", field=key)
    if digest is not None and not isinstance(digest, str):
        raise DocumentError(f"'{key}.digest' must be a string", field=key)
    return GraphIdentity(factory_hash, blueprint_hash, digest)


def patch_from_document(doc: Any) -> Patch:
    if not isinstance(doc, dict):
        raise DocumentError("Patch document must be an object")
    if doc.get("formatVersion") != PATCH_FORMAT_VERSION:
        raise DocumentError(f"Unsupported formatVersion {doc.get('formatVersion')!r}", field="formatVersion")
    if doc.get("patchVersion") != PATCH_VERSION:
        raise DocumentError(f"Unsupported patchVersion {doc.get('patchVersion')!r}", field="patchVersion")
    ops = doc.get("patch")
    if not isinstance(ops, list):
        raise DocumentError("'patch' must be an array", field="patch")
    return Patch(
        _identity(doc.get("base"), "base"),
        _identity(doc.get("target"), "target"),
        [_op_from_json(op, i) for i, op in enumerate(ops)],
    )


def dumps_patch(patch: Patch) -> str:
    return json.dumps(patch_to_document(patch), indent=2, ensure_ascii=False) + "\n"


def loads_patch(text: str) -> Patch:
    try:
        doc = json.loads(text)
    except ValueError as exc:
        raise DocumentError(f"Not a JSON document: {exc}") from exc
    return patch_from_document(doc)
