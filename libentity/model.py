from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# -----------------------------
# Small value types shared by the graph and the structural records
# -----------------------------

DEFAULT_FLAG = "1F"


class SubType(str, Enum):
    TEMPLATE = "template"
    SCENE = "scene"
    BRICK = "brick"

    @property
    def code(self) -> int:
        return _SUB_TYPE_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "SubType":
        for sub_type, value in _SUB_TYPE_CODES.items():
            if value == code:
                return sub_type
        raise ValueError(f"Invalid sub type code {code}")


_SUB_TYPE_CODES = {SubType.TEMPLATE: 0, SubType.SCENE: 1, SubType.BRICK: 2}


@dataclass(frozen=True)
class ResourceReference:
    """A dependency-table entry: resource id plus its dependency flag."""

    resource: str
    flag: str = DEFAULT_FLAG


@dataclass(frozen=True)
class Ref:
    """Reference to a sub-entity.

    Local when ``external_scene`` is None (``entity_id`` is then a key of
    ``EntityGraph.sub_entities``); otherwise ``entity_id`` is the 64-bit hex id
    of an entity inside that external scene. A null reference is ``None``.
    """

    entity_id: str
    external_scene: Optional[str] = None
    exposed_entity: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.external_scene is None


# -----------------------------
# Entity graph
# -----------------------------

@dataclass
class SimpleProperty:
    type: str
    value: Any


@dataclass
class Property:
    type: str
    value: Any
    post_init: bool = False


@dataclass
class PinTarget:
    """One wire: the target entity's input pin, optionally with a constant."""

    ref: Ref
    value: Optional[SimpleProperty] = None


@dataclass
class PropertyAlias:
    original_property: str
    original_entity: str


@dataclass
class ExposedEntity:
    is_array: bool
    refers_to: List[Ref] = field(default_factory=list)


@dataclass
class PropertyOverride:
    entities: List[Ref]
    properties: Dict[str, SimpleProperty]


@dataclass
class PinConnectionOverride:
    from_entity: Ref
    from_pin: str
    to_entity: Ref
    to_pin: str
    value: Optional[SimpleProperty] = None


@dataclass
class Comment:
    parent: Optional[Ref]
    name: str
    text: str


# pin name -> target pin name -> wires
PinMap = Dict[str, Dict[str, List[PinTarget]]]


@dataclass
class SubEntity:
    name: str
    factory: ResourceReference
    blueprint: ResourceReference
    parent: Optional[Ref] = None
    editor_only: bool = False
    properties: Dict[str, Property] = field(default_factory=dict)
    platform_specific_properties: Dict[str, Dict[str, Property]] = field(default_factory=dict)
    events: PinMap = field(default_factory=dict)
    input_copying: PinMap = field(default_factory=dict)
    output_copying: PinMap = field(default_factory=dict)
    property_aliases: Dict[str, List[PropertyAlias]] = field(default_factory=dict)
    exposed_entities: Dict[str, ExposedEntity] = field(default_factory=dict)
    exposed_interfaces: Dict[str, str] = field(default_factory=dict)
    subsets: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class EntityGraph:
    """One converted resource pair.

    ``sub_entities`` is insertion ordered and that order is the encode order:
    two graphs that differ only in that order are equal (see
    ``document.graphs_equal``) but are not guaranteed to encode to the same
    bytes.
    """

    factory_hash: str
    blueprint_hash: str
    root_id: str
    sub_entities: Dict[str, SubEntity]
    sub_type: SubType = SubType.TEMPLATE
    external_scenes: List[str] = field(default_factory=list)
    property_overrides: List[PropertyOverride] = field(default_factory=list)
    override_deletes: List[Ref] = field(default_factory=list)
    pin_connection_overrides: List[PinConnectionOverride] = field(default_factory=list)
    pin_connection_override_deletes: List[PinConnectionOverride] = field(default_factory=list)
    extra_factory_dependencies: List[ResourceReference] = field(default_factory=list)
    extra_blueprint_dependencies: List[ResourceReference] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)


def find_parent_cycle(parents: Dict[str, Optional[str]]) -> Optional[List[str]]:
    """Return the ids forming a cycle in a child -> local parent map, if any."""

    state: Dict[str, int] = {}  # 1 = on current walk, 2 = known acyclic
    for start in parents:
        walk: List[str] = []
        node: Optional[str] = start
        while node is not None and node in parents and state.get(node) != 2:
            if state.get(node) == 1:
                return walk[walk.index(node):]
            state[node] = 1
            walk.append(node)
            node = parents[node]
        for visited in walk:
            state[visited] = 2
    return None


# -----------------------------
# Structural equality on intermediate (JSON-like) values
# -----------------------------

def values_equal(a: Any, b: Any) -> bool:
    """Equality for intermediate values.

    Mapping key order is ignored. List order, scalar type (``1`` vs ``1.0``
    vs ``True``) and float bits (``0.0`` vs ``-0.0``) are significant.
    """

    if type(a) is not type(b):
        return False
    if isinstance(a, dict):
        if a.keys() != b.keys():
            return False
        return all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, float):
        if math.isnan(a) or math.isnan(b):
            return math.isnan(a) and math.isnan(b)
        return a == b and math.copysign(1.0, a) == math.copysign(1.0, b)
    return a == b
