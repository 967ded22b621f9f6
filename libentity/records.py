"""libentity.records

Low-level structural records, as handed over by the resource reader.

Two linked records describe one entity:

  BehaviorRecord  (TBLU) - topology and wiring: names, ids, logical parents,
                           pin connections, aliases, exposed entities/interfaces,
                           subsets and the blueprint dependency table.
  PropertyRecord  (TEMP) - data: property blobs per sub-entity, post-init and
                           platform-specific blocks, property overrides and the
                           factory dependency table.

Both index sub-entities by position; the two ``sub_entities`` lists are
parallel. Nothing here knows about string ids, that is the converters' job.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from .model import ResourceReference

# EntityReference.entity_index values with special meaning
NULL_INDEX = -1
EXTERNAL_INDEX = -2

NULL_ENTITY_ID = 0xFFFFFFFFFFFFFFFF


@dataclass
class Variant:
    """A typed property payload.

    ``value`` keeps the shape the resource stores: dicts for structs
    (``{"_a": ..}`` for ZGuid, ``{"XAxis": {..}}`` for SMatrix43,
    ``{"m_IDLow": .., "m_IDHigh": ..}`` for ZRuntimeResourceID), an
    EntityReference for SEntityTemplateReference, a list for TArray, a
    ``[str, Variant]`` pair for TPair and a nested Variant for ZVariant.
    The ``void`` type has ``value`` None.
    """

    type: str
    value: Any = None

    @classmethod
    def void(cls) -> "Variant":
        return cls("void", None)

    @property
    def is_void(self) -> bool:
        return self.type == "void"


@dataclass
class EntityReference:
    entity_id: int = NULL_ENTITY_ID
    external_scene_index: int = -1
    entity_index: int = NULL_INDEX
    exposed_entity: str = ""

    @classmethod
    def local(cls, index: int, exposed_entity: str = "") -> "EntityReference":
        return cls(entity_index=index, exposed_entity=exposed_entity)


PropertyId = Union[int, str]


@dataclass
class PropertyValue:
    property_id: PropertyId
    value: Variant


@dataclass
class PlatformPropertyValue:
    platform: str
    post_init: bool
    property: PropertyValue


@dataclass
class PropertyOverrideRecord:
    property_owner: EntityReference
    property_value: PropertyValue


@dataclass
class FactorySubEntity:
    logical_parent: EntityReference
    entity_type_resource_index: int
    property_values: List[PropertyValue] = field(default_factory=list)
    post_init_property_values: List[PropertyValue] = field(default_factory=list)
    platform_specific_property_values: List[PlatformPropertyValue] = field(default_factory=list)


@dataclass
class PropertyRecord:
    resource_id: str
    sub_type: int
    blueprint_index_in_resource_header: int
    root_entity_index: int
    sub_entities: List[FactorySubEntity] = field(default_factory=list)
    property_overrides: List[PropertyOverrideRecord] = field(default_factory=list)
    external_scene_type_indices_in_resource_header: List[int] = field(default_factory=list)
    dependencies: List[ResourceReference] = field(default_factory=list)


@dataclass
class PropertyAliasRecord:
    alias_name: str
    entity_index: int
    property_name: str


@dataclass
class ExposedEntityRecord:
    name: str
    is_array: bool
    targets: List[EntityReference] = field(default_factory=list)


@dataclass
class BlueprintSubEntity:
    logical_parent: EntityReference
    entity_type_resource_index: int
    entity_name: str
    # None when the resource carries no explicit id for this entity
    entity_id: Optional[int] = None
    editor_only: bool = False
    property_aliases: List[PropertyAliasRecord] = field(default_factory=list)
    exposed_entities: List[ExposedEntityRecord] = field(default_factory=list)
    exposed_interfaces: List[Tuple[str, int]] = field(default_factory=list)
    entity_subsets: List[Tuple[str, List[int]]] = field(default_factory=list)


@dataclass
class PinConnectionRecord:
    from_index: int
    to_index: int
    from_pin_name: str
    to_pin_name: str
    constant_pin_value: Variant = field(default_factory=Variant.void)


@dataclass
class ExternalPinConnectionRecord:
    from_entity: EntityReference
    to_entity: EntityReference
    from_pin_name: str
    to_pin_name: str
    constant_pin_value: Variant = field(default_factory=Variant.void)


@dataclass
class BehaviorRecord:
    resource_id: str
    sub_type: int
    root_entity_index: int
    sub_entities: List[BlueprintSubEntity] = field(default_factory=list)
    external_scene_type_indices_in_resource_header: List[int] = field(default_factory=list)
    pin_connections: List[PinConnectionRecord] = field(default_factory=list)
    input_pin_forwardings: List[PinConnectionRecord] = field(default_factory=list)
    output_pin_forwardings: List[PinConnectionRecord] = field(default_factory=list)
    override_deletes: List[EntityReference] = field(default_factory=list)
    pin_connection_overrides: List[ExternalPinConnectionRecord] = field(default_factory=list)
    pin_connection_override_deletes: List[ExternalPinConnectionRecord] = field(default_factory=list)
    dependencies: List[ResourceReference] = field(default_factory=list)


# -----------------------------
# Container level (what the reader walks before parsing record bodies)
# -----------------------------

@dataclass
class ResourceHeader:
    version: int
    raw: bytes


@dataclass
class ResourceChunk:
    """A single section chunk, preserved verbatim."""

    type_int: int
    type_tag: str  # 4-char ASCII tag
    length: int    # length field from file (includes the 4-byte type)
    body: bytes
    offset: int

    @property
    def raw(self) -> bytes:
        # Stored layout:
        #   int32 type
        #   int32 length
        #   <body bytes> (length - 4)
        return struct.pack("<ii", self.type_int, self.length) + self.body
