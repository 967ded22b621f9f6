from __future__ import annotations

import struct
from typing import Optional, Tuple

import pytest

from libentity.decoder import decode_graph
from libentity.model import EntityGraph, Property, Ref, ResourceReference, SubEntity
from libentity.records import (
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
    Variant,
)

FACTORY_HASH = "00C4F2A9B61D7E30"
BLUEPRINT_HASH = "00D1E8F07A2B3C44"
SCENE_HASH = "0095A1B2C3D4E5F6"

ROOT_ID = 0xFEEDBEEF00000001
TRIGGER_ID = 0xC3


def f32(value: float) -> float:
    return struct.unpack("<f", struct.pack("<f", value))[0]


def external(entity_id: int, scene: int = 0) -> EntityReference:
    return EntityReference(entity_id=entity_id, external_scene_index=scene, entity_index=-2)


IDENTITY = {
    "XAxis": {"x": 1.0, "y": 0.0, "z": 0.0},
    "YAxis": {"x": 0.0, "y": 1.0, "z": 0.0},
    "ZAxis": {"x": 0.0, "y": 0.0, "z": 1.0},
    "Trans": {"x": 0.0, "y": 0.0, "z": 0.0},
}

GUID = {
    "_a": 0x01234567, "_b": 0x89AB, "_c": 0xCDEF,
    "_d": 0x01, "_e": 0x23, "_f": 0x45, "_g": 0x67, "_h": 0x89, "_i": 0xAB, "_j": 0xCD, "_k": 0xEF,
}


def build_records() -> Tuple[BehaviorRecord, PropertyRecord]:
    """A three entity scene: Scene (root) with Light and Trigger below it.

    Dependency tables are in the order the encoder writes them, so the pair
    survives decode -> encode unchanged.
    """

    factory_deps = [
        ResourceReference(BLUEPRINT_HASH),
        ResourceReference(SCENE_HASH),
        ResourceReference("00F0000000000001"),  # Scene factory
        ResourceReference("00F0000000000002"),  # Light factory
        ResourceReference("00F0000000000003"),  # Trigger factory
        ResourceReference("00A0000000000099", "5F"),  # sound, used by m_pSound
        ResourceReference("00E0000000000042"),  # unreferenced extra
    ]
    blueprint_deps = [
        ResourceReference(SCENE_HASH),
        ResourceReference("00B0000000000001"),
        ResourceReference("00B0000000000002"),
        ResourceReference("00B0000000000003"),
    ]
    root_parent = EntityReference()

    factory_entities = [
        FactorySubEntity(
            logical_parent=root_parent,
            entity_type_resource_index=2,
            property_values=[
                PropertyValue("m_sName", Variant("ZString", "Door")),
                PropertyValue("m_mTransform", Variant("SMatrix43", IDENTITY)),
                PropertyValue("health", Variant("int32", 100)),
            ],
        ),
        FactorySubEntity(
            logical_parent=EntityReference.local(0),
            entity_type_resource_index=3,
            property_values=[
                PropertyValue("m_Color", Variant("SColorRGB", {"r": 1.0, "g": f32(128 / 255), "b": 0.0})),
                PropertyValue("m_fIntensity", Variant("float32", 0.75)),
            ],
            post_init_property_values=[PropertyValue("m_bEnabled", Variant("bool", True))],
            platform_specific_property_values=[
                PlatformPropertyValue("PS4", False, PropertyValue("m_fIntensity", Variant("float32", 0.5))),
            ],
        ),
        FactorySubEntity(
            logical_parent=EntityReference.local(0),
            entity_type_resource_index=4,
            property_values=[
                PropertyValue("m_rTarget", Variant("SEntityTemplateReference", EntityReference.local(1))),
                PropertyValue("m_rRemote", Variant("SEntityTemplateReference", external(0xABC))),
                PropertyValue("m_aValues", Variant("TArray<int32>", [1, 2, 3])),
                PropertyValue("m_pSound", Variant("ZRuntimeResourceID", {"m_IDLow": 5, "m_IDHigh": 0})),
                PropertyValue(1234567, Variant("float64", 0.1)),
                PropertyValue("m_id", Variant("ZGuid", GUID)),
                PropertyValue("m_vPayload", Variant("ZVariant", Variant("ZString", "hi"))),
            ],
        ),
    ]

    blueprint_entities = [
        BlueprintSubEntity(
            logical_parent=root_parent,
            entity_type_resource_index=1,
            entity_name="Scene",
            entity_id=ROOT_ID,
            property_aliases=[PropertyAliasRecord("Intensity", 1, "m_fIntensity")],
            exposed_entities=[ExposedEntityRecord("Light", False, [EntityReference.local(1)])],
            exposed_interfaces=[("ILight", 1)],
            entity_subsets=[("AudioEmitters", [1, 2])],
        ),
        BlueprintSubEntity(
            logical_parent=EntityReference.local(0),
            entity_type_resource_index=2,
            entity_name="Light",
        ),
        BlueprintSubEntity(
            logical_parent=EntityReference.local(0),
            entity_type_resource_index=3,
            entity_name="Trigger",
            entity_id=TRIGGER_ID,
            editor_only=True,
        ),
    ]

    behavior = BehaviorRecord(
        resource_id=BLUEPRINT_HASH,
        sub_type=1,
        root_entity_index=0,
        sub_entities=blueprint_entities,
        external_scene_type_indices_in_resource_header=[0],
        pin_connections=[
            PinConnectionRecord(2, 1, "OnEnter", "TurnOn"),
            PinConnectionRecord(2, 1, "OnEnter", "SetIntensity", Variant("float32", 1.0)),
        ],
        input_pin_forwardings=[PinConnectionRecord(0, 2, "Open", "Enable")],
        pin_connection_overrides=[
            ExternalPinConnectionRecord(EntityReference.local(2), external(0xDEF), "OnExit", "Close"),
            ExternalPinConnectionRecord(external(0x444), external(0x555), "A", "B"),
        ],
        override_deletes=[external(0x333)],
        dependencies=blueprint_deps,
    )
    prop = PropertyRecord(
        resource_id=FACTORY_HASH,
        sub_type=1,
        blueprint_index_in_resource_header=0,
        root_entity_index=0,
        sub_entities=factory_entities,
        property_overrides=[
            PropertyOverrideRecord(external(0x111), PropertyValue("m_bVisible", Variant("bool", False))),
            PropertyOverrideRecord(external(0x222), PropertyValue("m_bVisible", Variant("bool", False))),
        ],
        external_scene_type_indices_in_resource_header=[1],
        dependencies=factory_deps,
    )
    return behavior, prop


@pytest.fixture
def records() -> Tuple[BehaviorRecord, PropertyRecord]:
    return build_records()


@pytest.fixture
def graph(records) -> EntityGraph:
    return decode_graph(*records)


def make_graph(**entities: SubEntity) -> EntityGraph:
    return EntityGraph(
        factory_hash=FACTORY_HASH,
        blueprint_hash=BLUEPRINT_HASH,
        root_id=next(iter(entities)),
        sub_entities=dict(entities),
    )


def entity(name: str, parent: Optional[str] = None, **properties: Property) -> SubEntity:
    return SubEntity(
        name=name,
        factory=ResourceReference("00F0000000000001"),
        blueprint=ResourceReference("00B0000000000001"),
        parent=Ref(parent) if parent else None,
        properties=dict(properties),
    )


@pytest.fixture
def small_graph():
    """Factory for hand-built graphs: ``small_graph(root=entity(...), ...)``."""
    return make_graph


@pytest.fixture
def new_entity():
    return entity
