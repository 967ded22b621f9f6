from __future__ import annotations

import math

import pytest

from conftest import BLUEPRINT_HASH, IDENTITY, SCENE_HASH, build_records, external
from libentity.decoder import decode_graph
from libentity.document import dumps, graphs_equal, loads
from libentity.encoder import encode_graph
from libentity.errors import (
    DecodeError,
    EncodeError,
    MalformedReference,
    OrphanedOverride,
    UnresolvedReference,
    UnsupportedType,
)
from libentity.identifiers import derive_entity_id, format_id, id_to_u64
from libentity.model import (
    Comment,
    ExposedEntity,
    PinConnectionOverride,
    PinTarget,
    Property,
    PropertyAlias,
    PropertyOverride,
    Ref,
    ResourceReference,
    SimpleProperty,
    SubType,
)
from libentity.options import ConvertOptions
from libentity.overlay import resolve_for_platform
from libentity.records import EntityReference, PlatformPropertyValue, PropertyValue, Variant
from libentity.summary import summarize_graph

ROOT = "feedbeef00000001"
TRIGGER = "00000000000000c3"
LIGHT = derive_entity_id(BLUEPRINT_HASH, [0, 1])


def _property(records, entity_index, name):
    _, prop = records
    for pv in prop.sub_entities[entity_index].property_values:
        if pv.property_id == name:
            return pv
    raise KeyError(name)


def test_decode_assigns_ids() -> None:
    graph = decode_graph(*build_records())
    assert list(graph.sub_entities) == [ROOT, LIGHT, TRIGGER]
    assert graph.root_id == ROOT
    assert graph.sub_type is SubType.SCENE
    assert graph.external_scenes == [SCENE_HASH]
    assert decode_graph(*build_records()).sub_entities.keys() == graph.sub_entities.keys()


def test_decode_resolves_references(graph) -> None:
    root, light, trigger = (graph.sub_entities[i] for i in (ROOT, LIGHT, TRIGGER))

    assert light.parent == Ref(ROOT)
    assert root.parent is None
    assert trigger.properties["m_rTarget"] == Property("SEntityTemplateReference", LIGHT)
    assert trigger.properties["m_rRemote"].value == {
        "ref": "0000000000000abc",
        "externalScene": SCENE_HASH,
        "exposedEntity": None,
    }
    assert root.property_aliases["Intensity"][0].original_entity == LIGHT
    assert root.exposed_entities["Light"].refers_to == [Ref(LIGHT)]
    assert root.exposed_interfaces == {"ILight": LIGHT}
    assert root.subsets == {"AudioEmitters": [LIGHT, TRIGGER]}
    assert trigger.editor_only


def test_decode_value_forms(graph) -> None:
    light, trigger = graph.sub_entities[LIGHT], graph.sub_entities[TRIGGER]

    assert light.properties["m_Color"].value == "#ff8000"
    assert light.properties["m_bEnabled"] == Property("bool", True, post_init=True)
    assert light.platform_specific_properties == {"PS4": {"m_fIntensity": Property("float32", 0.5)}}
    assert trigger.properties["m_pSound"].value == {"resource": "00A0000000000099", "flag": "5F"}
    assert trigger.properties["m_id"].value == "01234567-89ab-cdef-0123-456789abcdef"
    assert trigger.properties["m_vPayload"].value == {"type": "ZString", "value": "hi"}
    assert trigger.properties["1234567"] == Property("float64", 0.1)
    assert trigger.properties["m_aValues"].value == [1, 2, 3]


def test_decode_pins_and_overrides(graph) -> None:
    trigger = graph.sub_entities[TRIGGER]

    assert trigger.events["OnEnter"]["TurnOn"] == [PinTarget(Ref(LIGHT))]
    assert trigger.events["OnEnter"]["SetIntensity"][0].value.value == 1.0
    # local source wired into the external scene stays with the source
    assert trigger.events["OnExit"]["Close"] == [PinTarget(Ref("0000000000000def", SCENE_HASH))]
    assert graph.sub_entities[ROOT].input_copying == {"Open": {"Enable": [PinTarget(Ref(TRIGGER))]}}

    assert len(graph.pin_connection_overrides) == 1
    assert graph.pin_connection_overrides[0].from_entity == Ref("0000000000000444", SCENE_HASH)

    # two owners with the same override set end up in one group
    assert len(graph.property_overrides) == 1
    assert [r.entity_id for r in graph.property_overrides[0].entities] == [
        "0000000000000111",
        "0000000000000222",
    ]
    assert graph.override_deletes == [Ref("0000000000000333", SCENE_HASH)]


def test_unreferenced_dependencies_are_kept_as_extras(graph) -> None:
    assert graph.extra_factory_dependencies == [ResourceReference("00E0000000000042")]
    assert graph.extra_blueprint_dependencies == []


def test_encode_of_decoded_records_is_unchanged(records) -> None:
    assert encode_graph(decode_graph(*records)) == records


def test_document_text_keeps_the_graph(records, graph) -> None:
    again = loads(dumps(graph))
    assert graphs_equal(again, graph)
    assert encode_graph(again) == records


def test_derived_ids_are_not_written(records, graph) -> None:
    behavior, _ = encode_graph(graph)
    assert [e.entity_id for e in behavior.sub_entities] == [int(ROOT, 16), None, int(TRIGGER, 16)]


def test_base_tables_keep_their_order(records, graph) -> None:
    behavior, prop = records
    factory_base = list(reversed(prop.dependencies))
    blueprint_base = list(reversed(behavior.dependencies))

    new_behavior, new_prop = encode_graph(graph, factory_base=factory_base, blueprint_base=blueprint_base)
    assert new_prop.dependencies == factory_base
    assert new_behavior.dependencies == blueprint_base
    assert new_prop.blueprint_index_in_resource_header == len(factory_base) - 1
    assert graphs_equal(decode_graph(new_behavior, new_prop), graph)


def test_hand_written_ids_are_hashed(small_graph, new_entity) -> None:
    g = small_graph(door=new_entity("Door"), frame=new_entity("Frame", parent="door"))
    again = decode_graph(*encode_graph(g))

    door, frame = format_id(id_to_u64("door")), format_id(id_to_u64("frame"))
    assert list(again.sub_entities) == [door, frame]
    assert again.root_id == door
    assert again.sub_entities[frame].parent == Ref(door)


def test_local_reference_out_of_range(records) -> None:
    _property(records, 2, "m_rTarget").value = Variant("SEntityTemplateReference", EntityReference.local(3))
    with pytest.raises(MalformedReference) as err:
        decode_graph(*records)
    assert err.value.entity_id == TRIGGER
    assert err.value.index == 3


def test_external_scene_out_of_range(records) -> None:
    _property(records, 2, "m_rRemote").value = Variant("SEntityTemplateReference", external(0xABC, scene=4))
    with pytest.raises(MalformedReference):
        decode_graph(*records)


def test_non_canonical_null_reference(records) -> None:
    _property(records, 2, "m_rTarget").value = Variant(
        "SEntityTemplateReference", EntityReference(entity_id=7)
    )
    with pytest.raises(DecodeError):
        decode_graph(*records)


def test_duplicate_entity_ids(records) -> None:
    behavior, _ = records
    behavior.sub_entities[1].entity_id = int(ROOT, 16)
    with pytest.raises(DecodeError) as err:
        decode_graph(*records)
    assert err.value.entity_id == ROOT


def test_record_disagreement(records) -> None:
    behavior, prop = records
    prop.sub_entities.pop()
    with pytest.raises(DecodeError):
        decode_graph(behavior, prop)


def test_unknown_property_type(records) -> None:
    _, prop = records
    prop.sub_entities[0].property_values.append(PropertyValue("m_x", Variant("ZMystery", 1)))
    with pytest.raises(UnsupportedType):
        decode_graph(*records)


def test_runtime_resource_ids(records) -> None:
    sound = _property(records, 2, "m_pSound")
    sound.value = Variant("ZRuntimeResourceID", {"m_IDLow": 0xFFFFFFFF, "m_IDHigh": 0xFFFFFFFF})
    graph = decode_graph(*records)
    assert graph.sub_entities[TRIGGER].properties["m_pSound"].value is None

    _, prop = encode_graph(graph)
    encoded = [pv for pv in prop.sub_entities[2].property_values if pv.property_id == "m_pSound"][0]
    assert encoded.value.value == {"m_IDLow": 0xFFFFFFFF, "m_IDHigh": 0xFFFFFFFF}

    sound.value = Variant("ZRuntimeResourceID", {"m_IDLow": 5, "m_IDHigh": 1})
    with pytest.raises(MalformedReference):
        decode_graph(*records)


def test_inexact_color_stays_a_struct(records) -> None:
    color = _property(records, 1, "m_Color")
    color.value = Variant("SColorRGB", {"r": 0.3, "g": 0.0, "b": 1.0})
    graph = decode_graph(*records)
    assert graph.sub_entities[LIGHT].properties["m_Color"].value == {"r": 0.3, "g": 0.0, "b": 1.0}


def test_euler_matrices(records) -> None:
    _property(records, 0, "m_mTransform").value = Variant(
        "SMatrix43",
        {
            "XAxis": {"x": 0.0, "y": 1.0, "z": 0.0},
            "YAxis": {"x": -1.0, "y": 0.0, "z": 0.0},
            "ZAxis": {"x": 0.0, "y": 0.0, "z": 1.0},
            "Trans": {"x": 1.0, "y": 2.0, "z": 3.0},
        },
    )
    graph = decode_graph(*records, ConvertOptions(euler_matrices=True))
    value = graph.sub_entities[ROOT].properties["m_mTransform"].value
    assert value["rotation"] == pytest.approx({"x": 0.0, "y": 0.0, "z": 90.0})
    assert value["position"] == {"x": 1.0, "y": 2.0, "z": 3.0}
    assert value["scale"] == pytest.approx({"x": 1.0, "y": 1.0, "z": 1.0})

    _, prop = encode_graph(graph)
    matrix = prop.sub_entities[0].property_values[1].value.value
    assert matrix["XAxis"] == pytest.approx({"x": 0.0, "y": 1.0, "z": 0.0}, abs=1e-9)
    assert matrix["YAxis"] == pytest.approx({"x": -1.0, "y": 0.0, "z": 0.0}, abs=1e-9)


def test_euler_unit_scale_can_be_dropped(records) -> None:
    graph = decode_graph(*records, ConvertOptions(euler_matrices=True, keep_scale=False))
    value = graph.sub_entities[ROOT].properties["m_mTransform"].value
    assert "scale" not in value

    _, prop = encode_graph(graph)
    matrix = prop.sub_entities[0].property_values[1].value.value
    for axis, expected in IDENTITY.items():
        assert matrix[axis] == pytest.approx(expected, abs=1e-9)


def test_orphaned_platform_override(graph) -> None:
    light = graph.sub_entities[LIGHT]
    light.platform_specific_properties["PS4"]["m_fMissing"] = Property("float32", 1.0)
    with pytest.raises(OrphanedOverride) as err:
        encode_graph(graph)
    assert err.value.entity_id == LIGHT


def test_unknown_local_reference(graph) -> None:
    graph.sub_entities[LIGHT].parent = Ref("0000000000000999")
    with pytest.raises(UnresolvedReference):
        encode_graph(graph)


def test_unlisted_external_scene(graph) -> None:
    graph.override_deletes.append(Ref("0000000000000001", "00FFFFFFFFFFFFFF"))
    with pytest.raises(UnresolvedReference):
        encode_graph(graph)


def test_parent_cycle(graph) -> None:
    graph.sub_entities[ROOT].parent = Ref(LIGHT)
    with pytest.raises(EncodeError):
        encode_graph(graph)


def test_missing_root(graph) -> None:
    graph.root_id = "0000000000000999"
    with pytest.raises(EncodeError):
        encode_graph(graph)


def test_comments_are_checked_but_not_written(records, graph) -> None:
    graph.comments.append(Comment(Ref(LIGHT), "Note", "Dimmed at night"))
    assert encode_graph(graph) == records

    graph.comments.append(Comment(Ref("0000000000000999"), "Note", "Dangling"))
    with pytest.raises(UnresolvedReference):
        encode_graph(graph)


def test_local_to_external_override_belongs_in_events(graph) -> None:
    graph.pin_connection_overrides.append(
        PinConnectionOverride(Ref(TRIGGER), "OnExit", Ref("0000000000000def", SCENE_HASH), "Close")
    )
    with pytest.raises(EncodeError):
        encode_graph(graph)


def test_orphaned_platform_override_in_records(records) -> None:
    _, prop = records
    prop.sub_entities[1].platform_specific_property_values.append(
        PlatformPropertyValue("PS4", False, PropertyValue("m_fRange", Variant("float32", 4.0)))
    )
    with pytest.raises(OrphanedOverride):
        decode_graph(*records)


def test_platform_overlay(graph) -> None:
    light = graph.sub_entities[LIGHT]
    on_ps4 = resolve_for_platform(light.properties, light.platform_specific_properties, "PS4")
    assert list(on_ps4) == list(light.properties)
    assert on_ps4["m_fIntensity"].value == 0.5
    assert resolve_for_platform(light.properties, light.platform_specific_properties, "PC") == light.properties


def _pin_to_out_of_range(behavior):
    behavior.pin_connections[0].to_index = 3
    return "events", TRIGGER, 3


def _pin_from_negative(behavior):
    behavior.pin_connections[0].from_index = -1
    return "events", None, -1


def _forwarding_out_of_range(behavior):
    behavior.input_pin_forwardings[0].to_index = 8
    return "inputCopying", ROOT, 8


def _alias_out_of_range(behavior):
    behavior.sub_entities[0].property_aliases[0].entity_index = 5
    return "propertyAliases", ROOT, 5


def _interface_out_of_range(behavior):
    behavior.sub_entities[0].exposed_interfaces = [("ILight", 7)]
    return "exposedInterfaces", ROOT, 7


def _subset_out_of_range(behavior):
    behavior.sub_entities[0].entity_subsets = [("AudioEmitters", [1, 9])]
    return "subsets", ROOT, 9


@pytest.mark.parametrize(
    "corrupt",
    [
        _pin_to_out_of_range,
        _pin_from_negative,
        _forwarding_out_of_range,
        _alias_out_of_range,
        _interface_out_of_range,
        _subset_out_of_range,
    ],
)
def test_bad_entity_indices(records, corrupt) -> None:
    behavior, prop = records
    field, entity_id, index = corrupt(behavior)
    with pytest.raises(MalformedReference) as err:
        decode_graph(behavior, prop)
    assert err.value.field == field
    assert err.value.index == index
    if entity_id is not None:
        assert err.value.entity_id == entity_id


def test_local_wiring_survives_encode(small_graph, new_entity) -> None:
    root_id, child_id = "00000000000000a1", "00000000000000a2"
    root = new_entity("Root", m_rTarget=Property("SEntityTemplateReference", child_id))
    root.property_aliases = {"Target": [PropertyAlias("m_rTarget", child_id)]}
    root.exposed_entities = {"Child": ExposedEntity(False, [Ref(child_id)])}
    root.exposed_interfaces = {"IChild": child_id}
    root.subsets = {"Kids": [child_id]}
    child = new_entity("Child", parent=root_id)
    child.events = {"OnFire": {"Reset": [PinTarget(Ref(root_id))]}}
    child.output_copying = {"Done": {"Done": [PinTarget(Ref(root_id))]}}
    g = small_graph(**{root_id: root, child_id: child})

    behavior, prop = encode_graph(g)
    assert behavior.pin_connections[0].from_index == 1
    assert behavior.pin_connections[0].to_index == 0
    assert graphs_equal(decode_graph(behavior, prop), g)


def test_string_property_names_stay_strings(records) -> None:
    _, prop = records
    for name in ("007", "4294967296", "²", "-1", "7\n"):
        prop.sub_entities[0].property_values.append(PropertyValue(name, Variant("int32", 1)))

    graph = decode_graph(*records)
    names = list(graph.sub_entities[ROOT].properties)
    assert names[-5:] == ["007", "4294967296", "²", "-1", "7\n"]
    assert encode_graph(graph) == records


def test_numeric_property_names_go_back_to_numbers(graph) -> None:
    graph.sub_entities[ROOT].properties["7"] = Property("bool", True)
    _, prop = encode_graph(graph)
    assert prop.sub_entities[0].property_values[-1].property_id == 7


def test_string_name_that_reads_as_a_number(records) -> None:
    _, prop = records
    prop.sub_entities[0].property_values.append(PropertyValue("7", Variant("int32", 1)))
    with pytest.raises(DecodeError) as err:
        decode_graph(*records)
    assert err.value.entity_id == ROOT


def test_negative_zero_color_stays_a_struct(records) -> None:
    color = _property(records, 1, "m_Color")
    color.value = Variant("SColorRGB", {"r": -0.0, "g": 0.0, "b": 1.0})
    graph = decode_graph(*records)
    assert graph.sub_entities[LIGHT].properties["m_Color"].value == {"r": -0.0, "g": 0.0, "b": 1.0}

    _, prop = encode_graph(graph)
    r = prop.sub_entities[1].property_values[0].value.value["r"]
    assert math.copysign(1.0, r) == -1.0
    assert encode_graph(graph) == records


def test_repository_ids_are_written_as_read(records) -> None:
    _, prop = records
    prop.sub_entities[0].property_values.append(
        PropertyValue("m_rid", Variant("ZRepositoryID", "ABCDEF01-2345-6789-ABCD-EF0123456789"))
    )
    graph = decode_graph(*records)
    assert graph.sub_entities[ROOT].properties["m_rid"].value == "ABCDEF01-2345-6789-ABCD-EF0123456789"
    assert encode_graph(graph) == records

    prop.sub_entities[0].property_values[-1].value = Variant("ZRepositoryID", "not-a-uuid")
    with pytest.raises(DecodeError):
        decode_graph(*records)


def test_owner_overridden_twice(graph) -> None:
    graph.property_overrides.append(
        PropertyOverride([Ref("0000000000000111", SCENE_HASH)], {"m_bVisible": SimpleProperty("bool", True)})
    )
    with pytest.raises(EncodeError) as err:
        encode_graph(graph)
    assert err.value.entity_id == "0000000000000111"


@pytest.mark.parametrize("value", [10 ** 400, 1e300])
def test_number_too_large_for_a_float(graph, value) -> None:
    graph.sub_entities[LIGHT].properties["m_fIntensity"] = Property("float32", value)
    with pytest.raises(EncodeError) as err:
        encode_graph(graph)
    assert err.value.entity_id == LIGHT


def test_summary_counts_platform_changes(graph) -> None:
    s = summarize_graph(graph, platform="PS4")
    assert s.platforms == ["PS4"]
    assert s.changed_on_platform == 1
    assert summarize_graph(graph, platform="XboxOne").changed_on_platform == 0
    assert summarize_graph(graph).platform is None
