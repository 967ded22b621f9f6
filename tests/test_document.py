from __future__ import annotations

import json

import pytest

from libentity.document import (
    canonical_text,
    dumps,
    graph_digest,
    graph_from_document,
    graph_to_document,
    graphs_equal,
    loads,
    ref_from_json,
    ref_to_json,
    resource_ref_from_json,
    resource_ref_to_json,
)
from libentity.errors import DocumentError, UnsupportedType
from libentity.model import Property, Ref, ResourceReference, values_equal


def test_reference_forms() -> None:
    assert ref_to_json(None) is None
    assert ref_to_json(Ref("00000000000000c3")) == "00000000000000c3"
    external = Ref("0000000000000abc", "0095A1B2C3D4E5F6", "Door")
    assert ref_to_json(external) == {
        "ref": "0000000000000abc",
        "externalScene": "0095A1B2C3D4E5F6",
        "exposedEntity": "Door",
    }
    assert ref_from_json(ref_to_json(external)) == external
    with pytest.raises(DocumentError):
        ref_from_json(12)


def test_resource_reference_forms() -> None:
    assert resource_ref_to_json(ResourceReference("00A0")) == "00A0"
    assert resource_ref_to_json(ResourceReference("00A0", "5F")) == {"resource": "00A0", "flag": "5F"}
    assert resource_ref_from_json({"resource": "00A0"}) == ResourceReference("00A0")
    with pytest.raises(DocumentError):
        resource_ref_from_json({"flag": "1F"})


def test_text_keeps_everything(graph) -> None:
    text = dumps(graph)
    assert text.endswith("\n")
    again = loads(text)
    assert graphs_equal(again, graph)
    assert list(again.sub_entities) == list(graph.sub_entities)
    assert dumps(again) == text


def test_empty_collections_are_left_out(small_graph, new_entity) -> None:
    doc = graph_to_document(small_graph(root=new_entity("Root")))
    assert doc["entities"]["root"] == {
        "parent": None,
        "name": "Root",
        "factory": "00F0000000000001",
        "blueprint": "00B0000000000001",
    }
    assert doc["formatVersion"] == 1
    assert doc["comments"] == []


def test_post_init_only_when_set(small_graph, new_entity) -> None:
    g = small_graph(root=new_entity("Root", a=Property("bool", True), b=Property("bool", True, post_init=True)))
    props = graph_to_document(g)["entities"]["root"]["properties"]
    assert props == {"a": {"type": "bool", "value": True}, "b": {"type": "bool", "value": True, "postInit": True}}


def test_format_version_is_checked(graph) -> None:
    doc = graph_to_document(graph)
    doc["formatVersion"] = 2
    with pytest.raises(DocumentError) as err:
        graph_from_document(doc)
    assert err.value.field == "formatVersion"


def test_shapes_are_checked(graph) -> None:
    doc = graph_to_document(graph)
    entity_id = next(iter(doc["entities"]))
    doc["entities"][entity_id]["editorOnly"] = "yes"
    with pytest.raises(DocumentError) as err:
        graph_from_document(doc)
    assert err.value.entity_id == entity_id
    assert err.value.field == "editorOnly"

    with pytest.raises(DocumentError):
        loads("not json")
    with pytest.raises(DocumentError):
        loads(json.dumps({"formatVersion": 1, "factoryHash": "a"}))


def test_property_types_are_checked(graph) -> None:
    doc = graph_to_document(graph)
    entity_id = next(iter(doc["entities"]))
    doc["entities"][entity_id]["properties"]["m_sName"]["type"] = "ZSomething"
    with pytest.raises(UnsupportedType):
        graph_from_document(doc)


def test_equality_ignores_key_order(graph) -> None:
    doc = graph_to_document(graph)
    doc["entities"] = dict(reversed(list(doc["entities"].items())))
    reordered = graph_from_document(doc)
    assert graphs_equal(reordered, graph)
    assert canonical_text(reordered) == canonical_text(graph)
    assert graph_digest(reordered) == graph_digest(graph)


def test_values_equal_is_strict_on_scalars() -> None:
    assert values_equal({"a": [1, 2.5]}, {"a": [1, 2.5]})
    assert not values_equal(1, 1.0)
    assert not values_equal(True, 1)
    assert not values_equal(0.0, -0.0)
    assert values_equal(float("nan"), float("nan"))
    assert not values_equal([1, 2], [2, 1])
