from __future__ import annotations

import struct

import pytest

from libentity.errors import DecodeError, EncodeError, UnsupportedType
from libentity.reader import MAGIC, decode_structural, read_container, read_resource
from libentity.records import PropertyValue, Variant
from libentity.roundtrip import roundtrip_bytes
from libentity.writer import encode_structural, write_resource


def test_records_survive_bytes(records) -> None:
    data = encode_structural(*records)
    assert data[:4] == MAGIC
    assert decode_structural(data) == records
    assert encode_structural(*decode_structural(data)) == data


def test_container_layout(records) -> None:
    header, chunks = read_container(encode_structural(*records))
    assert header.version == 1
    assert [c.type_tag for c in chunks] == ["TBLU", "TEMP"]
    for chunk in chunks:
        assert chunk.length == len(chunk.body) + 4
        assert chunk.raw[:4] == chunk.type_tag.encode("ascii")


def test_write_and_read_file(tmp_path, records) -> None:
    path = tmp_path / "scene.qntr"
    write_resource(*records, str(path))
    assert read_resource(str(path)) == records


def test_roundtrip_is_identical(records) -> None:
    data = encode_structural(*records)
    report = roundtrip_bytes(data)
    assert report.identical
    assert report.graphs_equal
    assert report.output == data

    # canonical tables come back the same without a base too
    assert roundtrip_bytes(data, keep_indices=False).identical


def test_roundtrip_keeps_existing_table_order(records) -> None:
    behavior, prop = records
    prop.dependencies.reverse()
    # indices into the reversed table
    last = len(prop.dependencies) - 1
    prop.blueprint_index_in_resource_header = last
    prop.external_scene_type_indices_in_resource_header = [last - 1]
    for i, entity in enumerate(prop.sub_entities):
        entity.entity_type_resource_index = last - 2 - i
    sound = [pv for pv in prop.sub_entities[2].property_values if pv.property_id == "m_pSound"][0]
    sound.value = Variant("ZRuntimeResourceID", {"m_IDLow": 1, "m_IDHigh": 0})

    data = encode_structural(behavior, prop)
    assert roundtrip_bytes(data).identical
    rebuilt = roundtrip_bytes(data, keep_indices=False)
    assert not rebuilt.identical
    assert rebuilt.graphs_equal


def test_bad_magic(records) -> None:
    data = encode_structural(*records)
    with pytest.raises(DecodeError):
        decode_structural(b"XXXX" + data[4:])


def test_truncated(records) -> None:
    data = encode_structural(*records)
    for cut in (6, 12, len(data) // 2, len(data) - 1):
        with pytest.raises(DecodeError):
            decode_structural(data[:cut])


def test_missing_and_unknown_chunks(records) -> None:
    data = encode_structural(*records)
    _, chunks = read_container(data)
    head = data[:8]

    with pytest.raises(DecodeError, match="Missing TEMP"):
        decode_structural(head + chunks[0].raw)
    with pytest.raises(DecodeError, match="appears twice"):
        decode_structural(head + chunks[0].raw + chunks[0].raw + chunks[1].raw)

    unknown = struct.pack("<ii", struct.unpack("<i", b"ABCD")[0], 8) + b"\0\0\0\0"
    with pytest.raises(DecodeError, match="Unknown chunk"):
        decode_structural(data + unknown)


def test_trailing_bytes_in_a_record(records) -> None:
    data = encode_structural(*records)
    _, chunks = read_container(data)
    body = chunks[1].body + b"\0"
    padded = struct.pack("<ii", chunks[1].type_int, len(body) + 4) + body
    with pytest.raises(DecodeError, match="trailing"):
        decode_structural(data[:8] + chunks[0].raw + padded)


def test_unknown_type_tag_in_bytes(records) -> None:
    behavior, prop = records
    prop.sub_entities[0].property_values.append(PropertyValue("m_x", Variant("int32", 1)))
    data = encode_structural(behavior, prop)
    tampered = data.replace(b"\x05\x00\x00\x00int32", b"\x05\x00\x00\x00int33")
    with pytest.raises(UnsupportedType):
        decode_structural(tampered)


def test_values_that_do_not_fit(records) -> None:
    _, prop = records
    prop.sub_entities[0].property_values[2] = PropertyValue("health", Variant("int32", 2 ** 40))
    with pytest.raises(EncodeError):
        encode_structural(*records)


@pytest.mark.parametrize("type_name", ["float32", "float64"])
def test_float_edge_values_keep_their_bytes(records, type_name) -> None:
    _, prop = records
    for name, value in (("m_fNegZero", -0.0), ("m_fInf", float("inf")),
                        ("m_fNegInf", float("-inf")), ("m_fNaN", float("nan"))):
        prop.sub_entities[0].property_values.append(PropertyValue(name, Variant(type_name, value)))

    data = encode_structural(*records)
    report = roundtrip_bytes(data)
    assert report.identical
    assert report.graphs_equal
