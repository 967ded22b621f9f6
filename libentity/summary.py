from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .model import EntityGraph, PinMap, values_equal
from .overlay import resolve_for_platform


@dataclass
class GraphSummary:
    factory_hash: str
    blueprint_hash: str
    sub_type: str
    root_id: str
    root_name: str
    entity_count: int
    external_scene_count: int
    property_count: int
    platform_override_count: int
    pin_count: int
    property_override_count: int
    comment_count: int
    # (factory resource, entity count), most used first
    factories: List[Tuple[str, int]] = field(default_factory=list)
    platforms: List[str] = field(default_factory=list)
    # set when summarized for one platform: properties whose effective value differs there
    platform: Optional[str] = None
    changed_on_platform: int = 0


def _wires(pins: PinMap) -> int:
    return sum(len(targets) for by_pin in pins.values() for targets in by_pin.values())


def _changed_on(graph: EntityGraph, platform: str) -> int:
    changed = 0
    for e in graph.sub_entities.values():
        effective = resolve_for_platform(e.properties, e.platform_specific_properties, platform)
        for name, prop in e.properties.items():
            other = effective[name]
            if other.type != prop.type or not values_equal(other.value, prop.value):
                changed += 1
    return changed


def summarize_graph(graph: EntityGraph, platform: Optional[str] = None) -> GraphSummary:
    entities = graph.sub_entities.values()
    factories = Counter(e.factory.resource for e in entities)
    root = graph.sub_entities.get(graph.root_id)

    return GraphSummary(
        factory_hash=graph.factory_hash,
        blueprint_hash=graph.blueprint_hash,
        sub_type=graph.sub_type.value,
        root_id=graph.root_id,
        root_name=root.name if root is not None else "(missing)",
        entity_count=len(graph.sub_entities),
        external_scene_count=len(graph.external_scenes),
        property_count=sum(len(e.properties) for e in entities),
        platform_override_count=sum(
            len(props) for e in entities for props in e.platform_specific_properties.values()
        ),
        pin_count=sum(_wires(e.events) + _wires(e.input_copying) + _wires(e.output_copying) for e in entities)
        + len(graph.pin_connection_overrides),
        property_override_count=sum(len(o.entities) * len(o.properties) for o in graph.property_overrides),
        comment_count=len(graph.comments),
        factories=sorted(factories.items(), key=lambda kv: (-kv[1], kv[0])),
        platforms=sorted({p for e in entities for p in e.platform_specific_properties}),
        platform=platform,
        changed_on_platform=_changed_on(graph, platform) if platform else 0,
    )
