"""libentity.encoder

EntityGraph -> structural records.

Positions are handed out in ``sub_entities`` order and live only for the
duration of one call. Every id in the graph is resolved through that table,
so a reference to an id that is not in the graph is an UnresolvedReference
rather than a silently wrong index.

Output is a pure function of the graph (and the optional base dependency
tables): the same input always gives the same records.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import EncodeError
from .identifiers import (
    derive_entity_id,
    id_to_u64,
    index_path,
    is_hex_id,
    is_numeric_property_name,
    normalize_id,
)
from .model import DEFAULT_FLAG, EntityGraph, PinMap, Ref, ResourceReference, find_parent_cycle
from .overlay import check_overlays
from .records import (
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
    PropertyId,
)
from .variants import (
    EncodeContext,
    encode_optional_variant,
    encode_variant,
    graph_resource_references,
)

_log = logging.getLogger(__name__)


class DependencyTable:
    """An ordered, de-duplicated dependency list.

    Entries of ``base`` keep their positions; anything added that is not
    already present is appended. Encoding a decoded graph with the tables of
    the records it came from as base therefore keeps every existing index.
    """

    def __init__(self, base: Optional[Iterable[ResourceReference]] = None) -> None:
        self._entries: List[ResourceReference] = list(base or [])
        self._index: Dict[ResourceReference, int] = {}
        for i, ref in enumerate(self._entries):
            self._index.setdefault(ref, i)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[ResourceReference]:
        return list(self._entries)

    def add(self, ref: ResourceReference) -> int:
        index = self._index.get(ref)
        if index is None:
            index = len(self._entries)
            self._entries.append(ref)
            self._index[ref] = index
        return index

    def add_resource(self, resource: str) -> int:
        """Index of ``resource`` under any flag, appended with the default flag if absent."""
        for i, ref in enumerate(self._entries):
            if ref.resource == resource:
                return i
        return self.add(ResourceReference(resource, DEFAULT_FLAG))

    def index_of(self, ref: ResourceReference, **ctx) -> int:
        try:
            return self._index[ref]
        except KeyError as exc:
            raise EncodeError(f"{ref.resource} is not in the dependency table", **ctx) from exc


def property_id(name: str) -> PropertyId:
    """Numeric property names go back to numeric ids."""
    return int(name) if is_numeric_property_name(name) else name


def _explicit_ids(graph: EntityGraph, index_of: Dict[str, int]) -> List[Optional[int]]:
    ids = list(graph.sub_entities)
    count = len(ids)

    def parent_of(index: int) -> Optional[int]:
        parent = graph.sub_entities[ids[index]].parent
        if parent is None or not parent.is_local:
            return None
        return index_of.get(parent.entity_id)

    out: List[Optional[int]] = []
    used: Dict[int, str] = {}
    for index, entity_id in enumerate(ids):
        derived = derive_entity_id(graph.blueprint_hash, index_path(index, parent_of, count))
        if is_hex_id(entity_id) and normalize_id(entity_id) == derived:
            value = int(derived, 16)
            out.append(None)
        else:
            value = id_to_u64(entity_id)
            out.append(value)
        if value in used:
            raise EncodeError(
                f"Entity id collides with {used[value]!r} once stored as 64 bits",
                entity_id=entity_id,
                index=index,
            )
        used[value] = entity_id
    return out


def _pin_records(
    pins: PinMap,
    source: int,
    source_id: str,
    field: str,
    ctx: EncodeContext,
    external: Optional[List[ExternalPinConnectionRecord]],
) -> List[PinConnectionRecord]:
    out: List[PinConnectionRecord] = []
    for pin, targets_by_pin in pins.items():
        for to_pin, targets in targets_by_pin.items():
            for target in targets:
                value = encode_optional_variant(target.value, ctx, entity_id=source_id, field=field)
                if not target.ref.is_local:
                    if external is None:
                        raise EncodeError(
                            f"{field} may only target entities of this graph",
                            entity_id=source_id, field=field,
                        )
                    external.append(
                        ExternalPinConnectionRecord(
                            EntityReference.local(source),
                            ctx.entity_reference(target.ref, entity_id=source_id, field=field),
                            pin, to_pin, value,
                        )
                    )
                    continue
                if target.ref.exposed_entity is not None:
                    raise EncodeError(
                        f"Pin {pin!r} targets an exposed entity of a local entity",
                        entity_id=source_id, field=field,
                    )
                out.append(
                    PinConnectionRecord(
                        source,
                        ctx.local_index(target.ref.entity_id, entity_id=source_id, field=field),
                        pin, to_pin, value,
                    )
                )
    return out


def encode_graph(
    graph: EntityGraph,
    *,
    factory_base: Optional[Sequence[ResourceReference]] = None,
    blueprint_base: Optional[Sequence[ResourceReference]] = None,
) -> Tuple[BehaviorRecord, PropertyRecord]:
    """Build the behavior/property record pair for ``graph``.

    ``factory_base`` / ``blueprint_base`` are existing dependency tables whose
    indices must be preserved (usually the tables of the records the graph was
    decoded from).
    """

    ids = list(graph.sub_entities)
    index_of = {entity_id: i for i, entity_id in enumerate(ids)}
    if graph.root_id not in index_of:
        raise EncodeError(f"Root entity {graph.root_id!r} is not in the graph", field="rootEntity")

    parents = {
        entity_id: (e.parent.entity_id if e.parent is not None and e.parent.is_local else None)
        for entity_id, e in graph.sub_entities.items()
    }
    cycle = find_parent_cycle(parents)
    if cycle:
        raise EncodeError(f"Parent cycle: {' -> '.join(cycle)}", entity_id=cycle[0], field="parent")

    scene_index: Dict[str, int] = {}
    for i, scene in enumerate(graph.external_scenes):
        if scene in scene_index:
            raise EncodeError(f"External scene {scene} listed twice", field="externalScenes", index=i)
        scene_index[scene] = i

    # factory table: blueprint, scenes, factories, runtime resources, extras
    factory_deps = DependencyTable(factory_base)
    blueprint_index = factory_deps.add_resource(graph.blueprint_hash)
    factory_scenes = [factory_deps.add_resource(s) for s in graph.external_scenes]
    factory_types = [factory_deps.add(e.factory) for e in graph.sub_entities.values()]
    for ref in graph_resource_references(graph):
        factory_deps.add(ref)
    for ref in graph.extra_factory_dependencies:
        factory_deps.add(ref)

    # blueprint table: scenes, blueprints, extras
    blueprint_deps = DependencyTable(blueprint_base)
    blueprint_scenes = [blueprint_deps.add_resource(s) for s in graph.external_scenes]
    blueprint_types = [blueprint_deps.add(e.blueprint) for e in graph.sub_entities.values()]
    for ref in graph.extra_blueprint_dependencies:
        blueprint_deps.add(ref)

    ctx = EncodeContext(index_of, scene_index, factory_deps)
    explicit_ids = _explicit_ids(graph, index_of)

    factory_entities: List[FactorySubEntity] = []
    blueprint_entities: List[BlueprintSubEntity] = []
    pin_connections: List[PinConnectionRecord] = []
    input_forwardings: List[PinConnectionRecord] = []
    output_forwardings: List[PinConnectionRecord] = []
    pin_overrides: List[ExternalPinConnectionRecord] = []

    for index, (entity_id, entity) in enumerate(graph.sub_entities.items()):
        check_overlays(entity.properties, entity.platform_specific_properties, entity_id)
        parent = ctx.entity_reference(entity.parent, entity_id=entity_id, field="parent")

        values: List[PropertyValue] = []
        post_init_values: List[PropertyValue] = []
        for name, prop in entity.properties.items():
            variant = encode_variant(prop, ctx, entity_id=entity_id, field=f"properties.{name}")
            (post_init_values if prop.post_init else values).append(PropertyValue(property_id(name), variant))

        platform_values: List[PlatformPropertyValue] = []
        for platform, props in entity.platform_specific_properties.items():
            for name, prop in props.items():
                variant = encode_variant(
                    prop, ctx, entity_id=entity_id, field=f"platformSpecificProperties.{platform}.{name}"
                )
                platform_values.append(
                    PlatformPropertyValue(platform, prop.post_init, PropertyValue(property_id(name), variant))
                )

        factory_entities.append(
            FactorySubEntity(
                logical_parent=parent,
                entity_type_resource_index=factory_types[index],
                property_values=values,
                post_init_property_values=post_init_values,
                platform_specific_property_values=platform_values,
            )
        )

        aliases = [
            PropertyAliasRecord(
                alias,
                ctx.local_index(a.original_entity, entity_id=entity_id, field="propertyAliases"),
                a.original_property,
            )
            for alias, entries in entity.property_aliases.items()
            for a in entries
        ]
        exposed = [
            ExposedEntityRecord(
                name,
                e.is_array,
                [ctx.entity_reference(r, entity_id=entity_id, field="exposedEntities") for r in e.refers_to],
            )
            for name, e in entity.exposed_entities.items()
        ]
        interfaces = [
            (name, ctx.local_index(target, entity_id=entity_id, field="exposedInterfaces"))
            for name, target in entity.exposed_interfaces.items()
        ]
        subsets = [
            (name, [ctx.local_index(m, entity_id=entity_id, field="subsets") for m in members])
            for name, members in entity.subsets.items()
        ]

        blueprint_entities.append(
            BlueprintSubEntity(
                logical_parent=parent,
                entity_type_resource_index=blueprint_types[index],
                entity_name=entity.name,
                entity_id=explicit_ids[index],
                editor_only=entity.editor_only,
                property_aliases=aliases,
                exposed_entities=exposed,
                exposed_interfaces=interfaces,
                entity_subsets=subsets,
            )
        )

        pin_connections += _pin_records(entity.events, index, entity_id, "events", ctx, pin_overrides)
        input_forwardings += _pin_records(entity.input_copying, index, entity_id, "inputCopying", ctx, None)
        output_forwardings += _pin_records(entity.output_copying, index, entity_id, "outputCopying", ctx, None)

    for i, override in enumerate(graph.pin_connection_overrides):
        where = {"field": "pinConnectionOverrides", "index": i}
        source, target = override.from_entity, override.to_entity
        if source.is_local and source.exposed_entity is None and not target.is_local:
            raise EncodeError(
                "Connection from a local entity into another scene belongs in that entity's events",
                entity_id=source.entity_id, **where,
            )
        pin_overrides.append(
            ExternalPinConnectionRecord(
                ctx.entity_reference(source, **where),
                ctx.entity_reference(target, **where),
                override.from_pin,
                override.to_pin,
                encode_optional_variant(override.value, ctx, **where),
            )
        )

    pin_override_deletes = [
        ExternalPinConnectionRecord(
            ctx.entity_reference(d.from_entity, field="pinConnectionOverrideDeletes", index=i),
            ctx.entity_reference(d.to_entity, field="pinConnectionOverrideDeletes", index=i),
            d.from_pin,
            d.to_pin,
            encode_optional_variant(d.value, ctx, field="pinConnectionOverrideDeletes", index=i),
        )
        for i, d in enumerate(graph.pin_connection_override_deletes)
    ]

    property_overrides: List[PropertyOverrideRecord] = []
    overridden: Dict[Tuple[Ref, str], int] = {}
    for i, group in enumerate(graph.property_overrides):
        where = {"field": "propertyOverrides", "index": i}
        for owner in group.entities:
            reference = ctx.entity_reference(owner, **where)
            for name, prop in group.properties.items():
                if (owner, name) in overridden:
                    raise EncodeError(
                        f"{name!r} is also overridden by group {overridden[owner, name]}",
                        entity_id=owner.entity_id, **where,
                    )
                overridden[owner, name] = i
                property_overrides.append(
                    PropertyOverrideRecord(
                        reference, PropertyValue(property_id(name), encode_variant(prop, ctx, **where))
                    )
                )

    override_deletes = [
        ctx.entity_reference(ref, field="overrideDeletes", index=i)
        for i, ref in enumerate(graph.override_deletes)
    ]

    # comments never reach the records, but their anchors must still resolve
    for i, comment in enumerate(graph.comments):
        ctx.entity_reference(comment.parent, field="comments", index=i)

    root_index = index_of[graph.root_id]
    sub_type = graph.sub_type.code

    behavior = BehaviorRecord(
        resource_id=graph.blueprint_hash,
        sub_type=sub_type,
        root_entity_index=root_index,
        sub_entities=blueprint_entities,
        external_scene_type_indices_in_resource_header=blueprint_scenes,
        pin_connections=pin_connections,
        input_pin_forwardings=input_forwardings,
        output_pin_forwardings=output_forwardings,
        override_deletes=override_deletes,
        pin_connection_overrides=pin_overrides,
        pin_connection_override_deletes=pin_override_deletes,
        dependencies=blueprint_deps.entries,
    )
    prop_record = PropertyRecord(
        resource_id=graph.factory_hash,
        sub_type=sub_type,
        blueprint_index_in_resource_header=blueprint_index,
        root_entity_index=root_index,
        sub_entities=factory_entities,
        property_overrides=property_overrides,
        external_scene_type_indices_in_resource_header=factory_scenes,
        dependencies=factory_deps.entries,
    )
    _log.debug(
        "Encoded %s/%s: %d entities, %d factory deps, %d blueprint deps",
        graph.factory_hash, graph.blueprint_hash, len(ids), len(factory_deps), len(blueprint_deps),
    )
    return behavior, prop_record
