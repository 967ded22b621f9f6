"""libentity.decoder

Structural records -> EntityGraph.

The behavior record and the property record describe the same sub-entities
by position. They are zipped index by index; any disagreement between the two
(count, root, sub type, logical parents, external scenes) is a DecodeError,
never a guess.

Positional indices only live inside this module: every one of them is resolved
to an entity id (or an external reference) and range checked, so a bad index
fails here with the entity, field and index that caused it.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Set

from .errors import DecodeError, MalformedReference
from .identifiers import derive_entity_id, format_id, index_path, is_numeric_property_name
from .model import (
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
    values_equal,
)
from .options import DEFAULT_OPTIONS, ConvertOptions
from .overlay import check_overlays
from .records import (
    BehaviorRecord,
    PinConnectionRecord,
    PropertyRecord,
    PropertyValue,
)
from .variants import (
    DecodeContext,
    decode_optional_variant,
    decode_variant,
    graph_resource_references,
)

_log = logging.getLogger(__name__)


def property_name(property_id, **ctx) -> str:
    if isinstance(property_id, int):
        return str(property_id)
    if is_numeric_property_name(property_id):
        raise DecodeError(f"Property name {property_id!r} would read back as a numeric id", **ctx)
    return property_id


def _dependency(deps: Sequence[ResourceReference], index: int, **ctx) -> ResourceReference:
    if not 0 <= index < len(deps):
        raise MalformedReference(
            f"Dependency index {index} out of range ({len(deps)} dependencies)",
            **{**ctx, "index": index},
        )
    return deps[index]


def _scene_list(deps: Sequence[ResourceReference], indices: Sequence[int], field: str) -> List[str]:
    return [_dependency(deps, i, field=field).resource for i in indices]


def _assign_ids(behavior: BehaviorRecord) -> List[str]:
    count = len(behavior.sub_entities)

    def parent_of(index: int) -> Optional[int]:
        parent = behavior.sub_entities[index].logical_parent.entity_index
        if parent < 0:
            return None
        if parent >= count:
            raise MalformedReference(
                f"Parent index {parent} out of range ({count} entities)",
                field="parent",
                index=parent,
            )
        return parent

    ids: List[str] = []
    seen: Dict[str, int] = {}
    for index, entity in enumerate(behavior.sub_entities):
        path = index_path(index, parent_of, count)
        if entity.entity_id is not None:
            entity_id = format_id(entity.entity_id)
        else:
            entity_id = derive_entity_id(behavior.resource_id, path)
        if entity_id in seen:
            raise DecodeError(
                f"Duplicate entity id (also used by index {seen[entity_id]})",
                entity_id=entity_id,
                index=index,
            )
        seen[entity_id] = index
        ids.append(entity_id)
    return ids


def _properties(values: List[PropertyValue], post_init: bool, into: Dict[str, Property],
                ctx: DecodeContext, entity_id: str) -> None:
    field = "postInitPropertyValues" if post_init else "propertyValues"
    for index, pv in enumerate(values):
        name = property_name(pv.property_id, entity_id=entity_id, field=field, index=index)
        if name in into:
            raise DecodeError(f"Duplicate property {name!r}", entity_id=entity_id, field=field, index=index)
        simple = decode_variant(pv.value, ctx, entity_id=entity_id, field=f"properties.{name}")
        into[name] = Property(simple.type, simple.value, post_init)


def _wire(pins: PinMap, pin: str, to_pin: str, target: PinTarget) -> None:
    pins.setdefault(pin, {}).setdefault(to_pin, []).append(target)


def _decode_pins(records: List[PinConnectionRecord], attr: str, field: str,
                 entities: List[SubEntity], ctx: DecodeContext) -> None:
    for index, rec in enumerate(records):
        source = ctx.local_id(rec.from_index, field=field, index=index)
        target = ctx.local_id(rec.to_index, entity_id=source, field=field)
        value = decode_optional_variant(rec.constant_pin_value, ctx, entity_id=source, field=field)
        _wire(getattr(entities[rec.from_index], attr), rec.from_pin_name, rec.to_pin_name,
              PinTarget(Ref(target), value))


def _same_properties(a: Dict[str, SimpleProperty], b: Dict[str, SimpleProperty]) -> bool:
    if list(a) != list(b):
        return False
    return all(a[k].type == b[k].type and values_equal(a[k].value, b[k].value) for k in a)


def decode_graph(
    behavior: BehaviorRecord,
    prop: PropertyRecord,
    options: ConvertOptions = DEFAULT_OPTIONS,
) -> EntityGraph:
    """Build an EntityGraph from a behavior/property record pair."""

    count = len(behavior.sub_entities)
    if len(prop.sub_entities) != count:
        raise DecodeError(
            f"Sub-entity count mismatch: {count} in behavior record, "
            f"{len(prop.sub_entities)} in property record"
        )
    if behavior.root_entity_index != prop.root_entity_index:
        raise DecodeError(
            f"Root entity mismatch: {behavior.root_entity_index} vs {prop.root_entity_index}",
            field="rootEntity",
        )
    if behavior.sub_type != prop.sub_type:
        raise DecodeError(f"Sub type mismatch: {behavior.sub_type} vs {prop.sub_type}", field="subType")
    try:
        sub_type = SubType.from_code(prop.sub_type)
    except ValueError as exc:
        raise DecodeError(str(exc), field="subType") from exc

    factory_deps = prop.dependencies
    blueprint_deps = behavior.dependencies

    blueprint_ref = _dependency(
        factory_deps, prop.blueprint_index_in_resource_header, field="blueprintIndexInResourceHeader"
    )
    if blueprint_ref.resource != behavior.resource_id:
        raise DecodeError(
            f"Property record points at blueprint {blueprint_ref.resource}, "
            f"behavior record is {behavior.resource_id}",
            field="blueprintIndexInResourceHeader",
        )

    scenes = _scene_list(factory_deps, prop.external_scene_type_indices_in_resource_header, "externalScenes")
    blueprint_scenes = _scene_list(
        blueprint_deps, behavior.external_scene_type_indices_in_resource_header, "externalScenes"
    )
    if scenes != blueprint_scenes:
        raise DecodeError("External scene lists of the two records differ", field="externalScenes")

    for index, (fac, bp) in enumerate(zip(prop.sub_entities, behavior.sub_entities)):
        if fac.logical_parent != bp.logical_parent:
            raise DecodeError("Logical parent differs between records", field="parent", index=index)

    ids = _assign_ids(behavior)
    ctx = DecodeContext(ids, scenes, factory_deps, options)

    if not 0 <= behavior.root_entity_index < count:
        raise MalformedReference(
            f"Root index {behavior.root_entity_index} out of range ({count} entities)",
            field="rootEntity",
            index=behavior.root_entity_index,
        )

    entities: List[SubEntity] = []
    for index, (fac, bp) in enumerate(zip(prop.sub_entities, behavior.sub_entities)):
        entity_id = ids[index]
        properties: Dict[str, Property] = {}
        _properties(fac.property_values, False, properties, ctx, entity_id)
        _properties(fac.post_init_property_values, True, properties, ctx, entity_id)

        platform_props: Dict[str, Dict[str, Property]] = {}
        for pindex, ppv in enumerate(fac.platform_specific_property_values):
            name = property_name(
                ppv.property.property_id, entity_id=entity_id, field="platformSpecificProperties", index=pindex
            )
            block = platform_props.setdefault(ppv.platform, {})
            if name in block:
                raise DecodeError(
                    f"Duplicate {ppv.platform} override of {name!r}",
                    entity_id=entity_id, field="platformSpecificProperties", index=pindex,
                )
            simple = decode_variant(
                ppv.property.value, ctx, entity_id=entity_id,
                field=f"platformSpecificProperties.{ppv.platform}.{name}",
            )
            block[name] = Property(simple.type, simple.value, ppv.post_init)
        check_overlays(properties, platform_props, entity_id)

        aliases: Dict[str, List[PropertyAlias]] = {}
        for alias in bp.property_aliases:
            aliases.setdefault(alias.alias_name, []).append(
                PropertyAlias(
                    alias.property_name,
                    ctx.local_id(alias.entity_index, entity_id=entity_id, field="propertyAliases"),
                )
            )

        exposed: Dict[str, ExposedEntity] = {}
        for exp in bp.exposed_entities:
            if exp.name in exposed:
                raise DecodeError(f"Duplicate exposed entity {exp.name!r}", entity_id=entity_id,
                                  field="exposedEntities")
            refers_to = []
            for target in exp.targets:
                ref = ctx.ref(target, entity_id=entity_id, field="exposedEntities")
                if ref is None:
                    raise MalformedReference(f"Exposed entity {exp.name!r} targets null",
                                             entity_id=entity_id, field="exposedEntities")
                refers_to.append(ref)
            exposed[exp.name] = ExposedEntity(exp.is_array, refers_to)

        interfaces: Dict[str, str] = {}
        for name, target_index in bp.exposed_interfaces:
            if name in interfaces:
                raise DecodeError(f"Duplicate exposed interface {name!r}", entity_id=entity_id,
                                  field="exposedInterfaces")
            interfaces[name] = ctx.local_id(target_index, entity_id=entity_id, field="exposedInterfaces")

        subsets: Dict[str, List[str]] = {}
        for name, members in bp.entity_subsets:
            if name in subsets:
                raise DecodeError(f"Duplicate subset {name!r}", entity_id=entity_id, field="subsets")
            subsets[name] = [ctx.local_id(m, entity_id=entity_id, field="subsets") for m in members]

        entities.append(
            SubEntity(
                name=bp.entity_name,
                factory=_dependency(factory_deps, fac.entity_type_resource_index,
                                    entity_id=entity_id, field="factory"),
                blueprint=_dependency(blueprint_deps, bp.entity_type_resource_index,
                                      entity_id=entity_id, field="blueprint"),
                parent=ctx.ref(fac.logical_parent, entity_id=entity_id, field="parent"),
                editor_only=bp.editor_only,
                properties=properties,
                platform_specific_properties=platform_props,
                property_aliases=aliases,
                exposed_entities=exposed,
                exposed_interfaces=interfaces,
                subsets=subsets,
            )
        )

    _decode_pins(behavior.pin_connections, "events", "events", entities, ctx)
    _decode_pins(behavior.input_pin_forwardings, "input_copying", "inputCopying", entities, ctx)
    _decode_pins(behavior.output_pin_forwardings, "output_copying", "outputCopying", entities, ctx)

    pin_overrides: List[PinConnectionOverride] = []
    for index, rec in enumerate(behavior.pin_connection_overrides):
        where = {"field": "pinConnectionOverrides", "index": index}
        source = ctx.ref(rec.from_entity, **where)
        target = ctx.ref(rec.to_entity, **where)
        if source is None or target is None:
            raise MalformedReference("Pin connection override with a null end", **where)
        value = decode_optional_variant(rec.constant_pin_value, ctx, **where)
        if source.is_local and source.exposed_entity is None and not target.is_local:
            # local source wired into another scene: lives with the source's events
            entity = entities[rec.from_entity.entity_index]
            _wire(entity.events, rec.from_pin_name, rec.to_pin_name, PinTarget(target, value))
        else:
            pin_overrides.append(
                PinConnectionOverride(source, rec.from_pin_name, target, rec.to_pin_name, value)
            )

    pin_override_deletes: List[PinConnectionOverride] = []
    for index, rec in enumerate(behavior.pin_connection_override_deletes):
        where = {"field": "pinConnectionOverrideDeletes", "index": index}
        source = ctx.ref(rec.from_entity, **where)
        target = ctx.ref(rec.to_entity, **where)
        if source is None or target is None:
            raise MalformedReference("Pin connection override delete with a null end", **where)
        pin_override_deletes.append(
            PinConnectionOverride(
                source, rec.from_pin_name, target, rec.to_pin_name,
                decode_optional_variant(rec.constant_pin_value, ctx, **where),
            )
        )

    # group overrides by owner, then merge owners carrying identical property sets
    by_owner: Dict[Ref, Dict[str, SimpleProperty]] = {}
    for index, rec in enumerate(prop.property_overrides):
        where = {"field": "propertyOverrides", "index": index}
        owner = ctx.ref(rec.property_owner, **where)
        if owner is None:
            raise MalformedReference("Property override without an owner", **where)
        name = property_name(rec.property_value.property_id, **where)
        props = by_owner.setdefault(owner, {})
        if name in props:
            raise DecodeError(f"Duplicate override of {name!r}", entity_id=owner.entity_id, **where)
        props[name] = decode_variant(rec.property_value.value, ctx, **where)
    property_overrides: List[PropertyOverride] = []
    for owner, props in by_owner.items():
        for group in property_overrides:
            if _same_properties(group.properties, props):
                group.entities.append(owner)
                break
        else:
            property_overrides.append(PropertyOverride([owner], props))

    override_deletes: List[Ref] = []
    for index, reference in enumerate(behavior.override_deletes):
        ref = ctx.ref(reference, field="overrideDeletes", index=index)
        if ref is None:
            raise MalformedReference("Null override delete", field="overrideDeletes", index=index)
        override_deletes.append(ref)

    graph = EntityGraph(
        factory_hash=prop.resource_id,
        blueprint_hash=behavior.resource_id,
        root_id=ids[behavior.root_entity_index],
        sub_entities=dict(zip(ids, entities)),
        sub_type=sub_type,
        external_scenes=scenes,
        property_overrides=property_overrides,
        override_deletes=override_deletes,
        pin_connection_overrides=pin_overrides,
        pin_connection_override_deletes=pin_override_deletes,
    )

    # dependency entries nothing in the graph accounts for
    graph.extra_factory_dependencies = _extras(
        factory_deps,
        {e.factory for e in entities} | set(graph_resource_references(graph)),
        {behavior.resource_id, *scenes},
    )
    graph.extra_blueprint_dependencies = _extras(
        blueprint_deps, {e.blueprint for e in entities}, set(scenes)
    )

    _log.debug(
        "Decoded %s/%s: %d entities, %d scenes",
        graph.factory_hash, graph.blueprint_hash, count, len(scenes),
    )
    return graph


def _extras(deps: Sequence[ResourceReference], implied: Set[ResourceReference],
            implied_resources: Set[str]) -> List[ResourceReference]:
    out: List[ResourceReference] = []
    for dep in deps:
        if dep in implied or dep.resource in implied_resources or dep in out:
            continue
        out.append(dep)
    return out
