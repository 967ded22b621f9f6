"""Platform-specific property overlays.

A sub-entity's ``platform_specific_properties`` maps a platform name to
properties that replace base properties of the same name on that platform.
Both converters go through ``check_overlays`` so the rule is enforced the same
way in each direction. ``resolve_for_platform`` gives the effective view the
summary counts per-platform changes from.
"""

from __future__ import annotations

from typing import Dict, Mapping

from .errors import OrphanedOverride
from .model import Property


def check_overlays(
    properties: Mapping[str, Property],
    overlays: Mapping[str, Mapping[str, Property]],
    entity_id: str,
) -> None:
    for platform, props in overlays.items():
        for name in props:
            if name not in properties:
                raise OrphanedOverride(
                    f"Platform {platform!r} overrides {name!r} which has no base value",
                    entity_id=entity_id,
                    field="platformSpecificProperties",
                )


def resolve_for_platform(
    properties: Mapping[str, Property],
    overlays: Mapping[str, Mapping[str, Property]],
    platform: str,
) -> Dict[str, Property]:
    """Effective properties on ``platform``, in base property order."""
    overlay = overlays.get(platform, {})
    return {name: overlay.get(name, prop) for name, prop in properties.items()}
