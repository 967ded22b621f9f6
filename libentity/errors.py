"""libentity.errors

Every failure the converters and the patch engine can report.

All of them are fatal for the single resource being processed: nothing is
downgraded to a warning, because a re-encode has to be exact. Each error can
carry the entity id, field name and index that locate the offending record;
those are appended to the message so a CLI user sees them without a traceback.
"""

from __future__ import annotations

from typing import Optional


class EntityError(RuntimeError):
    """Base class. ``str(err)`` includes whatever context was supplied."""

    def __init__(
        self,
        message: str,
        *,
        entity_id: Optional[str] = None,
        field: Optional[str] = None,
        index: Optional[int] = None,
    ) -> None:
        self.message = message
        self.entity_id = entity_id
        self.field = field
        self.index = index
        super().__init__(self._render())

    def _render(self) -> str:
        ctx = []
        if self.entity_id is not None:
            ctx.append(f"entity={self.entity_id}")
        if self.field is not None:
            ctx.append(f"field={self.field}")
        if self.index is not None:
            ctx.append(f"index={self.index}")
        if not ctx:
            return self.message
        return f"{self.message} ({', '.join(ctx)})"

    def __reduce__(self):
        # keyword-only context does not survive the default exception pickling
        return (_rebuild, (type(self), self.message, self.entity_id, self.field, self.index))


def _rebuild(cls, message, entity_id, field, index):
    return cls(message, entity_id=entity_id, field=field, index=index)


# -----------------------------
# binary / document -> graph
# -----------------------------

class DecodeError(EntityError):
    """Malformed or truncated structural record."""


class MalformedReference(DecodeError):
    """An index or id in a record does not resolve."""


class UnsupportedType(DecodeError):
    """A property type tag outside the closed set."""


class DocumentError(DecodeError):
    """An intermediate or patch document that does not match the format."""


# -----------------------------
# graph -> binary
# -----------------------------

class EncodeError(EntityError):
    """Invariant violation during re-serialization."""


class UnresolvedReference(EncodeError):
    """Reference to an entity id that is not in the graph."""


class OrphanedOverride(EncodeError):
    """Platform override for a property missing from the base properties."""


# -----------------------------
# patches
# -----------------------------

class PatchError(EntityError):
    pass


class PatchTargetMissing(PatchError):
    """A patch operation names something the base graph does not have."""


class PatchBaseMismatch(PatchError):
    """The patch was generated against a different base graph."""
