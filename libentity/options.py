from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ConvertOptions:
    """Knobs for resource -> graph conversion.

    euler_matrices: present SMatrix43 values as ``{rotation, position, scale}``
        (rotation in degrees, XYZ order) instead of the raw four axes. Easier to
        edit, but not bit-exact on re-encode.
    keep_scale: with ``euler_matrices``, always write ``scale``; when False it
        is left out for unit-scaled transforms.
    """

    euler_matrices: bool = False
    keep_scale: bool = True


DEFAULT_OPTIONS = ConvertOptions()
