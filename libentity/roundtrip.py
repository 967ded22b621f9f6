"""libentity.roundtrip

bytes -> graph -> document text -> graph -> bytes, and a comparison of the two
byte strings.

This is the safety net for every change to the converters: a resource that
the encoder wrote (or one whose tables are already in canonical order) must
come back byte-identical, and with ``keep_indices`` (the default) the original
dependency tables are used as base, so existing resources round-trip too.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

from .decoder import decode_graph
from .document import dumps, graphs_equal, loads
from .encoder import encode_graph
from .options import DEFAULT_OPTIONS, ConvertOptions
from .reader import decode_structural
from .writer import encode_structural

_log = logging.getLogger(__name__)


@dataclass
class RoundTripReport:
    input_sha256: str
    output_sha256: str
    output: bytes
    graphs_equal: bool

    @property
    def identical(self) -> bool:
        return self.input_sha256 == self.output_sha256


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def roundtrip_bytes(
    data: bytes,
    options: ConvertOptions = DEFAULT_OPTIONS,
    keep_indices: bool = True,
) -> RoundTripReport:
    behavior, prop = decode_structural(data)
    graph = decode_graph(behavior, prop, options)

    # through the text form as well, so the document layer is covered
    edited = loads(dumps(graph))
    if keep_indices:
        new_behavior, new_prop = encode_graph(
            edited, factory_base=prop.dependencies, blueprint_base=behavior.dependencies
        )
    else:
        new_behavior, new_prop = encode_graph(edited)
    out = encode_structural(new_behavior, new_prop)

    again = decode_graph(*decode_structural(out), options)
    report = RoundTripReport(_sha256(data), _sha256(out), out, graphs_equal(graph, again))
    _log.debug("Round trip %s -> %s", report.input_sha256, report.output_sha256)
    return report
