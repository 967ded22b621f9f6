#!/usr/bin/env python3
"""Round-trip an entity resource through decode/encode.

Usage:
  python roundtrip.py path/to/resource.qntr [--no-base]

Writes:
  <input>.roundtrip.qntr

Then prints whether the output is byte-identical to the input.
"""

from __future__ import annotations

import os
import sys

from libentity.errors import EntityError
from libentity.roundtrip import roundtrip_bytes


def main(argv: list[str]) -> int:
    args = [a for a in argv[1:] if a != "--no-base"]
    if len(args) != 1:
        print("Usage: python roundtrip.py <resource> [--no-base]")
        return 2

    inp = os.path.abspath(args[0])
    if not os.path.exists(inp):
        print(f"File not found: {inp}")
        return 2

    outp = inp + ".roundtrip.qntr"

    with open(inp, "rb") as f:
        data = f.read()
    try:
        report = roundtrip_bytes(data, keep_indices="--no-base" not in argv)
    except EntityError as exc:
        print(f"FAILED: {exc}")
        return 1
    with open(outp, "wb") as f:
        f.write(report.output)

    print(f"IN : {inp}\n     sha256={report.input_sha256}")
    print(f"OUT: {outp}\n     sha256={report.output_sha256}")
    print("IDENTICAL" if report.identical else "DIFF")
    return 0 if report.identical else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
