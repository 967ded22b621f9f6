from __future__ import annotations

import argparse
import logging
import os
from functools import partial
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from libentity.batch import EXECUTORS, decode_file_task, run_batch
from libentity.decoder import decode_graph
from libentity.document import dumps, loads
from libentity.encoder import encode_graph
from libentity.errors import DocumentError, EntityError
from libentity.model import EntityGraph
from libentity.options import ConvertOptions
from libentity.patch import apply, diff, dumps_patch, loads_patch
from libentity.reader import MAGIC, decode_structural, read_resource
from libentity.roundtrip import roundtrip_bytes
from libentity.summary import summarize_graph
from libentity.writer import encode_structural

console = Console()
_log = logging.getLogger("entitycli")

DOCUMENT_SUFFIX = ".entity.json"


def _options(args: argparse.Namespace) -> ConvertOptions:
    return ConvertOptions(
        euler_matrices=getattr(args, "euler", False),
        keep_scale=not getattr(args, "drop_unit_scale", False),
    )


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _write_bytes(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


def _write_text(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        f.write(text)


def _load_graph(path: str, options: ConvertOptions) -> EntityGraph:
    """A resource file or a document, told apart by the resource magic."""
    data = _read_bytes(path)
    if data[:4] == MAGIC:
        return decode_graph(*decode_structural(data), options)
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DocumentError(f"{path} is neither a resource nor a UTF-8 document") from exc
    return loads(text)


def cmd_summary(args: argparse.Namespace) -> int:
    s = summarize_graph(_load_graph(args.input, _options(args)), platform=args.platform)
    console.print(f"[bold]Factory:[/bold] {s.factory_hash}")
    console.print(f"[bold]Blueprint:[/bold] {s.blueprint_hash}")
    console.print(f"[bold]Sub type:[/bold] {s.sub_type}")
    console.print(f"[bold]Root:[/bold] {s.root_id} ({s.root_name})")
    console.print(
        f"[bold]Entities:[/bold] {s.entity_count}   [bold]External scenes:[/bold] {s.external_scene_count}"
    )
    console.print(
        f"[bold]Properties:[/bold] {s.property_count}   [bold]Platform overrides:[/bold] "
        f"{s.platform_override_count}   [bold]Pins:[/bold] {s.pin_count}"
    )
    console.print(
        f"[bold]Property overrides:[/bold] {s.property_override_count}   [bold]Comments:[/bold] {s.comment_count}"
    )
    if s.platforms:
        console.print(f"[bold]Platforms:[/bold] {escape(', '.join(s.platforms))}")
    if s.platform:
        console.print(f"[bold]Changed on {escape(s.platform)}:[/bold] {s.changed_on_platform} properties")

    t = Table(title="Factories")
    t.add_column("Resource", overflow="fold")
    t.add_column("Entities", justify="right")
    if s.factories:
        for resource, count in s.factories:
            t.add_row(resource, str(count))
    else:
        t.add_row("(none found)", "-")
    console.print(t)
    return 0


def _output_path(inp: str, out_dir: Optional[str]) -> str:
    name = os.path.basename(inp) + DOCUMENT_SUFFIX
    return os.path.join(out_dir or os.path.dirname(os.path.abspath(inp)), name)


def cmd_convert(args: argparse.Namespace) -> int:
    if args.out_dir:
        os.makedirs(args.out_dir, exist_ok=True)

    results = run_batch(
        partial(decode_file_task, options=_options(args)),
        args.inputs,
        jobs=args.jobs,
        executor=args.executor,
    )

    t = Table(title="Convert")
    t.add_column("Input", overflow="fold")
    t.add_column("Result", overflow="fold")
    failed = 0
    for inp, res in zip(args.inputs, results):
        if res.ok:
            outp = _output_path(inp, args.out_dir)
            _write_text(outp, res.value)
            t.add_row(inp, f"[green]{outp}[/green]")
        elif res.skipped:
            failed += 1
            t.add_row(inp, "[yellow]skipped[/yellow]")
        else:
            failed += 1
            t.add_row(inp, f"[red]{escape(str(res.error))}[/red]")
    console.print(t)
    return 1 if failed else 0


def cmd_generate(args: argparse.Namespace) -> int:
    with open(args.document, "r", encoding="utf-8") as f:
        graph = loads(f.read())
    if args.base:
        base_behavior, base_prop = read_resource(args.base)
        behavior, prop = encode_graph(
            graph, factory_base=base_prop.dependencies, blueprint_base=base_behavior.dependencies
        )
    else:
        behavior, prop = encode_graph(graph)
    data = encode_structural(behavior, prop)
    _write_bytes(args.out, data)
    console.print(f"[green]Wrote[/green] {args.out} ({len(data)} bytes)")
    return 0


def cmd_diff(args: argparse.Namespace) -> int:
    options = _options(args)
    patch = diff(_load_graph(args.old, options), _load_graph(args.new, options))
    _write_text(args.out, dumps_patch(patch))
    console.print(f"[green]Wrote[/green] {args.out} ({len(patch.operations)} operations)")
    return 0


def cmd_apply(args: argparse.Namespace) -> int:
    with open(args.patch, "r", encoding="utf-8") as f:
        patch = loads_patch(f.read())
    result = apply(patch, _load_graph(args.base, _options(args)), strict=args.strict)
    _write_text(args.out, dumps(result))
    console.print(f"[green]Wrote[/green] {args.out}")
    return 0


def cmd_verify_roundtrip(args: argparse.Namespace) -> int:
    data = _read_bytes(args.input)
    report = roundtrip_bytes(data, keep_indices=not args.no_base)
    if args.out:
        _write_bytes(args.out, report.output)
    console.print(f"IN : {args.input}\n     sha256={report.input_sha256}")
    console.print(f"OUT: {args.out or '(memory)'}\n     sha256={report.output_sha256}")
    if not report.graphs_equal:
        console.print("[red]Re-decoded graph differs[/red]")
    console.print("[green]IDENTICAL[/green]" if report.identical else "[red]DIFF[/red]")
    return 0 if report.identical and report.graphs_equal else 1


def _add_decode_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--euler", action="store_true", help="Show transforms as rotation/position/scale")
    p.add_argument(
        "--drop-unit-scale", action="store_true", help="With --euler, omit scale when it is 1"
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="entitycli")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("summary", help="Print info about a resource or document")
    s.add_argument("input")
    s.add_argument("--platform", help="Also count properties whose value differs on this platform")
    _add_decode_flags(s)
    s.set_defaults(fn=cmd_summary)

    c = sub.add_parser("convert", help="Convert resources to documents")
    c.add_argument("inputs", nargs="+")
    c.add_argument("--out-dir")
    c.add_argument("-j", "--jobs", type=int, default=None, help="Worker count (default: CPU count)")
    c.add_argument("--executor", choices=EXECUTORS, default="process")
    _add_decode_flags(c)
    c.set_defaults(fn=cmd_convert)

    g = sub.add_parser("generate", help="Convert a document back to a resource")
    g.add_argument("document")
    g.add_argument("--out", required=True)
    g.add_argument("--base", help="Resource whose dependency indices are kept")
    g.set_defaults(fn=cmd_generate)

    d = sub.add_parser("diff", help="Write a patch turning OLD into NEW")
    d.add_argument("old")
    d.add_argument("new")
    d.add_argument("--out", required=True)
    _add_decode_flags(d)
    d.set_defaults(fn=cmd_diff)

    a = sub.add_parser("apply", help="Apply a patch to a resource or document")
    a.add_argument("patch")
    a.add_argument("base")
    a.add_argument("--out", required=True)
    a.add_argument("--strict", action="store_true", help="Also require the exact base content")
    _add_decode_flags(a)
    a.set_defaults(fn=cmd_apply)

    r = sub.add_parser("verify-roundtrip", help="Decode, re-encode and compare bytes")
    r.add_argument("input")
    r.add_argument("--out", help="Also write the re-encoded resource")
    r.add_argument("--no-base", action="store_true", help="Rebuild dependency tables from scratch")
    r.set_defaults(fn=cmd_verify_roundtrip)

    return p


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)
    _log.debug("Running %s", args.cmd)
    try:
        return int(args.fn(args))
    except EntityError as exc:
        console.print(f"[red]{type(exc).__name__}:[/red] {escape(str(exc))}", highlight=False)
        return 1
    except OSError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
