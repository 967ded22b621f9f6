"""libentity.batch

Fan-out of independent conversions over a fixed-size worker pool.

Each item gets its own result slot holding either the value or the error the
item raised; one failing item never stops its siblings. At most ``jobs``
items are in flight at a time, so setting ``stop`` keeps every item that has
not been handed to a worker yet from starting (those slots are reported as
skipped).

Work is CPU bound, so a process pool is the default. Task callables must then
be picklable: module-level functions, optionally wrapped in functools.partial.
"""

from __future__ import annotations

import copy
import logging
import os
from concurrent.futures import FIRST_COMPLETED, Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass
from threading import Event
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .decoder import decode_graph
from .document import dumps, loads
from .encoder import encode_graph
from .options import DEFAULT_OPTIONS, ConvertOptions
from .patch import apply, diff, dumps_patch, loads_patch
from .reader import decode_structural
from .writer import encode_structural

_log = logging.getLogger(__name__)

EXECUTORS = ("process", "thread")


@dataclass
class BatchResult:
    index: int
    value: Any = None
    error: Optional[BaseException] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


def run_batch(
    fn: Callable[[Any], Any],
    items: Iterable[Any],
    *,
    jobs: Optional[int] = None,
    stop: Optional[Event] = None,
    executor: str = "process",
) -> List[BatchResult]:
    """Run ``fn`` over ``items``; results come back in input order."""

    if executor not in EXECUTORS:
        raise ValueError(f"executor must be one of {EXECUTORS}, got {executor!r}")
    items = list(items)
    workers = max(1, jobs or os.cpu_count() or 1)
    results = [BatchResult(i, skipped=True) for i in range(len(items))]
    if not items:
        return results

    pool_cls = ProcessPoolExecutor if executor == "process" else ThreadPoolExecutor
    with pool_cls(max_workers=workers) as pool:
        _drain(pool, fn, items, results, workers, stop, copy_inputs=executor == "thread")

    failed = sum(1 for r in results if r.error is not None)
    skipped = sum(1 for r in results if r.skipped)
    _log.debug("Batch of %d: %d failed, %d skipped", len(items), failed, skipped)
    return results


def _drain(
    pool: Executor,
    fn: Callable[[Any], Any],
    items: Sequence[Any],
    results: List[BatchResult],
    workers: int,
    stop: Optional[Event],
    copy_inputs: bool,
) -> None:
    queue = iter(enumerate(items))
    in_flight: Dict[Future, int] = {}

    def submit_next() -> None:
        if stop is not None and stop.is_set():
            return
        for index, item in queue:
            # threads share memory; give each task an input it owns
            arg = copy.deepcopy(item) if copy_inputs else item
            in_flight[pool.submit(fn, arg)] = index
            return

    for _ in range(workers):
        submit_next()

    while in_flight:
        done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
        for fut in done:
            index = in_flight.pop(fut)
            try:
                results[index] = BatchResult(index, value=fut.result())
            except Exception as exc:  # captured per slot, reported by the caller
                _log.debug("Item %d failed: %s", index, exc)
                results[index] = BatchResult(index, error=exc)
            submit_next()


# -----------------------------
# task functions (module level so process pools can pickle them)
# -----------------------------

def decode_task(data: bytes, options: ConvertOptions = DEFAULT_OPTIONS) -> str:
    """Resource bytes -> document text."""
    behavior, prop = decode_structural(data)
    return dumps(decode_graph(behavior, prop, options))


def decode_file_task(path: str, options: ConvertOptions = DEFAULT_OPTIONS) -> str:
    """Like ``decode_task``, reading the resource inside the worker."""
    with open(path, "rb") as f:
        data = f.read()
    return decode_task(data, options)


def encode_task(job) -> bytes:
    """``(document text, base resource bytes or None)`` -> resource bytes."""
    text, base = job
    graph = loads(text)
    if base is None:
        behavior, prop = encode_graph(graph)
    else:
        base_behavior, base_prop = decode_structural(base)
        behavior, prop = encode_graph(
            graph, factory_base=base_prop.dependencies, blueprint_base=base_behavior.dependencies
        )
    return encode_structural(behavior, prop)


def diff_task(job) -> str:
    """``(old document text, new document text)`` -> patch text."""
    old, new = job
    return dumps_patch(diff(loads(old), loads(new)))


def apply_task(job, strict: bool = False) -> str:
    """``(patch text, base document text)`` -> patched document text."""
    patch_text, base = job
    return dumps(apply(loads_patch(patch_text), loads(base), strict=strict))
