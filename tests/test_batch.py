from __future__ import annotations

import threading
from functools import partial

import pytest

from libentity.batch import apply_task, decode_file_task, decode_task, diff_task, encode_task, run_batch
from libentity.document import dumps, graphs_equal, loads
from libentity.errors import DecodeError
from libentity.options import ConvertOptions
from libentity.writer import encode_structural


def _half(x):
    if x % 2:
        raise ValueError(f"odd: {x}")
    return x // 2


def _consume(items):
    items.append("seen")
    return len(items)


def test_results_keep_input_order() -> None:
    results = run_batch(_half, [4, 3, 8, 5], jobs=2, executor="thread")
    assert [r.index for r in results] == [0, 1, 2, 3]
    assert [r.value for r in results if r.ok] == [2, 4]
    assert [str(r.error) for r in results if not r.ok] == ["odd: 3", "odd: 5"]


def test_thread_inputs_are_copied() -> None:
    shared = [1]
    results = run_batch(_consume, [shared, shared], jobs=2, executor="thread")
    assert [r.value for r in results] == [2, 2]
    assert shared == [1]


def test_stop_skips_the_rest() -> None:
    stop = threading.Event()

    def work(x):
        stop.set()
        return x

    results = run_batch(work, [1, 2, 3], jobs=1, stop=stop, executor="thread")
    assert results[0].ok and results[0].value == 1
    assert all(r.skipped and not r.ok for r in results[1:])


def test_stopped_before_start() -> None:
    stop = threading.Event()
    stop.set()
    results = run_batch(_half, [2, 4], stop=stop, executor="thread")
    assert all(r.skipped for r in results)


def test_empty_and_bad_executor() -> None:
    assert run_batch(_half, [], executor="thread") == []
    with pytest.raises(ValueError):
        run_batch(_half, [2], executor="fiber")


def test_decode_in_worker_processes(records) -> None:
    data = encode_structural(*records)
    results = run_batch(partial(decode_task, options=ConvertOptions()), [data, b"junk", data], jobs=2)

    assert results[0].ok and results[2].ok
    assert results[0].value == results[2].value
    assert isinstance(results[1].error, DecodeError)
    assert "magic" in str(results[1].error)


def test_task_functions(records, graph) -> None:
    data = encode_structural(*records)
    text = decode_task(data)
    assert graphs_equal(loads(text), graph)

    assert encode_task((text, None)) == data
    assert encode_task((text, data)) == data

    edited = loads(text)
    next(iter(edited.sub_entities.values())).name = "Renamed"
    patch_text = diff_task((text, dumps(edited)))
    assert graphs_equal(loads(apply_task((patch_text, text))), edited)
    assert graphs_equal(loads(apply_task((patch_text, text), strict=True)), edited)


def test_files_are_read_by_the_workers(tmp_path, records) -> None:
    good = tmp_path / "scene.qntr"
    good.write_bytes(encode_structural(*records))
    paths = [str(tmp_path / "missing.qntr"), str(good)]

    results = run_batch(decode_file_task, paths, jobs=2, executor="thread")
    assert isinstance(results[0].error, FileNotFoundError)
    assert results[1].ok
    assert results[1].value == decode_task(good.read_bytes())
