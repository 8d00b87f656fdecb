"""
Row-sharded fork/join execution over a 2D extent.

A `RowTask` describes one pass over the outer (row) index of a grid:
  acc = partial()              one fresh accumulator per worker
  acc = row(i, acc)            for every row i owned by the worker
  result = reduce(acc_a, acc_b) merge of the per-worker accumulators

Worker k owns rows k, k+n, k+2n, ... so each row is written by exactly one
worker in a pass. Workers are threads from a `ThreadPoolExecutor`; the row
functions are numpy-vectorized over the inner index.
"""

from __future__ import annotations

import functools
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable

LOGGER = logging.getLogger(__name__)


class TaskInterrupted(RuntimeError):
    """Raised when a pass is stopped through its interrupt event."""


@dataclass(frozen=True)
class RowTask:
    """
    Template for one pass.

    row: (i, acc) -> acc. Must only write to row i of any shared output.
    partial: factory of the per-worker accumulator (None: acc stays None).
    reduce: associative, commutative merge of two accumulators.
    """

    row: Callable[[int, Any], Any]
    partial: Callable[[], Any] | None = None
    reduce: Callable[[Any, Any], Any] | None = None


def default_workers() -> int:
    return max(1, os.cpu_count() or 1)


def _run_worker(
    task: RowTask,
    k: int,
    stride: int,
    n_rows: int,
    halt: threading.Event,
    interrupt: threading.Event | None,
) -> Any:
    acc = task.partial() if task.partial is not None else None
    for i in range(k, n_rows, stride):
        if halt.is_set() or (interrupt is not None and interrupt.is_set()):
            break
        try:
            acc = task.row(i, acc)
        except BaseException:
            halt.set()
            raise
    return acc


def process(
    task: RowTask,
    n_rows: int,
    *,
    n_workers: int | None = None,
    interrupt: threading.Event | None = None,
) -> Any:
    """
    Run `task` over rows [0, n_rows) and return the reduced accumulator.

    Every worker is joined before anything is raised. The first worker error
    (in worker order) is re-raised; otherwise an interrupt that was set during
    the pass raises `TaskInterrupted`. Returns None when the task has no reducer.

    Args:
      task: the pass template.
      n_rows: outer extent (grid size_x).
      n_workers: worker count, default `default_workers()`. Capped at n_rows.
      interrupt: checked at the start of every row.
    """
    n_rows = int(n_rows)
    if n_rows < 0:
        raise ValueError(f"n_rows must be >= 0, got {n_rows}.")
    n = default_workers() if n_workers is None else int(n_workers)
    if n < 1:
        raise ValueError(f"n_workers must be >= 1, got {n}.")
    n = max(1, min(n, n_rows))

    halt = threading.Event()
    if n == 1:
        partials = [_run_worker(task, 0, 1, n_rows, halt, interrupt)]
    else:
        with ThreadPoolExecutor(max_workers=n, thread_name_prefix="mapgrid") as pool:
            futures = [
                pool.submit(_run_worker, task, k, n, n_rows, halt, interrupt)
                for k in range(n)
            ]
            wait(futures)
        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            if len(errors) > 1:
                LOGGER.debug("%d workers failed; re-raising the first.", len(errors))
            raise errors[0]
        partials = [f.result() for f in futures]

    if interrupt is not None and interrupt.is_set():
        raise TaskInterrupted("Pass interrupted between rows.")
    if task.reduce is None:
        return None
    return functools.reduce(task.reduce, partials)
