"""
Tests for the row-sharded task framework: partition, reduction, errors, interrupts.

Run from the repo root:
  python -m pytest test/test_parallel.py -v
"""
from __future__ import annotations

import operator
import threading

import pytest

from mapgrid.parallel import RowTask, TaskInterrupted, process


# --- Partition ---

@pytest.mark.parametrize("n_workers", [1, 3, 8])
def test_rows_are_strided_over_workers(n_workers):
    """Worker k owns rows k, k+n, k+2n, ... and every row is visited once."""
    n_rows = 29

    def row(i, acc):
        acc[0].append(i)
        return acc

    per_worker = process(RowTask(row, partial=lambda: [[]], reduce=operator.add), n_rows, n_workers=n_workers)
    assert len(per_worker) == n_workers
    for k, rows in enumerate(per_worker):
        assert rows == list(range(k, n_rows, n_workers))
    assert sorted(i for rows in per_worker for i in rows) == list(range(n_rows))


def test_workers_capped_at_row_count():
    """More workers than rows: one worker per row, nothing empty."""
    per_worker = process(RowTask(lambda i, acc: [acc[0] + [i]], partial=lambda: [[]], reduce=operator.add), 3, n_workers=16)
    assert per_worker == [[0], [1], [2]]


# --- Reduction ---

@pytest.mark.parametrize("n_workers", [1, 2, 5, 8])
def test_sum_reduction_independent_of_worker_count(n_workers):
    """Integer sums reduce to the same total for any worker count."""
    total = process(RowTask(lambda i, acc: acc + i, partial=int, reduce=operator.add), 100, n_workers=n_workers)
    assert total == 4950


def test_no_reducer_returns_none():
    """A pass without reducer runs every row and returns None."""
    seen = []
    lock = threading.Lock()

    def row(i, acc):
        with lock:
            seen.append(i)
        return acc

    assert process(RowTask(row), 10, n_workers=4) is None
    assert sorted(seen) == list(range(10))


def test_empty_extent_returns_fresh_partial():
    """Zero rows: the reducer sees one untouched accumulator."""
    assert process(RowTask(lambda i, acc: acc + 1, partial=int, reduce=operator.add), 0, n_workers=4) == 0


def test_invalid_arguments_raise():
    with pytest.raises(ValueError):
        process(RowTask(lambda i, acc: acc), 5, n_workers=0)
    with pytest.raises(ValueError):
        process(RowTask(lambda i, acc: acc), -1)


# --- Errors ---

@pytest.mark.parametrize("n_workers", [1, 4])
def test_worker_error_propagates_after_join(n_workers):
    """A row error reaches the caller; no thread of the pass is left running."""
    before = threading.active_count()

    def row(i, acc):
        if i == 5:
            raise ValueError("bad row 5")
        return acc

    with pytest.raises(ValueError, match="bad row 5"):
        process(RowTask(row), 20, n_workers=n_workers)
    assert threading.active_count() == before


def test_error_halts_sibling_workers():
    """Siblings stop at a row boundary once a worker has failed."""
    done = []
    lock = threading.Lock()
    failed = threading.Event()

    def row(i, acc):
        if i == 0:
            failed.set()
            raise RuntimeError("boom")
        failed.wait(timeout=5.0)
        with lock:
            done.append(i)
        return acc

    with pytest.raises(RuntimeError, match="boom"):
        process(RowTask(row), 400, n_workers=2)
    assert len(done) < 399


# --- Interrupts ---

def test_interrupt_set_before_pass():
    """An interrupt set up front runs no rows and raises TaskInterrupted."""
    stop = threading.Event()
    stop.set()
    seen = []
    with pytest.raises(TaskInterrupted):
        process(RowTask(lambda i, acc: seen.append(i)), 10, n_workers=2, interrupt=stop)
    assert seen == []


def test_interrupt_during_pass():
    """An interrupt set by a row stops the pass at the next row boundary."""
    stop = threading.Event()
    seen = []

    def row(i, acc):
        seen.append(i)
        if i == 3:
            stop.set()
        return acc

    with pytest.raises(TaskInterrupted):
        process(RowTask(row), 50, n_workers=1, interrupt=stop)
    assert seen == [0, 1, 2, 3]
