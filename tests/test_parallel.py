"""Tests for parallel sweeps"""

import pytest
import torch

from dasvf.utils import chunk_ranges, parallel_for, parallel_reduce, resolve_num_threads


def test_chunk_ranges_cover_disjointly():
    ranges = chunk_ranges(103, 4, min_chunk_size=10)
    assert ranges[0][0] == 0
    assert ranges[-1][1] == 103
    for (_, stop), (start, _) in zip(ranges[:-1], ranges[1:]):
        assert stop == start
    assert len(ranges) <= 4
    assert chunk_ranges(0, 4) == []
    assert chunk_ranges(50, 8, min_chunk_size=100) == [(0, 50)]


def test_parallel_for_keeps_order():
    values = torch.arange(1000, dtype=torch.float64)
    parts = parallel_for(lambda start, stop: values[start:stop] * 2, 1000, num_threads=4, min_chunk_size=100)
    assert torch.equal(torch.cat(parts), values * 2)


def test_parallel_reduce_sums_partials():
    total = parallel_reduce(lambda start, stop: torch.tensor(float(stop - start)), 1000, num_threads=4, min_chunk_size=10)
    assert float(total) == 1000.0
    with pytest.raises(ValueError):
        parallel_reduce(lambda start, stop: 0, 0)


def test_worker_exceptions_propagate():
    def fail(start, stop):
        if start > 0:
            raise RuntimeError("worker failed")
        return start

    with pytest.raises(RuntimeError):
        parallel_for(fail, 100, num_threads=4, min_chunk_size=10)


def test_resolve_num_threads():
    assert resolve_num_threads(3) == 3
    assert resolve_num_threads(0) >= 1
