"""
DASVF Parallel Sweeps

Data-parallel execution of voxel/point sweeps over disjoint index ranges.

Features:
- Contiguous chunking of [0, n) into disjoint ranges
- Forward sweeps: each worker writes only its own output slice
- Reductions: per-chunk partial accumulators merged after the parallel region
- Small workloads run inline without a thread pool
"""

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Tuple, TypeVar

from .logging_config import get_logger

logger = get_logger("parallel")

T = TypeVar("T")

DEFAULT_MIN_CHUNK_SIZE = 4096


def resolve_num_threads(num_threads: int = 0) -> int:
    """Number of worker threads (0 or negative = one per CPU core)"""
    if num_threads is None or num_threads <= 0:
        return os.cpu_count() or 1
    return int(num_threads)


def chunk_ranges(n: int, num_chunks: int, min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE) -> List[Tuple[int, int]]:
    """
    Split [0, n) into at most num_chunks contiguous ranges

    Args:
        n: Total number of items
        num_chunks: Maximum number of ranges
        min_chunk_size: Ranges are never smaller than this (except the last)

    Returns:
        List of (start, stop) tuples covering [0, n) without overlap
    """
    if n <= 0:
        return []
    min_chunk_size = max(int(min_chunk_size), 1)
    num_chunks = max(1, min(int(num_chunks), (n + min_chunk_size - 1) // min_chunk_size))
    size = (n + num_chunks - 1) // num_chunks
    return [(start, min(start + size, n)) for start in range(0, n, size)]


def parallel_for(
    fn: Callable[[int, int], T],
    n: int,
    num_threads: int = 0,
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
) -> List[T]:
    """
    Apply fn(start, stop) to disjoint ranges of [0, n)

    Exceptions raised by a worker are re-raised in the calling thread.

    Args:
        fn: Function processing one range
        n: Total number of items
        num_threads: Worker threads (0 = one per CPU core)
        min_chunk_size: Minimum range size handed to one worker

    Returns:
        Results of fn in range order
    """
    workers = resolve_num_threads(num_threads)
    ranges = chunk_ranges(n, workers, min_chunk_size)
    if len(ranges) <= 1:
        return [fn(start, stop) for start, stop in ranges]

    with ThreadPoolExecutor(max_workers=min(workers, len(ranges))) as executor:
        futures = [executor.submit(fn, start, stop) for start, stop in ranges]
        return [future.result() for future in futures]


def parallel_reduce(
    fn: Callable[[int, int], T],
    n: int,
    num_threads: int = 0,
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
) -> T:
    """
    Sum the partial results of fn(start, stop) over disjoint ranges of [0, n)

    Each range accumulates into its own partial result; the partials are
    merged once all workers have finished.
    """
    partials = parallel_for(fn, n, num_threads=num_threads, min_chunk_size=min_chunk_size)
    if not partials:
        raise ValueError("parallel_reduce requires at least one item")
    total = partials[0]
    for partial in partials[1:]:
        total = total + partial
    return total
