"""
Backlog partitioning across worker processes.

Every worker reads the same backlog snapshot, applies the same seeded
Fisher-Yates permutation and keeps its own contiguous chunk. Shuffling
before chunking spreads failure-prone items that cluster by insertion
order evenly across workers.
"""

import math
import random
from typing import List, Optional, Sequence, TypeVar, Union


T = TypeVar("T")


class PartitionError(ValueError):
    """Invalid worker index or worker count."""


def fisher_yates_shuffle(items: Sequence[T], rng: Optional[random.Random] = None) -> List[T]:
    """
    Return a uniformly shuffled copy of items.

    Args:
        items: Sequence to shuffle (not modified)
        rng: Random source (default: module-level random)

    Returns:
        New shuffled list
    """
    rng = rng or random
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def chunk_size(total_items: int, total_workers: int) -> int:
    """ceil(total_items / total_workers)."""
    if total_workers <= 0:
        raise PartitionError(f"total_workers must be positive, got {total_workers}")
    return math.ceil(total_items / total_workers)


def chunk_sizes(total_items: int, total_workers: int) -> List[int]:
    """
    Sizes of every worker's chunk.

    >>> chunk_sizes(10, 4)
    [3, 3, 3, 1]
    """
    size = chunk_size(total_items, total_workers)
    return [
        max(0, min(size, total_items - index * size))
        for index in range(total_workers)
    ]


def partition_backlog(
    items: Sequence[T],
    worker_index: int,
    total_workers: int,
    seed: Union[int, str, None] = None,
) -> List[T]:
    """
    Select this worker's share of the backlog.

    Callers must pass the backlog in a stable order (the store returns it
    ordered by id) so that all workers sharing a seed see the same
    permutation.

    Args:
        items: Eligible backlog snapshot
        worker_index: This worker's index (0-based)
        total_workers: Number of workers in the run
        seed: Shared permutation seed; None gives an unseeded shuffle

    Returns:
        The worker's chunk (may be empty)

    Raises:
        PartitionError: If total_workers <= 0 or worker_index is out of range
    """
    if total_workers <= 0:
        raise PartitionError(f"total_workers must be positive, got {total_workers}")
    if not 0 <= worker_index < total_workers:
        raise PartitionError(
            f"worker_index must be in [0, {total_workers}), got {worker_index}"
        )

    if not items:
        return []

    rng = random.Random(seed) if seed is not None else random.Random()
    shuffled = fisher_yates_shuffle(items, rng)

    size = chunk_size(len(shuffled), total_workers)
    start = worker_index * size
    end = min(start + size, len(shuffled))
    return shuffled[start:end]
