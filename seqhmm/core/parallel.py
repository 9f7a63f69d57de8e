"""Per-state fan-out over a thread pool.

Each call owns its executor: work is submitted, results are gathered back
in input order, and the pool is shut down before returning. Workers must
write only to state they own (one emission model, one matrix row).
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


def resolve_n_jobs(n_jobs: Optional[int], n_tasks: int) -> int:
    """
    Translate an ``n_jobs`` setting into a worker count.

    Args:
        n_jobs: None for one worker per task (capped at the core count),
            0 for all cores, or an explicit positive count
        n_tasks: Number of independent tasks to run

    Returns:
        Number of workers, never more than n_tasks and at least 1
    """
    n_cores = os.cpu_count() or 1
    if n_jobs is None:
        workers = n_cores
    elif n_jobs == 0:
        workers = n_cores
    elif n_jobs < 0:
        raise ValueError(f"n_jobs must be None, 0 or positive, got {n_jobs}")
    else:
        workers = int(n_jobs)
    return max(1, min(workers, n_tasks))


def parallel_map(func: Callable[[T], R], items: Iterable[T],
                 n_jobs: Optional[int] = None) -> List[R]:
    """
    Apply ``func`` to every item, in parallel threads when worthwhile.

    Results come back in the order of ``items``. The first exception raised
    by a worker propagates to the caller.
    """
    items = list(items)
    workers = resolve_n_jobs(n_jobs, len(items))

    if workers <= 1:
        return [func(item) for item in items]

    logger.debug("Running %d tasks on %d threads", len(items), workers)
    results: List[Optional[R]] = [None] * len(items)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(func, item): idx for idx, item in enumerate(items)}
        for future in as_completed(futures):
            results[futures[future]] = future.result()

    return results
