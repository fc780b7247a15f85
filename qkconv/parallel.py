"""
Data-parallel loop helper.

Every parallel region is synchronous: ``parallel_for`` returns only once all
iterations have finished. Iterations must write disjoint locations. A region
opened from inside another region runs inline on the calling worker.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from qkconv.config import get_num_threads

logger = logging.getLogger(__name__)

_state = threading.local()


def in_parallel_region():
    return getattr(_state, "active", False)


def _run_chunk(body, indices):
    _state.active = True
    try:
        for i in indices:
            body(i)
    finally:
        _state.active = False


def parallel_for(count, body, num_threads=None):
    """
    Run ``body(i)`` for every ``i`` in ``range(count)``.

    Args:
        count (int): Number of iterations.
        body (callable): Loop body taking the iteration index.
        num_threads (int): Worker count, defaults to ``get_num_threads()``.
    """
    if count <= 0:
        return

    workers = min(num_threads or get_num_threads(), count)
    if workers <= 1 or in_parallel_region():
        for i in range(count):
            body(i)
        return

    # Static schedule: worker k owns iterations k, k + workers, ...
    chunks = [range(k, count, workers) for k in range(workers)]
    logger.debug("parallel_for: %d iterations on %d workers", count, workers)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(_run_chunk, body, chunk) for chunk in chunks]
        for future in futures:
            future.result()
