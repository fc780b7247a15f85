import logging
import os

logger = logging.getLogger(__name__)


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring %s=%r, expected an integer", name, value)
        return default


DEFAULT_CONFIG = {
    "num_threads": max(1, _env_int("QKCONV_NUM_THREADS", os.cpu_count() or 1)),
    # Input width (columns) from which a single 2D convolution splits its
    # output columns across workers.
    "column_parallel_threshold": _env_int("QKCONV_COLUMN_PARALLEL_THRESHOLD", 64),
}


def get_num_threads():
    """Number of workers used by parallel regions."""
    return DEFAULT_CONFIG["num_threads"]


def set_num_threads(num_threads):
    """
    Set the number of workers used by parallel regions.

    Args:
        num_threads (int): Worker count, 1 disables threading.
    """
    num_threads = int(num_threads)
    if num_threads < 1:
        raise ValueError(f"num_threads must be >= 1, got {num_threads}")
    DEFAULT_CONFIG["num_threads"] = num_threads
    logger.debug("Worker pool size set to %d", num_threads)


def get_column_parallel_threshold():
    return DEFAULT_CONFIG["column_parallel_threshold"]
