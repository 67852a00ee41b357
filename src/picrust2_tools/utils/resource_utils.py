# picrust2_tools/utils/resource_utils.py
import functools
import logging
import time

import psutil

logger = logging.getLogger('picrust2_tools')


def track_peak_memory(func):
    """
    Decorator that logs wall time and resident memory of a CLI command.

    psutil reports current RSS only; the peak is sampled before and after
    the call.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        process = psutil.Process()
        start_rss = process.memory_info().rss
        start = time.time()
        try:
            return func(*args, **kwargs)
        finally:
            end_rss = process.memory_info().rss
            peak_mb = max(start_rss, end_rss) / (1024 * 1024)
            elapsed = time.time() - start
            minutes, seconds = divmod(elapsed, 60)
            logger.info(
                f"{func.__name__}: {int(minutes)}m {int(seconds)}s, "
                f"memory {start_rss / (1024 * 1024):.1f} MB -> {end_rss / (1024 * 1024):.1f} MB "
                f"(peak sampled {peak_mb:.1f} MB)"
            )
    return wrapper
