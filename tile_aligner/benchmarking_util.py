import contextlib
import logging
import time
from typing import Generator

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def debug_timing(span_name: str) -> Generator[None, None, None]:
    """Log the time spent in this context to debug level."""
    start_time = time.perf_counter()
    yield
    total_time = time.perf_counter() - start_time
    logger.debug(f"{span_name}: {total_time:0.3f}s")
