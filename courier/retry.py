import logging
import time
from typing import Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


def retry_with_backoff(
        fn: Callable,
        max_retries: int = 3,
        base_delay: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Optional[Callable[[float], None]] = None,
):
    """Call ``fn`` up to ``max_retries`` times, doubling the delay after each failure.

    The last error is re-raised once the attempts are exhausted. Errors outside
    ``retry_on`` propagate immediately.
    """
    attempts = max(1, int(max_retries))
    sleep = sleep or time.sleep
    delay = max(0.0, float(base_delay))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.warning("Attempt %s/%s failed (%s); retrying in %.1fs", attempt, attempts, exc, delay)
            sleep(delay)
            delay *= 2
