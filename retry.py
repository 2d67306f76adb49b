import time
from typing import Callable

import httpx
import structlog

log = structlog.get_logger().bind(component="retry")

TOO_MANY_REQUESTS = 429


class RateLimited(Exception):
    pass


def with_backoff(
    operation: Callable[[], httpx.Response],
    max_attempts: int,
    base_delay: float,
    sleep: Callable[[float], None] = time.sleep,
    name: str = "gateway_call",
) -> httpx.Response:
    """
    Run `operation` until it returns a response that is not HTTP 429.

    Waits base_delay * 2**attempt between attempts. After `max_attempts`
    rate-limited responses RateLimited is raised; every other response,
    successful or not, is returned to the caller as-is.
    """
    for attempt in range(1, max_attempts + 1):
        response = operation()
        if response.status_code != TOO_MANY_REQUESTS:
            return response
        if attempt == max_attempts:
            break
        delay = base_delay * (2 ** attempt)
        log.warning("rate_limited", call=name, attempt=attempt, max_attempts=max_attempts, retry_in=delay)
        sleep(delay)
    raise RateLimited(f"{name} still rate limited after {max_attempts} attempts")
