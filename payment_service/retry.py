import logging
import time

from payment_service.errors import TransientGatewayError

logger = logging.getLogger(__name__)


def retry(operation, max_attempts=3, base_delay=1.0, sleep=time.sleep):
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Only transient gateway errors are retried, waiting
    ``base_delay * 2 ** attempt`` between attempts. Anything else, including
    rejected 4xx calls, propagates immediately.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except TransientGatewayError as exc:
            if attempt + 1 >= max_attempts:
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "Transient gateway failure (attempt %s/%s), retrying in %.1fs: %s",
                attempt + 1, max_attempts, delay, exc,
            )
            sleep(delay)
            attempt += 1
