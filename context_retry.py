import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 1.0

# Fragments of driver errors raised when a navigation races a DOM read.
CONTEXT_LOSS_MARKERS = (
    "execution context was destroyed",
    "execution context",
    "page is navigating",
    "frame was detached",
)


def is_context_loss(exc: BaseException) -> bool:
    msg = str(exc or "").lower()
    return any(marker in msg for marker in CONTEXT_LOSS_MARKERS)


async def with_context_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay: float = RETRY_DELAY_SECONDS,
    empty: Callable[[], T] = list,
    label: Optional[str] = None,
) -> T:
    """
    Run ``operation`` and retry it while the page context keeps getting invalidated.

    Only context-loss errors are retried; anything else propagates on the first
    failure. Running out of attempts gives ``empty()`` instead of raising so a single
    unlucky read does not abort the surrounding year loop.
    """
    name = label or getattr(operation, "__name__", "operation")
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_context_loss(e):
                raise
            logger.warning(f"[retry] Context lost during {name} (attempt {attempt}/{max_attempts}): {e}")
            if attempt < max_attempts:
                await asyncio.sleep(delay)
    logger.warning(f"[retry] Giving up on {name} after {max_attempts} attempt(s); returning empty result")
    return empty()
