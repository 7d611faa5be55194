"""Per-call timeouts for blocking suspension points.

OCR engine calls and persistence writes run on a shared call executor so the
caller can stop waiting after a deadline. A call that times out keeps running
in the background; its result is discarded.
"""

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TypeVar

from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_executor: ThreadPoolExecutor | None = None


def _call_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=32, thread_name_prefix="call")
    return _executor


def call_with_timeout(
    fn: Callable[[], T],
    timeout: float | None,
    on_timeout: Callable[[], Exception],
) -> T:
    """Run ``fn`` and wait at most ``timeout`` seconds for its result.

    Args:
        fn: Zero-argument callable to run.
        timeout: Seconds to wait, or ``None`` to call inline without a limit.
        on_timeout: Factory for the exception raised when the deadline passes.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        Exception: The exception built by ``on_timeout``, or anything ``fn``
            raises itself.
    """
    if timeout is None:
        return fn()

    future = _call_executor().submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning("Call exceeded %.1fs timeout, abandoning result", timeout)
        raise on_timeout() from None
