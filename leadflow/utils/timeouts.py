# leadflow/utils/timeouts.py
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable

from leadflow.errors import ProviderTimeout

log = logging.getLogger(__name__)

# Shared pool for blocking provider / AI calls. A timed-out call keeps running in
# its thread (no cancellation); the caller just stops waiting for it.
_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="provider-call")


def call_with_timeout(fn: Callable[..., Any], *args: Any, timeout: float, label: str = "", **kwargs: Any) -> Any:
    """
    Run fn(*args, **kwargs) and wait at most `timeout` seconds for it.
    Exceptions from fn propagate unchanged; a timeout raises ProviderTimeout.
    """
    if not timeout or timeout <= 0:
        return fn(*args, **kwargs)
    future = _POOL.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        name = label or getattr(fn, "__name__", "call")
        log.warning("%s timed out after %.1fs", name, timeout)
        raise ProviderTimeout(f"{name} timed out after {timeout:.0f}s")
