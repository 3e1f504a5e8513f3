# timing_decorator.py
import time
import functools
from typing import Callable, Any, Optional, TypeVar, cast
from app_logger import logger

F = TypeVar("F", bound=Callable[..., Any])

def timed(label: Optional[str] = None,
          warn_after_s: Optional[float] = None,
          clock: Callable[[], float] = time.perf_counter) -> Callable[[F], F]:
    """
    Log how long each call takes.

    Every call is logged at DEBUG (file only). A call slower than
    ``warn_after_s`` is also logged at WARNING, which lands in the memory
    handler, so a stalled sqlite write is visible in the UI tail while the
    BLE link keeps producing frames.
    """
    def decorator(func: F) -> F:
        tag = label or func.__qualname__

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = clock()
            try:
                return func(*args, **kwargs)
            finally:
                elapsed = clock() - start
                if warn_after_s is not None and elapsed > warn_after_s:
                    logger.warning("[%s] slow: %.3f s (limit %.3f s)", tag, elapsed, warn_after_s)
                else:
                    logger.debug("[%s] took %.4f s", tag, elapsed)
        return cast(F, wrapper)
    return decorator
