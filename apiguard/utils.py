import functools
import inspect
import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from loguru import logger


def observer_guard(func):
    """
    A decorator that keeps observer callbacks from faulting the caller.

    Features:
    - Logs the callback name and the exception with its traceback
    - Swallows the exception so the request pipeline carries on
    - Awaits coroutine results so async observers are supported
    - Preserves function metadata
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        func_name = getattr(func, "__name__", repr(func))

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.opt(exception=e).warning(
                f"Observer {func_name} raised {type(e).__name__}: {e}"
            )

    return wrapper


def parse_retry_after(raw: str | int | float | None) -> float | None:
    """Parse a Retry-After header into seconds from now.

    Handles:
      - delta-seconds: "120", "1.5"
      - HTTP date: "Wed, 21 Oct 2015 07:28:00 GMT"
    """
    if raw is None or raw == "":
        return None

    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        seconds = None
    if seconds is not None:
        # "inf" and "nan" parse as floats but are not a usable delay
        if not math.isfinite(seconds):
            return None
        return max(seconds, 0.0)

    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    return max(delta, 0.0)
