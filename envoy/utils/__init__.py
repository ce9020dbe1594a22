"""Small helpers shared across Envoy: network retry, config env expansion, sizes."""

import asyncio
import logging
import os
import re
import time
from functools import wraps
from typing import Awaitable, Callable, ParamSpec, TypeVar

T = TypeVar("T")
P = ParamSpec("P")
logger = logging.getLogger(__name__)

# Exception class names treated as transient network failures
RETRYABLE_ERROR_NAMES = frozenset(
    {
        "ConnectError",
        "ConnectTimeout",
        "ReadTimeout",
        "PoolTimeout",
        "NetworkError",
        "TimeoutError",
        "ConnectionRefusedError",
        "ConnectionResetError",
    }
)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def command_retry(
    max_retries: int = 3, max_timeout: float = 5.0, base_delay: float = 0.5
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry an async network call on transient failures.

    The delay before retry n is `base_delay * 2**n`. Retrying stops when the
    attempts run out, when the next delay would push the total past
    `max_timeout`, or as soon as the error is not transient. An error carrying
    a `retryable` attribute decides for itself (RemoteConnectionError sets it
    to False for protocol mismatches).

    Args:
        max_retries: Total number of attempts
        max_timeout: Upper bound in seconds on time spent across attempts
        base_delay: Delay before the first retry
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            started = time.monotonic()
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not _is_retryable(e):
                        logger.debug("%s failed with non-retryable %s: %s", func.__name__, type(e).__name__, e)
                        raise
                    attempt += 1
                    if attempt >= max_retries:
                        logger.error("%s gave up after %d attempts: %s", func.__name__, attempt, e)
                        raise
                    delay = base_delay * (2 ** (attempt - 1))
                    if time.monotonic() - started + delay >= max_timeout:
                        logger.error("%s gave up: retrying would exceed %.1fs", func.__name__, max_timeout)
                        raise
                    logger.warning(
                        "%s hit %s, retry %d/%d in %.1fs",
                        func.__name__,
                        type(e).__name__,
                        attempt,
                        max_retries - 1,
                        delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def _is_retryable(error: Exception) -> bool:
    explicit = getattr(error, "retryable", None)
    if explicit is not None:
        return bool(explicit)
    return type(error).__name__ in RETRYABLE_ERROR_NAMES


def expand_env_vars(value: object) -> object:
    """Replace `${VAR}` in every string of a parsed YAML tree.

    Unset variables are left as written.
    """
    if isinstance(value, dict):
        return {key: expand_env_vars(item) for key, item in value.items()}  # type: ignore[misc]
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    if isinstance(value, str):
        return _ENV_VAR_PATTERN.sub(lambda match: os.getenv(match.group(1), match.group(0)), value)
    return value


def format_size(size_bytes: int) -> str:
    """Byte count as a short label: 512B, 1.5KB, 3.0MB."""
    for unit, scale in (("MB", 1024 * 1024), ("KB", 1024)):
        if size_bytes >= scale:
            return f"{size_bytes / scale:.1f}{unit}"
    return f"{size_bytes}B"
