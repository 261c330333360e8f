"""Shared utility functions for the invoice_recon package."""
import logging
import os
import random
import time
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Sequence, TypeVar

from invoice_recon.core.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def clean_env_value(value: str) -> str:
    """Strip whitespace, wrapping quotes and a trailing literal ``\\n``."""

    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        value = value[1:-1]
    if value.endswith("\\n"):
        value = value[:-2]
    return value


def load_env_file(path: Path) -> None:
    """Load environment variables from a file if it exists."""
    if not path.exists():
        return

    try:
        with path.open(encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key or key in os.environ:
                    continue
                os.environ[key] = clean_env_value(value)
    except OSError as exc:
        logger.debug("Could not load env file %s: %s", path, exc)


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of at most ``size`` items."""

    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def with_retries(
    call: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    retry_on: Iterable[type] = (TransientError,),
    description: str = "provider call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``call`` and retry transient failures with bounded backoff.

    The last exception is re-raised once ``attempts`` is exhausted so the
    caller can record a per-item failure.
    """

    retry_types = tuple(retry_on)
    delay = base_delay
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            return call()
        except retry_types as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                attempts,
                exc,
                delay,
            )
            sleep(delay + random.uniform(0, delay / 4))
            delay = min(delay * 2, max_delay)
    raise AssertionError("unreachable")  # pragma: no cover
