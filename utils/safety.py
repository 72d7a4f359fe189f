"""
Best-effort execution helpers.

Side channels such as scratch notes, notifications and prompt enrichment
must never change the outcome of the operation they decorate. Wrapping
them here keeps that policy visible at the call site:

    with best_effort("append scratch note"):
        notes.write(path, text, append=True)

    summary = await run_best_effort("vector context", store.search(q), default=[])
"""

import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextmanager
def best_effort(label: str, log: logging.Logger = None):
    """Run the block, logging and discarding any exception it raises."""
    try:
        yield
    except Exception as e:
        (log or logger).warning("Best-effort step '%s' failed: %s", label, e)


async def run_best_effort(label: str, awaitable: Awaitable[T], default: Any = None,
                          log: logging.Logger = None) -> T:
    """Await a coroutine, returning `default` instead of raising."""
    try:
        return await awaitable
    except Exception as e:
        (log or logger).warning("Best-effort step '%s' failed: %s", label, e)
        return default


def call_best_effort(label: str, fn: Callable[..., T], *args, default: Any = None,
                     log: logging.Logger = None, **kwargs) -> T:
    """Call a plain function, returning `default` instead of raising."""
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        (log or logger).warning("Best-effort step '%s' failed: %s", label, e)
        return default
