"""Shared utility functions.

Small helpers used across modules: fire-and-forget tasks that still log
their failures, a bounded retry combinator, and the name inflections used
by command templates.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar

from sandpool.logger import logger

T = TypeVar("T")


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work (container teardown) where we don't await the result but still
    want failures to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks — logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here because we're in a
        # done-callback, not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int,
    on: tuple[type[BaseException], ...],
    description: str = "operation",
) -> T:
    """Call *fn* and retry it up to *retries* more times on the given exceptions.

    Attempts run sequentially with no backoff.  Exceptions outside *on*
    propagate immediately; the last matching exception propagates once the
    retries are used up.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except on as exc:
            attempt += 1
            if attempt > retries:
                raise
            logger.warning(
                "Retrying after transient failure",
                operation=description,
                attempt=attempt,
                retries=retries,
                err=str(exc),
            )


def camelize(value: str) -> str:
    """``hello_world`` → ``HelloWorld``; ``path/to_file`` → ``Path::ToFile``."""
    parts = value.split("/")
    return "::".join(
        "".join(word[:1].upper() + word[1:] for word in part.split("_")) for part in parts
    )


_ACRONYM_BOUNDARY = re.compile(r"([A-Z]+)([A-Z][a-z])")
_WORD_BOUNDARY = re.compile(r"([a-z\d])([A-Z])")


def underscore(value: str) -> str:
    """``HelloWorld`` → ``hello_world``; ``HTTPServer`` → ``http_server``."""
    value = value.replace("::", "/")
    value = _ACRONYM_BOUNDARY.sub(r"\1_\2", value)
    value = _WORD_BOUNDARY.sub(r"\1_\2", value)
    return value.replace("-", "_").lower()
