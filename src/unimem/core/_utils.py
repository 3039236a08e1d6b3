"""
Shared utility functions for the Unimem core modules.
"""

import asyncio
import functools
import secrets
import time
import uuid
from typing import Callable, TypeVar, ParamSpec

from loguru import logger

P = ParamSpec('P')
T = TypeVar('T')


async def run_in_thread(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """
    Run a blocking function in a thread pool executor.

    Used by the SQLite backend so that sqlite3 calls do not block the
    event loop.

    Example:
        rows = await run_in_thread(self._query_sync, sql, params)
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def log_task_exception(task: asyncio.Task) -> None:
    """
    Done-callback that logs exceptions from fire-and-forget tasks.

        task = asyncio.create_task(self._loop())
        task.add_done_callback(log_task_exception)
    """
    try:
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Async task {task.get_name()} failed with exception: {exc}")
    except asyncio.CancelledError:
        logger.debug(f"Async task {task.get_name()} was cancelled")


def new_entity_id() -> str:
    return uuid.uuid4().hex


def new_client_id() -> str:
    """Client identifier in the ``client_<epoch ms>_<random>`` form."""
    return f"client_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
