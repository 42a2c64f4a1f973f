"""Helpers for keeping blocking work off the event loop.

The JWT codec (PyJWT) is synchronous; token signing and verification are
offloaded to a worker thread through anyio so a burst of logins does not
stall other coroutines.
"""

from __future__ import annotations

import functools
from typing import Any, Callable, TypeVar

import anyio

T = TypeVar("T")


async def run_in_thread(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Execute *func* in a worker thread and await the result.

    anyio.to_thread.run_sync only forwards positional arguments, so keyword
    arguments are bound with functools.partial first.
    """

    if kwargs:
        return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))
    return await anyio.to_thread.run_sync(func, *args)
