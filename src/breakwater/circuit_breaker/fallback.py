"""Fallback resolution for blocked or failed calls."""

import inspect
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar, cast

from breakwater.circuit_breaker.exceptions import FallbackError

T = TypeVar("T")

Fallback = Callable[[BaseException], Any]


async def resolve_fallback(
    breaker_name: str,
    fallback: Callable[[BaseException], T | Awaitable[T]] | None,
    trigger: BaseException,
) -> T:
    """Turn ``trigger`` into the effective outcome of a call.

    Without a fallback the trigger is raised. Otherwise the fallback result
    (awaited when it is awaitable) is returned, and any exception it raises is
    wrapped in ``FallbackError``.
    """
    if fallback is None:
        raise trigger

    try:
        result = fallback(trigger)
        if inspect.isawaitable(result):
            return await cast(Awaitable[T], result)
        return cast(T, result)
    except Exception as exc:
        raise FallbackError(breaker_name, trigger) from exc
