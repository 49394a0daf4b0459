"""Ordered fallback resolution for values with several possible sources."""
from __future__ import annotations

from typing import Any, Callable, Optional, Union

Candidate = Union[Any, Callable[[], Any]]


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def first_non_empty(*candidates: Candidate, default: Optional[Any] = None) -> Any:
    """Return the first candidate that is not empty.

    Callables are invoked lazily, only when every earlier candidate was empty,
    so an expensive source (a profile lookup, say) is skipped when a cheaper
    one already answered.
    """

    for candidate in candidates:
        value = candidate() if callable(candidate) else candidate
        if not is_empty(value):
            return value
    return default
