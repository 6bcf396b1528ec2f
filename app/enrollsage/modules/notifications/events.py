"""
In-process event dispatch.

Callers emit after committing; handlers run synchronously in the same request.
A failing handler is logged and does not affect the caller or other handlers.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], None]

_handlers: dict[str, list[Handler]] = defaultdict(list)


def on(name: str) -> Callable[[Handler], Handler]:
    def decorator(fn: Handler) -> Handler:
        if fn not in _handlers[name]:
            _handlers[name].append(fn)
        return fn

    return decorator


def handlers_for(name: str) -> list[Handler]:
    return list(_handlers.get(name, ()))


def emit(name: str, payload: dict[str, Any]) -> int:
    """Run handlers for ``name``. Returns the number that completed without error."""
    ok = 0
    for handler in handlers_for(name):
        try:
            handler(payload)
            ok += 1
        except Exception:
            logger.exception("Event handler failed (event=%s handler=%s)", name, getattr(handler, "__name__", handler))
    logger.info("Event %s dispatched to %d handler(s)", name, ok)
    return ok
