"""
Non-fatal side effects — bookkeeping that must never mask the primary result.

Persisting a failed message, recording an analytics event or learning flow
defaults are best-effort: a failure is logged with structlog and counted
per operation name, then dropped.

Usage:
    async with non_fatal("persist_failed_message", to=destination):
        record = await store.create_message(message)
"""
from __future__ import annotations

import structlog
from collections import Counter
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

logger = structlog.get_logger()


class SideEffectMetrics:
    """Counts of silently dropped failures, keyed by operation name."""

    def __init__(self):
        self._dropped: Counter[str] = Counter()

    def record_drop(self, name: str) -> None:
        self._dropped[name] += 1

    def count(self, name: str) -> int:
        return self._dropped[name]

    @property
    def total(self) -> int:
        return sum(self._dropped.values())

    def to_dict(self) -> dict[str, int]:
        return dict(self._dropped)

    def reset(self) -> None:
        self._dropped.clear()


side_effect_metrics = SideEffectMetrics()


@asynccontextmanager
async def non_fatal(name: str, **log_context: Any) -> AsyncIterator[None]:
    try:
        yield
    except Exception as e:
        side_effect_metrics.record_drop(name)
        logger.error("side_effect_dropped", operation=name, error=str(e), **log_context)
