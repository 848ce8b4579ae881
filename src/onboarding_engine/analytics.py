"""
analytics.py — Fire-and-forget analytics sinks
===============================================
Components report notable moments (step progress, milestone awards, path
generation) through ``emit_safely``.  A failing sink never fails the
operation that emitted the event: the error is logged and dropped.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

from onboarding_engine.models import new_id, utcnow

logger = logging.getLogger(__name__)


class AnalyticsSink(Protocol):
    def emit(self, event_name: str, payload: dict[str, Any]) -> None: ...


class NullAnalyticsSink:
    """Used when analytics are disabled."""

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        return None


class LoggingAnalyticsSink:
    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        logger.info("analytics %s %s", event_name, payload)


class StoreAnalyticsSink:
    """Appends events to the ``analytics_events`` table of a persistence adapter."""

    def __init__(self, adapter, clock: Optional[Callable] = None) -> None:
        self.adapter = adapter
        self.clock   = clock or utcnow

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        event_id = new_id("an")
        self.adapter.upsert("analytics_events", (event_id,), {
            "event_id":   event_id,
            "event_type": event_name,
            "session_id": payload.get("session_id"),
            "step_id":    payload.get("step_id"),
            "event_data": payload,
            "timestamp":  self.clock().isoformat(),
        })


def emit_safely(sink: Optional[AnalyticsSink], event_name: str, payload: dict[str, Any]) -> None:
    if sink is None:
        return
    try:
        sink.emit(event_name, payload)
    except Exception as exc:  # analytics must never break the caller
        logger.warning("Failed to emit analytics event %s: %s", event_name, exc)
