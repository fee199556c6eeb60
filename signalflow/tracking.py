"""Analytics tracking and error reporting hooks."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

TrackingSink = Callable[[str, str, Dict[str, Any]], None]
ErrorSink = Callable[[BaseException], None]


class Tracker:
    """Forwards analytics events to an optional sink.

    Events are always logged at debug level. A failing sink never propagates
    into the caller; analytics must not break workflow execution.
    """

    def __init__(self, sink: Optional[TrackingSink] = None) -> None:
        self._sink = sink

    def track(
        self, account_id: str, event: str, properties: Optional[Dict[str, Any]] = None
    ) -> None:
        properties = properties or {}
        logger.debug(f"track {event} for {account_id}: {properties}")
        if self._sink is None:
            return
        try:
            self._sink(account_id, event, properties)
        except Exception as e:
            logger.warning(f"Failed to track event {event}: {e}")


def report_exception(exc: BaseException) -> None:
    """Default error-capture sink."""
    logger.error("Unhandled workflow error", exc_info=exc)
