import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class CancellationAnalyticsEvent(str, Enum):
    CANCEL_STARTED = "event_cancel_started"
    CANCEL_CONFIRMED = "event_cancel_confirmed"
    REFUNDS_TRIGGERED = "refunds_triggered"
    ATTENDEES_NOTIFIED = "attendees_notified"
    CANCEL_COMPLETED = "event_cancel_completed"
    CANCEL_FAILED = "event_cancel_failed"


class AnalyticsTracker:
    """Logs product analytics events and keeps the most recent ones in memory."""

    def __init__(self, history_size: int = 1000):
        self._events: Deque[Tuple[datetime, str, Dict[str, Any]]] = deque(maxlen=history_size)

    def track(self, event: CancellationAnalyticsEvent, properties: Optional[Dict[str, Any]] = None) -> None:
        properties = properties or {}
        self._events.append((datetime.utcnow(), event.value, properties))
        logger.info(f"[CancellationAnalytics] {event.value}: {properties}")

    def events(self, name: Optional[str] = None) -> List[Tuple[datetime, str, Dict[str, Any]]]:
        return [entry for entry in self._events if name is None or entry[1] == name]
