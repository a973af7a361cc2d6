import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field

GOALS_UPDATED = "goals.updated"
BRANCHES_UPDATED = "branches.updated"
JOB_UPDATED = "job.updated"
GOAL_MESSAGE = "goal.message"


class LucidEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    source: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus. One instance per process, passed to whoever publishes."""

    def __init__(self):
        self._subscribers: List[Tuple[Optional[str], Callable[[LucidEvent], None]]] = []

    def subscribe(self, callback: Callable[[LucidEvent], None], event_type: Optional[str] = None) -> None:
        """Register a callback for every event, or only for one event type."""
        self._subscribers.append((event_type, callback))

    def emit(self, event_type: str, source: str, payload: Dict[str, Any]) -> LucidEvent:
        """Construct and broadcast a LucidEvent to all matching subscribers."""
        event = LucidEvent(
            event_type=event_type,
            source=source,
            payload=payload
        )

        for wanted, subscriber in self._subscribers:
            if wanted is not None and wanted != event_type:
                continue
            try:
                subscriber(event)
            except Exception as e:
                # A broken subscriber must not take down the publisher
                logger.warning(f"[BUS] Subscriber failed on {event_type}: {e}")

        return event
