"""Execution lifecycle events.

Every state change of an execution or one of its stages is published on an
EventBus. The HTTP layer relays them over SSE (conveyor.sse), the CLI runner
prints them, and tests record them.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
import json
import logging
import threading

from conveyor.utils.helpers import utc_now_iso

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted during pipeline execution."""

    # Execution events
    EXECUTION_STARTED = "execution:started"
    EXECUTION_UPDATED = "execution:updated"
    EXECUTION_COMPLETED = "execution:completed"
    EXECUTION_CANCELLED = "execution:cancelled"

    # Stage events
    STAGE_STARTED = "stage:started"
    STAGE_UPDATED = "stage:updated"
    STAGE_WAITING_APPROVAL = "stage:waiting_approval"
    STAGE_RETRYING = "stage:retrying"
    STAGE_COMPLETED = "stage:completed"
    STAGE_FAILED = "stage:failed"
    STAGE_APPROVED = "stage:approved"
    STAGE_REJECTED = "stage:rejected"


# Events after which an execution emits nothing further
TERMINAL_EVENT_TYPES = frozenset({EventType.EXECUTION_COMPLETED})


@dataclass
class Event:
    """One lifecycle notification; ``data`` holds camelCase snapshots."""

    type: EventType
    execution_id: str
    timestamp: str = field(default_factory=utc_now_iso)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "executionId": self.execution_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Event":
        return Event(
            type=EventType(data["type"]),
            execution_id=data["executionId"],
            timestamp=data.get("timestamp", utc_now_iso()),
            data=data.get("data", {}),
        )


Callback = Callable[[Event], None]


class EventBus:
    """In-process publish/subscribe hub for execution events.

    A subscription matches on event type (None matches every type) and,
    optionally, on execution id. Callbacks run on the publishing thread
    after the bus lock is released, so a callback may call back into the
    executor. A callback that raises is logged and skipped.

    Args:
        sse_manager: Receives every published event when set
        max_history: Size of the in-memory history ring
    """

    def __init__(self, sse_manager: Optional[Any] = None, max_history: int = 1000):
        self.sse_manager = sse_manager
        # (event_type or None, execution_id or None, callback)
        self._subscriptions: List[Tuple[Optional[EventType], Optional[str], Callback]] = []
        self._event_history: List[Event] = []
        self._max_history = max_history
        self._lock = threading.RLock()

    def subscribe(
        self,
        event_type: Optional[EventType],
        callback: Callback,
        execution_id: Optional[str] = None,
    ) -> None:
        """Register ``callback`` for ``event_type`` (None for all), optionally for one execution only."""
        if isinstance(event_type, str):
            event_type = EventType(event_type)
        with self._lock:
            self._subscriptions.append((event_type, execution_id, callback))

    def unsubscribe(
        self,
        event_type: Optional[EventType],
        callback: Callback,
        execution_id: Optional[str] = None,
    ) -> None:
        """Remove a subscription; the arguments must match the ones given to subscribe()."""
        if isinstance(event_type, str):
            event_type = EventType(event_type)
        with self._lock:
            self._subscriptions = [
                sub for sub in self._subscriptions
                if sub != (event_type, execution_id, callback)
            ]

    def publish(self, event: Event) -> None:
        """Record the event, relay it to SSE, then call matching subscribers in order."""
        with self._lock:
            self._event_history.append(event)
            overflow = len(self._event_history) - self._max_history
            if overflow > 0:
                del self._event_history[:overflow]
            subscriptions = list(self._subscriptions)

        logger.debug(f"{event.type.value} ({event.execution_id})")

        self._forward_to_sse(event)

        for event_type, execution_id, callback in subscriptions:
            if event_type is not None and event_type != event.type:
                continue
            if execution_id is not None and execution_id != event.execution_id:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event callback for {event.type.value}: {e}")

    def _forward_to_sse(self, event: Event) -> None:
        if self.sse_manager is None:
            return
        try:
            self.sse_manager.publish(event)
        except Exception as e:
            logger.warning(f"SSE relay of {event.type.value} failed: {e}")

    def get_history(
        self,
        execution_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
    ) -> List[Event]:
        """Retained events, oldest first, optionally filtered by execution and type."""
        with self._lock:
            events = list(self._event_history)

        if execution_id:
            events = [e for e in events if e.execution_id == execution_id]

        if event_type:
            events = [e for e in events if e.type == event_type]

        return events


class EventEmitter:
    """Publishes events stamped with one execution id.

    Stage helpers wrap the stage snapshot as ``{"executionId", "stageExecution"}``
    plus any extra fields.
    """

    def __init__(self, execution_id: str, event_bus: EventBus):
        self.execution_id = execution_id
        self.event_bus = event_bus

    def emit(self, event_type: EventType, data: Optional[Dict[str, Any]] = None) -> None:
        self.event_bus.publish(Event(type=event_type, execution_id=self.execution_id, data=data or {}))

    def execution_started(self, execution: Dict[str, Any]) -> None:
        self.emit(EventType.EXECUTION_STARTED, execution)

    def execution_updated(self, execution: Dict[str, Any]) -> None:
        self.emit(EventType.EXECUTION_UPDATED, execution)

    def execution_completed(self, execution: Dict[str, Any]) -> None:
        self.emit(EventType.EXECUTION_COMPLETED, execution)

    def execution_cancelled(self, execution: Dict[str, Any]) -> None:
        self.emit(EventType.EXECUTION_CANCELLED, execution)

    def _stage_payload(self, stage_execution: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
        payload = {
            "executionId": self.execution_id,
            "stageExecution": stage_execution,
        }
        payload.update(extra)
        return payload

    def stage_started(self, stage_execution: Dict[str, Any]) -> None:
        self.emit(EventType.STAGE_STARTED, self._stage_payload(stage_execution))

    def stage_updated(self, stage_execution: Dict[str, Any]) -> None:
        self.emit(EventType.STAGE_UPDATED, self._stage_payload(stage_execution))

    def stage_waiting_approval(self, stage_execution: Dict[str, Any]) -> None:
        self.emit(EventType.STAGE_WAITING_APPROVAL, self._stage_payload(stage_execution))

    def stage_retrying(self, stage_execution: Dict[str, Any], attempt: int, max_attempts: int, error: str) -> None:
        """Emit after a failed attempt that will be retried."""
        self.emit(EventType.STAGE_RETRYING, self._stage_payload(
            stage_execution,
            attempt=attempt,
            maxAttempts=max_attempts,
            error=error,
        ))

    def stage_completed(self, stage_execution: Dict[str, Any]) -> None:
        self.emit(EventType.STAGE_COMPLETED, self._stage_payload(stage_execution))

    def stage_failed(self, stage_execution: Dict[str, Any]) -> None:
        self.emit(EventType.STAGE_FAILED, self._stage_payload(stage_execution))

    def stage_approved(self, stage_execution: Dict[str, Any], approved_by: str) -> None:
        self.emit(EventType.STAGE_APPROVED, self._stage_payload(stage_execution, approvedBy=approved_by))

    def stage_rejected(self, stage_execution: Dict[str, Any], rejected_by: str, reason: Optional[str]) -> None:
        self.emit(EventType.STAGE_REJECTED, self._stage_payload(
            stage_execution,
            rejectedBy=rejected_by,
            reason=reason,
        ))
