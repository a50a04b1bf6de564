"""Events emitted by running machines, the bus that distributes them, and listeners."""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import (
    EventBusClosedError,
    EventPersisterNotSetError,
    ListenerAlreadyExistsError,
    ListenerError,
    ListenerNotFoundError,
    ValidationError,
)
from .state import TransitionType
from .utils import current_timestamp, generate_id

logger = logging.getLogger(__name__)

CHANNEL_CAPACITY = 100


class EventType(str, Enum):
    """Kinds of event a machine instance publishes."""

    EXECUTION_STARTED = "execution_started"
    EXECUTION_FINISHED = "execution_finished"
    EXECUTION_FAILED = "execution_failed"
    STATE_ENTERED = "state_entered"
    STATE_EXITED = "state_exited"
    TRANSITION_FIRED = "transition_fired"

    def __str__(self) -> str:
        return self.value


@dataclass
class StateEvent:
    """Something that happened to a machine instance."""

    type: EventType
    instance_id: str
    execution_id: str
    state_id: str = ""
    from_state_id: str = ""
    to_state_id: str = ""
    transition: TransitionType | str = ""
    data: dict[str, Any] | None = field(default_factory=dict)
    error: BaseException | None = None
    id: str = field(default_factory=generate_id)
    timestamp: datetime = field(default_factory=current_timestamp)


class EventListener(ABC):
    """Receives events from an EventBus."""

    @property
    @abstractmethod
    def id(self) -> str:
        """The listener's unique identifier."""

    @property
    @abstractmethod
    def active(self) -> bool:
        """Whether the listener still accepts events."""

    @abstractmethod
    def handle_event(self, event: StateEvent) -> None:
        """Process one event; raise to report a failure."""

    @abstractmethod
    def close(self) -> None:
        """Stop accepting events."""


class BaseEventListener(EventListener):
    """A listener that tracks its own activity and ignores every event."""

    def __init__(self, listener_id: str) -> None:
        self._id = listener_id
        self._active = True
        self._state_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self._id!r})"

    @property
    def id(self) -> str:
        return self._id

    @property
    def active(self) -> bool:
        with self._state_lock:
            return self._active

    def handle_event(self, event: StateEvent) -> None:
        """Do nothing."""

    def close(self) -> None:
        with self._state_lock:
            self._active = False


class MetricsListener(BaseEventListener):
    """Counts executions, state entries and fired transitions."""

    def __init__(self, listener_id: str = "metrics-listener") -> None:
        super().__init__(listener_id)
        self._metrics: dict[str, int] = {}
        self._metrics_lock = threading.Lock()

    @property
    def metrics(self) -> dict[str, int]:
        """A copy of the counters collected so far."""
        with self._metrics_lock:
            return dict(self._metrics)

    def handle_event(self, event: StateEvent) -> None:
        if not self.active:
            return
        key = self._counter_key(event)
        if key is None:
            return
        with self._metrics_lock:
            self._metrics[key] = self._metrics.get(key, 0) + 1

    @staticmethod
    def _counter_key(event: StateEvent) -> str | None:
        if event.type == EventType.EXECUTION_STARTED:
            return "executions_started"
        if event.type == EventType.EXECUTION_FINISHED:
            return "executions_completed"
        if event.type == EventType.EXECUTION_FAILED:
            return "executions_failed"
        if event.type == EventType.STATE_ENTERED:
            return f"state_entered_{event.state_id}"
        if event.type == EventType.TRANSITION_FIRED:
            return f"transition_{event.transition}"
        return None

    def reset(self) -> None:
        """Forget every counter."""
        with self._metrics_lock:
            self._metrics = {}


class LoggingListener(BaseEventListener):
    """Writes each event to the module logger."""

    def __init__(self, log_level: str = "info", listener_id: str = "logging-listener") -> None:
        super().__init__(listener_id)
        self.log_level = log_level

    def handle_event(self, event: StateEvent) -> None:
        if not self.active:
            return
        kind = event.type
        if kind == EventType.EXECUTION_STARTED:
            logger.info(
                "Execution started: instance=%s, execution=%s",
                event.instance_id,
                event.execution_id,
            )
        elif kind == EventType.EXECUTION_FINISHED:
            logger.info(
                "Execution finished: instance=%s, execution=%s",
                event.instance_id,
                event.execution_id,
            )
        elif kind == EventType.EXECUTION_FAILED:
            logger.error(
                "Execution failed: instance=%s, execution=%s, error=%s",
                event.instance_id,
                event.execution_id,
                event.error,
            )
        elif kind == EventType.STATE_ENTERED:
            logger.debug(
                "State entered: instance=%s, state=%s", event.instance_id, event.state_id
            )
        elif kind == EventType.STATE_EXITED:
            logger.debug(
                "State exited: instance=%s, state=%s", event.instance_id, event.state_id
            )
        elif kind == EventType.TRANSITION_FIRED:
            logger.debug(
                "Transition fired: instance=%s, state=%s, transition=%s",
                event.instance_id,
                event.state_id,
                event.transition,
            )


class EventPersister(ABC):
    """Stores events per instance."""

    @abstractmethod
    def save_event(self, event: StateEvent) -> None:
        """Store an event."""

    @abstractmethod
    def get_events(self, instance_id: str) -> list[StateEvent]:
        """Return every event of an instance, oldest first."""

    @abstractmethod
    def get_events_by_type(
        self, instance_id: str, event_type: EventType
    ) -> list[StateEvent]:
        """Return the events of an instance that have the given type."""

    @abstractmethod
    def delete_events(self, instance_id: str) -> None:
        """Remove every event of an instance."""


class InMemoryEventPersister(EventPersister):
    """Keeps events in a dictionary."""

    def __init__(self) -> None:
        self._events: defaultdict[str, list[StateEvent]] = defaultdict(list)
        self._lock = threading.Lock()

    def save_event(self, event: StateEvent) -> None:
        with self._lock:
            self._events[event.instance_id].append(event)

    def get_events(self, instance_id: str) -> list[StateEvent]:
        with self._lock:
            return list(self._events.get(instance_id, ()))

    def get_events_by_type(
        self, instance_id: str, event_type: EventType
    ) -> list[StateEvent]:
        with self._lock:
            return [
                event
                for event in self._events.get(instance_id, ())
                if event.type == event_type
            ]

    def delete_events(self, instance_id: str) -> None:
        with self._lock:
            self._events.pop(instance_id, None)


class PersistenceListener(BaseEventListener):
    """Hands every event to an EventPersister."""

    def __init__(
        self,
        event_persister: EventPersister | None,
        listener_id: str = "persistence-listener",
    ) -> None:
        super().__init__(listener_id)
        self.event_persister = event_persister

    def handle_event(self, event: StateEvent) -> None:
        if not self.active:
            return
        if self.event_persister is None:
            raise EventPersisterNotSetError()
        self.event_persister.save_event(event)


_STOP = object()


class EventBus:
    """Distributes events to subscribed listeners, directly or through worker threads."""

    def __init__(self) -> None:
        self._listeners: dict[str, EventListener] = {}
        self._queues: dict[str, queue.Queue[Any]] = {}
        self._lock = threading.RLock()
        self._closed = False
        self._pending = 0
        self._pending_cond = threading.Condition()

    def __enter__(self) -> EventBus:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def subscribe(self, listener: EventListener) -> None:
        """Add a listener and start its worker thread."""
        if listener is None:
            raise ValidationError("listener cannot be None")
        with self._lock:
            if self._closed:
                raise EventBusClosedError()
            listener_id = listener.id
            if listener_id in self._listeners:
                raise ListenerAlreadyExistsError(
                    f"listener with ID {listener_id} already exists"
                )
            events: queue.Queue[Any] = queue.Queue()
            self._listeners[listener_id] = listener
            self._queues[listener_id] = events
            worker = threading.Thread(
                target=self._process_events,
                args=(listener, events),
                name=f"warden-listener-{listener_id}",
                daemon=True,
            )
            worker.start()

    def unsubscribe(self, listener_id: str) -> None:
        """Close and remove a listener."""
        with self._lock:
            listener = self._listeners.pop(listener_id, None)
            if listener is None:
                raise ListenerNotFoundError(f"listener with ID {listener_id} not found")
            try:
                listener.close()
            except Exception as exc:
                logger.error("Error closing listener %s: %s", listener_id, exc)
            events = self._queues.pop(listener_id, None)
            if events is not None:
                events.put(_STOP)

    def publish(self, event: StateEvent) -> None:
        """Hand an event to every active listener in the calling thread."""
        with self._lock:
            if self._closed:
                raise EventBusClosedError()
            listeners = list(self._listeners.items())

        failures = []
        for listener_id, listener in listeners:
            if not listener.active:
                continue
            try:
                listener.handle_event(event)
            except Exception as exc:
                failures.append(f"listener {listener_id} error: {exc}")
        if failures:
            raise ListenerError(f"multiple listener errors: [{'; '.join(failures)}]")

    def publish_async(self, event: StateEvent) -> None:
        """Queue an event for every active listener; full queues drop it."""
        with self._lock:
            if self._closed:
                return
            for listener_id, listener in self._listeners.items():
                if not listener.active:
                    continue
                events = self._queues.get(listener_id)
                if events is None:
                    continue
                if events.qsize() >= CHANNEL_CAPACITY:
                    logger.warning(
                        "Channel for listener %s is full, dropping event %s",
                        listener_id,
                        event.id,
                    )
                    continue
                with self._pending_cond:
                    self._pending += 1
                events.put(event)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until every queued event has been handled; False on timeout."""
        with self._pending_cond:
            return self._pending_cond.wait_for(lambda: self._pending == 0, timeout)

    def active_listeners(self) -> list[EventListener]:
        """Return the listeners that are still active."""
        with self._lock:
            return [listener for listener in self._listeners.values() if listener.active]

    def close(self) -> None:
        """Close every listener and stop accepting events."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            failures = []
            for listener_id, listener in self._listeners.items():
                try:
                    listener.close()
                except Exception as exc:
                    failures.append(f"error closing listener {listener_id}: {exc}")
                events = self._queues.get(listener_id)
                if events is not None:
                    events.put(_STOP)
            self._listeners = {}
            self._queues = {}
        if failures:
            raise ListenerError(
                f"multiple errors closing event bus: [{'; '.join(failures)}]"
            )

    def _process_events(self, listener: EventListener, events: queue.Queue[Any]) -> None:
        while True:
            event = events.get()
            if event is _STOP:
                return
            try:
                if listener.active:
                    listener.handle_event(event)
            except Exception as exc:
                logger.error(
                    "Error processing event %s in listener %s: %s",
                    event.id,
                    listener.id,
                    exc,
                )
            finally:
                with self._pending_cond:
                    self._pending -= 1
                    self._pending_cond.notify_all()