"""Instance snapshots and the persisters that store them."""

from __future__ import annotations

import json
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import (
    EventPersisterNotSetError,
    InstanceNotFoundError,
    InvalidSnapshotError,
    PersistenceError,
    SnapshotNotFoundError,
)
from .listener import EventPersister, EventType, StateEvent
from .utils import current_timestamp, generate_id


class InstanceStatus(str, Enum):
    """Lifecycle status of a machine instance."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"

    def __str__(self) -> str:
        return self.value


@dataclass
class InstanceSnapshot:
    """The saved state of a machine instance at one point in time."""

    instance_id: str
    execution_id: str = ""
    current_state_id: str = ""
    status: InstanceStatus = InstanceStatus.CREATED
    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 1
    created_at: datetime = field(default_factory=current_timestamp)
    updated_at: datetime = field(default_factory=current_timestamp)
    completed_at: datetime | None = None
    last_event_id: str = ""
    idempotency_keys: dict[str, bool] = field(default_factory=dict)
    error: str | None = None
    id: str = field(default_factory=generate_id)

    def clone(self) -> InstanceSnapshot:
        """Return a copy with a fresh ID, the next version and a new update time."""
        return InstanceSnapshot(
            instance_id=self.instance_id,
            execution_id=self.execution_id,
            current_state_id=self.current_state_id,
            status=self.status,
            data=dict(self.data or {}),
            metadata=dict(self.metadata or {}),
            version=self.version + 1,
            created_at=self.created_at,
            updated_at=current_timestamp(),
            completed_at=self.completed_at,
            last_event_id=self.last_event_id,
            idempotency_keys=dict(self.idempotency_keys or {}),
            error=self.error,
        )

    def set_error(self, error: BaseException | str | None) -> None:
        """Record an error and mark the snapshot as failed; None is ignored."""
        if error is not None:
            self.error = str(error)
            self.status = InstanceStatus.FAILED

    def clear_error(self) -> None:
        """Forget the error; a failed snapshot goes back to running."""
        self.error = None
        if self.status == InstanceStatus.FAILED:
            self.status = InstanceStatus.RUNNING

    def add_idempotency_key(self, key: str) -> bool:
        """Record a key; return False if it was already present."""
        if self.idempotency_keys.get(key):
            return False
        self.idempotency_keys[key] = True
        return True

    def has_idempotency_key(self, key: str) -> bool:
        return bool(self.idempotency_keys.get(key))


def _matches(snapshot: InstanceSnapshot, status: InstanceStatus | str | None) -> bool:
    return not status or snapshot.status == status


def _paginate(
    snapshots: list[InstanceSnapshot],
    status: InstanceStatus | str | None,
    limit: int,
    offset: int,
) -> list[InstanceSnapshot]:
    result: list[InstanceSnapshot] = []
    skipped = 0
    for snapshot in snapshots:
        if not _matches(snapshot, status):
            continue
        if skipped < offset:
            skipped += 1
            continue
        if limit > 0 and len(result) >= limit:
            break
        result.append(snapshot.clone())
    return result


class InstancePersister(ABC):
    """Stores instance snapshots."""

    @abstractmethod
    def save_snapshot(self, snapshot: InstanceSnapshot) -> None:
        """Store a snapshot."""

    @abstractmethod
    def load_snapshot(self, instance_id: str) -> InstanceSnapshot:
        """Return the latest snapshot of an instance."""

    @abstractmethod
    def load_snapshot_by_version(self, instance_id: str, version: int) -> InstanceSnapshot:
        """Return the snapshot of an instance with the given version."""

    @abstractmethod
    def get_snapshots(self, instance_id: str) -> list[InstanceSnapshot]:
        """Return every snapshot of an instance."""

    @abstractmethod
    def delete_instance(self, instance_id: str) -> None:
        """Remove an instance and all its snapshots."""

    @abstractmethod
    def list_instances(
        self, status: InstanceStatus | str | None = None, limit: int = 0, offset: int = 0
    ) -> list[InstanceSnapshot]:
        """Return latest snapshots, optionally filtered by status and paginated."""

    @abstractmethod
    def instance_count(self, status: InstanceStatus | str | None = None) -> int:
        """Return the number of instances, optionally with a given status."""


class InMemoryInstancePersister(InstancePersister):
    """Keeps every snapshot of every instance in memory."""

    def __init__(self) -> None:
        self._snapshots: dict[str, list[InstanceSnapshot]] = {}
        self._lock = threading.Lock()

    def save_snapshot(self, snapshot: InstanceSnapshot) -> None:
        if snapshot is None:
            raise InvalidSnapshotError()
        stored = snapshot.clone()
        stored.id = snapshot.id
        stored.version = snapshot.version
        stored.updated_at = current_timestamp()
        with self._lock:
            self._snapshots.setdefault(snapshot.instance_id, []).append(stored)

    def load_snapshot(self, instance_id: str) -> InstanceSnapshot:
        with self._lock:
            history = self._snapshots.get(instance_id)
            if not history:
                raise InstanceNotFoundError()
            return history[-1].clone()

    def load_snapshot_by_version(self, instance_id: str, version: int) -> InstanceSnapshot:
        with self._lock:
            history = self._snapshots.get(instance_id)
            if history is None:
                raise InstanceNotFoundError()
            for snapshot in history:
                if snapshot.version == version:
                    return snapshot.clone()
        raise SnapshotNotFoundError()

    def get_snapshots(self, instance_id: str) -> list[InstanceSnapshot]:
        with self._lock:
            return [snapshot.clone() for snapshot in self._snapshots.get(instance_id, ())]

    def delete_instance(self, instance_id: str) -> None:
        with self._lock:
            self._snapshots.pop(instance_id, None)

    def _latest(self) -> list[InstanceSnapshot]:
        return [history[-1] for history in self._snapshots.values() if history]

    def list_instances(
        self, status: InstanceStatus | str | None = None, limit: int = 0, offset: int = 0
    ) -> list[InstanceSnapshot]:
        with self._lock:
            return _paginate(self._latest(), status, limit, offset)

    def instance_count(self, status: InstanceStatus | str | None = None) -> int:
        with self._lock:
            return sum(1 for snapshot in self._latest() if _matches(snapshot, status))


_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.isoformat()
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


def _parse_time(text: Any) -> datetime:
    if not isinstance(text, str):
        raise ValueError(f"invalid timestamp: {text!r}")
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    base, fraction, zone = match.groups()
    micro = (fraction or "").ljust(6, "0")[:6]
    zone = "+00:00" if zone == "Z" else zone
    return datetime.fromisoformat(f"{base}.{micro}{zone}")


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _format_time(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"value of type {type(value).__name__} is not JSON serializable")


class JSONInstancePersister(InMemoryInstancePersister):
    """An in-memory persister that can also turn snapshots into JSON and back."""

    def serialize_snapshot(self, snapshot: InstanceSnapshot) -> bytes:
        """Return the JSON encoding of a snapshot."""
        document: dict[str, Any] = {
            "id": snapshot.id,
            "instance_id": snapshot.instance_id,
            "execution_id": snapshot.execution_id,
            "current_state_id": snapshot.current_state_id,
            "status": str(snapshot.status),
            "data": snapshot.data,
            "metadata": snapshot.metadata,
            "version": snapshot.version,
            "created_at": _format_time(snapshot.created_at),
            "updated_at": _format_time(snapshot.updated_at),
        }
        if snapshot.completed_at is not None:
            document["completed_at"] = _format_time(snapshot.completed_at)
        if snapshot.last_event_id:
            document["last_event_id"] = snapshot.last_event_id
        if snapshot.idempotency_keys:
            document["idempotency_keys"] = snapshot.idempotency_keys
        if snapshot.error is not None:
            document["error"] = snapshot.error
        try:
            return json.dumps(
                document, separators=(",", ":"), default=_json_default
            ).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"failed to serialize snapshot: {exc}") from exc

    def deserialize_snapshot(self, data: bytes | str) -> InstanceSnapshot:
        """Build a snapshot from its JSON encoding."""
        try:
            document = json.loads(data)
            if not isinstance(document, dict):
                raise ValueError("snapshot must be a JSON object")
            completed = document.get("completed_at")
            return InstanceSnapshot(
                id=str(document.get("id", "")),
                instance_id=str(document.get("instance_id", "")),
                execution_id=str(document.get("execution_id", "")),
                current_state_id=str(document.get("current_state_id", "")),
                status=InstanceStatus(document.get("status", InstanceStatus.CREATED.value)),
                data=dict(document.get("data") or {}),
                metadata=dict(document.get("metadata") or {}),
                version=int(document.get("version", 0)),
                created_at=_parse_time(document["created_at"])
                if "created_at" in document
                else _ZERO_TIME,
                updated_at=_parse_time(document["updated_at"])
                if "updated_at" in document
                else _ZERO_TIME,
                completed_at=_parse_time(completed) if completed is not None else None,
                last_event_id=str(document.get("last_event_id", "")),
                idempotency_keys={
                    str(key): bool(value)
                    for key, value in (document.get("idempotency_keys") or {}).items()
                },
                error=document.get("error"),
            )
        except (TypeError, ValueError, AttributeError) as exc:
            raise InvalidSnapshotError(f"failed to deserialize snapshot: {exc}") from exc


class EventSourcePersister(InstancePersister):
    """Caches the latest snapshot and rebuilds missing ones from stored events."""

    def __init__(self, event_persister: EventPersister | None = None) -> None:
        self.event_persister = event_persister
        self._snapshots: dict[str, InstanceSnapshot] = {}
        self._lock = threading.Lock()

    def save_snapshot(self, snapshot: InstanceSnapshot) -> None:
        with self._lock:
            self._snapshots[snapshot.instance_id] = snapshot.clone()

    def load_snapshot(self, instance_id: str) -> InstanceSnapshot:
        with self._lock:
            cached = self._snapshots.get(instance_id)
        if cached is not None:
            return cached.clone()
        return self._rebuild(instance_id)

    def load_snapshot_by_version(self, instance_id: str, version: int) -> InstanceSnapshot:
        return self._rebuild(instance_id, version)

    def get_snapshots(self, instance_id: str) -> list[InstanceSnapshot]:
        return [self.load_snapshot(instance_id)]

    def delete_instance(self, instance_id: str) -> None:
        with self._lock:
            self._snapshots.pop(instance_id, None)

    def list_instances(
        self, status: InstanceStatus | str | None = None, limit: int = 0, offset: int = 0
    ) -> list[InstanceSnapshot]:
        with self._lock:
            return _paginate(list(self._snapshots.values()), status, limit, offset)

    def instance_count(self, status: InstanceStatus | str | None = None) -> int:
        with self._lock:
            return sum(
                1 for snapshot in self._snapshots.values() if _matches(snapshot, status)
            )

    def _rebuild(self, instance_id: str, version: int | None = None) -> InstanceSnapshot:
        if self.event_persister is None:
            raise EventPersisterNotSetError()
        try:
            events = self.event_persister.get_events(instance_id)
        except Exception as exc:
            raise PersistenceError(f"failed to get events: {exc}") from exc
        if not events:
            raise InstanceNotFoundError()

        snapshot = InstanceSnapshot(
            instance_id=instance_id, created_at=_ZERO_TIME, updated_at=_ZERO_TIME
        )
        if version is not None:
            events = events[: max(version, 0)]
        for event in events:
            self._apply(snapshot, event)
        if version is not None:
            snapshot.version = version
        return snapshot

    @staticmethod
    def _apply(snapshot: InstanceSnapshot, event: StateEvent) -> None:
        if event.type == EventType.EXECUTION_STARTED:
            snapshot.execution_id = event.execution_id
            snapshot.status = InstanceStatus.RUNNING
            snapshot.created_at = event.timestamp
        elif event.type == EventType.STATE_ENTERED:
            snapshot.current_state_id = event.state_id
            snapshot.updated_at = event.timestamp
        elif event.type == EventType.EXECUTION_FINISHED:
            snapshot.status = InstanceStatus.COMPLETED
            if snapshot.completed_at is None:
                snapshot.completed_at = event.timestamp
            snapshot.updated_at = event.timestamp
        elif event.type == EventType.EXECUTION_FAILED:
            snapshot.status = InstanceStatus.FAILED
            if event.error is not None:
                snapshot.error = str(event.error)
            snapshot.updated_at = event.timestamp

        if event.data:
            snapshot.data.update(event.data)
        snapshot.last_event_id = event.id