"""Exception hierarchy used throughout the warden package."""

from __future__ import annotations


class WardenError(Exception):
    """Base class for every error raised by warden."""

    default_message = "warden error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message if message is not None else self.default_message)

    @property
    def message(self) -> str:
        return str(self)


# State errors


class StateError(WardenError):
    default_message = "invalid state"


class StateNotFoundError(StateError, LookupError):
    default_message = "state not found"


# Transition errors


class TransitionError(WardenError):
    default_message = "invalid transition"


class TransitionNotFoundError(TransitionError, LookupError):
    default_message = "transition not found"


class TransitionNotAllowedError(TransitionError):
    default_message = "transition not allowed"


# Instance errors


class InstanceError(WardenError):
    default_message = "instance has failed"


class InstanceNotFoundError(InstanceError, LookupError):
    default_message = "instance not found"


class InstanceNotRunningError(InstanceError):
    default_message = "instance is not running"


# Machine errors


class MachineError(WardenError):
    default_message = "invalid machine configuration"


class MachineNotBuiltError(MachineError):
    default_message = "machine not built"


class MachineAlreadyBuiltError(MachineError):
    default_message = "machine already built"


class MachineValidationError(MachineError):
    default_message = "machine validation failed"


# Persistence errors


class PersistenceError(WardenError):
    default_message = "persistence operation failed"


class SnapshotNotFoundError(PersistenceError, LookupError):
    default_message = "snapshot not found"


class InvalidSnapshotError(PersistenceError, ValueError):
    default_message = "invalid snapshot"


class EventPersisterNotSetError(PersistenceError):
    default_message = "event persister not set"


# Validation errors


class ValidationError(WardenError, ValueError):
    default_message = "validation failed"


# Event errors


class EventError(WardenError):
    default_message = "error processing event"


class DuplicateEventError(EventError):
    default_message = "duplicate event"


# Listener errors


class ListenerError(WardenError):
    default_message = "listener error"


class ListenerNotFoundError(ListenerError, LookupError):
    default_message = "listener not found"


class ListenerAlreadyExistsError(ListenerError):
    default_message = "listener already exists"


class EventBusClosedError(ListenerError):
    default_message = "event bus is closed"