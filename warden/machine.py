"""State machines, the builder that assembles them, and their running instances."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence

from .errors import (
    DuplicateEventError,
    EventPersisterNotSetError,
    InstanceError,
    InstanceNotRunningError,
    MachineAlreadyBuiltError,
    MachineNotBuiltError,
    MachineValidationError,
    PersistenceError,
    StateError,
    StateNotFoundError,
    TransitionNotAllowedError,
    TransitionNotFoundError,
    WardenError,
)
from .listener import EventBus, EventType, StateEvent
from .persistence import (
    InMemoryInstancePersister,
    InstancePersister,
    InstanceSnapshot,
    InstanceStatus,
)
from .state import (
    BaseState,
    ConditionFunc,
    DecisionState,
    EndState,
    Event,
    JoinState,
    ParallelState,
    StartState,
    StateContext,
    StateResult,
    StateType,
    TaskFunc,
    TaskState,
    TransitionType,
)
from .utils import (
    copy_map,
    current_timestamp,
    generate_execution_id,
    generate_id,
    merge_map,
    validate_instance_id,
)


@dataclass
class StateMachineConfig:
    """Settings for a state machine; durations are in seconds."""

    enable_persistence: bool = True
    enable_event_bus: bool = True
    max_concurrent_instances: int = 1000
    transition_timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay: float = 1.0


class StateMachine:
    """A set of states joined by transitions; instances run through it."""

    def __init__(self, name: str, config: StateMachineConfig | None = None) -> None:
        self.id = generate_id()
        self.name = name
        self.states: dict[str, BaseState] = {}
        self.transitions: dict[str, dict[TransitionType | str, str]] = {}
        self.start_state_id = ""
        self.end_state_ids: list[str] = []
        self.instance_persister: InstancePersister | None = None
        self.event_bus: EventBus | None = None
        self.config = config if config is not None else StateMachineConfig()
        self.built = False

    def __repr__(self) -> str:
        return f"StateMachine(name={self.name!r}, states={list(self.states)!r})"

    def create_instance(
        self, instance_id: str, initial_data: dict[str, Any] | None = None
    ) -> StateMachineInstance:
        """Create a new instance positioned at the start state."""
        if not self.built:
            raise MachineNotBuiltError()
        validate_instance_id(instance_id)

        execution_id = generate_execution_id(instance_id)
        now = current_timestamp()
        instance = StateMachineInstance(
            machine=self,
            instance_id=instance_id,
            execution_id=execution_id,
            current_state_id=self.start_state_id,
            data=initial_data,
            created_at=now,
            updated_at=now,
        )
        self._persist(instance._snapshot())
        self._publish(
            StateEvent(
                EventType.EXECUTION_STARTED,
                instance_id,
                execution_id,
                state_id=self.start_state_id,
                data=copy_map(initial_data),
            )
        )
        return instance

    def load_instance(self, instance_id: str) -> StateMachineInstance:
        """Rebuild an instance from its latest persisted snapshot."""
        if not self.built:
            raise MachineNotBuiltError()
        if self.instance_persister is None:
            raise EventPersisterNotSetError()
        try:
            snapshot = self.instance_persister.load_snapshot(instance_id)
        except WardenError:
            raise
        except Exception as exc:
            raise PersistenceError(f"failed to load instance: {exc}") from exc

        return StateMachineInstance(
            machine=self,
            instance_id=snapshot.instance_id,
            execution_id=snapshot.execution_id,
            current_state_id=snapshot.current_state_id,
            status=snapshot.status,
            data=snapshot.data,
            metadata=snapshot.metadata,
            created_at=snapshot.created_at,
            updated_at=snapshot.updated_at,
            completed_at=snapshot.completed_at,
            error=InstanceError(snapshot.error) if snapshot.error is not None else None,
            idempotency_keys=snapshot.idempotency_keys,
        )

    def _publish(self, event: StateEvent) -> None:
        if self.event_bus is not None:
            self.event_bus.publish_async(event)

    def _persist(self, snapshot: InstanceSnapshot) -> None:
        if self.instance_persister is None:
            return
        try:
            self.instance_persister.save_snapshot(snapshot)
        except Exception as exc:
            raise PersistenceError(f"failed to persist instance: {exc}") from exc


class StateMachineBuilder:
    """Assembles a StateMachine through chained calls."""

    def __init__(self, name: str) -> None:
        self._machine = StateMachine(name)

    def with_config(self, config: StateMachineConfig) -> StateMachineBuilder:
        self._machine.config = config
        return self

    def with_persister(self, persister: InstancePersister) -> StateMachineBuilder:
        self._machine.instance_persister = persister
        return self

    def with_event_bus(self, event_bus: EventBus) -> StateMachineBuilder:
        self._machine.event_bus = event_bus
        return self

    def _add(self, state_id: str, state: BaseState) -> None:
        self._machine.states[state_id] = state
        self._machine.transitions[state_id] = {}

    def state(self, state_id: str, state: BaseState | None = None) -> StateMachineBuilder:
        """Add a ready-made state; without one, a default is chosen from the ID."""
        if state is None:
            if state_id == "start":
                state = StartState(state_id)
            elif state_id == "end":
                state = EndState(state_id)
            else:
                state = TaskState(state_id)
        self._add(state_id, state)
        if state.state_type == StateType.START:
            self._machine.start_state_id = state_id
        if state.state_type == StateType.END:
            self._machine.end_state_ids.append(state_id)
        return self

    def start_state(self, state_id: str) -> StateMachineBuilder:
        self._add(state_id, StartState(state_id))
        self._machine.start_state_id = state_id
        return self

    def task_state(self, state_id: str, task: TaskFunc | None = None) -> StateMachineBuilder:
        self._add(state_id, TaskState(state_id, task))
        return self

    def decision_state(
        self, state_id: str, condition: ConditionFunc | None = None
    ) -> StateMachineBuilder:
        self._add(state_id, DecisionState(state_id, condition))
        return self

    def parallel_state(
        self, state_id: str, tasks: Sequence[TaskFunc] | None = None
    ) -> StateMachineBuilder:
        self._add(state_id, ParallelState(state_id, tasks))
        return self

    def join_state(
        self, state_id: str, required_inputs: Iterable[str] | None = None
    ) -> StateMachineBuilder:
        self._add(state_id, JoinState(state_id, required_inputs))
        return self

    def end_state(self, state_id: str) -> StateMachineBuilder:
        self._add(state_id, EndState(state_id))
        self._machine.end_state_ids.append(state_id)
        return self

    def transition(
        self,
        from_state_id: str,
        to_state_id: str,
        transition_type: TransitionType | str,
    ) -> StateMachineBuilder:
        """Route transition_type out of from_state_id into to_state_id."""
        self._machine.transitions.setdefault(from_state_id, {})[transition_type] = to_state_id
        state = self._machine.states.get(from_state_id)
        if isinstance(state, BaseState):
            state.add_transition(transition_type, to_state_id)
        return self

    def build(self) -> StateMachine:
        """Validate the machine, fill in default components and return it."""
        machine = self._machine
        if machine.built:
            raise MachineAlreadyBuiltError()
        self._validate()
        if machine.instance_persister is None and machine.config.enable_persistence:
            machine.instance_persister = InMemoryInstancePersister()
        if machine.event_bus is None and machine.config.enable_event_bus:
            machine.event_bus = EventBus()
        machine.built = True
        return machine

    def _validate(self) -> None:
        machine = self._machine
        if not machine.name:
            raise MachineValidationError("machine name cannot be empty")
        if not machine.states:
            raise MachineValidationError("machine must have at least one state")
        if not machine.start_state_id:
            raise MachineValidationError("machine must have a start state")
        if not machine.end_state_ids:
            raise MachineValidationError("machine must have at least one end state")
        if machine.start_state_id not in machine.states:
            raise MachineValidationError(
                f"start state '{machine.start_state_id}' not found"
            )
        for end_state_id in machine.end_state_ids:
            if end_state_id not in machine.states:
                raise MachineValidationError(f"end state '{end_state_id}' not found")
        for from_state_id, routes in machine.transitions.items():
            for transition_type, to_state_id in routes.items():
                if to_state_id not in machine.states:
                    raise MachineValidationError(
                        f"transition from '{from_state_id}' via '{transition_type}' "
                        f"points to non-existent state '{to_state_id}'"
                    )


def new(name: str) -> StateMachineBuilder:
    """Start building a state machine with the given name."""
    return StateMachineBuilder(name)


class StateMachineInstance:
    """One run of a state machine."""

    def __init__(
        self,
        *,
        machine: StateMachine,
        instance_id: str,
        execution_id: str,
        current_state_id: str,
        status: InstanceStatus = InstanceStatus.CREATED,
        data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
        completed_at: datetime | None = None,
        error: BaseException | None = None,
        idempotency_keys: dict[str, bool] | None = None,
    ) -> None:
        now = current_timestamp()
        self.id = instance_id
        self.execution_id = execution_id
        self.machine = machine
        self.current_state_id = current_state_id
        self.status = status
        self._data: dict[str, Any] = copy_map(data) or {}
        self._metadata: dict[str, Any] = copy_map(metadata) or {}
        self.created_at = created_at if created_at is not None else now
        self.updated_at = updated_at if updated_at is not None else now
        self.completed_at = completed_at
        self.error = error
        self._idempotency_keys: dict[str, bool] = dict(idempotency_keys or {})
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return (
            f"StateMachineInstance(id={self.id!r}, state={self.current_state_id!r}, "
            f"status={self.status.value!r})"
        )

    @property
    def current_state(self) -> BaseState:
        with self._lock:
            return self.machine.states[self.current_state_id]

    @property
    def is_completed(self) -> bool:
        with self._lock:
            return self.status == InstanceStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        with self._lock:
            return self.status == InstanceStatus.FAILED

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self.status == InstanceStatus.RUNNING

    @property
    def data(self) -> dict[str, Any]:
        """A copy of the instance data."""
        with self._lock:
            return copy_map(self._data) or {}

    @property
    def metadata(self) -> dict[str, Any]:
        """A copy of the instance metadata."""
        with self._lock:
            return copy_map(self._metadata) or {}

    def start(self) -> None:
        """Begin running from the current state; raises what a failing state reports."""
        with self._lock:
            if self.status != InstanceStatus.CREATED:
                raise InstanceNotRunningError()
            self.status = InstanceStatus.RUNNING
            self.updated_at = current_timestamp()
            self.machine._persist(self._snapshot())
            self._execute_current_state()

    def next(self, event: Event) -> None:
        """Follow the transition that event's type selects from the current state."""
        with self._lock:
            if self.status != InstanceStatus.RUNNING:
                raise InstanceNotRunningError()
            if self._idempotency_keys.get(event.id):
                raise DuplicateEventError()
            self._idempotency_keys[event.id] = True

            routes = self.machine.transitions.get(self.current_state_id)
            if routes is None:
                raise TransitionNotFoundError()
            next_state_id = routes.get(event.type)
            if next_state_id is None:
                raise TransitionNotAllowedError()
            self._transition_to(next_state_id, event)

    def goto(self, state_id: str) -> None:
        """Force the instance into the given state."""
        with self._lock:
            if self.status != InstanceStatus.RUNNING:
                raise InstanceNotRunningError()
            if state_id not in self.machine.states:
                raise StateNotFoundError()
            self._transition_to(state_id, Event(TransitionType.ON_CUSTOM, {"forced": True}))

    def available_transitions(self) -> dict[TransitionType | str, str]:
        """Return the transitions leaving the current state."""
        with self._lock:
            return dict(self.machine.transitions.get(self.current_state_id, {}))

    def set_data(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self.updated_at = current_timestamp()

    def set_metadata(self, key: str, value: Any) -> None:
        with self._lock:
            self._metadata[key] = value
            self.updated_at = current_timestamp()

    def _context(self) -> StateContext:
        return StateContext(
            instance_id=self.id,
            data=copy_map(self._data),
            metadata=copy_map(self._metadata),
            execution_id=self.execution_id,
        )

    def _event(self, event_type: EventType, **fields: Any) -> StateEvent:
        return StateEvent(event_type, self.id, self.execution_id, **fields)

    def _transition_to(self, next_state_id: str, event: Event) -> None:
        machine = self.machine
        current_state = machine.states[self.current_state_id]
        next_state = machine.states[next_state_id]
        ctx = self._context()

        try:
            current_state.exit(ctx)
        except Exception as exc:
            raise StateError(
                f"failed to exit state {self.current_state_id}: {exc}"
            ) from exc

        machine._publish(
            self._event(
                EventType.STATE_EXITED,
                state_id=self.current_state_id,
                from_state_id=self.current_state_id,
                to_state_id=next_state_id,
                transition=event.type,
                data=event.data,
            )
        )

        previous_state_id = self.current_state_id
        self.current_state_id = next_state_id
        self.updated_at = current_timestamp()
        if event.data is not None:
            self._data = merge_map(self._data, event.data)

        try:
            next_state.enter(ctx)
        except Exception as exc:
            raise StateError(f"failed to enter state {next_state_id}: {exc}") from exc

        machine._publish(
            self._event(
                EventType.STATE_ENTERED,
                state_id=next_state_id,
                from_state_id=previous_state_id,
                to_state_id=next_state_id,
                transition=event.type,
                data=event.data,
            )
        )

        if next_state_id in machine.end_state_ids:
            self.status = InstanceStatus.COMPLETED
            self.completed_at = current_timestamp()
            machine._publish(
                self._event(
                    EventType.EXECUTION_FINISHED,
                    state_id=next_state_id,
                    data=copy_map(self._data),
                )
            )

        machine._persist(self._snapshot())

        if self.status == InstanceStatus.RUNNING:
            self._execute_current_state()

    def _execute_current_state(self) -> None:
        machine = self.machine
        state = machine.states[self.current_state_id]
        try:
            result = state.execute(self._context())
        except Exception as exc:
            result = StateResult(
                success=False, error=exc, event=Event(TransitionType.ON_FAILURE)
            )

        if result.data is not None:
            self._data = merge_map(self._data, result.data)

        if not result.success and result.error is not None:
            self.error = result.error
            self.status = InstanceStatus.FAILED
            self.updated_at = current_timestamp()
            machine._publish(
                self._event(
                    EventType.EXECUTION_FAILED,
                    state_id=self.current_state_id,
                    error=result.error,
                    data=result.data,
                )
            )
            machine._persist(self._snapshot())
            raise result.error

        event = result.event
        machine._publish(
            self._event(
                EventType.TRANSITION_FIRED,
                state_id=self.current_state_id,
                transition=event.type if event is not None else "",
                data=event.data if event is not None else None,
            )
        )

        if event is None:
            return
        next_state_id = machine.transitions.get(self.current_state_id, {}).get(event.type)
        if next_state_id is not None:
            self._transition_to(next_state_id, event)

    def _snapshot(self) -> InstanceSnapshot:
        return InstanceSnapshot(
            instance_id=self.id,
            execution_id=self.execution_id,
            current_state_id=self.current_state_id,
            status=self.status,
            data=copy_map(self._data) or {},
            metadata=copy_map(self._metadata) or {},
            version=1,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
            idempotency_keys=dict(self._idempotency_keys),
            error=str(self.error) if self.error is not None else None,
        )