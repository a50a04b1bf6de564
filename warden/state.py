"""State types, events and the results that states produce."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

from .utils import current_timestamp, generate_id


class StateType(str, Enum):
    """Kinds of state a machine may contain."""

    START = "start"
    TASK = "task"
    DECISION = "decision"
    PARALLEL = "parallel"
    JOIN = "join"
    END = "end"

    def __str__(self) -> str:
        return self.value


class TransitionType(str, Enum):
    """Labels on the edges between states."""

    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    ON_TIMEOUT = "on_timeout"
    ON_CUSTOM = "on_custom"

    def __str__(self) -> str:
        return self.value


@dataclass
class Event:
    """Something that can trigger a transition."""

    type: TransitionType | str
    data: dict[str, Any] | None = None
    id: str = field(default_factory=generate_id)
    timestamp: datetime = field(default_factory=current_timestamp)


@dataclass
class StateContext:
    """What a state sees while it is entered, executed or exited."""

    instance_id: str = ""
    data: dict[str, Any] | None = field(default_factory=dict)
    metadata: dict[str, Any] | None = field(default_factory=dict)
    execution_id: str = ""


@dataclass
class StateResult:
    """The outcome of executing a state."""

    success: bool
    data: dict[str, Any] | None = None
    error: Exception | None = None
    event: Event | None = None


TaskFunc = Callable[[StateContext], StateResult]
ConditionFunc = Callable[[StateContext], "TransitionType | str"]


def _success() -> StateResult:
    return StateResult(success=True, event=Event(TransitionType.ON_SUCCESS))


class BaseState:
    """A state that does nothing but succeed."""

    def __init__(self, id: str, state_type: StateType) -> None:
        self.id = id
        self.state_type = state_type
        self._transitions: dict[TransitionType | str, str] = {}
        self.metadata: dict[str, Any] = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r})"

    @property
    def transitions(self) -> dict[TransitionType | str, str]:
        """A copy of the transitions leaving this state."""
        return dict(self._transitions)

    def enter(self, ctx: StateContext) -> None:
        """Called when the state becomes active."""

    def execute(self, ctx: StateContext) -> StateResult:
        """Run the state's logic."""
        return _success()

    def exit(self, ctx: StateContext) -> None:
        """Called when the state stops being active."""

    def add_transition(
        self, transition_type: TransitionType | str, target_state_id: str
    ) -> None:
        """Record the target state for a transition type."""
        self._transitions[transition_type] = target_state_id

    def clone(self) -> BaseState:
        """Return a copy with its own transitions and metadata."""
        copy = BaseState(self.id, self.state_type)
        copy._transitions = dict(self._transitions)
        copy.metadata = dict(self.metadata)
        return copy

    def _copy_transitions_to(self, other: BaseState) -> BaseState:
        other._transitions = dict(self._transitions)
        return other


class StartState(BaseState):
    """The state an instance begins in."""

    def __init__(self, id: str) -> None:
        super().__init__(id, StateType.START)

    def execute(self, ctx: StateContext) -> StateResult:
        return _success()

    def clone(self) -> StartState:
        return self._copy_transitions_to(StartState(self.id))  # type: ignore[return-value]


class TaskState(BaseState):
    """A state that runs a task function."""

    def __init__(self, id: str, task: TaskFunc | None = None) -> None:
        super().__init__(id, StateType.TASK)
        self.task = task

    def execute(self, ctx: StateContext) -> StateResult:
        if self.task is not None:
            return self.task(ctx)
        return _success()

    def clone(self) -> TaskState:
        return self._copy_transitions_to(TaskState(self.id, self.task))  # type: ignore[return-value]


class DecisionState(BaseState):
    """A state whose condition function picks the outgoing transition."""

    def __init__(self, id: str, condition: ConditionFunc | None = None) -> None:
        super().__init__(id, StateType.DECISION)
        self.condition = condition

    def execute(self, ctx: StateContext) -> StateResult:
        if self.condition is None:
            return _success()
        try:
            transition = self.condition(ctx)
        except Exception as exc:
            return StateResult(
                success=False,
                error=exc,
                event=Event(TransitionType.ON_FAILURE, {"error": str(exc)}),
            )
        return StateResult(success=True, event=Event(transition))

    def clone(self) -> DecisionState:
        return self._copy_transitions_to(DecisionState(self.id, self.condition))  # type: ignore[return-value]


class ParallelState(BaseState):
    """A state that runs several tasks concurrently."""

    def __init__(self, id: str, tasks: Sequence[TaskFunc] | None = None) -> None:
        super().__init__(id, StateType.PARALLEL)
        self.tasks: list[TaskFunc] = list(tasks or [])

    def execute(self, ctx: StateContext) -> StateResult:
        if not self.tasks:
            return _success()

        with ThreadPoolExecutor(max_workers=len(self.tasks)) as pool:
            futures = [pool.submit(task, ctx) for task in self.tasks]
            results = [future.result() for future in as_completed(futures)]

        all_success = all(result.success for result in results)
        transition = (
            TransitionType.ON_SUCCESS if all_success else TransitionType.ON_FAILURE
        )
        return StateResult(
            success=all_success,
            data={"parallel_results": results},
            event=Event(transition),
        )

    def clone(self) -> ParallelState:
        return self._copy_transitions_to(ParallelState(self.id, self.tasks))  # type: ignore[return-value]


class JoinState(BaseState):
    """A state that waits until every required input has arrived."""

    def __init__(self, id: str, required_inputs: Iterable[str] | None = None) -> None:
        super().__init__(id, StateType.JOIN)
        self.required_inputs: list[str] = list(required_inputs or [])
        self._received: set[str] = set()
        self._lock = threading.Lock()

    @property
    def received_inputs(self) -> frozenset[str]:
        """The inputs seen since the join last completed."""
        with self._lock:
            return frozenset(self._received)

    def execute(self, ctx: StateContext) -> StateResult:
        input_id = (ctx.data or {}).get("input_id")
        with self._lock:
            if isinstance(input_id, str):
                self._received.add(input_id)
            if all(required in self._received for required in self.required_inputs):
                self._received = set()
                return _success()
        return StateResult(
            success=False,
            data={"waiting_for_inputs": True},
            event=Event(TransitionType.ON_CUSTOM, {"status": "waiting"}),
        )

    def clone(self) -> JoinState:
        return self._copy_transitions_to(JoinState(self.id, self.required_inputs))  # type: ignore[return-value]


class EndState(BaseState):
    """A final state; reaching it completes the instance."""

    def __init__(self, id: str) -> None:
        super().__init__(id, StateType.END)

    def execute(self, ctx: StateContext) -> StateResult:
        return StateResult(
            success=True,
            data={"completed": True},
            event=Event(TransitionType.ON_SUCCESS),
        )

    def clone(self) -> EndState:
        return self._copy_transitions_to(EndState(self.id))  # type: ignore[return-value]