import time

import pytest

from warden.errors import (
    DuplicateEventError,
    EventPersisterNotSetError,
    InstanceNotFoundError,
    InstanceNotRunningError,
    MachineAlreadyBuiltError,
    MachineNotBuiltError,
    MachineValidationError,
    StateNotFoundError,
    TransitionNotAllowedError,
    ValidationError,
)
from warden.listener import (
    EventBus,
    EventType,
    InMemoryEventPersister,
    LoggingListener,
    MetricsListener,
    PersistenceListener,
)
from warden.machine import StateMachine, StateMachineConfig, new
from warden.persistence import InMemoryInstancePersister, InstanceStatus
from warden.state import EndState, Event, StartState, StateResult, StateType, TransitionType


def succeed(data=None):
    def task(ctx):
        return StateResult(success=True, data=data, event=Event(TransitionType.ON_SUCCESS))

    return task


def hold(ctx):
    return StateResult(success=True, event=Event(TransitionType.ON_CUSTOM))


def fail(ctx):
    return StateResult(
        success=False,
        error=RuntimeError("intentional failure"),
        event=Event(TransitionType.ON_FAILURE),
    )


def simple_machine(**kwargs):
    builder = new("test-machine")
    if "persister" in kwargs:
        builder.with_persister(kwargs["persister"])
    if "event_bus" in kwargs:
        builder.with_event_bus(kwargs["event_bus"])
    return (
        builder.start_state("start")
        .task_state("process", succeed())
        .end_state("end")
        .transition("start", "process", TransitionType.ON_SUCCESS)
        .transition("process", "end", TransitionType.ON_SUCCESS)
        .build()
    )


def holding_machine():
    return (
        new("holding")
        .start_state("start")
        .task_state("hold", hold)
        .task_state("hold2", hold)
        .end_state("end")
        .transition("start", "hold", TransitionType.ON_SUCCESS)
        .transition("hold", "hold2", TransitionType.ON_SUCCESS)
        .transition("hold2", "end", TransitionType.ON_SUCCESS)
        .build()
    )


def test_basic_state_machine():
    machine = simple_machine()
    instance = machine.create_instance("test-instance", {"order_id": "12345"})
    instance.start()
    assert instance.is_completed
    assert instance.current_state.id == "end"
    assert instance.status == InstanceStatus.COMPLETED
    assert instance.completed_at is not None


@pytest.mark.parametrize(
    "approve, path",
    [(True, "approved"), (False, "rejected")],
)
def test_decision_state(approve, path):
    def check(ctx):
        if ctx.data.get("approve") is True:
            return TransitionType.ON_SUCCESS
        return TransitionType.ON_FAILURE

    machine = (
        new("decision-machine")
        .start_state("start")
        .decision_state("check", check)
        .task_state("approved", succeed({"path": "approved"}))
        .task_state("rejected", succeed({"path": "rejected"}))
        .end_state("end")
        .transition("start", "check", TransitionType.ON_SUCCESS)
        .transition("check", "approved", TransitionType.ON_SUCCESS)
        .transition("check", "rejected", TransitionType.ON_FAILURE)
        .transition("approved", "end", TransitionType.ON_SUCCESS)
        .transition("rejected", "end", TransitionType.ON_SUCCESS)
        .build()
    )
    instance = machine.create_instance(f"test-{path}", {"approve": approve})
    instance.start()
    assert instance.is_completed
    assert instance.data["path"] == path


def test_parallel_execution():
    def slow(seconds, key):
        def task(ctx):
            time.sleep(seconds)
            return StateResult(
                success=True, data={key: "completed"}, event=Event(TransitionType.ON_SUCCESS)
            )

        return task

    machine = (
        new("parallel-machine")
        .start_state("start")
        .parallel_state("parallel", [slow(0.2, "task1"), slow(0.1, "task2")])
        .end_state("end")
        .transition("start", "parallel", TransitionType.ON_SUCCESS)
        .transition("parallel", "end", TransitionType.ON_SUCCESS)
        .build()
    )
    instance = machine.create_instance("test-parallel", None)
    began = time.monotonic()
    instance.start()
    elapsed = time.monotonic() - began

    assert instance.is_completed
    assert elapsed < 0.28
    assert len(instance.data["parallel_results"]) == 2
    assert "completed" not in instance.data


def test_persistence_and_loading():
    persister = InMemoryInstancePersister()
    machine = (
        new("persistence-machine")
        .with_persister(persister)
        .start_state("start")
        .task_state("step1", succeed({"step1": "done"}))
        .task_state("step2", succeed({"step2": "done"}))
        .end_state("end")
        .transition("start", "step1", TransitionType.ON_SUCCESS)
        .transition("step1", "step2", TransitionType.ON_SUCCESS)
        .transition("step2", "end", TransitionType.ON_SUCCESS)
        .build()
    )
    instance = machine.create_instance("test-persistence", {"initial": "data"})
    instance.start()

    loaded = machine.load_instance("test-persistence")
    assert loaded.data["initial"] == "data"
    assert loaded.data == {"initial": "data", "step1": "done", "step2": "done"}
    assert loaded.is_completed
    assert loaded.current_state_id == "end"
    assert loaded.execution_id == instance.execution_id


def test_snapshot_history_records_each_step():
    persister = InMemoryInstancePersister()
    machine = simple_machine(persister=persister)
    machine.create_instance("history", None).start()
    statuses = [snapshot.status for snapshot in persister.get_snapshots("history")]
    assert statuses == [
        InstanceStatus.CREATED,
        InstanceStatus.RUNNING,
        InstanceStatus.RUNNING,
        InstanceStatus.COMPLETED,
    ]


def test_event_bus_and_metrics():
    bus = EventBus()
    metrics = MetricsListener()
    bus.subscribe(metrics)
    bus.subscribe(LoggingListener("debug"))
    machine = simple_machine(event_bus=bus)

    machine.create_instance("test-metrics", None).start()
    assert bus.drain(2.0)

    collected = metrics.metrics
    assert collected["executions_started"] >= 1
    assert collected["executions_completed"] >= 1
    assert collected["transition_on_success"] == 2
    assert collected["state_entered_process"] == 1
    assert collected["state_entered_end"] == 1
    bus.close()
    assert bus.closed


def test_event_order_is_recorded():
    bus = EventBus()
    store = InMemoryEventPersister()
    bus.subscribe(PersistenceListener(store))
    machine = simple_machine(event_bus=bus)
    machine.create_instance("ordered", None).start()
    assert bus.drain(2.0)

    kinds = [event.type for event in store.get_events("ordered")]
    assert kinds == [
        EventType.EXECUTION_STARTED,
        EventType.TRANSITION_FIRED,
        EventType.STATE_EXITED,
        EventType.STATE_ENTERED,
        EventType.TRANSITION_FIRED,
        EventType.STATE_EXITED,
        EventType.STATE_ENTERED,
        EventType.EXECUTION_FINISHED,
    ]
    bus.close()


def test_error_handling():
    machine = (
        new("error-machine")
        .start_state("start")
        .task_state("failing_task", fail)
        .end_state("end")
        .transition("start", "failing_task", TransitionType.ON_SUCCESS)
        .build()
    )
    instance = machine.create_instance("test-error", None)
    with pytest.raises(RuntimeError, match="intentional failure"):
        instance.start()
    assert instance.is_failed
    assert instance.current_state_id == "failing_task"

    loaded = machine.load_instance("test-error")
    assert loaded.is_failed
    assert str(loaded.error) == "intentional failure"


def test_task_that_raises_fails_the_instance():
    def explode(ctx):
        raise ValueError("boom")

    machine = (
        new("raising")
        .start_state("start")
        .task_state("explode", explode)
        .end_state("end")
        .transition("start", "explode", TransitionType.ON_SUCCESS)
        .build()
    )
    instance = machine.create_instance("raising", None)
    with pytest.raises(ValueError, match="boom"):
        instance.start()
    assert instance.status == InstanceStatus.FAILED


def test_idempotency_after_completion():
    machine = simple_machine()
    instance = machine.create_instance("test-idempotency", None)
    instance.start()
    event = Event(TransitionType.ON_SUCCESS)
    with pytest.raises(InstanceNotRunningError):
        instance.next(event)
    with pytest.raises(InstanceNotRunningError):
        instance.next(event)


def test_duplicate_event_is_rejected():
    instance = holding_machine().create_instance("dup", None)
    instance.start()
    assert instance.is_running
    assert instance.current_state_id == "hold"

    event = Event(TransitionType.ON_SUCCESS)
    instance.next(event)
    assert instance.current_state_id == "hold2"
    with pytest.raises(DuplicateEventError):
        instance.next(event)
    assert instance.current_state_id == "hold2"


def test_next_with_unrouted_event_is_not_allowed():
    instance = holding_machine().create_instance("unrouted", None)
    instance.start()
    with pytest.raises(TransitionNotAllowedError):
        instance.next(Event(TransitionType.ON_TIMEOUT))
    assert instance.current_state_id == "hold"


def test_next_merges_event_data_and_completes():
    instance = holding_machine().create_instance("merge", {"a": 1})
    instance.start()
    instance.next(Event(TransitionType.ON_SUCCESS, {"b": 2}))
    instance.next(Event(TransitionType.ON_SUCCESS))
    assert instance.is_completed
    assert instance.data == {"a": 1, "b": 2}


def test_goto_forces_transition():
    instance = holding_machine().create_instance("goto", None)
    instance.start()
    instance.goto("end")
    assert instance.is_completed
    assert instance.data["forced"] is True


def test_goto_unknown_state():
    instance = holding_machine().create_instance("goto-missing", None)
    instance.start()
    with pytest.raises(StateNotFoundError):
        instance.goto("nowhere")


def test_goto_requires_running_instance():
    instance = holding_machine().create_instance("goto-created", None)
    with pytest.raises(InstanceNotRunningError):
        instance.goto("end")


def test_start_twice_is_rejected():
    instance = simple_machine().create_instance("twice", None)
    instance.start()
    with pytest.raises(InstanceNotRunningError):
        instance.start()


def test_available_transitions():
    instance = holding_machine().create_instance("routes", None)
    assert instance.available_transitions() == {TransitionType.ON_SUCCESS: "hold"}
    instance.start()
    routes = instance.available_transitions()
    assert routes == {TransitionType.ON_SUCCESS: "hold2"}
    routes["extra"] = "end"
    assert "extra" not in instance.available_transitions()


def test_set_data_and_metadata():
    instance = simple_machine().create_instance("setters", {"x": 1})
    before = instance.updated_at
    instance.set_data("y", 2)
    instance.set_metadata("owner", "ops")
    assert instance.data == {"x": 1, "y": 2}
    assert instance.metadata == {"owner": "ops"}
    assert instance.updated_at >= before
    copy = instance.data
    copy["z"] = 3
    assert "z" not in instance.data


@pytest.mark.parametrize(
    "builder",
    [
        lambda: new("no-start").task_state("task", None),
        lambda: new("no-end").start_state("start").task_state("task", None),
        lambda: new("invalid-transition")
        .start_state("start")
        .end_state("end")
        .transition("start", "nonexistent", TransitionType.ON_SUCCESS),
        lambda: new("").start_state("start").end_state("end"),
        lambda: new("empty"),
    ],
)
def test_machine_validation(builder):
    with pytest.raises(MachineValidationError):
        builder().build()


def test_validation_message_names_missing_target():
    builder = (
        new("invalid-transition")
        .start_state("start")
        .end_state("end")
        .transition("start", "nonexistent", TransitionType.ON_SUCCESS)
    )
    with pytest.raises(MachineValidationError, match="non-existent state 'nonexistent'"):
        builder.build()


def test_build_twice():
    builder = new("twice").start_state("start").end_state("end")
    builder.build()
    with pytest.raises(MachineAlreadyBuiltError):
        builder.build()


def test_unbuilt_machine_cannot_create_instances():
    machine = StateMachine("raw")
    with pytest.raises(MachineNotBuiltError):
        machine.create_instance("x", None)
    with pytest.raises(MachineNotBuiltError):
        machine.load_instance("x")


@pytest.mark.parametrize("bad_id", ["", "has space", "x" * 256])
def test_invalid_instance_id(bad_id):
    with pytest.raises(ValidationError):
        simple_machine().create_instance(bad_id, None)


def test_load_unknown_instance():
    with pytest.raises(InstanceNotFoundError):
        simple_machine().load_instance("missing")


def test_defaults_and_disabled_components():
    machine = simple_machine()
    assert isinstance(machine.instance_persister, InMemoryInstancePersister)
    assert isinstance(machine.event_bus, EventBus)

    bare = (
        new("bare")
        .with_config(StateMachineConfig(enable_persistence=False, enable_event_bus=False))
        .start_state("start")
        .end_state("end")
        .transition("start", "end", TransitionType.ON_SUCCESS)
        .build()
    )
    assert bare.instance_persister is None
    assert bare.event_bus is None
    instance = bare.create_instance("bare-1", None)
    instance.start()
    assert instance.is_completed
    with pytest.raises(EventPersisterNotSetError):
        bare.load_instance("bare-1")


def test_config_defaults():
    config = StateMachineConfig()
    assert config.max_concurrent_instances == 1000
    assert config.transition_timeout == 30.0
    assert config.retry_attempts == 3
    assert config.retry_delay == 1.0
    assert config.enable_persistence and config.enable_event_bus


def test_state_defaults_by_id():
    machine = (
        new("generic")
        .state("start", None)
        .state("work", None)
        .state("end", None)
        .transition("start", "work", TransitionType.ON_SUCCESS)
        .transition("work", "end", TransitionType.ON_SUCCESS)
        .build()
    )
    assert machine.start_state_id == "start"
    assert machine.end_state_ids == ["end"]
    assert machine.states["work"].state_type == StateType.TASK
    instance = machine.create_instance("generic-1", None)
    instance.start()
    assert instance.current_state_id == "end"


def test_state_with_explicit_instances():
    machine = (
        new("explicit")
        .state("begin", StartState("begin"))
        .state("finish", EndState("finish"))
        .transition("begin", "finish", TransitionType.ON_SUCCESS)
        .build()
    )
    assert machine.start_state_id == "begin"
    assert machine.states["begin"].transitions == {TransitionType.ON_SUCCESS: "finish"}
    instance = machine.create_instance("explicit-1", None)
    instance.start()
    assert instance.is_completed


def test_join_state_waits_until_inputs_arrive():
    machine = (
        new("join")
        .start_state("start")
        .join_state("join", ["a"])
        .end_state("end")
        .transition("start", "join", TransitionType.ON_SUCCESS)
        .transition("join", "end", TransitionType.ON_SUCCESS)
        .build()
    )
    instance = machine.create_instance("join-1", None)
    instance.start()
    assert instance.is_running
    assert instance.current_state_id == "join"
    assert instance.data["waiting_for_inputs"] is True
    assert instance.error is None

    done = machine.create_instance("join-2", {"input_id": "a"})
    done.start()
    assert done.is_completed