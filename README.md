# warden

A small library for describing workflows as state machines and running
them. A machine is built from named states joined by typed transitions.
Each running instance keeps its own data and moves from state to state on
its own as states finish. Its snapshots can be saved and loaded again.

## Features

- Start, task, decision, parallel, join and end states (`warden.state`).
- Transitions keyed by `TransitionType`: `ON_SUCCESS`, `ON_FAILURE`,
  `ON_TIMEOUT` and `ON_CUSTOM`.
- Instances run on their own from the start state. They stop when they
  reach an end state, when a state fails, or when a state's result names no
  outgoing transition.
- Idempotent manual steps. An event whose ID has already been seen is
  refused with `DuplicateEventError`.
- An `EventBus` with metrics, logging and persistence listeners.
- Instance snapshots kept in memory, serialised to JSON, or rebuilt from
  stored events.

## Installation

```
pip install .
```

The package needs no third-party libraries. To run the tests:

```
pip install ".[test]"
pytest
```

## Building a machine

`warden.machine.new(name)` returns a `StateMachineBuilder`. You add states
and transitions in a chain and then call `build()`, which checks the
machine. There must be a name, a start state and at least one end state,
and every transition must point at a known state. If any of these checks
fails, `build()` raises `warden.errors.MachineValidationError`. Calling
`build()` a second time raises `MachineAlreadyBuiltError`.

```python
from warden.machine import new
from warden.state import Event, StateResult, TransitionType


def charge(ctx):
    total = ctx.data["quantity"] * ctx.data["price"]
    return StateResult(
        success=True,
        data={"total": total},
        event=Event(TransitionType.ON_SUCCESS),
    )


machine = (
    new("orders")
    .start_state("start")
    .task_state("charge", charge)
    .end_state("done")
    .transition("start", "charge", TransitionType.ON_SUCCESS)
    .transition("charge", "done", TransitionType.ON_SUCCESS)
    .build()
)

instance = machine.create_instance("order-1", {"quantity": 2, "price": 9.5})
instance.start()
assert instance.is_completed
assert instance.data["total"] == 19.0
```

Instance IDs must be non-empty, at most 255 characters long, and free of
whitespace. Otherwise `create_instance` raises
`warden.errors.ValidationError`.

`start()` runs the instance through its states. At each state, the data in
the result is merged into the instance data, and the transition named by
the result's event is followed. A state fails when its result is not
successful and carries an error, or when its task raises an exception. In
that case the instance is marked as failed and `start()` raises the error.

These builder steps are also available:

- `task_state(state_id, task)` runs `task(ctx)`, which returns a
  `StateResult`.
- `decision_state(state_id, condition)` runs `condition(ctx)`, which
  returns the transition type to follow. If the condition raises, the
  instance fails.
- `parallel_state(state_id, tasks)` runs every task at once in a thread
  pool. It succeeds only if all of the tasks do, and stores their results
  under `"parallel_results"`.
- `join_state(state_id, required_inputs)` records the string in
  `ctx.data["input_id"]` each time it runs. It succeeds once every required
  input has been seen. Until then it returns an unsuccessful result with no
  error, so the instance stays running at the join.
- `state(state_id, state)` adds a ready-made state object.
- `with_persister(...)`, `with_event_bus(...)` and `with_config(...)`
  attach a snapshot store, an event bus or a `StateMachineConfig`. The
  config's `enable_persistence` and `enable_event_bus` settings decide
  whether `build()` supplies a default in-memory persister and event bus.

You can also move a running instance by hand:

- `next(event)` follows the transition for `event.type`.
- `goto(state_id)` forces the instance into a given state.
- `available_transitions()` lists where the instance can go from its
  current state.
- `set_data` and `set_metadata` update its values.

Read-only properties include `current_state`, `data`, `metadata`,
`is_running`, `is_completed` and `is_failed`.

## Persistence

By default a built machine keeps its snapshots in a
`warden.persistence.InMemoryInstancePersister`, which keeps every snapshot
of every instance. `machine.load_instance(id)` restores an instance from
its latest snapshot. A stored error message comes back as an
`InstanceError`.

Persisters also offer these methods:

- `load_snapshot_by_version`
- `get_snapshots`
- `delete_instance`
- `list_instances(status, limit, offset)`
- `instance_count(status)`

`JSONInstancePersister` adds `serialize_snapshot` and
`deserialize_snapshot`. `EventSourcePersister` caches the latest snapshot
of each instance. When no snapshot is cached, it rebuilds one from the
events held by an `EventPersister`.

## Events and listeners

A `warden.listener.EventBus` delivers `StateEvent`s to subscribed
listeners:

- `publish` delivers an event straight away, in the caller's thread.
- `publish_async` queues the event for each listener's worker thread.
  Events are dropped when a listener's queue holds 100 of them.
- `drain(timeout)` waits until every queued event has been handled.
- `close()` shuts the bus down. The bus can also be used as a context
  manager.

A running machine publishes through `publish_async`.

The package ships these listeners:

- `MetricsListener` counts started, completed and failed executions,
  entered states and fired transitions. Read the counts through its
  `metrics` property.
- `LoggingListener` writes events to the `warden.listener` logger.
- `PersistenceListener` stores events through an `EventPersister`, for
  example an `InMemoryEventPersister`.

## Errors

Every exception the package raises derives from
`warden.errors.WardenError`. Examples:

- `MachineValidationError`
- `InstanceNotRunningError`
- `TransitionNotAllowedError`
- `StateNotFoundError`
- `DuplicateEventError`
- `InstanceNotFoundError`
- `ListenerAlreadyExistsError`

## Examples

`warden.examples` holds two sample order workflows. The first is a straight
pipeline. The second adds a decision, parallel tasks, a join, persistence
and metrics. Run them with:

```
warden-examples            # basic workflow
warden-examples advanced
warden-examples all
```

## What it does not do

- Storage lives only in memory. There is no file or database persister;
  `JSONInstancePersister` only turns snapshots into bytes and back.
- The `StateMachineConfig` settings `max_concurrent_instances`,
  `transition_timeout`, `retry_attempts` and `retry_delay` are stored but
  not acted on. States are not timed out, retried or limited in number.
- `LoggingListener` logs each kind of event at a fixed level. Its
  `log_level` setting is kept but does not filter anything.
- There is no server or command-line front end beyond the example runner.