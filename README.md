# orcha

A small workflow orchestration library. A workflow is a list of steps; each
step names a command and passes it JSON-like parameters (dicts, lists,
strings, numbers, booleans). Later steps can use earlier steps' outputs
through placeholders, independent steps can run concurrently, and completed
steps can be rolled back when a run fails.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Commands and the registry

A command is a subclass of `orcha.workflow.model.Command` with a `name` and
an `execute(params)` method returning JSON-compatible output. It may also
override:

- `validate(params)` – raise `ValidationError(parameter_name, message)` to
  reject parameters before execution;
- `metadata` – a `CommandMetadata`; set `supports_rollback=True` to take part
  in rollback;
- `rollback(params)` – undo an execution with the same parameters.

Commands live in a thread-safe `CommandRegistry`:
`register_command(command)` returns `False` if the name is already taken;
`get_command(name)` returns the command or `None`; there are also
`unregister_command`, `command_names`, `clear`, `len()` and `in`.

```python
from orcha.workflow.model import Command, CommandRegistry

class Echo(Command):
    name = "echo"

    def execute(self, params):
        return {"echoed": params.get("message", "")}

registry = CommandRegistry()
registry.register_command(Echo())
```

## Workflows

`WorkflowDefinition.from_json(data)` builds a definition from a mapping with
an optional `name`, an optional `description` and a `steps` list. Each step
may have:

- `command` – the name of a registered command
- `params` – parameters handed to the command (defaults to `{}`)
- `parallel` – run the step in the background (defaults to `false`)
- `name` – a name later steps can refer to
- `timeout_ms` – stored on the step; nothing enforces it

Absent fields keep their defaults; a field of the wrong type raises
`TypeError`.

```yaml
name: greeting
steps:
  - name: greet
    command: echo
    params:
      message: hi
  - command: echo
    params:
      message: "first said {{step1.output.echoed}}"
  - command: echo
    params:
      message: "greet said {{steps.greet.output.echoed}}"
```

Placeholders, resolved in every string inside the parameters by
`orcha.workflow.engine.resolve_placeholders`:

- `{{stepN.output}}` and `{{stepN.output.a.b}}` refer to step N, counted from 1.
- `{{steps.<name>.output.<path>}}` refers to the most recent earlier step with
  that name.

A reference that cannot be resolved becomes an empty string. Booleans become
`true`/`false`, floats are written with six decimals, and lists or mappings
become `<non-scalar>`.

## Running a workflow

`WorkflowEngine(registry, executor=None, logger=None)` from
`orcha.workflow.engine` runs steps in order and returns a `WorkflowResult`
(`success`, `step_results`, `error_message`; `to_json()` gives the list of
step results). Steps marked `parallel` are started in the background with
the results known at that moment. A failing sequential step stops the run;
the run succeeds only if every step succeeded.

```python
from orcha.workflow.engine import WorkflowEngine
from orcha.workflow.model import WorkflowDefinition

engine = WorkflowEngine(registry)
result = engine.execute(WorkflowDefinition.from_json(workflow))
print(result.success, result.to_json())
```

- `execute_yaml(path)` and `execute_yaml_string(text)` read the definition
  from YAML; load or parse errors are reported in `error_message` rather than
  raised.
- `await engine.execute_async(definition)` runs `execute` in a worker thread.
- `await engine.execute_json(mapping)` runs a raw mapping and returns the JSON
  form of the step results; without a `steps` list it returns one failed
  step reporting `No 'steps' array in workflow JSON`.

The default step executor, `SyncStepExecutor`, validates then executes the
command in the calling thread and turns exceptions into failed step results.
Any `StepExecutor` subclass can be passed instead.

YAML is converted by `orcha.yaml_json.load_yaml` / `yaml_to_json`: a scalar
that starts with a 32-bit integer becomes an int, otherwise one that starts
with a number becomes a float, `true`/`false` become booleans, and anything
else stays a string.

## Parallel execution

`orcha.workflow.parallel` reads placeholder references between steps:

- `analyze_dependencies(definition)` maps each step index to a
  `StepDependency` (`depends_on`, `dependents`, `in_degree`); references to
  the step itself, to later steps or to unknown names are ignored;
- `compute_execution_levels(definition)` groups steps into `ExecutionLevel`s,
  each depending only on earlier levels;
- `has_parallelism(definition)` tells whether any level holds more than one
  step.

`ParallelWorkflowExecutor(registry, step_executor=None, logger=None,
config=None)` runs level after level, the steps of a level concurrently in
batches of at most `max_parallel_steps`. `ParallelExecutionConfig` fields:

- `max_parallel_steps` (8; below 1 raises `ValueError`)
- `fail_fast` (`True`) – after a failure, skip remaining levels and mark
  not-yet-started steps `Skipped due to previous failure`
- `rollback_mode` (`RollbackMode.NONE`) and `rollback_strategy`
  (`RollbackStrategy.REVERSE_ORDER`)

`execute_async` runs `execute` in a worker thread.

## Rollback

`orcha.workflow.rollback.RollbackOrchestrator` records completed steps with
`record_completed_step` and undoes them with `execute_rollback(reason)`,
returning a `RollbackResult` (with `to_json()`). Steps whose command does not
support rollback are skipped and counted as successful. Strategies:

- `REVERSE_ORDER` – newest first, stop at the first failure
- `BEST_EFFORT` – newest first, carry on past failures
- `PARALLEL` – all at once

With `RollbackMode.NONE` nothing is rolled back. `parse_rollback_mode`
accepts `none`, `all`, `completed` (otherwise `NONE`);
`parse_rollback_strategy` accepts `reverse`, `parallel`, `best_effort`
(otherwise `REVERSE_ORDER`). The parallel executor uses an orchestrator
automatically when its rollback mode is not `NONE`.

## Logging

`orcha.logger` provides:

- `Logger` – writes from a background thread; errors, warnings and fatal
  entries go to stderr, the rest to stdout, and everything is appended to a
  file once `set_log_file(path)` is called. `Logger.instance()` returns a
  shared instance; `flush()` waits for queued entries; `shutdown()` (or a
  `with` block) stops it. The `level` property sets the minimum level.
- `NullLogger` – discards everything.
- `ScopedLogger(logger, component)` – tags every entry with a component name
  and, optionally, a correlation id.
- `LogContext`, `LogLevel`, `format_entry` and `timestamp` for building
  entries.

## What this package does not do

It is a library only: there is no command-line program, no HTTP server or
dashboard, no persistent job store or cron scheduler, no plugin loading and
no circuit breakers. Step timeouts are read but not enforced.