import asyncio
import threading

import pytest

from orcha.workflow.model import (
    Command,
    CommandMetadata,
    CommandRegistry,
    WorkflowDefinition,
    WorkflowStep,
)
from orcha.workflow.parallel import (
    ExecutionLevel,
    ParallelExecutionConfig,
    ParallelWorkflowExecutor,
    analyze_dependencies,
    compute_execution_levels,
    has_parallelism,
)
from orcha.workflow.rollback import RollbackMode, RollbackStrategy


class EchoCommand(Command):
    def __init__(self, name="echo", rollback_log=None):
        self.name = name
        self.rollback_log = rollback_log

    @property
    def metadata(self):
        return CommandMetadata(name=self.name, supports_rollback=self.rollback_log is not None)

    def execute(self, params):
        return {"echoed": params.get("message", "")}

    def rollback(self, params):
        self.rollback_log.append((self.name, params))


class FailingCommand(Command):
    def __init__(self, name="fail"):
        self.name = name

    def execute(self, params):
        raise RuntimeError("boom")


class BarrierCommand(Command):
    """Succeeds only if two instances run at the same time."""

    def __init__(self, barrier):
        self.name = "barrier"
        self.barrier = barrier

    def execute(self, params):
        self.barrier.wait(timeout=5)
        return {"ok": True}


def make_def(*steps):
    return WorkflowDefinition(steps=list(steps))


def step(command="echo", params=None, name=None):
    return WorkflowStep(command_name=command, params=params if params is not None else {}, name=name)


@pytest.fixture
def registry():
    reg = CommandRegistry()
    reg.register_command(EchoCommand())
    reg.register_command(FailingCommand())
    return reg


def test_dependency_analyzer_no_deps():
    deps = analyze_dependencies(make_def(step(), step()))
    assert deps[0].depends_on == set()
    assert deps[1].depends_on == set()


def test_dependency_analyzer_with_refs():
    deps = analyze_dependencies(
        make_def(step(), step(params={"message": "Result: {{step1.output.value}}"}))
    )
    assert deps[0].depends_on == set()
    assert deps[1].depends_on == {0}
    assert deps[0].dependents == {1}
    assert deps[1].in_degree == 1


def test_dependency_analyzer_ignores_forward_and_self_refs():
    deps = analyze_dependencies(
        make_def(step(params={"a": "{{step1.output}}", "b": "{{step2.output}}"}), step())
    )
    assert deps[0].depends_on == set()
    assert deps[1].dependents == set()


def test_dependency_analyzer_named_refs_in_nested_params():
    deps = analyze_dependencies(
        make_def(
            step(name="greet"),
            step(params={"list": [{"m": "{{steps.greet.output.echoed}}"}]}),
            step(params={"m": "{{steps.unknown.output}}"}),
        )
    )
    assert deps[1].depends_on == {0}
    assert deps[2].depends_on == set()


def test_execution_levels_parallel():
    aggregate = step(
        "aggregate",
        {"a": "{{step1.output}}", "b": "{{step2.output}}", "c": "{{step3.output}}"},
    )
    levels = compute_execution_levels(make_def(step(), step(), step(), aggregate))
    assert len(levels) == 2
    assert levels[0] == ExecutionLevel(0, [0, 1, 2])
    assert levels[1] == ExecutionLevel(1, [3])


def test_execution_levels_empty_workflow():
    assert compute_execution_levels(make_def()) == []


def test_has_parallelism_sequential():
    definition = make_def(step(), step("process", {"input": "{{step1.output}}"}))
    assert has_parallelism(definition) is False


def test_has_parallelism_independent():
    assert has_parallelism(make_def(step(), step())) is True


def test_execute_resolves_references(registry):
    executor = ParallelWorkflowExecutor(registry)
    result = executor.execute(
        make_def(
            step(params={"message": "hi"}, name="greet"),
            step(params={"message": "got {{step1.output.echoed}}"}),
            step(params={"message": "named {{steps.greet.output.echoed}}"}),
        )
    )
    assert result.success is True
    assert result.error_message == ""
    assert [r.output["echoed"] for r in result.step_results] == ["hi", "got hi", "named hi"]
    assert [r.step_index for r in result.step_results] == [0, 1, 2]


def test_execute_runs_level_concurrently():
    reg = CommandRegistry()
    reg.register_command(BarrierCommand(threading.Barrier(2)))
    result = ParallelWorkflowExecutor(reg).execute(make_def(step("barrier"), step("barrier")))
    assert result.success is True
    assert all(r.output == {"ok": True} for r in result.step_results)


def test_execute_missing_command(registry):
    result = ParallelWorkflowExecutor(registry).execute(make_def(step("nope")))
    assert result.success is False
    assert result.error_message == "Command not found: nope"


def test_failure_skips_later_levels(registry):
    result = ParallelWorkflowExecutor(registry).execute(
        make_def(
            step("fail"),
            step(params={"message": "{{step1.output}}"}),
        )
    )
    assert result.success is False
    assert result.error_message == "boom"
    assert result.step_results[1].step_index == -1
    assert result.step_results[1].success is False


def test_fail_fast_skips_remaining_batches(registry):
    config = ParallelExecutionConfig(max_parallel_steps=1)
    result = ParallelWorkflowExecutor(registry, config=config).execute(
        make_def(step("fail"), step(params={"message": "x"}))
    )
    assert result.success is False
    assert result.step_results[1].error_message == "Skipped due to previous failure"
    assert result.step_results[1].step_index == 1
    assert result.error_message == "boom"


def test_without_fail_fast_later_batches_still_run(registry):
    config = ParallelExecutionConfig(max_parallel_steps=1, fail_fast=False)
    result = ParallelWorkflowExecutor(registry, config=config).execute(
        make_def(step("fail"), step(params={"message": "x"}))
    )
    assert result.success is False
    assert result.step_results[1].success is True
    assert result.step_results[1].output == {"echoed": "x"}


def test_rollback_on_failure():
    log = []
    reg = CommandRegistry()
    reg.register_command(EchoCommand("undoable", rollback_log=log))
    reg.register_command(FailingCommand())
    config = ParallelExecutionConfig(
        rollback_mode=RollbackMode.COMPLETED,
        rollback_strategy=RollbackStrategy.REVERSE_ORDER,
    )
    executor = ParallelWorkflowExecutor(reg, config=config)
    result = executor.execute(
        make_def(
            step("undoable", {"message": "a"}),
            step("fail", {"input": "{{step1.output.echoed}}"}),
        )
    )
    assert result.success is False
    assert log == [("undoable", {"message": "a"})]


def test_no_rollback_when_successful():
    log = []
    reg = CommandRegistry()
    reg.register_command(EchoCommand("undoable", rollback_log=log))
    config = ParallelExecutionConfig(rollback_mode=RollbackMode.ALL)
    result = ParallelWorkflowExecutor(reg, config=config).execute(
        make_def(step("undoable", {"message": "a"}))
    )
    assert result.success is True
    assert log == []


def test_invalid_max_parallel_steps(registry):
    with pytest.raises(ValueError):
        ParallelWorkflowExecutor(registry, config=ParallelExecutionConfig(max_parallel_steps=0))


@pytest.mark.asyncio
async def test_execute_async(registry):
    executor = ParallelWorkflowExecutor(registry)
    result = await executor.execute_async(make_def(step(params={"message": "async"})))
    assert result.success is True
    assert result.step_results[0].output == {"echoed": "async"}