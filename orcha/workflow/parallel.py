"""Dependency analysis and level-by-level parallel execution of workflows.

Steps reference earlier outputs through ``{{stepN.output...}}`` (1-based
position) or ``{{steps.<name>.output...}}``. Those references form a
dependency graph; steps whose dependencies are all satisfied run together
as one execution level.
"""

from __future__ import annotations

import asyncio
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Sequence

from orcha.logger import BaseLogger
from orcha.workflow.engine import SyncStepExecutor, resolve_placeholders
from orcha.workflow.model import (
    CommandRegistry,
    StepExecutor,
    WorkflowDefinition,
    WorkflowResult,
    WorkflowStep,
    WorkflowStepResult,
)
from orcha.workflow.rollback import RollbackMode, RollbackOrchestrator, RollbackStrategy

_POSITIONAL_REF = re.compile(r"\{\{step(\d+)\.output", re.ASCII)
_NAMED_REF = re.compile(r"\{\{steps\.([A-Za-z_]\w*)\.output", re.ASCII)

_SKIPPED_MESSAGE = "Skipped due to previous failure"


@dataclass
class StepDependency:
    """Dependency information for one workflow step."""

    step_index: int
    depends_on: set[int] = field(default_factory=set)
    dependents: set[int] = field(default_factory=set)
    in_degree: int = 0


@dataclass
class ExecutionLevel:
    """Steps that can run concurrently once earlier levels are done."""

    level: int
    step_indices: list[int] = field(default_factory=list)


def _strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _strings(item)


def _referenced_positions(params: Any) -> set[int]:
    return {
        int(match.group(1)) - 1
        for text in _strings(params)
        for match in _POSITIONAL_REF.finditer(text)
    }


def _referenced_names(params: Any) -> set[str]:
    return {
        match.group(1)
        for text in _strings(params)
        for match in _NAMED_REF.finditer(text)
    }


def analyze_dependencies(definition: WorkflowDefinition) -> dict[int, StepDependency]:
    """Map each step index to the earlier steps its parameters reference.

    References to the step itself, to later steps or to unknown names are
    ignored. With duplicated names, the last step carrying the name wins.
    """
    deps = {index: StepDependency(index) for index in range(len(definition.steps))}
    name_to_index = {
        step.name: index
        for index, step in enumerate(definition.steps)
        if step.name is not None
    }

    def add(index: int, ref: int) -> None:
        if 0 <= ref < index:
            deps[index].depends_on.add(ref)
            deps[ref].dependents.add(index)
            deps[index].in_degree += 1

    for index, step in enumerate(definition.steps):
        for ref in _referenced_positions(step.params):
            add(index, ref)
        for name in _referenced_names(step.params):
            if name in name_to_index:
                add(index, name_to_index[name])
    return deps


def compute_execution_levels(definition: WorkflowDefinition) -> list[ExecutionLevel]:
    """Group steps into levels; level N depends only on levels 0..N-1."""
    deps = analyze_dependencies(definition)
    levels: list[ExecutionLevel] = []
    processed: set[int] = set()

    while len(processed) < len(definition.steps):
        ready = [
            index
            for index in sorted(deps)
            if index not in processed and deps[index].depends_on <= processed
        ]
        if not ready:
            break  # circular dependency
        processed.update(ready)
        levels.append(ExecutionLevel(len(levels), ready))
    return levels


def has_parallelism(definition: WorkflowDefinition) -> bool:
    """True when some execution level holds more than one step."""
    return any(len(level.step_indices) > 1 for level in compute_execution_levels(definition))


@dataclass
class ParallelExecutionConfig:
    """Settings for :class:`ParallelWorkflowExecutor`."""

    max_parallel_steps: int = 8
    rollback_mode: RollbackMode = RollbackMode.NONE
    rollback_strategy: RollbackStrategy = RollbackStrategy.REVERSE_ORDER
    fail_fast: bool = True


class ParallelWorkflowExecutor:
    """Runs independent steps concurrently while respecting data dependencies."""

    def __init__(
        self,
        registry: CommandRegistry,
        step_executor: Optional[StepExecutor] = None,
        logger: Optional[BaseLogger] = None,
        config: Optional[ParallelExecutionConfig] = None,
    ) -> None:
        self._registry = registry
        self._executor = step_executor or SyncStepExecutor()
        self._logger = logger
        self._config = config or ParallelExecutionConfig()
        if self._config.max_parallel_steps < 1:
            raise ValueError("max_parallel_steps must be at least 1")
        self._rollback: Optional[RollbackOrchestrator] = None
        if self._config.rollback_mode is not RollbackMode.NONE:
            self._rollback = RollbackOrchestrator(
                registry,
                logger,
                self._config.rollback_mode,
                self._config.rollback_strategy,
            )

    @property
    def config(self) -> ParallelExecutionConfig:
        return self._config

    def execute(self, definition: WorkflowDefinition) -> WorkflowResult:
        """Run the workflow level by level; steps within a level run in parallel."""
        levels = compute_execution_levels(definition)
        self._log("Workflow analysis complete:")
        self._log(f"  Total steps: {len(definition.steps)}")
        self._log(f"  Execution levels: {len(levels)}")
        for level in levels:
            self._log(f"  Level {level.level}: {len(level.step_indices)} steps")

        if self._rollback is not None:
            self._rollback.clear()

        step_results = [WorkflowStepResult() for _ in definition.steps]
        lock = threading.Lock()
        failed = threading.Event()
        fail_fast = self._config.fail_fast

        def run(step: WorkflowStep, index: int) -> WorkflowStepResult:
            if failed.is_set() and fail_fast:
                return WorkflowStepResult(
                    success=False,
                    error_message=_SKIPPED_MESSAGE,
                    command_name=step.command_name,
                    step_index=index,
                )
            with lock:
                snapshot = list(step_results)
            return self._execute_single_step(step, snapshot, index)

        for level in levels:
            if failed.is_set() and fail_fast:
                self._log(f"Skipping level {level.level} due to previous failure")
                break
            self._log(
                f"Executing level {level.level} with "
                f"{len(level.step_indices)} parallel steps"
            )
            size = min(len(level.step_indices), self._config.max_parallel_steps)
            for start in range(0, len(level.step_indices), size):
                batch = level.step_indices[start:start + size]
                with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                    futures = [
                        (index, pool.submit(run, definition.steps[index], index))
                        for index in batch
                    ]
                    for index, future in futures:
                        step_result = future.result()
                        with lock:
                            step_results[index] = step_result
                        if not step_result.success:
                            failed.set()
                            self._log(
                                f"Step {index} failed: {step_result.error_message}"
                            )
                        elif self._rollback is not None:
                            self._rollback.record_completed_step(
                                index,
                                step_result.command_name,
                                definition.steps[index].params,
                                step_result.output,
                            )

        result = WorkflowResult(success=not failed.is_set(), step_results=step_results)
        if not result.success:
            if self._rollback is not None:
                self._log("Workflow failed, initiating rollback...")
                self._rollback.execute_rollback("Workflow step failure")
            result.error_message = next(
                (r.error_message for r in step_results if not r.success and r.error_message),
                "",
            )
        return result

    async def execute_async(self, definition: WorkflowDefinition) -> WorkflowResult:
        """Run :meth:`execute` in a worker thread."""
        return await asyncio.to_thread(self.execute, definition)

    def _execute_single_step(
        self,
        step: WorkflowStep,
        previous: Sequence[WorkflowStepResult],
        index: int,
    ) -> WorkflowStepResult:
        command = self._registry.get_command(step.command_name)
        if command is None:
            return WorkflowStepResult(
                error_message=f"Command not found: {step.command_name}",
                command_name=step.command_name,
                step_index=index,
            )
        params = resolve_placeholders(step.params, previous)
        result = self._executor.execute_step(command, params)
        result.step_index = index
        result.name = step.name or ""
        return result

    def _log(self, message: str) -> None:
        if self._logger is not None:
            self._logger.debug(f"[ParallelExecutor] {message}")