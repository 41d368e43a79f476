"""Sequential workflow engine with placeholder resolution between steps."""

from __future__ import annotations

import asyncio
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Optional, Sequence

from orcha.logger import BaseLogger
from orcha.workflow.model import (
    Command,
    CommandRegistry,
    StepExecutor,
    ValidationError,
    WorkflowDefinition,
    WorkflowResult,
    WorkflowStep,
    WorkflowStepResult,
)
from orcha.yaml_json import load_yaml

# The whole dotted path is captured in group 2 so that nested references such
# as {{step1.output.a.b}} keep every segment.
_POSITIONAL = re.compile(r"\{\{step(\d+)\.output((?:\.\w+)*)\}\}", re.ASCII)
_NAMED = re.compile(r"\{\{steps\.([A-Za-z_]\w*)\.output((?:\.\w+)*)\}\}", re.ASCII)


class SyncStepExecutor(StepExecutor):
    """Validates and runs a command in the calling thread."""

    def execute_step(self, command: Command, params: Any) -> WorkflowStepResult:
        result = WorkflowStepResult(command_name=command.name)
        try:
            command.validate(params)
        except ValidationError as err:
            result.error_message = (
                f"Validation failed for parameter '{err.parameter_name}': {err.message}"
            )
            return result
        except Exception as err:  # noqa: BLE001 - a command may raise anything
            result.error_message = str(err) or "Unknown error during command execution"
            return result
        try:
            result.output = command.execute(params)
            result.success = True
        except Exception as err:  # noqa: BLE001 - a command may raise anything
            result.error_message = str(err) or "Unknown error during command execution"
        return result


def _navigate(output: Any, field_path: str) -> Any:
    current = output
    for key in field_path.split(".")[1:]:
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return None
    return current


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return f"{value:.6f}"
    return "<non-scalar>"


def _resolve_text(text: str, previous: Sequence[WorkflowStepResult]) -> str:
    while (match := _POSITIONAL.search(text)) is not None:
        index = int(match.group(1)) - 1
        replacement = ""
        if 0 <= index < len(previous):
            replacement = _to_text(_navigate(previous[index].output, match.group(2)))
        text = text[: match.start()] + replacement + text[match.end():]

    while (match := _NAMED.search(text)) is not None:
        step_name = match.group(1)
        replacement = ""
        # The most recent step carrying the name wins.
        for prev in reversed(previous):
            if prev.name and prev.name == step_name:
                replacement = _to_text(_navigate(prev.output, match.group(2)))
                break
        text = text[: match.start()] + replacement + text[match.end():]
    return text


def resolve_placeholders(value: Any, previous_results: Sequence[WorkflowStepResult]) -> Any:
    """Replace ``{{stepN.output...}}`` and ``{{steps.<name>.output...}}`` references.

    Strings are resolved wherever they occur inside dicts and lists; other
    values are returned unchanged.
    """
    if isinstance(value, str):
        return _resolve_text(value, previous_results)
    if isinstance(value, dict):
        return {key: resolve_placeholders(item, previous_results) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_placeholders(item, previous_results) for item in value]
    return value


class WorkflowEngine:
    """Runs workflow steps in order, launching ``parallel`` steps in the background.

    A failing sequential step stops the workflow; the run succeeds only if
    every step succeeded.
    """

    def __init__(
        self,
        registry: CommandRegistry,
        executor: Optional[StepExecutor] = None,
        logger: Optional[BaseLogger] = None,
    ) -> None:
        self._registry = registry
        self._executor = executor or SyncStepExecutor()
        self._logger = logger

    def execute(self, definition: WorkflowDefinition) -> WorkflowResult:
        result = WorkflowResult(
            step_results=[WorkflowStepResult() for _ in definition.steps]
        )
        lock = threading.Lock()
        workers = max(1, sum(1 for step in definition.steps if step.parallel))

        def run_parallel(step: WorkflowStep, index: int) -> None:
            with lock:
                snapshot = list(result.step_results)
            step_result = self._execute_single_step(step, snapshot, index)
            with lock:
                result.step_results[index] = step_result

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = []
            for index, step in enumerate(definition.steps):
                self._log_step_start(step, index)
                if step.parallel:
                    futures.append(pool.submit(run_parallel, step, index))
                    continue
                with lock:
                    snapshot = list(result.step_results)
                step_result = self._execute_single_step(step, snapshot, index)
                self._log_step_complete(step_result, index)
                with lock:
                    result.step_results[index] = step_result
                if not step_result.success:
                    result.error_message = step_result.error_message
                    break
            for future in futures:
                future.result()

        result.success = all(r.success for r in result.step_results)
        return result

    async def execute_async(self, definition: WorkflowDefinition) -> WorkflowResult:
        """Run :meth:`execute` in a worker thread."""
        return await asyncio.to_thread(self.execute, definition)

    async def execute_json(self, workflow_json: Any) -> list[dict[str, Any]]:
        """Run a decoded JSON workflow and return the step results as JSON."""
        return await asyncio.to_thread(self._execute_json, workflow_json)

    def _execute_json(self, workflow_json: Any) -> list[dict[str, Any]]:
        if not isinstance(workflow_json, dict) or not isinstance(
            workflow_json.get("steps"), list
        ):
            error = WorkflowResult(
                step_results=[
                    WorkflowStepResult(error_message="No 'steps' array in workflow JSON")
                ]
            )
            return error.to_json()
        return self.execute(WorkflowDefinition.from_json(workflow_json)).to_json()

    def execute_yaml(self, yaml_path: str | Path) -> WorkflowResult:
        """Load a workflow from a YAML file and run it."""
        try:
            with open(yaml_path, encoding="utf-8") as handle:
                data = load_yaml(handle)
            return self.execute(WorkflowDefinition.from_json(data))
        except Exception as err:  # noqa: BLE001 - reported in the result
            return WorkflowResult(error_message=f"Failed to load YAML: {err}")

    def execute_yaml_string(self, yaml_content: str) -> WorkflowResult:
        """Parse a workflow from YAML text and run it."""
        try:
            data = load_yaml(yaml_content)
            return self.execute(WorkflowDefinition.from_json(data))
        except Exception as err:  # noqa: BLE001 - reported in the result
            return WorkflowResult(error_message=f"Failed to parse YAML: {err}")

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
        result.command_name = step.command_name
        result.name = step.name or ""
        return result

    def _log_step_start(self, step: WorkflowStep, index: int) -> None:
        if self._logger is not None:
            suffix = " (parallel)" if step.parallel else ""
            self._logger.debug(f"Starting step {index + 1}: {step.command_name}{suffix}")

    def _log_step_complete(self, result: WorkflowStepResult, index: int) -> None:
        if self._logger is None:
            return
        if result.success:
            self._logger.debug(f"Step {index + 1} completed successfully")
        else:
            self._logger.warn(f"Step {index + 1} failed: {result.error_message}")