"""Undo completed workflow steps after a failure."""

from __future__ import annotations

import enum
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional

from orcha.logger import BaseLogger
from orcha.workflow.model import CommandRegistry


class RollbackMode(enum.Enum):
    """When rollback takes place."""

    NONE = "none"
    ALL = "all"
    COMPLETED = "completed"


class RollbackStrategy(enum.Enum):
    """In which order completed steps are rolled back."""

    REVERSE_ORDER = "reverse"
    PARALLEL = "parallel"
    BEST_EFFORT = "best_effort"


@dataclass
class RollbackStepResult:
    """Outcome of rolling back one step."""

    command_name: str = ""
    step_index: int = -1
    success: bool = False
    error_message: str = ""

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "command": self.command_name,
            "step_index": self.step_index,
            "success": self.success,
        }
        if self.error_message:
            data["error"] = self.error_message
        return data


@dataclass
class RollbackResult:
    """Outcome of a whole rollback."""

    initiated: bool = False
    all_successful: bool = True
    steps_rolled_back: int = 0
    steps_failed: int = 0
    step_results: list[RollbackStepResult] = field(default_factory=list)
    trigger_reason: str = ""

    def to_json(self) -> dict[str, Any]:
        return {
            "initiated": self.initiated,
            "all_successful": self.all_successful,
            "steps_rolled_back": self.steps_rolled_back,
            "steps_failed": self.steps_failed,
            "trigger_reason": self.trigger_reason,
            "steps": [step.to_json() for step in self.step_results],
        }

    def _add(self, step_result: RollbackStepResult) -> None:
        self.step_results.append(step_result)
        if step_result.success:
            self.steps_rolled_back += 1
        else:
            self.steps_failed += 1
            self.all_successful = False


@dataclass
class CompletedStep:
    """A step that finished successfully and may need undoing."""

    step_index: int
    command_name: str
    original_params: Any
    output: Any
    supports_rollback: bool


class RollbackOrchestrator:
    """Tracks completed steps and rolls them back when a workflow fails."""

    def __init__(
        self,
        registry: CommandRegistry,
        logger: Optional[BaseLogger] = None,
        mode: RollbackMode = RollbackMode.COMPLETED,
        strategy: RollbackStrategy = RollbackStrategy.REVERSE_ORDER,
    ) -> None:
        self._registry = registry
        self._logger = logger
        self.mode = mode
        self.strategy = strategy
        self._completed: list[CompletedStep] = []

    def record_completed_step(
        self, step_index: int, command_name: str, params: Any, output: Any
    ) -> None:
        """Remember a successfully completed step."""
        command = self._registry.get_command(command_name)
        supports = command is not None and command.metadata.supports_rollback
        self._completed.append(
            CompletedStep(step_index, command_name, params, output, supports)
        )
        note = " (rollback supported)" if supports else " (no rollback)"
        self._log(f"Recorded completed step {step_index}: {command_name}{note}")

    def clear(self) -> None:
        """Forget every recorded step."""
        self._completed.clear()

    def execute_rollback(self, trigger_reason: str) -> RollbackResult:
        """Roll back recorded steps according to the mode and strategy."""
        result = RollbackResult(trigger_reason=trigger_reason)
        if self.mode is RollbackMode.NONE:
            self._log("Rollback mode is None, skipping rollback")
            return result
        if not self._completed:
            self._log("No completed steps to roll back")
            return result

        result.initiated = True
        self._log(f"Starting rollback due to: {trigger_reason}")
        self._log(f"Rolling back {len(self._completed)} steps")

        if self.strategy is RollbackStrategy.PARALLEL:
            self._rollback_parallel(result)
        else:
            self._rollback_sequential(
                result, stop_on_failure=self.strategy is RollbackStrategy.REVERSE_ORDER
            )
        return result

    def rollbackable_steps(self) -> list[CompletedStep]:
        """Recorded steps whose commands support rollback."""
        return [step for step in self._completed if step.supports_rollback]

    def has_rollbackable_steps(self) -> bool:
        return any(step.supports_rollback for step in self._completed)

    def _rollback_sequential(self, result: RollbackResult, stop_on_failure: bool) -> None:
        for step in reversed(self._completed):
            step_result = self._rollback_step(step)
            result._add(step_result)
            if step_result.success:
                continue
            if stop_on_failure:
                self._log(f"Stopping rollback due to failure at step {step.step_index}")
                break
            self._log(
                f"Rollback failed for step {step.step_index}, continuing with next..."
            )

    def _rollback_parallel(self, result: RollbackResult) -> None:
        steps = list(reversed(self._completed))
        with ThreadPoolExecutor(max_workers=len(steps)) as pool:
            for step_result in pool.map(self._rollback_step, steps):
                result._add(step_result)

    def _rollback_step(self, step: CompletedStep) -> RollbackStepResult:
        result = RollbackStepResult(
            command_name=step.command_name, step_index=step.step_index
        )
        if not step.supports_rollback:
            self._log(
                f"Step {step.step_index} ({step.command_name}) does not support "
                "rollback, skipping"
            )
            result.success = True
            return result

        command = self._registry.get_command(step.command_name)
        if command is None:
            result.error_message = f"Command not found for rollback: {step.command_name}"
            self._log(result.error_message)
            return result

        try:
            self._log(f"Rolling back step {step.step_index}: {step.command_name}")
            command.rollback(step.original_params)
        except Exception as err:  # noqa: BLE001 - a command may raise anything
            result.error_message = str(err) or "Unknown error during rollback"
            self._log(f"Rollback failed for step {step.step_index}: {result.error_message}")
            return result
        result.success = True
        self._log(f"Successfully rolled back step {step.step_index}")
        return result

    def _log(self, message: str) -> None:
        if self._logger is not None:
            self._logger.debug(f"[RollbackOrchestrator] {message}")


def parse_rollback_mode(text: str) -> RollbackMode:
    """Map ``none``/``all``/``completed`` to a mode; anything else is NONE."""
    try:
        return RollbackMode(text)
    except ValueError:
        return RollbackMode.NONE


def parse_rollback_strategy(text: str) -> RollbackStrategy:
    """Map ``reverse``/``parallel``/``best_effort``; anything else is REVERSE_ORDER."""
    try:
        return RollbackStrategy(text)
    except ValueError:
        return RollbackStrategy.REVERSE_ORDER