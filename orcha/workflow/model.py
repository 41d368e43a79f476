"""Workflow definitions, results, and the command abstractions they run on."""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class WorkflowStepResult:
    """Outcome of a single workflow step."""

    success: bool = False
    error_message: str = ""
    output: Any = None
    command_name: str = ""
    name: str = ""
    step_index: int = -1

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "error_message": self.error_message,
            "output": self.output,
        }
        if self.command_name:
            data["command"] = self.command_name
        if self.name:
            data["name"] = self.name
        if self.step_index >= 0:
            data["step"] = self.step_index
        return data


@dataclass
class WorkflowStep:
    """One step of a workflow: a command and its parameters."""

    command_name: str = ""
    params: Any = field(default_factory=dict)
    parallel: bool = False
    name: Optional[str] = None
    timeout_ms: Optional[int] = None


def _string_field(obj: dict, key: str) -> str:
    value = obj[key]
    if not isinstance(value, str):
        raise TypeError(f"field '{key}' must be a string")
    return value


def _bool_field(obj: dict, key: str) -> bool:
    value = obj[key]
    if not isinstance(value, bool):
        raise TypeError(f"field '{key}' must be a boolean")
    return value


def _int_field(obj: dict, key: str) -> int:
    value = obj[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"field '{key}' must be a number")
    return int(value)


def _step_from_json(data: Any) -> WorkflowStep:
    step = WorkflowStep()
    if not isinstance(data, dict):
        return step
    if "command" in data:
        step.command_name = _string_field(data, "command")
    if "params" in data:
        step.params = copy.deepcopy(data["params"])
    if "parallel" in data:
        step.parallel = _bool_field(data, "parallel")
    if "name" in data:
        step.name = _string_field(data, "name")
    if "timeout_ms" in data:
        step.timeout_ms = _int_field(data, "timeout_ms")
    return step


@dataclass
class WorkflowDefinition:
    """A named, ordered list of steps."""

    name: str = ""
    description: str = ""
    steps: list[WorkflowStep] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> WorkflowDefinition:
        """Build a definition from decoded JSON; absent fields keep defaults.

        A field of the wrong type raises TypeError.
        """
        definition = cls()
        if not isinstance(data, dict):
            return definition
        if "name" in data:
            definition.name = _string_field(data, "name")
        if "description" in data:
            definition.description = _string_field(data, "description")
        steps = data.get("steps")
        if isinstance(steps, list):
            definition.steps = [_step_from_json(item) for item in steps]
        return definition


@dataclass
class WorkflowResult:
    """Outcome of a whole workflow run."""

    success: bool = False
    step_results: list[WorkflowStepResult] = field(default_factory=list)
    error_message: str = ""

    def to_json(self) -> list[dict[str, Any]]:
        return [result.to_json() for result in self.step_results]


class ValidationError(Exception):
    """Raised by a command when a parameter is missing or invalid."""

    def __init__(self, parameter_name: str, message: str) -> None:
        super().__init__(f"{parameter_name}: {message}")
        self.parameter_name = parameter_name
        self.message = message


@dataclass
class CommandMetadata:
    """Descriptive information about a command."""

    name: str
    description: str = ""
    version: str = ""
    supports_rollback: bool = False


class Command(ABC):
    """A unit of work that workflow steps invoke by name."""

    name: str = ""

    @property
    def metadata(self) -> CommandMetadata:
        return CommandMetadata(name=self.name)

    def validate(self, params: Any) -> None:
        """Raise ValidationError when ``params`` are unacceptable."""
        return None

    @abstractmethod
    def execute(self, params: Any) -> Any:
        """Run the command and return its JSON-compatible output."""

    def rollback(self, params: Any) -> None:
        """Undo a previous execution with the same ``params``."""
        raise RuntimeError(f"command '{self.name}' does not support rollback")


class CommandRegistry:
    """Thread-safe mapping of command names to commands."""

    def __init__(self) -> None:
        self._commands: dict[str, Command] = {}
        self._lock = threading.Lock()

    def register_command(self, command: Command) -> bool:
        """Add ``command``; returns False if its name is already taken."""
        with self._lock:
            if command.name in self._commands:
                return False
            self._commands[command.name] = command
            return True

    def unregister_command(self, name: str) -> bool:
        with self._lock:
            return self._commands.pop(name, None) is not None

    def get_command(self, name: str) -> Optional[Command]:
        with self._lock:
            return self._commands.get(name)

    def command_names(self) -> list[str]:
        with self._lock:
            return sorted(self._commands)

    def clear(self) -> None:
        with self._lock:
            self._commands.clear()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._commands

    def __len__(self) -> int:
        with self._lock:
            return len(self._commands)


class StepExecutor(ABC):
    """Strategy for running one command with resolved parameters."""

    @abstractmethod
    def execute_step(self, command: Command, params: Any) -> WorkflowStepResult:
        """Run ``command`` with ``params`` and report the outcome."""