# models.py
# Data contracts for the script runner.
# No process handling lives here: schemas plus the small derived
# properties that the materializer, the runners and the views read.

import os
import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Exit code reported when the process could not be started at all.
LAUNCH_FAILURE_EXIT_CODE = -1


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Scripts
# ---------------------------------------------------------------------------


class ScriptArgument(BaseModel):
    """A flag or positional argument declared in a script's comment header."""

    id: str = Field(default_factory=new_id, description="Opaque identifier, stable across rescans.")
    short_flag: str | None = Field(default=None, description="e.g. '-v'")
    long_flag: str | None = Field(default=None, description="e.g. '--verbose'")
    description: str = ""
    requires_value: bool = False
    is_positional: bool = False
    placeholder: str | None = None
    choices: list[str] | None = Field(
        default=None, description="Fixed set of values. Exactly one may be selected."
    )

    # Runtime state, edited by the user before a run.
    is_enabled: bool = False
    value: str = ""

    @property
    def display_name(self) -> str:
        if self.long_flag:
            if self.short_flag:
                return f"{self.short_flag}, {self.long_flag}"
            return self.long_flag
        return self.short_flag or self.placeholder or "argument"

    @property
    def flag_for_command(self) -> str | None:
        return self.long_flag or self.short_flag

    @property
    def is_active(self) -> bool:
        """Whether this argument contributes to the command line.

        Choice arguments have no independent toggle: they are active exactly
        when a value has been selected.
        """
        if self.choices is not None:
            return bool(self.value)
        return self.is_enabled

    def select(self, value: str) -> None:
        self.value = value
        if self.choices is not None:
            self.is_enabled = bool(value)


class Script(BaseModel):
    """A runnable shell script discovered on disk. Re-created on every scan."""

    id: str = Field(default_factory=new_id)
    path: str = Field(..., description="Absolute path. Unique key for lookups.")
    name: str = ""
    description: str = ""
    usage: str | None = None
    arguments: list[ScriptArgument] = Field(default_factory=list)
    custom_label: str | None = None

    @model_validator(mode="after")
    def _default_name(self) -> "Script":
        if not self.name:
            self.name = os.path.basename(self.path)
        return self

    @property
    def display_name(self) -> str:
        return self.custom_label or self.name

    @property
    def directory(self) -> str:
        return os.path.dirname(self.path) or "."

    @property
    def exists(self) -> bool:
        return os.path.exists(self.path)

    @property
    def is_executable(self) -> bool:
        return os.path.isfile(self.path) and os.access(self.path, os.X_OK)


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------


class ScriptChainStep(BaseModel):
    """One entry of a chain: a script reference plus its own argument snapshot."""

    id: str = Field(default_factory=new_id)
    script_path: str
    script_name: str
    arguments: dict[str, str] = Field(
        default_factory=dict, description="Argument id -> value override."
    )
    enabled_flags: list[str] = Field(
        default_factory=list, description="Ids of the arguments enabled for this step."
    )
    continue_on_error: bool = False

    @classmethod
    def from_arguments(
        cls,
        script: Script,
        arguments: list[ScriptArgument] | None = None,
        continue_on_error: bool = False,
    ) -> "ScriptChainStep":
        """Snapshot the active arguments of `script` into a new step."""
        if arguments is None:
            arguments = script.arguments
        active = [arg for arg in arguments if arg.is_active]
        return cls(
            script_path=script.path,
            script_name=script.display_name,
            arguments={arg.id: arg.value for arg in active if arg.value},
            enabled_flags=[arg.id for arg in active],
            continue_on_error=continue_on_error,
        )


class ScriptChain(BaseModel):
    """An ordered, strictly sequential list of steps."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    steps: list[ScriptChainStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    last_run_at: datetime | None = None

    @property
    def step_count(self) -> int:
        return len(self.steps)


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepStatus(BaseModel):
    """Closed status of a single chain step. Use the named constructors."""

    model_config = ConfigDict(frozen=True)

    state: StepState
    exit_code: int | None = None
    reason: str | None = None

    @classmethod
    def pending(cls) -> "StepStatus":
        return cls(state=StepState.PENDING)

    @classmethod
    def running(cls) -> "StepStatus":
        return cls(state=StepState.RUNNING)

    @classmethod
    def completed(cls, exit_code: int) -> "StepStatus":
        return cls(state=StepState.COMPLETED, exit_code=exit_code)

    @classmethod
    def failed(cls, reason: str) -> "StepStatus":
        return cls(state=StepState.FAILED, reason=reason)

    @classmethod
    def skipped(cls) -> "StepStatus":
        return cls(state=StepState.SKIPPED)

    @property
    def succeeded(self) -> bool:
        return self.state is StepState.COMPLETED and self.exit_code == 0

    @property
    def label(self) -> str:
        if self.state is StepState.COMPLETED:
            return f"completed ({self.exit_code})"
        if self.state is StepState.FAILED:
            return f"failed: {self.reason}"
        return self.state.value


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionOutcome(BaseModel):
    """Result of one process invocation."""

    command: list[str] = Field(default_factory=list)
    exit_code: int | None = None
    output: str = ""
    is_running: bool = False
    launch_error: str | None = Field(
        default=None, description="Set only when the process never started."
    )

    @property
    def launch_failed(self) -> bool:
        return self.launch_error is not None

    @property
    def succeeded(self) -> bool:
        return not self.launch_failed and self.exit_code == 0


# ---------------------------------------------------------------------------
# Persisted collaborators
# ---------------------------------------------------------------------------


class ScanLocation(BaseModel):
    """A directory searched for scripts."""

    id: str = Field(default_factory=new_id)
    path: str
    label: str = ""
    is_enabled: bool = True
    recursive: bool = True

    @model_validator(mode="after")
    def _default_label(self) -> "ScanLocation":
        if not self.label:
            self.label = os.path.basename(os.path.normpath(self.path))
        return self

    @property
    def exists(self) -> bool:
        return os.path.exists(self.path)


class RunHistoryEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    script_path: str
    script_name: str
    run_date: datetime = Field(default_factory=datetime.now)
    exit_code: int | None = None
    arguments: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool | None:
        if self.exit_code is None:
            return None
        return self.exit_code == 0

    @property
    def status_icon(self) -> str:
        if self.exit_code is None:
            return "?"
        return "✓" if self.exit_code == 0 else "✗"
