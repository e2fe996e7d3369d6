# chain.py
# Chain orchestrator.
#
# The ChainRunner owns all sequencing, step status and policy. The engine
# (runner.py) only ever sees one script at a time and never knows it is part
# of a chain.
#
# Control flow, per step:
#   stop requested? → mark running → resolve script by path
#   → apply step overrides → run through the engine → record status
#   → continue-on-error gate → next step
#
# Statuses live here, keyed by step id; the chain itself is never mutated.

import asyncio
import logging

from scriptlet_runner.arguments import apply_overrides
from scriptlet_runner.config import Settings, get_settings
from scriptlet_runner.events import (
    ChainFinished,
    ChainOutcome,
    ChainStarted,
    Event,
    EventChannel,
    OutputAppended,
    StepFinished,
    StepStarted,
)
from scriptlet_runner.models import (
    LAUNCH_FAILURE_EXIT_CODE,
    Script,
    ScriptChain,
    ScriptChainStep,
    StepStatus,
)
from scriptlet_runner.output import OutputStream
from scriptlet_runner.runner import ScriptRunner

logger = logging.getLogger(__name__)

SCRIPT_NOT_FOUND = "Script not found"


class ChainRunner:
    """
    Runs the steps of a ScriptChain strictly one after another.

    Every step outcome is data: a missing script, a launch failure and a
    non-zero exit all end up in `step_statuses` and the transcript, never as
    an exception.

    Example:
        chain_runner = ChainRunner()
        outcome = await chain_runner.run(chain, scripts)
        chain_runner.step_statuses[chain.steps[0].id]
    """

    def __init__(self, settings: Settings | None = None, runner: ScriptRunner | None = None) -> None:
        self._settings = settings or get_settings()
        self.events = EventChannel()
        self.stream = OutputStream(self.events)
        self._runner = runner or ScriptRunner(self._settings)
        self._runner.events.subscribe(self._forward_output)

        self.current_step_index = 0
        self.step_statuses: dict[str, StepStatus] = {}
        self.overall_success = True
        self._stop_requested = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self.stream.is_running

    @property
    def output(self) -> str:
        return self.stream.text

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, chain: ScriptChain, scripts: list[Script]) -> "asyncio.Task[ChainOutcome] | None":
        """Start `chain` against the `scripts` catalog. None if a run is in progress."""
        if self.is_running:
            logger.warning("Chain %r rejected: a chain is already running.", chain.name)
            return None

        loop = asyncio.get_running_loop()
        self._stop_requested = False
        self.current_step_index = 0
        self.step_statuses = {step.id: StepStatus.pending() for step in chain.steps}
        self.overall_success = True
        self.stream.clear()
        self.stream.is_running = True

        self.events.emit(
            ChainStarted(chain_id=chain.id, chain_name=chain.name, total_steps=chain.step_count)
        )
        self.stream.append(f"=== Starting Chain: {chain.name} ===\n")
        self.stream.append(f"Total steps: {chain.step_count}\n\n")

        catalog: dict[str, Script] = {}
        for script in scripts:
            catalog.setdefault(script.path, script)

        self._task = loop.create_task(self._drive(chain, catalog))
        self._task.add_done_callback(self._on_task_done)
        return self._task

    def stop(self) -> None:
        """Stop after the current step and ask its process to terminate."""
        if not self.is_running:
            return
        logger.info("Stop requested for running chain.")
        self._stop_requested = True
        self._runner.cancel()

    def clear(self) -> None:
        if self.is_running:
            return
        self.stream.clear()
        self.step_statuses = {}
        self.current_step_index = 0
        self.overall_success = True

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    async def _drive(self, chain: ScriptChain, catalog: dict[str, Script]) -> ChainOutcome:
        outcome = ChainOutcome.COMPLETED
        try:
            for index, step in enumerate(chain.steps):
                if self._stop_requested:
                    outcome = ChainOutcome.STOPPED_BY_USER
                    break

                succeeded = await self._run_step(index, step, catalog)

                if not succeeded and not step.continue_on_error and not self._stop_requested:
                    outcome = ChainOutcome.STOPPED_ON_ERROR
                    break
        except asyncio.CancelledError:
            outcome = ChainOutcome.STOPPED_BY_USER
            raise
        finally:
            self._finish(outcome)
        return outcome

    async def _run_step(self, index: int, step: ScriptChainStep, catalog: dict[str, Script]) -> bool:
        self.current_step_index = index
        self.step_statuses[step.id] = StepStatus.running()
        self.events.emit(StepStarted(index=index, step_id=step.id, script_name=step.script_name))
        self.stream.append(f"--- Step {index + 1}: {step.script_name} ---\n")

        script = catalog.get(step.script_path)
        if script is None:
            logger.warning("Chain step %d: no script at %s", index + 1, step.script_path)
            self.stream.append(f"ERROR: Script not found at {step.script_path}\n\n")
            return self._record(index, step, StepStatus.failed(SCRIPT_NOT_FOUND))

        task = self._runner.start(script, apply_overrides(script.arguments, step))
        if task is None:
            # The engine is private to this orchestrator; reaching here means
            # a previous step's process was never reaped.
            self.stream.append("ERROR: Execution engine busy\n\n")
            return self._record(index, step, StepStatus.failed("Execution engine busy"))

        result = await task

        if result.launch_failed:
            self.stream.append(f"Step failed with exit code: {LAUNCH_FAILURE_EXIT_CODE}\n\n")
            return self._record(
                index, step, StepStatus.failed(f"Exit code: {LAUNCH_FAILURE_EXIT_CODE}")
            )

        self.stream.append(f"Step completed with exit code: {result.exit_code}\n\n")
        return self._record(index, step, StepStatus.completed(result.exit_code))

    def _record(self, index: int, step: ScriptChainStep, status: StepStatus) -> bool:
        """Store `status` for `step`; returns whether the step counts as a success."""
        self.step_statuses[step.id] = status
        succeeded = status.succeeded
        if not succeeded:
            self.overall_success = False
        self.events.emit(StepFinished(index=index, step_id=step.id, status=status))
        return succeeded

    def _finish(self, outcome: ChainOutcome) -> None:
        if outcome is ChainOutcome.COMPLETED:
            self.stream.append("\n=== Chain Completed ===\n")
            self.stream.append(
                "All steps succeeded!\n" if self.overall_success else "Some steps failed.\n"
            )
        elif outcome is ChainOutcome.STOPPED_BY_USER:
            self.stream.append("\n=== Chain Stopped by User ===\n")
        else:
            self.stream.append("=== Chain Stopped Due to Error ===\n")

        self.stream.is_running = False
        self._stop_requested = False
        logger.info("Chain finished: %s (overall success: %s)", outcome.value, self.overall_success)
        self.events.emit(ChainFinished(outcome=outcome, overall_success=self.overall_success))

    def _on_task_done(self, task: asyncio.Task) -> None:
        # Cancelled before _drive started: its finally clause never ran.
        if task.cancelled() and self.is_running:
            self._finish(ChainOutcome.STOPPED_BY_USER)

    def _forward_output(self, event: Event) -> None:
        if isinstance(event, OutputAppended):
            self.stream.append(event.text)
