# runner.py
# Execution engine: one external process per start().
#
# Lifecycle:
#   start() → spawn <shell> in the script's directory → pump stdout/stderr
#   into the OutputStream → wait for exit → drain readers → RunFinished
#
# The engine never raises for script failures. A process that cannot be
# spawned resolves to LAUNCH_FAILURE_EXIT_CODE with `launch_error` set; a
# process that ran resolves to its own exit code, whatever it is. Cancelling
# the task itself still emits RunFinished, with no exit code.

import asyncio
import getpass
import logging
import os
import signal
from pathlib import Path

from scriptlet_runner.arguments import compose_command, materialize
from scriptlet_runner.config import InvocationMode, Settings, get_settings
from scriptlet_runner.events import EventChannel, RunFinished, RunStarted
from scriptlet_runner.models import LAUNCH_FAILURE_EXIT_CODE, ExecutionOutcome, Script, ScriptArgument
from scriptlet_runner.output import STDERR_PREFIX, ChunkDecoder, OutputStream

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096

# Seconds to wait for the pipes to reach EOF once the process has exited.
# A backgrounded grandchild can hold them open indefinitely.
READER_DRAIN_TIMEOUT = 2.0


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


def build_environment(term: str, base: dict[str, str] | None = None) -> dict[str, str]:
    """Caller's environment with HOME, USER and TERM forced."""
    env = dict(os.environ if base is None else base)
    env["HOME"] = str(Path.home())
    env["USER"] = getpass.getuser()
    env["TERM"] = term
    return env


def build_invocation(
    script: Script, arguments: list[ScriptArgument], shell: str, mode: InvocationMode
) -> list[str]:
    if mode is InvocationMode.SHELL:
        return [shell, "-c", compose_command(script.path, arguments)]
    return [shell, script.path, *materialize(arguments)]


# ---------------------------------------------------------------------------
# ScriptRunner
# ---------------------------------------------------------------------------


class ScriptRunner:
    """
    Runs a single script at a time and publishes its output live.

    Must be driven from inside a running asyncio event loop; start() returns
    the task that resolves to the ExecutionOutcome.

    Example:
        runner = ScriptRunner()
        runner.stream.subscribe(print)
        outcome = await runner.start(script, script.arguments)
    """

    def __init__(self, settings: Settings | None = None, events: EventChannel | None = None) -> None:
        self._settings = settings or get_settings()
        self.events = events or EventChannel()
        self.stream = OutputStream(self.events)
        self._process: asyncio.subprocess.Process | None = None
        self._task: asyncio.Task | None = None
        self._command: list[str] = []
        self._cancel_requested = False

    @property
    def is_running(self) -> bool:
        return self.stream.is_running

    @property
    def output(self) -> str:
        return self.stream.text

    @property
    def exit_code(self) -> int | None:
        return self.stream.exit_code

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(
        self, script: Script, arguments: list[ScriptArgument] | None = None
    ) -> "asyncio.Task[ExecutionOutcome] | None":
        """Run `script` with the active entries of `arguments`. None if already running."""
        if arguments is None:
            arguments = script.arguments
        command = build_invocation(
            script, arguments, self._settings.shell, self._settings.invocation
        )
        return self.launch(
            command[0],
            command[1:],
            script.directory,
            build_environment(self._settings.term),
        )

    def launch(
        self,
        command: str,
        argv: list[str],
        working_directory: str,
        environment: dict[str, str],
    ) -> "asyncio.Task[ExecutionOutcome] | None":
        """Spawn `command argv...`. Rejected (None) while another run is in flight."""
        if self.is_running:
            logger.warning("Run rejected: %s is already running a process.", type(self).__name__)
            return None

        loop = asyncio.get_running_loop()
        self._cancel_requested = False
        self._command = [command, *argv]
        self.stream.clear()
        self.stream.is_running = True
        self._task = loop.create_task(
            self._execute(command, list(argv), working_directory, environment)
        )
        self._task.add_done_callback(self._on_task_done)
        return self._task

    def cancel(self) -> None:
        """Ask the live process to terminate. No-op when nothing is running."""
        if not self.is_running:
            return
        if self._process is None:
            # Spawn still in progress; _execute terminates it once it exists.
            self._cancel_requested = True
            return
        self._terminate(self._process)

    def clear(self) -> None:
        if not self.is_running:
            self.stream.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        logger.info("Sending SIGTERM to process group %d", process.pid)
        try:
            # The child leads its own session, so this reaches its children too.
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass

    async def _execute(
        self, command: str, argv: list[str], cwd: str, env: dict[str, str]
    ) -> ExecutionOutcome:
        full_command = [command, *argv]
        self.events.emit(RunStarted(command=full_command, working_directory=cwd))
        logger.debug("Launching %s in %s", full_command, cwd)

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.warning("Failed to start %s: %s", full_command, exc)
            self.stream.append(f"Failed to start script: {exc}\n")
            return self._finish(full_command, LAUNCH_FAILURE_EXIT_CODE, launch_error=str(exc))

        self._process = process
        if self._cancel_requested:
            self._terminate(process)

        readers = [
            asyncio.create_task(self._pump(process.stdout, ChunkDecoder())),
            asyncio.create_task(self._pump(process.stderr, ChunkDecoder(STDERR_PREFIX))),
        ]
        try:
            exit_code = await process.wait()
            _, pending = await asyncio.wait(readers, timeout=READER_DRAIN_TIMEOUT)
            for reader in pending:
                logger.debug("Pipe still open after exit; abandoning reader.")
                reader.cancel()
        except asyncio.CancelledError:
            self._terminate(process)
            for reader in readers:
                reader.cancel()
            raise
        finally:
            self._process = None

        logger.debug("Process %d exited with %d", process.pid, exit_code)
        return self._finish(full_command, exit_code)

    async def _pump(self, pipe: asyncio.StreamReader | None, decoder: ChunkDecoder) -> None:
        if pipe is None:
            return
        while True:
            data = await pipe.read(READ_CHUNK_SIZE)
            if not data:
                break
            self.stream.append(decoder.decode(data))
        self.stream.append(decoder.flush())

    def _on_task_done(self, task: asyncio.Task) -> None:
        # A task cancelled before its first step never enters _execute, so the
        # run state is released here rather than in the coroutine.
        if not task.cancelled():
            return
        self._process = None
        logger.info("Run cancelled: %s", self._command)
        self._finish(self._command, None)

    def _finish(
        self, command: list[str], exit_code: int | None, launch_error: str | None = None
    ) -> ExecutionOutcome:
        self.stream.exit_code = exit_code
        self.stream.is_running = False
        outcome = ExecutionOutcome(
            command=command,
            exit_code=exit_code,
            output=self.stream.text,
            is_running=False,
            launch_error=launch_error,
        )
        self.events.emit(RunFinished(outcome=outcome))
        return outcome
