import asyncio
import signal

import pytest
from unittest.mock import MagicMock
from scriptlet_runner.chain import SCRIPT_NOT_FOUND, ChainRunner
from scriptlet_runner.config import Settings
from scriptlet_runner.events import ChainFinished, ChainOutcome, ChainStarted, StepFinished, StepStarted
from scriptlet_runner.models import ScriptChain, ScriptChainStep, StepState, StepStatus
from scriptlet_runner.parser import ScriptParser

LONG_RUNNING = "#!/bin/sh\necho started\nsleep 30\necho never\n"


def _chain(*scripts, continue_on_error=False):
    steps = [ScriptChainStep.from_arguments(s, continue_on_error=continue_on_error) for s in scripts]
    return ScriptChain(name="demo", steps=steps)


async def _wait_for_output(chain_runner, text, timeout=10):
    seen = asyncio.Event()
    unsubscribe = chain_runner.stream.subscribe(lambda chunk: text in chain_runner.output and seen.set())
    try:
        await asyncio.wait_for(seen.wait(), timeout)
    finally:
        unsubscribe()


@pytest.fixture
def parse(write_script):
    def _parse(name, body):
        return ScriptParser().parse(write_script(name, body))

    return _parse

# ---------------------------------------------------------------------------
# Sequencing and policy
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_all_steps_succeed(settings, parse):
    first = parse("first.sh", "echo one\n")
    second = parse("second.sh", "echo two\n")
    chain = _chain(first, second)
    chain_runner = ChainRunner(settings)

    outcome = await chain_runner.run(chain, [first, second])

    assert outcome is ChainOutcome.COMPLETED
    assert chain_runner.overall_success is True
    assert chain_runner.is_running is False
    assert [chain_runner.step_statuses[s.id] for s in chain.steps] == [StepStatus.completed(0)] * 2
    assert chain_runner.output == (
        "=== Starting Chain: demo ===\n"
        "Total steps: 2\n\n"
        "--- Step 1: first.sh ---\n"
        "one\n"
        "Step completed with exit code: 0\n\n"
        "--- Step 2: second.sh ---\n"
        "two\n"
        "Step completed with exit code: 0\n\n"
        "\n=== Chain Completed ===\n"
        "All steps succeeded!\n"
    )

@pytest.mark.asyncio
async def test_failing_step_stops_the_chain(settings, parse):
    bad = parse("bad.sh", "exit 2\n")
    never = parse("never.sh", "echo never\n")
    chain = _chain(bad, never)
    chain_runner = ChainRunner(settings)

    outcome = await chain_runner.run(chain, [bad, never])

    assert outcome is ChainOutcome.STOPPED_ON_ERROR
    assert chain_runner.overall_success is False
    assert chain_runner.step_statuses[chain.steps[0].id] == StepStatus.completed(2)
    assert chain_runner.step_statuses[chain.steps[1].id].state is StepState.PENDING
    assert "--- Step 2" not in chain_runner.output
    assert chain_runner.output.endswith("Step completed with exit code: 2\n\n=== Chain Stopped Due to Error ===\n")

@pytest.mark.asyncio
async def test_continue_on_error_runs_remaining_steps(settings, parse):
    bad = parse("bad.sh", "exit 2\n")
    good = parse("good.sh", "echo fine\n")
    chain = _chain(bad, good, continue_on_error=True)
    chain_runner = ChainRunner(settings)

    outcome = await chain_runner.run(chain, [bad, good])

    assert outcome is ChainOutcome.COMPLETED
    assert chain_runner.overall_success is False
    assert chain_runner.step_statuses[chain.steps[1].id] == StepStatus.completed(0)
    assert chain_runner.output.endswith("\n=== Chain Completed ===\nSome steps failed.\n")

@pytest.mark.asyncio
@pytest.mark.parametrize("continue_on_error", [False, True])
async def test_three_steps_failing_in_the_middle(settings, parse, continue_on_error):
    first = parse("first.sh", "echo one\n")
    bad = parse("bad.sh", "exit 4\n")
    last = parse("last.sh", "echo three\n")
    chain = _chain(first, bad, last, continue_on_error=continue_on_error)
    chain_runner = ChainRunner(settings)

    outcome = await chain_runner.run(chain, [first, bad, last])

    statuses = [chain_runner.step_statuses[s.id] for s in chain.steps]
    assert statuses[:2] == [StepStatus.completed(0), StepStatus.completed(4)]
    assert chain_runner.overall_success is False
    if continue_on_error:
        assert outcome is ChainOutcome.COMPLETED
        assert statuses[2] == StepStatus.completed(0)
        assert "three\n" in chain_runner.output
    else:
        assert outcome is ChainOutcome.STOPPED_ON_ERROR
        assert statuses[2].state is StepState.PENDING
        assert "--- Step 3" not in chain_runner.output

@pytest.mark.asyncio
async def test_missing_script_fails_the_step(settings, parse):
    good = parse("good.sh", "echo fine\n")
    missing = ScriptChainStep(script_path="/missing/gone.sh", script_name="gone.sh")
    chain = ScriptChain(name="demo", steps=[missing])
    chain_runner = ChainRunner(settings)

    outcome = await chain_runner.run(chain, [good])

    assert outcome is ChainOutcome.STOPPED_ON_ERROR
    assert chain_runner.step_statuses[missing.id] == StepStatus.failed(SCRIPT_NOT_FOUND)
    assert "ERROR: Script not found at /missing/gone.sh\n\n" in chain_runner.output

@pytest.mark.asyncio
async def test_launch_failure_fails_the_step(tmp_path, parse):
    settings = Settings(shell="/nonexistent/sh", data_dir=tmp_path)
    script = parse("ok.sh", "echo ok\n")
    chain = _chain(script)
    chain_runner = ChainRunner(settings)

    outcome = await chain_runner.run(chain, [script])

    assert outcome is ChainOutcome.STOPPED_ON_ERROR
    assert chain_runner.step_statuses[chain.steps[0].id] == StepStatus.failed("Exit code: -1")
    assert "Failed to start script:" in chain_runner.output
    assert "Step failed with exit code: -1\n\n" in chain_runner.output

@pytest.mark.asyncio
async def test_empty_chain_completes(settings):
    chain_runner = ChainRunner(settings)
    outcome = await chain_runner.run(ScriptChain(name="empty"), [])
    assert outcome is ChainOutcome.COMPLETED
    assert chain_runner.overall_success is True
    assert "Total steps: 0" in chain_runner.output

@pytest.mark.asyncio
async def test_first_catalog_entry_wins_on_duplicate_paths(settings, parse):
    script = parse("dup.sh", "echo dup\n")
    shadow = script.model_copy(update={"custom_label": "shadow"})
    chain_runner = ChainRunner(settings)

    outcome = await chain_runner.run(_chain(script), [script, shadow])

    assert outcome is ChainOutcome.COMPLETED

# ---------------------------------------------------------------------------
# Argument overrides
# ---------------------------------------------------------------------------

ECHO_ARGS = """#!/bin/sh
# Options:
#   -v, --verbose    Talk more
#   -o, --output=FILE    Log file
# Arguments:
#   <target>    Where to go
echo "$@"
"""

@pytest.mark.asyncio
async def test_step_overrides_survive_a_rescan(settings, write_script):
    path = write_script("args.sh", ECHO_ARGS)
    configured = ScriptParser().parse(path)
    verbose, output, target = configured.arguments
    verbose.is_enabled = True
    target.is_enabled = True
    target.value = "prod"
    chain = ScriptChain(name="demo", steps=[ScriptChainStep.from_arguments(configured)])

    # The catalog is a fresh parse with nothing enabled.
    rescanned = ScriptParser().parse(path)
    chain_runner = ChainRunner(settings)
    await chain_runner.run(chain, [rescanned])

    assert "--verbose prod\n" in chain_runner.output
    assert not any(arg.is_enabled for arg in rescanned.arguments)

# ---------------------------------------------------------------------------
# Stop and re-entry
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stop_mid_chain(settings, parse):
    slow = parse("slow.sh", LONG_RUNNING)
    after = parse("after.sh", "echo after\n")
    chain = _chain(slow, after)
    chain_runner = ChainRunner(settings)

    task = chain_runner.run(chain, [slow, after])
    await _wait_for_output(chain_runner, "started")
    chain_runner.stop()
    outcome = await asyncio.wait_for(task, 10)

    assert outcome is ChainOutcome.STOPPED_BY_USER
    assert chain_runner.step_statuses[chain.steps[0].id] == StepStatus.completed(-signal.SIGTERM)
    assert chain_runner.step_statuses[chain.steps[1].id].state is StepState.PENDING
    assert "after\n" not in chain_runner.output
    assert chain_runner.output.endswith("\n=== Chain Stopped by User ===\n")
    assert chain_runner.is_running is False

@pytest.mark.asyncio
async def test_stop_during_second_of_three_steps(settings, parse):
    quick = parse("quick.sh", "echo quick\n")
    slow = parse("slow.sh", LONG_RUNNING)
    after = parse("after.sh", "echo after\n")
    chain = _chain(quick, slow, after)
    chain_runner = ChainRunner(settings)

    task = chain_runner.run(chain, [quick, slow, after])
    await _wait_for_output(chain_runner, "started")
    assert chain_runner.current_step_index == 1
    chain_runner.stop()
    outcome = await asyncio.wait_for(task, 10)

    assert outcome is ChainOutcome.STOPPED_BY_USER
    assert [chain_runner.step_statuses[s.id] for s in chain.steps] == [
        StepStatus.completed(0),
        StepStatus.completed(-signal.SIGTERM),
        StepStatus.pending(),
    ]
    assert "--- Step 3" not in chain_runner.output
    assert chain_runner.output.endswith("\n=== Chain Stopped by User ===\n")

@pytest.mark.asyncio
async def test_stop_during_final_step_still_completes(settings, parse):
    slow = parse("slow.sh", LONG_RUNNING)
    chain_runner = ChainRunner(settings)

    task = chain_runner.run(_chain(slow), [slow])
    await _wait_for_output(chain_runner, "started")
    chain_runner.stop()
    outcome = await asyncio.wait_for(task, 10)

    assert outcome is ChainOutcome.COMPLETED
    assert chain_runner.overall_success is False

@pytest.mark.asyncio
async def test_run_while_running_is_ignored(settings, parse):
    slow = parse("slow.sh", LONG_RUNNING)
    chain = _chain(slow)
    chain_runner = ChainRunner(settings)

    task = chain_runner.run(chain, [slow])
    await _wait_for_output(chain_runner, "started")
    statuses = dict(chain_runner.step_statuses)
    index = chain_runner.current_step_index
    output = chain_runner.output

    assert chain_runner.run(_chain(parse("other.sh", "echo other\n")), []) is None

    assert chain_runner.step_statuses == statuses
    assert statuses[chain.steps[0].id].state is StepState.RUNNING
    assert chain_runner.current_step_index == index
    assert chain_runner.output == output
    assert chain_runner.is_running is True

    chain_runner.stop()
    await asyncio.wait_for(task, 10)
    assert chain_runner.output.count("=== Starting Chain") == 1

@pytest.mark.asyncio
async def test_chain_can_be_rerun_after_stop(settings, parse):
    slow = parse("slow.sh", LONG_RUNNING)
    quick = parse("quick.sh", "echo quick\n")
    chain_runner = ChainRunner(settings)

    task = chain_runner.run(_chain(slow, quick), [slow, quick])
    await _wait_for_output(chain_runner, "started")
    chain_runner.stop()
    await asyncio.wait_for(task, 10)

    outcome = await chain_runner.run(_chain(quick), [quick])
    assert outcome is ChainOutcome.COMPLETED
    assert chain_runner.output.startswith("=== Starting Chain: demo ===\n")

@pytest.mark.asyncio
async def test_task_cancelled_before_it_starts_releases_the_chain(settings, parse):
    slow = parse("slow.sh", LONG_RUNNING)
    quick = parse("quick.sh", "echo quick\n")
    chain_runner = ChainRunner(settings)
    seen = []
    chain_runner.events.subscribe(seen.append)

    task = chain_runner.run(_chain(slow), [slow])
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert chain_runner.is_running is False
    assert chain_runner.output.endswith("\n=== Chain Stopped by User ===\n")
    assert isinstance(seen[-1], ChainFinished)
    assert seen[-1].outcome is ChainOutcome.STOPPED_BY_USER

    outcome = await asyncio.wait_for(chain_runner.run(_chain(quick), [quick]), 10)
    assert outcome is ChainOutcome.COMPLETED

@pytest.mark.asyncio
async def test_cancel_as_a_step_starts_releases_the_engine(settings, parse):
    slow = parse("slow.sh", LONG_RUNNING)
    quick = parse("quick.sh", "echo quick\n")
    chain_runner = ChainRunner(settings)

    def cancel_on_step(event):
        if isinstance(event, StepStarted):
            task.cancel()

    unsubscribe = chain_runner.events.subscribe(cancel_on_step)
    task = chain_runner.run(_chain(slow), [slow])
    with pytest.raises(asyncio.CancelledError):
        await task
    unsubscribe()

    assert chain_runner.is_running is False
    chain = _chain(quick)
    outcome = await asyncio.wait_for(chain_runner.run(chain, [quick]), 10)
    assert outcome is ChainOutcome.COMPLETED
    assert chain_runner.step_statuses[chain.steps[0].id] == StepStatus.completed(0)
    assert "Execution engine busy" not in chain_runner.output

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_events_follow_step_order(settings, parse):
    first = parse("first.sh", "echo one\n")
    second = parse("second.sh", "exit 1\n")
    chain = _chain(first, second, continue_on_error=True)
    chain_runner = ChainRunner(settings)
    seen = []
    chain_runner.events.subscribe(seen.append)

    await chain_runner.run(chain, [first, second])

    lifecycle = [e for e in seen if isinstance(e, (ChainStarted, StepStarted, StepFinished, ChainFinished))]
    assert [type(e) for e in lifecycle] == [
        ChainStarted, StepStarted, StepFinished, StepStarted, StepFinished, ChainFinished,
    ]
    assert [e.index for e in lifecycle if isinstance(e, StepFinished)] == [0, 1]
    assert lifecycle[-1].outcome is ChainOutcome.COMPLETED
    assert lifecycle[-1].overall_success is False

def test_clear_resets_state(settings):
    chain_runner = ChainRunner(settings)
    chain_runner.stream.append("old")
    chain_runner.overall_success = False

    chain_runner.clear()

    assert chain_runner.output == ""
    assert chain_runner.overall_success is True
    assert chain_runner.step_statuses == {}

def test_stop_cancels_the_engine_only_while_running(settings):
    engine = MagicMock()
    chain_runner = ChainRunner(settings, runner=engine)

    chain_runner.stop()
    engine.cancel.assert_not_called()

    chain_runner.stream.is_running = True
    chain_runner.stop()
    engine.cancel.assert_called_once()
