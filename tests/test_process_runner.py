"""Tests for the bounded subprocess runner."""

import asyncio
import os
import time

import pytest

from process_runner import CommandStatus, run_command


def test_successful_command_captures_output(make_tool):
    tool = make_tool("ok", 'echo "out $1"\necho "err" >&2\n')

    outcome = asyncio.run(run_command(tool, ["arg"]))

    assert outcome.ok
    assert outcome.status is CommandStatus.OK
    assert outcome.code == 0
    assert outcome.stdout == "out arg\n"
    assert outcome.stderr == "err\n"


def test_non_zero_exit(make_tool):
    tool = make_tool("fails", 'echo "oops" >&2\nexit 3\n')

    outcome = asyncio.run(run_command(tool, []))

    assert not outcome.ok
    assert outcome.status is CommandStatus.NON_ZERO_EXIT
    assert outcome.code == 3
    assert outcome.stderr == "oops\n"
    assert "code 3" in outcome.describe()


def test_missing_binary_is_spawn_failure(tmp_path):
    outcome = asyncio.run(run_command(str(tmp_path / "does-not-exist"), ["-x"]))

    assert outcome.status is CommandStatus.SPAWN_FAILED
    assert outcome.code == -1
    assert outcome.error


def test_non_executable_binary_is_spawn_failure(make_tool):
    tool = make_tool("noexec", "echo never\n", executable=False)

    outcome = asyncio.run(run_command(tool, []))

    assert outcome.status is CommandStatus.SPAWN_FAILED


def test_timeout_kills_process_and_keeps_partial_output(make_tool):
    tool = make_tool("slow", "echo partial\nexec sleep 30\n")

    started = time.monotonic()
    outcome = asyncio.run(run_command(tool, [], timeout=0.5))
    elapsed = time.monotonic() - started

    assert outcome.status is CommandStatus.TIMEOUT
    assert outcome.code == -1
    assert "partial" in outcome.stdout
    assert elapsed < 10


def test_timeouts_are_independent_per_invocation(make_tool):
    slow = make_tool("slow", "exec sleep 30\n")
    fast = make_tool("fast", "sleep 0.2\necho done\n")

    async def run_both():
        return await asyncio.gather(
            run_command(slow, [], timeout=0.5),
            run_command(fast, [], timeout=10),
        )

    slow_outcome, fast_outcome = asyncio.run(run_both())

    assert slow_outcome.status is CommandStatus.TIMEOUT
    assert fast_outcome.status is CommandStatus.OK
    assert fast_outcome.stdout == "done\n"


def test_cancelled_call_kills_the_process(make_tool, tmp_path):
    pid_file = tmp_path / "tool.pid"
    tool = make_tool("hangs", f'echo $$ > "{pid_file}"\nexec sleep 30\n')

    async def cancel_while_running():
        task = asyncio.ensure_future(run_command(tool, [], timeout=30))
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.05)
        # let run_command reach its wait before cancelling
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(cancel_while_running())

    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_stdin_is_not_inherited(make_tool):
    tool = make_tool("reads_stdin", 'read line\necho "read:$line"\n')

    started = time.monotonic()
    outcome = asyncio.run(run_command(tool, [], timeout=5))

    assert outcome.ok
    assert outcome.stdout == "read:\n"
    assert time.monotonic() - started < 5
