"""
Bounded command execution.
"""

import os
import sys

import pytest

import runcmd


class TestRunCmd:
    @pytest.mark.asyncio
    async def test_captures_combined_output(self):
        result = await runcmd.run_cmd(
            sys.executable,
            ["-c", "import sys; print('out'); print('err', file=sys.stderr)"],
            timeout=10,
        )
        assert result.ok
        assert "out" in result.output
        assert "err" in result.output

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        result = await runcmd.run_cmd(sys.executable, ["-c", "raise SystemExit(3)"], timeout=10)
        assert result.code == 3
        assert not result.ok

    @pytest.mark.asyncio
    async def test_spawn_error_is_127(self):
        result = await runcmd.run_cmd("/nonexistent/openclaw-binary", [], timeout=5)
        assert result.code == runcmd.EXIT_SPAWN_ERROR
        assert "[spawn error]" in result.output

    @pytest.mark.asyncio
    async def test_timeout_is_124_and_process_is_reaped(self, tmp_path):
        pid_file = tmp_path / "pid"
        script = (
            "import os, sys, time\n"
            f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
            "print('started', flush=True)\n"
            "time.sleep(60)\n"
        )
        result = await runcmd.run_cmd(sys.executable, ["-c", script], timeout=1, kill_grace=1)
        assert result.code == runcmd.EXIT_TIMEOUT
        assert result.timed_out
        assert "started" in result.output
        assert "[timeout]" in result.output

        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_sigterm_ignored_gets_killed(self):
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)\n"
        )
        result = await runcmd.run_cmd(sys.executable, ["-c", script], timeout=1, kill_grace=0.5)
        assert result.code == runcmd.EXIT_TIMEOUT

    @pytest.mark.asyncio
    async def test_output_is_capped(self):
        result = await runcmd.run_cmd(
            sys.executable,
            ["-c", "import sys; sys.stdout.write('x' * 5000)"],
            timeout=10,
            max_output=1000,
        )
        assert result.ok
        assert result.truncated
        assert result.output.startswith("x" * 1000)
        assert result.output.endswith(runcmd.TRUNCATION_MARKER)


class TestRunClaw:
    @pytest.mark.asyncio
    async def test_runs_entry_with_state_env(self, wrapper_env):
        result = await runcmd.run_claw(["--version"])
        assert result.ok
        assert "openclaw" in result.output
        assert wrapper_env.calls() == [["--version"]]
