"""
Bounded execution of short-lived helper commands.

Output (stdout and stderr combined) is captured up to MAX_OUTPUT_BYTES.
A command that outlives its timeout is sent SIGTERM, then SIGKILL after
KILL_GRACE seconds, and is always reaped before run_cmd returns.
"""

import asyncio
import contextlib
from dataclasses import dataclass

import settings

DEFAULT_TIMEOUT = 120.0
KILL_GRACE = 2.0
MAX_OUTPUT_BYTES = 1024 * 1024

EXIT_TIMEOUT = 124
EXIT_SPAWN_ERROR = 127

TRUNCATION_MARKER = "\n... (truncated)\n"


@dataclass
class CommandResult:
    code: int
    output: str
    timed_out: bool = False
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.code == 0


async def _collect(stream: asyncio.StreamReader, limit: int) -> tuple[bytes, bool]:
    """Read a stream to EOF, keeping at most `limit` bytes."""
    chunks = []
    size = 0
    truncated = False
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        if size < limit:
            keep = chunk[: limit - size]
            chunks.append(keep)
            size += len(keep)
            if len(keep) < len(chunk):
                truncated = True
        else:
            truncated = True
    return b"".join(chunks), truncated


async def _terminate(proc: asyncio.subprocess.Process, grace: float):
    """SIGTERM, then SIGKILL if the process is still alive after `grace`."""
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


async def run_cmd(
    cmd: str,
    args: list[str],
    timeout: float = DEFAULT_TIMEOUT,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    max_output: int = MAX_OUTPUT_BYTES,
    kill_grace: float = KILL_GRACE,
) -> CommandResult:
    """Run a command and return its exit code and combined output. Never raises for
    spawn failures or timeouts; those come back as exit codes 127 and 124."""
    try:
        proc = await asyncio.create_subprocess_exec(
            cmd,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env if env is not None else settings.child_env(),
            cwd=cwd,
        )
    except OSError as e:
        return CommandResult(code=EXIT_SPAWN_ERROR, output=f"\n[spawn error] {e}\n")

    reader = asyncio.create_task(_collect(proc.stdout, max_output))
    timed_out = False
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        await _terminate(proc, kill_grace)
    except asyncio.CancelledError:
        await _terminate(proc, kill_grace)
        reader.cancel()
        raise

    # Grandchildren may keep the pipe open after the process itself is gone.
    try:
        data, truncated = await asyncio.wait_for(reader, timeout=kill_grace)
    except asyncio.TimeoutError:
        data, truncated = b"", False

    output = data.decode("utf-8", errors="replace")
    if truncated:
        output += TRUNCATION_MARKER
    if timed_out:
        output += f"\n[timeout] Command exceeded {timeout:g}s and was terminated.\n"
        return CommandResult(code=EXIT_TIMEOUT, output=output, timed_out=True, truncated=truncated)

    code = proc.returncode if proc.returncode is not None else 0
    return CommandResult(code=code, output=output, truncated=truncated)


async def run_claw(args: list[str], timeout: float = DEFAULT_TIMEOUT) -> CommandResult:
    """Run the OpenClaw CLI (`node entry.js <args>`) with the wrapper's state dirs."""
    return await run_cmd(settings.OPENCLAW_NODE, settings.claw_args(args), timeout=timeout)
