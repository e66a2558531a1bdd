"""
OpenClaw gateway process supervisor.

Owns the one backend process the wrapper runs:

    stopped --ensure_running()--> starting --> running | crashed
    running --stop()/process exit--> stopped
    crashed --ensure_running()/restart()--> starting

Concurrent ensure_running() calls share a single start attempt (one task,
awaited by every caller), so at most one gateway process is ever alive.
Only methods of GatewaySupervisor mutate its state; everything else reads
snapshot().
"""

import asyncio
import contextlib
import signal
import time
from datetime import datetime, timezone
from enum import Enum

import runcmd
import settings
from audit import audit_log
from scrub import scrub

READY_TIMEOUT = 20.0
PROBE_INTERVAL = 0.25
PROBE_CONNECT_TIMEOUT = 0.75
STOP_GRACE = 0.75
KILL_WAIT = 2.0
PORT_RELEASE_TIMEOUT = 2.0

DOCTOR_INTERVAL = 5 * 60
DOCTOR_TIMEOUT = 30.0
DOCTOR_MAX_CHARS = 50_000


class GatewayStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"


class GatewayError(Exception):
    pass


class NotConfigured(GatewayError):
    """No config artifact yet; callers should send the user to /setup."""


class StartFailed(GatewayError):
    pass


class SpawnFailure(StartFailed):
    """The OS could not create the gateway process."""


class ReadinessTimeout(StartFailed):
    """The process was created but never accepted a connection."""


class GatewayPaused(StartFailed):
    """The gateway is held stopped while its files are being replaced."""


async def probe_tcp(host: str, port: int, timeout: float = PROBE_CONNECT_TIMEOUT) -> bool:
    """True if something accepts a TCP connection on host:port.

    The gateway mainly speaks WebSocket, so a bare connect is the readiness
    signal rather than any HTTP response.
    """
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _consume_result(task: asyncio.Task):
    # Every caller may have been cancelled; don't let asyncio warn about an
    # unretrieved exception.
    if not task.cancelled():
        task.exception()


class GatewaySupervisor:
    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        token: str | None = None,
        ready_timeout: float = READY_TIMEOUT,
        probe_interval: float = PROBE_INTERVAL,
        stop_grace: float = STOP_GRACE,
        port_release_timeout: float = PORT_RELEASE_TIMEOUT,
        doctor_interval: float = DOCTOR_INTERVAL,
    ):
        self.host = host or settings.INTERNAL_GATEWAY_HOST
        self.port = port or settings.INTERNAL_GATEWAY_PORT
        self._token = token
        self.ready_timeout = ready_timeout
        self.probe_interval = probe_interval
        self.stop_grace = stop_grace
        self.port_release_timeout = port_release_timeout
        self.doctor_interval = doctor_interval

        self.status = GatewayStatus.STOPPED
        self.last_error: str | None = None
        self.last_exit: dict | None = None
        self.last_doctor_output: str | None = None
        self.last_doctor_at: str | None = None

        self._proc: asyncio.subprocess.Process | None = None
        self._starting: asyncio.Task | None = None
        self._monitors: set[asyncio.Task] = set()
        self._last_doctor_mono: float | None = None
        self._holds = 0

    @property
    def target(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def token(self) -> str:
        return self._token or settings.gateway_token()

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self.status == GatewayStatus.RUNNING and self._proc is not None

    def snapshot(self) -> dict:
        """Read-only view of the supervisor state."""
        return {
            "status": self.status.value,
            "pid": self.pid,
            "target": self.target,
            "starting": self._starting is not None,
            "paused": self._holds > 0,
            "lastError": self.last_error,
            "lastExit": dict(self.last_exit) if self.last_exit else None,
            "lastDoctorAt": self.last_doctor_at,
        }

    async def probe(self) -> bool:
        return await probe_tcp(self.host, self.port)

    # ------------------------------------------------------------
    # Start
    # ------------------------------------------------------------

    async def ensure_running(self):
        """Start the gateway unless it is already up.

        Raises NotConfigured before any spawn if there is no config artifact,
        GatewayPaused while a quiesced() block holds the gateway down, and
        StartFailed (shared by every concurrent caller) if the attempt fails.
        """
        if not settings.is_configured():
            raise NotConfigured("not configured")
        if self._holds:
            raise GatewayPaused("gateway is paused while its state is being replaced")
        if self.running:
            return
        if self._starting is None:
            self.status = GatewayStatus.STARTING
            task = asyncio.create_task(self._start_attempt(), name="gateway-start")
            task.add_done_callback(_consume_result)
            self._starting = task
        await asyncio.shield(self._starting)

    async def _start_attempt(self):
        self.last_error = None
        proc = None
        try:
            proc = await self._spawn()
            await self._wait_ready(proc)
            self.status = GatewayStatus.RUNNING
            print(f"[gateway] ready on {self.target} (pid={proc.pid})")
            audit_log("gateway_started", {"pid": proc.pid})
        except asyncio.CancelledError:
            if proc is not None:
                await self._discard(proc)
            self.status = GatewayStatus.STOPPED
            raise
        except Exception as e:
            failure = e if isinstance(e, StartFailed) else StartFailed(str(e))
            self.last_error = f"[gateway] start failure: {failure}"
            print(self.last_error)
            audit_log("gateway_start_failed", {"error": str(failure)})
            if proc is not None:
                await self._discard(proc)
            await self._run_doctor_best_effort()
            self.status = GatewayStatus.CRASHED
            if failure is e:
                raise
            raise failure from e
        finally:
            self._starting = None

    async def _spawn(self) -> asyncio.subprocess.Process:
        if self._proc is not None:
            # Never leave a previous process alive next to a new one.
            await self._discard(self._proc)

        args = [
            "gateway", "run",
            "--bind", "loopback",
            "--port", str(self.port),
            "--auth", "token",
            "--token", self.token,
        ]
        try:
            settings.STATE_DIR.mkdir(parents=True, exist_ok=True)
            settings.WORKSPACE_DIR.mkdir(parents=True, exist_ok=True)
            proc = await asyncio.create_subprocess_exec(
                settings.OPENCLAW_NODE,
                *settings.claw_args(args),
                stdin=asyncio.subprocess.DEVNULL,
                env={**settings.child_env(), "OPENCLAW_GATEWAY_TOKEN": self.token},
            )
        except OSError as e:
            raise SpawnFailure(f"spawn error: {e}") from e

        self._proc = proc
        print(f"[gateway] spawned pid={proc.pid} port={self.port}")
        monitor = asyncio.create_task(self._monitor(proc), name=f"gateway-exit-{proc.pid}")
        self._monitors.add(monitor)
        monitor.add_done_callback(self._monitors.discard)
        return proc

    async def _wait_ready(self, proc: asyncio.subprocess.Process):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        while loop.time() < deadline:
            if self._proc is not proc or proc.returncode is not None:
                raise ReadinessTimeout(f"gateway exited before becoming ready (code={proc.returncode})")
            if await probe_tcp(self.host, self.port):
                return
            await asyncio.sleep(self.probe_interval)
        raise ReadinessTimeout(f"Gateway did not become ready within {self.ready_timeout:g}s")

    async def _run_doctor_best_effort(self):
        """Collect `openclaw doctor` output, at most once per doctor_interval."""
        now = time.monotonic()
        if self._last_doctor_mono is not None and now - self._last_doctor_mono < self.doctor_interval:
            return
        self._last_doctor_mono = now
        self.last_doctor_at = _now_iso()

        try:
            result = await runcmd.run_claw(["doctor"], timeout=DOCTOR_TIMEOUT)
            output = scrub(result.output or "")
            if len(output) > DOCTOR_MAX_CHARS:
                output = output[:DOCTOR_MAX_CHARS] + "\n... (truncated)\n"
            self.last_doctor_output = output
        except Exception as e:
            self.last_doctor_output = f"doctor failed: {e}"

    # ------------------------------------------------------------
    # Exit handling
    # ------------------------------------------------------------

    async def _monitor(self, proc: asyncio.subprocess.Process):
        code = await proc.wait()
        if self._proc is not proc:
            # Handle was already released by stop()/restart().
            return

        self._proc = None
        exit_code, sig = code, None
        if code is not None and code < 0:
            exit_code = None
            with contextlib.suppress(ValueError):
                sig = signal.Signals(-code).name
        self.last_exit = {"code": exit_code, "signal": sig, "at": _now_iso()}
        print(f"[gateway] exited code={exit_code} signal={sig}")
        audit_log("gateway_exited", {"code": exit_code, "signal": sig})

        # A start attempt in progress notices the exit itself and settles the status.
        if self.status != GatewayStatus.STARTING:
            self.status = GatewayStatus.STOPPED

    # ------------------------------------------------------------
    # Stop / restart
    # ------------------------------------------------------------

    async def _discard(self, proc: asyncio.subprocess.Process):
        """Release the handle, terminate proc, kill it if it outlives the grace period."""
        # Detached first so the exit monitor doesn't report a requested stop as a crash.
        if self._proc is proc:
            self._proc = None
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.send_signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.stop_grace)
            except asyncio.TimeoutError:
                print(f"[gateway] pid={proc.pid} ignored SIGTERM, killing")
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(proc.wait(), timeout=KILL_WAIT)

    async def _wait_port_released(self):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.port_release_timeout
        while loop.time() < deadline:
            if not await probe_tcp(self.host, self.port, timeout=self.probe_interval):
                return
            await asyncio.sleep(self.probe_interval)
        print(f"[gateway] port {self.port} still accepting connections after stop; continuing")

    async def _settle_start(self):
        starting = self._starting
        if starting is not None:
            with contextlib.suppress(Exception):
                await asyncio.shield(starting)

    async def stop(self) -> bool:
        """Stop the gateway. Returns False if nothing was running."""
        await self._settle_start()
        proc = self._proc
        if proc is None:
            return False

        print(f"[gateway] stopping pid={proc.pid}")
        audit_log("gateway_stopped", {"pid": proc.pid})
        await self._discard(proc)
        if self._proc is None and self._starting is None:
            self.status = GatewayStatus.STOPPED
        await self._wait_port_released()
        return True

    @contextlib.asynccontextmanager
    async def quiesced(self):
        """Stop the gateway and keep it down for the duration of the block.

        ensure_running() raises GatewayPaused until the block exits; starting
        again afterwards is up to the caller.
        """
        self._holds += 1
        try:
            await self.stop()
            yield
        finally:
            self._holds -= 1

    async def restart(self):
        """Stop the current process (if any), then start a new one."""
        await self.stop()
        await self.ensure_running()

    async def shutdown(self):
        """Stop everything on wrapper exit."""
        starting = self._starting
        if starting is not None:
            starting.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await starting
        proc = self._proc
        if proc is not None:
            await self._discard(proc)
        self.status = GatewayStatus.STOPPED
        for monitor in list(self._monitors):
            monitor.cancel()
        for monitor in list(self._monitors):
            with contextlib.suppress(asyncio.CancelledError):
                await monitor
