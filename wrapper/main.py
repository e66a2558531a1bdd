#!/usr/bin/env python3
"""
OpenClaw Wrapper

Responsibilities:
- Supervise the OpenClaw gateway process (spawn, readiness, restart)
- Reverse-proxy HTTP and WebSocket traffic to the gateway, injecting its token
- Password-protected admin surface under /setup (console, config editor,
  device pairing, reset)
- Backup export/import of the state and workspace directories
"""

import asyncio
import base64
import binascii
import contextlib
import os
import re
import secrets
import shutil
import sys
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask
from starlette.responses import FileResponse

import backup
import console
import runcmd
import settings
from audit import audit_log, read_audit
from gateway_proxy import GatewayProxy
from scrub import scrub
from supervisor import GatewayError, GatewaySupervisor, NotConfigured, StartFailed

BOOTSTRAP_TIMEOUT = 10 * 60
RAW_CONFIG_MAX_CHARS = 500_000
AUDIT_MAX_LIMIT = 500

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]

SETUP_REALM = 'Basic realm="OpenClaw Setup"'


# ============================================================
# Auth
# ============================================================

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": SETUP_REALM})


def require_setup_auth(authorization: Optional[str] = Header(None)):
    """
    HTTP basic auth for /setup. Only the password is checked (constant time);
    the username is ignored.
    """
    if not settings.SETUP_PASSWORD:
        raise HTTPException(
            status_code=500,
            detail="SETUP_PASSWORD is not set. Set it in the environment before using /setup.",
        )

    scheme, _, encoded = (authorization or "").partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        raise _unauthorized("Auth required")
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise _unauthorized("Invalid credentials")

    _, _, password = decoded.partition(":")
    if not secrets.compare_digest(password.encode("utf-8"), settings.SETUP_PASSWORD.encode("utf-8")):
        raise _unauthorized("Invalid password")


# ============================================================
# Request models
# ============================================================

class ConsoleRunRequest(BaseModel):
    cmd: str = ""
    arg: Optional[Union[str, int]] = None


class RawConfigRequest(BaseModel):
    content: str = ""


class DeviceApproveRequest(BaseModel):
    requestId: str = ""


class PairingApproveRequest(BaseModel):
    channel: str = ""
    code: str = ""


# ============================================================
# Startup
# ============================================================

def prepare_state_dir():
    """Create the credentials dir and restrict the state dir (best effort)."""
    try:
        (settings.STATE_DIR / "credentials").mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"[wrapper] could not create credentials dir: {e}")
    try:
        os.chmod(settings.STATE_DIR, 0o700)
    except OSError:
        pass

    print(f"[wrapper] state dir: {settings.STATE_DIR}")
    print(f"[wrapper] workspace dir: {settings.WORKSPACE_DIR}")
    print(f"[wrapper] gateway target: {settings.gateway_target()}")
    print(f"[wrapper] gateway token: {'(set)' if settings.gateway_token() else '(missing)'}")
    if not settings.SETUP_PASSWORD:
        print("[wrapper] WARNING: SETUP_PASSWORD is not set; /setup will error.")


async def run_bootstrap():
    """Run <workspace>/bootstrap.sh if the operator provided one. Failure is logged only."""
    path = settings.WORKSPACE_DIR / "bootstrap.sh"
    if not path.is_file():
        return
    print(f"[bootstrap] running: {path}")
    result = await runcmd.run_cmd("bash", [str(path)], timeout=BOOTSTRAP_TIMEOUT)
    if result.ok:
        print("[bootstrap] complete")
    else:
        tail = scrub(result.output)[-2000:]
        print(f"[bootstrap] failed (continuing): exit={result.code}\n{tail}")


async def boot(supervisor: GatewaySupervisor):
    await run_bootstrap()
    if not settings.is_configured():
        print("[wrapper] not configured yet; visit /setup")
        return
    print("[wrapper] config detected; starting gateway...")
    try:
        await supervisor.ensure_running()
        print("[wrapper] gateway ready")
    except GatewayError as e:
        print(f"[wrapper] gateway failed to start at boot: {e}")


def not_ready_hint(error: Exception, supervisor: GatewaySupervisor) -> str:
    lines = [
        "Gateway not ready.",
        str(error),
    ]
    if supervisor.last_error:
        lines.append(f"\n{supervisor.last_error}")
    lines += [
        "\nTroubleshooting:",
        "- Visit /setup/api/debug for config + gateway diagnostics",
        "- Run openclaw.doctor from the /setup console",
    ]
    return scrub("\n".join(lines)) + "\n"


# ============================================================
# Config file
# ============================================================

def write_raw_config(content: str) -> dict:
    """Write the config artifact, keeping a timestamped copy of the previous one."""
    settings.STATE_DIR.mkdir(parents=True, exist_ok=True)
    path = settings.config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    backup_path = None
    if path.exists():
        backup_path = path.with_name(f"{path.name}.bak-{settings.timestamp_slug()}")
        shutil.copy2(path, backup_path)

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    with contextlib.suppress(OSError):
        os.chmod(path, 0o600)

    audit_log("config_written", {"path": str(path), "backup": str(backup_path) if backup_path else None})
    return {"path": str(path), "backup": str(backup_path) if backup_path else None}


def delete_config_files() -> list[str]:
    removed = []
    for candidate in settings.config_candidates():
        try:
            candidate.unlink()
            removed.append(str(candidate))
        except FileNotFoundError:
            continue
    return removed


def _channel_check(output: str, token_pattern: str) -> dict:
    """Summarise `config get channels.<name>` output without leaking the token."""
    return {
        "configuredEnabled": bool(re.search(r'"enabled"\s*:\s*true', output) or re.search(r"enabled\s*[:=]\s*true", output)),
        "tokenPresent": bool(re.search(token_pattern, output)),
        "output": scrub(output),
    }


# ============================================================
# App
# ============================================================

def create_app(
    supervisor: Optional[GatewaySupervisor] = None,
    proxy: Optional[GatewayProxy] = None,
    autostart: bool = True,
) -> FastAPI:
    supervisor = supervisor or GatewaySupervisor()
    proxy = proxy or GatewayProxy(target=supervisor.target, token_provider=lambda: supervisor.token)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        prepare_state_dir()
        audit_log("wrapper_started", {"port": settings.PORT, "configured": settings.is_configured()})
        boot_task = asyncio.create_task(boot(supervisor), name="wrapper-boot") if autostart else None
        try:
            yield
        finally:
            if boot_task is not None:
                boot_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await boot_task
            await supervisor.shutdown()
            await proxy.close()
            print("[wrapper] shut down")

    app = FastAPI(title="OpenClaw Wrapper", version="1.0.0", lifespan=lifespan)
    app.state.supervisor = supervisor
    app.state.proxy = proxy

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        print(f"[wrapper] {request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
        return JSONResponse({"ok": False, "error": scrub(str(exc))}, status_code=500)

    # ============================================================
    # Health & Status
    # ============================================================

    @app.get("/healthz")
    async def healthz():
        """Public health check. Contains no secrets."""
        configured = settings.is_configured()
        reachable = await supervisor.probe() if configured else False
        snap = supervisor.snapshot()
        return {
            "ok": True,
            "wrapper": {
                "configured": configured,
                "stateDir": str(settings.STATE_DIR),
                "workspaceDir": str(settings.WORKSPACE_DIR),
            },
            "gateway": {
                "target": supervisor.target,
                "status": snap["status"],
                "reachable": reachable,
                "lastError": snap["lastError"],
                "lastExit": snap["lastExit"],
                "lastDoctorAt": snap["lastDoctorAt"],
            },
        }

    @app.get("/setup/healthz")
    async def setup_healthz():
        return {"ok": True}

    @app.get("/setup", dependencies=[Depends(require_setup_auth)])
    async def setup_index():
        """Admin landing document."""
        return {
            "ok": True,
            "configured": settings.is_configured(),
            "endpoints": {
                "status": "GET /setup/api/status",
                "debug": "GET /setup/api/debug",
                "console": "POST /setup/api/console/run",
                "configRaw": "GET|POST /setup/api/config/raw",
                "devicesPending": "GET /setup/api/devices/pending",
                "devicesApprove": "POST /setup/api/devices/approve",
                "pairingApprove": "POST /setup/api/pairing/approve",
                "reset": "POST /setup/api/reset",
                "audit": "GET /setup/api/audit",
                "export": "GET /setup/export",
                "import": "POST /setup/import",
            },
            "commands": [c.command for c in console.ConsoleCommand],
        }

    @app.get("/setup/api/status", dependencies=[Depends(require_setup_auth)])
    async def setup_status():
        version = await runcmd.run_claw(["--version"])
        return {
            "configured": settings.is_configured(),
            "gatewayTarget": supervisor.target,
            "openclawVersion": scrub(version.output.strip()),
            "gateway": supervisor.snapshot(),
        }

    @app.get("/setup/api/debug", dependencies=[Depends(require_setup_auth)])
    async def setup_debug():
        """Wrapper and gateway diagnostics. Secrets are redacted; the token is never returned."""
        version = await runcmd.run_claw(["--version"])
        telegram = await runcmd.run_claw(["config", "get", "channels.telegram"])
        discord = await runcmd.run_claw(["config", "get", "channels.discord"])

        return {
            "wrapper": {
                "python": sys.version.split()[0],
                "port": settings.PORT,
                "stateDir": str(settings.STATE_DIR),
                "workspaceDir": str(settings.WORKSPACE_DIR),
                "dataRoot": str(settings.DATA_ROOT),
                "configured": settings.is_configured(),
                "configPathResolved": str(settings.config_path()),
                "configPathCandidates": [str(p) for p in settings.config_candidates()],
                "gatewayTarget": supervisor.target,
                "gatewayTokenFromEnv": settings.token_from_env(),
                "gatewayTokenPersisted": settings.token_path().exists(),
                "gateway": supervisor.snapshot(),
                "lastDoctorOutput": supervisor.last_doctor_output,
            },
            "openclaw": {
                "entry": settings.OPENCLAW_ENTRY,
                "node": settings.OPENCLAW_NODE,
                "version": scrub(version.output.strip()),
                "channels": {
                    "telegram": {"exit": telegram.code, **_channel_check(telegram.output, r"\d{5,}:[A-Za-z0-9_-]{10,}")},
                    "discord": {"exit": discord.code, **_channel_check(discord.output, r'"token"\s*:\s*"?\S+"?|token\s*[:=]\s*\S+')},
                },
            },
        }

    @app.get("/setup/api/audit", dependencies=[Depends(require_setup_auth)])
    async def setup_audit(limit: int = 50):
        """Recent audit log entries, newest first."""
        limit = max(1, min(AUDIT_MAX_LIMIT, limit))
        return {"entries": read_audit(limit)}

    # ============================================================
    # Console
    # ============================================================

    @app.post("/setup/api/console/run", dependencies=[Depends(require_setup_auth)])
    async def console_run(req: ConsoleRunRequest):
        arg = None if req.arg is None else str(req.arg)
        try:
            result = await console.run_console_command(supervisor, req.cmd, arg)
        except console.ConsoleError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        except Exception as e:
            print(f"[console] {req.cmd} failed: {e}")
            return JSONResponse({"ok": False, "error": scrub(str(e))}, status_code=500)
        return JSONResponse({"ok": result.ok, "output": result.output}, status_code=result.status_code)

    @app.get("/setup/api/devices/pending", dependencies=[Depends(require_setup_auth)])
    async def devices_pending():
        result = await console.pending_devices()
        return JSONResponse(
            {"ok": result.ok, "requestIds": result.request_ids, "output": result.output},
            status_code=result.status_code,
        )

    @app.post("/setup/api/devices/approve", dependencies=[Depends(require_setup_auth)])
    async def devices_approve(req: DeviceApproveRequest):
        try:
            result = await console.approve_device(req.requestId)
        except console.ConsoleError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        return JSONResponse({"ok": result.ok, "output": result.output}, status_code=result.status_code)

    @app.post("/setup/api/pairing/approve", dependencies=[Depends(require_setup_auth)])
    async def pairing_approve(req: PairingApproveRequest):
        try:
            result = await console.approve_pairing(req.channel, req.code)
        except console.ConsoleError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        return JSONResponse({"ok": result.ok, "output": result.output}, status_code=result.status_code)

    # ============================================================
    # Config & Reset
    # ============================================================

    @app.get("/setup/api/config/raw", dependencies=[Depends(require_setup_auth)])
    async def config_raw_get():
        try:
            artifact = settings.config_artifact()
            content = artifact.path.read_text(encoding="utf-8") if artifact.exists else ""
            return {"ok": True, "path": str(artifact.path), "exists": artifact.exists, "content": content}
        except (OSError, UnicodeDecodeError) as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=500)

    @app.post("/setup/api/config/raw", dependencies=[Depends(require_setup_auth)])
    async def config_raw_save(req: RawConfigRequest):
        """Save the raw config. Stops the gateway, writes the file, starts it again."""
        if len(req.content) > RAW_CONFIG_MAX_CHARS:
            return JSONResponse({"ok": False, "error": "Config too large"}, status_code=413)

        try:
            async with supervisor.quiesced():
                written = await asyncio.to_thread(write_raw_config, req.content)
        except OSError as e:
            audit_log("config_write_error", {"error": str(e)})
            if settings.is_configured():
                with contextlib.suppress(GatewayError):
                    await supervisor.ensure_running()
            return JSONResponse({"ok": False, "error": str(e)}, status_code=500)

        response = {"ok": True, **written, "restarted": False}
        if settings.is_configured():
            try:
                await supervisor.restart()
                response["restarted"] = True
            except GatewayError as e:
                response["gatewayError"] = scrub(str(e))
        return response

    @app.post("/setup/api/reset", dependencies=[Depends(require_setup_auth)])
    async def setup_reset():
        """Stop the gateway and delete the config file(s). Credentials and workspace are kept."""
        try:
            await supervisor.stop()
            removed = delete_config_files()
        except OSError as e:
            return PlainTextResponse(str(e), status_code=500)
        audit_log("config_reset", {"removed": removed})
        return PlainTextResponse("OK - stopped gateway and deleted config file(s). You can rerun setup now.\n")

    # ============================================================
    # Backup
    # ============================================================

    @app.get("/setup/export", dependencies=[Depends(require_setup_auth)])
    async def setup_export():
        try:
            path, filename = await backup.create_export()
        except OSError as e:
            print(f"[export] failed: {e}")
            return PlainTextResponse(f"Export failed: {e}\n", status_code=500)
        return FileResponse(
            str(path),
            media_type="application/gzip",
            filename=filename,
            background=BackgroundTask(lambda: path.unlink(missing_ok=True)),
        )

    @app.post("/setup/import", dependencies=[Depends(require_setup_auth)])
    async def setup_import(request: Request):
        try:
            content_length = int(request.headers.get("content-length", ""))
        except ValueError:
            content_length = None

        try:
            summary = await backup.import_backup(supervisor, request.stream(), content_length)
        except backup.ImportRejected as e:
            return PlainTextResponse(str(e), status_code=e.status_code)
        except Exception as e:
            print(f"[import] {type(e).__name__}: {e}")
            return PlainTextResponse(f"{e}\n", status_code=500)

        lines = [f"OK - imported {summary.extracted} entries into {settings.DATA_ROOT}."]
        if summary.skipped:
            lines.append(f"Skipped {len(summary.skipped)} unsafe entries.")
        if summary.restarted:
            lines.append("Gateway restarted.")
        if summary.warning:
            lines.append(summary.warning)
        return PlainTextResponse("\n".join(lines) + "\n")

    # ============================================================
    # Proxy (everything else)
    # ============================================================

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy_http(path: str, request: Request):
        if request.url.path == "/setup" or request.url.path.startswith("/setup/"):
            return PlainTextResponse("Not found\n", status_code=404)
        if not settings.is_configured():
            return RedirectResponse("/setup", status_code=302)
        try:
            await supervisor.ensure_running()
        except NotConfigured:
            return RedirectResponse("/setup", status_code=302)
        except StartFailed as e:
            return PlainTextResponse(not_ready_hint(e, supervisor), status_code=503)
        return await proxy.forward(request)

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        # Closing before accept rejects the upgrade.
        if websocket.url.path == "/setup" or websocket.url.path.startswith("/setup/"):
            await websocket.close(code=1008)
            return
        if not settings.is_configured():
            await websocket.close(code=1008)
            return
        try:
            await supervisor.ensure_running()
        except GatewayError as e:
            print(f"[proxy] websocket rejected, gateway not ready: {e}")
            await websocket.close(code=1011)
            return
        await proxy.forward_websocket(websocket)

    return app


def run():
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    run()
