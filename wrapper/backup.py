"""
Backup export and import of the OpenClaw state and workspace directories.

Exports are gzip tar archives with forward-slash relative paths. When both
roots live under DATA_ROOT the archive is relative to DATA_ROOT, so it
restores to the same layout (dot-directories included). Otherwise each
root is stored under its absolute path without the leading "/".

Imports are only accepted when both roots live under DATA_ROOT. They are
additive: entries are extracted one by one into DATA_ROOT, nothing
existing is deleted, and entries with unsafe paths are skipped.
"""

import asyncio
import gzip
import os
import re
import tarfile
import tempfile
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

import settings
from audit import audit_log
from supervisor import GatewayError, GatewaySupervisor

MAX_IMPORT_BYTES = 250 * 1024 * 1024

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


class ImportRejected(Exception):
    status_code = 400


class ImportNotSupported(ImportRejected):
    pass


class PayloadTooLarge(ImportRejected):
    status_code = 413


class EmptyArchive(ImportRejected):
    pass


def is_safe_archive_path(name: str) -> bool:
    """Relative, no root marker, no drive prefix, no '..' segment."""
    if not name or "\x00" in name:
        return False
    if name.startswith("/") or name.startswith("\\"):
        return False
    if _DRIVE_RE.match(name):
        return False
    if ".." in name.replace("\\", "/").split("/"):
        return False
    return True


def is_safe_member(member: tarfile.TarInfo) -> bool:
    if not is_safe_archive_path(member.name):
        return False
    if member.issym() or member.islnk():
        return is_safe_archive_path(member.linkname)
    return member.isfile() or member.isdir()


def is_under(path: Path, root: Path) -> bool:
    path = Path(os.path.abspath(path))
    root = Path(os.path.abspath(root))
    return path == root or root in path.parents


def backup_filename(now: datetime | None = None) -> str:
    return f"openclaw-backup-{settings.timestamp_slug(now)}.tar.gz"


# ============================================================
# Export
# ============================================================

def export_layout() -> tuple[Path, list[str]]:
    """Return (base directory, member names relative to it) for an export."""
    state = Path(os.path.abspath(settings.STATE_DIR))
    workspace = Path(os.path.abspath(settings.WORKSPACE_DIR))
    data_root = Path(os.path.abspath(settings.DATA_ROOT))

    roots = [state, workspace]
    if is_under(workspace, state):
        roots = [state]
    elif is_under(state, workspace):
        roots = [workspace]

    if all(is_under(root, data_root) for root in roots):
        return data_root, [root.relative_to(data_root).as_posix() or "." for root in roots]
    return Path("/"), [root.as_posix().lstrip("/") for root in roots]


def write_export(dest: Path) -> Path:
    """Write the export archive to dest (blocking)."""
    settings.STATE_DIR.mkdir(parents=True, exist_ok=True)
    settings.WORKSPACE_DIR.mkdir(parents=True, exist_ok=True)
    base, names = export_layout()
    stamp = int(datetime.now(timezone.utc).timestamp())

    def portable(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        info.mtime = stamp
        return info

    with tarfile.open(dest, "w:gz", format=tarfile.PAX_FORMAT) as tar:
        for name in names:
            tar.add(base / name, arcname=name, filter=portable)
    return dest


async def create_export() -> tuple[Path, str]:
    """Build an export in a temp file. Returns (path, download filename)."""
    fd, tmp = tempfile.mkstemp(prefix="openclaw-export-", suffix=".tar.gz")
    os.close(fd)
    path = Path(tmp)
    try:
        await asyncio.to_thread(write_export, path)
    except Exception:
        path.unlink(missing_ok=True)
        raise
    filename = backup_filename()
    audit_log("backup_exported", {"filename": filename, "size": path.stat().st_size})
    return path, filename


# ============================================================
# Import
# ============================================================

@dataclass
class ImportSummary:
    extracted: int = 0
    skipped: list[str] = field(default_factory=list)
    restarted: bool = False
    warning: str | None = None


def check_import_supported():
    if not (is_under(settings.STATE_DIR, settings.DATA_ROOT) and is_under(settings.WORKSPACE_DIR, settings.DATA_ROOT)):
        raise ImportNotSupported(
            f"Import is only supported when OPENCLAW_STATE_DIR and OPENCLAW_WORKSPACE_DIR "
            f"are under {settings.DATA_ROOT}.\n"
        )


async def receive_upload(chunks: AsyncIterator[bytes], dest: Path, limit: int = MAX_IMPORT_BYTES) -> int:
    """Spool an upload to dest, aborting as soon as it exceeds limit."""
    total = 0
    with open(dest, "wb") as f:
        async for chunk in chunks:
            total += len(chunk)
            if total > limit:
                raise PayloadTooLarge("Payload too large\n")
            f.write(chunk)
    return total


def extract_archive(archive: Path, root: Path) -> ImportSummary:
    """Extract safe entries of a gzip tar into root, one at a time (blocking)."""
    summary = ImportSummary()
    root.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, "r:gz") as tar:
            for member in tar:
                if not is_safe_member(member):
                    summary.skipped.append(member.name)
                    continue
                try:
                    tar.extract(member, root, filter="data")
                except gzip.BadGzipFile:
                    raise
                except (tarfile.FilterError, OSError) as e:
                    # e.g. a file entry where a directory already exists
                    print(f"[import] skipped {member.name}: {e}")
                    summary.skipped.append(member.name)
                    continue
                summary.extracted += 1
    except (tarfile.ReadError, gzip.BadGzipFile, zlib.error, EOFError) as e:
        raise ImportRejected(f"Not a valid .tar.gz archive: {e}\n") from e

    if summary.extracted == 0:
        raise EmptyArchive("Archive contains no importable entries\n")
    return summary


async def import_backup(
    supervisor: GatewaySupervisor,
    chunks: AsyncIterator[bytes],
    content_length: int | None = None,
    limit: int = MAX_IMPORT_BYTES,
) -> ImportSummary:
    """Restore an uploaded export into DATA_ROOT.

    The gateway is held stopped for the whole extraction and restarted
    afterwards when a config is present, whether or not extraction succeeded.
    """
    check_import_supported()
    if content_length is not None and content_length > limit:
        raise PayloadTooLarge("Payload too large\n")

    fd, tmp = tempfile.mkstemp(prefix="openclaw-import-", suffix=".tar.gz")
    os.close(fd)
    upload = Path(tmp)
    try:
        size = await receive_upload(chunks, upload, limit)
        if size == 0:
            raise EmptyArchive("Empty body\n")

        audit_log("backup_import_started", {"size": size})
        try:
            async with supervisor.quiesced():
                summary = await asyncio.to_thread(extract_archive, upload, Path(settings.DATA_ROOT))
        finally:
            restarted, warning = await _restart_if_configured(supervisor)
    finally:
        upload.unlink(missing_ok=True)

    if summary.skipped:
        print(f"[import] skipped {len(summary.skipped)} entries")
    summary.restarted, summary.warning = restarted, warning
    audit_log("backup_imported", {
        "extracted": summary.extracted,
        "skipped": len(summary.skipped),
        "restarted": summary.restarted,
    })
    return summary


async def _restart_if_configured(supervisor: GatewaySupervisor) -> tuple[bool, str | None]:
    if not settings.is_configured():
        return False, None
    try:
        await supervisor.restart()
        return True, None
    except GatewayError as e:
        print(f"[import] gateway failed to restart: {e}")
        return False, f"Gateway failed to restart: {e}"
