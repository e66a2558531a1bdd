"""
Audit trail for administrative actions.

One JSON object per line in settings.AUDIT_LOG, mirrored to stdout.
"""

import json
from datetime import datetime, timezone

import settings


def audit_log(event: str, details: dict | None = None):
    """Append an event to the audit log."""
    details = details or {}
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        **details,
    }
    print(f"[audit] {event}: {details}")
    try:
        settings.AUDIT_LOG.parent.mkdir(parents=True, exist_ok=True)
        with open(settings.AUDIT_LOG, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except OSError as e:
        print(f"[audit] write failed: {e}")


def read_audit(limit: int = 50) -> list[dict]:
    """Return audit entries, newest first."""
    if not settings.AUDIT_LOG.exists():
        return []

    entries = []
    with open(settings.AUDIT_LOG) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue

    entries.reverse()
    return entries[:limit]
