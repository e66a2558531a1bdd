"""
Regex scrubbing engine for redacting secrets from command output.

Everything the admin surface returns from an OpenClaw command passes
through scrub() first. Built-in rules cover the common key shapes; extra
rules can be supplied as JSON in SCRUB_RULES_PATH.
"""

import json
import os
import re
from pathlib import Path

SCRUB_RULES_PATH = os.environ.get("SCRUB_RULES_PATH", "").strip()

PLACEHOLDER = "[REDACTED]"

BUILTIN_RULES = [
    {
        "id": "api-key-sk",
        "name": "API Keys (sk-...)",
        "pattern": r"sk-[A-Za-z0-9_-]{10,}",
        "replacement": PLACEHOLDER,
    },
    {
        "id": "github-token",
        "name": "GitHub OAuth tokens (gho_...)",
        "pattern": r"gho_[A-Za-z0-9_]{10,}",
        "replacement": PLACEHOLDER,
    },
    {
        "id": "slack-token",
        "name": "Slack tokens (xoxb-, xoxp-, ...)",
        "pattern": r"xox[baprs]-[A-Za-z0-9-]{10,}",
        "replacement": PLACEHOLDER,
    },
    {
        "id": "telegram-bot-token",
        "name": "Telegram bot tokens (123456:ABC...)",
        "pattern": r"\d{5,}:[A-Za-z0-9_-]{10,}",
        "replacement": PLACEHOLDER,
    },
    {
        "id": "aa-colon-token",
        "name": "AA...:... tokens",
        "pattern": r"AA[A-Za-z0-9_-]{10,}:\S{10,}",
        "replacement": PLACEHOLDER,
    },
    {
        "id": "bearer-token",
        "name": "Bearer Tokens",
        "pattern": r"(?i)(Bearer\s+)[A-Za-z0-9_\-.]{20,}",
        "replacement": r"\1" + PLACEHOLDER,
    },
]

_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
MAX_PATTERN_LEN = 1000
MAX_REPLACEMENT_LEN = 500
MAX_RULES = 100

_compiled: tuple[tuple, list[tuple[re.Pattern, str]]] | None = None


def _validate_rule(rule: dict) -> str | None:
    """Validate a rule dict. Returns error message or None if valid."""
    rule_id = rule.get("id", "")
    if not rule_id or not isinstance(rule_id, str):
        return "Rule must have a string 'id'"
    if not _ID_RE.match(rule_id):
        return f"Rule ID '{rule_id}' contains invalid characters (use a-z, 0-9, -, _)"
    pattern = rule.get("pattern", "")
    if not pattern or not isinstance(pattern, str):
        return "Rule must have a 'pattern'"
    if len(pattern) > MAX_PATTERN_LEN:
        return f"Pattern too long (max {MAX_PATTERN_LEN})"
    try:
        re.compile(pattern)
    except re.error as e:
        return f"Invalid regex pattern: {e}"
    replacement = rule.get("replacement", PLACEHOLDER)
    if not isinstance(replacement, str) or len(replacement) > MAX_REPLACEMENT_LEN:
        return f"Replacement must be a string (max {MAX_REPLACEMENT_LEN})"
    return None


def load_rules() -> list[dict]:
    """Built-in rules followed by valid, enabled extra rules from disk."""
    rules = [dict(rule, builtin=True) for rule in BUILTIN_RULES]
    if not SCRUB_RULES_PATH:
        return rules

    path = Path(SCRUB_RULES_PATH)
    if not path.exists():
        return rules
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"[scrub] ignoring unreadable rules file {path}: {e}")
        return rules

    extra = data.get("rules", []) if isinstance(data, dict) else []
    for rule in extra[:MAX_RULES]:
        if not isinstance(rule, dict) or not rule.get("enabled", True):
            continue
        error = _validate_rule(rule)
        if error:
            print(f"[scrub] skipping rule: {error}")
            continue
        rules.append({
            "id": rule["id"],
            "name": rule.get("name", rule["id"]),
            "pattern": rule["pattern"],
            "replacement": rule.get("replacement", PLACEHOLDER),
            "builtin": False,
        })
    return rules


def _rules_key() -> tuple:
    """Identity of the rules file as of now; changes when it is edited."""
    if not SCRUB_RULES_PATH:
        return ("",)
    try:
        st = os.stat(SCRUB_RULES_PATH)
    except OSError:
        return (SCRUB_RULES_PATH, None)
    return (SCRUB_RULES_PATH, st.st_mtime_ns, st.st_size)


def _compile_rules() -> list[tuple[re.Pattern, str]]:
    global _compiled
    key = _rules_key()
    if _compiled is None or _compiled[0] != key:
        _compiled = (key, [(re.compile(rule["pattern"]), rule["replacement"]) for rule in load_rules()])
    return _compiled[1]


def scrub(text: str) -> str:
    """Apply all redaction rules to a string."""
    if not text:
        return text
    for pattern, replacement in _compile_rules():
        text = pattern.sub(replacement, text)
    return text
