"""
Allowlisted admin console.

The console can run exactly the members of ConsoleCommand. Anything else
is rejected before a process is spawned, and every free-form argument is
checked against a strict pattern (or clamped to a numeric range) before it
is placed into an argv. Output is scrubbed before it leaves the wrapper.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

import runcmd
from audit import audit_log
from scrub import scrub
from supervisor import GatewaySupervisor, NotConfigured, StartFailed

# A leading "-" would be parsed as a flag by the CLI.
IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
CONFIG_PATH_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
MAX_ARG_LEN = 200

LOG_LINES_DEFAULT = 200
LOG_LINES_MIN = 50
LOG_LINES_MAX = 1000

PAIRING_CHANNELS = ["discord", "telegram", "whatsapp", "slack", "signal", "imessage"]

_REQUEST_ID_PATTERNS = [
    re.compile(r"requestId\s*(?:=|:)\s*([A-Za-z0-9_-]{6,})"),
    re.compile(r'"requestId"\s*:\s*"([A-Za-z0-9_-]{6,})"'),
]


class ConsoleError(Exception):
    pass


class CommandNotAllowed(ConsoleError):
    pass


class InvalidArgument(ConsoleError):
    pass


class ArgRule(Enum):
    NONE = "none"
    LINES = "lines"
    IDENTIFIER = "identifier"
    CONFIG_PATH = "config-path"


class ConsoleCommand(Enum):
    """Closed set of console operations: (name, argument rule, argument label, CLI argv).

    Members without an argv are handled by the supervisor; "{arg}" in an argv
    is replaced by the validated argument.
    """

    GATEWAY_RESTART = ("gateway.restart", ArgRule.NONE, "", None)
    GATEWAY_STOP = ("gateway.stop", ArgRule.NONE, "", None)
    GATEWAY_START = ("gateway.start", ArgRule.NONE, "", None)

    VERSION = ("openclaw.version", ArgRule.NONE, "", ("--version",))
    STATUS = ("openclaw.status", ArgRule.NONE, "", ("status",))
    HEALTH = ("openclaw.health", ArgRule.NONE, "", ("health",))
    DOCTOR = ("openclaw.doctor", ArgRule.NONE, "", ("doctor",))
    LOGS_TAIL = ("openclaw.logs.tail", ArgRule.LINES, "line count", ("logs", "--tail", "{arg}"))
    CONFIG_GET = ("openclaw.config.get", ArgRule.CONFIG_PATH, "config path", ("config", "get", "{arg}"))

    DEVICES_LIST = ("openclaw.devices.list", ArgRule.NONE, "", ("devices", "list"))
    DEVICES_APPROVE = ("openclaw.devices.approve", ArgRule.IDENTIFIER, "device request ID", ("devices", "approve", "{arg}"))

    PLUGINS_LIST = ("openclaw.plugins.list", ArgRule.NONE, "", ("plugins", "list"))
    PLUGINS_ENABLE = ("openclaw.plugins.enable", ArgRule.IDENTIFIER, "plugin name", ("plugins", "enable", "{arg}"))

    def __init__(self, command: str, rule: ArgRule, label: str, argv: tuple | None):
        self.command = command
        self.rule = rule
        self.label = label
        self.argv_template = argv

    @classmethod
    def parse(cls, name: str) -> "ConsoleCommand":
        name = (name or "").strip()
        for member in cls:
            if member.command == name:
                return member
        raise CommandNotAllowed("Command not allowed")

    @property
    def supervised(self) -> bool:
        return self.argv_template is None

    def validate(self, raw: str | None) -> str | None:
        """Return the argument to interpolate, or raise InvalidArgument."""
        value = (raw or "").strip()
        if self.rule is ArgRule.NONE:
            return None
        if self.rule is ArgRule.LINES:
            return str(clamp_log_lines(value))
        if self.rule is ArgRule.CONFIG_PATH:
            return validate_token(value, self.label, CONFIG_PATH_RE)
        return validate_token(value, self.label, IDENTIFIER_RE)

    def argv(self, arg: str | None) -> list[str]:
        return [arg if part == "{arg}" else part for part in self.argv_template]


def validate_token(value: str, label: str, pattern: re.Pattern = IDENTIFIER_RE) -> str:
    """Check a caller-supplied identifier before it goes anywhere near a command line."""
    value = (value or "").strip()
    if not value:
        raise InvalidArgument(f"Missing {label}")
    if len(value) > MAX_ARG_LEN or not pattern.match(value):
        raise InvalidArgument(f"Invalid {label}")
    return value


def clamp_log_lines(value: str) -> int:
    if not value:
        return LOG_LINES_DEFAULT
    if not (value.isascii() and value.isdigit()) or len(value) > 9:
        raise InvalidArgument("Invalid line count")
    return max(LOG_LINES_MIN, min(LOG_LINES_MAX, int(value)))


def validate_channel(channel: str) -> str:
    channel = (channel or "").strip()
    if channel not in PAIRING_CHANNELS:
        raise InvalidArgument(f"Invalid channel. Valid: {', '.join(PAIRING_CHANNELS)}")
    return channel


def extract_device_request_ids(text: str) -> list[str]:
    """Pull pending device request ids out of `devices list` output."""
    found = []
    for pattern in _REQUEST_ID_PATTERNS:
        for match in pattern.finditer(text or ""):
            if match.group(1) not in found:
                found.append(match.group(1))
    return found


@dataclass
class ConsoleResult:
    ok: bool
    output: str
    status_code: int = 200
    request_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_command(cls, result: runcmd.CommandResult) -> "ConsoleResult":
        """Non-zero exit is reported as ok=False with HTTP 500."""
        return cls(ok=result.ok, output=scrub(result.output), status_code=200 if result.ok else 500)


async def _run_supervised(supervisor: GatewaySupervisor, command: ConsoleCommand) -> ConsoleResult:
    if command is ConsoleCommand.GATEWAY_STOP:
        stopped = await supervisor.stop()
        return ConsoleResult(True, "Gateway stopped (wrapper-managed).\n" if stopped else "Gateway was not running.\n")

    try:
        if command is ConsoleCommand.GATEWAY_RESTART:
            await supervisor.restart()
            return ConsoleResult(True, "Gateway restarted (wrapper-managed).\n")
        await supervisor.ensure_running()
        return ConsoleResult(True, "Gateway started.\n")
    except NotConfigured as e:
        return ConsoleResult(False, f"Gateway not started: {e}\n")
    except StartFailed as e:
        return ConsoleResult(False, scrub(f"Gateway not started: {e}\n{supervisor.last_error or ''}\n"))


async def run_console_command(supervisor: GatewaySupervisor, name: str, arg: str | None = None) -> ConsoleResult:
    """Run one allowlisted command.

    Raises CommandNotAllowed / InvalidArgument before anything is executed.
    """
    command = ConsoleCommand.parse(name)
    value = command.validate(arg)
    audit_log("console_command", {"cmd": command.command, "arg": value})

    if command.supervised:
        return await _run_supervised(supervisor, command)

    result = await runcmd.run_claw(command.argv(value))
    return ConsoleResult.from_command(result)


# ============================================================
# Devices & Pairing
# ============================================================

async def pending_devices() -> ConsoleResult:
    """`devices list`, scrubbed, with the request ids found in it."""
    result = ConsoleResult.from_command(await runcmd.run_claw(["devices", "list"]))
    result.request_ids = extract_device_request_ids(result.output)
    return result


async def approve_device(request_id: str) -> ConsoleResult:
    request_id = validate_token(request_id, "device request ID")
    result = ConsoleResult.from_command(await runcmd.run_claw(["devices", "approve", request_id]))
    audit_log("device_approve", {"requestId": request_id, "success": result.ok})
    return result


async def approve_pairing(channel: str, code: str) -> ConsoleResult:
    """Approve a DM pairing code for a messaging channel."""
    if not (channel or "").strip() or not (code or "").strip():
        raise InvalidArgument("Missing channel or code")
    channel = validate_channel(channel)
    code = validate_token(code, "pairing code")
    result = ConsoleResult.from_command(await runcmd.run_claw(["pairing", "approve", channel, code]))
    audit_log("pairing_approve", {"channel": channel, "success": result.ok})
    return result
