"""
Allowlisted admin console.
"""

import pytest

import console
import runcmd
from console import CommandNotAllowed, ConsoleCommand, InvalidArgument
from supervisor import GatewaySupervisor


@pytest.fixture
def no_spawn(monkeypatch):
    """Fail the test if anything tries to run the CLI."""
    calls = []

    async def refuse(args, timeout=runcmd.DEFAULT_TIMEOUT):
        calls.append(args)
        raise AssertionError(f"unexpected spawn: {args}")

    monkeypatch.setattr(runcmd, "run_claw", refuse)
    return calls


class TestAllowlist:
    def test_closed_set(self):
        assert {c.command for c in ConsoleCommand} == {
            "gateway.restart", "gateway.stop", "gateway.start",
            "openclaw.version", "openclaw.status", "openclaw.health", "openclaw.doctor",
            "openclaw.logs.tail", "openclaw.config.get",
            "openclaw.devices.list", "openclaw.devices.approve",
            "openclaw.plugins.list", "openclaw.plugins.enable",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["rm -rf /", "openclaw.onboard", "", "OPENCLAW.VERSION", "gateway.run"])
    async def test_unknown_command_spawns_nothing(self, wrapper_env, no_spawn, name):
        with pytest.raises(CommandNotAllowed):
            await console.run_console_command(GatewaySupervisor(), name)
        assert no_spawn == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cmd,arg", [
        ("openclaw.devices.approve", "--all"),
        ("openclaw.devices.approve", "abc;rm -rf /"),
        ("openclaw.devices.approve", ""),
        ("openclaw.plugins.enable", "../evil"),
        ("openclaw.config.get", "$(whoami)"),
        ("openclaw.config.get", ""),
        ("openclaw.logs.tail", "ten"),
        ("openclaw.logs.tail", "-5"),
    ])
    async def test_invalid_argument_spawns_nothing(self, wrapper_env, no_spawn, cmd, arg):
        with pytest.raises(InvalidArgument):
            await console.run_console_command(GatewaySupervisor(), cmd, arg)
        assert no_spawn == []


class TestArguments:
    @pytest.mark.parametrize("raw,expected", [
        ("", 200),
        ("10", 50),
        ("300", 300),
        ("99999", 1000),
    ])
    def test_log_lines_are_clamped(self, raw, expected):
        assert console.clamp_log_lines(raw) == expected

    def test_unicode_digits_rejected(self):
        with pytest.raises(InvalidArgument):
            console.clamp_log_lines("١٢٣")

    def test_argv_interpolation(self):
        command = ConsoleCommand.parse("openclaw.config.get")
        assert command.argv(command.validate("channels.telegram")) == ["config", "get", "channels.telegram"]

    def test_channel_must_be_known(self):
        assert console.validate_channel("telegram") == "telegram"
        with pytest.raises(InvalidArgument):
            console.validate_channel("myspace")


class TestRequestIds:
    def test_extracts_all_forms_once(self):
        text = 'requestId=abc123def\n{"requestId": "xyz789uvw"}\nrequestId: abc123def\nrequestId=short'
        assert console.extract_device_request_ids(text) == ["abc123def", "xyz789uvw"]

    def test_nothing_found(self):
        assert console.extract_device_request_ids("No pending devices") == []


class TestExecution:
    @pytest.mark.asyncio
    async def test_version(self, wrapper_env):
        result = await console.run_console_command(GatewaySupervisor(), "openclaw.version")
        assert result.ok
        assert result.status_code == 200
        assert "openclaw 2026.1.0-fake" in result.output

    @pytest.mark.asyncio
    async def test_logs_tail_uses_clamped_count(self, wrapper_env):
        result = await console.run_console_command(GatewaySupervisor(), "openclaw.logs.tail", "5")
        assert result.output.strip() == "tail 50"
        assert wrapper_env.calls()[-1] == ["logs", "--tail", "50"]

    @pytest.mark.asyncio
    async def test_output_is_redacted(self, wrapper_env):
        result = await console.run_console_command(GatewaySupervisor(), "openclaw.doctor")
        assert "sk-abcdefghijklmnopqrstuv" not in result.output
        assert "[REDACTED]" in result.output

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_500(self, wrapper_env, monkeypatch):
        async def failing(args, timeout=runcmd.DEFAULT_TIMEOUT):
            return runcmd.CommandResult(code=1, output="bad token sk-abcdefghijklmnop")

        monkeypatch.setattr(runcmd, "run_claw", failing)
        result = await console.run_console_command(GatewaySupervisor(), "openclaw.status")
        assert not result.ok
        assert result.status_code == 500
        assert "sk-abcdefghijklmnop" not in result.output

    @pytest.mark.asyncio
    async def test_gateway_start_when_unconfigured(self, wrapper_env):
        result = await console.run_console_command(GatewaySupervisor(), "gateway.start")
        assert result.ok is False
        assert "not configured" in result.output
        assert wrapper_env.calls() == []

    @pytest.mark.asyncio
    async def test_gateway_stop_when_idle(self, wrapper_env):
        result = await console.run_console_command(GatewaySupervisor(), "gateway.stop")
        assert result.ok
        assert "not running" in result.output


class TestDevicesAndPairing:
    @pytest.mark.asyncio
    async def test_pending_devices(self, wrapper_env):
        result = await console.pending_devices()
        assert result.ok
        assert result.request_ids == ["abc123def", "xyz789uvw"]
        assert "123456:ABCDEFGHIJKLMNOPQRST" not in result.output

    @pytest.mark.asyncio
    async def test_approve_device(self, wrapper_env):
        result = await console.approve_device("abc123def")
        assert result.ok
        assert wrapper_env.calls()[-1] == ["devices", "approve", "abc123def"]

    @pytest.mark.asyncio
    async def test_approve_pairing(self, wrapper_env):
        result = await console.approve_pairing("telegram", "ABCD1234")
        assert result.ok
        assert wrapper_env.calls()[-1] == ["pairing", "approve", "telegram", "ABCD1234"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("channel,code", [("", "ABCD"), ("telegram", ""), ("irc", "ABCD"), ("telegram", "AB CD")])
    async def test_bad_pairing_input(self, wrapper_env, no_spawn, channel, code):
        with pytest.raises(InvalidArgument):
            await console.approve_pairing(channel, code)
        assert no_spawn == []
