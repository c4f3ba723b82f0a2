"""Tests for the action builder (stagehand/builder/forge.py)."""

from __future__ import annotations

import subprocess

import pytest

from stagehand.builder.forge import ActionBuilder, find_structured_line, parse_structured_output
from stagehand.core.errors import MalformedOutput, NoStructuredOutput, SubprocessFailure
from stagehand.core.logging import register_secret


NOISY_STDOUT = 'building...\nwarning: x\n{"transactions":[]}\ntrailing\n'


class TestStructuredLine:
    def test_first_brace_line_wins(self):
        stdout = 'noise\n{"transactions": [], "eta": 1}\n{"transactions": [{"to": "0x1"}]}\n'
        assert find_structured_line(stdout) == '{"transactions": [], "eta": 1}'

    def test_leading_whitespace_is_ignored(self):
        assert find_structured_line('log\n   {"a": 1}  \n') == '{"a": 1}'

    def test_no_candidate(self):
        assert find_structured_line("just\nlogs\n") is None

    def test_parse_noisy_output(self):
        result = parse_structured_output(NOISY_STDOUT)
        assert result.transactions == []
        assert result.raw == {"transactions": []}

    def test_parse_camel_case_fields(self):
        result = parse_structured_output(
            '{"transactions": [{"to": "0x1111111111111111111111111111111111111111", "value": "0x10"}],'
            ' "stateUpdates": [{"name": "Impl", "value": "0xabc"}],'
            ' "deployedContracts": [{"contract": "Token", "address": "0xdef"}]}'
        )
        assert result.transactions[0].value == 16
        assert result.contract_updates() == {"Token": "0xdef", "Impl": "0xabc"}

    def test_unknown_keys_are_ignored(self):
        result = parse_structured_output('{"transactions": [], "somethingNew": true}')
        assert result.transactions == []

    def test_no_structured_output(self):
        with pytest.raises(NoStructuredOutput):
            parse_structured_output("building...\ndone\n")

    def test_invalid_json(self):
        with pytest.raises(MalformedOutput):
            parse_structured_output("{not json\n")

    def test_wrong_shape(self):
        with pytest.raises(MalformedOutput):
            parse_structured_output('{"transactions": "nope"}')


class TestActionBuilder:
    def test_command_line(self, fake_forge):
        builder = ActionBuilder("forge", runner=fake_forge)
        builder.build("script/Upgrade.s.sol", ["--private-key", "0xabc"])

        cmd = fake_forge.calls[0]["cmd"]
        assert cmd == ["forge", "script", "script/Upgrade.s.sol", "--private-key", "0xabc", "--json"]
        assert fake_forge.calls[0]["capture_output"] is True
        assert fake_forge.calls[0]["timeout"] == 600

    def test_env_is_merged(self, fake_forge, monkeypatch):
        monkeypatch.setenv("PATH_MARKER", "1")
        ActionBuilder(runner=fake_forge).build("s.sol", env={"STAGEHAND_ENVIRONMENT": "testnet"})

        env = fake_forge.calls[0]["env"]
        assert env["STAGEHAND_ENVIRONMENT"] == "testnet"
        assert env["PATH_MARKER"] == "1"

    def test_success_with_noise(self, fake_forge):
        fake_forge.reply("s.sol", stdout=NOISY_STDOUT)
        result = ActionBuilder(runner=fake_forge).build("s.sol")
        assert result.transactions == []

    def test_nonzero_exit_fails_regardless_of_stdout(self, fake_forge):
        fake_forge.reply("s.sol", stdout=NOISY_STDOUT, returncode=1, stderr="revert: not owner")
        with pytest.raises(SubprocessFailure) as exc_info:
            ActionBuilder(runner=fake_forge).build("s.sol")
        assert exc_info.value.exit_code == 1
        assert "not owner" in exc_info.value.stderr_tail

    def test_stderr_tail_is_redacted(self, fake_forge):
        secret = "deadbeefcafebabe0123456789"
        register_secret(secret)
        fake_forge.reply("s.sol", returncode=2, stdout="", stderr=f"bad key {secret}")
        with pytest.raises(SubprocessFailure) as exc_info:
            ActionBuilder(runner=fake_forge).build("s.sol")
        assert secret not in exc_info.value.stderr_tail

    def test_missing_structured_line(self, fake_forge):
        fake_forge.reply("s.sol", stdout="compiled\nok\n")
        with pytest.raises(NoStructuredOutput):
            ActionBuilder(runner=fake_forge).build("s.sol")

    def test_timeout(self):
        def runner(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"], stderr=b"still compiling")

        with pytest.raises(SubprocessFailure) as exc_info:
            ActionBuilder(timeout=5, runner=runner).build("s.sol")
        assert exc_info.value.exit_code is None
        assert "timed out" in exc_info.value.message

    def test_binary_missing(self):
        def runner(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        with pytest.raises(SubprocessFailure, match="not found"):
            ActionBuilder("no-such-forge", runner=runner).build("s.sol")
