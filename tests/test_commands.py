"""Tests for error classification and the command helpers."""
from unittest.mock import MagicMock

import pytest

from rtx_ssh_session.commands import (check_output_error, run_batch_commands, run_command, run_with_retry,
                                      save_config, wait_for)
from rtx_ssh_session.errors import (AuthenticationError, DeviceCommandError, DeviceErrorKind, DialError,
                                    HostKeyMismatchError, PromptNotFoundError, RetryableError,
                                    StateNotConvergedError, classify_device_output, is_retryable)
from rtx_ssh_session.retry import LinearBackoff


class ScriptedExecutor:
    """Returns (or raises) scripted outcomes in order; the last one repeats."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.commands = []

    def run(self, command, deadline=None, check=False):
        self.commands.append(command)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestClassification:

    @pytest.mark.parametrize("output,kind", [
        ("Error: Specified entry already exists", DeviceErrorKind.ALREADY_EXISTS),
        ("エントリは既に存在します", DeviceErrorKind.ALREADY_EXISTS),
        ("Error: Entry not found", DeviceErrorKind.NOT_FOUND),
        ("指定されたエントリが見つかりません", DeviceErrorKind.NOT_FOUND),
        ("Error: Permission denied", DeviceErrorKind.PERMISSION_DENIED),
        ("Invalid parameter", DeviceErrorKind.INVALID_PARAMETER),
        ("Connection timeout", DeviceErrorKind.TIMEOUT),
        ("Error: resource busy", DeviceErrorKind.BUSY),
        ("% Error: conflict with existing filter", DeviceErrorKind.CONFLICT),
        ("Command failed: operation timed out", DeviceErrorKind.TIMEOUT),
        ("エラー: パラメータが不正です", DeviceErrorKind.INVALID_PARAMETER),
        ("Error: Unrecognized command", DeviceErrorKind.GENERIC),
    ])
    def test_kinds(self, output, kind):
        assert classify_device_output(output) == kind
        assert classify_device_output(output.encode('utf-8')) == kind

    @pytest.mark.parametrize("output", [
        "",
        b"",
        "show environment\r\nFirmware: exec0\r\n[RTX1210] > ",
        "Saving ... CONFIG0 Done",
    ])
    def test_clean_output(self, output):
        assert classify_device_output(output) is None

    def test_retryable(self):
        assert is_retryable(DialError("refused"))
        assert is_retryable(PromptNotFoundError("no prompt"))
        assert is_retryable(RetryableError(ValueError("flaky")))
        assert not is_retryable(AuthenticationError("rejected"))
        assert not is_retryable(HostKeyMismatchError("host key changed"))
        assert not is_retryable(DeviceCommandError("command failed", "Error: busy", DeviceErrorKind.BUSY))

    def test_device_error_message(self):
        exc = DeviceCommandError("failed to add route", "Error: invalid parameter\r\n",
                                 DeviceErrorKind.INVALID_PARAMETER, 'ip route x')
        assert str(exc) == "failed to add route: Error: invalid parameter"
        assert exc.command == 'ip route x'


class TestCheckOutputError:

    def test_clean_output_passes(self):
        check_output_error(b"ip route default gateway pp 1\r\n[RTX1210] # ", "route")

    def test_error_raises_with_kind(self):
        with pytest.raises(DeviceCommandError) as excinfo:
            check_output_error(b"Error: Entry not found\r\n", "delete route", command='no ip route x')
        assert excinfo.value.kind == DeviceErrorKind.NOT_FOUND
        assert excinfo.value.command == 'no ip route x'
        assert "delete route" in str(excinfo.value)

    def test_not_found_ignored_for_idempotent_deletes(self):
        check_output_error("Error: Entry not found", "delete route", ignore_not_found=True)

    def test_ignore_not_found_keeps_other_errors(self):
        with pytest.raises(DeviceCommandError):
            check_output_error("Error: Permission denied", "delete route", ignore_not_found=True)


class TestRunHelpers:

    def test_run_command(self):
        executor = ScriptedExecutor(b"Error: Invalid parameter\r\n[RTX1210] # ")
        with pytest.raises(DeviceCommandError) as excinfo:
            run_command(executor, 'ip route bad')
        assert excinfo.value.kind == DeviceErrorKind.INVALID_PARAMETER

    def test_run_command_ok(self):
        executor = ScriptedExecutor(b"[RTX1210] # ")
        assert run_command(executor, 'ip route good') == b"[RTX1210] # "

    def test_run_batch_commands(self):
        executor = MagicMock()
        executor.run_batch.return_value = b"out"
        assert run_batch_commands(executor, ['a', 'b']) == b"out"
        executor.run_batch.assert_called_once_with(['a', 'b'], deadline=None, check=True)

    def test_run_batch_commands_empty(self):
        executor = MagicMock()
        assert run_batch_commands(executor, []) == b""
        executor.run_batch.assert_not_called()

    def test_run_with_retry_recovers_from_busy(self):
        executor = ScriptedExecutor(b"Error: resource busy\r\n", b"Error: resource busy\r\n", b"ok\r\n")
        output = run_with_retry(executor, 'ip route x', LinearBackoff(delay=0, max_retries=5))
        assert output == b"ok\r\n"
        assert len(executor.commands) == 3

    def test_run_with_retry_raises_permanent_errors(self):
        executor = ScriptedExecutor(b"Error: Entry already exists\r\n")
        with pytest.raises(DeviceCommandError) as excinfo:
            run_with_retry(executor, 'ip route x', LinearBackoff(delay=0, max_retries=5))
        assert excinfo.value.kind == DeviceErrorKind.ALREADY_EXISTS
        assert len(executor.commands) == 1

    def test_run_with_retry_gives_up(self):
        executor = ScriptedExecutor(b"Error: resource busy\r\n")
        with pytest.raises(DeviceCommandError):
            run_with_retry(executor, 'ip route x', LinearBackoff(delay=0, max_retries=2))
        assert len(executor.commands) == 3

    def test_save_config(self):
        executor = ScriptedExecutor(b"save\r\nSaving ... CONFIG0 Done\r\n[RTX1210] # ")
        save_config(executor)
        assert executor.commands == ['save']

    def test_save_config_failure(self):
        executor = ScriptedExecutor(b"save\r\nError: Permission denied\r\n[RTX1210] > ")
        with pytest.raises(DeviceCommandError, match="failed to save configuration"):
            save_config(executor, "route added")


class TestWaitFor:

    def test_polls_until_predicate_holds(self):
        values = iter([1, 2, 3, 4])
        calls = []

        def fetch():
            calls.append(1)
            return next(values)

        assert wait_for(fetch, lambda v: v >= 3, LinearBackoff(delay=0, max_retries=10)) == 3
        assert len(calls) == 3

    def test_pending_kinds_mean_not_yet(self):
        outcomes = [DeviceCommandError("lookup", "Error: not found", DeviceErrorKind.NOT_FOUND), "present"]

        def fetch():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = wait_for(fetch, lambda v: v == "present", LinearBackoff(delay=0, max_retries=3),
                          pending_kinds={DeviceErrorKind.NOT_FOUND})
        assert result == "present"

    def test_other_errors_end_the_wait(self):
        def fetch():
            raise DeviceCommandError("lookup", "Error: Permission denied", DeviceErrorKind.PERMISSION_DENIED)

        with pytest.raises(DeviceCommandError):
            wait_for(fetch, lambda v: True, LinearBackoff(delay=0, max_retries=3),
                     pending_kinds={DeviceErrorKind.NOT_FOUND})

    def test_gives_up(self):
        with pytest.raises(StateNotConvergedError):
            wait_for(lambda: 0, lambda v: v == 1, LinearBackoff(delay=0, max_retries=2),
                     description="dhcp binding")
