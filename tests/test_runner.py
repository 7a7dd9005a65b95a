"""Tests for the deliver command line."""

import asyncio
import os
import signal
from unittest.mock import AsyncMock, patch

import pytest

from deliver.errors import Interrupted
from deliver.executor import SSHTransport
from deliver.modes import FAIL_MARK, OK_MARK
from deliver.runner import (
    EXIT_CONFIG,
    EXIT_FAILED,
    EXIT_INTERRUPTED,
    EXIT_OK,
    main,
)


def fake_ssh(failing=()):
    async def run(self, command, host, on_line, on_connected=None):
        if on_connected:
            on_connected()
        return 1 if host.address in failing else 0

    return run


class TestCheck:
    def test_all_present(self, project, capsys):
        assert main(["-C", str(project), "--check"]) == EXIT_OK

        out = capsys.readouterr().out.splitlines()
        for key in ("app", "hosts", "user", "strategy"):
            assert any(line.startswith(f"{OK_MARK} {key}") for line in out)
        assert not any(line.startswith(FAIL_MARK) for line in out)

    def test_one_missing_key(self, project, capsys):
        config = project / ".deliver" / "config.yml"
        config.write_text(config.read_text().replace("user: deploy\n", ""))

        assert main(["-C", str(project), "--check"]) == EXIT_CONFIG

        out = capsys.readouterr().out.splitlines()
        failing = [line for line in out if line.startswith(FAIL_MARK)]
        assert len(failing) == 1
        assert failing[0].split()[1] == "user"
        for key in ("app", "hosts", "strategy"):
            assert any(line.startswith(f"{OK_MARK} {key}") for line in out)

    def test_strategy_requirements_are_checked(self, project, capsys):
        assert main(["-C", str(project), "--check", "--strategy", "nodejs"]) == EXIT_OK
        out = capsys.readouterr().out
        assert f"{OK_MARK} supervisor" in out

    def test_unknown_strategy(self, project, capsys):
        assert main(["-C", str(project), "--check", "--strategy", "ruby"]) == EXIT_CONFIG

        out = capsys.readouterr().out
        assert f"{FAIL_MARK} strategy" in out
        assert "Available strategies:" in out
        assert "local-test" in out


class TestRun:
    def test_test_mode_prints_commands(self, project, capsys):
        assert main(["-C", str(project), "--test"]) == EXIT_OK

        out = capsys.readouterr().out
        assert "build: echo building shop" in out
        assert "restart: deploy@b: restart shop on b" in out
        assert not (project / ".deliver" / "deliver.log").exists()

    def test_success(self, project, capsys):
        with patch.object(SSHTransport, "run", fake_ssh()):
            assert main(["-C", str(project)]) == EXIT_OK

        assert f"{OK_MARK} Delivered shop" in capsys.readouterr().out
        log = (project / ".deliver" / "deliver.log").read_text().splitlines()
        assert log[0].endswith(" ::: local : echo building shop")
        assert log[1].endswith(" ::: deploy@a : restart shop on a")
        assert log[3].endswith(" ::: deploy@c : restart shop on c")
        assert len(log) == 4

    def test_job_failure_names_host(self, project, capsys):
        with patch.object(SSHTransport, "run", fake_ssh(failing={"b"})):
            assert main(["-C", str(project), "--no-log"]) == EXIT_FAILED

        err = capsys.readouterr().err
        assert "Step failed: restart" in err
        assert "Failed hosts: deploy@b" in err
        assert not (project / ".deliver" / "deliver.log").exists()

    def test_runtime_hosts_override(self, project, capsys):
        with patch.object(SSHTransport, "run", fake_ssh(failing={"b"})):
            assert main(["-C", str(project), "--hosts", "a,c"]) == EXIT_OK

    def test_missing_config_file(self, tmp_path, capsys):
        assert main(["-C", str(tmp_path)]) == EXIT_CONFIG
        assert "Missing required settings: app, hosts, user" in capsys.readouterr().err

    def test_unknown_strategy(self, project, capsys):
        assert main(["-C", str(project), "--strategy", "ruby"]) == EXIT_CONFIG
        err = capsys.readouterr().err
        assert "Unknown strategy 'ruby'" in err
        assert "local-test" in err

    def test_interrupted_run(self, project, capsys):
        with patch("deliver.runner.Deployment.run", AsyncMock(side_effect=Interrupted())):
            status = main(["-C", str(project)])

        assert status == EXIT_INTERRUPTED
        assert status not in (EXIT_OK, EXIT_FAILED)

    def test_keyboard_interrupt(self, project, capsys):
        with patch("deliver.runner._run_headless", side_effect=KeyboardInterrupt):
            assert main(["-C", str(project)]) == EXIT_INTERRUPTED

    def test_sigint_cancels_running_jobs(self, project, capsys):
        calls = []

        async def slow_ssh(self, command, host, on_line, on_connected=None):
            calls.append(command)
            if host.address == "a":
                os.kill(os.getpid(), signal.SIGINT)
            await asyncio.sleep(5)
            return 0

        with patch.object(SSHTransport, "run", slow_ssh):
            status = main(["-C", str(project), "--no-log"])

        assert status == EXIT_INTERRUPTED
        assert calls == ["restart shop on a", "restart shop on b", "restart shop on c"]
        captured = capsys.readouterr()
        assert f"restart ... {FAIL_MARK}" in captured.out
        assert "Interrupted" in captured.err

    def test_bad_template_fails_before_anything_runs(self, project, capsys):
        strategy = project / ".deliver" / "strategies" / "local-test.yml"
        strategy.write_text(
            strategy.read_text().replace("restart {app} on {address}", "restart {ap} on {address}")
        )
        ssh = AsyncMock(return_value=0)

        with patch.object(SSHTransport, "run", ssh):
            assert main(["-C", str(project)]) == EXIT_CONFIG

        ssh.assert_not_called()
        assert "Unknown placeholder '{ap}'" in capsys.readouterr().err
        assert not (project / ".deliver" / "deliver.log").exists()

    def test_shell_parameter_expansion_in_commands(self, project):
        strategy = project / ".deliver" / "strategies" / "local-test.yml"
        strategy.write_text(
            strategy.read_text().replace(
                "restart {app} on {address}", "PORT=${PORT:-3000} restart {app}"
            )
        )
        calls = []

        async def record_ssh(self, command, host, on_line, on_connected=None):
            calls.append(command)
            return 0

        with patch.object(SSHTransport, "run", record_ssh):
            assert main(["-C", str(project), "--no-log"]) == EXIT_OK

        assert set(calls) == {"PORT=${PORT:-3000} restart shop"}


def test_list_strategies(project, capsys):
    assert main(["-C", str(project), "--strategies"]) == EXIT_OK

    out = capsys.readouterr().out
    assert "local-test" in out
    assert "Strategy used by the CLI tests" in out
    assert "nodejs" in out


def test_version(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--version"])
    assert exc_info.value.code == 0
