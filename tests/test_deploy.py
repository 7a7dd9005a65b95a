"""Tests for running a strategy's steps."""

import asyncio
import io
from pathlib import Path

import pytest

from conftest import FakeTransport, make_config
from deliver.deploy import Deployment, check_templates, work_for
from deliver.errors import ConfigError, Interrupted
from deliver.executor import Executor
from deliver.modes import Dispatcher, LocalWork, PerHostWork, RemoteWork
from deliver.strategies import Step, Strategy


def strategy(*steps):
    return Strategy(name="test", path=Path("test.yml"), steps=list(steps))


def deployment(strategy, remote, local=None, mode="compact", cancel=None):
    config = make_config(mode=mode)
    executor = Executor(
        config, transport=remote, local_transport=local or FakeTransport(), cancel=cancel
    )
    dispatcher = Dispatcher(config, executor, stream=io.StringIO(), interval=0.01)
    return Deployment(config, strategy, dispatcher)


class TestDeployment:
    @pytest.mark.asyncio
    async def test_runs_steps_in_order(self):
        remote = FakeTransport()
        steps = strategy(Step("one", "first"), Step("two", "second"))

        result = await deployment(steps, remote).run()

        assert result.ok
        assert result.completed == ["one", "two"]
        commands = [command for _, command in remote.calls]
        assert commands == ["first"] * 3 + ["second"] * 3

    @pytest.mark.asyncio
    async def test_aborts_remaining_steps_on_failure(self):
        remote = FakeTransport(failing={"c"})
        steps = strategy(Step("one", "first"), Step("two", "second"), Step("three", "third"))

        result = await deployment(steps, remote).run()

        assert not result.ok
        assert result.completed == []
        assert [failure.label for failure in result.failed] == ["one"]
        assert result.skipped == ["two", "three"]
        assert {command for _, command in remote.calls} == {"first"}

    @pytest.mark.asyncio
    async def test_continue_on_error(self):
        local = FakeTransport(failing={None})
        remote = FakeTransport()
        steps = strategy(
            Step("notify", "./notify", target="local", continue_on_error=True),
            Step("restart", "restart"),
        )

        result = await deployment(steps, remote, local=local).run()

        assert not result.ok
        assert result.completed == ["restart"]
        assert result.skipped == []
        assert len(remote.calls) == 3

    @pytest.mark.asyncio
    async def test_test_mode_runs_nothing(self):
        remote = FakeTransport()
        local = FakeTransport()
        steps = strategy(Step("build", "make", target="local"), Step("restart", "restart"))

        result = await deployment(steps, remote, local=local, mode="test").run()

        assert result.ok
        assert result.completed == ["build", "restart"]
        assert remote.calls == [] and local.calls == []


@pytest.mark.parametrize(
    "target,kind",
    [("local", LocalWork), ("hosts", RemoteWork), ("local-per-host", PerHostWork)],
)
def test_work_for_target(target, kind):
    work = work_for(Step("step", "cmd", target=target))
    assert type(work) is kind
    assert work.command == "cmd"


class TestTemplates:
    @pytest.mark.asyncio
    async def test_bad_placeholder_in_later_step_runs_nothing(self):
        remote = FakeTransport()
        local = FakeTransport()
        steps = strategy(
            Step("push", "echo pushed"),
            Step("restart", "PORT=${PORT:-3000} ./restart {aplication}"),
        )

        with pytest.raises(ConfigError):
            await deployment(steps, remote, local=local).run()

        assert remote.calls == [] and local.calls == []

    @pytest.mark.asyncio
    async def test_shell_syntax_reaches_hosts_unchanged(self):
        remote = FakeTransport()
        steps = strategy(Step("restart", "PORT=${PORT:-3000} ./restart {app} && rm -f f{,.bak}"))

        result = await deployment(steps, remote).run()

        assert result.ok
        assert {command for _, command in remote.calls} == {
            "PORT=${PORT:-3000} ./restart shop && rm -f f{,.bak}"
        }

    def test_host_fields_only_in_host_steps(self):
        config = make_config()
        push = Step("push", "git push ssh://{host}/app", target="local-per-host")
        check_templates(config, strategy(push))
        with pytest.raises(ConfigError):
            check_templates(config, strategy(Step("build", "make {address}", target="local")))


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_during_step_skips_later_steps(self):
        cancel = asyncio.Event()
        remote = FakeTransport(delays={"a": 5})
        steps = strategy(Step("one", "first"), Step("two", "second"))
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        with pytest.raises(Interrupted):
            await deployment(steps, remote, cancel=cancel).run()

        assert {command for _, command in remote.calls} == {"first"}

    @pytest.mark.asyncio
    async def test_no_jobs_start_once_cancelled(self):
        cancel = asyncio.Event()
        cancel.set()
        remote = FakeTransport()

        with pytest.raises(Interrupted):
            await deployment(strategy(Step("one", "first")), remote, cancel=cancel).run()

        assert remote.calls == []
