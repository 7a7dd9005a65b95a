"""Execution modes and the mode-aware dispatcher."""

from __future__ import annotations

import asyncio
import itertools
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, TextIO

from .config import Configuration, Host
from .errors import AggregateFailure, ConfigError, StepFailed
from .runlog import EventLogger

if TYPE_CHECKING:
    from .executor import Executor

logger = logging.getLogger(__name__)

LOCAL = "local"
PROGRESS_INTERVAL = 0.2
SPINNER = "|/-\\"
OK_MARK = "✔"
FAIL_MARK = "✘"


class ExecutionMode(Enum):
    """Run-wide policy for visibility, concurrency and side effects."""

    COMPACT = "compact"
    VERBOSE = "verbose"
    DEBUG = "debug"
    TEST = "test"

    @classmethod
    def from_config(cls, config: Configuration) -> ExecutionMode:
        try:
            return cls(config.mode)
        except ValueError:
            choices = ", ".join(mode.value for mode in cls)
            raise ConfigError(
                f"Unknown mode '{config.mode}'", context=f"Expected one of: {choices}"
            ) from None

    @property
    def echoes(self) -> bool:
        return self in (ExecutionMode.VERBOSE, ExecutionMode.DEBUG)


@dataclass
class LocalWork:
    """Run a command once on this machine."""

    command: str

    def rendered(self, config: Configuration) -> list[tuple[str, str]]:
        return [(LOCAL, config.render(self.command))]

    def describe(self, config: Configuration) -> list[str]:
        return [command for _, command in self.rendered(config)]

    async def run(self, executor: Executor, echo: bool) -> None:
        await executor.run_local(self.command, echo=echo)


@dataclass
class RemoteWork:
    """Run a command template on every host in parallel over SSH."""

    command: str
    hosts: list[Host] | None = None

    def _hosts(self, config: Configuration) -> list[Host]:
        return config.hosts if self.hosts is None else self.hosts

    def rendered(self, config: Configuration) -> list[tuple[str, str]]:
        return [
            (str(host), config.render(self.command, host, index))
            for index, host in enumerate(self._hosts(config))
        ]

    def describe(self, config: Configuration) -> list[str]:
        return [f"{host}: {command}" for host, command in self.rendered(config)]

    async def run(self, executor: Executor, echo: bool) -> None:
        await executor.run_on_hosts(self.command, self._hosts(executor.config), echo=echo)


@dataclass
class PerHostWork(RemoteWork):
    """Run a command template locally, once per host, in parallel."""

    async def run(self, executor: Executor, echo: bool) -> None:
        await executor.run_on_hosts(
            self.command,
            self._hosts(executor.config),
            echo=echo,
            transport=executor.local_transport,
        )


class Dispatcher:
    """Runs units of work according to the configured execution mode.

    compact: the work runs as a background task while a progress indicator
    is redrawn every PROGRESS_INTERVAL seconds; command output is hidden.
    verbose: each command is echoed before it runs and its output streamed.
    debug: verbose, with shell tracing enabled on every command.
    test: nothing runs; the rendered commands are printed instead.
    """

    def __init__(
        self,
        config: Configuration,
        executor: Executor,
        run_log: EventLogger | None = None,
        on_output: Callable[[str, str], None] | None = None,
        stream: TextIO | None = None,
        interval: float = PROGRESS_INTERVAL,
    ):
        self.config = config
        self.mode = ExecutionMode.from_config(config)
        self.executor = executor
        self.run_log = run_log or EventLogger(None)
        self.on_output = on_output
        self.stream = stream or sys.stdout
        self.interval = interval

    def _write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()

    def _emit(self, line: str) -> None:
        if self.on_output:
            self.on_output(LOCAL, line)
        else:
            self._write(line + "\n")

    async def dispatch(self, work, label: str) -> None:
        """Run ``work`` under the active mode, raising StepFailed on failure."""
        if self.mode is ExecutionMode.TEST:
            for line in work.describe(self.config):
                self._write(f"{label}: {line}\n")
            return

        for target, command in work.rendered(self.config):
            self.run_log.record(target, self.executor.prepare(command))
        logger.debug("Dispatching %s: %s", label, work.command)

        try:
            if self.mode.echoes:
                self._emit(f"==> {label}")
                for line in work.describe(self.config):
                    self._emit(f"$ {line}")
                await work.run(self.executor, echo=True)
            else:
                await self._with_progress(work.run(self.executor, echo=False), label)
        except AggregateFailure as e:
            raise StepFailed(label, e.failures) from e

    async def _with_progress(self, coro, label: str) -> None:
        """Await ``coro`` in the background, redrawing a spinner until it ends."""
        task = asyncio.ensure_future(coro)
        animate = self.stream.isatty()
        frames = itertools.cycle(SPINNER)

        if not animate:
            self._write(f"{label} ... ")
        try:
            while not task.done():
                if animate:
                    self._write(f"\r{label} {next(frames)}")
                await asyncio.wait({task}, timeout=self.interval)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise

        prefix = f"\r{label} " if animate else ""
        try:
            task.result()
        except BaseException:
            self._write(f"{prefix}{FAIL_MARK}\n")
            raise
        self._write(f"{prefix}{OK_MARK}\n")
