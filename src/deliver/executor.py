"""Parallel command execution for deliver."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

import asyncssh

from .config import Configuration, Host
from .errors import Interrupted
from .modes import LOCAL, ExecutionMode
from .monitor import Job, JobMonitor, JobOutcome

logger = logging.getLogger(__name__)

TRACE_PREFIX = "set -x; "


class HostStatus(Enum):
    """Status of a job's target."""

    PENDING = "pending"
    CONNECTING = "connecting"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


# Type alias for output callback
OutputCallback = Callable[[str, str], None]  # (source, line) -> None
StatusCallback = Callable[[str, HostStatus], None]  # (source, status) -> None
LineCallback = Callable[[str], None]


async def _read_stream(stream, on_line: LineCallback, prefix: str = "") -> None:
    while True:
        line = await stream.readline()
        if not line:
            break
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.rstrip("\n\r")
        on_line(f"{prefix}{line}")


class SSHTransport:
    """Runs commands on remote hosts over asyncssh."""

    def __init__(
        self,
        port: int = 22,
        ssh_key: Path | None = None,
        connect_timeout: float = 5.0,
    ):
        self.port = port
        self.ssh_key = ssh_key
        self.connect_timeout = connect_timeout

    @classmethod
    def from_config(cls, config: Configuration) -> SSHTransport:
        ssh_key = config.get("ssh_key")
        return cls(
            port=config.port,
            ssh_key=Path(ssh_key).expanduser() if ssh_key else None,
            connect_timeout=config.ssh_timeout,
        )

    async def run(
        self,
        command: str,
        host: Host | None,
        on_line: LineCallback,
        on_connected: Callable[[], None] | None = None,
    ) -> int:
        if host is None:
            raise ValueError("SSH transport needs a host")

        async with asyncssh.connect(
            host.address,
            port=self.port,
            username=host.user or None,
            client_keys=[str(self.ssh_key)] if self.ssh_key else None,
            known_hosts=None,  # Host authorization is handled outside deliver
            connect_timeout=self.connect_timeout,
        ) as conn:
            if on_connected:
                on_connected()
            async with conn.create_process(command, encoding="utf-8") as proc:
                await asyncio.gather(
                    _read_stream(proc.stdout, on_line),
                    _read_stream(proc.stderr, on_line, prefix="STDERR: "),
                )
                await proc.wait()
                return proc.returncode if proc.returncode is not None else -1


class LocalTransport:
    """Runs commands in a local shell."""

    async def run(
        self,
        command: str,
        host: Host | None,
        on_line: LineCallback,
        on_connected: Callable[[], None] | None = None,
    ) -> int:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        if on_connected:
            on_connected()
        try:
            await asyncio.gather(
                _read_stream(proc.stdout, on_line),
                _read_stream(proc.stderr, on_line, prefix="STDERR: "),
            )
            return await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise


class Executor:
    """Fans commands out to many hosts and collects every job's outcome."""

    def __init__(
        self,
        config: Configuration,
        transport=None,
        local_transport=None,
        on_output: OutputCallback | None = None,
        on_status: StatusCallback | None = None,
        cancel: asyncio.Event | None = None,
    ):
        self.config = config
        self.mode = ExecutionMode.from_config(config)
        self.transport = transport or SSHTransport.from_config(config)
        self.local_transport = local_transport or LocalTransport()
        self.on_output = on_output
        self.on_status = on_status
        self.cancel = cancel

    def _emit_output(self, source: str, line: str) -> None:
        if self.on_output:
            self.on_output(source, line)

    def _emit_status(self, source: str, status: HostStatus) -> None:
        if self.on_status:
            self.on_status(source, status)

    def _check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise Interrupted("Interrupted before starting new jobs")

    def prepare(self, command: str) -> str:
        if self.mode is ExecutionMode.DEBUG:
            return f"{TRACE_PREFIX}{command}"
        return command

    async def run_on_hosts(
        self,
        template: str,
        hosts: Iterable[Host] | None = None,
        echo: bool = False,
        transport=None,
    ) -> list[JobOutcome]:
        """Run a command template on every host in parallel.

        All jobs are started before any is awaited. Outcomes come back in
        host order; AggregateFailure is raised once every job has finished
        if any of them failed. Nothing runs in test mode.
        """
        if self.mode is ExecutionMode.TEST:
            return []

        self._check_cancelled()
        hosts = self.config.hosts if hosts is None else list(hosts)
        transport = transport or self.transport
        monitor = JobMonitor(self.cancel)

        for index, host in enumerate(hosts):
            command = self.prepare(self.config.render(template, host, index))
            job = Job(command=command, host=str(host))
            self._emit_status(job.host, HostStatus.PENDING)
            job.start(self._run_job(job, host, transport, echo))
            monitor.add(job)

        logger.debug("Started %d job(s): %s", len(hosts), template)
        return await monitor.wait()

    async def run_local(self, command: str, echo: bool = False) -> JobOutcome:
        """Run one command locally through the same job tracking."""
        if self.mode is ExecutionMode.TEST:
            return JobOutcome(host=None, command=command, exit_status=0)

        self._check_cancelled()
        monitor = JobMonitor(self.cancel)
        job = Job(command=self.prepare(self.config.render(command)))
        job.start(self._run_job(job, None, self.local_transport, echo))
        monitor.add(job)
        outcomes = await monitor.wait()
        return outcomes[0]

    async def _run_job(self, job: Job, host: Host | None, transport, echo: bool) -> None:
        """Run one job, recording its exit status or failure reason."""
        source = job.host or LOCAL

        def on_line(line: str) -> None:
            job.output.append(line)
            if echo:
                self._emit_output(source, line)

        self._emit_status(source, HostStatus.CONNECTING)
        try:
            job.exit_status = await transport.run(
                job.command,
                host,
                on_line,
                on_connected=lambda: self._emit_status(source, HostStatus.RUNNING),
            )
        except asyncio.TimeoutError:
            job.reason = f"Connection timed out after {self.config.ssh_timeout:g}s"
        except asyncssh.Error as e:
            job.reason = f"SSH error: {e}"
        except OSError as e:
            job.reason = f"Connection error: {e}"

        if job.reason:
            on_line(f"ERROR: {job.reason}")
        elif job.exit_status != 0:
            on_line(f"Command exited with status {job.exit_status}")

        failed = bool(job.reason) or job.exit_status != 0
        self._emit_status(source, HostStatus.FAILED if failed else HostStatus.SUCCESS)
