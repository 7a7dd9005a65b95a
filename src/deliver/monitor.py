"""Job tracking for deliver."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable

from .errors import AggregateFailure, Interrupted, JobFailure

logger = logging.getLogger(__name__)

OUTPUT_TAIL = 20


@dataclass
class Job:
    """One in-flight unit of work."""

    command: str
    host: str | None = None
    task: asyncio.Task | None = None
    exit_status: int | None = None
    reason: str = ""
    output: deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL))

    def start(self, coro: Awaitable[None]) -> asyncio.Task:
        self.task = asyncio.ensure_future(coro)
        return self.task


@dataclass(frozen=True)
class JobOutcome:
    """Resolved status of a finished job."""

    host: str | None
    command: str
    exit_status: int | None
    reason: str = ""
    output: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.reason

    def as_failure(self) -> JobFailure:
        return JobFailure(
            host=self.host,
            command=self.command,
            reason=self.reason or f"exited with status {self.exit_status}",
            exit_status=self.exit_status,
            output=self.output,
        )


class JobMonitor:
    """Waits on a batch of jobs and reports every failure once all finish.

    There is no early exit on the first failure: each job's status is
    observed before ``wait`` returns or raises, so nothing is left running
    in the background. The only exception is cancellation, where every
    pending job is cancelled and awaited before Interrupted is raised.
    """

    def __init__(self, cancel: asyncio.Event | None = None):
        self.cancel = cancel
        self.jobs: list[Job] = []

    def add(self, job: Job) -> None:
        if job.task is None:
            raise ValueError(f"Job was never started: {job.command}")
        self.jobs.append(job)

    async def wait(self) -> list[JobOutcome]:
        """Block until every job has resolved, then return their outcomes."""
        jobs, self.jobs = self.jobs, []
        tasks = [job.task for job in jobs]

        try:
            if self.cancel is None:
                results = await asyncio.gather(*tasks, return_exceptions=True)
            else:
                results = await self._wait_or_cancel(tasks)
        finally:
            self.jobs.clear()

        outcomes = [self._outcome(job, result) for job, result in zip(jobs, results)]
        failures = [outcome.as_failure() for outcome in outcomes if not outcome.ok]
        if failures:
            for failure in failures:
                logger.debug("Job failed: %s", failure)
            raise AggregateFailure(failures, outcomes)
        return outcomes

    async def _wait_or_cancel(self, tasks: list[asyncio.Task]) -> list:
        waiter = asyncio.ensure_future(self.cancel.wait())
        pending = set(tasks)
        try:
            while pending and not waiter.done():
                _, pending = await asyncio.wait(
                    pending | {waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                pending.discard(waiter)
            if pending:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                raise Interrupted(f"Interrupted with {len(pending)} job(s) still running")
        finally:
            waiter.cancel()
        return await asyncio.gather(*tasks, return_exceptions=True)

    @staticmethod
    def _outcome(job: Job, result: object) -> JobOutcome:
        reason = job.reason
        exit_status = job.exit_status
        if isinstance(result, asyncio.CancelledError):
            reason = reason or "cancelled"
        elif isinstance(result, BaseException):
            reason = reason or f"{type(result).__name__}: {result}"
        elif exit_status is None:
            reason = reason or "no exit status"
        return JobOutcome(
            host=job.host,
            command=job.command,
            exit_status=exit_status,
            reason=reason,
            output=tuple(job.output),
        )
