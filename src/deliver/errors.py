"""Exception hierarchy for deliver."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .monitor import JobOutcome


class DeliverError(Exception):
    """Base exception for all deliver errors."""

    def __init__(self, message: str, context: str | None = None):
        self.message = message
        self.context = context
        super().__init__(self.format_message())

    def format_message(self) -> str:
        if self.context:
            return f"{self.message}\n{self.context}"
        return self.message


class ConfigError(DeliverError):
    """Raised when a configuration source cannot be read or parsed."""


class MissingRequiredConfig(ConfigError):
    """Raised when required settings are empty after the merge."""

    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required settings: {', '.join(self.missing)}")


class StrategyError(DeliverError):
    """Raised when a strategy file is malformed."""


class UnknownStrategy(StrategyError):
    """Raised when the configured strategy matches nothing discovered."""

    def __init__(self, name: str, available: Iterable[str]):
        self.name = name
        self.available = list(available)
        listing = ", ".join(self.available) if self.available else "(none)"
        super().__init__(
            f"Unknown strategy '{name}'", context=f"Available strategies: {listing}"
        )


@dataclass
class JobFailure:
    """One failed job: the host it targeted, its command and why it failed."""

    host: str | None
    command: str
    reason: str
    exit_status: int | None = None
    output: tuple[str, ...] = ()

    def __str__(self) -> str:
        target = self.host or "local"
        return f"{target}: {self.reason} ({self.command})"


class AggregateFailure(DeliverError):
    """Raised once every job in a batch has finished and at least one failed."""

    def __init__(self, failures: list[JobFailure], outcomes: list[JobOutcome] | None = None):
        self.failures = failures
        self.outcomes = outcomes or []
        super().__init__(
            f"{len(failures)} job(s) failed",
            context="\n".join(str(failure) for failure in failures),
        )

    @property
    def hosts(self) -> list[str]:
        return [failure.host or "local" for failure in self.failures]


class StepFailed(DeliverError):
    """Raised by the dispatcher when a labelled unit of work fails."""

    def __init__(self, label: str, failures: list[JobFailure]):
        self.label = label
        self.failures = failures
        super().__init__(
            f"Step failed: {label}",
            context="\n".join(str(failure) for failure in failures),
        )


class Interrupted(DeliverError):
    """Raised when the run is cancelled by an external signal."""

    def __init__(self, message: str = "Interrupted"):
        super().__init__(message)
