"""Running a strategy's steps."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import Configuration, Host
from .errors import StepFailed
from .modes import Dispatcher, LocalWork, PerHostWork, RemoteWork
from .strategies import Step, Strategy

logger = logging.getLogger(__name__)


@dataclass
class DeploymentResult:
    """Which steps ran, failed, or never started."""

    completed: list[str] = field(default_factory=list)
    failed: list[StepFailed] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def work_for(step: Step):
    """Build the unit of work a step dispatches."""
    if step.target == "local":
        return LocalWork(step.run)
    if step.target == "local-per-host":
        return PerHostWork(step.run)
    return RemoteWork(step.run)


def check_templates(config: Configuration, strategy: Strategy) -> None:
    """Render every step once so a bad placeholder fails before anything runs."""
    hosts = config.hosts or [Host("", config.get("user"))]
    for step in strategy.steps:
        host = None if step.target == "local" else hosts[0]
        config.render(step.run, host, strict=True)


class Deployment:
    """Runs a strategy's steps in order, stopping at the first failed step."""

    def __init__(self, config: Configuration, strategy: Strategy, dispatcher: Dispatcher):
        self.config = config
        self.strategy = strategy
        self.dispatcher = dispatcher

    async def run(self) -> DeploymentResult:
        check_templates(self.config, self.strategy)
        result = DeploymentResult()
        steps = list(self.strategy.steps)

        for position, step in enumerate(steps):
            try:
                await self.dispatcher.dispatch(work_for(step), step.name)
            except StepFailed as e:
                result.failed.append(e)
                if step.continue_on_error:
                    logger.warning("Step '%s' failed, continuing: %s", step.name, e)
                    continue
                result.skipped = [later.name for later in steps[position + 1 :]]
                break
            result.completed.append(step.name)

        return result
