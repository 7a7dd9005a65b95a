"""Strategy discovery and loading."""

from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

from .config import PROJECT_DIR
from .errors import StrategyError, UnknownStrategy

logger = logging.getLogger(__name__)

STRATEGIES_DIR = "strategies"
BUILTIN_DIR = "builtin_strategies"
STRATEGY_SUFFIXES = ("", ".yml", ".yaml")
TARGETS = ("local", "hosts", "local-per-host")

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class Step:
    """One named command in a strategy."""

    name: str
    run: str
    target: str = "hosts"
    continue_on_error: bool = False


@dataclass
class Strategy:
    """An ordered sequence of deployment steps."""

    name: str
    path: Path
    description: str = ""
    requires: list[str] = field(default_factory=list)
    steps: list[Step] = field(default_factory=list)

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]


def builtin_strategies_dir() -> Path:
    return Path(__file__).parent / BUILTIN_DIR


def search_paths(project_dir: str | Path = ".") -> list[Path]:
    """Built-in directory first, then the project-local one."""
    return [
        builtin_strategies_dir(),
        Path(project_dir).resolve() / PROJECT_DIR / STRATEGIES_DIR,
    ]


def strategy_name(filename: str) -> str | None:
    """Return the strategy name for a file name, or None if it is not one."""
    for suffix in STRATEGY_SUFFIXES[1:]:
        if filename.lower().endswith(suffix):
            filename = filename[: -len(suffix)]
            break
    if not _NAME_PATTERN.match(filename):
        return None
    if filename.lower().startswith("readme"):
        return None
    return filename.lower()


def discover(paths: Iterable[str | Path]) -> dict[str, Path]:
    """Collect strategy files from each search path.

    Names keep the order they are first seen in; a later path defining the
    same name replaces the file behind it, so project-local strategies
    override built-in ones.
    """
    discovered: dict[str, Path] = {}
    for directory in paths:
        directory = Path(directory)
        if not directory.is_dir():
            logger.debug("Skipping missing strategy directory %s", directory)
            continue
        for path in sorted(directory.iterdir(), key=lambda p: p.name.lower()):
            if not path.is_file():
                continue
            name = strategy_name(path.name)
            if name is None:
                continue
            if name in discovered:
                logger.debug("Strategy %s overridden by %s", name, path)
            discovered[name] = path
    return discovered


def find(name: str, discovered: dict[str, Path]) -> str | None:
    """Return the first discovered name containing ``name``.

    Matching is a ``*name*`` glob rather than equality, so ``git`` selects
    ``git-push``. When several names match, enumeration order decides.
    """
    pattern = f"*{name.strip().lower()}*"
    for candidate in discovered:
        if fnmatch.fnmatchcase(candidate, pattern):
            return candidate
    return None


def load(name: str, discovered: dict[str, Path]) -> Strategy:
    """Load the strategy selected by ``name``."""
    match = find(name, discovered) if name.strip() else None
    if match is None:
        raise UnknownStrategy(name, discovered)
    return load_file(match, discovered[match])


def load_file(name: str, path: Path) -> Strategy:
    """Parse a strategy file."""
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise StrategyError(f"Invalid YAML in strategy {path}", context=str(e)) from e
    except OSError as e:
        raise StrategyError(f"Cannot read strategy {path}", context=str(e)) from e

    if not isinstance(raw, dict):
        raise StrategyError(f"Strategy {path} must contain a mapping")

    requires = raw.get("requires", []) or []
    if isinstance(requires, str):
        requires = requires.split()

    steps_raw = raw.get("steps", [])
    if not steps_raw:
        raise StrategyError(f"Strategy '{name}' must have at least one step")

    return Strategy(
        name=name,
        path=path,
        description=str(raw.get("description", "")).strip(),
        requires=[str(key) for key in requires],
        steps=[_parse_step(step_raw, name) for step_raw in steps_raw],
    )


def _parse_step(step_raw: Any, strategy: str) -> Step:
    if not isinstance(step_raw, dict):
        raise StrategyError(f"Strategy '{strategy}' has a step that is not a mapping")

    name = step_raw.get("name")
    if not name:
        raise StrategyError(f"Strategy '{strategy}' has a step without a 'name' field")

    run = step_raw.get("run")
    if not run:
        raise StrategyError(f"Step '{name}' in strategy '{strategy}' must have a 'run' field")

    target = step_raw.get("target", "hosts")
    if target not in TARGETS:
        raise StrategyError(
            f"Step '{name}' in strategy '{strategy}' has unknown target '{target}'",
            context=f"Expected one of: {', '.join(TARGETS)}",
        )

    return Step(
        name=str(name),
        run=str(run).strip(),
        target=target,
        continue_on_error=bool(step_raw.get("continue_on_error", False)),
    )
