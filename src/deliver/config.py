"""Configuration loader for deliver."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import yaml

from .errors import ConfigError, MissingRequiredConfig

PROJECT_DIR = ".deliver"
CONFIG_FILE = "config.yml"

DEFAULTS: dict[str, str] = {
    "strategy": "shell",
    "branch": "main",
    "mode": "compact",
    "supervisor": "systemd",
    "ssh_timeout": "5",
    "port": "22",
    "ssh_key": "",
    "deliver_to": "",
    "log_file": f"{PROJECT_DIR}/deliver.log",
}

REQUIRED = ("app", "hosts", "user", "strategy")

# Settings that may be supplied when deliver is invoked
OVERRIDABLE = ("hosts", "strategy", "branch", "mode")

ENV_PREFIX = "DELIVER_"

_HOST_SEPARATORS = re.compile(r"[\s,]+")

# {name} placeholders; shell ${VAR} and other braces are not touched
_PLACEHOLDER = re.compile(r"(?<!\$)\{(\w+)\}")


@dataclass(frozen=True)
class Host:
    """A remote deployment target."""

    address: str
    user: str

    def __str__(self) -> str:
        if not self.user:
            return self.address
        return f"{self.user}@{self.address}"


@dataclass(frozen=True)
class Configuration:
    """Merged, read-only settings for one run."""

    values: Mapping[str, str] = field(default_factory=dict)
    source_path: Path | None = None  # Project file the settings came from

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def __getitem__(self, key: str) -> str:
        return self.values[key]

    def __contains__(self, key: object) -> bool:
        return key in self.values

    def get(self, key: str, default: str = "") -> str:
        return self.values.get(key, default)

    def render(
        self,
        template: str,
        host: Host | None = None,
        index: int = 0,
        strict: bool = False,
    ) -> str:
        """Substitute settings, and host fields when given, into a command template.

        Only ``{name}`` placeholders are replaced. Shell syntax such as
        ``${VAR:-x}``, ``{}`` or ``f{,.bak}`` is passed through unchanged.
        Unknown names are left in place, or raise ConfigError when ``strict``.
        """
        values = dict(self.values)
        if host is not None:
            values.update(
                host=str(host),
                address=host.address,
                host_user=host.user,
                host_index=str(index),
            )

        def substitute(match: re.Match) -> str:
            name = match.group(1)
            if name in values:
                return values[name]
            if strict:
                raise ConfigError(
                    f"Unknown placeholder '{match.group(0)}' in command: {template}",
                    context=f"Known names: {', '.join(sorted(values))}",
                )
            return match.group(0)

        return _PLACEHOLDER.sub(substitute, template)

    @property
    def hosts(self) -> list[Host]:
        user = self.get("user")
        return [Host(address, user) for address in parse_hosts(self.get("hosts"))]

    @property
    def mode(self) -> str:
        return self.get("mode", DEFAULTS["mode"])

    @property
    def ssh_timeout(self) -> float:
        try:
            return float(self.get("ssh_timeout", DEFAULTS["ssh_timeout"]))
        except ValueError:
            return float(DEFAULTS["ssh_timeout"])

    @property
    def port(self) -> int:
        try:
            return int(self.get("port", DEFAULTS["port"]))
        except ValueError:
            return int(DEFAULTS["port"])


@dataclass(frozen=True)
class CheckResult:
    """One row of the configuration check table."""

    key: str
    value: str
    ok: bool


def parse_hosts(raw: str) -> list[str]:
    """Split a comma and/or whitespace separated host list, keeping duplicates."""
    return [part for part in _HOST_SEPARATORS.split(raw or "") if part]


def normalize_hosts(raw: str) -> str:
    return " ".join(parse_hosts(raw))


def resolve(
    defaults: Mapping[str, Any],
    file_config: Mapping[str, Any] | None,
    runtime_overrides: Mapping[str, Any] | None,
    validate: bool = True,
    source_path: Path | None = None,
) -> Configuration:
    """Merge the three configuration layers into one Configuration.

    Runtime overrides are snapshotted first and reapplied last, so an
    invocation-time value always wins over both the defaults and the file.
    When ``validate`` is true, every empty required setting is collected
    and reported together in a single MissingRequiredConfig.
    """
    snapshot = {
        key: _stringify(value)
        for key, value in (runtime_overrides or {}).items()
        if key in OVERRIDABLE and value is not None
    }

    merged = {key: _stringify(value) for key, value in defaults.items()}
    for key, value in (file_config or {}).items():
        merged[str(key)] = _stringify(value)
    merged.update(snapshot)

    merged["hosts"] = normalize_hosts(merged.get("hosts", ""))
    if not merged.get("deliver_to") and merged.get("app"):
        merged["deliver_to"] = f"~/{merged['app']}"

    config = Configuration(merged, source_path=source_path)
    if validate:
        missing = [row.key for row in check_config(config) if not row.ok]
        if missing:
            raise MissingRequiredConfig(missing)
    return config


def check_config(
    config: Configuration, extra_required: Iterable[str] = ()
) -> list[CheckResult]:
    """Check every required setting, returning one row per key."""
    keys = list(REQUIRED)
    for key in extra_required:
        if key not in keys:
            keys.append(key)
    return [
        CheckResult(key=key, value=config.get(key), ok=bool(config.get(key).strip()))
        for key in keys
    ]


def load_project_file(config_path: str | Path) -> dict[str, Any]:
    """Load the project file; a missing file is the same as an empty one."""
    config_path = Path(config_path)
    if not config_path.exists():
        return {}

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}", context=str(e)) from e
    except OSError as e:
        raise ConfigError(f"Cannot read {config_path}", context=str(e)) from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return raw


def overrides_from_env(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect DELIVER_* runtime overrides from the environment."""
    environ = os.environ if environ is None else environ
    overrides = {}
    for key in OVERRIDABLE:
        value = environ.get(f"{ENV_PREFIX}{key.upper()}")
        if value:
            overrides[key] = value
    return overrides


def load_config(
    project_dir: str | Path = ".",
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    validate: bool = True,
) -> Configuration:
    """Load the effective configuration for a project directory."""
    project_dir = Path(project_dir).resolve()
    config_path = project_dir / PROJECT_DIR / CONFIG_FILE

    runtime = overrides_from_env(environ)
    runtime.update({k: v for k, v in (overrides or {}).items() if v is not None})

    file_config = load_project_file(config_path)
    return resolve(
        DEFAULTS,
        file_config,
        runtime,
        validate=validate,
        source_path=config_path if config_path.exists() else None,
    )


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return " ".join(_stringify(item) for item in value)
    return str(value)
