"""Append-only record of dispatched commands."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


class EventLogger:
    """Appends one ``timestamp ::: hosts : command`` line per dispatch.

    Writing is best effort: a log that cannot be written is reported once
    as a warning and never fails the run.
    """

    def __init__(self, path: str | Path | None):
        self.path = Path(path).expanduser() if path else None
        self._warned = False

    def record(self, hosts: str, command: str) -> None:
        if self.path is None:
            return
        timestamp = datetime.now().isoformat(timespec="seconds")
        line = f"{timestamp} ::: {hosts} : {command}\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(line)
        except OSError as e:
            if not self._warned:
                logger.warning("Cannot write run log %s: %s", self.path, e)
                self._warned = True
