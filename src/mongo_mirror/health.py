# src/mongo_mirror/health.py
"""Liveness reporting through a heartbeat file."""

import logging
import os
import time
from pathlib import Path
from typing import Optional

logger: logging.Logger = logging.getLogger(__name__)


class HealthReporter:
    """
    Overwrites a file with the current time after every successful cycle.

    The file holds milliseconds since the epoch and nothing else. External
    monitoring treats a missing or stale file as a stalled replicator.
    """

    def __init__(self, path: Optional[Path]) -> None:
        """
        Initialize the reporter.

        Args:
            path (Path, optional): The heartbeat file. None disables reporting.
        """
        self._path: Optional[Path] = path
        self.last_beat_ms: Optional[int] = None

    def beat(self) -> None:
        """Records liveness. Failures are logged and never stop replication."""
        now_ms: int = time.time_ns() // 1_000_000
        self.last_beat_ms = now_ms
        if self._path is None:
            return
        tmp_path: Path = self._path.with_name(f".{self._path.name}.tmp")
        try:
            tmp_path.write_text(str(now_ms), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            logger.error(f"Failed to write health file '{self._path}': {e}")
