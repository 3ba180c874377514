"""
Health file writer for the polling agent.

Writes a JSON health file at a configurable path with four fields:
- last_inner_ts: ISO timestamp of the most recent completed inner pass.
- last_outer_ts: ISO timestamp of the most recent completed outer pass.
- last_error: Text of the current error, or null once a pass succeeds.
- consecutive_errors: Failed passes since the last successful one.

The file is overwritten on every state change, giving container health
checks the same liveness signal the heartbeat channels give MQTT consumers.

CHANGELOG:
- 2026-10-17: Track inner/outer passes and error state for the MQTT agent

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes agent health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_inner_ts: str | None = None
        self._last_outer_ts: str | None = None
        self._last_error: str | None = None
        self._consecutive_errors: int = 0

    def record_inner_pass(self) -> None:
        """Record a completed inner pass and write health file."""
        self._last_inner_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_outer_pass(self) -> None:
        """Record a completed outer pass and write health file."""
        self._last_outer_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_error(self, message: str) -> None:
        """Record a failed pass and write health file.

        Args:
            message: The error text published on the error channel.
        """
        self._last_error = message
        self._consecutive_errors += 1
        self._write()

    def record_cleared(self) -> None:
        """Record a fully successful pass and write health file."""
        self._last_error = None
        self._consecutive_errors = 0
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_inner_ts": self._last_inner_ts,
            "last_outer_ts": self._last_outer_ts,
            "last_error": self._last_error,
            "consecutive_errors": self._consecutive_errors,
        }
        self.path.write_text(json.dumps(data))
