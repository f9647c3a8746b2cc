"""
Timer-driven SLA ticking.

SlaScheduler runs the SLA clock for every tenant at a fixed interval,
either in a background daemon thread or in the foreground (for a process
supervisor such as systemd). After every pass the outcome is written to a
JSON state file so operators can see when the clock last ran.

State file:
    {state_dir}/state.json
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from govflow.errors import GovflowError

if TYPE_CHECKING:
    from govflow.service import GovernanceService

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"

# Wait after an unexpected loop failure before trying again
ERROR_BACKOFF_SECONDS = 300


class SchedulerError(GovflowError):
    """Raised when the scheduler cannot be started or stopped."""

    kind = "SCHEDULER"


@dataclass
class ScheduleStatus:
    """
    Outcome of the most recent scheduled pass.

    Attributes:
        interval_seconds: Configured interval between passes.
        running: Whether the loop is running in this process.
        last_run: When the last pass finished.
        last_run_success: Whether every tenant ticked without error.
        last_run_transitions: Severity transitions written by the last pass.
        last_run_errors: Per-tenant error messages from the last pass.
        next_run: When the next pass is due.
        total_runs: Number of passes recorded in the state file.
    """

    interval_seconds: int = 900
    running: bool = False
    last_run: datetime | None = None
    last_run_success: bool | None = None
    last_run_transitions: int = 0
    last_run_errors: dict[str, str] | None = None
    next_run: datetime | None = None
    total_runs: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert status to dictionary."""
        return {
            "interval_seconds": self.interval_seconds,
            "running": self.running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_run_success": self.last_run_success,
            "last_run_transitions": self.last_run_transitions,
            "last_run_errors": self.last_run_errors or {},
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "total_runs": self.total_runs,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleStatus:
        """Create status from dictionary."""
        return cls(
            interval_seconds=data.get("interval_seconds", 900),
            running=data.get("running", False),
            last_run=datetime.fromisoformat(data["last_run"]) if data.get("last_run") else None,
            last_run_success=data.get("last_run_success"),
            last_run_transitions=data.get("last_run_transitions", 0),
            last_run_errors=data.get("last_run_errors") or {},
            next_run=datetime.fromisoformat(data["next_run"]) if data.get("next_run") else None,
            total_runs=data.get("total_runs", 0),
        )


class SlaScheduler:
    """
    Periodic SLA clock runner.

    Example:
        scheduler = SlaScheduler(service, interval_seconds=900, state_dir=data_dir / "scheduler")

        # One pass, e.g. from an external cron job
        status = scheduler.run_once()

        # Background thread
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        service: GovernanceService,
        interval_seconds: int,
        state_dir: Path,
    ) -> None:
        self.service = service
        self.interval_seconds = interval_seconds
        self._state_dir = state_dir
        self._state_file = state_dir / STATE_FILENAME
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self, now: datetime | None = None) -> ScheduleStatus:
        """Tick every tenant once and persist the outcome."""
        results = self.service.tick_all_sla(now=now)
        finished = datetime.now(UTC)

        errors = {r.tenant_id: r.error for r in results if r.error}
        transitions = sum(len(r.transitions) for r in results)

        status = self._load_state()
        status.interval_seconds = self.interval_seconds
        status.running = self.is_running
        status.last_run = finished
        status.last_run_success = not errors
        status.last_run_transitions = transitions
        status.last_run_errors = errors
        status.next_run = finished + timedelta(seconds=self.interval_seconds)
        status.total_runs += 1
        self._save_state(status)

        logger.info(
            f"SLA pass over {len(results)} tenant(s): {transitions} transition(s), "
            f"{len(errors)} error(s)"
        )
        return status

    def start(self, foreground: bool = False) -> None:
        """
        Start the scheduling loop.

        Args:
            foreground: If True, run in the calling thread until stop() is
                called from elsewhere (or the process is interrupted).

        Raises:
            SchedulerError: If the loop is already running.
        """
        if self.is_running:
            raise SchedulerError("SLA scheduler is already running")

        self._stop_event.clear()
        if foreground:
            self._run_loop()
            return

        self._thread = threading.Thread(
            target=self._run_loop,
            name="govflow-sla-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"SLA scheduler started (interval {self.interval_seconds}s)")

    def stop(self, timeout: float | None = 10.0) -> None:
        """
        Stop the background loop and wait for it to finish.

        Raises:
            SchedulerError: If the loop is not running.
        """
        if not self.is_running:
            raise SchedulerError("SLA scheduler is not running")

        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

        status = self._load_state()
        status.running = False
        self._save_state(status)
        logger.info("SLA scheduler stopped")

    def get_status(self) -> ScheduleStatus:
        status = self._load_state()
        status.running = self.is_running
        return status

    def _run_loop(self) -> None:
        """Main loop: one pass per interval until the stop event is set."""
        logger.debug("SLA scheduler loop started")

        while not self._stop_event.is_set():
            try:
                self.run_once()
                self._stop_event.wait(self.interval_seconds)
            except Exception:
                logger.exception("Error in SLA scheduler loop")
                self._stop_event.wait(ERROR_BACKOFF_SECONDS)

        logger.debug("SLA scheduler loop stopped")

    def _load_state(self) -> ScheduleStatus:
        """Load scheduler state from disk."""
        if not self._state_file.exists():
            return ScheduleStatus(interval_seconds=self.interval_seconds)

        try:
            with open(self._state_file) as f:
                data = json.load(f)
            return ScheduleStatus.from_dict(data)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not load scheduler state: {e}")
            return ScheduleStatus(interval_seconds=self.interval_seconds)

    def _save_state(self, status: ScheduleStatus) -> None:
        """Save scheduler state to disk atomically."""
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(suffix=".json", dir=str(self._state_dir))
            with os.fdopen(temp_fd, "w") as f:
                json.dump(status.to_dict(), f, indent=2)
            os.replace(temp_path, self._state_file)
        except OSError as e:
            logger.error(f"Could not save scheduler state: {e}")
