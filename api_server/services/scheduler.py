# api_server/services/scheduler.py
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, cast

from pydantic import ValidationError

from api_server.db import runs as runs_db
from api_server.db import workflows as workflows_db
from api_server.services import executor, triggers
from automation import conf
from automation.timeutils import utcnow
from automation.triggers import next_trigger_at, parse_trigger_config

logger = logging.getLogger(__name__)


class WorkflowScheduler:
    """
    Background driver for time: resumes delayed runs and fires cron workflows.

    Two daemon threads poll on their own intervals. Both ticks are also
    callable directly and return how many items they processed. A tick that is
    already in progress is skipped rather than queued.
    """

    def __init__(
        self,
        enabled: Optional[bool] = None,
        poll_interval_ms: Optional[int] = None,
        batch_size: Optional[int] = None,
        cron_check_interval_ms: Optional[int] = None,
    ):
        self.enabled = conf.SCHEDULER_ENABLED if enabled is None else enabled
        self.poll_interval_ms = poll_interval_ms or conf.DELAY_POLL_INTERVAL_MS
        self.batch_size = batch_size or conf.SCHEDULER_BATCH_SIZE
        self.cron_check_interval_ms = cron_check_interval_ms or conf.CRON_CHECK_INTERVAL_MS

        self._running = False
        self._stop_requested = False
        self._lock = threading.Lock()
        self._delay_tick_lock = threading.Lock()
        self._cron_tick_lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """Start both polling threads. Returns False if disabled or already running."""
        with self._lock:
            if not self.enabled:
                logger.info("Workflow scheduler is disabled")
                return False
            if self._running:
                logger.warning("Scheduler is already running")
                return False

            self._running = True
            self._stop_requested = False
            self._threads = [
                threading.Thread(
                    target=self._loop,
                    args=("delay-poller", self.process_delayed_runs, self.poll_interval_ms),
                    name="workflow-delay-poller",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._loop,
                    args=("cron-checker", self.process_time_based_triggers, self.cron_check_interval_ms),
                    name="workflow-cron-checker",
                    daemon=True,
                ),
            ]
            for thread in self._threads:
                thread.start()

            logger.info(
                "Workflow scheduler started (poll %d ms, cron check %d ms, batch %d)",
                self.poll_interval_ms,
                self.cron_check_interval_ms,
                self.batch_size,
            )
            return True

    def stop(self, timeout: float = 5.0) -> None:
        """Stop polling and wait for the threads to finish their current tick."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_requested = True
            threads, self._threads = self._threads, []

        logger.info("Stopping workflow scheduler")
        for thread in threads:
            thread.join(timeout=timeout)
        # Manual ticks keep working after the threads are gone
        self._stop_requested = False
        logger.info("Workflow scheduler stopped")

    def _loop(self, name: str, tick: Callable[[], int], interval_ms: int) -> None:
        logger.debug("Scheduler %s started", name)
        while self._running:
            try:
                tick()
            except Exception as e:
                logger.error("Error in scheduler %s: %s", name, e, exc_info=True)

            # Sleep in short slices so stop() is honoured promptly
            deadline = time.monotonic() + interval_ms / 1000.0
            while self._running:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                time.sleep(min(1.0, remaining))

        logger.debug("Scheduler %s stopped", name)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------
    def process_delayed_runs(self) -> int:
        """Resume WAITING runs whose delay has elapsed. Returns the number attempted."""
        if not self._delay_tick_lock.acquire(blocking=False):
            logger.debug("Delayed-run tick already in progress; skipping")
            return 0

        try:
            due_runs = runs_db.find_due_runs(self.batch_size)
            if not due_runs:
                logger.debug("No delayed runs due")
                return 0

            logger.info("Processing %d delayed run(s)", len(due_runs))
            processed = 0
            for run in due_runs:
                if self._stop_requested:
                    break
                processed += 1
                try:
                    result = executor.resume_run(cast(str, run.id), cast(str, run.tenant_id))
                    logger.debug("Resumed run %s → %s", run.id, result.status)
                except Exception as e:
                    logger.error("Failed to resume run %s (workflow %s): %s", run.id, run.workflow_id, e, exc_info=True)
            return processed
        finally:
            self._delay_tick_lock.release()

    def process_time_based_triggers(self) -> int:
        """Fire published time-based workflows that are due. Returns the number fired."""
        if not self._cron_tick_lock.acquire(blocking=False):
            logger.debug("Cron tick already in progress; skipping")
            return 0

        try:
            now = utcnow()
            due = workflows_db.find_due_time_based(now, limit=self.batch_size)
            if not due:
                logger.debug("No time-based workflows due")
                return 0

            fired = 0
            for workflow in due:
                if self._stop_requested:
                    break
                workflow_id = cast(str, workflow.id)

                # Advance the schedule first so a failing trigger cannot refire every tick
                try:
                    config = parse_trigger_config(cast(Optional[Dict[str, Any]], workflow.trigger_config))
                    upcoming = next_trigger_at(config, after=now)
                except (ValidationError, ValueError) as e:
                    logger.error("Disabling schedule of workflow %s: %s", workflow_id, e)
                    upcoming = None
                workflows_db.set_next_trigger_at(workflow_id, upcoming)

                try:
                    result = triggers.handle_time_based(workflow)
                    if result.triggered:
                        fired += 1
                        logger.info("Fired time-based workflow %s (run %s, next %s)", workflow_id, result.run_id, upcoming)
                except Exception as e:
                    logger.error("Failed to fire time-based workflow %s: %s", workflow_id, e, exc_info=True)
            return fired
        finally:
            self._cron_tick_lock.release()

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._running,
            "config": {
                "enabled": self.enabled,
                "poll_interval_ms": self.poll_interval_ms,
                "batch_size": self.batch_size,
                "cron_check_interval_ms": self.cron_check_interval_ms,
            },
        }


# Global scheduler
_scheduler: Optional[WorkflowScheduler] = None
_scheduler_lock = threading.Lock()


def get_scheduler() -> WorkflowScheduler:
    """Return the process-wide scheduler, creating it from configuration on first use."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = WorkflowScheduler()
        return _scheduler


def start_scheduler() -> None:
    """Start the scheduler worker threads."""
    get_scheduler().start()


def stop_scheduler() -> None:
    """Stop the scheduler worker threads."""
    with _scheduler_lock:
        scheduler = _scheduler
    if scheduler is not None:
        scheduler.stop()
