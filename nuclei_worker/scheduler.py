"""
Daily refresh of the nuclei templates.

The launcher refreshes templates when called without arguments. The job runs
on its own APScheduler thread and never touches the message path.
"""
from __future__ import annotations

import logging
import threading
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from nuclei_worker.models import utc_now_iso
from nuclei_worker.scanners import ProcessLaunchError, run_template_update

LOGGER = logging.getLogger(__name__)

JOB_ID = "nuclei_template_update"
DEFAULT_CRON = "0 0 * * *"


class TemplateUpdater:
    def __init__(self, binary: str = "/nucleilauncher", timeout: float | None = None):
        self.binary = binary
        self.timeout = timeout
        self._lock = threading.Lock()
        self.last_run: dict[str, Any] = {}

    def update_templates(self) -> int | None:
        """Returns the launcher exit status, or ``None`` when it could not start."""
        LOGGER.info("Nuclei : Update template")
        started_at = utc_now_iso()
        try:
            result = run_template_update(self.binary, timeout=self.timeout)
        except ProcessLaunchError as exc:
            LOGGER.error("Nuclei template update could not start: %s", exc)
            self._remember(started_at, None, str(exc))
            return None

        if result.exit_status == 0:
            LOGGER.info("Nuclei template update exited with status %s", result.exit_status)
        else:
            LOGGER.warning(
                "Nuclei template update exited with status %s%s",
                result.exit_status,
                " (timed out)" if result.timed_out else "",
            )
        self._remember(started_at, result.exit_status, None)
        return result.exit_status

    def _remember(self, started_at: str, exit_status: int | None, error: str | None) -> None:
        with self._lock:
            self.last_run = {
                "started_at": started_at,
                "finished_at": utc_now_iso(),
                "exit_status": exit_status,
                "error": error,
            }

    def status(self) -> dict[str, Any]:
        with self._lock:
            return dict(self.last_run)


class TemplateUpdateScheduler:
    def __init__(self, updater: TemplateUpdater, cron: str = DEFAULT_CRON, timezone: str = "UTC"):
        self.updater = updater
        self.cron = cron
        self.timezone = timezone
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _run_job(self) -> None:
        try:
            self.updater.update_templates()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Template update job failed")

    def start(self, run_now: bool = False) -> None:
        if self._scheduler is not None:
            LOGGER.info("Template scheduler already running")
            return

        trigger = CronTrigger.from_crontab(self.cron, timezone=self.timezone)
        self._scheduler = BackgroundScheduler(daemon=True, timezone=self.timezone)
        self._scheduler.add_job(
            func=self._run_job,
            trigger=trigger,
            id=JOB_ID,
            name="Update nuclei templates",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if run_now:
            self._scheduler.add_job(func=self._run_job, id=f"{JOB_ID}_startup", name="Update nuclei templates at startup")
        self._scheduler.start()
        LOGGER.info("Template scheduler started (cron: %s %s)", self.cron, self.timezone)

    def next_run_time(self):
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            LOGGER.info("Template scheduler stopped")
