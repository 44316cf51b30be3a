from __future__ import annotations

import logging
import threading

import pytest

from nuclei_worker.scanners import ProcessLaunchError, ProcessResult
from nuclei_worker.scheduler import JOB_ID, TemplateUpdater, TemplateUpdateScheduler


def test_update_templates_runs_launcher_without_arguments(monkeypatch):
    seen = []

    def fake_run_template_update(binary, timeout=None):
        seen.append(binary)
        return ProcessResult(0, ["[INF] templates updated"])

    monkeypatch.setattr("nuclei_worker.scheduler.run_template_update", fake_run_template_update)
    updater = TemplateUpdater("/nucleilauncher")
    assert updater.update_templates() == 0
    assert seen == ["/nucleilauncher"]
    assert updater.status()["exit_status"] == 0
    assert updater.status()["error"] is None


def test_update_templates_non_zero_exit_is_logged(monkeypatch, caplog):
    monkeypatch.setattr(
        "nuclei_worker.scheduler.run_template_update",
        lambda binary, timeout=None: ProcessResult(3, []),
    )
    updater = TemplateUpdater()
    with caplog.at_level(logging.WARNING, logger="nuclei_worker.scheduler"):
        assert updater.update_templates() == 3
    assert "exited with status 3" in caplog.text


def test_update_templates_launch_failure_is_not_raised(monkeypatch, caplog):
    def fail(binary, timeout=None):
        raise ProcessLaunchError("unable to start /nucleilauncher")

    monkeypatch.setattr("nuclei_worker.scheduler.run_template_update", fail)
    updater = TemplateUpdater()
    with caplog.at_level(logging.ERROR, logger="nuclei_worker.scheduler"):
        assert updater.update_templates() is None
    assert updater.status()["error"] == "unable to start /nucleilauncher"
    assert "could not start" in caplog.text


class RecordingUpdater:
    def __init__(self, error=None):
        self.ran = threading.Event()
        self.error = error

    def update_templates(self):
        self.ran.set()
        if self.error:
            raise self.error
        return 0


@pytest.fixture
def scheduler():
    schedulers = []

    def factory(updater, **kwargs):
        instance = TemplateUpdateScheduler(updater, **kwargs)
        schedulers.append(instance)
        return instance

    yield factory
    for instance in schedulers:
        instance.shutdown()


def test_scheduler_registers_daily_job(scheduler):
    instance = scheduler(RecordingUpdater())
    instance.start()
    assert instance.running
    next_run = instance.next_run_time()
    assert next_run is not None
    assert (next_run.hour, next_run.minute, next_run.second) == (0, 0, 0)

    instance.shutdown()
    assert not instance.running
    assert instance.next_run_time() is None


def test_scheduler_start_is_idempotent(scheduler):
    instance = scheduler(RecordingUpdater())
    instance.start()
    first = instance._scheduler
    instance.start()
    assert instance._scheduler is first
    assert first.get_job(JOB_ID) is not None


def test_scheduler_can_run_at_startup(scheduler):
    updater = RecordingUpdater()
    instance = scheduler(updater, cron="30 3 * * *")
    instance.start(run_now=True)
    assert updater.ran.wait(5)
    next_run = instance.next_run_time()
    assert (next_run.hour, next_run.minute) == (3, 30)


def test_scheduler_job_errors_do_not_escape(scheduler):
    updater = RecordingUpdater(error=RuntimeError("disk full"))
    instance = scheduler(updater)
    instance.start(run_now=True)
    assert updater.ran.wait(5)
    assert instance.running


def test_invalid_cron_is_rejected():
    instance = TemplateUpdateScheduler(RecordingUpdater(), cron="every day")
    with pytest.raises(ValueError):
        instance.start()
