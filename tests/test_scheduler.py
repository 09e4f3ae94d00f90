import threading

import pytest

from busradar.models import ScanSummary
from busradar.scheduler import ScanScheduler


class BlockingRunner:

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0
        self._running = False

    @property
    def running(self):
        return self._running

    def run(self):
        self._running = True
        self.calls += 1
        self.started.set()
        self.release.wait(5)
        self._running = False
        return ScanSummary(executed_at="now", status="success")


def test_trigger_runs_scan_in_background():
    runner = BlockingRunner()
    runner.release.set()
    scheduler = ScanScheduler(runner, interval_seconds=3600, startup_delay_seconds=None)
    scheduler.start()
    try:
        assert scheduler.trigger() is True
        assert runner.started.wait(5)
        assert scheduler.wait_idle(5)
        assert runner.calls == 1
    finally:
        scheduler.stop(timeout=5)
    assert not scheduler.alive


def test_trigger_while_running_is_coalesced():
    runner = BlockingRunner()
    scheduler = ScanScheduler(runner, interval_seconds=3600, startup_delay_seconds=None)
    scheduler.start()
    try:
        assert scheduler.trigger() is True
        assert runner.started.wait(5)

        assert scheduler.trigger() is False
        assert scheduler.trigger() is False

        runner.release.set()
        assert scheduler.wait_idle(5)
        assert runner.calls == 1
    finally:
        scheduler.stop(timeout=5)


def test_startup_delay_triggers_first_scan():
    runner = BlockingRunner()
    runner.release.set()
    scheduler = ScanScheduler(runner, interval_seconds=3600, startup_delay_seconds=0.05)
    scheduler.start()
    try:
        assert runner.started.wait(5)
    finally:
        scheduler.stop(timeout=5)
    assert runner.calls == 1


def test_runner_exception_does_not_kill_scheduler(caplog):

    class ExplodingRunner(BlockingRunner):

        def run(self):
            self.calls += 1
            self.started.set()
            raise RuntimeError("boom")

    runner = ExplodingRunner()
    scheduler = ScanScheduler(runner, interval_seconds=3600, startup_delay_seconds=None)
    scheduler.start()
    try:
        with caplog.at_level("ERROR"):
            assert scheduler.trigger() is True
            assert scheduler.wait_idle(5)
        assert scheduler.alive
        assert scheduler.trigger() is True
        assert scheduler.wait_idle(5)
        assert runner.calls == 2
    finally:
        scheduler.stop(timeout=5)
    assert "Scan raised unexpectedly" in caplog.text


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        ScanScheduler(BlockingRunner(), interval_seconds=0)
