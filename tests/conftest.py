"""Shared fixtures: a throwaway allowed root, site directories, and fakes for
the pieces that would otherwise touch real accounts or real system load."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from wpcron.config.settings import RunnerConfig, build_runner_config
from wpcron.registry.records import JobOutcome, JobStatus, SiteRecord, ThrottleSignal
from wpcron.utils import current_user


@pytest.fixture
def sites_root(tmp_path: Path) -> Path:
    root = (tmp_path / "www").resolve()
    root.mkdir()
    return root


@pytest.fixture
def runner_config(tmp_path: Path, sites_root: Path) -> RunnerConfig:
    me = current_user()
    raw = {
        "runner": {
            "run_as": me,
            "registry_path": str(tmp_path / "wordpress-sites.conf"),
            "trusted_owner": me,
            "max_entries": 1000,
        },
        "security": {"allowed_roots": [str(sites_root)]},
        "scheduler": {
            "max_parallel": 2,
            "job_start_delay_seconds": 0,
            "job_timeout_seconds": 5,
            "throttle_backoff_seconds": 0.01,
            "kill_grace_seconds": 0.5,
        },
    }
    return build_runner_config(raw, config_dir=tmp_path)


@pytest.fixture
def make_site(sites_root: Path):
    def _make(name: str, *, config: bool = True, direct_entry: bool = True) -> Path:
        site = sites_root / name
        site.mkdir(parents=True)
        if config:
            (site / "wp-config.php").write_text("<?php\n", encoding="utf-8")
        if direct_entry:
            (site / "wp-cron.php").write_text("<?php\n", encoding="utf-8")
        return site

    return _make


@pytest.fixture
def write_registry(runner_config: RunnerConfig):
    def _write(lines: list[str], mode: int = 0o600) -> Path:
        path = runner_config.runner.registry_path
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        path.chmod(mode)
        return path

    return _write


class FakeMonitor:
    """Replays scripted throttle signals, then reports no pressure."""

    def __init__(self, signals: list[ThrottleSignal] | None = None):
        self._signals = list(signals or [])
        self.polls = 0

    def should_throttle(self) -> ThrottleSignal:
        self.polls += 1
        if self._signals:
            return self._signals.pop(0)
        return ThrottleSignal(False)


class FakeHandler:
    """Sleeps instead of spawning a process and tracks peak concurrency."""

    def __init__(self, *, duration: float = 0.01, fail_paths: set[str] | None = None):
        self.duration = duration
        self.fail_paths = fail_paths or set()
        self.started: list[str] = []
        self.running = 0
        self.peak = 0

    async def run(self, record: SiteRecord, cancel: asyncio.Event) -> JobOutcome:
        self.started.append(record.path)
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            try:
                await asyncio.wait_for(cancel.wait(), timeout=self.duration)
                return JobOutcome.for_record(record, JobStatus.FAILURE, detail="cancelled")
            except asyncio.TimeoutError:
                pass
        finally:
            self.running -= 1
        status = JobStatus.FAILURE if record.path in self.fail_paths else JobStatus.SUCCESS
        return JobOutcome.for_record(record, status, duration_seconds=self.duration)


@pytest.fixture
def fake_monitor() -> FakeMonitor:
    return FakeMonitor()


@pytest.fixture
def fake_handler() -> FakeHandler:
    return FakeHandler()


@pytest.fixture(autouse=True)
def _drop_runner_log_handlers():
    """main() installs stdout handlers on the root logger; detach them after each test."""
    root = logging.getLogger()
    before, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in before and type(handler) is logging.StreamHandler:
            root.removeHandler(handler)
    root.setLevel(level)
