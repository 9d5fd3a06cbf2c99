from __future__ import annotations

import logging

import pytest

from wpcron.config.settings import AggregatorConfig
from wpcron.evaluator.aggregator import OutcomeAggregator
from wpcron.registry.records import JobOutcome, JobStatus, Method


def _outcome(status: JobStatus, i: int = 0) -> JobOutcome:
    return JobOutcome(
        status=status, path=f"/var/www/site{i}", duration_seconds=1.5, owner="alice", method=Method.WP_CLI
    )


@pytest.fixture
def aggregator():
    return OutcomeAggregator(AggregatorConfig(alert_blocked_ratio=0.10))


def test_counts_sum_to_total(aggregator):
    statuses = [JobStatus.SUCCESS] * 5 + [JobStatus.FAILURE] * 2 + [JobStatus.SECURITY_BLOCKED, JobStatus.CONFIG_INVALID]
    aggregator.record_all([_outcome(s, i) for i, s in enumerate(statuses)])

    summary = aggregator.summarize(len(statuses))

    assert (summary.success, summary.failure, summary.blocked, summary.invalid) == (5, 2, 1, 1)
    assert summary.accounted == summary.total == 9
    assert not summary.interrupted


def test_one_structured_line_per_outcome(aggregator, caplog):
    caplog.set_level(logging.INFO, logger="wpcron")
    aggregator.record(_outcome(JobStatus.SUCCESS))

    [record] = [r for r in caplog.records if getattr(r, "event", None) == "job_outcome"]
    assert record.status == "success"
    assert record.path == "/var/www/site0"
    assert record.duration == 1.5
    assert record.method == "wp-cli"
    assert record.owner == "alice"
    assert record.getMessage() == "SUCCESS: /var/www/site0 (1.5s, wp-cli, user: alice)"


def test_alert_when_blocked_exceeds_ratio(aggregator, caplog):
    aggregator.record_all([_outcome(JobStatus.SECURITY_BLOCKED, i) for i in range(2)])
    aggregator.record_all([_outcome(JobStatus.SUCCESS, i) for i in range(2, 10)])

    summary = aggregator.summarize(10)

    assert summary.alert
    assert any(r.levelno == logging.CRITICAL and r.event == "security_block_alert" for r in caplog.records)


def test_no_alert_at_exactly_ten_percent(aggregator):
    aggregator.record(_outcome(JobStatus.SECURITY_BLOCKED))
    aggregator.record_all([_outcome(JobStatus.SUCCESS, i) for i in range(1, 10)])
    assert not aggregator.summarize(10).alert


def test_empty_run(aggregator):
    summary = aggregator.summarize(0)
    assert summary.total == 0
    assert not summary.alert
