from __future__ import annotations

from datetime import datetime, timedelta, timezone

from app.db.models.mirror_task import TASK_DEAD, TASK_PENDING
from app.storage.queue import backoff_seconds, plan_retry

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def test_backoff_doubles_and_caps() -> None:
    assert [backoff_seconds(n, base_seconds=2, max_seconds=60) for n in range(1, 7)] == [4, 8, 16, 32, 60, 60]


def test_failure_schedules_retry_with_backoff() -> None:
    plan = plan_retry(0, now=NOW, max_attempts=6, base_seconds=2, max_seconds=300)
    assert plan.status == TASK_PENDING
    assert plan.attempts == 1
    assert plan.next_attempt_at == NOW + timedelta(seconds=4)

    plan = plan_retry(3, now=NOW, max_attempts=6, base_seconds=2, max_seconds=300)
    assert plan.attempts == 4
    assert plan.next_attempt_at == NOW + timedelta(seconds=32)


def test_last_attempt_dead_letters() -> None:
    plan = plan_retry(5, now=NOW, max_attempts=6, base_seconds=2, max_seconds=300)
    assert plan.status == TASK_DEAD
    assert plan.attempts == 6


def test_single_attempt_budget_dead_letters_immediately() -> None:
    plan = plan_retry(0, now=NOW, max_attempts=1, base_seconds=2, max_seconds=300)
    assert plan.status == TASK_DEAD
