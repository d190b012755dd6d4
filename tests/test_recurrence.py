from datetime import date

import pytest

from core.models import Frequency, RecurrenceRule, RuleStatus, Task
from core.recurrence import RecurrenceMaterializer, occurrences


def _rule(rule_id="r1", frequency=Frequency.DAILY, anchor=date(2026, 1, 1), **fields) -> RecurrenceRule:
    return RecurrenceRule(
        recurrence_rule_id=rule_id,
        user_id=fields.pop("user_id", "u1"),
        title=fields.pop("title", "Morning run"),
        anchor_date=anchor,
        frequency=frequency,
        **fields,
    )


def _days(*days):
    return [date(2026, 1, d) for d in days]


# 2026-01-01 is a Thursday, 2026-01-05 a Monday.

def test_daily_with_interval():
    rule = _rule(interval=2)
    assert occurrences(rule, date(2026, 1, 1), date(2026, 1, 7)) == _days(1, 3, 5, 7)


def test_weekdays_and_weekends():
    weekdays = _rule(frequency=Frequency.WEEKDAYS, anchor=date(2026, 1, 5))
    weekends = _rule(frequency=Frequency.WEEKENDS, anchor=date(2026, 1, 5))

    assert occurrences(weekdays, date(2026, 1, 5), date(2026, 1, 11)) == _days(5, 6, 7, 8, 9)
    assert occurrences(weekends, date(2026, 1, 5), date(2026, 1, 11)) == _days(10, 11)


def test_weekly_days_every_other_week():
    rule = _rule(frequency=Frequency.WEEKLY, anchor=date(2026, 1, 5), interval=2, days_of_week=[0, 2])
    assert occurrences(rule, date(2026, 1, 5), date(2026, 1, 25)) == _days(5, 7, 19, 21)


def test_weekly_defaults_to_anchor_weekday():
    rule = _rule(frequency=Frequency.WEEKLY)
    assert occurrences(rule, date(2026, 1, 1), date(2026, 1, 15)) == _days(1, 8, 15)


def test_occurrences_respect_anchor_and_end_date():
    rule = _rule(anchor=date(2026, 1, 3), end_date=date(2026, 1, 5))
    assert occurrences(rule, date(2026, 1, 1), date(2026, 1, 10)) == _days(3, 4, 5)


@pytest.fixture
def materializer(repos):
    return RecurrenceMaterializer(repos)


def test_first_run_starts_at_anchor_inclusive(repos, materializer):
    repos.rules.create(_rule())

    report = materializer.run_once(date(2026, 1, 3))

    assert report.tasks_created == 3
    assert report.created_task_ids == ["r1@2026-01-01", "r1@2026-01-02", "r1@2026-01-03"]
    task = repos.tasks.get("r1@2026-01-02")
    assert task.due_date == date(2026, 1, 2)
    assert task.occurrence_date == date(2026, 1, 2)
    assert task.recurrence_rule_id == "r1"
    assert repos.rules.get("r1").last_materialized_date == date(2026, 1, 3)


def test_running_twice_equals_running_once(repos, materializer):
    repos.rules.create(_rule())
    materializer.run_once(date(2026, 1, 3))
    before = sorted(t.task_id for t in repos.tasks.query())

    again = materializer.run_once(date(2026, 1, 3))

    assert again.tasks_created == 0
    assert again.ok
    assert sorted(t.task_id for t in repos.tasks.query()) == before
    assert repos.rules.get("r1").last_materialized_date == date(2026, 1, 3)


def test_catch_up_covers_only_the_new_window(repos, materializer):
    repos.rules.create(_rule())
    materializer.run_once(date(2026, 1, 3))

    report = materializer.run_once(date(2026, 1, 6))

    assert report.created_task_ids == ["r1@2026-01-04", "r1@2026-01-05", "r1@2026-01-06"]
    assert len(repos.tasks.query(recurrence_rule_id="r1")) == 6


def test_existing_occurrence_counts_as_duplicate(repos, materializer):
    repos.rules.create(_rule())
    repos.tasks.create(
        Task(task_id="r1@2026-01-02", user_id="u1", title="Morning run", due_date=date(2026, 1, 2))
    )

    report = materializer.run_once(date(2026, 1, 3))

    assert report.tasks_created == 2
    assert report.duplicates == 1
    assert report.ok
    assert repos.rules.get("r1").last_materialized_date == date(2026, 1, 3)


def test_marker_never_moves_backwards(repos, materializer):
    repos.rules.create(_rule())
    materializer.run_once(date(2026, 1, 10))

    report = materializer.run_once(date(2026, 1, 5))

    assert report.tasks_created == 0
    assert repos.rules.get("r1").last_materialized_date == date(2026, 1, 10)


def test_rule_failures_are_isolated(repos, materializer, monkeypatch):
    repos.rules.create(_rule("bad"))
    repos.rules.create(_rule("good"))
    real_create = repos.tasks.create

    def flaky_create(task):
        if task.recurrence_rule_id == "bad":
            raise RuntimeError("disk full")
        return real_create(task)

    monkeypatch.setattr(repos.tasks, "create", flaky_create)
    report = materializer.run_once(date(2026, 1, 2))

    assert list(report.failed_rules) == ["bad"]
    assert "disk full" in report.failed_rules["bad"]
    assert report.tasks_created == 2
    assert repos.rules.get("bad").last_materialized_date is None
    assert repos.rules.get("good").last_materialized_date == date(2026, 1, 2)


def test_paused_and_ended_rules_are_skipped(repos, materializer):
    repos.rules.create(_rule("paused", status=RuleStatus.PAUSED))
    repos.rules.create(_rule("ended", end_date=date(2026, 1, 2), last_materialized_date=date(2026, 1, 2)))

    report = materializer.run_once(date(2026, 1, 5))

    assert report.rules_processed == 1
    assert report.tasks_created == 0
    assert repos.tasks.query() == []
    assert repos.rules.get("ended").last_materialized_date == date(2026, 1, 5)
    assert repos.rules.get("paused").last_materialized_date is None


def test_end_date_clips_the_window_but_marker_advances(repos, materializer):
    repos.rules.create(_rule(end_date=date(2026, 1, 2)))

    report = materializer.run_once(date(2026, 1, 5))

    assert report.created_task_ids == ["r1@2026-01-01", "r1@2026-01-02"]
    assert repos.rules.get("r1").last_materialized_date == date(2026, 1, 5)
