from datetime import date

import pytest

from core.models import MilestoneStatus, TaskGeneration
from scheduler import daily_tick as tick


@pytest.fixture
def system_config(tmp_path, monkeypatch):
    path = tmp_path / "system.yaml"
    monkeypatch.setattr(tick, "SYSTEM_CONFIG_PATH", path)

    def write(mode):
        path.write_text(f"current_pause_mode: {mode}\n", encoding="utf-8")

    return write


def test_missing_system_config_means_normal(system_config):
    assert tick.get_pause_mode() == "normal"
    assert tick.can_proceed()[0]


@pytest.mark.parametrize("mode", ["soft_pause", "hard_pause", "maintenance"])
def test_paused_tick_writes_nothing(system_config, service, repos, mode):
    system_config(mode)
    service.create_rule("u1", "Read", "daily", anchor_date="2026-01-01")

    report = tick.daily_tick(date(2026, 1, 3), service=service)

    assert not report.ran
    assert report.materialization is None
    assert repos.tasks.query() == []


def test_unknown_mode_defaults_to_normal(system_config):
    system_config("vacation")
    can_run, reason = tick.can_proceed()
    assert can_run
    assert "vacation" in reason


def test_tick_materializes_and_redrives(system_config, service, repos, planner):
    system_config("normal")
    service.create_rule("u1", "Read", "daily", anchor_date="2026-01-01")
    planner.task_failures = 99
    goal = service.create_goal("u1", "Learn piano", generate_roadmap=True)
    first = f"{goal.goal_id}-m1"
    assert repos.milestones.get(first).task_generation == TaskGeneration.FAILED
    planner.task_failures = 0

    report = tick.daily_tick(date(2026, 1, 3), service=service)

    assert report.ran
    assert report.materialization.tasks_created == 3
    assert report.expired_goals == []
    assert report.redrive.succeeded == [first]
    assert repos.milestones.get(first).status == MilestoneStatus.ACTIVE
    assert len(repos.tasks.list_for_milestone(first)) == 3

    again = tick.daily_tick(date(2026, 1, 3), service=service)
    assert again.materialization.tasks_created == 0
    assert again.redrive.attempted == []
