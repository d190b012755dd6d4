from datetime import datetime, timedelta

import pytest

from conftest import FakeClock
from core.config_manager import SystemConfig
from core.exceptions import ValidationError
from core.incident_log import IncidentKind
from core.models import (
    Milestone,
    MilestoneStatus,
    RoadmapStatus,
    TaskGeneration,
)
from core.roadmap_pipeline import RoadmapPipeline


def test_run_builds_ready_roadmap_with_first_milestone_tasks(make_goal, pipeline, repos, planner):
    make_goal()

    result = pipeline.run("g1")

    assert result.succeeded
    assert result.milestones == 3
    assert result.tasks_created == 3
    assert not result.degraded

    milestones = repos.milestones.list_for_goal("g1")
    assert [m.milestone_id for m in milestones] == ["g1-m1", "g1-m2", "g1-m3"]
    assert [m.sequence for m in milestones] == [1, 2, 3]
    assert [m.status for m in milestones] == [
        MilestoneStatus.ACTIVE,
        MilestoneStatus.LOCKED,
        MilestoneStatus.LOCKED,
    ]
    assert milestones[0].task_generation == TaskGeneration.READY

    tasks = repos.tasks.list_for_milestone("g1-m1")
    assert [t.task_id for t in tasks] == ["g1-m1-t1", "g1-m1-t2", "g1-m1-t3"]
    assert all(t.goal_id == "g1" and t.user_id == "u1" for t in tasks)
    assert planner.seen_goals[0].title == "Learn piano"

    goal = repos.goals.get("g1")
    assert goal.roadmap_status == RoadmapStatus.READY
    assert goal.roadmap_error is None


def test_start_claims_before_any_stage_runs(make_goal, pipeline, repos, planner):
    make_goal()

    handle = pipeline.start("g1")

    assert handle.created
    assert handle.execution_id
    assert repos.goals.get("g1").roadmap_status == RoadmapStatus.GENERATING
    assert planner.milestone_calls == 0


def test_start_is_noop_while_generating(make_goal, pipeline):
    make_goal()

    first = pipeline.start("g1")
    second = pipeline.start("g1")

    assert not second.created
    assert second.execution_id == first.execution_id


def test_start_is_noop_when_ready(make_goal, pipeline, planner):
    make_goal()
    pipeline.run("g1")

    handle = pipeline.start("g1")
    result = pipeline.run("g1")

    assert not handle.created
    assert result.roadmap_status == RoadmapStatus.READY
    assert planner.milestone_calls == 1


def test_start_checks_ownership(make_goal, pipeline):
    from core.exceptions import NotFoundError

    make_goal()
    with pytest.raises(NotFoundError):
        pipeline.start("g1", user_id="someone-else")


def test_stage_one_exhaustion_fails_roadmap_then_restart_retries(
    make_goal, pipeline, repos, planner, reporter, sleeps
):
    make_goal()
    planner.milestone_failures = 99

    result = pipeline.run("g1")

    assert result.roadmap_status == RoadmapStatus.FAILED
    assert planner.milestone_calls == 3  # first call + 2 retries
    assert len(sleeps) == 2
    assert repos.milestones.list_for_goal("g1") == []
    goal = repos.goals.get("g1")
    assert goal.roadmap_status == RoadmapStatus.FAILED
    assert "planner unavailable" in goal.roadmap_error
    assert [i.kind for i in reporter.query()] == [IncidentKind.ROADMAP_FAILED.value]

    planner.milestone_failures = 0
    retried = pipeline.run("g1")

    assert retried.succeeded
    assert planner.milestone_calls == 4
    assert len(repos.milestones.list_for_goal("g1")) == 3


def test_zero_milestones_is_a_failure(make_goal, pipeline, repos, planner):
    make_goal()
    planner.milestones = 0

    result = pipeline.run("g1")

    assert result.roadmap_status == RoadmapStatus.FAILED
    assert repos.milestones.list_for_goal("g1") == []


def test_backoff_doubles_between_attempts(make_goal, repos, planner, reporter):
    make_goal()
    sleeps = []
    settings = SystemConfig(PIPELINE_STAGE_RETRIES=2, PIPELINE_BACKOFF_SECONDS=1.5)
    pipeline = RoadmapPipeline(repos, planner, reporter, settings, sleep=sleeps.append)
    planner.milestone_failures = 2

    result = pipeline.run("g1")

    assert result.succeeded
    assert sleeps == [1.5, 3.0]


def test_stage_two_write_failure_is_retried_without_regenerating(
    make_goal, pipeline, repos, planner, sleeps, monkeypatch
):
    make_goal()
    real_create_batch = repos.milestones.create_batch
    calls = {"n": 0}

    def flaky_create_batch(items):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OSError("disk full")
        return real_create_batch(items)

    monkeypatch.setattr(repos.milestones, "create_batch", flaky_create_batch)
    result = pipeline.run("g1")

    assert result.succeeded
    assert result.roadmap_status == RoadmapStatus.READY
    assert planner.milestone_calls == 1
    assert calls["n"] == 2
    assert len(sleeps) == 1
    assert len(repos.milestones.list_for_goal("g1")) == 3


def test_stage_two_exhaustion_fails_roadmap(make_goal, pipeline, repos, planner, reporter, monkeypatch):
    make_goal()

    def broken_create_batch(items):
        raise OSError("disk full")

    monkeypatch.setattr(repos.milestones, "create_batch", broken_create_batch)
    result = pipeline.run("g1")

    assert result.roadmap_status == RoadmapStatus.FAILED
    assert "disk full" in result.error
    assert planner.milestone_calls == 1
    assert repos.milestones.list_for_goal("g1") == []
    assert repos.goals.get("g1").roadmap_status == RoadmapStatus.FAILED
    assert [i.kind for i in reporter.query()] == [IncidentKind.ROADMAP_FAILED.value]


def test_stage_three_exhaustion_degrades_and_redrive_recovers(
    make_goal, pipeline, repos, planner, reporter
):
    make_goal()
    planner.task_failures = 99

    result = pipeline.run("g1")

    assert result.roadmap_status == RoadmapStatus.READY
    assert result.degraded
    assert result.tasks_created == 0
    first = repos.milestones.get("g1-m1")
    assert first.status == MilestoneStatus.ACTIVE
    assert first.task_generation == TaskGeneration.FAILED
    assert repos.tasks.list_for_milestone("g1-m1") == []
    open_incidents = reporter.query(kind=IncidentKind.TASK_GENERATION_DEGRADED)
    assert [i.entity_id for i in open_incidents] == ["g1-m1"]

    planner.task_failures = 0
    report = pipeline.redrive_degraded()

    assert report.succeeded == ["g1-m1"]
    assert planner.milestone_calls == 1
    assert len(repos.tasks.list_for_milestone("g1-m1")) == 3
    assert repos.milestones.get("g1-m1").task_generation == TaskGeneration.READY
    assert repos.goals.get("g1").roadmap_status == RoadmapStatus.READY
    assert reporter.query(kind=IncidentKind.TASK_GENERATION_DEGRADED) == []


def test_restart_reuses_existing_milestones(make_goal, pipeline, repos, planner):
    make_goal(roadmap_status=RoadmapStatus.FAILED)
    repos.milestones.create_batch(
        [
            Milestone(
                milestone_id=f"g1-m{i}",
                goal_id="g1",
                user_id="u1",
                sequence=i,
                title=f"Saved {i}",
                status=MilestoneStatus.ACTIVE if i == 1 else MilestoneStatus.LOCKED,
            )
            for i in (1, 2)
        ]
    )

    result = pipeline.run("g1")

    assert result.succeeded
    assert result.milestones_reused
    assert planner.milestone_calls == 0
    assert [m.title for m in repos.milestones.list_for_goal("g1")] == ["Saved 1", "Saved 2"]
    assert len(repos.tasks.list_for_milestone("g1-m1")) == 3


def test_timeout_before_ready_fails_the_roadmap(make_goal, repos, planner, reporter):
    make_goal()
    clock = FakeClock()
    planner.clock = clock
    planner.milestone_cost = 20
    settings = SystemConfig(PIPELINE_TIMEOUT_SECONDS=10, PIPELINE_BACKOFF_SECONDS=0.0)
    pipeline = RoadmapPipeline(repos, planner, reporter, settings, sleep=lambda s: None, clock=clock)

    result = pipeline.run("g1")

    assert result.roadmap_status == RoadmapStatus.FAILED
    assert repos.goals.get("g1").roadmap_status == RoadmapStatus.FAILED
    assert planner.task_calls == 0


def test_timeout_during_task_generation_degrades(make_goal, repos, planner, reporter):
    make_goal()
    clock = FakeClock()
    planner.clock = clock
    planner.milestone_cost = 9
    planner.task_failures = 1
    settings = SystemConfig(PIPELINE_TIMEOUT_SECONDS=10, PIPELINE_BACKOFF_SECONDS=2.0)
    pipeline = RoadmapPipeline(repos, planner, reporter, settings, sleep=lambda s: None, clock=clock)

    result = pipeline.run("g1")

    assert result.roadmap_status == RoadmapStatus.READY
    assert result.degraded
    assert planner.task_calls == 1
    assert repos.milestones.get("g1-m1").task_generation == TaskGeneration.FAILED


def test_abandoned_claim_is_expired_and_reclaimed(make_goal, pipeline, repos, reporter):
    stale = (datetime.now() - timedelta(hours=2)).isoformat()
    make_goal(
        roadmap_status=RoadmapStatus.GENERATING,
        roadmap_execution_id="old-run",
        roadmap_started_at=stale,
    )

    handle = pipeline.start("g1")

    assert handle.created
    assert handle.execution_id != "old-run"
    assert repos.goals.get("g1").roadmap_status == RoadmapStatus.GENERATING
    assert [i.kind for i in reporter.query()] == [IncidentKind.ROADMAP_FAILED.value]


def test_expire_stale_only_touches_old_claims(make_goal, pipeline, repos):
    stale = (datetime.now() - timedelta(hours=2)).isoformat()
    make_goal("old", roadmap_status=RoadmapStatus.GENERATING, roadmap_execution_id="a", roadmap_started_at=stale)
    make_goal(
        "fresh",
        roadmap_status=RoadmapStatus.GENERATING,
        roadmap_execution_id="b",
        roadmap_started_at=datetime.now().isoformat(),
    )

    assert pipeline.expire_stale() == ["old"]
    assert repos.goals.get("old").roadmap_status == RoadmapStatus.FAILED
    assert repos.goals.get("fresh").roadmap_status == RoadmapStatus.GENERATING


def test_superseded_handle_does_nothing(make_goal, pipeline, repos, planner):
    make_goal()
    handle = pipeline.start("g1")
    repos.goals.update("g1", {"roadmap_execution_id": "someone-else"})

    result = pipeline.execute(handle)

    assert planner.milestone_calls == 0
    assert result.roadmap_status == RoadmapStatus.GENERATING
    assert repos.milestones.list_for_goal("g1") == []


def test_generate_milestone_tasks_is_idempotent(make_goal, pipeline, repos, planner):
    make_goal()
    pipeline.run("g1")
    milestone = repos.milestones.get("g1-m1")

    assert pipeline.generate_milestone_tasks(milestone) == 0
    assert planner.task_calls == 1
    assert len(repos.tasks.list_for_milestone("g1-m1")) == 3

    assert pipeline.generate_milestone_tasks(milestone, force=True) == 3
    ids = [t.task_id for t in repos.tasks.list_for_milestone("g1-m1")]
    assert sorted(ids) == [f"g1-m1-t{i}" for i in range(1, 7)]


def test_generate_tasks_for_locked_milestone_is_rejected(make_goal, pipeline, repos):
    make_goal()
    pipeline.run("g1")

    with pytest.raises(ValidationError):
        pipeline.generate_milestone_tasks(repos.milestones.get("g1-m2"))
