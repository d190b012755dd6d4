from click.testing import CliRunner

from cli.quest_cmd import cli
from core.incident_log import IncidentKind
from core.quest_service import set_quest_service


def test_materialize_reports_created_tasks(service):
    set_quest_service(service)
    service.create_rule("u1", "Read", "daily", anchor_date="2026-01-01")

    result = CliRunner().invoke(cli, ["--quiet", "materialize", "--date", "2026-01-03"])

    assert result.exit_code == 0, result.output
    assert "2026-01-03" in result.output
    assert len(service.get_tasks("u1")) == 3


def test_roadmap_command_runs_pipeline(service):
    set_quest_service(service)
    goal = service.create_goal("u1", "Learn piano", generate_roadmap=False)

    result = CliRunner().invoke(cli, ["--quiet", "roadmap", goal.goal_id])

    assert result.exit_code == 0, result.output
    assert "ready" in result.output
    assert len(service.get_milestones("u1", goal.goal_id)) == 3


def test_unknown_goal_is_a_clean_error(service):
    set_quest_service(service)

    result = CliRunner().invoke(cli, ["--quiet", "roadmap", "missing"])

    assert result.exit_code == 1
    assert "goal not found" in result.output


def test_redrive_and_incidents(service, planner):
    set_quest_service(service)
    planner.task_failures = 99
    service.create_goal("u1", "Learn piano", generate_roadmap=True)

    listed = CliRunner().invoke(cli, ["--quiet", "incidents", "--kind", IncidentKind.TASK_GENERATION_DEGRADED.value])
    assert "task_generation_degraded" in listed.output

    planner.task_failures = 0
    redriven = CliRunner().invoke(cli, ["--quiet", "redrive"])
    assert redriven.exit_code == 0, redriven.output
    assert service.reporter.query(kind=IncidentKind.TASK_GENERATION_DEGRADED) == []
