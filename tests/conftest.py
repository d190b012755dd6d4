import os
import sys
import tempfile
from pathlib import Path
from typing import List, Optional

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Keep tests away from the real data directory.
os.environ.setdefault("QUESTLINE_DATA_DIR", tempfile.mkdtemp(prefix="questline-tests-"))

from core.config_manager import SystemConfig  # noqa: E402
from core.exceptions import UpstreamGenerationError  # noqa: E402
from core.incident_log import IncidentReporter  # noqa: E402
from core.models import Goal, TaskPriority  # noqa: E402
from core.planner import (  # noqa: E402
    GoalContext,
    MilestoneContext,
    MilestoneProposal,
    TaskProposal,
)
from core.progression_engine import ProgressionEngine  # noqa: E402
from core.quest_service import QuestService, set_quest_service  # noqa: E402
from core.repository import open_repositories  # noqa: E402
from core.roadmap_pipeline import RoadmapPipeline  # noqa: E402


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubPlanner:
    """Deterministic planner/coach; failures are consumed one call at a time."""

    def __init__(self, milestones: int = 3, tasks: int = 3):
        self.milestones = milestones
        self.tasks = tasks
        self.milestone_failures = 0
        self.task_failures = 0
        self.milestone_calls = 0
        self.task_calls = 0
        self.clock: Optional[FakeClock] = None
        self.milestone_cost = 0.0
        self.task_cost = 0.0
        self.seen_goals: List[GoalContext] = []
        self.seen_milestones: List[MilestoneContext] = []

    def propose_milestones(self, goal: GoalContext) -> List[MilestoneProposal]:
        self.milestone_calls += 1
        self.seen_goals.append(goal)
        if self.clock is not None:
            self.clock.advance(self.milestone_cost)
        if self.milestone_failures > 0:
            self.milestone_failures -= 1
            raise UpstreamGenerationError("planner unavailable", "generate_roadmap")
        return [
            MilestoneProposal(title=f"Phase {i}", description=f"Step {i} of {goal.title}", duration_in_days=7)
            for i in range(1, self.milestones + 1)
        ]

    def propose_tasks(self, milestone: MilestoneContext) -> List[TaskProposal]:
        self.task_calls += 1
        self.seen_milestones.append(milestone)
        if self.clock is not None:
            self.clock.advance(self.task_cost)
        if self.task_failures > 0:
            self.task_failures -= 1
            raise UpstreamGenerationError("coach unavailable", "generate_tasks")
        return [
            TaskProposal(title=f"{milestone.title} day {i}", priority=TaskPriority.MEDIUM)
            for i in range(1, self.tasks + 1)
        ]


@pytest.fixture(autouse=True)
def _reset_process_service():
    yield
    set_quest_service(None)


@pytest.fixture
def settings():
    return SystemConfig(
        PIPELINE_STAGE_RETRIES=2,
        PIPELINE_BACKOFF_SECONDS=0.0,
        PIPELINE_TIMEOUT_SECONDS=900,
        CONFLICT_RETRY_LIMIT=5,
    )


@pytest.fixture
def repos(tmp_path):
    return open_repositories(tmp_path / "data")


@pytest.fixture
def reporter(tmp_path):
    return IncidentReporter.for_data_dir(tmp_path / "data", notifiers=[])


@pytest.fixture
def planner():
    return StubPlanner()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def pipeline(repos, planner, reporter, settings, sleeps):
    return RoadmapPipeline(repos, planner, reporter, settings, sleep=sleeps.append)


@pytest.fixture
def engine(repos, pipeline, reporter, settings):
    return ProgressionEngine(repos, pipeline, reporter, settings)


@pytest.fixture
def service(repos, pipeline, reporter, settings):
    return QuestService(repos, reporter=reporter, settings=settings, pipeline=pipeline)


@pytest.fixture
def make_goal(repos):
    def _make(goal_id: str = "g1", user_id: str = "u1", **fields) -> Goal:
        return repos.goals.create(
            Goal(goal_id=goal_id, user_id=user_id, title=fields.pop("title", "Learn piano"), **fields)
        )

    return _make
