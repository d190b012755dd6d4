"""
Roadmap Pipeline for Questline.

Three-stage saga that turns a goal into an ordered roadmap:

    1. GenerateRoadmap      planner.propose_milestones
    2. PersistMilestones    one atomic batch, then roadmap generating -> ready
    3. GenerateInitialTasks coach.propose_tasks for the active milestone

状态流转:
    none/failed --start()--> generating --stage 2--> ready
                                  \\--stage 1 exhausted / timeout--> failed

Stage 3 never fails the roadmap: on exhaustion the milestone is marked
task_generation=failed and an incident is recorded for re-drive.
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from core.config_manager import SystemConfig, config
from core.exceptions import (
    ConflictError,
    QuestlineError,
    UpstreamGenerationError,
    ValidationError,
)
from core.incident_log import IncidentKind, IncidentReporter
from core.logger import format_fields, get_logger
from core.models import (
    Goal,
    Milestone,
    MilestoneStatus,
    RoadmapStatus,
    Task,
    TaskGeneration,
)
from core.planner import GoalContext, MilestoneContext, MilestoneProposal, PlannerPort
from core.repository import Repositories
from core.retry import DeadlineExceeded, retry_on_conflict, retry_with_backoff

logger = get_logger("roadmap_pipeline")

ROADMAP_ERROR_MAX_LENGTH = 500


@dataclass
class PipelineHandle:
    goal_id: str
    user_id: str
    execution_id: Optional[str]
    started_at: Optional[str]
    created: bool  # False: an existing run (or a ready roadmap) was returned


@dataclass
class PipelineResult:
    goal_id: str
    execution_id: Optional[str]
    roadmap_status: RoadmapStatus
    milestones: int = 0
    milestones_reused: bool = False
    tasks_created: int = 0
    degraded: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.roadmap_status == RoadmapStatus.READY


@dataclass
class RedriveReport:
    attempted: List[str] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class RoadmapPipeline:
    """Claims, runs and repairs roadmap generation for goals."""

    def __init__(
        self,
        repos: Repositories,
        planner: PlannerPort,
        reporter: Optional[IncidentReporter] = None,
        settings: Optional[SystemConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.repos = repos
        self.planner = planner
        self.reporter = reporter or IncidentReporter()
        self.settings = settings or config
        self._sleep = sleep
        self._clock = clock
        self._now = now

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------
    def start(self, goal_id: str, user_id: Optional[str] = None) -> PipelineHandle:
        """
        Claim the goal for a pipeline run.

        Already generating (and not abandoned) or ready: returns the existing
        handle with ``created=False``. Otherwise sets roadmap_status=generating
        with a conditional write before any stage runs.
        """

        def claim() -> PipelineHandle:
            goal = self._load_goal(goal_id, user_id)

            if goal.roadmap_status == RoadmapStatus.GENERATING:
                if not self._is_abandoned(goal):
                    return self._handle(goal, created=False)
                self._expire(goal)
                goal = self.repos.goals.require(goal_id)

            if goal.roadmap_status == RoadmapStatus.READY:
                return self._handle(goal, created=False)

            goal = self.repos.goals.update(
                goal_id,
                {
                    "roadmap_status": RoadmapStatus.GENERATING,
                    "roadmap_execution_id": uuid.uuid4().hex,
                    "roadmap_started_at": self._now().isoformat(),
                    "roadmap_error": None,
                },
                expected={"roadmap_status": goal.roadmap_status, "version": goal.version},
            )
            logger.info(
                "Roadmap pipeline claimed "
                + format_fields(goal_id=goal_id, execution_id=goal.roadmap_execution_id)
            )
            return self._handle(goal, created=True)

        return retry_on_conflict(
            claim, limit=self.settings.CONFLICT_RETRY_LIMIT, operation=f"claim roadmap {goal_id}"
        )

    def run(self, goal_id: str, user_id: Optional[str] = None) -> PipelineResult:
        """start + execute; a no-op claim just reports the current status."""
        handle = self.start(goal_id, user_id)
        if not handle.created:
            goal = self.repos.goals.require(goal_id)
            return PipelineResult(
                goal_id=goal_id,
                execution_id=handle.execution_id,
                roadmap_status=goal.roadmap_status,
                milestones=len(self.repos.milestones.list_for_goal(goal_id)),
            )
        return self.execute(handle)

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------
    def execute(self, handle: PipelineHandle) -> PipelineResult:
        """Run the three stages for a claimed goal under the overall deadline."""
        goal = self.repos.goals.require(handle.goal_id)
        result = PipelineResult(
            goal_id=handle.goal_id,
            execution_id=handle.execution_id,
            roadmap_status=goal.roadmap_status,
        )
        if not self._owns(goal, handle):
            logger.info(
                "Skipping superseded pipeline run "
                + format_fields(goal_id=handle.goal_id, execution_id=handle.execution_id)
            )
            return result

        deadline = self._clock() + float(self.settings.PIPELINE_TIMEOUT_SECONDS)

        # Stage 1 + 2: any failure here leaves the roadmap failed
        try:
            milestones = self.repos.milestones.list_for_goal(goal.goal_id)
            if milestones:
                result.milestones_reused = True
                logger.info(f"Reusing {len(milestones)} existing milestones for {goal.goal_id}")
            else:
                proposals = self._generate_roadmap(goal, deadline)
                # 阶段 2 单独重试，不重新生成路线图
                milestones, result.milestones_reused = retry_with_backoff(
                    lambda: self._persist_milestones(goal, proposals),
                    retries=self.settings.PIPELINE_STAGE_RETRIES,
                    backoff_seconds=self.settings.PIPELINE_BACKOFF_SECONDS,
                    operation=f"persist_milestones {goal.goal_id}",
                    sleep=self._sleep,
                    deadline=deadline,
                    clock=self._clock,
                )
            if self._clock() >= deadline:
                raise DeadlineExceeded("persist_milestones")
            if not self._mark_ready(handle):
                result.roadmap_status = self.repos.goals.require(goal.goal_id).roadmap_status
                return result
        except Exception as e:
            if not isinstance(e, QuestlineError):
                logger.exception(f"Roadmap pipeline crashed for {goal.goal_id}")
            message = _describe(e)
            self._fail(handle, message)
            result.roadmap_status = RoadmapStatus.FAILED
            result.error = message
            return result

        result.roadmap_status = RoadmapStatus.READY
        result.milestones = len(milestones)

        # Stage 3: degraded on failure, never rolls back stage 2
        active = self.repos.milestones.get_active(goal.goal_id)
        if active is None:
            return result
        try:
            result.tasks_created = self.generate_milestone_tasks(active, deadline=deadline)
        except UpstreamGenerationError as e:
            result.degraded = True
            result.error = e.message
        return result

    def _generate_roadmap(self, goal: Goal, deadline: float) -> List[MilestoneProposal]:
        context = GoalContext(
            goal_id=goal.goal_id,
            user_id=goal.user_id,
            title=goal.title,
            description=goal.description,
            target_date=goal.target_date,
            category=goal.category,
        )

        def propose() -> List[MilestoneProposal]:
            proposals = self.planner.propose_milestones(context)
            if not proposals:
                raise UpstreamGenerationError("planner proposed no milestones", "generate_roadmap")
            return proposals

        return retry_with_backoff(
            propose,
            retries=self.settings.PIPELINE_STAGE_RETRIES,
            backoff_seconds=self.settings.PIPELINE_BACKOFF_SECONDS,
            operation=f"generate_roadmap {goal.goal_id}",
            sleep=self._sleep,
            deadline=deadline,
            clock=self._clock,
        )

    def _persist_milestones(
        self, goal: Goal, proposals: List[MilestoneProposal]
    ) -> Tuple[List[Milestone], bool]:
        milestones = [
            Milestone(
                milestone_id=self.repos.milestones.key_for(goal.goal_id, sequence),
                goal_id=goal.goal_id,
                user_id=goal.user_id,
                sequence=sequence,
                title=proposal.title,
                description=proposal.description,
                duration_in_days=proposal.duration_in_days,
                status=MilestoneStatus.ACTIVE if sequence == 1 else MilestoneStatus.LOCKED,
            )
            for sequence, proposal in enumerate(proposals, start=1)
        ]
        try:
            return self.repos.milestones.create_batch(milestones), False
        except ConflictError:
            # 另一次执行已写入同一批确定性 ID
            existing = self.repos.milestones.list_for_goal(goal.goal_id)
            if not existing:
                raise
            logger.info(f"Milestones for {goal.goal_id} already persisted, reusing them")
            return existing, True

    def _mark_ready(self, handle: PipelineHandle) -> bool:
        try:
            self.repos.goals.update(
                handle.goal_id,
                {"roadmap_status": RoadmapStatus.READY, "roadmap_error": None},
                expected={
                    "roadmap_status": RoadmapStatus.GENERATING,
                    "roadmap_execution_id": handle.execution_id,
                },
            )
        except ConflictError:
            logger.warning(
                "Roadmap claim lost before ready "
                + format_fields(goal_id=handle.goal_id, execution_id=handle.execution_id)
            )
            return False
        logger.info(f"Roadmap ready for goal {handle.goal_id}")
        return True

    def _fail(self, handle: PipelineHandle, message: str) -> None:
        try:
            self.repos.goals.update(
                handle.goal_id,
                {
                    "roadmap_status": RoadmapStatus.FAILED,
                    "roadmap_error": message[:ROADMAP_ERROR_MAX_LENGTH],
                },
                expected={
                    "roadmap_status": RoadmapStatus.GENERATING,
                    "roadmap_execution_id": handle.execution_id,
                },
            )
        except ConflictError:
            logger.warning(f"Roadmap run for {handle.goal_id} superseded before it could fail")
            return
        self.reporter.record(
            IncidentKind.ROADMAP_FAILED,
            "goal",
            handle.goal_id,
            message,
            user_id=handle.user_id,
            context={"execution_id": handle.execution_id},
        )

    # ------------------------------------------------------------------
    # Task generation (stage 3, cascade, re-drive)
    # ------------------------------------------------------------------
    def generate_milestone_tasks(
        self,
        milestone: Milestone,
        force: bool = False,
        deadline: Optional[float] = None,
    ) -> int:
        """
        Create the daily tasks of an unlocked milestone.

        Idempotent: skipped when the milestone already has tasks unless
        ``force``. Returns the number of tasks created. On exhaustion marks the
        milestone task_generation=failed, records an incident and raises
        UpstreamGenerationError.
        """
        milestone = self.repos.milestones.require(milestone.milestone_id)
        if milestone.status == MilestoneStatus.LOCKED:
            raise ValidationError(
                f"milestone {milestone.milestone_id} is locked", field="milestone_id"
            )

        existing = self.repos.tasks.list_for_milestone(milestone.milestone_id)
        if existing and not force:
            if milestone.task_generation != TaskGeneration.READY:
                self._set_generation(milestone.milestone_id, TaskGeneration.READY)
            return 0

        goal = self.repos.goals.require(milestone.goal_id)
        context = MilestoneContext(
            goal_id=goal.goal_id,
            goal_title=goal.title,
            goal_description=goal.description,
            milestone_id=milestone.milestone_id,
            sequence=milestone.sequence,
            title=milestone.title,
            description=milestone.description,
            duration_in_days=milestone.duration_in_days,
        )

        def propose():
            proposals = self.planner.propose_tasks(context)
            if not proposals:
                raise UpstreamGenerationError("coach proposed no tasks", "generate_tasks")
            return proposals

        try:
            proposals = retry_with_backoff(
                propose,
                retries=self.settings.PIPELINE_STAGE_RETRIES,
                backoff_seconds=self.settings.PIPELINE_BACKOFF_SECONDS,
                operation=f"generate_tasks {milestone.milestone_id}",
                sleep=self._sleep,
                deadline=deadline,
                clock=self._clock,
            )
        except Exception as e:
            if not isinstance(e, QuestlineError):
                logger.exception(f"Coach crashed for milestone {milestone.milestone_id}")
            message = _describe(e)
            self._set_generation(milestone.milestone_id, TaskGeneration.FAILED)
            self.reporter.record(
                IncidentKind.TASK_GENERATION_DEGRADED,
                "milestone",
                milestone.milestone_id,
                message,
                user_id=milestone.user_id,
                context={"goal_id": milestone.goal_id},
            )
            raise UpstreamGenerationError(message, "generate_tasks") from e

        taken = {t.task_id for t in existing}
        today = self._now().date()
        tasks = []
        index = 0
        for offset, proposal in enumerate(proposals):
            index += 1
            while self.repos.tasks.key_for_generated(milestone.milestone_id, index) in taken:
                index += 1
            tasks.append(
                Task(
                    task_id=self.repos.tasks.key_for_generated(milestone.milestone_id, index),
                    user_id=milestone.user_id,
                    title=proposal.title,
                    description=proposal.description,
                    priority=proposal.priority,
                    due_date=today + timedelta(days=offset),
                    goal_id=milestone.goal_id,
                    milestone_id=milestone.milestone_id,
                )
            )

        try:
            created = self.repos.tasks.create_batch(tasks)
        except ConflictError:
            # 并发的生成已经写入
            if force:
                raise
            logger.info(f"Tasks for {milestone.milestone_id} written concurrently, skipping")
            return 0

        self._set_generation(milestone.milestone_id, TaskGeneration.READY)
        self.reporter.resolve(milestone.milestone_id, IncidentKind.TASK_GENERATION_DEGRADED)
        logger.info(f"Generated {len(created)} tasks for milestone {milestone.milestone_id}")
        return len(created)

    def _set_generation(self, milestone_id: str, state: TaskGeneration) -> None:
        def write():
            current = self.repos.milestones.require(milestone_id)
            if current.task_generation == state:
                return
            self.repos.milestones.update(
                milestone_id,
                {"task_generation": state},
                expected={"version": current.version},
            )

        retry_on_conflict(
            write,
            limit=self.settings.CONFLICT_RETRY_LIMIT,
            operation=f"task_generation {milestone_id}",
        )

    def redrive_degraded(self, user_id: Optional[str] = None) -> RedriveReport:
        """Re-trigger task generation for every unlocked milestone marked failed."""
        filters = {"task_generation": TaskGeneration.FAILED}
        if user_id is not None:
            filters["user_id"] = user_id
        report = RedriveReport()

        for milestone in sorted(self.repos.milestones.query(**filters), key=lambda m: m.milestone_id):
            if milestone.status != MilestoneStatus.ACTIVE:
                continue
            report.attempted.append(milestone.milestone_id)
            try:
                self.generate_milestone_tasks(milestone)
            except QuestlineError as e:
                report.failed[milestone.milestone_id] = e.message
                continue
            report.succeeded.append(milestone.milestone_id)

        if report.attempted:
            logger.info(
                f"Re-drive: {len(report.succeeded)}/{len(report.attempted)} milestones recovered"
            )
        return report

    # ------------------------------------------------------------------
    # Abandoned runs
    # ------------------------------------------------------------------
    def expire_stale(self) -> List[str]:
        """Fail every generating claim older than the pipeline timeout."""
        expired = []
        for goal in self.repos.goals.query(roadmap_status=RoadmapStatus.GENERATING):
            if self._is_abandoned(goal) and self._expire(goal):
                expired.append(goal.goal_id)
        return expired

    def _is_abandoned(self, goal: Goal) -> bool:
        if not goal.roadmap_started_at:
            return True
        try:
            started = datetime.fromisoformat(goal.roadmap_started_at)
        except ValueError:
            return True
        age = self._now() - started
        return age > timedelta(seconds=float(self.settings.PIPELINE_TIMEOUT_SECONDS))

    def _expire(self, goal: Goal) -> bool:
        try:
            self.repos.goals.update(
                goal.goal_id,
                {
                    "roadmap_status": RoadmapStatus.FAILED,
                    "roadmap_error": "roadmap pipeline timed out",
                },
                expected={
                    "roadmap_status": RoadmapStatus.GENERATING,
                    "roadmap_execution_id": goal.roadmap_execution_id,
                },
            )
        except ConflictError:
            return False
        logger.warning(f"Expired abandoned roadmap run for goal {goal.goal_id}")
        self.reporter.record(
            IncidentKind.ROADMAP_FAILED,
            "goal",
            goal.goal_id,
            "roadmap pipeline timed out",
            user_id=goal.user_id,
            context={"execution_id": goal.roadmap_execution_id},
        )
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _load_goal(self, goal_id: str, user_id: Optional[str]) -> Goal:
        if user_id is None:
            return self.repos.goals.require(goal_id)
        return self.repos.goals.require_owned(goal_id, user_id)

    @staticmethod
    def _handle(goal: Goal, created: bool) -> PipelineHandle:
        return PipelineHandle(
            goal_id=goal.goal_id,
            user_id=goal.user_id,
            execution_id=goal.roadmap_execution_id,
            started_at=goal.roadmap_started_at,
            created=created,
        )

    @staticmethod
    def _owns(goal: Goal, handle: PipelineHandle) -> bool:
        return (
            goal.roadmap_status == RoadmapStatus.GENERATING
            and goal.roadmap_execution_id == handle.execution_id
        )


def _describe(error: Exception) -> str:
    if isinstance(error, QuestlineError):
        return error.message
    return f"{type(error).__name__}: {error}"
