"""
Progression Engine for Questline.

Cascades task status changes up to milestones and goals:

    task completed  -> all siblings completed? milestone active -> completed
                    -> next milestone locked -> active (+ daily tasks)
                    -> no next milestone: goal -> completed
    task reopened   -> milestone completed -> active, goal completed -> in-progress

设计要点:
- 持久化状态是唯一依据，传入的 new_status 只是提示
- 每次状态迁移都是以被迁移字段为条件的写入，冲突后重新读取再决策
- 重复投递是安全的：已完成的里程碑仍会检查后继，补完中途崩溃的级联
- 级联失败不影响已经写入的任务，只记录 incident 并报告部分成功
"""
from dataclasses import dataclass, field
from typing import List, Optional

from core.config_manager import SystemConfig, config
from core.exceptions import QuestlineError, UpstreamGenerationError
from core.incident_log import IncidentKind, IncidentReporter
from core.logger import format_fields, get_logger
from core.models import (
    GoalStatus,
    Milestone,
    MilestoneStatus,
    Task,
    TaskGeneration,
    TaskStatus,
)
from core.repository import Repositories
from core.retry import retry_on_conflict
from core.roadmap_pipeline import RoadmapPipeline

logger = get_logger("progression")


@dataclass
class ProgressionResult:
    """What one cascade evaluation changed."""
    task_id: str
    skipped: bool = False
    cascaded: bool = False
    goal_started: bool = False
    goal_completed: bool = False
    goal_reopened: bool = False
    milestone_completed: Optional[str] = None
    milestone_reopened: Optional[str] = None
    milestone_activated: Optional[str] = None
    tasks_generated: int = 0
    affected: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    partial: bool = False

    def touch(self, entity_id: str) -> None:
        if entity_id not in self.affected:
            self.affected.append(entity_id)


class ProgressionEngine:
    """Milestone / goal cascade driven by task mutations."""

    def __init__(
        self,
        repos: Repositories,
        pipeline: RoadmapPipeline,
        reporter: Optional[IncidentReporter] = None,
        settings: Optional[SystemConfig] = None,
    ):
        self.repos = repos
        self.pipeline = pipeline
        self.reporter = reporter or pipeline.reporter
        self.settings = settings or config

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def on_task_mutated(
        self, task_id: str, new_status: Optional[TaskStatus] = None
    ) -> ProgressionResult:
        """Re-evaluate everything above ``task_id``. Never raises."""
        result = ProgressionResult(task_id=task_id)
        task = None
        try:
            task = self.repos.tasks.get(task_id)
            if task is None:
                logger.info(f"Task {task_id} no longer exists, nothing to cascade")
                result.skipped = True
                return result

            advisory = getattr(new_status, "value", new_status)
            if advisory is not None and advisory != task.status.value:
                logger.debug(
                    f"Task {task_id} advisory status {advisory} differs from persisted {task.status.value}"
                )

            if task.goal_id and task.status in (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED):
                self._start_goal(task.goal_id, result)

            if not task.milestone_id:
                return result

            self._evaluate(task.milestone_id, result)
        except Exception as e:
            self._record_failure(result, e, task)
        return result

    def on_task_deleted(self, task: Task) -> ProgressionResult:
        """A deleted milestone task may have been the last incomplete sibling."""
        result = ProgressionResult(task_id=task.task_id)
        if not task.milestone_id:
            result.skipped = True
            return result
        try:
            self._evaluate(task.milestone_id, result)
        except Exception as e:
            self._record_failure(result, e, task)
        return result

    def reevaluate_milestone(self, milestone_id: str) -> ProgressionResult:
        """Operator re-drive of a cascade that was reported partial."""
        result = ProgressionResult(task_id="")
        try:
            self._evaluate(milestone_id, result)
        except Exception as e:
            self._record_failure(result, e, None, milestone_id=milestone_id)
        return result

    # ------------------------------------------------------------------
    # Goal start
    # ------------------------------------------------------------------
    def _start_goal(self, goal_id: str, result: ProgressionResult) -> None:
        def write() -> bool:
            goal = self.repos.goals.get(goal_id)
            if goal is None or goal.status != GoalStatus.NOT_STARTED:
                return False
            self.repos.goals.update(
                goal_id,
                {"status": GoalStatus.IN_PROGRESS},
                expected={"status": GoalStatus.NOT_STARTED},
            )
            return True

        if self._with_conflict_retry(write, f"start goal {goal_id}"):
            logger.info(f"Goal {goal_id} started")
            result.goal_started = True
            result.touch(goal_id)

    # ------------------------------------------------------------------
    # Milestone evaluation
    # ------------------------------------------------------------------
    def _evaluate(self, milestone_id: str, result: ProgressionResult) -> None:
        def cycle() -> None:
            milestone = self.repos.milestones.get(milestone_id)
            if milestone is None:
                logger.warning(f"Milestone {milestone_id} referenced by a task does not exist")
                return

            siblings = self.repos.tasks.list_for_milestone(milestone_id)
            if not siblings:
                return
            all_complete = all(t.status == TaskStatus.COMPLETED for t in siblings)

            if all_complete:
                if milestone.status == MilestoneStatus.ACTIVE:
                    self.repos.milestones.update(
                        milestone_id,
                        {"status": MilestoneStatus.COMPLETED},
                        expected={"status": MilestoneStatus.ACTIVE},
                    )
                    logger.info(
                        "Milestone completed "
                        + format_fields(milestone_id=milestone_id, goal_id=milestone.goal_id)
                    )
                    result.milestone_completed = milestone_id
                    result.cascaded = True
                    result.touch(milestone_id)
                    self._advance(milestone, result)
                elif milestone.status == MilestoneStatus.COMPLETED:
                    self._advance(milestone, result)
            elif milestone.status == MilestoneStatus.COMPLETED:
                self._reopen(milestone, result)

        self._with_conflict_retry(cycle, f"evaluate milestone {milestone_id}")

    def _advance(self, milestone: Milestone, result: ProgressionResult) -> None:
        """Idempotently apply everything that follows a completed milestone."""
        successor = self.repos.milestones.get_by_sequence(milestone.goal_id, milestone.sequence + 1)
        if successor is None:
            self._complete_goal(milestone.goal_id, result)
            return

        # 回退后重新完成：后继可能早已完成，目标是否完成需要重新判断
        if successor.status == MilestoneStatus.COMPLETED:
            self._complete_goal(milestone.goal_id, result)
            return

        if successor.status == MilestoneStatus.LOCKED:
            successor = self.repos.milestones.update(
                successor.milestone_id,
                {"status": MilestoneStatus.ACTIVE},
                expected={"status": MilestoneStatus.LOCKED},
            )
            logger.info(f"Milestone {successor.milestone_id} unlocked")
            result.milestone_activated = successor.milestone_id
            result.cascaded = True
            result.touch(successor.milestone_id)

        # 激活后、生成任务前崩溃的情况也在这里补上
        if (
            successor.status == MilestoneStatus.ACTIVE
            and successor.task_generation == TaskGeneration.PENDING
        ):
            try:
                result.tasks_generated += self.pipeline.generate_milestone_tasks(successor)
            except UpstreamGenerationError as e:
                result.errors.append(e.message)

    def _complete_goal(self, goal_id: str, result: ProgressionResult) -> None:
        goal = self.repos.goals.get(goal_id)
        if goal is None or goal.status == GoalStatus.COMPLETED:
            return
        milestones = self.repos.milestones.list_for_goal(goal_id)
        if not milestones or any(m.status != MilestoneStatus.COMPLETED for m in milestones):
            return
        self.repos.goals.update(
            goal_id,
            {"status": GoalStatus.COMPLETED},
            expected={"status": goal.status},
        )
        logger.info(f"Goal {goal_id} completed")
        result.goal_completed = True
        result.cascaded = True
        result.touch(goal_id)

    def _reopen(self, milestone: Milestone, result: ProgressionResult) -> None:
        self.repos.milestones.update(
            milestone.milestone_id,
            {"status": MilestoneStatus.ACTIVE},
            expected={"status": MilestoneStatus.COMPLETED},
        )
        # 后继里程碑保持激活，不回滚
        logger.info(f"Milestone {milestone.milestone_id} reopened")
        result.milestone_reopened = milestone.milestone_id
        result.cascaded = True
        result.touch(milestone.milestone_id)

        goal = self.repos.goals.get(milestone.goal_id)
        if goal is not None and goal.status == GoalStatus.COMPLETED:
            self.repos.goals.update(
                goal.goal_id,
                {"status": GoalStatus.IN_PROGRESS},
                expected={"status": GoalStatus.COMPLETED},
            )
            logger.info(f"Goal {goal.goal_id} reopened")
            result.goal_reopened = True
            result.touch(goal.goal_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _with_conflict_retry(self, fn, operation: str):
        return retry_on_conflict(fn, limit=self.settings.CONFLICT_RETRY_LIMIT, operation=operation)

    def _record_failure(
        self,
        result: ProgressionResult,
        error: Exception,
        task: Optional[Task],
        milestone_id: Optional[str] = None,
    ) -> None:
        if isinstance(error, QuestlineError):
            message = error.message
            logger.error(f"Cascade for task {result.task_id} failed: {message}")
        else:
            message = f"{type(error).__name__}: {error}"
            logger.exception(f"Cascade for task {result.task_id} crashed")
        result.partial = True
        result.errors.append(message)

        milestone_id = milestone_id or (task.milestone_id if task else None)
        try:
            self.reporter.record(
                IncidentKind.CASCADE_FAILED,
                "milestone" if milestone_id else "task",
                milestone_id or result.task_id,
                message,
                user_id=task.user_id if task else None,
                context={"task_id": result.task_id, "affected": list(result.affected)},
            )
        except OSError:
            logger.exception("Could not persist cascade incident")
