"""
Quest application service.

The only entry point request handlers, the CLI and the scheduler use.
Owns input validation, ownership checks and the wiring of
RoadmapPipeline / ProgressionEngine / RecurrenceMaterializer.
"""
import os
import threading
import uuid
from dataclasses import asdict, dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from core.config_manager import SystemConfig, config
from core.exceptions import NotFoundError, ValidationError
from core.incident_log import IncidentReporter
from core.logger import format_fields, get_logger
from core.models import (
    Frequency,
    Goal,
    GoalStatus,
    Milestone,
    MilestoneStatus,
    RecurrenceRule,
    RoadmapStatus,
    RuleStatus,
    Task,
    TaskPriority,
    TaskStatus,
    now_iso,
)
from core.paths import get_data_dir
from core.planner import LLMPlanner, PlannerPort, is_complex_goal
from core.progression_engine import ProgressionEngine, ProgressionResult
from core.recurrence import MaterializationReport, RecurrenceMaterializer
from core.repository import Repositories, open_repositories
from core.retry import retry_on_conflict
from core.roadmap_pipeline import PipelineHandle, RedriveReport, RoadmapPipeline
from core.utils import parse_iso_date
from interface.notifiers.base import BaseNotifier, LogNotifier
from interface.notifiers.webhook_notifier import WebhookNotifier

logger = get_logger("quest_service")

# dispatch(fn, *args): runs fn later (BackgroundTasks.add_task) or right away
Dispatcher = Callable[..., Any]

GOAL_UPDATE_FIELDS = ("title", "description", "target_date", "category", "status")
TASK_UPDATE_FIELDS = ("title", "description", "due_date", "priority", "status")
RULE_UPDATE_FIELDS = (
    "title", "description", "priority", "status", "frequency",
    "interval", "days_of_week", "end_date", "goal_id",
)


def run_inline(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    fn(*args, **kwargs)


@dataclass
class GoalDeletion:
    goal_id: str
    milestones_deleted: int = 0
    tasks_deleted: int = 0
    rules_detached: int = 0


class QuestService:
    """Application service for goals, roadmaps, tasks and recurrence rules."""

    def __init__(
        self,
        repos: Repositories,
        planner: Optional[PlannerPort] = None,
        reporter: Optional[IncidentReporter] = None,
        settings: Optional[SystemConfig] = None,
        pipeline: Optional[RoadmapPipeline] = None,
        dispatch: Optional[Dispatcher] = None,
    ):
        self.repos = repos
        self.settings = settings or config
        self.reporter = reporter or IncidentReporter()
        self.pipeline = pipeline or RoadmapPipeline(
            repos, planner or LLMPlanner(), self.reporter, self.settings
        )
        self.engine = ProgressionEngine(repos, self.pipeline, self.reporter, self.settings)
        self.materializer = RecurrenceMaterializer(repos)
        self.dispatch = dispatch or run_inline

    # ---------------------------------------------------------------------
    # Validation helpers
    # ---------------------------------------------------------------------
    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:8]}"

    @staticmethod
    def _require_user(user_id: Optional[str]) -> str:
        user_id = str(user_id or "").strip()
        if not user_id:
            raise ValidationError("user id is required", field="user_id")
        return user_id

    def _text(self, value: Any, field: str, required: bool = True) -> str:
        text = str(value or "").strip()
        if required and not text:
            raise ValidationError(f"{field} is required", field=field)
        limit = self.settings.MAX_TITLE_LENGTH if field == "title" else self.settings.MAX_DESCRIPTION_LENGTH
        if len(text) > limit:
            raise ValidationError(f"{field} must be at most {limit} characters", field=field)
        return text

    @staticmethod
    def _enum(enum_cls, value: Any, field: str):
        try:
            return enum_cls(getattr(value, "value", value))
        except ValueError as e:
            allowed = " | ".join(m.value for m in enum_cls)
            raise ValidationError(f"{field} must be one of {allowed}", field=field) from e

    @staticmethod
    def _optional_date(value: Any, field: str) -> Optional[date]:
        if value is None or value == "":
            return None
        return parse_iso_date(value, field)

    # ---------------------------------------------------------------------
    # Goals & roadmap
    # ---------------------------------------------------------------------
    def create_goal(
        self,
        user_id: str,
        title: str,
        description: str = "",
        target_date: Any = None,
        category: str = "",
        generate_roadmap: Optional[bool] = None,
        dispatch: Optional[Dispatcher] = None,
    ) -> Goal:
        """
        Create a goal and, when wanted, claim the roadmap pipeline.

        The claim (roadmap_status=generating) is visible in the returned goal;
        execution is handed to ``dispatch``.
        """
        user_id = self._require_user(user_id)
        goal = Goal(
            goal_id=self._new_id("goal"),
            user_id=user_id,
            title=self._text(title, "title"),
            description=self._text(description, "description", required=False),
            target_date=self._optional_date(target_date, "target_date"),
            category=str(category or "").strip(),
        )
        goal = self.repos.goals.create(goal)
        logger.info("Goal created " + format_fields(goal_id=goal.goal_id, user_id=user_id))

        if generate_roadmap is None:
            generate_roadmap = self.settings.AUTO_ROADMAP_FOR_COMPLEX_GOALS and is_complex_goal(goal.title)
        if generate_roadmap:
            self._launch_pipeline(goal.goal_id, user_id, dispatch)
            goal = self.repos.goals.require(goal.goal_id)
        return goal

    def _launch_pipeline(
        self, goal_id: str, user_id: str, dispatch: Optional[Dispatcher]
    ) -> PipelineHandle:
        handle = self.pipeline.start(goal_id, user_id)
        if handle.created:
            (dispatch or self.dispatch)(self.pipeline.execute, handle)
        return handle

    def get_goals(self, user_id: str) -> List[Goal]:
        return self.repos.goals.list_for_user(self._require_user(user_id))

    def get_goal(self, user_id: str, goal_id: str) -> Goal:
        return self.repos.goals.require_owned(goal_id, self._require_user(user_id))

    def update_goal(self, user_id: str, goal_id: str, changes: Dict[str, Any]) -> Goal:
        """
        编辑目标字段；status 的手动修改必须与里程碑状态一致。

        - completed: 没有里程碑，或所有里程碑都已完成
        - not-started / in-progress: 不能用于所有里程碑都已完成的目标（应重新打开任务）
        - not-started: 目标下已有进行中或已完成的任务时拒绝
        """
        user_id = self._require_user(user_id)
        unknown = set(changes) - set(GOAL_UPDATE_FIELDS)
        if unknown:
            raise ValidationError(f"unsupported fields: {', '.join(sorted(unknown))}")

        clean: Dict[str, Any] = {}
        if "title" in changes:
            clean["title"] = self._text(changes["title"], "title")
        if "description" in changes:
            clean["description"] = self._text(changes["description"], "description", required=False)
        if "target_date" in changes:
            clean["target_date"] = self._optional_date(changes["target_date"], "target_date")
        if "category" in changes:
            clean["category"] = str(changes["category"] or "").strip()
        if "status" in changes:
            clean["status"] = self._enum(GoalStatus, changes["status"], "status")
        if not clean:
            raise ValidationError("no fields to update")

        def write() -> Goal:
            current = self.repos.goals.require_owned(goal_id, user_id)
            if "status" in clean and clean["status"] != current.status:
                self._check_goal_status(current, clean["status"])
            return self.repos.goals.update(goal_id, clean, expected={"version": current.version})

        goal = retry_on_conflict(
            write, limit=self.settings.CONFLICT_RETRY_LIMIT, operation=f"update goal {goal_id}"
        )
        logger.info("Goal updated " + format_fields(goal_id=goal_id, fields=",".join(sorted(clean))))
        return goal

    def _check_goal_status(self, goal: Goal, status: GoalStatus) -> None:
        milestones = self.repos.milestones.list_for_goal(goal.goal_id)
        all_done = bool(milestones) and all(m.status == MilestoneStatus.COMPLETED for m in milestones)
        if status == GoalStatus.COMPLETED:
            if milestones and not all_done:
                raise ValidationError(
                    "goal with unfinished milestones cannot be completed", field="status"
                )
            return
        if all_done:
            raise ValidationError(
                "all milestones are completed; reopen a task instead", field="status"
            )
        if status == GoalStatus.NOT_STARTED:
            progressed = [
                t for t in self.repos.tasks.query(goal_id=goal.goal_id)
                if t.status != TaskStatus.PENDING
            ]
            if progressed:
                raise ValidationError(
                    "goal with started tasks cannot go back to not-started", field="status"
                )

    def delete_goal(self, user_id: str, goal_id: str) -> GoalDeletion:
        """
        Delete a goal together with its milestones and tasks.

        Recurrence rules pointing at the goal are kept and detached. Children are
        removed before the goal, so an interrupted delete can simply be repeated.
        """
        user_id = self._require_user(user_id)
        goal = self.repos.goals.require_owned(goal_id, user_id)
        if goal.roadmap_status == RoadmapStatus.GENERATING:
            raise ValidationError(
                "roadmap generation is still running for this goal", field="goal_id"
            )

        report = GoalDeletion(goal_id=goal_id)
        for task in self.repos.tasks.query(goal_id=goal_id):
            try:
                self.repos.tasks.delete(task.task_id)
            except NotFoundError:
                continue
            report.tasks_deleted += 1
        for milestone in self.repos.milestones.list_for_goal(goal_id):
            try:
                self.repos.milestones.delete(milestone.milestone_id)
            except NotFoundError:
                continue
            report.milestones_deleted += 1
        for rule in self.repos.rules.query(goal_id=goal_id):
            self.repos.rules.update(rule.recurrence_rule_id, {"goal_id": None})
            report.rules_detached += 1

        self.repos.goals.delete(goal_id)
        logger.info("Goal deleted " + format_fields(**asdict(report)))
        return report

    def get_milestones(self, user_id: str, goal_id: str) -> List[Milestone]:
        """Milestones of a goal; empty until its roadmap is ready."""
        goal = self.get_goal(user_id, goal_id)
        if goal.roadmap_status != RoadmapStatus.READY:
            return []
        return self.repos.milestones.list_for_goal(goal.goal_id)

    def retry_roadmap(
        self, user_id: str, goal_id: str, dispatch: Optional[Dispatcher] = None
    ) -> Goal:
        """(Re)start roadmap generation; a running or ready roadmap is left alone."""
        goal = self.get_goal(user_id, goal_id)
        self._launch_pipeline(goal.goal_id, goal.user_id, dispatch)
        return self.repos.goals.require(goal.goal_id)

    def regenerate_milestone_tasks(
        self, user_id: str, goal_id: str, milestone_id: str, force: bool = False
    ) -> int:
        goal = self.get_goal(user_id, goal_id)
        milestone = self.repos.milestones.require_owned(milestone_id, goal.user_id)
        if milestone.goal_id != goal.goal_id:
            raise ValidationError(
                f"milestone {milestone_id} does not belong to goal {goal_id}", field="milestone_id"
            )
        return self.pipeline.generate_milestone_tasks(milestone, force=force)

    def redrive_degraded(self, user_id: Optional[str] = None) -> RedriveReport:
        return self.pipeline.redrive_degraded(user_id)

    def expire_stale_pipelines(self) -> List[str]:
        return self.pipeline.expire_stale()

    # ---------------------------------------------------------------------
    # Tasks
    # ---------------------------------------------------------------------
    def get_tasks(
        self,
        user_id: str,
        due_date: Any = None,
        goal_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
    ) -> List[Task]:
        return self.repos.tasks.list_for_user(
            self._require_user(user_id),
            due_date=self._optional_date(due_date, "due_date"),
            goal_id=goal_id or None,
            milestone_id=milestone_id or None,
        )

    def get_task(self, user_id: str, task_id: str) -> Task:
        return self.repos.tasks.require_owned(task_id, self._require_user(user_id))

    def create_task(
        self,
        user_id: str,
        title: str,
        due_date: Any,
        description: str = "",
        priority: Any = TaskPriority.MEDIUM,
        goal_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
    ) -> Task:
        user_id = self._require_user(user_id)
        if due_date is None or due_date == "":
            raise ValidationError("due_date is required", field="due_date")

        if goal_id:
            self.repos.goals.require_owned(goal_id, user_id)
        if milestone_id:
            milestone = self.repos.milestones.require_owned(milestone_id, user_id)
            if milestone.status == MilestoneStatus.LOCKED:
                raise ValidationError(
                    f"milestone {milestone_id} is locked", field="milestone_id"
                )
            if goal_id and goal_id != milestone.goal_id:
                raise ValidationError(
                    f"milestone {milestone_id} does not belong to goal {goal_id}",
                    field="milestone_id",
                )
            goal_id = milestone.goal_id

        task = self.repos.tasks.create(
            Task(
                task_id=self._new_id("task"),
                user_id=user_id,
                title=self._text(title, "title"),
                description=self._text(description, "description", required=False),
                due_date=parse_iso_date(due_date, "due_date"),
                priority=self._enum(TaskPriority, priority or TaskPriority.MEDIUM, "priority"),
                goal_id=goal_id or None,
                milestone_id=milestone_id or None,
            )
        )
        logger.info("Task created " + format_fields(task_id=task.task_id, milestone_id=milestone_id))

        # 新的未完成任务可能让已完成的里程碑重新打开
        if task.milestone_id:
            self.engine.on_task_mutated(task.task_id)
        return task

    def update_task(
        self, user_id: str, task_id: str, changes: Dict[str, Any]
    ) -> Tuple[Task, ProgressionResult]:
        """
        Apply a partial update, then cascade synchronously.

        The task write never fails because of the cascade; cascade problems
        show up as ``ProgressionResult.partial``.
        """
        user_id = self._require_user(user_id)
        unknown = set(changes) - set(TASK_UPDATE_FIELDS)
        if unknown:
            raise ValidationError(f"unsupported fields: {', '.join(sorted(unknown))}")
        clean = self._clean_task_changes(changes)

        def write() -> Task:
            current = self.repos.tasks.require_owned(task_id, user_id)
            patch = dict(clean)
            if "status" in patch:
                if patch["status"] == TaskStatus.COMPLETED:
                    patch["completed_at"] = current.completed_at or now_iso()
                else:
                    patch["completed_at"] = None
            return self.repos.tasks.update(task_id, patch, expected={"version": current.version})

        task = retry_on_conflict(
            write, limit=self.settings.CONFLICT_RETRY_LIMIT, operation=f"update task {task_id}"
        )

        if "status" in clean:
            progression = self.engine.on_task_mutated(task.task_id, clean["status"])
        else:
            progression = ProgressionResult(task_id=task.task_id, skipped=True)
        return task, progression

    def _clean_task_changes(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        clean: Dict[str, Any] = {}
        if "title" in changes:
            clean["title"] = self._text(changes["title"], "title")
        if "description" in changes:
            clean["description"] = self._text(changes["description"], "description", required=False)
        if "due_date" in changes:
            clean["due_date"] = parse_iso_date(changes["due_date"], "due_date")
        if "priority" in changes:
            clean["priority"] = self._enum(TaskPriority, changes["priority"], "priority")
        if "status" in changes:
            clean["status"] = self._enum(TaskStatus, changes["status"], "status")
        if not clean:
            raise ValidationError("no fields to update")
        return clean

    def delete_task(self, user_id: str, task_id: str) -> ProgressionResult:
        user_id = self._require_user(user_id)

        def remove() -> Task:
            current = self.repos.tasks.require_owned(task_id, user_id)
            return self.repos.tasks.delete(task_id, expected={"version": current.version})

        deleted = retry_on_conflict(
            remove, limit=self.settings.CONFLICT_RETRY_LIMIT, operation=f"delete task {task_id}"
        )
        logger.info("Task deleted " + format_fields(task_id=task_id, milestone_id=deleted.milestone_id))
        return self.engine.on_task_deleted(deleted)

    # ---------------------------------------------------------------------
    # Recurrence rules
    # ---------------------------------------------------------------------
    def create_rule(
        self,
        user_id: str,
        title: str,
        frequency: Any,
        anchor_date: Any = None,
        interval: int = 1,
        days_of_week: Optional[Sequence[int]] = None,
        end_date: Any = None,
        description: str = "",
        priority: Any = TaskPriority.MEDIUM,
        goal_id: Optional[str] = None,
    ) -> RecurrenceRule:
        user_id = self._require_user(user_id)
        if goal_id:
            self.repos.goals.require_owned(goal_id, user_id)
        rule = RecurrenceRule(
            recurrence_rule_id=self._new_id("rule"),
            user_id=user_id,
            title=self._text(title, "title"),
            description=self._text(description, "description", required=False),
            priority=self._enum(TaskPriority, priority or TaskPriority.MEDIUM, "priority"),
            frequency=self._enum(Frequency, frequency, "frequency"),
            interval=interval,
            days_of_week=list(days_of_week or []),
            anchor_date=self._optional_date(anchor_date, "anchor_date") or date.today(),
            end_date=self._optional_date(end_date, "end_date"),
            goal_id=goal_id or None,
        )
        self._validate_schedule(rule)
        rule = self.repos.rules.create(rule)
        logger.info(
            "Recurrence rule created "
            + format_fields(rule_id=rule.recurrence_rule_id, frequency=rule.frequency.value)
        )
        return rule

    @staticmethod
    def _validate_schedule(rule: RecurrenceRule) -> None:
        if not isinstance(rule.interval, int) or isinstance(rule.interval, bool) or rule.interval < 1:
            raise ValidationError("interval must be an integer >= 1", field="interval")
        if any(not isinstance(d, int) or not 0 <= d <= 6 for d in rule.days_of_week):
            raise ValidationError("days_of_week values must be 0 (Monday) to 6 (Sunday)", field="days_of_week")
        if rule.days_of_week and rule.frequency != Frequency.WEEKLY:
            raise ValidationError("days_of_week only applies to weekly rules", field="days_of_week")
        if rule.end_date is not None and rule.end_date < rule.anchor_date:
            raise ValidationError("end_date must not be before anchor_date", field="end_date")

    def get_rules(self, user_id: str) -> List[RecurrenceRule]:
        rules = self.repos.rules.query_by_owner(self._require_user(user_id))
        return sorted(rules, key=lambda r: (r.created_at or "", r.recurrence_rule_id))

    def update_rule(self, user_id: str, rule_id: str, changes: Dict[str, Any]) -> RecurrenceRule:
        """Edit, pause or resume a rule; anchor and marker are not editable."""
        user_id = self._require_user(user_id)
        unknown = set(changes) - set(RULE_UPDATE_FIELDS)
        if unknown:
            raise ValidationError(f"unsupported fields: {', '.join(sorted(unknown))}")

        clean: Dict[str, Any] = {}
        if "title" in changes:
            clean["title"] = self._text(changes["title"], "title")
        if "description" in changes:
            clean["description"] = self._text(changes["description"], "description", required=False)
        if "priority" in changes:
            clean["priority"] = self._enum(TaskPriority, changes["priority"], "priority")
        if "status" in changes:
            clean["status"] = self._enum(RuleStatus, changes["status"], "status")
        if "frequency" in changes:
            clean["frequency"] = self._enum(Frequency, changes["frequency"], "frequency")
        if "interval" in changes:
            clean["interval"] = changes["interval"]
        if "days_of_week" in changes:
            clean["days_of_week"] = list(changes["days_of_week"] or [])
        if "end_date" in changes:
            clean["end_date"] = self._optional_date(changes["end_date"], "end_date")
        if "goal_id" in changes:
            if changes["goal_id"]:
                self.repos.goals.require_owned(changes["goal_id"], user_id)
            clean["goal_id"] = changes["goal_id"] or None
        if not clean:
            raise ValidationError("no fields to update")

        def write() -> RecurrenceRule:
            current = self.repos.rules.require_owned(rule_id, user_id)
            merged = RecurrenceRule(**{**current.__dict__, **clean})
            self._validate_schedule(merged)
            return self.repos.rules.update(rule_id, clean, expected={"version": current.version})

        return retry_on_conflict(
            write, limit=self.settings.CONFLICT_RETRY_LIMIT, operation=f"update rule {rule_id}"
        )

    def delete_rule(self, user_id: str, rule_id: str) -> RecurrenceRule:
        """Remove a rule; tasks it already materialized are kept."""
        user_id = self._require_user(user_id)

        def remove() -> RecurrenceRule:
            current = self.repos.rules.require_owned(rule_id, user_id)
            return self.repos.rules.delete(rule_id, expected={"version": current.version})

        return retry_on_conflict(
            remove, limit=self.settings.CONFLICT_RETRY_LIMIT, operation=f"delete rule {rule_id}"
        )

    def run_materializer(self, as_of: Any = None) -> MaterializationReport:
        return self.materializer.run_once(self._optional_date(as_of, "as_of") or date.today())


# -------------------------------------------------------------------------
# Process-wide instance
# -------------------------------------------------------------------------

def default_notifiers() -> List[BaseNotifier]:
    """Log notifier, plus a webhook when QUESTLINE_WEBHOOK_URL is set."""
    notifiers: List[BaseNotifier] = [LogNotifier()]
    webhook_url = os.getenv("QUESTLINE_WEBHOOK_URL", "").strip()
    if webhook_url:
        notifiers.append(
            WebhookNotifier({
                "webhook_url": webhook_url,
                "type": os.getenv("QUESTLINE_WEBHOOK_TYPE", "generic"),
            })
        )
    return notifiers


def build_quest_service(
    data_dir: Optional[Path] = None,
    planner: Optional[PlannerPort] = None,
    notifiers: Optional[Sequence[BaseNotifier]] = None,
) -> QuestService:
    data_dir = data_dir or get_data_dir()
    reporter = IncidentReporter.for_data_dir(
        data_dir, default_notifiers() if notifiers is None else notifiers
    )
    logger.info(f"Opening quest store at {data_dir}")
    return QuestService(open_repositories(data_dir), planner=planner, reporter=reporter)


_service: Optional[QuestService] = None
_service_lock = threading.Lock()


def get_quest_service() -> QuestService:
    global _service
    with _service_lock:
        if _service is None:
            _service = build_quest_service()
        return _service


def set_quest_service(service: Optional[QuestService]) -> None:
    """Swap the process-wide service (tests, alternative wiring)."""
    global _service
    with _service_lock:
        _service = service
