"""
Entity repositories and the bundle the services are wired with.
"""
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import List, Optional

from core.models import (
    Goal,
    Milestone,
    MilestoneStatus,
    RecurrenceRule,
    RuleStatus,
    Task,
)
from core.repository.json_store import JsonRepository


def _path(data_dir: Optional[Path], name: str) -> Optional[Path]:
    return data_dir / name if data_dir is not None else None


class GoalRepository(JsonRepository[Goal]):
    def __init__(self, data_dir: Optional[Path] = None):
        super().__init__(Goal, "goal", "goal_id", _path(data_dir, "goals.json"))

    def list_for_user(self, user_id: str) -> List[Goal]:
        return sorted(self.query_by_owner(user_id), key=lambda g: (g.created_at or "", g.goal_id))


class MilestoneRepository(JsonRepository[Milestone]):
    def __init__(self, data_dir: Optional[Path] = None):
        super().__init__(Milestone, "milestone", "milestone_id", _path(data_dir, "milestones.json"))

    @staticmethod
    def key_for(goal_id: str, sequence: int) -> str:
        return f"{goal_id}-m{sequence}"

    def list_for_goal(self, goal_id: str) -> List[Milestone]:
        return sorted(self.query(goal_id=goal_id), key=lambda m: m.sequence)

    def get_by_sequence(self, goal_id: str, sequence: int) -> Optional[Milestone]:
        found = self.query(goal_id=goal_id, sequence=sequence)
        return found[0] if found else None

    def get_active(self, goal_id: str) -> Optional[Milestone]:
        active = self.query(goal_id=goal_id, status=MilestoneStatus.ACTIVE)
        return min(active, key=lambda m: m.sequence) if active else None


class TaskRepository(JsonRepository[Task]):
    def __init__(self, data_dir: Optional[Path] = None):
        super().__init__(Task, "task", "task_id", _path(data_dir, "tasks.json"))

    @staticmethod
    def key_for_occurrence(rule_id: str, occurrence: date) -> str:
        """Deterministic key: one task per rule and occurrence date."""
        return f"{rule_id}@{occurrence.isoformat()}"

    @staticmethod
    def key_for_generated(milestone_id: str, index: int) -> str:
        return f"{milestone_id}-t{index}"

    def list_for_milestone(self, milestone_id: str) -> List[Task]:
        return sorted(self.query(milestone_id=milestone_id), key=lambda t: (t.due_date, t.task_id))

    def list_for_user(
        self,
        user_id: str,
        due_date: Optional[date] = None,
        goal_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
    ) -> List[Task]:
        filters = {}
        if due_date is not None:
            filters["due_date"] = due_date
        if goal_id is not None:
            filters["goal_id"] = goal_id
        if milestone_id is not None:
            filters["milestone_id"] = milestone_id
        tasks = self.query_by_owner(user_id, **filters)
        return sorted(tasks, key=lambda t: (t.due_date, t.created_at or "", t.task_id))


class RecurrenceRuleRepository(JsonRepository[RecurrenceRule]):
    def __init__(self, data_dir: Optional[Path] = None):
        super().__init__(
            RecurrenceRule,
            "recurrence_rule",
            "recurrence_rule_id",
            _path(data_dir, "recurrence_rules.json"),
        )

    def list_active(self) -> List[RecurrenceRule]:
        rules = self.query(status=RuleStatus.ACTIVE)
        return sorted(rules, key=lambda r: r.recurrence_rule_id)


@dataclass
class Repositories:
    goals: GoalRepository
    milestones: MilestoneRepository
    tasks: TaskRepository
    rules: RecurrenceRuleRepository


def open_repositories(data_dir: Optional[Path] = None) -> Repositories:
    """JSON-backed repositories under ``data_dir``; memory-only when None."""
    return Repositories(
        goals=GoalRepository(data_dir),
        milestones=MilestoneRepository(data_dir),
        tasks=TaskRepository(data_dir),
        rules=RecurrenceRuleRepository(data_dir),
    )
