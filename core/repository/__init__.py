# Repository ports: conditional (optimistic) read/write access to Goal, Milestone,
# Task and RecurrenceRule records. JsonRepository is the reference backend.

from core.repository.base import Repository
from core.repository.entities import (
    GoalRepository,
    MilestoneRepository,
    RecurrenceRuleRepository,
    Repositories,
    TaskRepository,
    open_repositories,
)
from core.repository.json_store import JsonRepository

__all__ = [
    "Repository",
    "JsonRepository",
    "GoalRepository",
    "MilestoneRepository",
    "TaskRepository",
    "RecurrenceRuleRepository",
    "Repositories",
    "open_repositories",
]
