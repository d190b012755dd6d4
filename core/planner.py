"""
Planner / Coach port.

The progression logic only sees two capabilities:
- propose_milestones(goal_context) -> ordered milestone proposals (Planner)
- propose_tasks(milestone_context) -> daily task proposals (Coach)

Either may raise UpstreamGenerationError (LLM errors are a subclass) or time out.
LLMPlanner is the shipped implementation; tests use a deterministic stub.
"""
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Protocol

from core.config_manager import config
from core.exceptions import UpstreamGenerationError
from core.llm_adapter import BaseLLMAdapter, get_llm
from core.logger import get_logger
from core.models import TaskPriority
from core.utils import load_prompt, parse_llm_json

logger = get_logger("planner")


@dataclass
class GoalContext:
    goal_id: str
    user_id: str
    title: str
    description: str = ""
    target_date: Optional[date] = None
    category: str = ""


@dataclass
class MilestoneContext:
    goal_id: str
    goal_title: str
    milestone_id: str
    sequence: int
    title: str
    description: str = ""
    duration_in_days: int = 7
    goal_description: str = ""


@dataclass
class MilestoneProposal:
    title: str
    description: str = ""
    duration_in_days: int = 7


@dataclass
class TaskProposal:
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM


class PlannerPort(Protocol):
    """Capability-typed port for roadmap and daily-task generation."""

    def propose_milestones(self, goal: GoalContext) -> List[MilestoneProposal]:
        ...

    def propose_tasks(self, milestone: MilestoneContext) -> List[TaskProposal]:
        ...


# Words that usually mark a multi-week objective rather than a one-off todo.
COMPLEX_GOAL_INDICATORS = (
    "learn", "master", "become", "build", "create", "develop", "achieve",
    "complete", "finish", "start", "begin", "launch", "establish", "improve",
    "enhance", "advance", "train", "study", "practice", "prepare", "plan",
    "organize", "transform", "change", "growth", "skill", "career", "business",
    "project", "habit", "routine", "lifestyle", "health", "fitness", "weight",
    "muscle", "strength", "endurance", "marathon", "certification", "degree",
    "course", "language", "instrument", "art", "writing", "reading", "coding",
    "programming", "website", "app", "software",
)


def is_complex_goal(title: str) -> bool:
    """Heuristic used when CreateGoal does not say whether a roadmap is wanted."""
    normalized = (title or "").lower()
    if len(normalized) > 15:
        return True
    return any(word in normalized for word in COMPLEX_GOAL_INDICATORS)


def max_tasks_for(milestone: MilestoneContext) -> int:
    return max(1, min(int(milestone.duration_in_days or 1), config.COACH_MAX_TASKS))


class LLMPlanner:
    """Planner/Coach backed by an LLM profile."""

    def __init__(
        self,
        llm: Optional[BaseLLMAdapter] = None,
        coach_llm: Optional[BaseLLMAdapter] = None,
    ):
        self._llm = llm
        self._coach_llm = coach_llm

    @property
    def planner_llm(self) -> BaseLLMAdapter:
        if self._llm is None:
            self._llm = get_llm("planner")
        return self._llm

    @property
    def coach_llm(self) -> BaseLLMAdapter:
        if self._coach_llm is None:
            self._coach_llm = self._llm or get_llm("coach")
        return self._coach_llm

    # ------------------------------------------------------------------
    # Planner
    # ------------------------------------------------------------------
    def propose_milestones(self, goal: GoalContext) -> List[MilestoneProposal]:
        logger.info(f"Generating roadmap for goal {goal.goal_id}")
        prompt = load_prompt("roadmap_planner", self._goal_vars(goal)) or self._planner_prompt(goal)
        data = self._ask(self.planner_llm, prompt, stage="generate_roadmap")

        raw = data.get("milestones") if isinstance(data, dict) else data
        if not isinstance(raw, list):
            raise UpstreamGenerationError("planner response has no milestone list", "generate_roadmap")

        proposals = []
        for item in raw:
            if not isinstance(item, dict) or not str(item.get("title", "")).strip():
                continue
            proposals.append(
                MilestoneProposal(
                    title=str(item["title"]).strip(),
                    description=str(item.get("description", "")).strip(),
                    duration_in_days=_positive_int(item.get("durationInDays", item.get("duration_in_days")), 7),
                )
            )
        return proposals

    # ------------------------------------------------------------------
    # Coach
    # ------------------------------------------------------------------
    def propose_tasks(self, milestone: MilestoneContext) -> List[TaskProposal]:
        logger.info(f"Generating daily tasks for milestone {milestone.milestone_id}")
        limit = max_tasks_for(milestone)
        prompt = load_prompt(
            "coach_daily_tasks", {**self._milestone_vars(milestone), "task_count": limit}
        ) or self._coach_prompt(milestone, limit)
        data = self._ask(self.coach_llm, prompt, stage="generate_tasks")

        raw = data
        if isinstance(data, dict):
            raw = data.get("dailyQuests", data.get("tasks"))
        if not isinstance(raw, list):
            raise UpstreamGenerationError("coach response has no task list", "generate_tasks")

        proposals = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            title = str(item.get("taskName", item.get("title", ""))).strip()
            if not title:
                continue
            proposals.append(
                TaskProposal(
                    title=title,
                    description=str(item.get("description", "")).strip(),
                    priority=_priority(item.get("priority")),
                )
            )
        return proposals[:limit]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _ask(llm: BaseLLMAdapter, prompt: str, stage: str) -> Any:
        response = llm.generate(prompt, temperature=0.7, max_tokens=2000)
        if not response.success:
            raise UpstreamGenerationError(f"{stage}: {response.error}", stage)
        data = parse_llm_json(response.content)
        if data is None:
            logger.warning(f"{stage}: unparsable response: {response.content[:500]}")
            raise UpstreamGenerationError(f"{stage}: response is not valid JSON", stage)
        return data

    @staticmethod
    def _goal_vars(goal: GoalContext) -> Dict[str, Any]:
        return {
            "title": goal.title,
            "description": goal.description or "No additional description provided",
            "target_date": goal.target_date.isoformat() if goal.target_date else "No specific target date",
            "category": goal.category or "General",
        }

    @staticmethod
    def _milestone_vars(milestone: MilestoneContext) -> Dict[str, Any]:
        return {
            "goal_title": milestone.goal_title,
            "title": milestone.title,
            "description": milestone.description,
            "duration_in_days": milestone.duration_in_days,
        }

    def _planner_prompt(self, goal: GoalContext) -> str:
        v = self._goal_vars(goal)
        return f"""You are a life coach who breaks complex goals into achievable roadmaps.

Create a step-by-step roadmap for this goal:

Goal: {v['title']}
Description: {v['description']}
Target Date: {v['target_date']}
Category: {v['category']}

Create 3-7 milestones. Each milestone builds on the previous one, is specific and
actionable, and has a realistic duration.

Respond with ONLY a JSON object:
{{
  "milestones": [
    {{"title": "Week 1: Foundation", "description": "What to focus on", "durationInDays": 7}}
  ]
}}"""

    def _coach_prompt(self, milestone: MilestoneContext, limit: int) -> str:
        return f"""You are a life coach who turns a milestone into daily tasks.

Goal: {milestone.goal_title}
Milestone: {milestone.title}
Milestone Description: {milestone.description}
Duration: {milestone.duration_in_days} days

Create {limit} daily tasks. Each takes 30-90 minutes, moves the milestone forward
and follows on from the previous day.

Respond with ONLY a JSON object:
{{
  "dailyQuests": [
    {{"taskName": "Research basic chords", "description": "30 minutes on G, C and D", "priority": "medium"}}
  ]
}}"""


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _priority(value: Any) -> TaskPriority:
    try:
        return TaskPriority(str(value or "medium").lower())
    except ValueError:
        return TaskPriority.MEDIUM
