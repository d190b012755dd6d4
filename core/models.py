"""
Core Data Models for Questline.
Defines goals, roadmap milestones, daily tasks and recurrence rules.
"""
import dataclasses
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar, get_type_hints


class GoalStatus(str, Enum):
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class RoadmapStatus(str, Enum):
    NONE = "none"              # 未请求路线图
    GENERATING = "generating"  # 流水线运行中
    READY = "ready"            # 里程碑已持久化
    FAILED = "failed"          # 生成失败或超时


class MilestoneStatus(str, Enum):
    LOCKED = "locked"
    ACTIVE = "active"
    COMPLETED = "completed"


class TaskGeneration(str, Enum):
    """Whether the coach has produced the task batch for a milestone."""
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"  # degraded: re-drive needed


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKENDS = "weekends"
    WEEKLY = "weekly"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


def now_iso() -> str:
    return datetime.now().isoformat()


@dataclass
class Goal:
    """长期目标（Epic Quest）"""
    goal_id: str
    user_id: str
    title: str
    description: str = ""
    target_date: Optional[date] = None
    category: str = ""
    status: GoalStatus = GoalStatus.NOT_STARTED
    roadmap_status: RoadmapStatus = RoadmapStatus.NONE
    roadmap_execution_id: Optional[str] = None
    roadmap_started_at: Optional[str] = None
    roadmap_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    version: int = 0


@dataclass
class Milestone:
    """路线图中的一个有序阶段"""
    milestone_id: str
    goal_id: str
    user_id: str
    sequence: int
    title: str
    description: str = ""
    duration_in_days: int = 7
    status: MilestoneStatus = MilestoneStatus.LOCKED
    task_generation: TaskGeneration = TaskGeneration.PENDING
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    version: int = 0


@dataclass
class Task:
    """每日任务（Daily Quest）"""
    task_id: str
    user_id: str
    title: str
    due_date: date
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    goal_id: Optional[str] = None
    milestone_id: Optional[str] = None
    recurrence_rule_id: Optional[str] = None
    occurrence_date: Optional[date] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    version: int = 0


@dataclass
class RecurrenceRule:
    """周期任务规则"""
    recurrence_rule_id: str
    user_id: str
    title: str
    anchor_date: date
    frequency: Frequency = Frequency.DAILY
    interval: int = 1
    days_of_week: List[int] = field(default_factory=list)  # 0=Monday ... 6=Sunday
    end_date: Optional[date] = None
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    goal_id: Optional[str] = None
    status: RuleStatus = RuleStatus.ACTIVE
    last_materialized_date: Optional[date] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    version: int = 0


# ---------------------------------------------------------------------------
# Record mapping
# ---------------------------------------------------------------------------

T = TypeVar("T")

_HINT_CACHE: Dict[type, Dict[str, Any]] = {}


def _hints(cls: type) -> Dict[str, Any]:
    if cls not in _HINT_CACHE:
        _HINT_CACHE[cls] = get_type_hints(cls)
    return _HINT_CACHE[cls]


def _unwrap_optional(hint: Any) -> Any:
    args = getattr(hint, "__args__", None)
    if args and type(None) in args:
        rest = [a for a in args if a is not type(None)]
        if len(rest) == 1:
            return rest[0]
    return hint


def encode_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, list):
        return [encode_value(v) for v in value]
    return value


def _decode(hint: Any, value: Any) -> Any:
    if value is None:
        return None
    target = _unwrap_optional(hint)
    if isinstance(target, type):
        if issubclass(target, Enum) and not isinstance(value, target):
            return target(value)
        if target is date and isinstance(value, str):
            return date.fromisoformat(value[:10])
    return value


def to_record(obj: Any) -> Dict[str, Any]:
    """Dataclass -> JSON-safe dict (enums as values, dates as ISO strings)."""
    return {f.name: encode_value(getattr(obj, f.name)) for f in dataclasses.fields(obj)}


def from_record(cls: Type[T], record: Dict[str, Any]) -> T:
    """JSON-safe dict -> dataclass; unknown keys are ignored."""
    hints = _hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name in record:
            kwargs[f.name] = _decode(hints.get(f.name), record[f.name])
    return cls(**kwargs)
