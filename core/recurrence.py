"""
Recurrence Materializer for Questline.

Turns active recurrence rules into concrete daily tasks, once per occurrence.

- 窗口: (last_materialized_date, as_of]；从未运行过时从 anchor_date 开始（含）
- 每个 occurrence 的任务 ID 确定: <rule_id>@<YYYY-MM-DD>，重复创建计为 duplicate
- 全部 occurrence 成功后才推进 last_materialized_date（条件写入，只增不减）
- 单条规则失败互相隔离，列在报告里

Patterns:
    daily     every `interval` days from the anchor
    weekdays  Monday-Friday
    weekends  Saturday-Sunday
    weekly    `days_of_week` (default: the anchor's weekday)
Week-based patterns repeat every `interval` weeks counted from the anchor's week.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional

from core.exceptions import ConflictError
from core.logger import format_fields, get_logger
from core.models import Frequency, RecurrenceRule, Task
from core.repository import Repositories

logger = get_logger("recurrence")

WEEKDAYS = frozenset(range(0, 5))
WEEKEND = frozenset((5, 6))


def _week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def matches(rule: RecurrenceRule, day: date) -> bool:
    """Whether ``rule`` has an occurrence on ``day``."""
    if day < rule.anchor_date:
        return False
    if rule.end_date is not None and day > rule.end_date:
        return False

    interval = max(int(rule.interval or 1), 1)
    frequency = Frequency(rule.frequency)

    if frequency == Frequency.DAILY:
        return (day - rule.anchor_date).days % interval == 0

    weeks = (_week_start(day) - _week_start(rule.anchor_date)).days // 7
    if weeks % interval != 0:
        return False

    if frequency == Frequency.WEEKDAYS:
        return day.weekday() in WEEKDAYS
    if frequency == Frequency.WEEKENDS:
        return day.weekday() in WEEKEND
    days = set(rule.days_of_week or [rule.anchor_date.weekday()])
    return day.weekday() in days


def occurrences(rule: RecurrenceRule, start: date, end: date) -> List[date]:
    """Occurrence dates of ``rule`` in [start, end]."""
    start = max(start, rule.anchor_date)
    if rule.end_date is not None:
        end = min(end, rule.end_date)
    days = []
    day = start
    while day <= end:
        if matches(rule, day):
            days.append(day)
        day += timedelta(days=1)
    return days


@dataclass
class MaterializationReport:
    as_of: date
    rules_processed: int = 0
    tasks_created: int = 0
    duplicates: int = 0
    created_task_ids: List[str] = field(default_factory=list)
    failed_rules: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed_rules


class RecurrenceMaterializer:
    """Idempotent, catch-up capable recurring task generation."""

    def __init__(self, repos: Repositories):
        self.repos = repos

    def run_once(self, as_of: Optional[date] = None) -> MaterializationReport:
        """Materialize every active rule up to and including ``as_of``."""
        as_of = as_of or date.today()
        report = MaterializationReport(as_of=as_of)
        rules = self.repos.rules.list_active()
        logger.info(f"Materializing {len(rules)} active recurrence rules up to {as_of}")

        for rule in rules:
            report.rules_processed += 1
            try:
                self._materialize(rule, as_of, report)
            except Exception as e:
                report.failed_rules[rule.recurrence_rule_id] = str(e)
                logger.exception(
                    "Recurrence rule failed "
                    + format_fields(rule_id=rule.recurrence_rule_id, user_id=rule.user_id)
                )

        logger.info(
            f"Materialization done: created={report.tasks_created} "
            f"duplicates={report.duplicates} failed={len(report.failed_rules)}"
        )
        return report

    def _materialize(self, rule: RecurrenceRule, as_of: date, report: MaterializationReport) -> None:
        last = rule.last_materialized_date
        if last is not None and last >= as_of:
            return

        start = last + timedelta(days=1) if last is not None else rule.anchor_date
        if rule.end_date is not None and rule.end_date < start:
            logger.debug(f"Rule {rule.recurrence_rule_id} ended on {rule.end_date}")
            self._advance_marker(rule, as_of)
            return

        for day in occurrences(rule, start, as_of):
            task = Task(
                task_id=self.repos.tasks.key_for_occurrence(rule.recurrence_rule_id, day),
                user_id=rule.user_id,
                title=rule.title,
                description=rule.description,
                priority=rule.priority,
                due_date=day,
                goal_id=rule.goal_id,
                recurrence_rule_id=rule.recurrence_rule_id,
                occurrence_date=day,
            )
            try:
                self.repos.tasks.create(task)
            except ConflictError:
                report.duplicates += 1
                continue
            report.tasks_created += 1
            report.created_task_ids.append(task.task_id)

        self._advance_marker(rule, as_of)

    def _advance_marker(self, rule: RecurrenceRule, as_of: date) -> None:
        try:
            self.repos.rules.update(
                rule.recurrence_rule_id,
                {"last_materialized_date": as_of},
                expected={"last_materialized_date": rule.last_materialized_date},
            )
        except ConflictError:
            # 并发运行已推进标记；只要不倒退即可
            current = self.repos.rules.get(rule.recurrence_rule_id)
            marker = current.last_materialized_date if current else None
            logger.info(
                "Materialization marker moved concurrently "
                + format_fields(rule_id=rule.recurrence_rule_id, marker=marker, as_of=as_of)
            )
