from dataclasses import asdict
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Header
from pydantic import BaseModel, Field

from core.models import Frequency, RuleStatus, TaskPriority, to_record
from core.quest_service import QuestService, get_quest_service
from web.backend.errors import http_errors

router = APIRouter()


class CreateRuleRequest(BaseModel):
    title: str
    frequency: Frequency
    anchor_date: Optional[date] = None
    interval: int = 1
    days_of_week: List[int] = Field(default_factory=list, description="0=Monday ... 6=Sunday")
    end_date: Optional[date] = None
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    goal_id: Optional[str] = None


class UpdateRuleRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    status: Optional[RuleStatus] = None
    frequency: Optional[Frequency] = None
    interval: Optional[int] = None
    days_of_week: Optional[List[int]] = None
    end_date: Optional[date] = None
    goal_id: Optional[str] = None


class RunRequest(BaseModel):
    as_of: Optional[date] = None


def get_service() -> QuestService:
    return get_quest_service()


@router.get("")
def list_rules(x_user_id: str = Header(..., alias="X-User-Id")):
    with http_errors():
        rules = get_service().get_rules(x_user_id)
    return {"rules": [to_record(r) for r in rules]}


@router.post("", status_code=201)
def create_rule(req: CreateRuleRequest, x_user_id: str = Header(..., alias="X-User-Id")):
    with http_errors():
        rule = get_service().create_rule(
            x_user_id,
            title=req.title,
            frequency=req.frequency,
            anchor_date=req.anchor_date,
            interval=req.interval,
            days_of_week=req.days_of_week,
            end_date=req.end_date,
            description=req.description,
            priority=req.priority,
            goal_id=req.goal_id,
        )
    return {"rule": to_record(rule)}


@router.patch("/{rule_id}")
def update_rule(
    rule_id: str,
    req: UpdateRuleRequest,
    x_user_id: str = Header(..., alias="X-User-Id"),
):
    """编辑 / 暂停 / 恢复规则。显式传 null 可清空 end_date 和 goal_id。"""
    changes = req.model_dump(exclude_unset=True)
    with http_errors():
        rule = get_service().update_rule(x_user_id, rule_id, changes)
    return {"rule": to_record(rule)}


@router.delete("/{rule_id}")
def delete_rule(rule_id: str, x_user_id: str = Header(..., alias="X-User-Id")):
    with http_errors():
        get_service().delete_rule(x_user_id, rule_id)
    return {"success": True, "recurrence_rule_id": rule_id}


@router.post("/run")
def run_materializer(req: Optional[RunRequest] = None):
    """手动触发物化（运维入口），与每日 tick 相同且可重复执行。"""
    as_of = req.as_of if req else None
    with http_errors():
        report = get_service().run_materializer(as_of)
    payload = asdict(report)
    payload["as_of"] = report.as_of.isoformat()
    return payload
