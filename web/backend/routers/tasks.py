from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import APIRouter, Header
from pydantic import BaseModel

from core.models import TaskPriority, TaskStatus, to_record
from core.quest_service import QuestService, get_quest_service
from web.backend.errors import http_errors

router = APIRouter()


class CreateTaskRequest(BaseModel):
    title: str
    due_date: date
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    goal_id: Optional[str] = None
    milestone_id: Optional[str] = None


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[date] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None


def get_service() -> QuestService:
    return get_quest_service()


@router.get("")
def list_tasks(
    due_date: Optional[date] = None,
    goal_id: Optional[str] = None,
    milestone_id: Optional[str] = None,
    x_user_id: str = Header(..., alias="X-User-Id"),
):
    with http_errors():
        tasks = get_service().get_tasks(
            x_user_id, due_date=due_date, goal_id=goal_id, milestone_id=milestone_id
        )
    return {"tasks": [to_record(t) for t in tasks]}


@router.get("/{task_id}")
def get_task(task_id: str, x_user_id: str = Header(..., alias="X-User-Id")):
    with http_errors():
        task = get_service().get_task(x_user_id, task_id)
    return {"task": to_record(task)}


@router.post("", status_code=201)
def create_task(req: CreateTaskRequest, x_user_id: str = Header(..., alias="X-User-Id")):
    with http_errors():
        task = get_service().create_task(
            x_user_id,
            title=req.title,
            due_date=req.due_date,
            description=req.description,
            priority=req.priority,
            goal_id=req.goal_id,
            milestone_id=req.milestone_id,
        )
    return {"task": to_record(task)}


@router.patch("/{task_id}")
def update_task(
    task_id: str,
    req: UpdateTaskRequest,
    x_user_id: str = Header(..., alias="X-User-Id"),
):
    """
    更新任务并同步执行级联。
    级联失败不会让本次写入失败，progression.partial 为 true。
    """
    changes = {k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None}
    with http_errors():
        task, progression = get_service().update_task(x_user_id, task_id, changes)
    return {"task": to_record(task), "progression": asdict(progression)}


@router.delete("/{task_id}")
def delete_task(task_id: str, x_user_id: str = Header(..., alias="X-User-Id")):
    with http_errors():
        progression = get_service().delete_task(x_user_id, task_id)
    return {"success": True, "task_id": task_id, "progression": asdict(progression)}
