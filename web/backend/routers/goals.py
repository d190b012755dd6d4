from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header
from pydantic import BaseModel, Field

from core.models import GoalStatus, to_record
from core.quest_service import QuestService, get_quest_service
from web.backend.errors import http_errors

router = APIRouter()


class CreateGoalRequest(BaseModel):
    title: str
    description: str = ""
    target_date: Optional[date] = None
    category: str = ""
    # None: decided by the complex-goal heuristic
    generate_roadmap: Optional[bool] = None


class UpdateGoalRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    target_date: Optional[date] = None
    category: Optional[str] = None
    status: Optional[GoalStatus] = None


class RegenerateTasksRequest(BaseModel):
    force: bool = Field(default=False, description="Generate even if the milestone already has tasks")


def get_service() -> QuestService:
    return get_quest_service()


@router.post("", status_code=201)
def create_goal(
    req: CreateGoalRequest,
    background_tasks: BackgroundTasks,
    x_user_id: str = Header(..., alias="X-User-Id"),
):
    """
    创建目标。
    需要路线图时同步写入 roadmap_status=generating，流水线在后台执行。
    """
    with http_errors():
        goal = get_service().create_goal(
            x_user_id,
            title=req.title,
            description=req.description,
            target_date=req.target_date,
            category=req.category,
            generate_roadmap=req.generate_roadmap,
            dispatch=background_tasks.add_task,
        )
    return {"goal": to_record(goal)}


@router.get("")
def list_goals(x_user_id: str = Header(..., alias="X-User-Id")):
    with http_errors():
        goals = get_service().get_goals(x_user_id)
    return {"goals": [to_record(g) for g in goals]}


@router.get("/{goal_id}")
def get_goal(goal_id: str, x_user_id: str = Header(..., alias="X-User-Id")):
    with http_errors():
        goal = get_service().get_goal(x_user_id, goal_id)
    return {"goal": to_record(goal)}


@router.get("/{goal_id}/milestones")
def get_milestones(goal_id: str, x_user_id: str = Header(..., alias="X-User-Id")):
    """路线图未 ready 时返回空列表，附带当前 roadmap_status。"""
    service = get_service()
    with http_errors():
        goal = service.get_goal(x_user_id, goal_id)
        milestones = service.get_milestones(x_user_id, goal_id)
    return {
        "goal_id": goal.goal_id,
        "roadmap_status": goal.roadmap_status.value,
        "milestones": [to_record(m) for m in milestones],
    }


@router.post("/{goal_id}/roadmap", status_code=202)
def retry_roadmap(
    goal_id: str,
    background_tasks: BackgroundTasks,
    x_user_id: str = Header(..., alias="X-User-Id"),
):
    with http_errors():
        goal = get_service().retry_roadmap(
            x_user_id, goal_id, dispatch=background_tasks.add_task
        )
    return {"goal": to_record(goal)}


@router.post("/{goal_id}/milestones/{milestone_id}/tasks")
def regenerate_milestone_tasks(
    goal_id: str,
    milestone_id: str,
    req: Optional[RegenerateTasksRequest] = None,
    x_user_id: str = Header(..., alias="X-User-Id"),
):
    force = req.force if req else False
    with http_errors():
        created = get_service().regenerate_milestone_tasks(
            x_user_id, goal_id, milestone_id, force=force
        )
    return {"milestone_id": milestone_id, "tasks_created": created}


@router.patch("/{goal_id}")
def update_goal(
    goal_id: str,
    req: UpdateGoalRequest,
    x_user_id: str = Header(..., alias="X-User-Id"),
):
    """编辑目标。显式传 null 可清空 target_date；status 需与里程碑状态一致。"""
    changes = req.model_dump(exclude_unset=True)
    with http_errors():
        goal = get_service().update_goal(x_user_id, goal_id, changes)
    return {"goal": to_record(goal)}


@router.delete("/{goal_id}")
def delete_goal(goal_id: str, x_user_id: str = Header(..., alias="X-User-Id")):
    """删除目标及其里程碑和任务；关联的周期规则保留但解除关联。"""
    with http_errors():
        report = get_service().delete_goal(x_user_id, goal_id)
    return {"success": True, **asdict(report)}
