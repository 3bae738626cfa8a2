"""
任务 API 路由
"""
from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from ..models import TaskResponse, TaskCompleteRequest, TaskCompleteResponse
from ..dependencies import get_process_engine


router = APIRouter()


@router.get("/", response_model=List[TaskResponse])
async def list_tasks(
    instance_id: Optional[str] = Query(None, description="实例ID"),
    assignee: Optional[str] = Query(None, description="处理人"),
    role: Optional[str] = Query(None, description="角色"),
    engine = Depends(get_process_engine)
) -> List[TaskResponse]:
    """列出待办任务，指定实例时列出该实例的全部任务"""
    tasks = await engine.list_tasks(instance_id=instance_id, assignee=assignee, role=role)
    return [TaskResponse.from_task(t) for t in tasks]


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: str,
    engine = Depends(get_process_engine)
) -> TaskResponse:
    return TaskResponse.from_task(await engine.get_task(task_id))


@router.post("/{task_id}/complete", response_model=TaskCompleteResponse)
async def complete_task(
    task_id: str,
    request: TaskCompleteRequest,
    engine = Depends(get_process_engine)
) -> TaskCompleteResponse:
    """完成任务，重复提交返回首次完成的结果"""
    result = await engine.complete_task(task_id, request.actor, request.result)
    return TaskCompleteResponse(task_id=task_id, result=result or {})
