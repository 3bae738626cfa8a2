"""
流程实例 API 路由
"""
from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
import logging

from ..models import (
    InstantiateRequest, InstantiateResponse, InstanceResponse, InstanceStatusEnum,
    AdminActionRequest, ForceAdvanceRequest, HistoryEntryInfo, TaskResponse
)
from ..dependencies import get_process_engine
from ...models.instance import InstanceStatus


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=InstantiateResponse, status_code=status.HTTP_201_CREATED)
async def instantiate(
    request: InstantiateRequest,
    engine = Depends(get_process_engine)
) -> InstantiateResponse:
    """创建流程实例，同一幂等键重复提交返回同一实例"""
    instance_id = await engine.instantiate(
        request.definition,
        variables=request.variables,
        started_by=request.started_by,
        idempotency_key=request.idempotency_key
    )
    logger.info(f"Instantiated {request.definition} as {instance_id}")
    return InstantiateResponse(instance_id=instance_id)


@router.get("/", response_model=List[InstanceResponse])
async def list_instances(
    status_filter: Optional[InstanceStatusEnum] = Query(None, alias="status", description="实例状态"),
    definition: Optional[str] = Query(None, description="流程名称"),
    version: Optional[int] = Query(None, description="流程版本"),
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    engine = Depends(get_process_engine)
) -> List[InstanceResponse]:
    """列出流程实例"""
    instances = await engine.list_instances(
        status=InstanceStatus(status_filter.value) if status_filter else None,
        definition=definition,
        version=version,
        offset=offset,
        limit=limit
    )
    return [InstanceResponse.from_instance(i) for i in instances]


@router.get("/{instance_id}", response_model=InstanceResponse)
async def get_instance(
    instance_id: str,
    engine = Depends(get_process_engine)
) -> InstanceResponse:
    """获取实例详情"""
    return InstanceResponse.from_instance(await engine.get_instance(instance_id))


@router.get("/{instance_id}/history", response_model=List[HistoryEntryInfo])
async def get_history(
    instance_id: str,
    engine = Depends(get_process_engine)
) -> List[HistoryEntryInfo]:
    """获取实例历史（按序号）"""
    return [HistoryEntryInfo.from_entry(e) for e in await engine.get_history(instance_id)]


@router.get("/{instance_id}/tasks", response_model=List[TaskResponse])
async def list_instance_tasks(
    instance_id: str,
    engine = Depends(get_process_engine)
) -> List[TaskResponse]:
    """获取实例的全部任务"""
    await engine.get_instance(instance_id)
    return [TaskResponse.from_task(t) for t in await engine.list_tasks(instance_id=instance_id)]


@router.post("/{instance_id}/cancel", response_model=InstanceResponse)
async def cancel_instance(
    instance_id: str,
    request: AdminActionRequest = None,
    engine = Depends(get_process_engine)
) -> InstanceResponse:
    """取消实例"""
    reason = request.reason if request else None
    return InstanceResponse.from_instance(await engine.cancel_instance(instance_id, reason))


@router.post("/{instance_id}/suspend", response_model=InstanceResponse)
async def suspend_instance(
    instance_id: str,
    request: AdminActionRequest = None,
    engine = Depends(get_process_engine)
) -> InstanceResponse:
    """暂停实例"""
    reason = request.reason if request else None
    return InstanceResponse.from_instance(await engine.suspend_instance(instance_id, reason))


@router.post("/{instance_id}/resume", response_model=InstanceResponse)
async def resume_instance(
    instance_id: str,
    request: AdminActionRequest = None,
    engine = Depends(get_process_engine)
) -> InstanceResponse:
    """恢复实例"""
    reason = request.reason if request else None
    return InstanceResponse.from_instance(await engine.resume_instance(instance_id, reason))


@router.post("/{instance_id}/force-advance", response_model=InstanceResponse)
async def force_advance(
    instance_id: str,
    request: ForceAdvanceRequest,
    engine = Depends(get_process_engine)
) -> InstanceResponse:
    """强制推进等待中的步骤"""
    instance = await engine.force_advance(
        instance_id,
        request.step_id,
        target=request.target,
        outcome=request.outcome
    )
    return InstanceResponse.from_instance(instance)
