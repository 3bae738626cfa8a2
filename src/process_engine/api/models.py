"""
API 请求和响应模型
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

from ..models.definition import ProcessDefinition
from ..models.instance import ProcessInstance, HistoryEntry
from ..models.task import Task
from ..core.parser import definition_to_dict


class InstanceStatusEnum(str, Enum):
    """实例状态枚举（API）"""
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# 流程定义相关模型

class DefinitionPublishRequest(BaseModel):
    """发布流程定义请求，definition 与 source 二选一"""
    definition: Optional[Dict[str, Any]] = Field(None, description="流程定义（JSON对象）")
    source: Optional[str] = Field(None, description="流程定义文本（YAML/JSON）")


class DefinitionResponse(BaseModel):
    """流程定义摘要"""
    name: str = Field(..., description="流程名称")
    version: int = Field(..., description="版本号")
    ref: str = Field(..., description="引用（name@version）")
    category: Optional[str] = Field(None, description="分类")
    description: Optional[str] = Field(None, description="描述")
    trigger: str = Field(..., description="触发方式")
    is_active: bool = Field(True, description="是否激活")
    step_count: int = Field(..., description="步骤数量")
    created_at: datetime = Field(..., description="发布时间")

    @classmethod
    def from_definition(cls, definition: ProcessDefinition) -> "DefinitionResponse":
        return cls(
            name=definition.name,
            version=definition.version,
            ref=str(definition.ref),
            category=definition.category,
            description=definition.description,
            trigger=definition.trigger.type.value,
            is_active=definition.active,
            step_count=len(definition.steps),
            created_at=definition.created_at
        )


class DefinitionDetailResponse(DefinitionResponse):
    """流程定义详情"""
    definition: Dict[str, Any] = Field(..., description="完整定义")

    @classmethod
    def from_definition(cls, definition: ProcessDefinition) -> "DefinitionDetailResponse":
        summary = DefinitionResponse.from_definition(definition)
        return cls(**summary.model_dump(), definition=definition_to_dict(definition))


class ValidationResponse(BaseModel):
    """校验结果"""
    valid: bool = Field(..., description="是否有效")
    errors: List[str] = Field(default_factory=list, description="错误列表")


# 实例相关模型

class InstantiateRequest(BaseModel):
    """创建实例请求"""
    definition: str = Field(..., description="流程名称或 name@version")
    variables: Dict[str, Any] = Field(default_factory=dict, description="初始变量")
    started_by: Optional[str] = Field(None, description="发起人")
    idempotency_key: Optional[str] = Field(None, description="幂等键")


class AdminActionRequest(BaseModel):
    """取消/暂停/恢复请求"""
    reason: Optional[str] = Field(None, description="原因")


class ForceAdvanceRequest(BaseModel):
    """强制推进请求"""
    step_id: str = Field(..., description="等待中的步骤ID")
    target: Optional[str] = Field(None, description="目标步骤ID，为空时按出边推进")
    outcome: str = Field("completed", description="结束方式")


class PositionInfo(BaseModel):
    """活动位置"""
    id: str
    step_id: str
    entered_at: datetime
    task_id: Optional[str] = None
    timer_id: Optional[str] = None
    event_name: Optional[str] = None
    correlation_key: Optional[str] = None


class HistoryEntryInfo(BaseModel):
    """历史记录"""
    seq: int
    action: str
    at: datetime
    step_id: Optional[str] = None
    position_id: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry: HistoryEntry) -> "HistoryEntryInfo":
        return cls(**entry.to_dict())


class InstanceResponse(BaseModel):
    """实例信息"""
    id: str = Field(..., description="实例ID")
    definition: str = Field(..., description="流程定义引用")
    status: InstanceStatusEnum = Field(..., description="实例状态")
    variables: Dict[str, Any] = Field(default_factory=dict, description="流程变量")
    positions: List[PositionInfo] = Field(default_factory=list, description="活动位置")
    error: Optional[Dict[str, Any]] = Field(None, description="失败原因")
    version: int = Field(..., description="存储版本")
    started_by: Optional[str] = Field(None, description="发起人")
    started_at: datetime = Field(..., description="开始时间")
    completed_at: Optional[datetime] = Field(None, description="结束时间")

    @classmethod
    def from_instance(cls, instance: ProcessInstance) -> "InstanceResponse":
        return cls(
            id=instance.id,
            definition=str(instance.definition),
            status=instance.status.value,
            variables=instance.variables,
            positions=[PositionInfo(**p.to_dict()) for p in instance.positions],
            error=instance.error.to_dict() if instance.error else None,
            version=instance.version,
            started_by=instance.started_by,
            started_at=instance.started_at,
            completed_at=instance.completed_at
        )


class InstantiateResponse(BaseModel):
    """创建实例响应"""
    instance_id: str = Field(..., description="实例ID")


# 任务相关模型

class TaskCompleteRequest(BaseModel):
    """完成任务请求"""
    actor: str = Field(..., description="处理人")
    result: Dict[str, Any] = Field(default_factory=dict, description="任务结果")


class TaskResponse(BaseModel):
    """任务信息"""
    id: str
    instance_id: str
    step_id: str
    title: str = ""
    assignee: Optional[str] = None
    role: Optional[str] = None
    status: str
    due_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    completed_by: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            instance_id=task.instance_id,
            step_id=task.step_id,
            title=task.title,
            assignee=task.assignee,
            role=task.role,
            status=task.status.value,
            due_at=task.due_at,
            result=task.result,
            completed_by=task.completed_by,
            created_at=task.created_at,
            completed_at=task.completed_at
        )


class TaskCompleteResponse(BaseModel):
    """完成任务响应"""
    task_id: str
    result: Dict[str, Any] = Field(default_factory=dict)


# 事件相关模型

class EventPublishRequest(BaseModel):
    """发布外部事件请求"""
    name: str = Field(..., description="事件名称")
    correlation_key: str = Field(..., description="关联键")
    payload: Dict[str, Any] = Field(default_factory=dict, description="事件数据")
    event_id: Optional[str] = Field(None, description="事件ID（用于去重）")


class EventPublishResponse(BaseModel):
    """发布外部事件响应"""
    delivered: int = Field(..., description="投递数量")


# 监控相关模型

class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="健康状态")
    version: str = Field(..., description="版本号")
    timestamp: datetime = Field(..., description="检查时间")
    checks: Dict[str, Any] = Field(..., description="各项检查结果")


class StatsResponse(BaseModel):
    """运行统计"""
    instances: Dict[str, int] = Field(..., description="按状态统计的实例数")
    open_tasks: int = Field(..., description="待办任务数")
    dispatcher: Dict[str, Any] = Field(..., description="调度通道状态")
    metrics: Dict[str, Any] = Field(default_factory=dict, description="运行指标")
