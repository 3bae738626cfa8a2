"""
SQLAlchemy 数据库模型定义
"""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer,
    DateTime, ForeignKey, UniqueConstraint, CheckConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base


Base = declarative_base()


class ProcessDefinitionRecord(Base):
    """流程定义模型"""
    __tablename__ = 'process_definitions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False)
    category = Column(String(100))
    description = Column(Text)
    trigger_type = Column(String(20), nullable=False, default='manual')
    definition = Column(JSON, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(String(255))
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('name', 'version', name='unique_process_name_version'),
        CheckConstraint("trigger_type IN ('manual', 'scheduled', 'event')", name='check_trigger_type'),
        Index('idx_process_definitions_name', 'name'),
        Index('idx_process_definitions_active', 'is_active'),
    )


class ProcessInstanceRecord(Base):
    """流程实例模型（当前状态投影）"""
    __tablename__ = 'process_instances'

    id = Column(String(36), primary_key=True)
    definition_name = Column(String(255), nullable=False)
    definition_version = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    state = Column(JSON, nullable=False)
    idempotency_key = Column(String(255), unique=True)
    started_by = Column(String(255))
    error_message = Column(Text)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'suspended', 'completed', 'failed', 'cancelled')",
            name='check_instance_status'
        ),
        Index('idx_process_instances_status', 'status'),
        Index('idx_process_instances_definition', 'definition_name', 'definition_version'),
    )


class InstanceHistoryRecord(Base):
    """实例历史记录（只追加）"""
    __tablename__ = 'instance_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String(36), ForeignKey('process_instances.id', ondelete='CASCADE'), nullable=False)
    seq = Column(Integer, nullable=False)
    action = Column(String(30), nullable=False)
    step_id = Column(String(255))
    position_id = Column(String(36))
    at = Column(DateTime, nullable=False)
    detail = Column(JSON, default=dict)

    __table_args__ = (
        UniqueConstraint('instance_id', 'seq', name='unique_instance_history_seq'),
        Index('idx_instance_history_instance_id', 'instance_id'),
    )


class TaskRecord(Base):
    """任务模型"""
    __tablename__ = 'tasks'

    id = Column(String(36), primary_key=True)
    instance_id = Column(String(36), ForeignKey('process_instances.id', ondelete='CASCADE'), nullable=False)
    step_id = Column(String(255), nullable=False)
    position_id = Column(String(36))
    title = Column(String(500))
    assignee = Column(String(255))
    role = Column(String(255))
    due_at = Column(DateTime)
    status = Column(String(20), nullable=False)
    result = Column(JSON)
    completed_by = Column(String(255))
    created_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'completed', 'expired', 'cancelled')",
            name='check_task_status'
        ),
        Index('idx_tasks_instance_id', 'instance_id'),
        Index('idx_tasks_status', 'status'),
        Index('idx_tasks_assignee', 'assignee'),
    )


class TimerSubscriptionRecord(Base):
    """定时器订阅模型"""
    __tablename__ = 'timer_subscriptions'

    id = Column(String(36), primary_key=True)
    instance_id = Column(String(36), ForeignKey('process_instances.id', ondelete='CASCADE'), nullable=False)
    step_id = Column(String(255), nullable=False)
    position_id = Column(String(36))
    purpose = Column(String(20), nullable=False)
    disposition = Column(String(20), nullable=False)
    fire_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "disposition IN ('pending', 'fired', 'cancelled')",
            name='check_timer_disposition'
        ),
        Index('idx_timer_subscriptions_due', 'disposition', 'fire_at'),
        Index('idx_timer_subscriptions_step', 'instance_id', 'step_id'),
    )

