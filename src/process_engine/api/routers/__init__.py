"""
API 路由器
"""

from . import definitions, instances, tasks, events, monitoring

__all__ = ["definitions", "instances", "tasks", "events", "monitoring"]
