"""
时间工具
"""
from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """当前UTC时间（无时区信息，便于与数据库时间比较）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
