"""
外部事件 API 路由
"""
from fastapi import APIRouter, Depends, status
import logging

from ..models import EventPublishRequest, EventPublishResponse
from ..dependencies import get_process_engine


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=EventPublishResponse, status_code=status.HTTP_202_ACCEPTED)
async def publish_event(
    request: EventPublishRequest,
    engine = Depends(get_process_engine)
) -> EventPublishResponse:
    """发布外部事件，无人等待时在重放窗口内缓存"""
    delivered = await engine.publish_event(
        request.name,
        request.correlation_key,
        request.payload,
        event_id=request.event_id
    )
    logger.info(f"Event {request.name}/{request.correlation_key} delivered to {delivered} target(s)")
    return EventPublishResponse(delivered=delivered)
