"""
流程定义管理 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status
from typing import List, Optional, Dict, Any, Union
import logging

from ..models import (
    DefinitionPublishRequest, DefinitionResponse, DefinitionDetailResponse,
    ValidationResponse
)
from ..dependencies import get_process_engine


logger = logging.getLogger(__name__)
router = APIRouter()


def _source(request: DefinitionPublishRequest) -> Union[str, Dict[str, Any]]:
    if request.definition is not None:
        return request.definition
    if request.source:
        return request.source
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "error": "missing_definition",
            "message": "Either 'definition' or 'source' is required"
        }
    )


@router.post("/", response_model=DefinitionDetailResponse, status_code=status.HTTP_201_CREATED)
async def publish_definition(
    request: DefinitionPublishRequest,
    engine = Depends(get_process_engine)
) -> DefinitionDetailResponse:
    """发布流程定义（同名定义生成新版本）"""
    ref = await engine.publish_definition(_source(request))
    definition = await engine.get_definition(ref.name, ref.version)
    return DefinitionDetailResponse.from_definition(definition)


@router.post("/validate", response_model=ValidationResponse)
async def validate_definition(
    request: DefinitionPublishRequest,
    engine = Depends(get_process_engine)
) -> ValidationResponse:
    """校验流程定义（不发布）"""
    errors = engine.validate_definition(_source(request))
    return ValidationResponse(valid=not errors, errors=errors)


@router.get("/", response_model=List[DefinitionResponse])
async def list_definitions(
    category: Optional[str] = Query(None, description="分类"),
    active_only: bool = Query(False, description="只列出激活版本"),
    engine = Depends(get_process_engine)
) -> List[DefinitionResponse]:
    """列出流程定义"""
    definitions = await engine.list_definitions(category=category, active_only=active_only)
    return [DefinitionResponse.from_definition(d) for d in definitions]


@router.get("/{name}", response_model=DefinitionDetailResponse)
async def get_active_definition(
    name: str,
    engine = Depends(get_process_engine)
) -> DefinitionDetailResponse:
    """获取最高的已激活版本"""
    return DefinitionDetailResponse.from_definition(await engine.get_definition(name))


@router.get("/{name}/versions/{version}", response_model=DefinitionDetailResponse)
async def get_definition(
    name: str,
    version: int,
    engine = Depends(get_process_engine)
) -> DefinitionDetailResponse:
    """获取指定版本"""
    return DefinitionDetailResponse.from_definition(await engine.get_definition(name, version))


@router.post("/{name}/versions/{version}/deactivate", response_model=DefinitionResponse)
async def deactivate_definition(
    name: str,
    version: int,
    engine = Depends(get_process_engine)
) -> DefinitionResponse:
    """停用版本，运行中的实例不受影响"""
    await engine.deactivate_definition(name, version)
    return DefinitionResponse.from_definition(await engine.get_definition(name, version))


@router.post("/{name}/versions/{version}/activate", response_model=DefinitionResponse)
async def activate_definition(
    name: str,
    version: int,
    engine = Depends(get_process_engine)
) -> DefinitionResponse:
    """重新激活版本"""
    await engine.definitions.activate(name, version)
    return DefinitionResponse.from_definition(await engine.get_definition(name, version))
