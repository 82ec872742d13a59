"""
数据模型 API 路由
"""

import uuid

from fastapi import APIRouter, status

from app.core.deps import CurrentUser, DBSession
from app.models.base import BaseResponse
from app.schemas.data_model import (
    DataModelBuildRequest,
    DataModelBuildResult,
    DataModelResponse,
    QueryPreviewRequest,
    QueryResult,
    RefreshResult,
)
from app.services.data_model import DataModelService

router = APIRouter(prefix="/data-models", tags=["data-models"])


@router.post("/preview", response_model=BaseResponse[QueryResult])
async def preview_query(data: QueryPreviewRequest, current_user: CurrentUser, db: DBSession):
    """预览查询结果（不物化）"""
    service = DataModelService(db)
    result = await service.preview_query(current_user.id, data)
    return BaseResponse(
        success=result.success,
        code=200,
        msg="查询成功" if result.success else "查询失败",
        data=result,
    )


@router.post("", response_model=BaseResponse[DataModelBuildResult], status_code=status.HTTP_201_CREATED)
async def build_data_model(data: DataModelBuildRequest, current_user: CurrentUser, db: DBSession):
    """构建数据模型"""
    service = DataModelService(db)
    result = await service.build_data_model(current_user.id, data)
    return BaseResponse(success=True, code=201, msg="数据模型构建成功", data=result)


@router.post("/{model_id}/refresh", response_model=BaseResponse[RefreshResult])
async def refresh_data_model(model_id: uuid.UUID, current_user: CurrentUser, db: DBSession):
    """刷新数据模型"""
    service = DataModelService(db)
    result = await service.refresh_data_model(model_id, current_user.id)
    return BaseResponse(
        success=result.success,
        code=200,
        msg="数据模型刷新成功" if result.success else "数据模型刷新失败",
        data=result,
    )


@router.delete("/{model_id}", response_model=BaseResponse[None])
async def delete_data_model(model_id: uuid.UUID, current_user: CurrentUser, db: DBSession):
    """删除数据模型（同时删除物理表）"""
    service = DataModelService(db)
    await service.delete_data_model(model_id, current_user.id)
    return BaseResponse(success=True, code=200, msg="数据模型删除成功")


@router.get("/dependents/{data_source_id}", response_model=BaseResponse[list[DataModelResponse]])
async def get_dependent_models(data_source_id: uuid.UUID, current_user: CurrentUser, db: DBSession):
    """获取依赖指定数据源的数据模型"""
    service = DataModelService(db)
    models = await service.get_dependent_models(data_source_id, current_user.id)
    return BaseResponse(
        success=True,
        code=200,
        msg="获取依赖模型成功",
        data=[DataModelResponse.model_validate(model) for model in models],
    )
