"""
FastAPI 依赖注入

用户身份由上游网关完成认证后通过请求头传入，这里只做解析，不再校验。
"""

import uuid
from typing import Annotated

from fastapi import Depends, Header
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import AppException


class UserContext(BaseModel):
    """已认证的用户上下文"""

    id: uuid.UUID
    project_id: uuid.UUID | None = None


async def get_current_user(
    x_user_id: Annotated[str | None, Header()] = None,
    x_project_id: Annotated[str | None, Header()] = None,
) -> UserContext:
    """
    从请求头解析当前用户

    Raises:
        AppException: 缺少或无法解析用户标识时返回 401
    """
    if not x_user_id:
        raise AppException(code=401, msg="缺少用户身份")
    try:
        return UserContext(
            id=uuid.UUID(x_user_id),
            project_id=uuid.UUID(x_project_id) if x_project_id else None,
        )
    except ValueError as e:
        raise AppException(code=401, msg="无效的用户身份") from e


DBSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUser = Annotated[UserContext, Depends(get_current_user)]
