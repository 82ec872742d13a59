"""
全局异常定义与处理

业务异常统一继承 AppException，由全局异常处理器转换为 BaseResponse 格式。
查询引擎相关异常额外携带失败阶段（stage），便于调用方定位失败环节。
"""

from enum import Enum

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger


class AppException(Exception):
    """应用基础异常"""

    def __init__(self, code: int = status.HTTP_400_BAD_REQUEST, msg: str = "请求失败", data=None):
        self.code = code
        self.msg = msg
        self.data = data
        super().__init__(msg)


class BadRequestException(AppException):
    """请求参数错误"""

    def __init__(self, msg: str = "请求参数错误", data=None):
        super().__init__(code=status.HTTP_400_BAD_REQUEST, msg=msg, data=data)


class NotFoundException(AppException):
    """资源不存在"""

    def __init__(self, msg: str = "资源不存在", data=None):
        super().__init__(code=status.HTTP_404_NOT_FOUND, msg=msg, data=data)


class FailureStage(str, Enum):
    """查询引擎失败阶段"""

    RESOLUTION = "resolution"  # 表定位失败
    VALIDATION = "validation"  # 查询结构校验失败
    CONNECTION = "connection"  # 外部数据源连接失败
    EXECUTION = "execution"  # SQL 执行失败
    CREATION = "creation"  # 物化表创建失败


class QueryEngineException(AppException):
    """查询引擎异常基类"""

    stage: FailureStage = FailureStage.EXECUTION

    def __init__(self, msg: str, code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(code=code, msg=msg, data={"stage": self.stage.value})


class ResolutionException(QueryEngineException):
    """跨数据源表定位失败"""

    stage = FailureStage.RESOLUTION


class QueryValidationException(QueryEngineException):
    """GROUP BY / 聚合结构不一致"""

    stage = FailureStage.VALIDATION


class ConnectionFailedException(QueryEngineException):
    """无法连接外部数据源"""

    stage = FailureStage.CONNECTION

    def __init__(self, msg: str, provider: str | None = None):
        self.provider = provider
        super().__init__(msg=f"[{provider}] {msg}" if provider else msg, code=status.HTTP_502_BAD_GATEWAY)


class QueryExecutionException(QueryEngineException):
    """SQL 在目标引擎上执行失败"""

    stage = FailureStage.EXECUTION


class MaterializationException(QueryEngineException):
    """物化表创建失败"""

    stage = FailureStage.CREATION

    def __init__(self, msg: str):
        super().__init__(msg=msg, code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def _error_body(code: int, msg: str, data=None) -> dict:
    return {"success": False, "code": code, "msg": msg, "data": data}


def register_exception_handlers(app: FastAPI) -> None:
    """
    注册全局异常处理器

    Args:
        app: FastAPI 应用实例
    """

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        logger.warning(f"⚠️ 业务异常: {request.method} {request.url.path} - {exc.msg}")
        return JSONResponse(status_code=exc.code, content=_error_body(exc.code, exc.msg, exc.data))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"⚠️ 参数校验失败: {request.method} {request.url.path}")
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
        return JSONResponse(
            status_code=code,
            content=_error_body(code, "参数校验失败", jsonable_errors(exc)),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"❌ 未处理异常: {request.method} {request.url.path} - {exc}")
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(status_code=code, content=_error_body(code, "服务器内部错误"))


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """将校验错误转换为可序列化的列表"""
    return [{"loc": list(err.get("loc", [])), "msg": err.get("msg", "")} for err in exc.errors()]
