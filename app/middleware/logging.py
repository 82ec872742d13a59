"""
日志中间件

为每个请求分配请求 ID，并在日志上下文中携带请求 ID 与用户 ID，
使一次构建 / 刷新过程中的所有日志（包括失败的 SQL）可以串联检索
"""
# mypy: ignore-errors

import sys
import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings

REQUEST_ID_HEADER = "X-Request-ID"

_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[request_id]} | "
    "{name}:{function}:{line} | {message}"
)


class LoggingMiddleware(BaseHTTPMiddleware):
    """HTTP 请求日志中间件"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        处理请求并记录日志

        Args:
            request: 请求对象
            call_next: 下一个中间件或路由处理器

        Returns:
            Response: 响应对象
        """
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        user_id = request.headers.get("X-User-Id", "-")
        method = request.method
        path = request.url.path
        start_time = time.perf_counter()

        with logger.contextualize(request_id=request_id, user_id=user_id):
            logger.info(f"📨 {method} {path} - User: {user_id}")
            try:
                response = await call_next(request)
            except Exception as e:
                process_time = time.perf_counter() - start_time
                logger.exception(f"❌ {method} {path} - Error: {str(e)} - Time: {process_time:.3f}s")
                # 交给全局异常处理器
                raise

            process_time = time.perf_counter() - start_time
            status_code = response.status_code
            log_msg = f"✅ {method} {path} - Status: {status_code} - Time: {process_time:.3f}s"
            if status_code >= 500:
                logger.error(log_msg)
            elif status_code >= 400:
                logger.warning(log_msg)
            else:
                logger.info(log_msg)

        response.headers["X-Process-Time"] = f"{process_time:.3f}"
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def setup_logging():
    """
    配置 loguru 日志

    日志级别根据环境自动调整：
    - development: 默认 DEBUG
    - production / testing: 默认 INFO
    """
    logger.remove()
    logger.configure(extra={"request_id": "-", "user_id": "-"})

    log_level = settings.effective_log_level

    # 控制台输出（带颜色）
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<magenta>{extra[request_id]}</magenta> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        level=log_level,
        colorize=True,
    )

    if settings.is_testing:
        return

    # 所有日志
    logger.add(
        "logs/app.log",
        rotation="100 MB",
        retention="30 days",
        compression="zip",
        format=_LOG_FORMAT,
        level=log_level,
    )

    # 错误日志（失败的 SQL 也记录在这里）
    logger.add(
        "logs/error.log",
        rotation="50 MB",
        retention="30 days",
        compression="zip",
        format=_LOG_FORMAT,
        level="ERROR",
    )

    logger.info(f"✅ 日志系统初始化完成 (环境: {settings.ENVIRONMENT}, 日志级别: {log_level})")
