"""
中间件模块

请求日志中间件与 loguru 初始化
"""

from app.middleware.logging import REQUEST_ID_HEADER, LoggingMiddleware, setup_logging

__all__ = ["REQUEST_ID_HEADER", "LoggingMiddleware", "setup_logging"]
