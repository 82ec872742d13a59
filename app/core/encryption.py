"""
连接信息加解密

数据源连接信息中的敏感字段（密码、连接串）以 Fernet 密文存储，
外部执行器在建立连接前通过 decrypt_connection_details 取得明文。
"""

import base64
import hashlib
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from app.core.config import settings

# 连接信息中需要加密存储的字段
SENSITIVE_FIELDS = ("password", "connection_string", "uri")


class DecryptionError(Exception):
    """解密失败异常"""


def _get_fernet() -> Fernet:
    """由 SECRET_KEY 派生 32 字节的 urlsafe base64 key"""
    key_material = hashlib.sha256(settings.SECRET_KEY.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(key_material))


def encrypt_str(plain: str) -> str:
    """对称加密字符串"""
    return _get_fernet().encrypt(plain.encode("utf-8")).decode("utf-8")


def decrypt_str(cipher: str, *, allow_plaintext: bool = False) -> str:
    """
    解密字符串

    Args:
        cipher: 密文
        allow_plaintext: 解密失败时是否按明文返回（兼容未加密的历史数据）

    Returns:
        明文

    Raises:
        DecryptionError: 解密失败且不允许明文
    """
    try:
        return _get_fernet().decrypt(cipher.encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError) as e:
        if allow_plaintext:
            logger.warning("⚠️ 连接信息解密失败，按明文使用")
            return cipher
        raise DecryptionError(f"解密失败: {e}") from e


def encrypt_connection_details(details: dict[str, Any]) -> dict[str, Any]:
    """加密连接信息中的敏感字段，返回新字典"""
    encrypted = dict(details)
    for field in SENSITIVE_FIELDS:
        if encrypted.get(field):
            encrypted[field] = encrypt_str(str(encrypted[field]))
    return encrypted


def decrypt_connection_details(details: dict[str, Any] | None) -> dict[str, Any]:
    """解密连接信息中的敏感字段（兼容明文），返回新字典"""
    decrypted = dict(details or {})
    for field in SENSITIVE_FIELDS:
        if decrypted.get(field):
            decrypted[field] = decrypt_str(str(decrypted[field]), allow_plaintext=True)
    return decrypted


def mask_connection_details(details: dict[str, Any] | None) -> dict[str, Any]:
    """用于日志输出：敏感字段替换为 ***"""
    return {key: ("***" if key in SENSITIVE_FIELDS and value else value) for key, value in (details or {}).items()}
