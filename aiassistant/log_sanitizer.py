from __future__ import annotations

from collections.abc import Mapping
from typing import Any

REDACTED = "***REDACTED***"


_SENSITIVE_HEADER_NAMES = {
    "authorization",
    "proxy-authorization",
    "x-api-key",
    "api-key",
    "cookie",
    "set-cookie",
}

_SENSITIVE_FRAGMENTS = ("key", "token", "secret", "auth", "cookie", "password")


def _is_sensitive(name: str) -> bool:
    lower_name = name.lower()
    if lower_name in _SENSITIVE_HEADER_NAMES:
        return True
    return any(token in lower_name for token in _SENSITIVE_FRAGMENTS)


def sanitize_headers_for_log(
    headers: Mapping[str, str], *, mask_token: str = REDACTED
) -> dict[str, str]:
    """
    将请求头做安全脱敏后用于日志输出。

    - authorization / x-api-key / cookie 等敏感 header 直接打码；
    - 名称中包含 key/token/secret/auth/cookie/password 的 header 也打码；
    - 其它 header 原样保留，便于排障。
    """
    return {
        name: (mask_token if _is_sensitive(name) else value)
        for name, value in headers.items()
    }


def mask_secret(value: str | None, *, keep: int = 4) -> str:
    """保留末尾几位，其余替换为 *，用于日志中展示 API Key。"""
    if not value:
        return ""
    if len(value) <= keep:
        return "*" * len(value)
    return "*" * (len(value) - keep) + value[-keep:]


def sanitize_config_for_log(config: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    对知识库 / LLM 配置 JSON 做脱敏，嵌套字典递归处理。
    """
    if not config:
        return {}
    sanitized: dict[str, Any] = {}
    for name, value in config.items():
        if isinstance(value, Mapping):
            sanitized[name] = sanitize_config_for_log(value)
        elif isinstance(value, str) and _is_sensitive(name):
            sanitized[name] = mask_secret(value)
        else:
            sanitized[name] = value
    return sanitized


__all__ = ["REDACTED", "mask_secret", "sanitize_config_for_log", "sanitize_headers_for_log"]
