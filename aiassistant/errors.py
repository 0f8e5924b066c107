from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standard error payload for admin / runtime endpoints:
    {
        "error": "not_found",
        "message": "Agent not found",
        "code": 404,
        "details": {...}
    }
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


def http_error(
    status_code: int,
    *,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    Helper to create an HTTPException with a standardised error body.
    """
    payload = ErrorResponse(
        error=error,
        message=message,
        code=status_code,
        details=details,
    )
    return HTTPException(status_code=status_code, detail=payload.model_dump())


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_400_BAD_REQUEST, error="bad_request", message=message, details=details
    )


def forbidden(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_403_FORBIDDEN, error="forbidden", message=message, details=details
    )


def not_found(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_404_NOT_FOUND, error="not_found", message=message, details=details
    )


def conflict(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_409_CONFLICT, error="conflict", message=message, details=details
    )


def too_many_requests(
    message: str, *, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    return http_error(
        status.HTTP_429_TOO_MANY_REQUESTS,
        error="too_many_requests",
        message=message,
        details=details,
    )


def service_unavailable(
    message: str, *, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    return http_error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        error="service_unavailable",
        message=message,
        details=details,
    )


class ErrorCode:
    """AI 助手对外暴露的错误码。"""

    # 通用
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    CONFIG_INVALID = "CONFIG_INVALID"
    RATE_LIMITED = "RATE_LIMITED"
    LLM_CALL_FAILED = "LLM_CALL_FAILED"

    # 会话
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_LIMIT_EXCEEDED = "SESSION_LIMIT_EXCEEDED"

    # 工具
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    TOOL_CALL_FAILED = "TOOL_CALL_FAILED"
    TOOL_TIMEOUT = "TOOL_TIMEOUT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    INVALID_TOOL_ARGUMENTS = "INVALID_TOOL_ARGUMENTS"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    KNOWLEDGE_QUERY_FAILED = "KNOWLEDGE_QUERY_FAILED"

    # 权限
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ENV_NOT_ALLOWED = "ENV_NOT_ALLOWED"
    IP_NOT_ALLOWED = "IP_NOT_ALLOWED"

    # 确认
    CONFIRMATION_EXPIRED = "CONFIRMATION_EXPIRED"
    CONFIRMATION_NOT_FOUND = "CONFIRMATION_NOT_FOUND"
    RISK_REJECTED = "RISK_REJECTED"

    # 文件
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"

    # MCP
    MCP_SERVER_NOT_FOUND = "MCP_SERVER_NOT_FOUND"
    MCP_CONNECTION_FAILED = "MCP_CONNECTION_FAILED"
    MCP_HEALTH_CHECK_FAILED = "MCP_HEALTH_CHECK_FAILED"


_TOOL_ERROR_CODES = frozenset(
    {
        ErrorCode.TOOL_NOT_FOUND,
        ErrorCode.TOOL_CALL_FAILED,
        ErrorCode.TOOL_TIMEOUT,
        ErrorCode.UPSTREAM_ERROR,
        ErrorCode.INVALID_TOOL_ARGUMENTS,
        ErrorCode.TOOL_EXECUTION_FAILED,
        ErrorCode.KNOWLEDGE_QUERY_FAILED,
    }
)


class AssistantError(RuntimeError):
    """
    带错误码的业务异常，str() 形如 "[CODE] message"。
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


_HTTP_STATUS_BY_CODE = {
    ErrorCode.SESSION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.FILE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.TOOL_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.MCP_SERVER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.CONFIRMATION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorCode.ENV_NOT_ALLOWED: status.HTTP_403_FORBIDDEN,
    ErrorCode.IP_NOT_ALLOWED: status.HTTP_403_FORBIDDEN,
    ErrorCode.FILE_TOO_LARGE: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.MCP_CONNECTION_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.UPSTREAM_ERROR: status.HTTP_502_BAD_GATEWAY,
}


def assistant_http_error(exc: AssistantError) -> HTTPException:
    """把 AssistantError 映射为标准错误响应，error 字段使用小写错误码。"""
    status_code = _HTTP_STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST)
    return http_error(
        status_code,
        error=exc.code.lower(),
        message=exc.message,
        details=exc.details or None,
    )


def is_tool_error(exc: BaseException) -> bool:
    return isinstance(exc, AssistantError) and exc.code in _TOOL_ERROR_CODES


def wrap_tool_error(tool_name: str, exc: BaseException) -> AssistantError:
    """把任意异常包装成 TOOL_CALL_FAILED，已是工具错误的原样返回。"""
    if isinstance(exc, AssistantError) and is_tool_error(exc):
        return exc
    return AssistantError(
        ErrorCode.TOOL_CALL_FAILED,
        f"tool {tool_name} failed: {exc}",
        details={"tool_name": tool_name},
    )


__all__ = [
    "AssistantError",
    "assistant_http_error",
    "ErrorCode",
    "ErrorResponse",
    "bad_request",
    "conflict",
    "forbidden",
    "http_error",
    "is_tool_error",
    "not_found",
    "service_unavailable",
    "too_many_requests",
    "wrap_tool_error",
]
