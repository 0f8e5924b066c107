"""
高风险操作的二次确认。

确认记录存放在 ``<prefix>confirm:<confirm_id>``，一次性使用：
approve / reject 都会原子删除记录；用户或会话不匹配时不消费。
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError
from redis.asyncio import Redis

from aiassistant.errors import AssistantError, ErrorCode
from aiassistant.logging_config import logger
from aiassistant.redis_client import redis_delete, redis_set_json
from aiassistant.settings import settings

ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"

OPERATION_SQL = "sql"
OPERATION_K8S = "k8s"
OPERATION_ALERT_MUTE = "alert_mute"
OPERATION_TOOL = "tool"


class ConfirmationOperation(BaseModel):
    # sql / k8s / alert_mute / tool
    type: str = OPERATION_TOOL
    name: str = ""
    request: dict[str, Any] = Field(default_factory=dict)
    tool_name: str = ""


class PendingConfirmation(BaseModel):
    confirm_id: str
    session_id: str
    user_id: str
    risk_level: str
    summary: str = ""
    operation: ConfirmationOperation
    check_result: dict[str, Any] | None = None
    created_at: int
    expires_at: int


@dataclass(frozen=True)
class ConfirmationResult:
    success: bool
    operation: ConfirmationOperation | None = None
    confirmation: PendingConfirmation | None = None
    error: AssistantError | None = None


class ConfirmationManager:
    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int | None = None,
        prefix: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._ttl = settings.confirmation_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._prefix = settings.ai_assistant_redis_prefix if prefix is None else prefix
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def confirm_key(self, confirm_id: str) -> str:
        return f"{self._prefix}confirm:{confirm_id}"

    async def count_pending(self) -> int:
        """未过期的确认数；过期由 Redis TTL 处理，所以只能扫描计数。"""
        cursor, total = 0, 0
        while True:
            cursor, keys = await self._redis.scan(cursor=cursor, match=self.confirm_key("*"), count=500)
            total += len(keys)
            if not cursor:
                return total

    async def create(
        self,
        *,
        session_id: str,
        user_id: str,
        risk_level: str,
        summary: str,
        operation: ConfirmationOperation,
        check_result: dict[str, Any] | None = None,
    ) -> PendingConfirmation:
        now = int(self._clock())
        confirmation = PendingConfirmation(
            confirm_id=f"confirm_{uuid.uuid4()}",
            session_id=session_id,
            user_id=str(user_id),
            risk_level=risk_level,
            summary=summary,
            operation=operation,
            check_result=check_result,
            created_at=now,
            expires_at=now + self._ttl,
        )
        await redis_set_json(
            self._redis,
            self.confirm_key(confirmation.confirm_id),
            confirmation.model_dump(),
            ttl_seconds=self._ttl,
        )
        logger.info(
            "confirmation created: %s session=%s tool=%s risk=%s",
            confirmation.confirm_id,
            session_id,
            operation.tool_name,
            risk_level,
        )
        return confirmation

    async def get(self, confirm_id: str) -> PendingConfirmation:
        raw = await self._redis.get(self.confirm_key(confirm_id))
        if raw is None:
            raise AssistantError(ErrorCode.CONFIRMATION_NOT_FOUND, "确认信息未找到或已过期")
        try:
            confirmation = PendingConfirmation.model_validate_json(raw)
        except ValidationError as exc:
            raise AssistantError(ErrorCode.INTERNAL_ERROR, f"failed to parse confirmation: {exc}") from exc

        if int(self._clock()) > confirmation.expires_at:
            await self.delete(confirm_id)
            raise AssistantError(ErrorCode.CONFIRMATION_EXPIRED, "确认已过期，请重新发起操作")
        return confirmation

    async def delete(self, confirm_id: str) -> bool:
        return await redis_delete(self._redis, self.confirm_key(confirm_id)) > 0

    async def validate_and_consume(
        self,
        confirm_id: str,
        *,
        user_id: str,
        session_id: str,
        action: str,
    ) -> ConfirmationResult:
        try:
            confirmation = await self.get(confirm_id)
        except AssistantError as exc:
            if exc.code == ErrorCode.INTERNAL_ERROR:
                raise
            return ConfirmationResult(success=False, error=exc)

        if confirmation.user_id != str(user_id) or confirmation.session_id != session_id:
            logger.warning(
                "confirmation %s rejected: owner mismatch (user=%s session=%s)",
                confirm_id,
                user_id,
                session_id,
            )
            return ConfirmationResult(
                success=False,
                confirmation=confirmation,
                error=AssistantError(ErrorCode.PERMISSION_DENIED, "无权确认此操作"),
            )

        if action not in (ACTION_APPROVE, ACTION_REJECT):
            return ConfirmationResult(
                success=False,
                confirmation=confirmation,
                error=AssistantError(ErrorCode.INVALID_REQUEST, "无效的确认动作"),
            )

        # DEL 的返回值保证并发请求中只有一个能消费成功
        if not await self.delete(confirm_id):
            return ConfirmationResult(
                success=False,
                error=AssistantError(ErrorCode.CONFIRMATION_NOT_FOUND, "确认信息未找到或已过期"),
            )

        if action == ACTION_REJECT:
            logger.info("confirmation %s rejected by user %s", confirm_id, user_id)
            return ConfirmationResult(
                success=False,
                confirmation=confirmation,
                error=AssistantError(ErrorCode.RISK_REJECTED, "用户已拒绝执行"),
            )

        logger.info("confirmation %s approved by user %s", confirm_id, user_id)
        return ConfirmationResult(success=True, operation=confirmation.operation, confirmation=confirmation)


def build_sql_operation(sql: str, instance_id: int, database: str) -> ConfirmationOperation:
    return ConfirmationOperation(
        type=OPERATION_SQL,
        name="执行 SQL",
        request={"sql": sql, "instance_id": instance_id, "database": database},
        tool_name="dbm.sql_query",
    )


def build_k8s_operation(
    action: str,
    cluster: str,
    namespace: str,
    resource: str,
    name: str,
    params: dict[str, Any] | None = None,
) -> ConfirmationOperation:
    request: dict[str, Any] = {
        "action": action,
        "cluster": cluster,
        "namespace": namespace,
        "resource": resource,
        "name": name,
    }
    request.update(params or {})
    return ConfirmationOperation(
        type=OPERATION_K8S,
        name=f"K8s {action}",
        request=request,
        tool_name=f"k8s_{action}",
    )


def build_alert_mute_operation(action: str, busi_group_id: int, mute_config: dict[str, Any]) -> ConfirmationOperation:
    return ConfirmationOperation(
        type=OPERATION_ALERT_MUTE,
        name=f"告警屏蔽 {action}",
        request={"action": action, "busi_group_id": busi_group_id, "config": mute_config},
        tool_name=f"alert_mute_{action}",
    )


def build_tool_operation(tool_name: str, args: dict[str, Any]) -> ConfirmationOperation:
    operation_type = OPERATION_TOOL
    if isinstance(args.get("sql"), str):
        operation_type = OPERATION_SQL
    elif "tags" in args and "duration_hours" in args:
        operation_type = OPERATION_ALERT_MUTE
    elif isinstance(args.get("action"), str) and ("namespace" in args or "resource" in args):
        operation_type = OPERATION_K8S
    return ConfirmationOperation(
        type=operation_type,
        name=f"调用工具 {tool_name}",
        request=dict(args),
        tool_name=tool_name,
    )


__all__ = [
    "ACTION_APPROVE",
    "ACTION_REJECT",
    "ConfirmationManager",
    "ConfirmationOperation",
    "ConfirmationResult",
    "PendingConfirmation",
    "build_alert_mute_operation",
    "build_k8s_operation",
    "build_sql_operation",
    "build_tool_operation",
]
