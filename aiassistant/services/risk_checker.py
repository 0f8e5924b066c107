from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from aiassistant.models.tool import RISK_HIGH, RISK_LOW, RISK_MEDIUM

_RISK_ORDER = {RISK_LOW: 0, RISK_MEDIUM: 1, RISK_HIGH: 2}

_SINGLE_QUOTED = re.compile(r"'[^']*'")
_DOUBLE_QUOTED = re.compile(r'"[^"]*"')

_READ_ONLY_PREFIXES = ("SELECT", "SHOW", "EXPLAIN", "DESC", "DESCRIBE", "WITH")
_K8S_HIGH_RISK_OPS = ("EXEC", "SCALE", "DELETE", "DRAIN", "CORDON")
_GENERIC_WRITE_OPS = ("CREATE", "UPDATE", "DELETE", "EXEC", "SCALE", "PUT", "PUSH", "MODIFY")
_BATCH_KEYS = ("ids", "names", "targets", "resources")
_TARGET_KEYS = ("id", "name", "namespace", "resource", "target")
_BROAD_TAG_PATTERNS = (".*", ".+", "")


def max_risk(*levels: str | None) -> str:
    """按 low < medium < high 取最高等级，未知等级视为 low。"""
    best = RISK_LOW
    for level in levels:
        if level and _RISK_ORDER.get(level, 0) > _RISK_ORDER[best]:
            best = level
    return best


@dataclass
class RiskCheckerConfig:
    sql_write_keywords: list[str] = field(
        default_factory=lambda: [
            "INSERT", "UPDATE", "DELETE", "REPLACE",
            "TRUNCATE", "ALTER", "DROP", "CREATE",
            "GRANT", "REVOKE", "SET", "CALL", "LOAD",
        ]
    )
    sql_danger_keywords: list[str] = field(
        default_factory=lambda: ["DROP", "TRUNCATE", "DELETE FROM", "ALTER TABLE"]
    )
    sql_max_rows_no_limit: int = 1000
    alert_mute_max_match: int = 50
    alert_mute_max_hours: int = 24
    batch_operation_threshold: int = 10


@dataclass(frozen=True)
class RiskResult:
    level: str
    reason: str = ""
    suggestion: str = ""

    @property
    def need_confirm(self) -> bool:
        return self.level == RISK_HIGH


class RiskChecker:
    """
    SQL / K8s / 告警屏蔽 / 批量操作的风险评估。

    只判断等级，不拦截执行；high 由编排器转入二次确认。
    """

    def __init__(self, config: RiskCheckerConfig | None = None) -> None:
        self.config = config or RiskCheckerConfig()
        self._write_patterns = [
            re.compile(r"\b" + re.escape(keyword) + r"\b") for keyword in self.config.sql_write_keywords
        ]

    # ---- SQL ----

    @staticmethod
    def is_multi_statement(sql: str) -> bool:
        cleaned = _SINGLE_QUOTED.sub("", sql)
        cleaned = _DOUBLE_QUOTED.sub("", cleaned)
        statements = [part for part in cleaned.split(";") if part.strip()]
        return len(statements) > 1

    def check_sql(self, sql: str) -> str:
        upper_sql = sql.strip().upper()

        if self.is_multi_statement(sql):
            return RISK_HIGH

        for keyword in self.config.sql_danger_keywords:
            if keyword in upper_sql:
                return RISK_HIGH

        for pattern in self._write_patterns:
            if pattern.search(upper_sql):
                return RISK_HIGH

        if upper_sql.startswith("SELECT") and "LIMIT" not in upper_sql:
            return RISK_MEDIUM

        return RISK_LOW

    @staticmethod
    def is_read_only_sql(sql: str) -> bool:
        upper_sql = sql.strip().upper()
        return upper_sql.startswith(_READ_ONLY_PREFIXES)

    def check_sql_with_result(self, sql: str) -> RiskResult:
        level = self.check_sql(sql)
        if level == RISK_HIGH:
            return RiskResult(
                level=level,
                reason="检测到高风险 SQL 操作（写操作/危险操作/多语句）",
                suggestion="请确认操作内容和影响范围后再执行",
            )
        if level == RISK_MEDIUM:
            return RiskResult(
                level=level,
                reason="SELECT 语句未指定 LIMIT，可能返回大量数据",
                suggestion="建议添加 LIMIT 限制返回行数",
            )
        return RiskResult(level=level, reason="只读操作，风险较低")

    # ---- K8s ----

    def check_k8s_operation(self, operation: str, namespace: str = "", resource_name: str = "") -> str:
        upper_op = (operation or "").upper()

        for op in _K8S_HIGH_RISK_OPS:
            if op in upper_op:
                # 指定了 namespace 和资源名也需要确认
                return RISK_HIGH

        if "LOG" in upper_op:
            return RISK_MEDIUM

        if "LIST" in upper_op or "GET" in upper_op or "DESCRIBE" in upper_op:
            if not namespace or namespace == "all":
                return RISK_MEDIUM
            return RISK_LOW

        return RISK_LOW

    # ---- 告警屏蔽 ----

    def check_alert_mute(self, tags: dict[str, str] | None, match_count: int = 0, duration_hours: float = 0) -> str:
        if not tags:
            return RISK_HIGH
        if match_count > self.config.alert_mute_max_match:
            return RISK_HIGH
        if duration_hours > self.config.alert_mute_max_hours:
            return RISK_HIGH
        for value in tags.values():
            if value in _BROAD_TAG_PATTERNS:
                return RISK_HIGH
        return RISK_LOW

    # ---- 通用 ----

    def is_batch_operation(self, params: dict[str, Any]) -> bool:
        threshold = self.config.batch_operation_threshold
        for key in _BATCH_KEYS:
            value = params.get(key)
            if isinstance(value, (list, tuple)) and len(value) > threshold:
                return True

        name = params.get("name")
        if isinstance(name, str) and (name == "all" or "*" in name):
            return True
        return False

    @staticmethod
    def has_specific_target(params: dict[str, Any]) -> bool:
        for key in _TARGET_KEYS:
            value = params.get(key)
            if isinstance(value, str) and value not in ("", "*", "all"):
                return True
            if isinstance(value, int) and not isinstance(value, bool) and value > 0:
                return True
        return False

    def check_operation(self, operation: str, params: dict[str, Any]) -> str:
        upper_op = (operation or "").upper()
        for op in _GENERIC_WRITE_OPS:
            if op in upper_op:
                return RISK_HIGH
        if self.is_batch_operation(params):
            return RISK_HIGH
        if not self.has_specific_target(params):
            return RISK_MEDIUM
        return RISK_LOW

    def assess_tool_args(self, args: dict[str, Any]) -> RiskResult:
        """
        根据工具参数的形状选择检查器，返回其中最高的等级。
        """
        levels: list[str] = []
        reasons: list[str] = []

        sql = args.get("sql")
        if isinstance(sql, str) and sql.strip():
            result = self.check_sql_with_result(sql)
            levels.append(result.level)
            if result.level != RISK_LOW:
                reasons.append(result.reason)

        action = args.get("action")
        if isinstance(action, str) and ("namespace" in args or "resource" in args):
            level = self.check_k8s_operation(
                action,
                str(args.get("namespace") or ""),
                str(args.get("name") or args.get("resource_name") or ""),
            )
            levels.append(level)
            if level == RISK_HIGH:
                reasons.append(f"K8s 操作 {action} 需要确认")

        if "tags" in args and "duration_hours" in args:
            tags = args.get("tags")
            try:
                duration = float(args.get("duration_hours") or 0)
                match_count = int(args.get("match_count") or 0)
            except (TypeError, ValueError):
                duration, match_count = 0.0, 0
            level = self.check_alert_mute(
                tags if isinstance(tags, dict) else {},
                match_count,
                duration,
            )
            levels.append(level)
            if level == RISK_HIGH:
                reasons.append("告警屏蔽范围过宽或时间过长")

        if self.is_batch_operation(args):
            levels.append(RISK_HIGH)
            reasons.append("批量或通配符操作")

        level = max_risk(*levels)
        return RiskResult(level=level, reason="；".join(reasons))


__all__ = ["RiskChecker", "RiskCheckerConfig", "RiskResult", "max_risk"]
