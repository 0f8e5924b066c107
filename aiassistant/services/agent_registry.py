"""
Agent registry: an in-memory snapshot of enabled `ai_agents` rows with
their bound tools, plus the seed data for the reserved system agents and
the default optimization configs.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from aiassistant.logging_config import logger
from aiassistant.models import AIAgent, AIAgentToolRel, AIOptimizationConfig
from aiassistant.models.agent import (
    AGENT_GENERAL,
    AGENT_KNOWLEDGE,
    AGENT_ROUTER,
    AGENT_SUMMARY,
    AGENT_TYPE_EXPERT,
    AGENT_TYPE_SYSTEM,
)
from aiassistant.models.optimization_config import DEFAULT_CONFIG_KEY, OPTIMIZATION_CONFIG_TYPES
from aiassistant.optimization.config import default_config

from .tool_registry import ToolConfig

SEED_USER = "system"


@dataclass(frozen=True)
class AgentConfig:
    id: int
    name: str
    description: str = ""
    system_prompt: str = ""
    agent_type: str = AGENT_TYPE_EXPERT
    keywords: tuple[str, ...] = ()
    priority: int = 0
    enabled: bool = True
    model: str = ""
    temperature: float = 0.0
    max_tokens: int = 0
    tools: tuple[ToolConfig, ...] = ()

    @classmethod
    def from_model(cls, row: AIAgent) -> "AgentConfig":
        llm_config: dict[str, Any] = row.llm_config if isinstance(row.llm_config, dict) else {}
        keywords = row.keywords if isinstance(row.keywords, list) else []
        tools = tuple(
            ToolConfig.from_model(link.tool)
            for link in sorted(row.tool_links, key=lambda l: l.tool_id)
            if link.tool is not None and link.tool.enabled
        )
        return cls(
            id=row.id,
            name=row.name,
            description=row.description or "",
            system_prompt=row.system_prompt or "",
            agent_type=row.agent_type,
            keywords=tuple(str(k) for k in keywords if k),
            priority=row.priority or 0,
            enabled=row.enabled,
            model=str(llm_config.get("model") or ""),
            temperature=float(llm_config.get("temperature") or 0.0),
            max_tokens=int(llm_config.get("max_tokens") or 0),
            tools=tools,
        )


@dataclass
class _Snapshot:
    by_name: dict[str, AgentConfig] = field(default_factory=dict)
    by_id: dict[int, AgentConfig] = field(default_factory=dict)


class AgentRegistry:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self._lock = threading.RLock()
        self._snapshot = _Snapshot()
        self._loaded = False

    def load(self) -> None:
        with self._session_factory() as session:
            stmt = (
                select(AIAgent)
                .where(AIAgent.enabled.is_(True))
                .options(selectinload(AIAgent.tool_links).selectinload(AIAgentToolRel.tool))
                .order_by(AIAgent.id)
            )
            agents = [AgentConfig.from_model(row) for row in session.execute(stmt).scalars().all()]

        snapshot = _Snapshot(
            by_name={a.name: a for a in agents},
            by_id={a.id: a for a in agents},
        )
        # 已拿到旧快照的请求不受影响
        with self._lock:
            self._snapshot = snapshot
            self._loaded = True
        logger.info("loaded %d agents from database", len(agents))

    reload = load

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def get(self, name: str) -> AgentConfig | None:
        with self._lock:
            return self._snapshot.by_name.get(name)

    def get_by_id(self, agent_id: int) -> AgentConfig | None:
        with self._lock:
            return self._snapshot.by_id.get(agent_id)

    def get_all(self) -> list[AgentConfig]:
        with self._lock:
            return list(self._snapshot.by_name.values())

    def get_by_type(self, agent_type: str) -> list[AgentConfig]:
        return [a for a in self.get_all() if a.agent_type == agent_type]

    def get_system_agent(self, name: str) -> AgentConfig | None:
        agent = self.get(name)
        if agent is not None and agent.agent_type == AGENT_TYPE_SYSTEM:
            return agent
        return None

    def get_for_mention(self) -> list[AgentConfig]:
        """router / summary 两个系统 Agent 不对用户暴露。"""
        return [a for a in self.get_all() if a.name not in (AGENT_ROUTER, AGENT_SUMMARY)]

    def count(self) -> int:
        with self._lock:
            return len(self._snapshot.by_name)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._snapshot.by_name)


GENERAL_PROMPT = """你是运维助手。

## 核心职责
- 回答系统使用方法
- 提供配置说明
- 给出最佳实践建议

## 回答原则
- 如果知识库返回了相关结果，基于结果回答
- 如果知识库没有相关信息，用你的知识直接回答用户问题
- 禁止编造不存在的信息
- 保持专业、友好的语气"""

KNOWLEDGE_PROMPT = """你是知识库助手，专门从运维知识库中检索信息来回答用户问题。

## 职责
- 使用知识库工具搜索相关文档
- 基于搜索结果回答用户问题
- 标注信息来源

## 工具使用原则
调用知识库工具时，query 参数直接使用用户的完整原始问题，不要提取关键词或改写。

## 回答原则
- 优先使用知识库检索结果
- 如果未找到相关信息，明确告知用户
- 不要编造不存在的信息"""

ROUTER_PROMPT = """你是一个任务分发员。请根据用户问题，从候选专家中选择最合适的一个。

## 决策规则
1. 如果问题是询问信息、文档、配置方法，选择 "knowledge"
2. 如果问题涉及 K8s/容器/Pod，选择 "k8s_expert"（如果存在）
3. 如果问题涉及数据库/SQL，选择 "db_expert"（如果存在）
4. 如果问题涉及告警/屏蔽，选择 "alert_expert"（如果存在）
5. 如果是闲聊或通用问题，选择 "general"

## 输出格式
只返回 Agent 名称，不要其他内容。"""

SUMMARY_PROMPT = """你是结果汇总助手。根据工具返回的结果，为用户生成清晰、有条理的回答。

## 汇总原则
- 提取关键信息
- 使用 Markdown 格式化输出
- 如果工具执行失败，解释原因并提供替代建议
- 保持简洁，避免冗余"""

SYSTEM_AGENT_SEEDS: tuple[dict[str, Any], ...] = (
    {
        "name": AGENT_GENERAL,
        "description": "通用运维助手，处理一般性问题和闲聊",
        "system_prompt": GENERAL_PROMPT,
        "llm_config": {"temperature": 0.7, "max_tokens": 4096},
        "keywords": [],
        "priority": 0,
    },
    {
        "name": AGENT_KNOWLEDGE,
        "description": "知识库专家，回答关于系统使用说明、运维文档、故障排查手册、API 文档等静态知识的问题",
        "system_prompt": KNOWLEDGE_PROMPT,
        "llm_config": {"temperature": 0.3, "max_tokens": 4096},
        "keywords": ["文档", "手册", "说明", "指南", "教程", "怎么", "如何", "是什么"],
        "priority": 100,
    },
    {
        "name": AGENT_ROUTER,
        "description": "路由决策专家，负责分析用户意图并选择合适的 Agent",
        "system_prompt": ROUTER_PROMPT,
        "llm_config": {"model": "gpt-4o-mini", "temperature": 0.1, "max_tokens": 100},
        "keywords": [],
        "priority": 1000,
    },
    {
        "name": AGENT_SUMMARY,
        "description": "结果汇总专家，负责整合工具执行结果并生成用户友好的回答",
        "system_prompt": SUMMARY_PROMPT,
        "llm_config": {"temperature": 0.5, "max_tokens": 4096},
        "keywords": [],
        "priority": 999,
    },
)


def seed_defaults(session: Session) -> int:
    """
    补齐缺失的系统 Agent 与默认优化配置，已存在的记录不会被覆盖。
    返回新建的记录数。
    """
    created = 0
    existing_agents = set(session.execute(select(AIAgent.name)).scalars().all())
    for seed in SYSTEM_AGENT_SEEDS:
        if seed["name"] in existing_agents:
            continue
        session.add(
            AIAgent(
                agent_type=AGENT_TYPE_SYSTEM,
                enabled=True,
                created_by=SEED_USER,
                updated_by=SEED_USER,
                **seed,
            )
        )
        created += 1

    existing_configs = set(
        session.execute(
            select(AIOptimizationConfig.config_type).where(
                AIOptimizationConfig.config_key == DEFAULT_CONFIG_KEY
            )
        ).scalars().all()
    )
    for config_type in OPTIMIZATION_CONFIG_TYPES:
        if config_type in existing_configs:
            continue
        session.add(
            AIOptimizationConfig(
                config_type=config_type,
                config_key=DEFAULT_CONFIG_KEY,
                config_value=default_config(config_type).model_dump(),
                description=f"默认 {config_type} 配置",
                enabled=True,
                created_by=SEED_USER,
                updated_by=SEED_USER,
            )
        )
        created += 1

    if created:
        session.commit()
        logger.info("seeded %d default AI assistant records", created)
    return created


__all__ = [
    "AgentConfig",
    "AgentRegistry",
    "SYSTEM_AGENT_SEEDS",
    "seed_defaults",
]
