from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aiassistant.llm.client import ChatCompletionRequest, LLMMessage
from aiassistant.logging_config import logger
from aiassistant.models.agent import AGENT_GENERAL, AGENT_KNOWLEDGE, AGENT_ROUTER

if TYPE_CHECKING:
    from aiassistant.llm.client import LLMClient
    from aiassistant.services.agent_registry import AgentConfig, AgentRegistry

MATCH_MENTION = "mention"
MATCH_KEYWORD = "keyword"
MATCH_LLM = "llm"
MATCH_DEFAULT = "default"

# 超过该数量才启用 LLM 路由
LLM_ROUTING_MIN_AGENTS = 5
ROUTER_MAX_TOKENS = 100

MENTION_RE = re.compile(r"@(\w+)\s*")


@dataclass(frozen=True)
class RouteResult:
    agent: "AgentConfig | None"
    match_type: str
    clean_query: str
    is_mention: bool = False


def parse_mention(message: str) -> tuple[str, str, bool]:
    """返回 (agent 名称, 去掉 @ 之后的消息, 是否包含 @)。"""
    match = MENTION_RE.search(message)
    if match is None:
        return "", message, False
    return match.group(1), MENTION_RE.sub("", message).strip(), True


class AgentRouter:
    """@提及 > 关键词 > LLM > 默认 四级路由。"""

    def __init__(self, registry: "AgentRegistry") -> None:
        self.registry = registry

    async def route(self, message: str, *, llm: "LLMClient | None" = None) -> RouteResult:
        result = self.match_mention(message)
        if result is not None:
            return result

        agent = self.match_keywords(message)
        if agent is not None:
            return RouteResult(agent=agent, match_type=MATCH_KEYWORD, clean_query=message)

        if llm is not None and self.registry.count() > LLM_ROUTING_MIN_AGENTS:
            agent = await self.llm_route(message, llm)
            if agent is not None:
                return RouteResult(agent=agent, match_type=MATCH_LLM, clean_query=message)

        return RouteResult(agent=self.default_agent(), match_type=MATCH_DEFAULT, clean_query=message)

    def match_mention(self, message: str) -> RouteResult | None:
        name, clean, found = parse_mention(message)
        if not found:
            return None
        agent = self.registry.get(name) or self._fuzzy_match(name)
        if agent is None:
            return None
        return RouteResult(agent=agent, match_type=MATCH_MENTION, clean_query=clean, is_mention=True)

    def _fuzzy_match(self, name: str) -> "AgentConfig | None":
        lowered = name.lower()
        for agent in self.registry.get_all():
            if lowered in agent.name.lower():
                return agent
        return None

    def match_keywords(self, message: str) -> "AgentConfig | None":
        lowered = message.lower()
        matched: AgentConfig | None = None
        for agent in self.registry.get_all():
            if not agent.enabled or not agent.keywords:
                continue
            if not any(k.lower() in lowered for k in agent.keywords):
                continue
            # 同优先级保留先匹配到的
            if matched is None or agent.priority > matched.priority:
                matched = agent
        return matched

    async def llm_route(self, message: str, llm: "LLMClient") -> "AgentConfig | None":
        router_agent = self.registry.get_system_agent(AGENT_ROUTER)
        if router_agent is None:
            return None
        candidates = self.registry.get_for_mention()
        if not candidates:
            return None

        lines = [f"{i}. {a.name}: {a.description}" for i, a in enumerate(candidates, start=1)]
        prompt = (
            f"用户输入: {message}\n\n可用专家列表:\n"
            + "\n".join(lines)
            + f'\n\n请返回最合适的专家名称（只返回名称，不要其他内容）。如果都不匹配返回 "{AGENT_GENERAL}"。'
        )
        request = ChatCompletionRequest(
            model=router_agent.model,
            temperature=router_agent.temperature,
            max_tokens=ROUTER_MAX_TOKENS,
            system_prompt=router_agent.system_prompt,
            messages=[LLMMessage(role="user", content=prompt)],
        )
        try:
            resp = await llm.chat_completion(request)
        except Exception as exc:
            logger.warning("LLM routing failed: %s", exc)
            return None

        name = resp.content.strip().strip('"').strip()
        if not name:
            return None
        return self.registry.get(name)

    def default_agent(self) -> "AgentConfig | None":
        return self.registry.get_system_agent(AGENT_GENERAL) or self.registry.get_system_agent(AGENT_KNOWLEDGE)


__all__ = [
    "AgentRouter",
    "MATCH_DEFAULT",
    "MATCH_KEYWORD",
    "MATCH_LLM",
    "MATCH_MENTION",
    "RouteResult",
    "parse_mention",
]
