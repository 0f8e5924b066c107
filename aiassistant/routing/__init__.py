from .agent_router import AgentRouter, RouteResult, parse_mention

__all__ = ["AgentRouter", "RouteResult", "parse_mention"]
