from __future__ import annotations

from fastapi import APIRouter, Request, Response
from redis.exceptions import RedisError

from aiassistant.logging_config import logger
from aiassistant.observability.metrics import render_latest

router = APIRouter(tags=["system"])


@router.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request) -> Response:
    """
    Prometheus 抓取入口。

    会话数 / 待确认数按 Redis 存量计算；Redis 不可用时沿用上次的值。
    """
    services = getattr(request.app.state, "services", None)
    if services is not None:
        try:
            await services.refresh_gauges()
        except (RedisError, OSError) as exc:
            logger.warning("failed to refresh assistant gauges: %s", exc)
    body, content_type = render_latest()
    return Response(content=body, media_type=content_type)
