from __future__ import annotations

import datetime as dt
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from aiassistant.deps import get_db, get_operator, get_services
from aiassistant.errors import bad_request, conflict, not_found
from aiassistant.logging_config import logger
from aiassistant.optimization.manager import OptimizationReloadError
from aiassistant.schemas.admin import (
    AIConfigCreateRequest,
    AIConfigResponse,
    AIConfigUpdateRequest,
    CostDailyResponse,
    CostThresholdResponse,
    CostUserResponse,
    LLMModelCreateRequest,
    LLMModelResponse,
    LLMModelUpdateRequest,
    OptimizationConfigResponse,
    OptimizationConfigUpdateRequest,
    ReloadResponse,
    SessionArchiveListResponse,
    SessionArchiveResponse,
)
from aiassistant.services.ai_config_service import (
    AIConfigInvalidError,
    AIConfigKeyExistsError,
    AIConfigNotFoundError,
    create_ai_config,
    delete_ai_config,
    get_ai_config,
    get_optimization_config,
    list_ai_configs,
    list_optimization_configs,
    update_ai_config,
    update_optimization_config,
)
from aiassistant.services.container import COMPONENT_CONFIG, COMPONENT_OPTIMIZATION, AssistantServices
from aiassistant.services.llm_model_service import (
    LLMModelNameExistsError,
    LLMModelNotFoundError,
    create_llm_model,
    delete_llm_model,
    get_llm_model,
    list_llm_models,
    model_to_response,
    update_llm_model,
)
from aiassistant.services.session_archive_service import (
    SessionArchiveServiceError,
    get_archive,
    list_archives,
)

router = APIRouter(
    prefix="/ai-assistant/admin",
    tags=["ai-assistant-admin"],
    dependencies=[Depends(get_operator)],
)


# ---- LLM models ----


@router.get("/llm-models", response_model=List[LLMModelResponse])
def list_llm_models_endpoint(db: Session = Depends(get_db)) -> List[LLMModelResponse]:
    return [model_to_response(row) for row in list_llm_models(db)]


@router.get("/llm-models/{model_id}", response_model=LLMModelResponse)
def get_llm_model_endpoint(model_id: int, db: Session = Depends(get_db)) -> LLMModelResponse:
    try:
        row = get_llm_model(db, model_id)
    except LLMModelNotFoundError as exc:
        raise not_found(str(exc))
    return model_to_response(row)


@router.post("/llm-models", response_model=LLMModelResponse, status_code=status.HTTP_201_CREATED)
async def create_llm_model_endpoint(
    payload: LLMModelCreateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> LLMModelResponse:
    try:
        row = create_llm_model(db, payload, operator=operator)
    except LLMModelNameExistsError as exc:
        raise conflict(str(exc))
    await services.reload_component(COMPONENT_CONFIG)
    return model_to_response(row)


@router.put("/llm-models/{model_id}", response_model=LLMModelResponse)
async def update_llm_model_endpoint(
    model_id: int,
    payload: LLMModelUpdateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> LLMModelResponse:
    try:
        row = update_llm_model(db, model_id, payload, operator=operator)
    except LLMModelNotFoundError as exc:
        raise not_found(str(exc))
    await services.reload_component(COMPONENT_CONFIG)
    return model_to_response(row)


@router.delete("/llm-models/{model_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_llm_model_endpoint(
    model_id: int,
    db: Session = Depends(get_db),
    services: AssistantServices = Depends(get_services),
) -> None:
    try:
        delete_llm_model(db, model_id)
    except LLMModelNotFoundError as exc:
        raise not_found(str(exc))
    await services.reload_component(COMPONENT_CONFIG)


# ---- optimization ----


@router.get("/optimization", response_model=List[OptimizationConfigResponse])
def list_optimization_endpoint(db: Session = Depends(get_db)) -> List[OptimizationConfigResponse]:
    return list_optimization_configs(db)


@router.get("/optimization/stats")
async def optimization_stats_endpoint(services: AssistantServices = Depends(get_services)) -> dict:
    return await services.optimization.get_stats()


@router.post("/optimization/reload", response_model=ReloadResponse)
async def reload_optimization_endpoint(services: AssistantServices = Depends(get_services)) -> ReloadResponse:
    try:
        await services.reload_component(COMPONENT_OPTIMIZATION)
    except OptimizationReloadError as exc:
        return ReloadResponse(errors=[str(exc)])
    return ReloadResponse(reloaded=[COMPONENT_OPTIMIZATION])


@router.get("/optimization/{config_type}", response_model=OptimizationConfigResponse)
def get_optimization_endpoint(config_type: str, db: Session = Depends(get_db)) -> OptimizationConfigResponse:
    try:
        return get_optimization_config(db, config_type)
    except AIConfigNotFoundError as exc:
        raise not_found(str(exc))


@router.put("/optimization/{config_type}", response_model=OptimizationConfigResponse)
async def update_optimization_endpoint(
    config_type: str,
    payload: OptimizationConfigUpdateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> OptimizationConfigResponse:
    try:
        response = update_optimization_config(db, config_type, payload, operator=operator)
    except AIConfigNotFoundError as exc:
        raise not_found(str(exc))
    except AIConfigInvalidError as exc:
        raise bad_request(str(exc))
    try:
        await services.reload_component(COMPONENT_OPTIMIZATION)
    except OptimizationReloadError:
        # 数据已落库，轮询器会在下个周期重试
        logger.exception("optimization reload failed after updating %s", config_type)
    return response


# ---- generic AI configs ----


@router.get("/configs", response_model=List[AIConfigResponse])
def list_ai_configs_endpoint(
    config_type: str | None = None,
    db: Session = Depends(get_db),
) -> List[AIConfigResponse]:
    return [AIConfigResponse.model_validate(row) for row in list_ai_configs(db, config_type=config_type)]


@router.get("/configs/{config_id}", response_model=AIConfigResponse)
def get_ai_config_endpoint(config_id: int, db: Session = Depends(get_db)) -> AIConfigResponse:
    try:
        row = get_ai_config(db, config_id)
    except AIConfigNotFoundError as exc:
        raise not_found(str(exc))
    return AIConfigResponse.model_validate(row)


@router.post("/configs", response_model=AIConfigResponse, status_code=status.HTTP_201_CREATED)
async def create_ai_config_endpoint(
    payload: AIConfigCreateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> AIConfigResponse:
    try:
        row = create_ai_config(db, payload, operator=operator)
    except AIConfigInvalidError as exc:
        raise bad_request(str(exc))
    except AIConfigKeyExistsError as exc:
        raise conflict(str(exc))
    await services.reload_component(COMPONENT_CONFIG)
    return AIConfigResponse.model_validate(row)


@router.put("/configs/{config_id}", response_model=AIConfigResponse)
async def update_ai_config_endpoint(
    config_id: int,
    payload: AIConfigUpdateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> AIConfigResponse:
    try:
        row = update_ai_config(db, config_id, payload, operator=operator)
    except AIConfigNotFoundError as exc:
        raise not_found(str(exc))
    except AIConfigInvalidError as exc:
        raise bad_request(str(exc))
    await services.reload_component(COMPONENT_CONFIG)
    return AIConfigResponse.model_validate(row)


@router.delete("/configs/{config_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ai_config_endpoint(
    config_id: int,
    db: Session = Depends(get_db),
    services: AssistantServices = Depends(get_services),
) -> None:
    try:
        delete_ai_config(db, config_id)
    except AIConfigNotFoundError as exc:
        raise not_found(str(exc))
    await services.reload_component(COMPONENT_CONFIG)


@router.post("/reload", response_model=ReloadResponse)
async def reload_all_endpoint(services: AssistantServices = Depends(get_services)) -> ReloadResponse:
    """立即重载全部组件，不等待轮询周期。"""
    reloaded, errors = await services.reload_all()
    return ReloadResponse(reloaded=reloaded, errors=errors)


# ---- cost ----


@router.get("/cost/daily", response_model=CostDailyResponse)
async def daily_cost_endpoint(
    date: str | None = Query(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    services: AssistantServices = Depends(get_services),
) -> CostDailyResponse:
    tracker = services.optimization.cost_tracker
    if tracker is None:
        raise not_found("成本统计未启用")
    daily = await tracker.get_daily_cost(date)
    return CostDailyResponse(
        date=daily.date,
        total_cost=daily.total,
        total_tokens=daily.prompt_tokens + daily.completion_tokens,
        request_count=daily.total_calls,
        models=daily.by_model,
    )


@router.get("/cost/users/{user_id}", response_model=CostUserResponse)
async def user_cost_endpoint(
    user_id: str,
    start_date: dt.date | None = None,
    end_date: dt.date | None = None,
    services: AssistantServices = Depends(get_services),
) -> CostUserResponse:
    tracker = services.optimization.cost_tracker
    if tracker is None:
        raise not_found("成本统计未启用")
    end = end_date or dt.date.today()
    start = start_date or end
    if start > end:
        raise bad_request("start_date 不能晚于 end_date")
    if (end - start).days > tracker.config.retention_days:
        raise bad_request(f"查询范围不能超过 {tracker.config.retention_days} 天")
    cost, calls = await tracker.get_user_cost_range(user_id, start, end)
    return CostUserResponse(
        user_id=user_id,
        start_date=start.isoformat(),
        end_date=end.isoformat(),
        total_cost=cost,
        request_count=calls,
    )


@router.get("/cost/threshold", response_model=CostThresholdResponse)
async def cost_threshold_endpoint(services: AssistantServices = Depends(get_services)) -> CostThresholdResponse:
    tracker = services.optimization.cost_tracker
    if tracker is None:
        raise not_found("成本统计未启用")
    exceeded, total = await tracker.check_threshold()
    daily = await tracker.get_daily_cost()
    return CostThresholdResponse(
        date=daily.date,
        total_cost=total,
        threshold=tracker.config.alert_threshold,
        exceeded=exceeded,
    )


# ---- session archives ----


@router.get("/session-archives", response_model=SessionArchiveListResponse)
def list_archives_endpoint(
    user_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> SessionArchiveListResponse:
    rows, total = list_archives(db, user_id=user_id, limit=limit, offset=offset)
    return SessionArchiveListResponse(
        items=[SessionArchiveResponse.model_validate(row) for row in rows],
        total=total,
    )


@router.get("/session-archives/{archive_id}", response_model=SessionArchiveResponse)
def get_archive_endpoint(archive_id: int, db: Session = Depends(get_db)) -> SessionArchiveResponse:
    try:
        row = get_archive(db, archive_id)
    except SessionArchiveServiceError as exc:
        raise not_found(str(exc))
    return SessionArchiveResponse.model_validate(row)


__all__ = ["router"]
