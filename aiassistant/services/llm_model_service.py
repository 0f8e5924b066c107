from __future__ import annotations

from typing import List

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aiassistant.log_sanitizer import mask_secret
from aiassistant.logging_config import logger
from aiassistant.models import AILLMModel
from aiassistant.schemas.admin import LLMModelCreateRequest, LLMModelResponse, LLMModelUpdateRequest


class LLMModelServiceError(RuntimeError):
    """Base error for LLM model rows."""


class LLMModelNameExistsError(LLMModelServiceError):
    pass


class LLMModelNotFoundError(LLMModelServiceError):
    pass


def model_to_response(row: AILLMModel) -> LLMModelResponse:
    response = LLMModelResponse.model_validate(row)
    response.api_key = mask_secret(row.api_key) or None
    return response


def _clear_other_defaults(session: Session, keep_id: int | None) -> None:
    stmt = update(AILLMModel).where(AILLMModel.is_default.is_(True))
    if keep_id is not None:
        stmt = stmt.where(AILLMModel.id != keep_id)
    session.execute(stmt.values(is_default=False))


def list_llm_models(session: Session) -> List[AILLMModel]:
    stmt: Select[tuple[AILLMModel]] = select(AILLMModel).order_by(AILLMModel.is_default.desc(), AILLMModel.name)
    return list(session.execute(stmt).scalars().all())


def get_llm_model(session: Session, model_id: int) -> AILLMModel:
    row = session.get(AILLMModel, model_id)
    if row is None:
        raise LLMModelNotFoundError(f"LLM model {model_id} not found")
    return row


def get_default_llm_model(session: Session) -> AILLMModel | None:
    stmt: Select[tuple[AILLMModel]] = (
        select(AILLMModel)
        .where(AILLMModel.is_default.is_(True), AILLMModel.enabled.is_(True))
        .order_by(AILLMModel.id)
    )
    return session.execute(stmt).scalars().first()


def create_llm_model(session: Session, payload: LLMModelCreateRequest, *, operator: str | None = None) -> AILLMModel:
    row = AILLMModel(**payload.model_dump(), created_by=operator, updated_by=operator)
    if row.is_default:
        # 只允许一个默认模型
        _clear_other_defaults(session, None)
    session.add(row)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.error("Failed to create LLM model: %s", exc)
        raise LLMModelNameExistsError("模型名称已存在") from exc
    session.refresh(row)
    return row


def update_llm_model(
    session: Session,
    model_id: int,
    payload: LLMModelUpdateRequest,
    *,
    operator: str | None = None,
) -> AILLMModel:
    row = get_llm_model(session, model_id)
    data = payload.model_dump(exclude_unset=True)
    for name, value in data.items():
        setattr(row, name, value)
    if data.get("is_default"):
        _clear_other_defaults(session, row.id)
    row.updated_by = operator
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def delete_llm_model(session: Session, model_id: int) -> None:
    row = get_llm_model(session, model_id)
    session.delete(row)
    session.commit()


__all__ = [
    "LLMModelNameExistsError",
    "LLMModelNotFoundError",
    "LLMModelServiceError",
    "create_llm_model",
    "delete_llm_model",
    "get_default_llm_model",
    "get_llm_model",
    "list_llm_models",
    "model_to_response",
    "update_llm_model",
]
