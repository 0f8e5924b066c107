from __future__ import annotations

import asyncio
import datetime as dt
import time

import pytest

from aiassistant.errors import ErrorCode
from aiassistant.models import AIConfig
from aiassistant.models.ai_config import CONFIG_KEY_DEFAULT_MODEL, CONFIG_KEY_FILE, CONFIG_KEY_SESSION
from aiassistant.services.config_loader import (
    ConfigLoader,
    ConfigParseError,
    expand_env_in_value,
    expand_env_vars,
)


def _put_config(session_factory, key: str, value: str, *, updated_at: dt.datetime | None = None) -> None:
    with session_factory() as session:
        row = session.query(AIConfig).filter_by(config_key=key).one_or_none()
        if row is None:
            row = AIConfig(config_key=key, config_value=value)
            session.add(row)
        row.config_value = value
        if updated_at is not None:
            row.updated_at = updated_at
        session.commit()


def test_expand_env_vars(monkeypatch):
    monkeypatch.setenv("AI_KEY", "sk-123")
    monkeypatch.setenv("EMPTY_VAR", "")
    monkeypatch.delenv("MISSING_VAR", raising=False)

    text = '{"a": "${AI_KEY}", "b": "${MISSING_VAR}", "c": "${EMPTY_VAR}", "d": "plain"}'
    assert expand_env_vars(text) == '{"a": "sk-123", "b": "${MISSING_VAR}", "c": "${EMPTY_VAR}", "d": "plain"}'
    assert expand_env_in_value({"nested": ["${AI_KEY}"]}) == {"nested": ["sk-123"]}
    assert expand_env_in_value(None) is None


def test_get_parses_and_caches(session_factory, monkeypatch):
    monkeypatch.setenv("OPENAI_KEY", "sk-env")
    _put_config(
        session_factory,
        CONFIG_KEY_DEFAULT_MODEL,
        '{"model": "gpt-4o", "api_key": "${OPENAI_KEY}", "base_url": "https://llm.local/v1"}',
    )
    loader = ConfigLoader(session_factory)

    model_config = loader.get_ai_model_config()
    assert model_config.model == "gpt-4o"
    assert model_config.api_key == "sk-env"
    assert model_config.temperature == 0.7

    # 缓存命中，不再读库
    _put_config(session_factory, CONFIG_KEY_DEFAULT_MODEL, '{"model": "other"}')
    assert loader.get(CONFIG_KEY_DEFAULT_MODEL)["model"] == "gpt-4o"

    loader.reload_all()
    assert loader.get(CONFIG_KEY_DEFAULT_MODEL)["model"] == "other"


def test_missing_and_empty_values(session_factory):
    loader = ConfigLoader(session_factory)
    assert loader.get("no.such.key") is None
    assert loader.get_knowledge_config() is None

    _put_config(session_factory, "blank.key", "   ")
    assert loader.get("blank.key") is None


def test_invalid_json_raises_parse_error(session_factory):
    _put_config(session_factory, CONFIG_KEY_DEFAULT_MODEL, "{not json")
    loader = ConfigLoader(session_factory)

    with pytest.raises(ConfigParseError) as exc:
        loader.get_ai_model_config()

    assert exc.value.code == ErrorCode.CONFIG_INVALID
    assert exc.value.key == CONFIG_KEY_DEFAULT_MODEL


def test_session_and_file_config_fall_back_to_defaults(session_factory):
    loader = ConfigLoader(session_factory)
    assert loader.get_session_config().ttl == 604800
    assert loader.get_file_config().ttl == 3600

    _put_config(session_factory, CONFIG_KEY_SESSION, '{"ttl": 60, "max_messages_per_session": 5}')
    _put_config(session_factory, CONFIG_KEY_FILE, "[broken")
    loader.reload_all()

    session_config = loader.get_session_config()
    assert session_config.ttl == 60
    assert session_config.max_messages_per_session == 5
    assert session_config.max_sessions_per_user == 50
    assert loader.get_file_config().max_size == 104857600


@pytest.mark.asyncio
async def test_check_for_updates_notifies_listeners(session_factory):
    now = [time.time() + 3600]
    loader = ConfigLoader(session_factory, clock=lambda: now[0])
    notified: list[str] = []

    def sync_listener() -> None:
        notified.append("sync")

    async def async_listener() -> None:
        notified.append("async")

    def broken_listener() -> None:
        raise RuntimeError("listener failed")

    loader.add_listener(sync_listener)
    loader.add_listener(broken_listener)
    loader.add_listener(async_listener)

    assert await loader.check_for_updates() is False
    assert notified == []

    _put_config(
        session_factory,
        "general.flag",
        '{"on": true}',
        updated_at=dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=2),
    )
    assert await loader.check_for_updates() is True
    # 出错的监听者不影响后续监听者
    assert notified == ["sync", "async"]

    now[0] = time.time() + 3 * 3600
    assert await loader.check_for_updates() is False


@pytest.mark.asyncio
async def test_run_poller_stops_on_event(session_factory):
    loader = ConfigLoader(session_factory, clock=lambda: 0.0)
    calls: list[int] = []
    loader.add_listener(lambda: calls.append(1))
    stop = asyncio.Event()

    task = asyncio.create_task(loader.run_poller(0.01, stop))
    for _ in range(100):
        if calls:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert calls
