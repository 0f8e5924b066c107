"""
Shared pytest configuration.

This file ensures the project root is on sys.path so that `import aiassistant`
works consistently in all tests, and provides the in-memory app fixtures.
"""

import sys
from pathlib import Path

import pytest

# Ensure project root is importable for test modules.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from aiassistant.routes import create_app  # noqa: E402
from aiassistant.services.agent_registry import seed_defaults  # noqa: E402
from aiassistant.services.container import AssistantServices  # noqa: E402
from tests.utils import (  # noqa: E402
    FakeLLM,
    InMemoryRedis,
    create_inmemory_session_factory,
    install_inmemory_db,
)


@pytest.fixture()
def redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture()
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture()
def session_factory():
    """已写入系统 Agent 与默认优化配置的内存库。"""
    SessionLocal = create_inmemory_session_factory()
    with SessionLocal() as session:
        seed_defaults(session)
    yield SessionLocal
    SessionLocal.kw["bind"].dispose()


@pytest.fixture()
def app_with_inmemory_db(redis, fake_llm):
    """
    返回 (app, SessionLocal)；运行时容器预先注入，lifespan 不会连接真实的 Postgres / Redis。
    """
    app = create_app()
    SessionLocal = install_inmemory_db(app)
    services = AssistantServices.build(SessionLocal, redis, llm=fake_llm)
    services.load()
    app.state.services = services
    return app, SessionLocal
