import datetime as dt

from fastapi.testclient import TestClient

from aiassistant.models import AISessionArchive
from aiassistant.models.ai_config import CONFIG_KEY_FILE, CONFIG_KEY_SESSION
from tests.utils import text_response, user_headers

ADMIN = "/ai-assistant/admin"


def test_llm_model_crud_masks_api_key(app_with_inmemory_db):
    app, _ = app_with_inmemory_db

    with TestClient(app) as client:
        first = client.post(
            f"{ADMIN}/llm-models",
            json={"name": "primary", "model_id": "gpt-4o", "api_key": "sk-1234567890", "is_default": True},
            headers=user_headers("admin"),
        )
        second = client.post(
            f"{ADMIN}/llm-models",
            json={"name": "backup", "model_id": "gpt-4o-mini", "is_default": True},
            headers=user_headers("admin"),
        )
        duplicate = client.post(
            f"{ADMIN}/llm-models", json={"name": "primary", "model_id": "x"}, headers=user_headers("admin")
        )
        listed = client.get(f"{ADMIN}/llm-models", headers=user_headers("admin"))
        updated = client.put(
            f"{ADMIN}/llm-models/{first.json()['id']}", json={"temperature": 0.2}, headers=user_headers("admin")
        )
        deleted = client.delete(f"{ADMIN}/llm-models/{second.json()['id']}", headers=user_headers("admin"))
        missing = client.get(f"{ADMIN}/llm-models/{second.json()['id']}", headers=user_headers("admin"))

    assert first.status_code == 201
    assert first.json()["api_key"] == "*********7890"
    assert second.json()["api_key"] is None
    assert duplicate.status_code == 409

    # 新的默认模型会清掉旧的默认标记
    by_name = {m["name"]: m for m in listed.json()}
    assert by_name["backup"]["is_default"] is True
    assert by_name["primary"]["is_default"] is False

    assert updated.json()["temperature"] == 0.2
    assert deleted.status_code == 204
    assert missing.status_code == 404


def test_optimization_configs(app_with_inmemory_db):
    app, _ = app_with_inmemory_db
    services = app.state.services

    with TestClient(app) as client:
        listed = client.get(f"{ADMIN}/optimization", headers=user_headers("admin"))
        rate_limit = client.get(f"{ADMIN}/optimization/rate_limit", headers=user_headers("admin"))
        unknown = client.get(f"{ADMIN}/optimization/teleport", headers=user_headers("admin"))

        updated = client.put(
            f"{ADMIN}/optimization/rate_limit",
            json={"config_value": {"default_rpm": 30, "burst_size": 3}},
            headers=user_headers("admin"),
        )
        invalid = client.put(
            f"{ADMIN}/optimization/rate_limit",
            json={"config_value": {"default_rpm": -1}},
            headers=user_headers("admin"),
        )
        stats = client.get(f"{ADMIN}/optimization/stats", headers=user_headers("admin"))
        reloaded = client.post(f"{ADMIN}/optimization/reload", headers=user_headers("admin"))

    assert len(listed.json()) == 6
    assert rate_limit.json()["config_value"]["default_rpm"] == 10
    assert rate_limit.json()["is_default"] is False
    assert unknown.status_code == 404

    assert updated.status_code == 200
    assert updated.json()["config_value"]["default_rpm"] == 30
    assert services.optimization.rate_limiter.config.default_rpm == 30
    assert invalid.status_code == 400

    assert stats.json()["rate_limit"]["default_rpm"] == 30
    assert stats.json()["concurrent"] == {"max_concurrency": 5}
    assert reloaded.json() == {"reloaded": ["optimization"], "errors": []}


def test_ai_config_crud_applies_runtime_config(app_with_inmemory_db, tmp_path):
    app, _ = app_with_inmemory_db
    services = app.state.services

    with TestClient(app) as client:
        session_config = client.post(
            f"{ADMIN}/configs",
            json={"config_key": CONFIG_KEY_SESSION, "config_value": '{"ttl": 600, "max_messages_per_session": 20}'},
            headers=user_headers("admin"),
        )
        file_config = client.post(
            f"{ADMIN}/configs",
            json={"config_key": CONFIG_KEY_FILE, "config_value": '{"storage_path": "%s", "max_size": 2048}' % tmp_path},
            headers=user_headers("admin"),
        )
        assert services.sessions.config.max_messages_per_session == 20
        assert services.files.config.max_size == 2048

        not_json = client.post(
            f"{ADMIN}/configs", json={"config_key": "broken", "config_value": "{oops"}, headers=user_headers("admin")
        )
        duplicate = client.post(
            f"{ADMIN}/configs", json={"config_key": CONFIG_KEY_SESSION, "config_value": "{}"}, headers=user_headers("admin")
        )
        updated = client.put(
            f"{ADMIN}/configs/{session_config.json()['id']}",
            json={"config_value": '{"max_messages_per_session": 8}'},
            headers=user_headers("admin"),
        )
        bad_update = client.put(
            f"{ADMIN}/configs/{session_config.json()['id']}",
            json={"config_value": "[1,"},
            headers=user_headers("admin"),
        )
        listed = client.get(f"{ADMIN}/configs", headers=user_headers("admin"))
        deleted = client.delete(f"{ADMIN}/configs/{file_config.json()['id']}", headers=user_headers("admin"))
        missing = client.get(f"{ADMIN}/configs/{file_config.json()['id']}", headers=user_headers("admin"))

    assert session_config.status_code == 201
    assert not_json.status_code == 400
    assert duplicate.status_code == 409
    assert updated.status_code == 200
    assert services.sessions.config.max_messages_per_session == 8
    assert bad_update.status_code == 400
    assert sorted(c["config_key"] for c in listed.json()) == [CONFIG_KEY_FILE, CONFIG_KEY_SESSION]
    assert deleted.status_code == 204
    assert missing.status_code == 404


def test_reload_all(app_with_inmemory_db):
    app, _ = app_with_inmemory_db

    with TestClient(app) as client:
        response = client.post(f"{ADMIN}/reload", headers=user_headers("admin"))

    body = response.json()
    assert body["errors"] == []
    assert {"agents", "tools", "knowledge", "optimization"} <= set(body["reloaded"])


def test_cost_endpoints(app_with_inmemory_db, fake_llm):
    app, _ = app_with_inmemory_db
    today = dt.date.today()

    with TestClient(app) as client:
        fake_llm.queue(text_response("好的", prompt_tokens=10, completion_tokens=5))
        client.post("/ai-assistant/chat", json={"message": "你好"}, headers=user_headers("u1"))

        daily = client.get(f"{ADMIN}/cost/daily", headers=user_headers("admin"))
        empty_day = client.get(f"{ADMIN}/cost/daily", params={"date": "2000-01-01"}, headers=user_headers("admin"))
        bad_date = client.get(f"{ADMIN}/cost/daily", params={"date": "yesterday"}, headers=user_headers("admin"))
        user_cost = client.get(f"{ADMIN}/cost/users/u1", headers=user_headers("admin"))
        reversed_range = client.get(
            f"{ADMIN}/cost/users/u1",
            params={"start_date": today.isoformat(), "end_date": (today - dt.timedelta(days=1)).isoformat()},
            headers=user_headers("admin"),
        )
        too_long = client.get(
            f"{ADMIN}/cost/users/u1",
            params={"start_date": (today - dt.timedelta(days=400)).isoformat()},
            headers=user_headers("admin"),
        )
        threshold = client.get(f"{ADMIN}/cost/threshold", headers=user_headers("admin"))

    assert daily.json()["request_count"] == 1
    assert daily.json()["total_tokens"] == 15
    assert empty_day.json()["request_count"] == 0
    assert bad_date.status_code == 422
    assert user_cost.json()["request_count"] == 1
    assert user_cost.json()["start_date"] == today.isoformat()
    assert reversed_range.status_code == 400
    assert too_long.status_code == 400
    assert threshold.json()["threshold"] == 100.0
    assert threshold.json()["exceeded"] is False


def test_session_archives(app_with_inmemory_db):
    app, SessionLocal = app_with_inmemory_db
    with SessionLocal() as db:
        db.add_all(
            [
                AISessionArchive(session_id="ses_a", user_id="u1", message_count=2, messages=[], archive_reason="manual"),
                AISessionArchive(session_id="ses_b", user_id="u2", message_count=0, archive_reason="auto_expired"),
            ]
        )
        db.commit()

    with TestClient(app) as client:
        everything = client.get(f"{ADMIN}/session-archives", headers=user_headers("admin"))
        only_u1 = client.get(f"{ADMIN}/session-archives", params={"user_id": "u1"}, headers=user_headers("admin"))
        archive_id = only_u1.json()["items"][0]["id"]
        single = client.get(f"{ADMIN}/session-archives/{archive_id}", headers=user_headers("admin"))
        missing = client.get(f"{ADMIN}/session-archives/999", headers=user_headers("admin"))

    assert everything.json()["total"] == 2
    assert only_u1.json()["total"] == 1
    assert single.json()["session_id"] == "ses_a"
    assert missing.status_code == 404
