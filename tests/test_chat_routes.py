from fastapi.testclient import TestClient

from aiassistant.models import AISessionArchive
from aiassistant.models.session_archive import ARCHIVE_REASON_USER_DELETED
from aiassistant.services.config_loader import FileConfig
from tests.utils import text_response, user_headers


def _start_session(client: TestClient, fake_llm, message: str = "你好") -> dict:
    fake_llm.queue(text_response("你好，我是运维助手"))
    response = client.post("/ai-assistant/chat", json={"message": message}, headers=user_headers())
    assert response.status_code == 200, response.text
    return response.json()


def test_chat_requires_user_header(app_with_inmemory_db):
    app, _ = app_with_inmemory_db

    with TestClient(app) as client:
        response = client.post("/ai-assistant/chat", json={"message": "你好"})

    assert response.status_code == 401


def test_chat_direct_answer(app_with_inmemory_db, fake_llm):
    app, _ = app_with_inmemory_db

    with TestClient(app) as client:
        body = _start_session(client, fake_llm)

    assert body["status"] == "completed"
    assert body["source"] == "direct"
    assert body["agent"] == "general"
    assert body["assistant_message"]["content"] == "你好，我是运维助手"
    assert body["session_id"]
    assert body["trace_id"]
    # response_model_exclude_none
    assert "tool" not in body
    assert "pending_confirmation" not in body


def test_session_endpoints(app_with_inmemory_db, fake_llm):
    app, _ = app_with_inmemory_db

    with TestClient(app) as client:
        session_id = _start_session(client, fake_llm)["session_id"]

        listed = client.get("/ai-assistant/sessions", headers=user_headers())
        detail = client.get(f"/ai-assistant/sessions/{session_id}", headers=user_headers())
        messages = client.get(f"/ai-assistant/sessions/{session_id}/messages", headers=user_headers())
        last = client.get(
            f"/ai-assistant/sessions/{session_id}/messages", params={"limit": 1}, headers=user_headers()
        )
        stats = client.get("/ai-assistant/sessions-stats", headers=user_headers())

        other_user = client.get(f"/ai-assistant/sessions/{session_id}", headers=user_headers("u2"))
        other_list = client.get("/ai-assistant/sessions", headers=user_headers("u2"))
        missing = client.get("/ai-assistant/sessions/ses_missing", headers=user_headers())

    assert listed.json()["total"] == 1
    assert listed.json()["items"][0]["id"] == session_id
    assert detail.json()["user_id"] == "u1"
    assert detail.json()["message_count"] == 2
    assert [m["role"] for m in messages.json()["items"]] == ["user", "assistant"]
    assert [m["role"] for m in last.json()["items"]] == ["assistant"]
    assert stats.json()["active_count"] >= 1

    assert other_user.status_code == 403
    assert other_list.json() == {"items": [], "total": 0}
    assert missing.status_code == 404


def test_delete_session_archives_it(app_with_inmemory_db, fake_llm):
    app, SessionLocal = app_with_inmemory_db

    with TestClient(app) as client:
        session_id = _start_session(client, fake_llm)["session_id"]

        forbidden = client.delete(f"/ai-assistant/sessions/{session_id}", headers=user_headers("u2"))
        deleted = client.delete(f"/ai-assistant/sessions/{session_id}", headers=user_headers())
        after = client.get(f"/ai-assistant/sessions/{session_id}", headers=user_headers())

    assert forbidden.status_code == 403
    assert deleted.status_code == 204
    assert after.status_code == 404

    with SessionLocal() as db:
        archive = db.query(AISessionArchive).filter_by(session_id=session_id).one()
    assert archive.user_id == "u1"
    assert archive.archived_by == "u1"
    assert archive.archive_reason == ARCHIVE_REASON_USER_DELETED
    assert archive.message_count == 2
    assert [m["role"] for m in archive.messages] == ["user", "assistant"]


def test_upload_and_download(app_with_inmemory_db, tmp_path):
    app, _ = app_with_inmemory_db
    app.state.services.files.update_config(FileConfig(storage_path=str(tmp_path), max_size=1024))

    with TestClient(app) as client:
        uploaded = client.post(
            "/ai-assistant/chat/upload",
            files={"file": ("notes.txt", b"restart nginx", "text/plain")},
            headers=user_headers(),
        )
        file_id = uploaded.json()["file_id"]

        downloaded = client.get(f"/ai-assistant/files/{file_id}", headers=user_headers())
        stranger = client.get(f"/ai-assistant/files/{file_id}", headers=user_headers("u2"))
        missing = client.get("/ai-assistant/files/file_missing", headers=user_headers())
        rejected = client.post(
            "/ai-assistant/chat/upload",
            files={"file": ("run.sh", b"rm -rf /", "application/x-sh")},
            headers=user_headers(),
        )
        too_large = client.post(
            "/ai-assistant/chat/upload",
            files={"file": ("big.txt", b"x" * 2048, "text/plain")},
            headers=user_headers(),
        )

    assert uploaded.status_code == 201, uploaded.text
    assert uploaded.json()["filename"] == "notes.txt"
    assert uploaded.json()["size"] == len(b"restart nginx")

    assert downloaded.status_code == 200
    assert downloaded.content == b"restart nginx"
    assert stranger.status_code == 403
    assert missing.status_code == 404

    assert rejected.status_code == 400
    assert rejected.json()["detail"]["error"] == "invalid_file_type"
    assert too_large.status_code == 413
    assert too_large.json()["detail"]["details"] == {"max_size": 1024}
