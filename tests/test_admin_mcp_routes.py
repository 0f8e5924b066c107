import json

import httpx
import pytest
from fastapi.testclient import TestClient

from aiassistant.models.knowledge import HEALTH_HEALTHY
from aiassistant.routes import create_app
from aiassistant.services.container import AssistantServices
from tests.utils import install_inmemory_db, user_headers

MCP = "/ai-assistant/admin/mcp"


class FakeMCPServer:
    """JSON-RPC 桩：tools/list 返回固定工具，down 为 True 时返回 503。"""

    def __init__(self) -> None:
        self.down = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            return httpx.Response(503, text="down")
        payload = json.loads(request.content)
        result = {
            "tools": [
                {"name": "k8s_get_pods", "description": "列出 Pod", "inputSchema": {"type": "object"}},
            ]
        }
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})


@pytest.fixture()
def mcp_app(redis, fake_llm):
    remote = FakeMCPServer()
    app = create_app()
    SessionLocal = install_inmemory_db(app)
    http = httpx.AsyncClient(transport=httpx.MockTransport(remote))
    services = AssistantServices.build(SessionLocal, redis, http_client=http, llm=fake_llm)
    services.load()
    app.state.services = services
    return app, remote


def _create_server(client: TestClient, name: str = "k8s", **extra) -> dict:
    payload = {"name": name, "endpoint": "http://mcp.local/rpc", **extra}
    response = client.post(f"{MCP}/servers", json=payload, headers=user_headers("admin"))
    assert response.status_code == 201, response.text
    return response.json()


def test_server_crud_connects_on_reload(mcp_app):
    app, remote = mcp_app
    services = app.state.services

    with TestClient(app) as client:
        created = _create_server(client, allowed_envs=["prod"], allowed_prefixes=["k8s_"])
        duplicate = client.post(
            f"{MCP}/servers", json={"name": "k8s", "endpoint": "http://other/rpc"}, headers=user_headers("admin")
        )
        assert services.mcp.is_healthy(created["id"])

        fetched = client.get(f"{MCP}/servers/{created['id']}", headers=user_headers("admin"))
        tools = client.get(f"{MCP}/servers/{created['id']}/tools", headers=user_headers("admin"))

        remote.down = True
        health = client.post(f"{MCP}/servers/{created['id']}/health-check", headers=user_headers("admin"))
        remote.down = False

        disabled = client.put(
            f"{MCP}/servers/{created['id']}", json={"enabled": False}, headers=user_headers("admin")
        )
        not_connected = client.get(f"{MCP}/servers/{created['id']}/tools", headers=user_headers("admin"))
        deleted = client.delete(f"{MCP}/servers/{created['id']}", headers=user_headers("admin"))
        missing = client.post(f"{MCP}/servers/{created['id']}/health-check", headers=user_headers("admin"))

        client.portal.call(services.mcp.close)

    assert duplicate.status_code == 409
    assert fetched.json()["health_status"] == HEALTH_HEALTHY
    assert fetched.json()["allowed_prefixes"] == ["k8s_"]
    assert tools.json() == [
        {"name": "k8s_get_pods", "description": "列出 Pod", "input_schema": {"type": "object"}},
    ]
    assert health.json()["healthy"] is False
    assert "503" in health.json()["error"]
    assert disabled.json()["enabled"] is False
    assert not_connected.status_code == 404
    assert not_connected.json()["detail"]["error"] == "mcp_server_not_found"
    assert deleted.status_code == 204
    assert missing.status_code == 404


def test_templates_and_create_from_template(mcp_app):
    app, _ = mcp_app
    services = app.state.services

    with TestClient(app) as client:
        template = client.post(
            f"{MCP}/templates",
            json={
                "name": "k8s-default",
                "description": "K8s 只读工具",
                "category": "k8s",
                "server_config": {"endpoint": "http://mcp.local/rpc", "allowed_prefixes": ["k8s_"]},
            },
            headers=user_headers("admin"),
        )
        assert template.status_code == 201, template.text
        template_id = template.json()["id"]

        broken = client.post(
            f"{MCP}/templates",
            json={"name": "empty", "server_config": {}},
            headers=user_headers("admin"),
        ).json()

        by_category = client.get(f"{MCP}/templates", params={"category": "k8s"}, headers=user_headers("admin"))
        server = client.post(
            f"{MCP}/templates/{template_id}/servers", json={"name": "k8s-prod"}, headers=user_headers("admin")
        )
        again = client.post(
            f"{MCP}/templates/{template_id}/servers", json={"name": "k8s-prod"}, headers=user_headers("admin")
        )
        invalid = client.post(
            f"{MCP}/templates/{broken['id']}/servers", json={"name": "nothing"}, headers=user_headers("admin")
        )
        unknown = client.post(f"{MCP}/templates/999/servers", json={"name": "x"}, headers=user_headers("admin"))

        updated = client.put(
            f"{MCP}/templates/{template_id}", json={"is_default": True}, headers=user_headers("admin")
        )
        deleted = client.delete(f"{MCP}/templates/{template_id}", headers=user_headers("admin"))
        gone = client.get(f"{MCP}/templates/{template_id}", headers=user_headers("admin"))

        client.portal.call(services.mcp.close)

    assert [t["name"] for t in by_category.json()] == ["k8s-default"]
    assert server.status_code == 201
    assert server.json()["description"] == "K8s 只读工具"
    assert server.json()["allowed_prefixes"] == ["k8s_"]
    assert services.mcp.get_all_clients() == {}
    assert again.status_code == 409
    assert invalid.status_code == 400
    assert unknown.status_code == 404
    assert updated.json()["is_default"] is True
    assert deleted.status_code == 204
    assert gone.status_code == 404
