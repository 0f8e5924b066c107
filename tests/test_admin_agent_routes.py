from fastapi.testclient import TestClient

from tests.utils import user_headers

ADMIN = "/ai-assistant/admin"


def _create_tool(client: TestClient, name: str = "get_pods", **extra) -> dict:
    payload = {"name": name, "implementation_type": "native", **extra}
    response = client.post(f"{ADMIN}/tools", json=payload, headers=user_headers("admin"))
    assert response.status_code == 201, response.text
    return response.json()


def test_admin_routes_require_operator(app_with_inmemory_db):
    app, _ = app_with_inmemory_db

    with TestClient(app) as client:
        response = client.get(f"{ADMIN}/agents")

    assert response.status_code == 401
    assert response.json()["detail"]["error"] == "unauthorized"


def test_list_seeded_agents_by_priority(app_with_inmemory_db):
    app, _ = app_with_inmemory_db

    with TestClient(app) as client:
        response = client.get(f"{ADMIN}/agents", headers=user_headers("admin"))

    assert response.status_code == 200
    names = [item["name"] for item in response.json()]
    assert names == ["router", "summary", "knowledge", "general"]


def test_create_agent_with_tools_reloads_registry(app_with_inmemory_db):
    app, _ = app_with_inmemory_db
    services = app.state.services

    with TestClient(app) as client:
        tool = _create_tool(client, method="get")
        assert tool["method"] == "GET"

        response = client.post(
            f"{ADMIN}/agents",
            json={
                "name": "k8s_expert",
                "description": "K8s 运维",
                "keywords": ["pod", "deployment"],
                "llm_config": {"model": "gpt-4o", "temperature": 0.2, "max_tokens": 1024},
                "priority": 50,
                "tool_ids": [tool["id"]],
            },
            headers=user_headers("admin"),
        )
        assert response.status_code == 201, response.text
        body = response.json()
        assert body["tool_ids"] == [tool["id"]]
        assert body["llm_config"]["model"] == "gpt-4o"

        fetched = client.get(f"{ADMIN}/agents/{body['id']}", headers=user_headers("admin"))

    assert fetched.json()["keywords"] == ["pod", "deployment"]
    expert = services.agents.get("k8s_expert")
    assert expert is not None
    assert [t.name for t in expert.tools] == ["get_pods"]
    assert services.tools.get("get_pods") is not None


def test_create_agent_conflicts_and_unknown_tools(app_with_inmemory_db):
    app, _ = app_with_inmemory_db

    with TestClient(app) as client:
        duplicate = client.post(f"{ADMIN}/agents", json={"name": "general"}, headers=user_headers("admin"))
        unknown_tool = client.post(
            f"{ADMIN}/agents", json={"name": "db_expert", "tool_ids": [999]}, headers=user_headers("admin")
        )
        bad_name = client.post(f"{ADMIN}/agents", json={"name": "has space"}, headers=user_headers("admin"))

    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["error"] == "conflict"
    assert unknown_tool.status_code == 400
    assert bad_name.status_code == 422


def test_update_agent_rebinds_tools(app_with_inmemory_db):
    app, _ = app_with_inmemory_db
    services = app.state.services

    with TestClient(app) as client:
        first = _create_tool(client, "get_pods")
        second = _create_tool(client, "get_nodes")
        created = client.post(
            f"{ADMIN}/agents",
            json={"name": "k8s_expert", "tool_ids": [first["id"]]},
            headers=user_headers("admin"),
        ).json()

        updated = client.put(
            f"{ADMIN}/agents/{created['id']}",
            json={"keywords": ["节点"], "tool_ids": [second["id"], first["id"]]},
            headers=user_headers("admin"),
        )
        empty = client.put(f"{ADMIN}/agents/{created['id']}", json={}, headers=user_headers("admin"))
        missing = client.put(f"{ADMIN}/agents/999", json={"priority": 1}, headers=user_headers("admin"))

    assert updated.status_code == 200
    assert updated.json()["tool_ids"] == sorted([first["id"], second["id"]])
    assert services.agents.get("k8s_expert").keywords == ("节点",)
    assert empty.status_code == 422
    assert missing.status_code == 404


def test_delete_agent(app_with_inmemory_db):
    app, _ = app_with_inmemory_db
    services = app.state.services

    with TestClient(app) as client:
        agents = client.get(f"{ADMIN}/agents", headers=user_headers("admin")).json()
        general_id = next(a["id"] for a in agents if a["name"] == "general")
        created = client.post(f"{ADMIN}/agents", json={"name": "db_expert"}, headers=user_headers("admin")).json()
        assert services.agents.get("db_expert") is not None

        system = client.delete(f"{ADMIN}/agents/{general_id}", headers=user_headers("admin"))
        removed = client.delete(f"{ADMIN}/agents/{created['id']}", headers=user_headers("admin"))
        again = client.delete(f"{ADMIN}/agents/{created['id']}", headers=user_headers("admin"))

    assert system.status_code == 400
    assert removed.status_code == 204
    assert again.status_code == 404
    assert services.agents.get("db_expert") is None


def test_tool_crud_and_filter(app_with_inmemory_db):
    app, _ = app_with_inmemory_db
    services = app.state.services

    with TestClient(app) as client:
        native = _create_tool(client, "get_pods")
        api = _create_tool(
            client,
            "list_alerts",
            implementation_type="api",
            method="post",
            url_path="/alerts/search",
            risk_level="medium",
        )
        duplicate = client.post(
            f"{ADMIN}/tools", json={"name": "get_pods", "implementation_type": "native"}, headers=user_headers("admin")
        )
        invalid_api = client.post(
            f"{ADMIN}/tools", json={"name": "broken", "implementation_type": "api"}, headers=user_headers("admin")
        )
        invalid_mcp = client.post(
            f"{ADMIN}/tools", json={"name": "broken", "implementation_type": "mcp"}, headers=user_headers("admin")
        )

        only_api = client.get(f"{ADMIN}/tools", params={"implementation_type": "api"}, headers=user_headers("admin"))
        updated = client.put(
            f"{ADMIN}/tools/{api['id']}", json={"description": "查询告警", "enabled": False}, headers=user_headers("admin")
        )
        deleted = client.delete(f"{ADMIN}/tools/{native['id']}", headers=user_headers("admin"))
        gone = client.get(f"{ADMIN}/tools/{native['id']}", headers=user_headers("admin"))

    assert api["method"] == "POST"
    assert api["risk_level"] == "medium"
    assert duplicate.status_code == 409
    assert invalid_api.status_code == 422
    assert invalid_mcp.status_code == 422
    assert [t["name"] for t in only_api.json()] == ["list_alerts"]
    assert updated.json()["description"] == "查询告警"
    assert deleted.status_code == 204
    assert gone.status_code == 404
    assert services.tools.get("get_pods") is None
    assert services.tools.get("list_alerts") is None
