"""Conversation, workflow, file and settings endpoints."""

STEP = {
    "step": "review module",
    "stepNumber": 1,
    "totalSteps": 2,
    "nextStepRequired": True,
    "findings": "looks fine so far",
}


def _create_conversation(client, headers, **body):
    payload = {"toolType": "debug", "title": "crash hunt", **body}
    response = client.post("/v1/conversations", headers=headers, json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestConversations:
    def test_create_and_get(self, client, auth_headers):
        created = _create_conversation(client, auth_headers)

        response = client.get(f"/v1/conversations/{created['id']}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["title"] == "crash hunt"
        assert data["tool_type"] == "debug"

    def test_list_is_scoped_and_filtered(self, client, auth_headers, other_auth_headers):
        _create_conversation(client, auth_headers, toolType="debug")
        _create_conversation(client, auth_headers, toolType="analyze")
        _create_conversation(client, other_auth_headers, toolType="debug")

        mine = client.get("/v1/conversations", headers=auth_headers).json()["data"]["items"]
        debug_only = client.get(
            "/v1/conversations", headers=auth_headers, params={"tool_type": "debug"}
        ).json()["data"]["items"]

        assert len(mine) == 2
        assert [c["tool_type"] for c in debug_only] == ["debug"]

    def test_list_is_most_recent_first(self, client, auth_headers):
        older = _create_conversation(client, auth_headers, title="older")
        newer = _create_conversation(client, auth_headers, title="newer")
        client.put(
            f"/v1/conversations/{older['id']}", headers=auth_headers, json={"title": "touched"}
        )

        items = client.get("/v1/conversations", headers=auth_headers).json()["data"]["items"]

        assert [c["id"] for c in items] == [older["id"], newer["id"]]

    def test_update_title(self, client, auth_headers):
        created = _create_conversation(client, auth_headers)

        response = client.put(
            f"/v1/conversations/{created['id']}",
            headers=auth_headers,
            json={"title": "renamed"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["title"] == "renamed"

    def test_delete_cascades_workflows(self, client, auth_headers):
        step = client.post("/v1/tools/debug", headers=auth_headers, json=STEP).json()["data"]

        response = client.delete(
            f"/v1/conversations/{step['conversation_id']}", headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["data"]["deleted"] is True
        assert client.get(
            f"/v1/conversations/{step['conversation_id']}", headers=auth_headers
        ).status_code == 404
        assert client.get(
            f"/v1/workflows/{step['workflow_id']}", headers=auth_headers
        ).status_code == 404

    def test_other_users_conversation_is_forbidden(self, client, auth_headers, other_auth_headers):
        created = _create_conversation(client, auth_headers)
        url = f"/v1/conversations/{created['id']}"

        assert client.get(url, headers=other_auth_headers).status_code == 403
        assert client.put(url, headers=other_auth_headers, json={"title": "x"}).status_code == 403
        assert client.delete(url, headers=other_auth_headers).status_code == 403
        assert client.get(f"{url}/messages", headers=other_auth_headers).status_code == 403
        assert client.get(url, headers=auth_headers).json()["data"]["title"] == "crash hunt"

    def test_unknown_conversation_is_not_found(self, client, auth_headers):
        response = client.get("/v1/conversations/nope", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_workflows_listed_for_conversation(self, client, auth_headers):
        step = client.post("/v1/tools/debug", headers=auth_headers, json=STEP).json()["data"]
        client.post(
            "/v1/tools/debug",
            headers=auth_headers,
            json={**STEP, "conversationId": step["conversation_id"]},
        )

        items = client.get(
            f"/v1/conversations/{step['conversation_id']}/workflows", headers=auth_headers
        ).json()["data"]["items"]

        assert len(items) == 2
        assert items[0]["id"] == step["workflow_id"]

    def test_other_users_workflow_is_forbidden(self, client, auth_headers, other_auth_headers):
        step = client.post("/v1/tools/debug", headers=auth_headers, json=STEP).json()["data"]
        url = f"/v1/workflows/{step['workflow_id']}"
        assert client.get(url, headers=other_auth_headers).status_code == 403
        assert client.get(f"{url}/steps", headers=other_auth_headers).status_code == 403


class TestFiles:
    def test_record_and_list_files(self, client, auth_headers):
        conversation = _create_conversation(client, auth_headers)
        body = {
            "name": "trace.log",
            "size": 2048,
            "type": "text/plain",
            "url": "https://files.example.com/trace.log",
            "conversationId": conversation["id"],
        }

        created = client.post("/v1/files", headers=auth_headers, json=body)

        assert created.status_code == 201
        assert created.json()["data"]["conversation_id"] == conversation["id"]
        listed = client.get(
            "/v1/files", headers=auth_headers, params={"conversation_id": conversation["id"]}
        ).json()["data"]["items"]
        assert [f["name"] for f in listed] == ["trace.log"]

    def test_file_on_foreign_conversation_is_forbidden(
        self, client, auth_headers, other_auth_headers
    ):
        conversation = _create_conversation(client, auth_headers)
        body = {
            "name": "x.txt",
            "size": 1,
            "type": "text/plain",
            "url": "https://files.example.com/x.txt",
            "conversation_id": conversation["id"],
        }
        response = client.post("/v1/files", headers=other_auth_headers, json=body)
        assert response.status_code == 403


class TestSettings:
    def test_defaults_created_on_register(self, client, auth_headers):
        data = client.get("/v1/settings", headers=auth_headers).json()["data"]
        assert data["default_thinking_mode"] == "medium"
        assert data["theme"] == "system"
        assert data["web_search_enabled"] is True

    def test_patch_updates_only_given_fields(self, client, auth_headers):
        response = client.patch(
            "/v1/settings",
            headers=auth_headers,
            json={"theme": "dark", "webSearchEnabled": False},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["theme"] == "dark"
        assert data["web_search_enabled"] is False
        assert data["default_thinking_mode"] == "medium"

    def test_invalid_theme_is_rejected(self, client, auth_headers):
        response = client.patch("/v1/settings", headers=auth_headers, json={"theme": "neon"})
        assert response.status_code == 400
