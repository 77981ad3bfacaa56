"""Single-shot chat through /v1/chat."""

import pytest


class TestChat:
    def test_chat_creates_conversation_and_messages(self, client, auth_headers, tool_backend):
        tool_backend.reply(
            "/chat",
            body={"status": "success", "content": "hello back", "continuation_id": "c-9"},
        )

        response = client.post(
            "/v1/chat", headers=auth_headers, json={"prompt": "hello", "thinkingMode": "low"}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["response"]["content"] == "hello back"
        assert tool_backend.calls[-1]["json"]["prompt"] == "hello"
        assert tool_backend.calls[-1]["json"]["thinking_mode"] == "low"

        messages = client.get(
            f"/v1/conversations/{data['conversation_id']}/messages", headers=auth_headers
        ).json()["data"]["items"]
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[1]["content"] == "hello back"
        assert messages[1]["metadata"]["continuation_id"] == "c-9"

        conversation = client.get(
            f"/v1/conversations/{data['conversation_id']}", headers=auth_headers
        ).json()["data"]
        assert conversation["tool_type"] == "chat"
        assert client.get(
            f"/v1/conversations/{data['conversation_id']}/workflows", headers=auth_headers
        ).json()["data"]["items"] == []

    @pytest.mark.parametrize("flag", ["useWebSearch", "useWebsearch", "use_websearch"])
    def test_web_search_flag_spellings(self, client, auth_headers, tool_backend, flag):
        response = client.post(
            "/v1/chat", headers=auth_headers, json={"prompt": "hi", flag: True}
        )

        assert response.status_code == 200
        sent = tool_backend.calls[-1]["json"]
        assert sent["use_websearch"] is True
        assert "useWebSearch" not in sent
        conversation_id = response.json()["data"]["conversation_id"]
        messages = client.get(
            f"/v1/conversations/{conversation_id}/messages", headers=auth_headers
        ).json()["data"]["items"]
        assert messages[0]["metadata"]["use_websearch"] is True

    def test_chat_continues_existing_conversation(self, client, auth_headers, tool_backend):
        first = client.post("/v1/chat", headers=auth_headers, json={"prompt": "one"}).json()
        conversation_id = first["data"]["conversation_id"]

        client.post(
            "/v1/chat",
            headers=auth_headers,
            json={"prompt": "two", "conversationId": conversation_id},
        )

        messages = client.get(
            f"/v1/conversations/{conversation_id}/messages", headers=auth_headers
        ).json()["data"]["items"]
        assert len(messages) == 4

    def test_structured_content_is_stored_as_json(self, client, auth_headers, tool_backend):
        tool_backend.reply("/chat", body={"status": "success", "content": {"answer": 42}})

        data = client.post("/v1/chat", headers=auth_headers, json={"prompt": "q"}).json()["data"]

        messages = client.get(
            f"/v1/conversations/{data['conversation_id']}/messages", headers=auth_headers
        ).json()["data"]["items"]
        assert messages[-1]["content"] == '{"answer": 42}'

    def test_chat_on_foreign_conversation_is_forbidden(
        self, client, auth_headers, other_auth_headers
    ):
        first = client.post("/v1/chat", headers=auth_headers, json={"prompt": "mine"}).json()

        response = client.post(
            "/v1/chat",
            headers=other_auth_headers,
            json={"prompt": "sneaky", "conversation_id": first["data"]["conversation_id"]},
        )

        assert response.status_code == 403

    def test_empty_prompt_is_rejected(self, client, auth_headers):
        response = client.post("/v1/chat", headers=auth_headers, json={"prompt": ""})
        assert response.status_code == 400

    def test_backend_unavailable_maps_to_503(self, client, auth_headers, tool_backend):
        tool_backend.reply("/chat", status_code=502, body={"detail": "upstream down"})
        response = client.post("/v1/chat", headers=auth_headers, json={"prompt": "hi"})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "tool_unavailable"
