"""One behavioural suite run against every persistence adapter.

The REST store runs against ``FakePostgrest``, an in-process stand-in for a
PostgREST endpoint with the same foreign keys and cascades as
``scripts/schema.sql``. The Postgres store joins in when TEST_DATABASE_URL
points at a database with that schema applied.
"""

import json
import os
from datetime import datetime, timedelta
from urllib.parse import parse_qsl

import httpx
import pytest

from toolflow.storage.errors import ConstraintViolation, StorageUnavailable
from toolflow.storage.memory import MemoryStore
from toolflow.storage.rest import RestStore

# (column, referenced table, on delete)
_FOREIGN_KEYS = {
    "sessions": [("userId", "users", "cascade")],
    "user_settings": [("userId", "users", "cascade")],
    "conversations": [("userId", "users", "cascade")],
    "messages": [("conversationId", "conversations", "cascade")],
    "workflows": [("conversationId", "conversations", "cascade")],
    "workflow_steps": [("workflowId", "workflows", "cascade")],
    "files": [
        ("userId", "users", "cascade"),
        ("conversationId", "conversations", "set null"),
        ("workflowStepId", "workflow_steps", "set null"),
    ],
}
_UNIQUE = {"users": ["email"], "sessions": ["sessionToken"], "user_settings": ["userId"]}


def _sortable(value):
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


class FakePostgrest:
    def __init__(self):
        self.tables = {name: [] for name in (
            "users", "sessions", "user_settings", "conversations",
            "messages", "workflows", "workflow_steps", "files",
        )}

    @staticmethod
    def _conflict(code, message):
        return httpx.Response(409, json={"code": code, "message": message, "details": None})

    @staticmethod
    def _matches(row, filters):
        for column, op, value in filters:
            current = row.get(column)
            if op == "eq" and str(current) != value:
                return False
            if op == "lt" and not (current is not None and _sortable(current) < _sortable(value)):
                return False
        return True

    def _check_constraints(self, resource, row, ignore_id=None):
        for column in _UNIQUE.get(resource, []):
            if any(
                r.get(column) == row.get(column) and r["id"] != ignore_id
                for r in self.tables[resource]
            ):
                return self._conflict("23505", f"duplicate {column}")
        for column, parent, _ in _FOREIGN_KEYS.get(resource, []):
            value = row.get(column)
            if value is not None and not any(r["id"] == value for r in self.tables[parent]):
                return self._conflict("23503", f"missing {parent}")
        return None

    def _delete_rows(self, resource, doomed):
        doomed_ids = {r["id"] for r in doomed}
        self.tables[resource] = [r for r in self.tables[resource] if r["id"] not in doomed_ids]
        for child, keys in _FOREIGN_KEYS.items():
            for column, parent, action in keys:
                if parent != resource:
                    continue
                hits = [r for r in self.tables[child] if r.get(column) in doomed_ids]
                if action == "cascade":
                    self._delete_rows(child, hits)
                else:
                    for r in hits:
                        r[column] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        resource = request.url.path.rsplit("/", 1)[-1]
        rows = self.tables[resource]
        filters, order, limit, offset = [], None, None, 0
        for key, value in parse_qsl(request.url.query.decode()):
            if key == "order":
                order = value
            elif key == "limit":
                limit = int(value)
            elif key == "offset":
                offset = int(value)
            elif key != "select":
                op, _, operand = value.partition(".")
                filters.append((key, op, operand))
        body = json.loads(request.content) if request.content else None

        if request.method == "POST":
            error = self._check_constraints(resource, body)
            if error is not None:
                return error
            rows.append(dict(body))
            return httpx.Response(201, json=[body])

        matched = [r for r in rows if self._matches(r, filters)]
        if request.method == "GET":
            if order:
                for part in reversed(order.split(",")):
                    column, _, direction = part.partition(".")
                    matched.sort(key=lambda r: _sortable(r.get(column)), reverse=direction == "desc")
            end = None if limit is None else offset + limit
            return httpx.Response(200, json=matched[offset:end])
        if request.method == "PATCH":
            for row in matched:
                candidate = {**row, **body}
                error = self._check_constraints(resource, candidate, ignore_id=row["id"])
                if error is not None:
                    return error
                row.update(body)
            return httpx.Response(200, json=matched)
        if request.method == "DELETE":
            snapshot = [dict(r) for r in matched]
            self._delete_rows(resource, matched)
            return httpx.Response(200, json=snapshot)
        return httpx.Response(405)


def _postgres_store():
    from toolflow.storage.postgres import PostgresStore

    store = PostgresStore(os.environ["TEST_DATABASE_URL"], min_size=1, max_size=2)
    with store._connect() as conn:
        conn.execute(
            "TRUNCATE app_user, user_settings, auth_session, conversation, message, "
            "workflow, workflow_step, file CASCADE"
        )
        conn.commit()
    return store


@pytest.fixture(params=["memory", "rest", "postgres"])
def store(request):
    if request.param == "memory":
        instance = MemoryStore()
    elif request.param == "rest":
        instance = RestStore(
            "https://data.test", "service-key", transport=httpx.MockTransport(FakePostgrest())
        )
    else:
        if not os.environ.get("TEST_DATABASE_URL"):
            pytest.skip("TEST_DATABASE_URL not set")
        instance = _postgres_store()
    yield instance
    instance.close()


def _user(store, email="owner@example.com"):
    return store.create_user(email=email, name="Owner", password_hash="hash")


def _workflow(store, conversation_id, **overrides):
    fields = {
        "conversation_id": conversation_id,
        "tool_type": "debug",
        "status": "running",
        "current_step": 1,
        "total_steps": 3,
    }
    fields.update(overrides)
    return store.create_workflow(**fields)


class TestUsers:
    def test_create_and_lookup(self, store):
        user = _user(store)
        assert store.get_user(user.id).email == "owner@example.com"
        assert store.get_user_by_email("owner@example.com").id == user.id
        assert store.get_user("missing") is None

    def test_duplicate_email_is_constraint_violation(self, store):
        _user(store)
        with pytest.raises(ConstraintViolation):
            _user(store)

    def test_update_and_unknown_field(self, store):
        user = _user(store)
        updated = store.update_user(user.id, role="ADMIN", name="Root")
        assert (updated.role, updated.name) == ("ADMIN", "Root")
        with pytest.raises(ValueError):
            store.update_user(user.id, id="other")

    def test_delete_cascades(self, store):
        user = _user(store)
        conv = store.create_conversation(user_id=user.id, tool_type="debug")
        store.create_session(
            session_token="tok", user_id=user.id, expires=datetime.utcnow() + timedelta(hours=1)
        )
        assert store.delete_user(user.id) is True
        assert store.get_conversation(conv.id) is None
        assert store.get_session("tok") is None
        assert store.delete_user(user.id) is False


class TestConversations:
    def test_list_scoped_filtered_and_ordered(self, store):
        owner = _user(store)
        other = _user(store, "other@example.com")
        first = store.create_conversation(user_id=owner.id, tool_type="debug", title="one")
        store.create_conversation(user_id=owner.id, tool_type="analyze", title="two")
        store.create_conversation(user_id=other.id, tool_type="debug")
        store.update_conversation(first.id, title="one again")

        listed = store.list_conversations(owner.id)
        assert [c.title for c in listed] == ["one again", "two"]
        assert [c.title for c in store.list_conversations(owner.id, tool_type="analyze")] == ["two"]
        assert len(store.list_conversations(owner.id, limit=1, offset=1)) == 1

    def test_missing_owner_is_constraint_violation(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_conversation(user_id="ghost", tool_type="debug")

    def test_touch_bumps_updated_at(self, store):
        owner = _user(store)
        conv = store.create_conversation(user_id=owner.id, tool_type="debug")
        touched = store.update_conversation(conv.id)
        assert touched.updated_at >= conv.updated_at

    def test_conversation_of_workflow_cannot_be_changed(self, store):
        owner = _user(store)
        conv = store.create_conversation(user_id=owner.id, tool_type="debug")
        wf = _workflow(store, conv.id)
        with pytest.raises(ValueError):
            store.update_workflow(wf.id, conversation_id="elsewhere")

    def test_delete_cascades_and_detaches_files(self, store):
        owner = _user(store)
        conv = store.create_conversation(user_id=owner.id, tool_type="debug")
        store.create_message(conversation_id=conv.id, role="user", content="hi")
        wf = _workflow(store, conv.id)
        step = store.create_workflow_step(
            workflow_id=wf.id, step_number=1, findings="f", status="running"
        )
        record = store.create_file(
            name="a.txt", size=1, type="text/plain", url="https://x/a.txt",
            user_id=owner.id, conversation_id=conv.id, workflow_step_id=step.id,
        )

        assert store.delete_conversation(conv.id) is True

        assert store.get_workflow(wf.id) is None
        assert store.get_workflow_step(step.id) is None
        assert store.list_messages(conv.id) == []
        kept = store.get_file(record.id)
        assert kept.conversation_id is None
        assert kept.workflow_step_id is None


class TestMessages:
    def test_messages_in_insertion_order_with_metadata(self, store):
        owner = _user(store)
        conv = store.create_conversation(user_id=owner.id, tool_type="chat")
        store.create_message(conversation_id=conv.id, role="user", content="q", metadata={"m": 1})
        store.create_message(conversation_id=conv.id, role="assistant", content="a")

        messages = store.list_messages(conv.id)
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[0].metadata == {"m": 1}

    def test_invalid_role_rejected(self, store):
        owner = _user(store)
        conv = store.create_conversation(user_id=owner.id, tool_type="chat")
        with pytest.raises(ValueError):
            store.create_message(conversation_id=conv.id, role="robot", content="x")


class TestWorkflows:
    def test_update_status_and_result(self, store):
        owner = _user(store)
        conv = store.create_conversation(user_id=owner.id, tool_type="debug")
        wf = _workflow(store, conv.id, continuation_id="c-1")

        updated = store.update_workflow(
            wf.id, status="completed", current_step=3, result={"content": "done"}
        )

        assert updated.status == "completed"
        assert updated.current_step == 3
        assert updated.result == {"content": "done"}
        assert updated.continuation_id == "c-1"
        assert store.get_workflow(wf.id) == updated

    def test_invalid_values_rejected(self, store):
        owner = _user(store)
        conv = store.create_conversation(user_id=owner.id, tool_type="debug")
        with pytest.raises(ValueError):
            _workflow(store, conv.id, status="exploded")
        wf = _workflow(store, conv.id)
        with pytest.raises(ValueError):
            store.update_workflow(wf.id, current_step=0)

    def test_missing_conversation_is_constraint_violation(self, store):
        with pytest.raises(ConstraintViolation):
            _workflow(store, "ghost")

    def test_update_unknown_returns_none(self, store):
        assert store.update_workflow("missing", status="failed") is None

    def test_steps_listed_in_order(self, store):
        owner = _user(store)
        conv = store.create_conversation(user_id=owner.id, tool_type="debug")
        wf = _workflow(store, conv.id)
        store.create_workflow_step(
            workflow_id=wf.id, step_number=1, findings="a", status="running",
            hypothesis="h", confidence="low", metadata={"step": "s"},
        )
        store.create_workflow_step(
            workflow_id=wf.id, step_number=1, findings="a", status="completed",
            metadata={"response": {"status": "success"}},
        )

        steps = store.list_workflow_steps(wf.id)
        assert [s.status for s in steps] == ["running", "completed"]
        assert steps[0].confidence == "low"
        assert steps[1].metadata["response"]["status"] == "success"

    def test_invalid_confidence_rejected(self, store):
        owner = _user(store)
        conv = store.create_conversation(user_id=owner.id, tool_type="debug")
        wf = _workflow(store, conv.id)
        with pytest.raises(ValueError):
            store.create_workflow_step(
                workflow_id=wf.id, step_number=1, findings="a", status="running",
                confidence="kinda",
            )


class TestSettingsAndSessions:
    def test_settings_lifecycle(self, store):
        owner = _user(store)
        store.create_user_settings(
            user_id=owner.id, default_model="m", default_thinking_mode="medium",
            web_search_enabled=True, theme="system", preferences={},
        )
        with pytest.raises(ConstraintViolation):
            store.create_user_settings(
                user_id=owner.id, default_model="m", default_thinking_mode="medium",
                web_search_enabled=True, theme="system",
            )
        updated = store.update_user_settings(owner.id, theme="dark", preferences={"k": "v"})
        assert updated.theme == "dark"
        assert store.get_user_settings(owner.id).preferences == {"k": "v"}

    def test_expired_sessions_are_swept(self, store):
        owner = _user(store)
        now = datetime.utcnow()
        store.create_session(session_token="old", user_id=owner.id, expires=now - timedelta(hours=1))
        store.create_session(session_token="new", user_id=owner.id, expires=now + timedelta(hours=1))

        assert store.delete_expired_sessions(now) == 1
        assert store.get_session("old") is None
        assert store.get_session("new").user_id == owner.id
        assert store.delete_session("new") is True
        assert store.delete_session("new") is False

    def test_health_check(self, store):
        assert store.health_check() is True


class TestRestSpecifics:
    def test_unreachable_backend_is_storage_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        store = RestStore("https://data.test", "k", transport=httpx.MockTransport(handler))
        with pytest.raises(StorageUnavailable):
            store.get_user("u")
        assert store.health_check() is False

    def test_server_error_is_storage_unavailable(self):
        store = RestStore(
            "https://data.test",
            "k",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
        )
        with pytest.raises(StorageUnavailable):
            store.get_conversation("c")

    def test_requests_use_remote_column_names_and_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        store = RestStore("https://data.test/", "k", transport=httpx.MockTransport(handler))
        store.list_conversations("u-1", tool_type="debug", limit=5)

        request = seen[0]
        assert request.url.path == "/rest/v1/conversations"
        params = dict(parse_qsl(request.url.query.decode()))
        assert params["userId"] == "eq.u-1"
        assert params["toolType"] == "eq.debug"
        assert params["order"] == "updatedAt.desc"
        assert request.headers["apikey"] == "k"
        assert request.headers["Authorization"] == "Bearer k"
