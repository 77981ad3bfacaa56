"""Hosted-database store speaking the PostgREST dialect.

Cloud deployments keep their rows in a managed Postgres exposed through a
REST gateway (``{url}/rest/v1/{resource}``). Column names on that side are
camelCase, so every resource carries an explicit field map; nothing is
derived by string munging.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from toolflow.logging import get_logger, sanitize_error_message
from toolflow.storage.common import (
    CONVERSATION_UPDATABLE,
    USER_SETTINGS_UPDATABLE,
    USER_UPDATABLE,
    WORKFLOW_UPDATABLE,
    check_message_role,
    check_step_fields,
    check_update_fields,
    check_user_role,
    check_workflow_fields,
    generate_uuid,
    parse_json_meta,
)
from toolflow.storage.errors import ConstraintViolation, StorageUnavailable
from toolflow.storage.models import (
    Conversation,
    File,
    Message,
    Session,
    User,
    UserSettings,
    Workflow,
    WorkflowStep,
)

# Postgres SQLSTATEs surfaced by PostgREST in the error body
_UNIQUE_VIOLATION = "23505"
_FOREIGN_KEY_VIOLATION = "23503"

FIELD_MAPS: Dict[str, Dict[str, str]] = {
    "users": {
        "id": "id",
        "email": "email",
        "name": "name",
        "password_hash": "passwordHash",
        "role": "role",
        "created_at": "createdAt",
        "updated_at": "updatedAt",
    },
    "sessions": {
        "id": "id",
        "session_token": "sessionToken",
        "user_id": "userId",
        "expires": "expires",
    },
    "user_settings": {
        "id": "id",
        "user_id": "userId",
        "default_model": "defaultModel",
        "default_thinking_mode": "defaultThinkingMode",
        "web_search_enabled": "webSearchEnabled",
        "theme": "theme",
        "preferences": "preferences",
    },
    "conversations": {
        "id": "id",
        "user_id": "userId",
        "tool_type": "toolType",
        "title": "title",
        "created_at": "createdAt",
        "updated_at": "updatedAt",
    },
    "messages": {
        "id": "id",
        "conversation_id": "conversationId",
        "role": "role",
        "content": "content",
        "metadata": "metadata",
        "created_at": "createdAt",
    },
    "workflows": {
        "id": "id",
        "conversation_id": "conversationId",
        "tool_type": "toolType",
        "status": "status",
        "current_step": "currentStep",
        "total_steps": "totalSteps",
        "continuation_id": "continuationId",
        "result": "result",
        "created_at": "createdAt",
        "updated_at": "updatedAt",
    },
    "workflow_steps": {
        "id": "id",
        "workflow_id": "workflowId",
        "step_number": "stepNumber",
        "findings": "findings",
        "hypothesis": "hypothesis",
        "confidence": "confidence",
        "status": "status",
        "metadata": "metadata",
        "created_at": "createdAt",
    },
    "files": {
        "id": "id",
        "name": "name",
        "size": "size",
        "type": "type",
        "url": "url",
        "user_id": "userId",
        "conversation_id": "conversationId",
        "workflow_step_id": "workflowStepId",
        "created_at": "createdAt",
    },
}

_DATETIME_FIELDS = frozenset({"created_at", "updated_at", "expires"})
_JSON_FIELDS = frozenset({"metadata", "result", "preferences"})

_MODELS = {
    "users": User,
    "sessions": Session,
    "user_settings": UserSettings,
    "conversations": Conversation,
    "messages": Message,
    "workflows": Workflow,
    "workflow_steps": WorkflowStep,
    "files": File,
}


def _format_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class RestStore:
    """Store backed by a hosted Postgres behind a PostgREST-compatible API.

    Cascading deletes and uniqueness are enforced server side; violations come
    back as HTTP 409 carrying the Postgres error code and are mapped to
    ``ConstraintViolation`` so callers see the same behaviour as the other
    stores.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.logger = get_logger(__name__)
        headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._owns_client = client is None
        self.client = client or httpx.Client(
            base_url=f"{self.base_url}/rest/v1",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    # transport helpers
    def _request(
        self,
        method: str,
        resource: str,
        *,
        params: Optional[List[Tuple[str, str]]] = None,
        payload: Optional[Dict[str, Any]] = None,
        returning: bool = False,
    ) -> List[dict]:
        headers = {"Prefer": "return=representation"} if returning else {}
        try:
            response = self.client.request(
                method,
                f"/{resource}",
                params=params,
                json=payload,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            self.logger.error(
                "remote_store_unreachable",
                resource=resource,
                method=method,
                error=sanitize_error_message(exc),
            )
            raise StorageUnavailable(
                "remote store unreachable", {"resource": resource}
            ) from exc
        if response.status_code == 409:
            body = self._error_body(response)
            code = body.get("code")
            if code in (_UNIQUE_VIOLATION, _FOREIGN_KEY_VIOLATION):
                raise ConstraintViolation(
                    body.get("message") or "constraint violated",
                    {"resource": resource, "code": code, "details": body.get("details")},
                )
        if response.status_code >= 400:
            self.logger.error(
                "remote_store_error",
                resource=resource,
                method=method,
                status_code=response.status_code,
            )
            raise StorageUnavailable(
                "remote store request failed",
                {"resource": resource, "status_code": response.status_code},
            )
        if not response.content:
            return []
        data = response.json()
        if isinstance(data, dict):
            return [data]
        return data

    @staticmethod
    def _error_body(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError):
            return {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _to_remote(resource: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        mapping = FIELD_MAPS[resource]
        remote: Dict[str, Any] = {}
        for key, value in fields.items():
            if isinstance(value, datetime):
                value = _format_datetime(value)
            remote[mapping[key]] = value
        return remote

    @staticmethod
    def _from_remote(resource: str, row: dict):
        mapping = FIELD_MAPS[resource]
        values: Dict[str, Any] = {}
        for local, remote in mapping.items():
            value = row.get(remote)
            if local in _DATETIME_FIELDS:
                value = _parse_datetime(value)
            elif local in _JSON_FIELDS:
                value = parse_json_meta(value)
            elif local in ("id", "user_id") and value is not None:
                value = str(value)
            values[local] = value
        return _MODELS[resource](**values)

    def _eq(self, resource: str, field: str, value: Any) -> Tuple[str, str]:
        return (FIELD_MAPS[resource][field], f"eq.{value}")

    def _order(self, resource: str, *fields: str) -> Tuple[str, str]:
        mapping = FIELD_MAPS[resource]
        parts = []
        for spec in fields:
            name, _, direction = spec.partition(" ")
            parts.append(f"{mapping[name]}.{direction or 'asc'}")
        return ("order", ",".join(parts))

    def _insert(self, resource: str, fields: Dict[str, Any]):
        rows = self._request(
            "POST", resource, payload=self._to_remote(resource, fields), returning=True
        )
        return self._from_remote(resource, rows[0])

    def _select_one(self, resource: str, field: str, value: Any):
        rows = self._request(
            "GET",
            resource,
            params=[self._eq(resource, field, value), ("limit", "1")],
        )
        return self._from_remote(resource, rows[0]) if rows else None

    def _patch(self, resource: str, field: str, value: Any, fields: Dict[str, Any]):
        if not fields:
            return self._select_one(resource, field, value)
        rows = self._request(
            "PATCH",
            resource,
            params=[self._eq(resource, field, value)],
            payload=self._to_remote(resource, fields),
            returning=True,
        )
        return self._from_remote(resource, rows[0]) if rows else None

    def _delete(self, resource: str, field: str, value: Any) -> List[dict]:
        return self._request(
            "DELETE",
            resource,
            params=[self._eq(resource, field, value)],
            returning=True,
        )

    # users
    def create_user(
        self,
        *,
        email: str,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: str = "USER",
    ) -> User:
        check_user_role(role)
        now = datetime.utcnow()
        return self._insert(
            "users",
            {
                "id": generate_uuid(),
                "email": email,
                "name": name,
                "password_hash": password_hash,
                "role": role,
                "created_at": now,
                "updated_at": now,
            },
        )

    def get_user(self, user_id: str) -> Optional[User]:
        return self._select_one("users", "id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._select_one("users", "email", email)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        check_update_fields("user", fields, USER_UPDATABLE)
        if "role" in fields:
            check_user_role(fields["role"])
        return self._patch(
            "users", "id", user_id, {**fields, "updated_at": datetime.utcnow()}
        )

    def delete_user(self, user_id: str) -> bool:
        return bool(self._delete("users", "id", user_id))

    # conversations
    def create_conversation(
        self, *, user_id: str, tool_type: str, title: Optional[str] = None
    ) -> Conversation:
        now = datetime.utcnow()
        return self._insert(
            "conversations",
            {
                "id": generate_uuid(),
                "user_id": user_id,
                "tool_type": tool_type,
                "title": title,
                "created_at": now,
                "updated_at": now,
            },
        )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._select_one("conversations", "id", conversation_id)

    def list_conversations(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        tool_type: Optional[str] = None,
    ) -> List[Conversation]:
        params = [self._eq("conversations", "user_id", user_id)]
        if tool_type is not None:
            params.append(self._eq("conversations", "tool_type", tool_type))
        params += [
            self._order("conversations", "updated_at desc"),
            ("limit", str(limit)),
            ("offset", str(offset)),
        ]
        rows = self._request("GET", "conversations", params=params)
        return [self._from_remote("conversations", row) for row in rows]

    def update_conversation(self, conversation_id: str, **fields: Any) -> Optional[Conversation]:
        check_update_fields("conversation", fields, CONVERSATION_UPDATABLE)
        return self._patch(
            "conversations",
            "id",
            conversation_id,
            {**fields, "updated_at": datetime.utcnow()},
        )

    def delete_conversation(self, conversation_id: str) -> bool:
        return bool(self._delete("conversations", "id", conversation_id))

    # messages
    def create_message(
        self,
        *,
        conversation_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        check_message_role(role)
        return self._insert(
            "messages",
            {
                "id": generate_uuid(),
                "conversation_id": conversation_id,
                "role": role,
                "content": content,
                "metadata": metadata,
                "created_at": datetime.utcnow(),
            },
        )

    def get_message(self, message_id: str) -> Optional[Message]:
        return self._select_one("messages", "id", message_id)

    def list_messages(
        self, conversation_id: str, *, limit: int = 100, offset: int = 0
    ) -> List[Message]:
        rows = self._request(
            "GET",
            "messages",
            params=[
                self._eq("messages", "conversation_id", conversation_id),
                self._order("messages", "created_at"),
                ("limit", str(limit)),
                ("offset", str(offset)),
            ],
        )
        return [self._from_remote("messages", row) for row in rows]

    def delete_message(self, message_id: str) -> bool:
        return bool(self._delete("messages", "id", message_id))

    # workflows
    def create_workflow(
        self,
        *,
        conversation_id: str,
        tool_type: str,
        status: str,
        current_step: int,
        total_steps: int,
        continuation_id: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> Workflow:
        check_workflow_fields(status, current_step, total_steps)
        now = datetime.utcnow()
        return self._insert(
            "workflows",
            {
                "id": generate_uuid(),
                "conversation_id": conversation_id,
                "tool_type": tool_type,
                "status": status,
                "current_step": current_step,
                "total_steps": total_steps,
                "continuation_id": continuation_id,
                "result": result,
                "created_at": now,
                "updated_at": now,
            },
        )

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return self._select_one("workflows", "id", workflow_id)

    def list_workflows(self, conversation_id: str) -> List[Workflow]:
        rows = self._request(
            "GET",
            "workflows",
            params=[
                self._eq("workflows", "conversation_id", conversation_id),
                self._order("workflows", "created_at"),
            ],
        )
        return [self._from_remote("workflows", row) for row in rows]

    def update_workflow(self, workflow_id: str, **fields: Any) -> Optional[Workflow]:
        check_update_fields("workflow", fields, WORKFLOW_UPDATABLE)
        check_workflow_fields(
            fields.get("status"), fields.get("current_step"), fields.get("total_steps")
        )
        return self._patch(
            "workflows", "id", workflow_id, {**fields, "updated_at": datetime.utcnow()}
        )

    def delete_workflow(self, workflow_id: str) -> bool:
        return bool(self._delete("workflows", "id", workflow_id))

    # workflow steps
    def create_workflow_step(
        self,
        *,
        workflow_id: str,
        step_number: int,
        findings: str,
        status: str,
        hypothesis: Optional[str] = None,
        confidence: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowStep:
        check_step_fields(status, confidence, step_number)
        return self._insert(
            "workflow_steps",
            {
                "id": generate_uuid(),
                "workflow_id": workflow_id,
                "step_number": step_number,
                "findings": findings,
                "hypothesis": hypothesis,
                "confidence": confidence,
                "status": status,
                "metadata": metadata,
                "created_at": datetime.utcnow(),
            },
        )

    def get_workflow_step(self, step_id: str) -> Optional[WorkflowStep]:
        return self._select_one("workflow_steps", "id", step_id)

    def list_workflow_steps(self, workflow_id: str) -> List[WorkflowStep]:
        rows = self._request(
            "GET",
            "workflow_steps",
            params=[
                self._eq("workflow_steps", "workflow_id", workflow_id),
                self._order("workflow_steps", "created_at", "step_number"),
            ],
        )
        return [self._from_remote("workflow_steps", row) for row in rows]

    def delete_workflow_step(self, step_id: str) -> bool:
        return bool(self._delete("workflow_steps", "id", step_id))

    # files
    def create_file(
        self,
        *,
        name: str,
        size: int,
        type: str,
        url: str,
        user_id: str,
        conversation_id: Optional[str] = None,
        workflow_step_id: Optional[str] = None,
    ) -> File:
        return self._insert(
            "files",
            {
                "id": generate_uuid(),
                "name": name,
                "size": size,
                "type": type,
                "url": url,
                "user_id": user_id,
                "conversation_id": conversation_id,
                "workflow_step_id": workflow_step_id,
                "created_at": datetime.utcnow(),
            },
        )

    def get_file(self, file_id: str) -> Optional[File]:
        return self._select_one("files", "id", file_id)

    def list_files(
        self,
        user_id: str,
        *,
        conversation_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[File]:
        params = [self._eq("files", "user_id", user_id)]
        if conversation_id is not None:
            params.append(self._eq("files", "conversation_id", conversation_id))
        params += [
            self._order("files", "created_at desc"),
            ("limit", str(limit)),
            ("offset", str(offset)),
        ]
        rows = self._request("GET", "files", params=params)
        return [self._from_remote("files", row) for row in rows]

    def delete_file(self, file_id: str) -> bool:
        return bool(self._delete("files", "id", file_id))

    # user settings
    def create_user_settings(
        self,
        *,
        user_id: str,
        default_model: str,
        default_thinking_mode: str,
        web_search_enabled: bool,
        theme: str,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> UserSettings:
        return self._insert(
            "user_settings",
            {
                "id": generate_uuid(),
                "user_id": user_id,
                "default_model": default_model,
                "default_thinking_mode": default_thinking_mode,
                "web_search_enabled": web_search_enabled,
                "theme": theme,
                "preferences": preferences,
            },
        )

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        return self._select_one("user_settings", "user_id", user_id)

    def update_user_settings(self, user_id: str, **fields: Any) -> Optional[UserSettings]:
        check_update_fields("user settings", fields, USER_SETTINGS_UPDATABLE)
        return self._patch("user_settings", "user_id", user_id, fields)

    # sessions
    def create_session(
        self, *, session_token: str, user_id: str, expires: datetime
    ) -> Session:
        return self._insert(
            "sessions",
            {
                "id": generate_uuid(),
                "session_token": session_token,
                "user_id": user_id,
                "expires": expires,
            },
        )

    def get_session(self, session_token: str) -> Optional[Session]:
        return self._select_one("sessions", "session_token", session_token)

    def update_session(self, session_token: str, *, expires: datetime) -> Optional[Session]:
        return self._patch("sessions", "session_token", session_token, {"expires": expires})

    def delete_session(self, session_token: str) -> bool:
        return bool(self._delete("sessions", "session_token", session_token))

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        cutoff = now or datetime.utcnow()
        rows = self._request(
            "DELETE",
            "sessions",
            params=[(FIELD_MAPS["sessions"]["expires"], f"lt.{_format_datetime(cutoff)}")],
            returning=True,
        )
        if rows:
            self.logger.info("expired_sessions_deleted", count=len(rows))
        return len(rows)

    def health_check(self) -> bool:
        try:
            self._request("GET", "users", params=[("select", "id"), ("limit", "1")])
            return True
        except StorageUnavailable:
            return False

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
