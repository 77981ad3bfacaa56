"""Persistence contract shared by the memory, Postgres and REST stores."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

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


class PersistenceAdapter(Protocol):
    # users
    def create_user(
        self,
        *,
        email: str,
        name: Optional[str],
        password_hash: Optional[str],
        role: str,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    # conversations
    def create_conversation(
        self, *, user_id: str, tool_type: str, title: Optional[str]
    ) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    def list_conversations(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        tool_type: Optional[str] = None,
    ) -> List[Conversation]: ...

    def update_conversation(
        self, conversation_id: str, **fields: Any
    ) -> Optional[Conversation]: ...

    def delete_conversation(self, conversation_id: str) -> bool: ...

    # messages
    def create_message(
        self,
        *,
        conversation_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]],
    ) -> Message: ...

    def get_message(self, message_id: str) -> Optional[Message]: ...

    def list_messages(
        self, conversation_id: str, *, limit: int = 100, offset: int = 0
    ) -> List[Message]: ...

    def delete_message(self, message_id: str) -> bool: ...

    # workflows
    def create_workflow(
        self,
        *,
        conversation_id: str,
        tool_type: str,
        status: str,
        current_step: int,
        total_steps: int,
        continuation_id: Optional[str],
        result: Optional[Dict[str, Any]],
    ) -> Workflow: ...

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]: ...

    def list_workflows(self, conversation_id: str) -> List[Workflow]: ...

    def update_workflow(self, workflow_id: str, **fields: Any) -> Optional[Workflow]: ...

    def delete_workflow(self, workflow_id: str) -> bool: ...

    # workflow steps
    def create_workflow_step(
        self,
        *,
        workflow_id: str,
        step_number: int,
        findings: str,
        status: str,
        hypothesis: Optional[str],
        confidence: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> WorkflowStep: ...

    def get_workflow_step(self, step_id: str) -> Optional[WorkflowStep]: ...

    def list_workflow_steps(self, workflow_id: str) -> List[WorkflowStep]: ...

    def delete_workflow_step(self, step_id: str) -> bool: ...

    # files
    def create_file(
        self,
        *,
        name: str,
        size: int,
        type: str,
        url: str,
        user_id: str,
        conversation_id: Optional[str],
        workflow_step_id: Optional[str],
    ) -> File: ...

    def get_file(self, file_id: str) -> Optional[File]: ...

    def list_files(
        self,
        user_id: str,
        *,
        conversation_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[File]: ...

    def delete_file(self, file_id: str) -> bool: ...

    # user settings
    def create_user_settings(
        self,
        *,
        user_id: str,
        default_model: str,
        default_thinking_mode: str,
        web_search_enabled: bool,
        theme: str,
        preferences: Optional[Dict[str, Any]],
    ) -> UserSettings: ...

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]: ...

    def update_user_settings(
        self, user_id: str, **fields: Any
    ) -> Optional[UserSettings]: ...

    # sessions
    def create_session(
        self, *, session_token: str, user_id: str, expires: datetime
    ) -> Session: ...

    def get_session(self, session_token: str) -> Optional[Session]: ...

    def update_session(
        self, session_token: str, *, expires: datetime
    ) -> Optional[Session]: ...

    def delete_session(self, session_token: str) -> bool: ...

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int: ...

    # lifecycle
    def health_check(self) -> bool: ...

    def close(self) -> None: ...
