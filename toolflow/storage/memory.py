from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, TypeVar

from toolflow.logging import get_logger
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
)
from toolflow.storage.errors import ConstraintViolation
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

T = TypeVar("T")


class MemoryStore:
    """In-process store used by tests and single-node development runs.

    Records are copied on the way in and out so callers can never mutate
    stored state behind the store's back.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.user_settings: Dict[str, UserSettings] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, Message] = {}
        self.workflows: Dict[str, Workflow] = {}
        self.workflow_steps: Dict[str, WorkflowStep] = {}
        self.files: Dict[str, File] = {}
        # RLock so cascading deletes can call other locked helpers
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy(record: Optional[T]) -> Optional[T]:
        return copy.deepcopy(record) if record is not None else None

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
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = datetime.utcnow()
            user = User(
                id=generate_uuid(),
                email=email,
                name=name,
                password_hash=password_hash,
                role=role,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return self._copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(
                next((u for u in self.users.values() if u.email == email), None)
            )

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        check_update_fields("user", fields, USER_UPDATABLE)
        if "role" in fields:
            check_user_role(fields["role"])
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields and any(
                u.email == fields["email"] and u.id != user_id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = datetime.utcnow()
            return self._copy(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for conv_id in [c.id for c in self.conversations.values() if c.user_id == user_id]:
                self.delete_conversation(conv_id)
            for file_id in [f.id for f in self.files.values() if f.user_id == user_id]:
                self.files.pop(file_id, None)
            for token in [s.session_token for s in self.sessions.values() if s.user_id == user_id]:
                self.sessions.pop(token, None)
            self.user_settings.pop(user_id, None)
            return True

    # conversations
    def create_conversation(
        self, *, user_id: str, tool_type: str, title: Optional[str] = None
    ) -> Conversation:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("conversation owner missing", {"user_id": user_id})
            now = datetime.utcnow()
            conv = Conversation(
                id=generate_uuid(),
                user_id=user_id,
                tool_type=tool_type,
                created_at=now,
                updated_at=now,
                title=title,
            )
            self.conversations[conv.id] = conv
            return self._copy(conv)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._data_lock:
            return self._copy(self.conversations.get(conversation_id))

    def list_conversations(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        tool_type: Optional[str] = None,
    ) -> List[Conversation]:
        with self._data_lock:
            convs = [
                c
                for c in self.conversations.values()
                if c.user_id == user_id and (tool_type is None or c.tool_type == tool_type)
            ]
            convs.sort(key=lambda c: c.updated_at, reverse=True)
            return [self._copy(c) for c in convs[offset : offset + limit]]

    def update_conversation(self, conversation_id: str, **fields: Any) -> Optional[Conversation]:
        check_update_fields("conversation", fields, CONVERSATION_UPDATABLE)
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                return None
            for key, value in fields.items():
                setattr(conv, key, value)
            conv.updated_at = datetime.utcnow()
            return self._copy(conv)

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._data_lock:
            if self.conversations.pop(conversation_id, None) is None:
                return False
            for msg_id in [
                m.id for m in self.messages.values() if m.conversation_id == conversation_id
            ]:
                self.messages.pop(msg_id, None)
            for wf_id in [
                w.id for w in self.workflows.values() if w.conversation_id == conversation_id
            ]:
                self.delete_workflow(wf_id)
            for f in self.files.values():
                if f.conversation_id == conversation_id:
                    f.conversation_id = None
            return True

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
        with self._data_lock:
            if conversation_id not in self.conversations:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            msg = Message(
                id=generate_uuid(),
                conversation_id=conversation_id,
                role=role,
                content=content,
                created_at=datetime.utcnow(),
                metadata=copy.deepcopy(metadata),
            )
            self.messages[msg.id] = msg
            return self._copy(msg)

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._data_lock:
            return self._copy(self.messages.get(message_id))

    def list_messages(
        self, conversation_id: str, *, limit: int = 100, offset: int = 0
    ) -> List[Message]:
        with self._data_lock:
            # dict preserves insertion order, so the stable sort keeps ties in order
            msgs = [m for m in self.messages.values() if m.conversation_id == conversation_id]
            msgs.sort(key=lambda m: m.created_at)
            return [self._copy(m) for m in msgs[offset : offset + limit]]

    def delete_message(self, message_id: str) -> bool:
        with self._data_lock:
            return self.messages.pop(message_id, None) is not None

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
        with self._data_lock:
            if conversation_id not in self.conversations:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            now = datetime.utcnow()
            wf = Workflow(
                id=generate_uuid(),
                conversation_id=conversation_id,
                tool_type=tool_type,
                status=status,
                current_step=current_step,
                total_steps=total_steps,
                created_at=now,
                updated_at=now,
                continuation_id=continuation_id,
                result=copy.deepcopy(result),
            )
            self.workflows[wf.id] = wf
            return self._copy(wf)

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        with self._data_lock:
            return self._copy(self.workflows.get(workflow_id))

    def list_workflows(self, conversation_id: str) -> List[Workflow]:
        with self._data_lock:
            wfs = [w for w in self.workflows.values() if w.conversation_id == conversation_id]
            wfs.sort(key=lambda w: w.created_at)
            return [self._copy(w) for w in wfs]

    def update_workflow(self, workflow_id: str, **fields: Any) -> Optional[Workflow]:
        check_update_fields("workflow", fields, WORKFLOW_UPDATABLE)
        check_workflow_fields(
            fields.get("status"), fields.get("current_step"), fields.get("total_steps")
        )
        with self._data_lock:
            wf = self.workflows.get(workflow_id)
            if not wf:
                return None
            for key, value in fields.items():
                setattr(wf, key, copy.deepcopy(value))
            wf.updated_at = datetime.utcnow()
            return self._copy(wf)

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._data_lock:
            if self.workflows.pop(workflow_id, None) is None:
                return False
            for step_id in [
                s.id for s in self.workflow_steps.values() if s.workflow_id == workflow_id
            ]:
                self.delete_workflow_step(step_id)
            return True

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
        with self._data_lock:
            if workflow_id not in self.workflows:
                raise ConstraintViolation("workflow not found", {"workflow_id": workflow_id})
            step = WorkflowStep(
                id=generate_uuid(),
                workflow_id=workflow_id,
                step_number=step_number,
                findings=findings,
                status=status,
                created_at=datetime.utcnow(),
                hypothesis=hypothesis,
                confidence=confidence,
                metadata=copy.deepcopy(metadata),
            )
            self.workflow_steps[step.id] = step
            return self._copy(step)

    def get_workflow_step(self, step_id: str) -> Optional[WorkflowStep]:
        with self._data_lock:
            return self._copy(self.workflow_steps.get(step_id))

    def list_workflow_steps(self, workflow_id: str) -> List[WorkflowStep]:
        with self._data_lock:
            steps = [s for s in self.workflow_steps.values() if s.workflow_id == workflow_id]
            steps.sort(key=lambda s: (s.created_at, s.step_number))
            return [self._copy(s) for s in steps]

    def delete_workflow_step(self, step_id: str) -> bool:
        with self._data_lock:
            if self.workflow_steps.pop(step_id, None) is None:
                return False
            for f in self.files.values():
                if f.workflow_step_id == step_id:
                    f.workflow_step_id = None
            return True

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("file owner missing", {"user_id": user_id})
            if conversation_id and conversation_id not in self.conversations:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            if workflow_step_id and workflow_step_id not in self.workflow_steps:
                raise ConstraintViolation(
                    "workflow step not found", {"workflow_step_id": workflow_step_id}
                )
            record = File(
                id=generate_uuid(),
                name=name,
                size=size,
                type=type,
                url=url,
                user_id=user_id,
                created_at=datetime.utcnow(),
                conversation_id=conversation_id,
                workflow_step_id=workflow_step_id,
            )
            self.files[record.id] = record
            return self._copy(record)

    def get_file(self, file_id: str) -> Optional[File]:
        with self._data_lock:
            return self._copy(self.files.get(file_id))

    def list_files(
        self,
        user_id: str,
        *,
        conversation_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[File]:
        with self._data_lock:
            files = [
                f
                for f in self.files.values()
                if f.user_id == user_id
                and (conversation_id is None or f.conversation_id == conversation_id)
            ]
            files.sort(key=lambda f: f.created_at, reverse=True)
            return [self._copy(f) for f in files[offset : offset + limit]]

    def delete_file(self, file_id: str) -> bool:
        with self._data_lock:
            return self.files.pop(file_id, None) is not None

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("settings owner missing", {"user_id": user_id})
            if user_id in self.user_settings:
                raise ConstraintViolation("settings already exist", {"field": "user_id"})
            settings = UserSettings(
                id=generate_uuid(),
                user_id=user_id,
                default_model=default_model,
                default_thinking_mode=default_thinking_mode,
                web_search_enabled=web_search_enabled,
                theme=theme,
                preferences=copy.deepcopy(preferences),
            )
            self.user_settings[user_id] = settings
            return self._copy(settings)

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        with self._data_lock:
            return self._copy(self.user_settings.get(user_id))

    def update_user_settings(self, user_id: str, **fields: Any) -> Optional[UserSettings]:
        check_update_fields("user settings", fields, USER_SETTINGS_UPDATABLE)
        with self._data_lock:
            settings = self.user_settings.get(user_id)
            if not settings:
                return None
            for key, value in fields.items():
                setattr(settings, key, copy.deepcopy(value))
            return self._copy(settings)

    # sessions
    def create_session(
        self, *, session_token: str, user_id: str, expires: datetime
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": user_id})
            if session_token in self.sessions:
                raise ConstraintViolation(
                    "session token already exists", {"field": "session_token"}
                )
            sess = Session(
                id=generate_uuid(),
                session_token=session_token,
                user_id=user_id,
                expires=expires,
            )
            self.sessions[session_token] = sess
            return self._copy(sess)

    def get_session(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            return self._copy(self.sessions.get(session_token))

    def update_session(self, session_token: str, *, expires: datetime) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess:
                return None
            sess.expires = expires
            return self._copy(sess)

    def delete_session(self, session_token: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_token, None) is not None

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        cutoff = now or datetime.utcnow()
        with self._data_lock:
            stale = [t for t, s in self.sessions.items() if s.expires < cutoff]
            for token in stale:
                self.sessions.pop(token, None)
        if stale:
            self.logger.info("expired_sessions_deleted", count=len(stale))
        return len(stale)

    def health_check(self) -> bool:
        return True

    def close(self) -> None:
        return None
