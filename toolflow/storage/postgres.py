from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
    dump_json,
    generate_uuid,
    parse_json_meta,
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

_JSON_COLUMNS = frozenset({"result", "preferences", "metadata"})

_REQUIRED_TABLES = (
    "app_user",
    "user_settings",
    "auth_session",
    "conversation",
    "message",
    "workflow",
    "workflow_step",
    "file",
)


class PostgresStore:
    """Postgres-backed store for local deployments.

    Cascades (conversation -> messages/workflows -> steps) are enforced by the
    foreign keys in ``scripts/schema.sql``.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def _update_row(
        self, table: str, key_column: str, key: str, fields: Dict[str, Any], *, touch: bool
    ) -> Optional[dict]:
        """Run a partial UPDATE over whitelisted columns and return the new row."""
        values = {
            column: dump_json(value) if column in _JSON_COLUMNS else value
            for column, value in fields.items()
        }
        if touch:
            values["updated_at"] = datetime.utcnow()
        with self._connect() as conn:
            if not values:
                return conn.execute(
                    sql.SQL("SELECT * FROM {} WHERE {} = %s").format(
                        sql.Identifier(table), sql.Identifier(key_column)
                    ),
                    (key,),
                ).fetchone()
            assignments = sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(column)) for column in values
            )
            query = sql.SQL("UPDATE {} SET {} WHERE {} = %s RETURNING *").format(
                sql.Identifier(table), assignments, sql.Identifier(key_column)
            )
            return conn.execute(query, (*values.values(), key)).fetchone()

    def _delete_row(self, table: str, key_column: str, key: str) -> bool:
        query = sql.SQL("DELETE FROM {} WHERE {} = %s").format(
            sql.Identifier(table), sql.Identifier(key_column)
        )
        with self._connect() as conn:
            return conn.execute(query, (key,)).rowcount > 0

    # row mapping
    @staticmethod
    def _to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            password_hash=row.get("password_hash"),
            role=row.get("role", "USER"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_conversation(row: dict) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tool_type=row["tool_type"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            title=row.get("title"),
        )

    @staticmethod
    def _to_message(row: dict) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=row["role"],
            content=row["content"],
            created_at=row["created_at"],
            metadata=parse_json_meta(row.get("metadata")),
        )

    @staticmethod
    def _to_workflow(row: dict) -> Workflow:
        return Workflow(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            tool_type=row["tool_type"],
            status=row["status"],
            current_step=row["current_step"],
            total_steps=row["total_steps"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            continuation_id=row.get("continuation_id"),
            result=parse_json_meta(row.get("result")),
        )

    @staticmethod
    def _to_step(row: dict) -> WorkflowStep:
        return WorkflowStep(
            id=str(row["id"]),
            workflow_id=str(row["workflow_id"]),
            step_number=row["step_number"],
            findings=row["findings"],
            status=row["status"],
            created_at=row["created_at"],
            hypothesis=row.get("hypothesis"),
            confidence=row.get("confidence"),
            metadata=parse_json_meta(row.get("metadata")),
        )

    @staticmethod
    def _to_file(row: dict) -> File:
        return File(
            id=str(row["id"]),
            name=row["name"],
            size=row["size"],
            type=row["type"],
            url=row["url"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            conversation_id=row.get("conversation_id"),
            workflow_step_id=row.get("workflow_step_id"),
        )

    @staticmethod
    def _to_settings(row: dict) -> UserSettings:
        return UserSettings(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            default_model=row["default_model"],
            default_thinking_mode=row["default_thinking_mode"],
            web_search_enabled=row["web_search_enabled"],
            theme=row["theme"],
            preferences=parse_json_meta(row.get("preferences")),
        )

    @staticmethod
    def _to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            session_token=row["session_token"],
            user_id=str(row["user_id"]),
            expires=row["expires"],
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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, password_hash, role, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (generate_uuid(), email, name, password_hash, role, now, now),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._to_user(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        check_update_fields("user", fields, USER_UPDATABLE)
        if "role" in fields:
            check_user_role(fields["role"])
        try:
            row = self._update_row("app_user", "id", user_id, fields, touch=True)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        return self._delete_row("app_user", "id", user_id)

    # conversations
    def create_conversation(
        self, *, user_id: str, tool_type: str, title: Optional[str] = None
    ) -> Conversation:
        now = datetime.utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO conversation (id, user_id, tool_type, title, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (generate_uuid(), user_id, tool_type, title, now, now),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("conversation owner missing", {"user_id": user_id})
        return self._to_conversation(row)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversation WHERE id = %s", (conversation_id,)
            ).fetchone()
        return self._to_conversation(row) if row else None

    def list_conversations(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        tool_type: Optional[str] = None,
    ) -> List[Conversation]:
        with self._connect() as conn:
            if tool_type is None:
                rows = conn.execute(
                    """
                    SELECT * FROM conversation WHERE user_id = %s
                    ORDER BY updated_at DESC LIMIT %s OFFSET %s
                    """,
                    (user_id, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM conversation WHERE user_id = %s AND tool_type = %s
                    ORDER BY updated_at DESC LIMIT %s OFFSET %s
                    """,
                    (user_id, tool_type, limit, offset),
                ).fetchall()
        return [self._to_conversation(row) for row in rows]

    def update_conversation(self, conversation_id: str, **fields: Any) -> Optional[Conversation]:
        check_update_fields("conversation", fields, CONVERSATION_UPDATABLE)
        row = self._update_row("conversation", "id", conversation_id, fields, touch=True)
        return self._to_conversation(row) if row else None

    def delete_conversation(self, conversation_id: str) -> bool:
        return self._delete_row("conversation", "id", conversation_id)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO message (id, conversation_id, role, content, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        generate_uuid(),
                        conversation_id,
                        role,
                        content,
                        dump_json(metadata),
                        datetime.utcnow(),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation not found", {"conversation_id": conversation_id}
            )
        return self._to_message(row)

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM message WHERE id = %s", (message_id,)).fetchone()
        return self._to_message(row) if row else None

    def list_messages(
        self, conversation_id: str, *, limit: int = 100, offset: int = 0
    ) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM message WHERE conversation_id = %s
                ORDER BY created_at ASC, seq ASC LIMIT %s OFFSET %s
                """,
                (conversation_id, limit, offset),
            ).fetchall()
        return [self._to_message(row) for row in rows]

    def delete_message(self, message_id: str) -> bool:
        return self._delete_row("message", "id", message_id)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workflow (id, conversation_id, tool_type, status, current_step,
                                          total_steps, continuation_id, result, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        generate_uuid(),
                        conversation_id,
                        tool_type,
                        status,
                        current_step,
                        total_steps,
                        continuation_id,
                        dump_json(result),
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation not found", {"conversation_id": conversation_id}
            )
        return self._to_workflow(row)

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM workflow WHERE id = %s", (workflow_id,)).fetchone()
        return self._to_workflow(row) if row else None

    def list_workflows(self, conversation_id: str) -> List[Workflow]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workflow WHERE conversation_id = %s ORDER BY created_at ASC",
                (conversation_id,),
            ).fetchall()
        return [self._to_workflow(row) for row in rows]

    def update_workflow(self, workflow_id: str, **fields: Any) -> Optional[Workflow]:
        check_update_fields("workflow", fields, WORKFLOW_UPDATABLE)
        check_workflow_fields(
            fields.get("status"), fields.get("current_step"), fields.get("total_steps")
        )
        row = self._update_row("workflow", "id", workflow_id, fields, touch=True)
        return self._to_workflow(row) if row else None

    def delete_workflow(self, workflow_id: str) -> bool:
        return self._delete_row("workflow", "id", workflow_id)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workflow_step (id, workflow_id, step_number, findings, hypothesis,
                                               confidence, status, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        generate_uuid(),
                        workflow_id,
                        step_number,
                        findings,
                        hypothesis,
                        confidence,
                        status,
                        dump_json(metadata),
                        datetime.utcnow(),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("workflow not found", {"workflow_id": workflow_id})
        return self._to_step(row)

    def get_workflow_step(self, step_id: str) -> Optional[WorkflowStep]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_step WHERE id = %s", (step_id,)
            ).fetchone()
        return self._to_step(row) if row else None

    def list_workflow_steps(self, workflow_id: str) -> List[WorkflowStep]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM workflow_step WHERE workflow_id = %s
                ORDER BY created_at ASC, step_number ASC, seq ASC
                """,
                (workflow_id,),
            ).fetchall()
        return [self._to_step(row) for row in rows]

    def delete_workflow_step(self, step_id: str) -> bool:
        return self._delete_row("workflow_step", "id", step_id)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO file (id, name, size, type, url, user_id, conversation_id,
                                      workflow_step_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        generate_uuid(),
                        name,
                        size,
                        type,
                        url,
                        user_id,
                        conversation_id,
                        workflow_step_id,
                        datetime.utcnow(),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "file reference missing",
                {
                    "user_id": user_id,
                    "conversation_id": conversation_id,
                    "workflow_step_id": workflow_step_id,
                    "constraint": getattr(exc.diag, "constraint_name", None),
                },
            )
        return self._to_file(row)

    def get_file(self, file_id: str) -> Optional[File]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM file WHERE id = %s", (file_id,)).fetchone()
        return self._to_file(row) if row else None

    def list_files(
        self,
        user_id: str,
        *,
        conversation_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[File]:
        with self._connect() as conn:
            if conversation_id is None:
                rows = conn.execute(
                    """
                    SELECT * FROM file WHERE user_id = %s
                    ORDER BY created_at DESC LIMIT %s OFFSET %s
                    """,
                    (user_id, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM file WHERE user_id = %s AND conversation_id = %s
                    ORDER BY created_at DESC LIMIT %s OFFSET %s
                    """,
                    (user_id, conversation_id, limit, offset),
                ).fetchall()
        return [self._to_file(row) for row in rows]

    def delete_file(self, file_id: str) -> bool:
        return self._delete_row("file", "id", file_id)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_settings (id, user_id, default_model, default_thinking_mode,
                                               web_search_enabled, theme, preferences)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        generate_uuid(),
                        user_id,
                        default_model,
                        default_thinking_mode,
                        web_search_enabled,
                        theme,
                        dump_json(preferences),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("settings owner missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("settings already exist", {"field": "user_id"})
        return self._to_settings(row)

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_settings WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._to_settings(row) if row else None

    def update_user_settings(self, user_id: str, **fields: Any) -> Optional[UserSettings]:
        check_update_fields("user settings", fields, USER_SETTINGS_UPDATABLE)
        row = self._update_row("user_settings", "user_id", user_id, fields, touch=False)
        return self._to_settings(row) if row else None

    # sessions
    def create_session(
        self, *, session_token: str, user_id: str, expires: datetime
    ) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (id, session_token, user_id, expires)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (generate_uuid(), session_token, user_id, expires),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session token already exists", {"field": "session_token"}
            )
        return self._to_session(row)

    def get_session(self, session_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE session_token = %s", (session_token,)
            ).fetchone()
        return self._to_session(row) if row else None

    def update_session(self, session_token: str, *, expires: datetime) -> Optional[Session]:
        row = self._update_row(
            "auth_session", "session_token", session_token, {"expires": expires}, touch=False
        )
        return self._to_session(row) if row else None

    def delete_session(self, session_token: str) -> bool:
        return self._delete_row("auth_session", "session_token", session_token)

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        cutoff = now or datetime.utcnow()
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM auth_session WHERE expires < %s", (cutoff,)
            ).rowcount
        if deleted:
            self.logger.info("expired_sessions_deleted", count=deleted)
        return deleted

    def health_check(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except Exception as exc:
            self.logger.warning("postgres_health_check_failed", error=str(exc))
            return False

    def close(self) -> None:
        self.pool.close()
