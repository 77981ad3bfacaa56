from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

USER_ROLES = ("USER", "ADMIN", "SUPER_ADMIN")
MESSAGE_ROLES = ("user", "assistant", "system")

WORKFLOW_PENDING = "pending"
WORKFLOW_RUNNING = "running"
WORKFLOW_COMPLETED = "completed"
WORKFLOW_FAILED = "failed"
WORKFLOW_STATUSES = (
    WORKFLOW_PENDING,
    WORKFLOW_RUNNING,
    WORKFLOW_COMPLETED,
    WORKFLOW_FAILED,
)
TERMINAL_WORKFLOW_STATUSES = frozenset({WORKFLOW_COMPLETED, WORKFLOW_FAILED})

STEP_PENDING = "pending"
STEP_RUNNING = "running"
STEP_COMPLETED = "completed"
STEP_STATUSES = (STEP_PENDING, STEP_RUNNING, STEP_COMPLETED)

CONFIDENCE_LEVELS = (
    "exploring",
    "low",
    "medium",
    "high",
    "very_high",
    "almost_certain",
    "certain",
)

DEFAULT_MODEL = "glm-4.5-flash"
DEFAULT_THINKING_MODE = "medium"
DEFAULT_THEME = "system"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    password_hash: Optional[str] = None
    role: str = "USER"
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Session:
    id: str
    session_token: str
    user_id: str
    expires: datetime


@dataclass
class UserSettings:
    id: str
    user_id: str
    default_model: str = DEFAULT_MODEL
    default_thinking_mode: str = DEFAULT_THINKING_MODE
    web_search_enabled: bool = True
    theme: str = DEFAULT_THEME
    preferences: Dict | None = None


@dataclass
class Conversation:
    id: str
    user_id: str
    tool_type: str
    created_at: datetime
    updated_at: datetime
    title: Optional[str] = None


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime
    metadata: Dict | None = None


@dataclass
class Workflow:
    id: str
    conversation_id: str
    tool_type: str
    status: str
    current_step: int
    total_steps: int
    created_at: datetime
    updated_at: datetime
    continuation_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES


@dataclass
class WorkflowStep:
    id: str
    workflow_id: str
    step_number: int
    findings: str
    status: str
    created_at: datetime
    hypothesis: Optional[str] = None
    confidence: Optional[str] = None
    metadata: Dict | None = None


@dataclass
class File:
    id: str
    name: str
    size: int
    type: str
    url: str
    user_id: str
    created_at: datetime
    conversation_id: Optional[str] = None
    workflow_step_id: Optional[str] = None
