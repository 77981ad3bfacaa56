from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from toolflow.storage.models import CONFIDENCE_LEVELS

ALLOWED_TOOLS = (
    "debug",
    "analyze",
    "codereview",
    "secaudit",
    "docgen",
    "testgen",
    "planner",
    "consensus",
    "precommit",
    "refactor",
    "tracer",
    "thinkdeep",
)

ThinkingMode = Literal["minimal", "low", "medium", "high", "max"]

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "cancelled",
    "tool_timeout",
    "tool_unavailable",
    "tool_bad_response",
    "tool_failed",
})


class ErrorBody(BaseModel):
    """Error payload with a stable, client-branchable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_PATTERN = re.compile(
    r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)+$"
)


def _validate_email(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class _CamelInput(BaseModel):
    """Accepts snake_case and camelCase keys; dumps snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# auth
class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class AuthResponse(BaseModel):
    user_id: str
    session_token: str
    session_expires_at: datetime
    token_type: str = "bearer"
    role: str = "USER"


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: Optional[str] = None
    role: str
    created_at: datetime


# tools
class StepRequest(_CamelInput):
    """One step of a multi-step tool run; tool-specific extras pass through."""

    model_config = ConfigDict(extra="allow")

    tool: Optional[str] = None
    step: str = Field(..., min_length=1)
    step_number: int = Field(..., ge=1)
    total_steps: int = Field(..., ge=1)
    next_step_required: bool
    findings: str
    conversation_id: Optional[str] = Field(None, max_length=128)
    workflow_id: Optional[str] = Field(None, max_length=128)
    continuation_id: Optional[str] = None
    hypothesis: Optional[str] = None
    confidence: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=1)
    thinking_mode: Optional[ThinkingMode] = None
    use_websearch: Optional[bool] = Field(
        None,
        validation_alias=AliasChoices("use_websearch", "useWebSearch", "useWebsearch"),
    )
    files: Optional[List[Any]] = None
    images: Optional[List[Any]] = None
    relevant_files: Optional[List[Any]] = None
    files_checked: Optional[List[Any]] = None
    relevant_context: Optional[List[Any]] = None
    issues_found: Optional[List[Any]] = None
    backtrack_from_step: Optional[int] = Field(None, ge=1)

    @field_validator("confidence")
    @classmethod
    def _validate_confidence(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in CONFIDENCE_LEVELS:
            raise ValueError(f"confidence must be one of: {', '.join(CONFIDENCE_LEVELS)}")
        return value


class ChatRequest(_CamelInput):
    model_config = ConfigDict(extra="allow")

    prompt: str = Field(..., min_length=1)
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=1)
    thinking_mode: Optional[ThinkingMode] = None
    use_websearch: Optional[bool] = Field(
        None,
        validation_alias=AliasChoices("use_websearch", "useWebSearch", "useWebsearch"),
    )
    files: Optional[List[Any]] = None
    images: Optional[List[Any]] = None
    continuation_id: Optional[str] = None
    conversation_id: Optional[str] = Field(None, max_length=128)


class CancelRequest(_CamelInput):
    request_id: str = Field(..., max_length=128)


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool
    message: str


class StepResponse(BaseModel):
    conversation_id: str
    workflow_id: str
    response: Dict[str, Any]


class ChatResponse(BaseModel):
    conversation_id: str
    response: Dict[str, Any]


# conversations and workflows
class ConversationCreateRequest(_CamelInput):
    title: Optional[str] = Field(None, max_length=256)
    tool_type: str = Field(..., min_length=1, max_length=64)


class ConversationUpdateRequest(_CamelInput):
    title: Optional[str] = Field(None, max_length=256)
    tool_type: Optional[str] = Field(None, min_length=1, max_length=64)


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    tool_type: str
    title: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ConversationListResponse(BaseModel):
    items: List[ConversationResponse]


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    role: str
    content: str
    metadata: Optional[dict] = None
    created_at: datetime


class MessageListResponse(BaseModel):
    items: List[MessageResponse]


class WorkflowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    tool_type: str
    status: str
    current_step: int
    total_steps: int
    continuation_id: Optional[str] = None
    result: Optional[dict] = None
    created_at: datetime
    updated_at: datetime


class WorkflowListResponse(BaseModel):
    items: List[WorkflowResponse]


class WorkflowStepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    step_number: int
    findings: str
    hypothesis: Optional[str] = None
    confidence: Optional[str] = None
    status: str
    metadata: Optional[dict] = None
    created_at: datetime


class WorkflowStepListResponse(BaseModel):
    items: List[WorkflowStepResponse]


# files
class FileCreateRequest(_CamelInput):
    name: str = Field(..., min_length=1, max_length=512)
    size: int = Field(..., ge=0)
    type: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=2048)
    conversation_id: Optional[str] = Field(None, max_length=128)
    workflow_step_id: Optional[str] = Field(None, max_length=128)


class FileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    size: int
    type: str
    url: str
    user_id: str
    conversation_id: Optional[str] = None
    workflow_step_id: Optional[str] = None
    created_at: datetime


class FileListResponse(BaseModel):
    items: List[FileResponse]


# settings
class UserSettingsRequest(_CamelInput):
    default_model: Optional[str] = Field(None, min_length=1, max_length=128)
    default_thinking_mode: Optional[ThinkingMode] = None
    web_search_enabled: Optional[bool] = None
    theme: Optional[Literal["light", "dark", "system"]] = None
    preferences: Optional[dict] = None


class UserSettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    default_model: str
    default_thinking_mode: str
    web_search_enabled: bool
    theme: str
    preferences: Optional[dict] = None
