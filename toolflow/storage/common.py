"""Storage utilities shared between the memory, postgres and REST backends.

The update whitelists below are the only fields any backend accepts in a
partial update.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, Iterable, Optional

from toolflow.storage.models import (
    CONFIDENCE_LEVELS,
    MESSAGE_ROLES,
    STEP_STATUSES,
    USER_ROLES,
    WORKFLOW_STATUSES,
)

USER_UPDATABLE = frozenset({"email", "name", "password_hash", "role"})
CONVERSATION_UPDATABLE = frozenset({"title", "tool_type"})
# conversation_id is immutable once a workflow exists
WORKFLOW_UPDATABLE = frozenset(
    {"status", "current_step", "total_steps", "continuation_id", "result"}
)
USER_SETTINGS_UPDATABLE = frozenset(
    {
        "default_model",
        "default_thinking_mode",
        "web_search_enabled",
        "theme",
        "preferences",
    }
)


def check_update_fields(entity: str, fields: Dict[str, Any], allowed: Iterable[str]) -> None:
    """Reject unknown or immutable fields in a partial update.

    Raises:
        ValueError: If any key is not in ``allowed``
    """
    unknown = sorted(set(fields) - set(allowed))
    if unknown:
        raise ValueError(f"cannot update {entity} fields: {', '.join(unknown)}")


def check_workflow_fields(
    status: Optional[str] = None,
    current_step: Optional[int] = None,
    total_steps: Optional[int] = None,
) -> None:
    if status is not None and status not in WORKFLOW_STATUSES:
        raise ValueError(f"invalid workflow status: {status}")
    if current_step is not None and current_step < 1:
        raise ValueError("current_step must be positive")
    if total_steps is not None and total_steps < 1:
        raise ValueError("total_steps must be positive")


def check_step_fields(status: str, confidence: Optional[str], step_number: int) -> None:
    if status not in STEP_STATUSES:
        raise ValueError(f"invalid step status: {status}")
    if confidence is not None and confidence not in CONFIDENCE_LEVELS:
        raise ValueError(f"invalid confidence: {confidence}")
    if step_number < 1:
        raise ValueError("step_number must be positive")


def check_message_role(role: str) -> None:
    if role not in MESSAGE_ROLES:
        raise ValueError(f"invalid message role: {role}")


def check_user_role(role: str) -> None:
    if role not in USER_ROLES:
        raise ValueError(f"invalid user role: {role}")


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a JSON column that may arrive as text or as a decoded dict.

    Args:
        raw_meta: Raw metadata value (string, dict, or None)

    Returns:
        Parsed dict or None
    """
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except json.JSONDecodeError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def dump_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def generate_uuid() -> str:
    return str(uuid.uuid4())
