"""Workflow status transitions.

``pending -> running -> completed | failed``. Both end states are terminal:
any further step is a conflict and the stored record is left alone.
"""

from __future__ import annotations

from toolflow.service.errors import ConflictError
from toolflow.storage.models import (
    TERMINAL_WORKFLOW_STATUSES,
    WORKFLOW_COMPLETED,
    WORKFLOW_FAILED,
    WORKFLOW_RUNNING,
    Workflow,
)


def ensure_open(workflow: Workflow) -> None:
    if workflow.status in TERMINAL_WORKFLOW_STATUSES:
        raise ConflictError(
            f"workflow is {workflow.status}",
            detail={"workflow_id": workflow.id, "status": workflow.status},
        )


def advance(workflow: Workflow, next_step_required: bool) -> str:
    """Status after a successful step."""
    ensure_open(workflow)
    return WORKFLOW_RUNNING if next_step_required else WORKFLOW_COMPLETED


def fail(workflow: Workflow) -> str:
    """Status after a permanent backend failure."""
    ensure_open(workflow)
    return WORKFLOW_FAILED


def next_current_step(workflow: Workflow, step_number: int) -> int:
    # backtracked steps are recorded but never move the cursor backwards
    return max(workflow.current_step, step_number)
