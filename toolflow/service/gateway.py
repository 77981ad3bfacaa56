"""Workflow gateway: turns independent step requests into a durable workflow.

Write order for one step is fixed: workflow (on first step), running step,
backend call, completed step, workflow update. The per-workflow lock covers
the read-check-write sections only, never the backend call, so a slow tool
does not block readers or submissions to other workflows.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, TypeVar

from toolflow.api.schemas import ALLOWED_TOOLS, ChatRequest, StepRequest
from toolflow.logging import get_logger
from toolflow.service import state
from toolflow.service.errors import (
    AdapterError,
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    RequestCancelledError,
    ValidationError,
)
from toolflow.service.execution import StreamChunk, ToolExecutionAdapter, ToolResponse
from toolflow.service.locks import WorkflowLocks
from toolflow.storage.base import PersistenceAdapter
from toolflow.storage.models import (
    STEP_COMPLETED,
    STEP_RUNNING,
    WORKFLOW_COMPLETED,
    WORKFLOW_RUNNING,
    Conversation,
    Workflow,
    WorkflowStep,
)

logger = get_logger(__name__)

T = TypeVar("T")

_STEP_METADATA_FIELDS = (
    "step",
    "relevant_files",
    "files_checked",
    "relevant_context",
    "issues_found",
)


async def _next_chunk(chunks: AsyncIterator[StreamChunk]) -> Optional[StreamChunk]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


@dataclass
class _PreparedStep:
    tool: str
    conversation: Conversation
    workflow: Workflow
    running_step: WorkflowStep
    metadata: Dict[str, Any]
    params: Dict[str, Any] = field(default_factory=dict)


class WorkflowGateway:
    def __init__(
        self,
        store: PersistenceAdapter,
        tool_adapter: ToolExecutionAdapter,
        *,
        locks: Optional[WorkflowLocks] = None,
    ) -> None:
        self.store = store
        self.tool_adapter = tool_adapter
        self.locks = locks or WorkflowLocks()

    # ownership
    def get_owned_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(
                "conversation not found", detail={"conversation_id": conversation_id}
            )
        if conversation.user_id != user_id:
            raise ForbiddenError(
                "conversation belongs to another user",
                detail={"conversation_id": conversation_id},
            )
        return conversation

    def get_owned_workflow(self, workflow_id: str, user_id: str) -> Workflow:
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("workflow not found", detail={"workflow_id": workflow_id})
        self.get_owned_conversation(workflow.conversation_id, user_id)
        return workflow

    # step submission
    def _check_tool(self, tool: Optional[str]) -> str:
        normalized = (tool or "").strip().lower()
        if normalized not in ALLOWED_TOOLS:
            raise ValidationError(
                f"unknown tool: {tool}",
                detail={"field": "tool", "allowed": list(ALLOWED_TOOLS)},
            )
        return normalized

    @staticmethod
    def _step_metadata(request: StepRequest) -> Dict[str, Any]:
        metadata = {name: getattr(request, name) for name in _STEP_METADATA_FIELDS}
        if request.backtrack_from_step is not None:
            metadata["backtrack_from_step"] = request.backtrack_from_step
        return metadata

    @staticmethod
    def _tool_params(request: StepRequest, workflow: Workflow) -> Dict[str, Any]:
        params = request.model_dump(
            exclude={"conversation_id", "workflow_id"}, exclude_none=True
        )
        if not params.get("continuation_id") and workflow.continuation_id:
            params["continuation_id"] = workflow.continuation_id
        return params

    def _record_running_step(
        self, workflow: Workflow, request: StepRequest, metadata: Dict[str, Any]
    ) -> WorkflowStep:
        return self.store.create_workflow_step(
            workflow_id=workflow.id,
            step_number=request.step_number,
            findings=request.findings,
            status=STEP_RUNNING,
            hypothesis=request.hypothesis,
            confidence=request.confidence,
            metadata=metadata,
        )

    async def _prepare(self, request: StepRequest, user_id: Optional[str]) -> _PreparedStep:
        tool = self._check_tool(request.tool)
        if not user_id:
            raise AuthenticationError("authentication required")
        metadata = self._step_metadata(request)

        if request.workflow_id is None:
            if request.conversation_id:
                conversation = self.get_owned_conversation(request.conversation_id, user_id)
            else:
                conversation = self.store.create_conversation(
                    user_id=user_id,
                    tool_type=tool,
                    title=f"{tool} - {request.step[:50]}",
                )
                logger.info(
                    "conversation_created",
                    conversation_id=conversation.id,
                    user_id=user_id,
                    tool=tool,
                )
            workflow = self.store.create_workflow(
                conversation_id=conversation.id,
                tool_type=tool,
                status=WORKFLOW_RUNNING,
                current_step=request.step_number,
                total_steps=request.total_steps,
                continuation_id=request.continuation_id,
                result=None,
            )
            logger.info(
                "workflow_created",
                workflow_id=workflow.id,
                conversation_id=conversation.id,
                tool=tool,
            )
            running = self._record_running_step(workflow, request, metadata)
        else:
            async with self.locks.hold(request.workflow_id):
                workflow = self.store.get_workflow(request.workflow_id)
                if workflow is None:
                    raise NotFoundError(
                        "workflow not found", detail={"workflow_id": request.workflow_id}
                    )
                if request.conversation_id and request.conversation_id != workflow.conversation_id:
                    raise ForbiddenError(
                        "workflow does not belong to this conversation",
                        detail={
                            "workflow_id": workflow.id,
                            "conversation_id": request.conversation_id,
                        },
                    )
                conversation = self.get_owned_conversation(workflow.conversation_id, user_id)
                state.ensure_open(workflow)
                if (
                    request.step_number < workflow.current_step
                    and request.backtrack_from_step is None
                ):
                    raise ValidationError(
                        "step_number is behind the workflow",
                        detail={
                            "field": "step_number",
                            "current_step": workflow.current_step,
                        },
                    )
                running = self._record_running_step(workflow, request, metadata)

        logger.info(
            "workflow_step_started",
            workflow_id=workflow.id,
            step_number=request.step_number,
            tool=tool,
        )
        return _PreparedStep(
            tool=tool,
            conversation=conversation,
            workflow=workflow,
            running_step=running,
            metadata=metadata,
            params=self._tool_params(request, workflow),
        )

    async def _complete(
        self, prepared: _PreparedStep, request: StepRequest, response: ToolResponse
    ) -> Workflow:
        response_data = response.model_dump()
        workflow_id = prepared.workflow.id
        metadata = {**prepared.metadata, "response": response_data}
        async with self.locks.hold(workflow_id):
            current = self.store.get_workflow(workflow_id)
            if current is None:
                raise NotFoundError("workflow not found", detail={"workflow_id": workflow_id})
            if current.is_terminal:
                # closed by a concurrent submission while the backend was busy
                metadata["superseded_by_terminal"] = current.status
                logger.warning(
                    "workflow_step_superseded",
                    workflow_id=workflow_id,
                    step_number=request.step_number,
                    workflow_status=current.status,
                )
            self.store.create_workflow_step(
                workflow_id=workflow_id,
                step_number=request.step_number,
                findings=request.findings,
                status=STEP_COMPLETED,
                hypothesis=request.hypothesis,
                confidence=request.confidence,
                metadata=metadata,
            )
            status = state.advance(current, request.next_step_required)
            fields: Dict[str, Any] = {
                "status": status,
                "current_step": state.next_current_step(current, request.step_number),
                "total_steps": request.total_steps,
                "continuation_id": response.continuation_id or current.continuation_id,
            }
            if status == WORKFLOW_COMPLETED:
                fields["result"] = response_data
            updated = self.store.update_workflow(workflow_id, **fields)
        logger.info(
            "workflow_step_completed",
            workflow_id=workflow_id,
            step_number=request.step_number,
            status=status,
        )
        if status == WORKFLOW_COMPLETED:
            logger.info("workflow_completed", workflow_id=workflow_id)
        return updated

    async def _record_failure(self, workflow_id: str, exc: AdapterError) -> None:
        if exc.retryable:
            logger.warning(
                "workflow_step_retryable_failure",
                workflow_id=workflow_id,
                error_code=exc.error_code,
            )
            return
        async with self.locks.hold(workflow_id):
            current = self.store.get_workflow(workflow_id)
            if current is None or current.is_terminal:
                return
            self.store.update_workflow(workflow_id, status=state.fail(current))
        logger.error(
            "workflow_failed",
            workflow_id=workflow_id,
            error_code=exc.error_code,
            error=exc.message,
        )

    def _touch(self, conversation_id: str) -> None:
        self.store.update_conversation(conversation_id)

    async def _run_cancellable(
        self, work: Awaitable[T], cancel_event: Optional[asyncio.Event]
    ) -> T:
        if cancel_event is None:
            return await work
        task = asyncio.ensure_future(work)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RequestCancelledError("request cancelled")

    async def submit_step(
        self,
        request: StepRequest,
        user_id: Optional[str],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Run one workflow step and return ``{conversation_id, workflow_id, response}``."""
        prepared = await self._prepare(request, user_id)
        workflow_id = prepared.workflow.id
        try:
            response = await self._run_cancellable(
                self.tool_adapter.execute_tool(prepared.tool, prepared.params),
                cancel_event,
            )
        except RequestCancelledError:
            logger.info(
                "workflow_step_cancelled",
                workflow_id=workflow_id,
                step_number=request.step_number,
            )
            raise
        except AdapterError as exc:
            await self._record_failure(workflow_id, exc)
            raise
        await self._complete(prepared, request, response)
        self._touch(prepared.conversation.id)
        return {
            "conversation_id": prepared.conversation.id,
            "workflow_id": workflow_id,
            "response": response,
        }

    async def stream_step(
        self,
        request: StepRequest,
        user_id: Optional[str],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Streaming variant of ``submit_step``.

        Yields ``{"type": "chunk", ...}`` items as the backend produces them
        and a closing ``{"type": "done", ...}`` item carrying the ids.
        """
        prepared = await self._prepare(request, user_id)
        workflow_id = prepared.workflow.id
        parts = []
        final_metadata: Dict[str, Any] = {}
        chunks = self.tool_adapter.stream_response(prepared.tool, prepared.params)
        try:
            while True:
                try:
                    # a silent backend must not outlive a cancel or disconnect
                    chunk = await self._run_cancellable(_next_chunk(chunks), cancel_event)
                except RequestCancelledError:
                    logger.info(
                        "workflow_step_cancelled",
                        workflow_id=workflow_id,
                        step_number=request.step_number,
                    )
                    raise
                if chunk is None:
                    break
                parts.append(chunk.content)
                if chunk.is_final:
                    final_metadata = dict(chunk.metadata)
                yield {"type": "chunk", "content": chunk.content, "is_final": chunk.is_final}
        except AdapterError as exc:
            await self._record_failure(workflow_id, exc)
            raise
        finally:
            await chunks.aclose()
        response = ToolResponse(
            status="success",
            content="".join(parts),
            continuation_id=final_metadata.pop("continuation_id", None),
            metadata=final_metadata,
        )
        await self._complete(prepared, request, response)
        self._touch(prepared.conversation.id)
        yield {
            "type": "done",
            "conversation_id": prepared.conversation.id,
            "workflow_id": workflow_id,
            "response": response.model_dump(),
        }

    # chat
    async def chat(
        self,
        request: ChatRequest,
        user_id: Optional[str],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Single-shot chat with no workflow; both sides are stored as messages."""
        if not user_id:
            raise AuthenticationError("authentication required")
        if request.conversation_id:
            conversation = self.get_owned_conversation(request.conversation_id, user_id)
        else:
            conversation = self.store.create_conversation(
                user_id=user_id, tool_type="chat", title=request.prompt[:100]
            )
        self.store.create_message(
            conversation_id=conversation.id,
            role="user",
            content=request.prompt,
            metadata={
                "model": request.model,
                "temperature": request.temperature,
                "thinking_mode": request.thinking_mode,
                "use_websearch": request.use_websearch,
            },
        )
        params = request.model_dump(exclude={"conversation_id"}, exclude_none=True)
        response = await self._run_cancellable(
            self.tool_adapter.execute_chat(params), cancel_event
        )
        content = response.content
        if content is None:
            content = ""
        elif not isinstance(content, str):
            content = json.dumps(content, default=str)
        self.store.create_message(
            conversation_id=conversation.id,
            role="assistant",
            content=content,
            metadata={"continuation_id": response.continuation_id, **response.metadata},
        )
        self._touch(conversation.id)
        logger.info("chat_completed", conversation_id=conversation.id, user_id=user_id)
        return {"conversation_id": conversation.id, "response": response}
