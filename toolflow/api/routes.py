from __future__ import annotations

import asyncio
import json
import threading
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request
from fastapi.responses import StreamingResponse

from toolflow.api.schemas import (
    ALLOWED_TOOLS,
    AuthResponse,
    CancelRequest,
    CancelResponse,
    ChatRequest,
    ChatResponse,
    ConversationCreateRequest,
    ConversationListResponse,
    ConversationResponse,
    ConversationUpdateRequest,
    Envelope,
    FileCreateRequest,
    FileListResponse,
    FileResponse,
    LoginRequest,
    MessageListResponse,
    MessageResponse,
    RegisterRequest,
    StepRequest,
    StepResponse,
    UserResponse,
    UserSettingsRequest,
    UserSettingsResponse,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowStepListResponse,
    WorkflowStepResponse,
)
from toolflow.logging import get_correlation_id, get_logger
from toolflow.service.auth import AuthContext
from toolflow.service.errors import ServiceError
from toolflow.service.runtime import check_rate_limit, get_runtime
from toolflow.storage.models import (
    DEFAULT_MODEL,
    DEFAULT_THEME,
    DEFAULT_THINKING_MODE,
    UserSettings,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

T = TypeVar("T")

_DISCONNECT_POLL_SECONDS = 0.5

# request id -> (owner user id, cancel event) for in-flight tool and chat calls
_active_requests: Dict[str, Tuple[str, asyncio.Event]] = {}
_active_requests_lock = threading.Lock()


def _register_cancel_event(request_id: str, user_id: str, cancel_event: asyncio.Event) -> None:
    with _active_requests_lock:
        _active_requests[request_id] = (user_id, cancel_event)


def _unregister_cancel_event(request_id: str) -> None:
    with _active_requests_lock:
        _active_requests.pop(request_id, None)


def _cancel_request(request_id: str, user_id: str) -> bool:
    """Signal cancellation for a caller's own in-flight request."""
    with _active_requests_lock:
        entry = _active_requests.get(request_id)
        if not entry:
            return False
        owner, cancel_event = entry
        if owner != user_id or cancel_event.is_set():
            return False
        cancel_event.set()
        return True


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data: Any) -> Envelope:
    return Envelope(status="ok", data=data, request_id=get_correlation_id() or None)


async def known_tool(tool: str = Path(...)) -> str:
    """Path parameter check that runs before authentication."""
    if tool.strip().lower() not in ALLOWED_TOOLS:
        raise _http_error(
            "validation_error",
            f"unknown tool: {tool}",
            status_code=400,
            details={"field": "tool", "allowed": list(ALLOWED_TOOLS)},
        )
    return tool


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


async def _enforce_rate_limit(runtime, key: str, *, limit: int, window_seconds: int) -> None:
    allowed, remaining, reset_after = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, reset_after=reset_after)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": reset_after, "remaining": remaining},
        )


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    try:
        while not cancel_event.is_set():
            if await request.is_disconnected():
                logger.info("client_disconnected", path=request.url.path)
                cancel_event.set()
                return
            await asyncio.sleep(_DISCONNECT_POLL_SECONDS)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning("disconnect_watch_failed", error=str(exc))


async def _run_cancellable(
    request: Request,
    principal: AuthContext,
    work: Callable[[asyncio.Event], Awaitable[T]],
) -> T:
    """Run ``work`` with a cancel event wired to disconnects and /tools/cancel."""
    request_id = get_correlation_id() or ""
    cancel_event = asyncio.Event()
    _register_cancel_event(request_id, principal.user_id, cancel_event)
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        return await work(cancel_event)
    finally:
        watcher.cancel()
        _unregister_cancel_event(request_id)


# tools
@router.post("/tools/cancel", response_model=Envelope, tags=["tools"])
async def cancel_tool_request(
    body: CancelRequest, principal: AuthContext = Depends(get_user)
):
    cancelled = _cancel_request(body.request_id, principal.user_id)
    logger.info(
        "tool_cancel_requested",
        request_id=body.request_id,
        user_id=principal.user_id,
        cancelled=cancelled,
    )
    return _ok(
        CancelResponse(
            request_id=body.request_id,
            cancelled=cancelled,
            message="request cancelled" if cancelled else "request not found or already completed",
        ).model_dump()
    )


@router.post("/tools/{tool}", response_model=Envelope, tags=["tools"])
async def submit_tool_step(
    body: StepRequest,
    request: Request,
    tool: str = Depends(known_tool),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"tools:{principal.user_id}",
        limit=runtime.settings.step_rate_limit_per_minute,
        window_seconds=60,
    )
    step = body.model_copy(update={"tool": tool})
    result = await _run_cancellable(
        request,
        principal,
        lambda cancel_event: runtime.gateway.submit_step(
            step, principal.user_id, cancel_event=cancel_event
        ),
    )
    return _ok(
        StepResponse(
            conversation_id=result["conversation_id"],
            workflow_id=result["workflow_id"],
            response=result["response"].model_dump(),
        ).model_dump()
    )


@router.post("/tools/{tool}/stream", tags=["tools"])
async def stream_tool_step(
    body: StepRequest,
    request: Request,
    tool: str = Depends(known_tool),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"tools:{principal.user_id}",
        limit=runtime.settings.step_rate_limit_per_minute,
        window_seconds=60,
    )
    step = body.model_copy(update={"tool": tool})
    request_id = get_correlation_id() or ""
    cancel_event = asyncio.Event()
    _register_cancel_event(request_id, principal.user_id, cancel_event)
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    stream = runtime.gateway.stream_step(step, principal.user_id, cancel_event=cancel_event)

    def _cleanup() -> None:
        watcher.cancel()
        _unregister_cancel_event(request_id)

    # pull the first item eagerly so setup errors keep their HTTP status
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = None
    except BaseException:
        _cleanup()
        raise

    async def _ndjson() -> AsyncIterator[str]:
        try:
            if first is not None:
                yield json.dumps(first, default=str) + "\n"
            async for item in stream:
                yield json.dumps(item, default=str) + "\n"
        except ServiceError as exc:
            logger.warning(
                "tool_stream_failed",
                error_code=exc.error_code,
                message=exc.message,
            )
            yield json.dumps(
                {
                    "type": "error",
                    "error": {
                        "code": exc.error_code,
                        "message": exc.message,
                        "details": exc.detail,
                    },
                },
                default=str,
            ) + "\n"
        finally:
            try:
                await stream.aclose()
            finally:
                _cleanup()

    return StreamingResponse(_ndjson(), media_type="application/x-ndjson")


@router.post("/chat", response_model=Envelope, tags=["chat"])
async def chat(
    body: ChatRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"chat:{principal.user_id}",
        limit=runtime.settings.step_rate_limit_per_minute,
        window_seconds=60,
    )
    result = await _run_cancellable(
        request,
        principal,
        lambda cancel_event: runtime.gateway.chat(
            body, principal.user_id, cancel_event=cancel_event
        ),
    )
    return _ok(
        ChatResponse(
            conversation_id=result["conversation_id"],
            response=result["response"].model_dump(),
        ).model_dump()
    )


# conversations
@router.get("/conversations", response_model=Envelope, tags=["conversations"])
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tool_type: Optional[str] = Query(None, max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    conversations = runtime.store.list_conversations(
        principal.user_id, limit=limit, offset=offset, tool_type=tool_type
    )
    items = [ConversationResponse.model_validate(c) for c in conversations]
    return _ok(ConversationListResponse(items=items).model_dump())


@router.post(
    "/conversations", response_model=Envelope, status_code=201, tags=["conversations"]
)
async def create_conversation(
    body: ConversationCreateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    conversation = runtime.store.create_conversation(
        user_id=principal.user_id, tool_type=body.tool_type, title=body.title
    )
    logger.info(
        "conversation_created",
        conversation_id=conversation.id,
        user_id=principal.user_id,
        tool=body.tool_type,
    )
    return _ok(ConversationResponse.model_validate(conversation).model_dump())


@router.get("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def get_conversation(
    conversation_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    conversation = runtime.gateway.get_owned_conversation(conversation_id, principal.user_id)
    return _ok(ConversationResponse.model_validate(conversation).model_dump())


@router.put("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def update_conversation(
    body: ConversationUpdateRequest,
    conversation_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.gateway.get_owned_conversation(conversation_id, principal.user_id)
    fields = body.model_dump(exclude_unset=True)
    if fields.get("tool_type") is None:
        fields.pop("tool_type", None)
    updated = runtime.store.update_conversation(conversation_id, **fields)
    if updated is None:
        raise _http_error("not_found", "conversation not found", status_code=404)
    return _ok(ConversationResponse.model_validate(updated).model_dump())


@router.delete("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def delete_conversation(
    conversation_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.gateway.get_owned_conversation(conversation_id, principal.user_id)
    deleted = runtime.store.delete_conversation(conversation_id)
    logger.info("conversation_deleted", conversation_id=conversation_id, deleted=deleted)
    return _ok({"id": conversation_id, "deleted": deleted})


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=Envelope,
    tags=["conversations"],
)
async def list_conversation_messages(
    conversation_id: str = Path(..., max_length=128),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.gateway.get_owned_conversation(conversation_id, principal.user_id)
    messages = runtime.store.list_messages(conversation_id, limit=limit, offset=offset)
    items = [MessageResponse.model_validate(m) for m in messages]
    return _ok(MessageListResponse(items=items).model_dump())


@router.get(
    "/conversations/{conversation_id}/workflows",
    response_model=Envelope,
    tags=["conversations"],
)
async def list_conversation_workflows(
    conversation_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.gateway.get_owned_conversation(conversation_id, principal.user_id)
    workflows = runtime.store.list_workflows(conversation_id)
    items = [WorkflowResponse.model_validate(w) for w in workflows]
    return _ok(WorkflowListResponse(items=items).model_dump())


# workflows
@router.get("/workflows/{workflow_id}", response_model=Envelope, tags=["workflows"])
async def get_workflow(
    workflow_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    workflow = runtime.gateway.get_owned_workflow(workflow_id, principal.user_id)
    return _ok(WorkflowResponse.model_validate(workflow).model_dump())


@router.get("/workflows/{workflow_id}/steps", response_model=Envelope, tags=["workflows"])
async def list_workflow_steps(
    workflow_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.gateway.get_owned_workflow(workflow_id, principal.user_id)
    steps = runtime.store.list_workflow_steps(workflow_id)
    items = [WorkflowStepResponse.model_validate(s) for s in steps]
    return _ok(WorkflowStepListResponse(items=items).model_dump())


# files
@router.post("/files", response_model=Envelope, status_code=201, tags=["files"])
async def create_file(body: FileCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if body.conversation_id:
        runtime.gateway.get_owned_conversation(body.conversation_id, principal.user_id)
    if body.workflow_step_id:
        step = runtime.store.get_workflow_step(body.workflow_step_id)
        if step is None:
            raise _http_error("not_found", "workflow step not found", status_code=404)
        runtime.gateway.get_owned_workflow(step.workflow_id, principal.user_id)
    record = runtime.store.create_file(
        name=body.name,
        size=body.size,
        type=body.type,
        url=body.url,
        user_id=principal.user_id,
        conversation_id=body.conversation_id,
        workflow_step_id=body.workflow_step_id,
    )
    logger.info("file_recorded", file_id=record.id, user_id=principal.user_id)
    return _ok(FileResponse.model_validate(record).model_dump())


@router.get("/files", response_model=Envelope, tags=["files"])
async def list_files(
    conversation_id: Optional[str] = Query(None, max_length=128),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    files = runtime.store.list_files(
        principal.user_id, conversation_id=conversation_id, limit=limit, offset=offset
    )
    items = [FileResponse.model_validate(f) for f in files]
    return _ok(FileListResponse(items=items).model_dump())


# settings
def _get_or_create_settings(runtime, user_id: str) -> UserSettings:
    settings = runtime.store.get_user_settings(user_id)
    if settings is None:
        settings = runtime.store.create_user_settings(
            user_id=user_id,
            default_model=DEFAULT_MODEL,
            default_thinking_mode=DEFAULT_THINKING_MODE,
            web_search_enabled=True,
            theme=DEFAULT_THEME,
            preferences={},
        )
    return settings


@router.get("/settings", response_model=Envelope, tags=["settings"])
async def get_user_settings(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    settings = _get_or_create_settings(runtime, principal.user_id)
    return _ok(UserSettingsResponse.model_validate(settings).model_dump())


@router.patch("/settings", response_model=Envelope, tags=["settings"])
async def update_user_settings(
    body: UserSettingsRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    _get_or_create_settings(runtime, principal.user_id)
    fields = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    updated = runtime.store.update_user_settings(principal.user_id, **fields)
    return _ok(UserSettingsResponse.model_validate(updated).model_dump())


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user = runtime.auth.register(body.email, body.password, body.name)
    session = await runtime.auth.start_session(user)
    return _ok(
        AuthResponse(
            user_id=user.id,
            session_token=session.session_token,
            session_expires_at=session.expires,
            role=user.role,
        ).model_dump()
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"login:{body.email}", limit=10, window_seconds=60
    )
    user, session = await runtime.auth.login(body.email, body.password)
    return _ok(
        AuthResponse(
            user_id=user.id,
            session_token=session.session_token,
            session_expires_at=session.expires,
            role=user.role,
        ).model_dump()
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.session_token)
    return _ok({"logged_out": True})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if user is None:
        raise _http_error("not_found", "user not found", status_code=404)
    return _ok(UserResponse.model_validate(user).model_dump())
