"""Workflow gateway behaviour against the memory store and a fake tool daemon."""

import asyncio
import json

import httpx
import pytest

from conftest import FakeToolBackend
from toolflow.api.schemas import StepRequest
from toolflow.service.errors import (
    AdapterError,
    AdapterTimeoutError,
    AdapterUnavailableError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RequestCancelledError,
    ToolExecutionError,
    ValidationError,
)
from toolflow.service.execution import LocalToolAdapter, StreamChunk
from toolflow.service.gateway import WorkflowGateway
from toolflow.service.locks import WorkflowLocks
from toolflow.storage.memory import MemoryStore


def _make_gateway(handler=None):
    backend = handler or FakeToolBackend()
    store = MemoryStore()
    adapter = LocalToolAdapter(
        "http://daemon.test", transport=httpx.MockTransport(backend)
    )
    gateway = WorkflowGateway(store, adapter, locks=WorkflowLocks(wait_seconds=5))
    return gateway, store, backend


def _user(store, email="dev@example.com"):
    return store.create_user(email=email).id


def _step(**overrides):
    fields = {
        "tool": "debug",
        "step": "investigate crash",
        "step_number": 1,
        "total_steps": 3,
        "next_step_required": True,
        "findings": "null pointer suspected",
    }
    fields.update(overrides)
    return StepRequest(**fields)


class TestScenarios:
    async def test_first_step_creates_conversation_and_running_workflow(self):
        gateway, store, _ = _make_gateway()
        user_id = _user(store)

        result = await gateway.submit_step(_step(), user_id)

        conversation = store.get_conversation(result["conversation_id"])
        workflow = store.get_workflow(result["workflow_id"])
        assert conversation.user_id == user_id
        assert conversation.tool_type == "debug"
        assert conversation.title == "debug - investigate crash"
        assert workflow.conversation_id == conversation.id
        assert workflow.status == "running"
        assert workflow.current_step == 1
        assert workflow.total_steps == 3

    async def test_second_step_advances_current_step(self):
        gateway, store, _ = _make_gateway()
        user_id = _user(store)
        first = await gateway.submit_step(_step(), user_id)

        await gateway.submit_step(
            _step(workflow_id=first["workflow_id"], step_number=2), user_id
        )

        workflow = store.get_workflow(first["workflow_id"])
        assert workflow.status == "running"
        assert workflow.current_step == 2

    async def test_final_step_completes_workflow_with_result(self):
        backend = FakeToolBackend()
        gateway, store, _ = _make_gateway(backend)
        user_id = _user(store)
        first = await gateway.submit_step(_step(), user_id)
        await gateway.submit_step(
            _step(workflow_id=first["workflow_id"], step_number=2), user_id
        )
        backend.reply("/debug", body={"status": "success", "content": "root cause: X"})

        result = await gateway.submit_step(
            _step(workflow_id=first["workflow_id"], step_number=3, next_step_required=False),
            user_id,
        )

        workflow = store.get_workflow(first["workflow_id"])
        assert workflow.status == "completed"
        assert workflow.current_step == 3
        assert workflow.result["content"] == "root cause: X"
        assert result["response"].content == "root cause: X"

    async def test_step_after_completion_conflicts_and_leaves_workflow_unchanged(self):
        gateway, store, backend = _make_gateway()
        user_id = _user(store)
        first = await gateway.submit_step(_step(next_step_required=False, total_steps=1), user_id)
        before = store.get_workflow(first["workflow_id"])
        steps_before = store.list_workflow_steps(first["workflow_id"])
        calls_before = len(backend.calls)

        with pytest.raises(ConflictError):
            await gateway.submit_step(
                _step(workflow_id=first["workflow_id"], step_number=2), user_id
            )

        assert store.get_workflow(first["workflow_id"]) == before
        assert len(store.list_workflow_steps(first["workflow_id"])) == len(steps_before)
        assert len(backend.calls) == calls_before


class TestStepRecords:
    async def test_running_and_completed_records_are_both_kept(self):
        gateway, store, _ = _make_gateway()
        user_id = _user(store)

        result = await gateway.submit_step(
            _step(hypothesis="bad pointer", confidence="low"), user_id
        )

        steps = store.list_workflow_steps(result["workflow_id"])
        assert [s.status for s in steps] == ["running", "completed"]
        assert all(s.step_number == 1 for s in steps)
        assert steps[0].hypothesis == "bad pointer"
        assert steps[0].confidence == "low"
        assert steps[0].metadata["step"] == "investigate crash"
        assert "response" not in steps[0].metadata
        assert steps[1].metadata["response"]["status"] == "success"

    async def test_tool_specific_fields_pass_through_to_backend(self):
        gateway, store, backend = _make_gateway()
        user_id = _user(store)

        await gateway.submit_step(
            _step(tool="secaudit", audit_focus="owasp", relevant_files=["app.py"]), user_id
        )

        call = backend.calls[-1]
        assert call["path"] == "/secaudit"
        assert call["json"]["audit_focus"] == "owasp"
        assert call["json"]["relevant_files"] == ["app.py"]
        assert "workflow_id" not in call["json"]

    async def test_workflow_continuation_id_is_forwarded(self):
        backend = FakeToolBackend()
        gateway, store, _ = _make_gateway(backend)
        user_id = _user(store)
        backend.reply("/debug", body={"status": "success", "continuation_id": "thread-42"})
        first = await gateway.submit_step(_step(), user_id)

        await gateway.submit_step(
            _step(workflow_id=first["workflow_id"], step_number=2), user_id
        )

        assert backend.calls[-1]["json"]["continuation_id"] == "thread-42"
        assert store.get_workflow(first["workflow_id"]).continuation_id == "thread-42"

    async def test_unknown_tool_is_rejected_before_any_write(self):
        gateway, store, backend = _make_gateway()
        user_id = _user(store)

        with pytest.raises(ValidationError):
            await gateway.submit_step(_step(tool="rm-rf"), user_id)

        assert store.list_conversations(user_id) == []
        assert backend.calls == []


class TestBacktracking:
    async def test_lower_step_without_backtrack_is_rejected(self):
        gateway, store, _ = _make_gateway()
        user_id = _user(store)
        first = await gateway.submit_step(_step(), user_id)
        await gateway.submit_step(_step(workflow_id=first["workflow_id"], step_number=2), user_id)

        with pytest.raises(ValidationError):
            await gateway.submit_step(
                _step(workflow_id=first["workflow_id"], step_number=1), user_id
            )

    async def test_backtrack_is_recorded_and_cursor_never_moves_back(self):
        gateway, store, _ = _make_gateway()
        user_id = _user(store)
        first = await gateway.submit_step(_step(), user_id)
        await gateway.submit_step(_step(workflow_id=first["workflow_id"], step_number=2), user_id)

        await gateway.submit_step(
            _step(workflow_id=first["workflow_id"], step_number=1, backtrack_from_step=2),
            user_id,
        )

        workflow = store.get_workflow(first["workflow_id"])
        assert workflow.current_step == 2
        last = store.list_workflow_steps(first["workflow_id"])[-1]
        assert last.step_number == 1
        assert last.metadata["backtrack_from_step"] == 2


class TestOwnership:
    async def test_foreign_conversation_is_forbidden(self):
        gateway, store, _ = _make_gateway()
        owner = _user(store, "owner@example.com")
        intruder = _user(store, "intruder@example.com")
        first = await gateway.submit_step(_step(), owner)

        with pytest.raises(ForbiddenError):
            await gateway.submit_step(
                _step(conversation_id=first["conversation_id"]), intruder
            )

    async def test_foreign_workflow_is_forbidden_and_untouched(self):
        gateway, store, _ = _make_gateway()
        owner = _user(store, "owner@example.com")
        intruder = _user(store, "intruder@example.com")
        first = await gateway.submit_step(_step(), owner)
        before = store.list_workflow_steps(first["workflow_id"])

        with pytest.raises(ForbiddenError):
            await gateway.submit_step(
                _step(workflow_id=first["workflow_id"], step_number=2), intruder
            )

        assert store.list_workflow_steps(first["workflow_id"]) == before

    async def test_workflow_from_other_conversation_is_forbidden(self):
        gateway, store, _ = _make_gateway()
        user_id = _user(store)
        first = await gateway.submit_step(_step(), user_id)
        second = await gateway.submit_step(_step(), user_id)

        with pytest.raises(ForbiddenError):
            await gateway.submit_step(
                _step(
                    workflow_id=first["workflow_id"],
                    conversation_id=second["conversation_id"],
                    step_number=2,
                ),
                user_id,
            )

    async def test_unknown_ids_are_not_found(self):
        gateway, store, _ = _make_gateway()
        user_id = _user(store)

        with pytest.raises(NotFoundError):
            await gateway.submit_step(_step(workflow_id="missing"), user_id)
        with pytest.raises(NotFoundError):
            await gateway.submit_step(_step(conversation_id="missing"), user_id)
        assert store.list_conversations(user_id) == []


class TestAdapterFailures:
    async def test_permanent_failure_marks_workflow_failed(self):
        backend = FakeToolBackend()
        gateway, store, _ = _make_gateway(backend)
        user_id = _user(store)
        first = await gateway.submit_step(_step(), user_id)
        backend.reply("/debug", body={"status": "error", "error": "model refused"})

        with pytest.raises(ToolExecutionError):
            await gateway.submit_step(
                _step(workflow_id=first["workflow_id"], step_number=2), user_id
            )

        workflow = store.get_workflow(first["workflow_id"])
        assert workflow.status == "failed"
        assert workflow.current_step == 1
        steps = store.list_workflow_steps(first["workflow_id"])
        assert steps[-1].status == "running"
        assert steps[-1].step_number == 2

    async def test_timeout_is_retryable_and_keeps_workflow_running(self):
        backend = FakeToolBackend()
        gateway, store, _ = _make_gateway(backend)
        user_id = _user(store)
        first = await gateway.submit_step(_step(), user_id)
        backend.fail("/debug", httpx.ReadTimeout)

        with pytest.raises(AdapterTimeoutError) as exc_info:
            await gateway.submit_step(
                _step(workflow_id=first["workflow_id"], step_number=2), user_id
            )

        assert exc_info.value.retryable is True
        assert store.get_workflow(first["workflow_id"]).status == "running"

    async def test_backend_5xx_is_unavailable_and_retryable(self):
        backend = FakeToolBackend()
        gateway, store, _ = _make_gateway(backend)
        user_id = _user(store)
        backend.reply("/debug", status_code=503, body={"detail": "overloaded"})

        with pytest.raises(AdapterUnavailableError):
            await gateway.submit_step(_step(), user_id)

        workflow = store.list_workflows(store.list_conversations(user_id)[0].id)[0]
        assert workflow.status == "running"

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 413])
    async def test_http_rejection_keeps_workflow_running(self, status_code):
        backend = FakeToolBackend()
        gateway, store, _ = _make_gateway(backend)
        user_id = _user(store)
        first = await gateway.submit_step(_step(), user_id)
        backend.reply("/debug", status_code=status_code, body={"error": "bad api key"})

        with pytest.raises(AdapterError) as exc_info:
            await gateway.submit_step(
                _step(workflow_id=first["workflow_id"], step_number=2), user_id
            )

        assert exc_info.value.retryable is True
        workflow = store.get_workflow(first["workflow_id"])
        assert workflow.status == "running"
        assert workflow.current_step == 1

    async def test_failed_workflow_rejects_further_steps(self):
        backend = FakeToolBackend()
        gateway, store, _ = _make_gateway(backend)
        user_id = _user(store)
        backend.reply("/debug", body={"status": "failed", "error": "bad params"})
        with pytest.raises(ToolExecutionError):
            await gateway.submit_step(_step(), user_id)
        workflow = store.list_workflows(store.list_conversations(user_id)[0].id)[0]
        assert workflow.status == "failed"

        with pytest.raises(ConflictError):
            await gateway.submit_step(
                _step(workflow_id=workflow.id, step_number=2), user_id
            )


class TestConcurrency:
    async def test_concurrent_steps_keep_current_step_monotonic(self):
        async def slow_backend(request: httpx.Request) -> httpx.Response:
            params = FakeToolBackend.default_body(json.loads(request.content))
            # later steps answer first
            await asyncio.sleep(0.05 / max(params["step_number"] or 1, 1))
            return httpx.Response(200, json=params)

        gateway, store, _ = _make_gateway(slow_backend)
        user_id = _user(store)
        first = await gateway.submit_step(_step(total_steps=6), user_id)
        workflow_id = first["workflow_id"]

        await asyncio.gather(
            *[
                gateway.submit_step(
                    _step(workflow_id=workflow_id, step_number=n, total_steps=6), user_id
                )
                for n in range(2, 6)
            ]
        )

        workflow = store.get_workflow(workflow_id)
        assert workflow.current_step == 5
        assert workflow.status == "running"
        completed = [
            s for s in store.list_workflow_steps(workflow_id) if s.status == "completed"
        ]
        assert sorted(s.step_number for s in completed) == [1, 2, 3, 4, 5]
        assert gateway.locks.active_ids() == []

    async def test_completion_racing_a_final_step_conflicts(self):
        release = asyncio.Event()

        async def gated_backend(request: httpx.Request) -> httpx.Response:
            params = json.loads(request.content)
            if params["step_number"] == 2:
                await release.wait()
            return httpx.Response(200, json=FakeToolBackend.default_body(params))

        gateway, store, _ = _make_gateway(gated_backend)
        user_id = _user(store)
        first = await gateway.submit_step(_step(), user_id)
        workflow_id = first["workflow_id"]

        slow = asyncio.create_task(
            gateway.submit_step(_step(workflow_id=workflow_id, step_number=2), user_id)
        )
        await asyncio.sleep(0.01)
        await gateway.submit_step(
            _step(workflow_id=workflow_id, step_number=3, next_step_required=False), user_id
        )
        release.set()

        with pytest.raises(ConflictError):
            await slow
        workflow = store.get_workflow(workflow_id)
        assert workflow.status == "completed"
        assert workflow.current_step == 3
        completed = {
            s.step_number: s
            for s in store.list_workflow_steps(workflow_id)
            if s.status == "completed"
        }
        assert completed[2].metadata["superseded_by_terminal"] == "completed"
        assert "superseded_by_terminal" not in completed[1].metadata
        assert "superseded_by_terminal" not in completed[3].metadata


class TestCancellation:
    async def test_cancel_event_aborts_step_without_failing_workflow(self):
        async def hanging_backend(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200, json={"status": "success"})

        gateway, store, _ = _make_gateway(hanging_backend)
        user_id = _user(store)
        cancel_event = asyncio.Event()

        async def cancel_soon():
            await asyncio.sleep(0.02)
            cancel_event.set()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(RequestCancelledError):
            await gateway.submit_step(_step(), user_id, cancel_event=cancel_event)
        await canceller

        workflow = store.list_workflows(store.list_conversations(user_id)[0].id)[0]
        assert workflow.status == "running"
        steps = store.list_workflow_steps(workflow.id)
        assert [s.status for s in steps] == ["running"]

    async def test_cancel_reaches_a_silent_stream(self):
        closed = asyncio.Event()

        class SilentAdapter:
            async def stream_response(self, tool, params):
                try:
                    await asyncio.sleep(5)
                    yield StreamChunk(content="late", is_final=True)
                finally:
                    closed.set()

        store = MemoryStore()
        gateway = WorkflowGateway(store, SilentAdapter(), locks=WorkflowLocks(wait_seconds=5))
        user_id = _user(store)
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, cancel_event.set)
        started = loop.time()

        with pytest.raises(RequestCancelledError):
            async for _ in gateway.stream_step(_step(), user_id, cancel_event=cancel_event):
                pass

        assert loop.time() - started < 1
        assert closed.is_set()
        workflow = store.list_workflows(store.list_conversations(user_id)[0].id)[0]
        assert workflow.status == "running"
        assert [s.status for s in store.list_workflow_steps(workflow.id)] == ["running"]
