"""Clients for the tool execution backend.

Two transports are supported: the local tool daemon, called directly, and the
remote gateway, which relays ``{tool, params}`` to the same tools. Both share
timeouts, error classification and response normalisation so the workflow
gateway cannot tell them apart.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from toolflow.logging import get_logger, sanitize_error_message
from toolflow.service.errors import (
    AdapterResponseError,
    AdapterTimeoutError,
    AdapterUnavailableError,
    ToolExecutionError,
)

logger = get_logger(__name__)

# statuses the backend uses to report a step it will not complete
FAILED_STATUSES = frozenset({"error", "failed"})
# the backend cannot serve the request as configured; retrying later may work
_UNAVAILABLE_HTTP_STATUSES = frozenset({401, 403, 404, 408, 413, 429})


class ToolResponse(BaseModel):
    """Normalised tool result; unknown fields from the backend are preserved."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    status: str = "success"
    content: Optional[Any] = None
    continuation_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("continuation_id", "continuationId")
    )
    step_number: Optional[int] = Field(
        None, validation_alias=AliasChoices("step_number", "stepNumber")
    )
    next_step_required: Optional[bool] = Field(
        None, validation_alias=AliasChoices("next_step_required", "nextStepRequired")
    )
    required_actions: Optional[List[Any]] = Field(
        None, validation_alias=AliasChoices("required_actions", "requiredActions")
    )
    expert_analysis: Optional[Any] = Field(
        None, validation_alias=AliasChoices("expert_analysis", "expertAnalysis")
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StreamChunk(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    content: str = ""
    is_final: bool = Field(
        False, validation_alias=AliasChoices("is_final", "isFinal", "done")
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ToolExecutionAdapter(Protocol):
    async def execute_chat(self, params: Dict[str, Any]) -> ToolResponse: ...

    async def execute_tool(self, tool: str, params: Dict[str, Any]) -> ToolResponse: ...

    def stream_response(
        self, tool: str, params: Dict[str, Any]
    ) -> AsyncIterator[StreamChunk]: ...

    async def health_check(self) -> bool: ...

    async def aclose(self) -> None: ...


class _HttpToolAdapter(ABC):
    """Shared HTTP plumbing; subclasses only decide paths and payload shape."""

    kind = "http"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 300.0,
        connect_timeout: float = 10.0,
        health_timeout: float = 5.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.health_timeout = health_timeout
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers=headers,
            transport=transport,
        )

    # subclass hooks
    @abstractmethod
    def _invoke_request(self, tool: str, params: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        """Path and body for a single tool call."""

    @abstractmethod
    def _stream_request(self, tool: str, params: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        """Path and body for a streaming tool call."""

    def _unwrap(self, body: Dict[str, Any]) -> Any:
        return body

    # error classification
    def _raise_for_status(self, tool: str, response: httpx.Response, body_text: str = "") -> None:
        """Classify an HTTP-level failure.

        HTTP errors are always retryable. Only a body that reports a failed
        status (see ``_normalise``) is a permanent ``ToolExecutionError``.
        """
        status = response.status_code
        if status < 400:
            return
        detail = {"http_status": status, "backend": self.kind}
        if status in _UNAVAILABLE_HTTP_STATUSES or status >= 500:
            raise AdapterUnavailableError(
                f"tool backend unavailable (HTTP {status})", tool=tool, detail=detail
            )
        message = sanitize_error_message(body_text) if body_text else ""
        raise AdapterResponseError(
            f"tool request rejected (HTTP {status})" + (f": {message}" if message else ""),
            tool=tool,
            detail=detail,
        )

    def _transport_error(self, tool: str, exc: httpx.HTTPError):
        logger.warning(
            "tool_backend_transport_error",
            tool=tool,
            backend=self.kind,
            error_type=type(exc).__name__,
            error=sanitize_error_message(exc),
        )
        if isinstance(exc, httpx.TimeoutException):
            return AdapterTimeoutError(
                "tool backend timed out", tool=tool, detail={"backend": self.kind}
            )
        return AdapterUnavailableError(
            "tool backend unreachable", tool=tool, detail={"backend": self.kind}
        )

    def _normalise(self, tool: str, response: httpx.Response) -> ToolResponse:
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise AdapterResponseError(
                "tool backend returned invalid JSON", tool=tool
            ) from exc
        if not isinstance(body, dict):
            raise AdapterResponseError("tool backend returned a non-object body", tool=tool)
        payload = self._unwrap(body)
        if not isinstance(payload, dict):
            raise AdapterResponseError("tool backend returned a non-object body", tool=tool)
        status = str(payload.get("status") or "success").lower()
        if status in FAILED_STATUSES:
            reason = payload.get("error") or payload.get("content") or "tool reported failure"
            raise ToolExecutionError(
                sanitize_error_message(str(reason)),
                tool=tool,
                detail={"backend": self.kind},
            )
        try:
            return ToolResponse.model_validate(payload)
        except PydanticValidationError as exc:
            raise AdapterResponseError(
                "tool backend response has an unexpected shape", tool=tool
            ) from exc

    async def _post(self, tool: str, path: str, payload: Dict[str, Any]) -> ToolResponse:
        try:
            response = await self.client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise self._transport_error(tool, exc) from exc
        self._raise_for_status(tool, response, response.text)
        return self._normalise(tool, response)

    # public contract
    async def execute_tool(self, tool: str, params: Dict[str, Any]) -> ToolResponse:
        path, payload = self._invoke_request(tool, params)
        logger.info("tool_invocation_started", tool=tool, backend=self.kind)
        result = await self._post(tool, path, payload)
        logger.info(
            "tool_invocation_completed",
            tool=tool,
            backend=self.kind,
            status=result.status,
        )
        return result

    async def execute_chat(self, params: Dict[str, Any]) -> ToolResponse:
        return await self.execute_tool("chat", params)

    async def stream_response(
        self, tool: str, params: Dict[str, Any]
    ) -> AsyncIterator[StreamChunk]:
        """Yield NDJSON chunks; always finishes with a chunk marked final."""
        path, payload = self._stream_request(tool, params)
        saw_final = False
        try:
            async with self.client.stream("POST", path, json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    self._raise_for_status(tool, response, body)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    chunk = self._parse_chunk(tool, line)
                    saw_final = saw_final or chunk.is_final
                    yield chunk
                    if chunk.is_final:
                        break
        except httpx.HTTPError as exc:
            raise self._transport_error(tool, exc) from exc
        if not saw_final:
            yield StreamChunk(content="", is_final=True)

    def _parse_chunk(self, tool: str, line: str) -> StreamChunk:
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as exc:
            raise AdapterResponseError("malformed stream chunk", tool=tool) from exc
        if not isinstance(raw, dict):
            raise AdapterResponseError("malformed stream chunk", tool=tool)
        raw = self._unwrap(raw)
        if isinstance(raw, dict) and str(raw.get("status") or "").lower() in FAILED_STATUSES:
            raise ToolExecutionError(
                sanitize_error_message(str(raw.get("error") or "tool reported failure")),
                tool=tool,
                detail={"backend": self.kind},
            )
        try:
            return StreamChunk.model_validate(raw)
        except PydanticValidationError as exc:
            raise AdapterResponseError("malformed stream chunk", tool=tool) from exc

    async def health_check(self) -> bool:
        try:
            response = await self.client.get("/health", timeout=self.health_timeout)
        except httpx.HTTPError as exc:
            logger.warning(
                "tool_backend_health_failed",
                backend=self.kind,
                error=sanitize_error_message(exc),
            )
            return False
        return response.status_code == 200

    async def aclose(self) -> None:
        await self.client.aclose()


class LocalToolAdapter(_HttpToolAdapter):
    """Calls the tool daemon directly: ``POST {daemon}/{tool}``."""

    kind = "local"

    def _invoke_request(self, tool: str, params: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        return f"/{tool}", params

    def _stream_request(self, tool: str, params: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        return f"/{tool}/stream", params


class GatewayToolAdapter(_HttpToolAdapter):
    """Routes calls through the remote gateway, which relays them to the daemon."""

    kind = "gateway"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        super().__init__(base_url, headers=headers, **kwargs)

    def _invoke_request(self, tool: str, params: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        return "/invoke", {"tool": tool, "params": params}

    def _stream_request(self, tool: str, params: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        return "/stream", {"tool": tool, "params": params}

    def _unwrap(self, body: Dict[str, Any]) -> Any:
        # the gateway may wrap the tool payload as {"data": ...}
        if "data" in body and "status" not in body:
            return body["data"]
        return body


__all__ = [
    "GatewayToolAdapter",
    "LocalToolAdapter",
    "StreamChunk",
    "ToolExecutionAdapter",
    "ToolResponse",
]
