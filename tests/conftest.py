import asyncio
import inspect
import json
import os
import sys
import uuid
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Redis-backed paths are covered separately; the default suite runs process-local
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from toolflow.config import get_settings  # noqa: E402
from toolflow.service.runtime import (  # noqa: E402
    Runtime,
    reset_runtime_for_tests,
    set_runtime,
)


class FakeToolBackend:
    """Scriptable stand-in for the tool daemon and the remote gateway.

    Unscripted tool calls succeed and echo the step fields back. Tests script
    a path with ``reply`` (fixed status/body), ``fail`` (raise a transport
    error) or ``stream`` (NDJSON lines).
    """

    def __init__(self) -> None:
        self.calls = []
        self._routes = {}

    def reply(self, path, status_code=200, body=None, *, text=None):
        self._routes[path] = ("reply", status_code, body, text)

    def fail(self, path, exc_type):
        self._routes[path] = ("raise", exc_type, None, None)

    def stream(self, path, lines, status_code=200):
        self._routes[path] = ("stream", status_code, lines, None)

    @staticmethod
    def default_body(params):
        return {
            "status": "success",
            "content": f"{params.get('tool', 'tool')} step {params.get('step_number')} done",
            "continuation_id": params.get("continuation_id") or "cont-1",
            "step_number": params.get("step_number"),
            "next_step_required": params.get("next_step_required"),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        payload = json.loads(request.content) if request.content else None
        self.calls.append({"method": request.method, "path": path, "json": payload})
        route = self._routes.get(path)
        if route is None:
            if path == "/health":
                return httpx.Response(200, json={"status": "ok"})
            params = payload.get("params", payload) if isinstance(payload, dict) else {}
            if path.endswith("/stream"):
                lines = [
                    {"content": "partial "},
                    {"content": "answer", "is_final": True, "metadata": {"continuation_id": "cont-s"}},
                ]
                return httpx.Response(
                    200, content="\n".join(json.dumps(line) for line in lines).encode()
                )
            return httpx.Response(200, json=self.default_body(params))
        kind, first, second, third = route
        if kind == "raise":
            raise first("backend failure", request=request)
        if kind == "stream":
            content = "\n".join(
                line if isinstance(line, str) else json.dumps(line) for line in second
            )
            return httpx.Response(first, content=content.encode())
        if third is not None:
            return httpx.Response(first, text=third)
        return httpx.Response(first, json=second)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def tool_backend():
    """Install a runtime whose tool adapter talks to a FakeToolBackend."""
    backend = FakeToolBackend()
    set_runtime(Runtime(get_settings(), tool_transport=httpx.MockTransport(backend)))
    return backend


@pytest.fixture
def client(tool_backend):
    from fastapi.testclient import TestClient

    from toolflow import app as app_module

    return TestClient(app_module.app)


def _register(client, email=None, password="TestPassword123!"):
    email = email or f"user_{uuid.uuid4().hex[:8]}@example.com"
    response = client.post("/v1/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, f"register failed: {response.text}"
    token = response.json()["data"]["session_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(client):
    return _register(client)


@pytest.fixture
def other_auth_headers(client):
    return _register(client)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
