from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

import httpx

from toolflow.config import Settings, get_settings, reset_settings_cache
from toolflow.logging import get_logger
from toolflow.service.auth import AuthService
from toolflow.service.factory import AdapterFactory
from toolflow.service.gateway import WorkflowGateway
from toolflow.service.locks import WorkflowLocks
from toolflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the adapters and services shared by request handlers."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        tool_transport: Optional[httpx.AsyncBaseTransport] = None,
        store_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            adapter_mode=self.settings.adapter_mode.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.factory = AdapterFactory(
            self.settings,
            tool_transport=tool_transport,
            store_transport=store_transport,
        )
        try:
            self.store = self.factory.get_persistence_adapter()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                adapter_mode=self.settings.adapter_mode.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.tool_adapter = self.factory.get_tool_adapter()

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits, workflow locks and session caching; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and "
                    "workflow locks are process-local."
                ),
                mode=fallback_mode,
            )

        self.locks = WorkflowLocks(
            wait_seconds=self.settings.workflow_lock_wait_seconds,
            ttl_seconds=self.settings.workflow_lock_ttl_seconds,
            cache=self.cache,
        )
        self.gateway = WorkflowGateway(self.store, self.tool_adapter, locks=self.locks)
        self.auth = AuthService(self.store, self.cache, self.settings)
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            adapter_mode=self.settings.adapter_mode.value,
            store=type(self.store).__name__,
            tool_adapter=type(self.tool_adapter).__name__,
            redis_enabled=self.cache is not None,
        )

    async def aclose(self) -> None:
        await self.factory.reset()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, creating it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Runtime) -> Runtime:
    """Install a prebuilt runtime, e.g. one wired to mock transports."""
    global runtime
    with _runtime_lock:
        runtime = instance
        return runtime


def _close_runtime(instance: Runtime) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    try:
        if loop is not None:
            loop.create_task(instance.aclose())
        else:
            asyncio.run(instance.aclose())
    except Exception as exc:
        logger.warning("runtime_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            _close_runtime(runtime)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token bucket rate limit; Redis when configured, process-local otherwise."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.utcnow()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
