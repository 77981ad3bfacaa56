from __future__ import annotations

import asyncio
import threading
from typing import Optional

import httpx

from toolflow.config import AdapterMode, Settings
from toolflow.logging import get_logger
from toolflow.service.execution import (
    GatewayToolAdapter,
    LocalToolAdapter,
    ToolExecutionAdapter,
)
from toolflow.storage.base import PersistenceAdapter
from toolflow.storage.memory import MemoryStore

logger = get_logger(__name__)


class AdapterFactory:
    """Builds and caches one tool adapter and one persistence adapter per mode.

    Instances are created lazily under a lock so concurrent first requests
    never observe a half-built adapter.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        tool_transport: Optional[httpx.AsyncBaseTransport] = None,
        store_transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._tool_transport = tool_transport
        self._store_transport = store_transport
        self._lock = threading.Lock()
        self._tool_adapter: Optional[ToolExecutionAdapter] = None
        self._persistence: Optional[PersistenceAdapter] = None

    @property
    def mode(self) -> AdapterMode:
        return self.settings.adapter_mode

    def _build_tool_adapter(self) -> ToolExecutionAdapter:
        timeouts = {
            "timeout": self.settings.tool_timeout_seconds,
            "connect_timeout": self.settings.tool_connect_timeout_seconds,
            "health_timeout": self.settings.tool_health_timeout_seconds,
            "transport": self._tool_transport,
        }
        if self.mode == AdapterMode.CLOUD:
            return GatewayToolAdapter(
                self.settings.exai_cloud_url,
                api_key=self.settings.exai_gateway_api_key,
                **timeouts,
            )
        return LocalToolAdapter(self.settings.exai_daemon_url, **timeouts)

    def _build_persistence(self) -> PersistenceAdapter:
        if self.settings.use_memory_store:
            return MemoryStore()
        if self.mode == AdapterMode.CLOUD:
            if not self.settings.remote_store_url or not self.settings.remote_store_key:
                raise RuntimeError(
                    "REMOTE_STORE_URL and REMOTE_STORE_KEY are required when ADAPTER_MODE=cloud"
                )
            from toolflow.storage.rest import RestStore

            return RestStore(
                self.settings.remote_store_url,
                self.settings.remote_store_key,
                timeout=self.settings.remote_store_timeout_seconds,
                transport=self._store_transport,
            )
        from toolflow.storage.postgres import PostgresStore

        return PostgresStore(self.settings.database_url)

    def get_tool_adapter(self) -> ToolExecutionAdapter:
        if self._tool_adapter is not None:
            return self._tool_adapter
        with self._lock:
            if self._tool_adapter is None:
                self._tool_adapter = self._build_tool_adapter()
                logger.info(
                    "tool_adapter_created",
                    mode=self.mode.value,
                    adapter=type(self._tool_adapter).__name__,
                )
            return self._tool_adapter

    def get_persistence_adapter(self) -> PersistenceAdapter:
        if self._persistence is not None:
            return self._persistence
        with self._lock:
            if self._persistence is None:
                self._persistence = self._build_persistence()
                logger.info(
                    "persistence_adapter_created",
                    mode=self.mode.value,
                    adapter=type(self._persistence).__name__,
                )
            return self._persistence

    async def health_check(self) -> dict:
        try:
            tool_ok = bool(await self.get_tool_adapter().health_check())
        except Exception as exc:
            logger.warning("tool_health_check_error", error=str(exc))
            tool_ok = False
        try:
            store = self.get_persistence_adapter()
            db_ok = bool(await asyncio.to_thread(store.health_check))
        except Exception as exc:
            logger.warning("database_health_check_error", error=str(exc))
            db_ok = False
        return {
            "tool": tool_ok,
            "database": db_ok,
            "mode": self.mode.value,
            "healthy": tool_ok and db_ok,
        }

    async def reset(self) -> None:
        """Close and drop cached adapters; the next access rebuilds them."""
        with self._lock:
            tool_adapter, self._tool_adapter = self._tool_adapter, None
            persistence, self._persistence = self._persistence, None
        if tool_adapter is not None:
            await tool_adapter.aclose()
        if persistence is not None:
            persistence.close()
