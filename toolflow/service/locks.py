from __future__ import annotations

import asyncio
import secrets
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from toolflow.logging import get_logger
from toolflow.service.errors import ConflictError
from toolflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_REDIS_POLL_SECONDS = 0.05


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.refs = 0


class WorkflowLocks:
    """Serialises read-check-write sections per workflow id.

    Each id gets an ``asyncio.Lock`` that lives only while someone holds or
    waits for it. With Redis configured, a ``SET NX PX`` token lock is taken
    as well so several API processes agree on the holder. Different workflow
    ids never contend.
    """

    def __init__(
        self,
        *,
        wait_seconds: float = 30.0,
        ttl_seconds: int = 60,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.wait_seconds = wait_seconds
        self.ttl_seconds = ttl_seconds
        self.cache = cache
        self._entries: Dict[str, _Entry] = {}
        self._registry_lock = threading.Lock()

    def active_ids(self) -> List[str]:
        with self._registry_lock:
            return list(self._entries)

    def _checkout(self, workflow_id: str) -> _Entry:
        with self._registry_lock:
            entry = self._entries.get(workflow_id)
            if entry is None:
                entry = self._entries[workflow_id] = _Entry()
            entry.refs += 1
            return entry

    def _checkin(self, workflow_id: str) -> None:
        with self._registry_lock:
            entry = self._entries.get(workflow_id)
            if entry is None:
                return
            entry.refs -= 1
            if entry.refs <= 0:
                del self._entries[workflow_id]

    def _busy(self, workflow_id: str) -> ConflictError:
        logger.warning("workflow_lock_timeout", workflow_id=workflow_id)
        return ConflictError("workflow busy", detail={"workflow_id": workflow_id})

    async def _acquire_shared(self, workflow_id: str, deadline: float) -> str:
        token = secrets.token_hex(16)
        loop = asyncio.get_running_loop()
        while True:
            if await self.cache.acquire_lock(
                f"workflow:{workflow_id}", token, self.ttl_seconds
            ):
                return token
            if loop.time() >= deadline:
                raise self._busy(workflow_id)
            await asyncio.sleep(_REDIS_POLL_SECONDS)

    @asynccontextmanager
    async def hold(self, workflow_id: str) -> AsyncIterator[None]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        entry = self._checkout(workflow_id)
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=self.wait_seconds)
            except asyncio.TimeoutError:
                raise self._busy(workflow_id)
            try:
                token = None
                if self.cache is not None:
                    token = await self._acquire_shared(workflow_id, deadline)
                try:
                    yield
                finally:
                    if token is not None:
                        await self.cache.release_lock(f"workflow:{workflow_id}", token)
            finally:
                entry.lock.release()
        finally:
            self._checkin(workflow_id)
