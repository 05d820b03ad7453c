"""
Per-user deployment concurrency slots.

The counter lives in this process only. Running several instances of the
service multiplies the effective limit.
"""
from typing import Dict, Optional
from contextlib import asynccontextmanager
import asyncio
import logging

from iac_engine.core.config import config
from iac_engine.core.errors import RateLimitError


logger = logging.getLogger(__name__)


class DeploymentSlots:
    """Bounded count of in-flight provisioning operations per user. Exceeding it is refused, not queued."""

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit or config.MAX_CONCURRENT_DEPLOYMENTS
        self._active: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, user_id: str) -> None:
        """
        Raises:
            RateLimitError: If the user already has `limit` operations running
        """
        async with self._lock:
            count = self._active.get(user_id, 0)
            if count >= self.limit:
                raise RateLimitError(f"Maximum {self.limit} concurrent deployments reached")
            self._active[user_id] = count + 1

    async def release(self, user_id: str) -> None:
        async with self._lock:
            count = self._active.get(user_id, 0)
            if count <= 1:
                self._active.pop(user_id, None)
            else:
                self._active[user_id] = count - 1

    def active(self, user_id: str) -> int:
        return self._active.get(user_id, 0)

    @asynccontextmanager
    async def slot(self, user_id: str):
        await self.acquire(user_id)
        try:
            yield
        finally:
            await self.release(user_id)


# Global singleton instance
_slots: Optional[DeploymentSlots] = None


def get_deployment_slots() -> DeploymentSlots:
    global _slots
    if _slots is None:
        _slots = DeploymentSlots()
    return _slots


def reset_deployment_slots() -> DeploymentSlots:
    global _slots
    _slots = DeploymentSlots()
    return _slots
