"""Clock adapter for application services."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from release_orchestrator.application.ports import Clock


class SystemClock(Clock):
    """Wall clock backed by the running event loop for waits."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
