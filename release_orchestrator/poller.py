"""Asynchronous poller that starts staging runs for new commits on the tracked branch."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from release_orchestrator.application.ports import PipelineRunRepository, SourceRepository
from release_orchestrator.application.services.pipelines import StagingPipeline
from release_orchestrator.errors import ConcurrencyConflictError, SourceFetchError

logger = logging.getLogger(__name__)


class SourcePoller:
    """Background task that polls the tracked branch head for new revisions.

    Complements the push webhook for repositories that cannot deliver hooks to
    this service. A revision is only remembered once its staging run has been
    started, so a conflict with an in-flight run is retried on the next tick.
    """

    def __init__(
        self,
        *,
        source: SourceRepository,
        pipeline: StagingPipeline,
        run_repo: PipelineRunRepository,
        branch: str,
        interval_seconds: float,
    ):
        self._source = source
        self._pipeline = pipeline
        self._runs = run_repo
        self._branch = branch
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._latest_revision: Optional[str] = None

    @property
    def latest_revision(self) -> Optional[str]:
        return self._latest_revision

    async def start(self) -> None:
        if self._task:
            return
        self._stop_event.clear()
        self._latest_revision = self._runs.latest_revision("staging")
        self._task = asyncio.create_task(self._run(), name="source-poller")

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        logger.info(
            "Polling %s for new revisions every %s seconds", self._branch, self._interval
        )
        while not self._stop_event.is_set():
            try:
                await self.check_for_changes()
            except Exception:  # pragma: no cover
                logger.exception("Poller iteration failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Poller stopped")

    async def check_for_changes(self) -> bool:
        """Trigger staging when the branch head moved; returns whether a run started."""
        try:
            head = await self._source.resolve(branch=self._branch)
        except SourceFetchError as exc:
            logger.warning("Unable to resolve head of %s: %s", self._branch, exc)
            return False
        # Pushes delivered by webhook already have a run.
        if head.revision in (self._latest_revision, self._runs.latest_revision("staging")):
            logger.debug("No new revision on %s", self._branch)
            self._latest_revision = head.revision
            return False
        logger.info("Detected new revision %s on %s; starting staging", head.revision, self._branch)
        try:
            await self._pipeline.trigger(trigger="push", revision=head.revision)
        except ConcurrencyConflictError as exc:
            logger.info("Staging busy, will retry %s: %s", head.revision, exc)
            return False
        self._latest_revision = head.revision
        return True
