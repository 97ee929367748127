"""Manual promotion of a staging-built image tag to production."""

from __future__ import annotations

from release_orchestrator.application.ports import (
    Clock,
    Logger,
    PipelineRunRepository,
    PromotionStore,
)
from release_orchestrator.artifacts import validate_tag
from release_orchestrator.environments import PROMOTION_RECORD_NAME
from release_orchestrator.errors import ConcurrencyConflictError, ConfigurationError
from release_orchestrator.models import PromotionRecord


class PromotionService:
    """Writes the promotion record; starting production stays a separate call."""

    def __init__(
        self,
        *,
        promotions: PromotionStore,
        run_repo: PipelineRunRepository,
        clock: Clock,
        logger: Logger,
        record_name: str = PROMOTION_RECORD_NAME,
    ):
        self._promotions = promotions
        self._runs = run_repo
        self._clock = clock
        self._logger = logger
        self._record_name = record_name

    def current(self) -> PromotionRecord:
        record = self._promotions.get(self._record_name)
        return record or PromotionRecord(name=self._record_name)

    def promote(self, tag: str, *, promoted_by: str = "manual") -> PromotionRecord:
        try:
            cleaned = validate_tag(tag)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        active = self._runs.active("production")
        if active is not None:
            raise ConcurrencyConflictError(
                f"Production run {active.id} is in progress; promote after it finishes"
            )
        record = self._promotions.put(
            self._record_name,
            value=cleaned,
            updated_by=promoted_by,
            updated_at=self._clock.now(),
        )
        self._logger.info(
            "Promoted %s by %s (version %s)", record.value, promoted_by, record.version
        )
        return record
