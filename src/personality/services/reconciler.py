from __future__ import annotations

"""Commits a run's result to the user record.

Storage is not transactional, so finalization is "commit, and on failure
compensate": the result and the tier's status flags go out in one write,
and if that write fails a second write resets the flags to
``started=False, completed=False`` so the user is not locked out. A crash
between the two writes leaves ``started=True, completed=False`` until the
admission cooldown expires.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from ..domain.models import AnalysisPatch, RunOutcome, Tier, UserRecord, merge_analysis
from ..infrastructure.user_store import PersistenceError, UserStore

LOG = logging.getLogger("personality.persistence")


class PersistenceReconciler:
    def __init__(self, store: UserStore, record: UserRecord, tier: Tier) -> None:
        self._store = store
        self._record = record
        self._tier = tier
        self.finalized = False
        self.outcome = RunOutcome(
            tier=tier,
            started=record.started(tier),
            completed=record.completed(tier),
        )

    @property
    def record(self) -> UserRecord:
        return self._record

    def _flags(self, started: bool, completed: bool) -> Dict[str, Any]:
        return {self._tier.started_field: started, self._tier.completed_field: completed}

    async def mark_started(self) -> None:
        """Optimistically flag the tier as started. Errors propagate to the caller."""

        patch = {
            self._tier.started_field: True,
            self._tier.started_at_field: datetime.now(timezone.utc),
        }
        LOG.info("run_mark_started", extra={"username": self._record.username, "tier": self._tier.value})
        self._record = await self._store.save(self._record.username, patch)
        self.outcome.started = True

    async def finalize_outputs(self, values: Mapping[str, Any]) -> bool:
        """Persist the structured result of the first ``outputs`` event."""

        if self._claim("outputs"):
            return False
        try:
            patch = AnalysisPatch.from_outputs(values)
        except ValueError as exc:
            LOG.error("run_outputs_invalid", extra={"username": self._record.username, "err": str(exc)})
            await self._compensate()
            self.outcome.error = f"invalid outputs: {exc}"
            return False
        return await self._commit(patch, started=True, completed=True)

    async def finalize_partial(self, text: str, reason: str) -> bool:
        """Fallback when the stream ended without a structured result.

        The relayed text is stored under ``partialOutput`` and the tier's
        flags are reset so the user can run again. The run still counts as
        failed.
        """

        if self._claim("partial"):
            return False
        self.outcome.error = reason
        if not text:
            LOG.info("run_partial_empty", extra={"username": self._record.username, "reason": reason})
            await self._compensate()
            return False
        await self._commit(AnalysisPatch.partial(text, reason), started=False, completed=False)
        self.outcome.partial = True
        return False

    def _claim(self, path: str) -> bool:
        """Set the finalized latch; True when an earlier finalization already ran."""

        if self.finalized:
            LOG.info("run_finalize_skipped", extra={"username": self._record.username, "path": path})
            return True
        self.finalized = True
        return False

    async def _commit(self, patch: AnalysisPatch, *, started: bool, completed: bool) -> bool:
        username = self._record.username
        update: Dict[str, Any] = self._flags(started, completed)
        update["analysis"] = merge_analysis(self._record.analysis, patch)
        LOG.info(
            "run_finalize_attempt",
            extra={"username": username, "tier": self._tier.value, "partial": patch.is_partial},
        )
        try:
            self._record = await self._store.save(username, update)
        except PersistenceError as exc:
            LOG.error("run_finalize_failed", extra={"username": username, "err": str(exc)})
            self.outcome.error = self.outcome.error or f"persistence failed: {exc}"
            await self._compensate()
            return False
        self.outcome.started = started
        self.outcome.completed = completed
        self.outcome.succeeded = completed
        return completed

    async def _compensate(self) -> None:
        username = self._record.username
        try:
            self._record = await self._store.save(username, self._flags(False, False))
        except PersistenceError as exc:
            LOG.error("run_compensation_failed", extra={"username": username, "err": str(exc)})
            return
        LOG.info("run_flags_reverted", extra={"username": username, "tier": self._tier.value})
        self.outcome.started = False
        self.outcome.completed = False
