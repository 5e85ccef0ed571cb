from __future__ import annotations

"""Drives one analysis run end to end.

``RunSupervisor.open_run`` does everything that must happen before the
client stream opens: fetch the record, check admission, format the
tweets, call the upstream and flag the tier as started. The returned
:class:`AnalysisRun` is then iterated as the response body: it reads the
upstream, decodes events, relays visible text and finalizes. One wall-clock
deadline covers both the wait for the upstream headers and the body
reads. The run ends on the first ``outputs`` event, on end of stream,
on the wall-clock timeout or when the client goes away; every path
releases the upstream response and finalizes exactly once.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

import httpx

from ..config import Settings, get_settings
from ..core.admission import CooldownAdmissionGate, RunGuard
from ..core.state_machine import GenerationTracker, InvalidTransition, RunState, is_valid_transition
from ..domain.events import ChunkEvent, OutputsEvent, StreamEvent
from ..domain.models import RunOutcome, RunRequest, Tier
from ..infrastructure.events import publish_event
from ..infrastructure.user_store import UserStore, get_user_store
from ..observability.metrics import RUN_OUTCOMES, STREAM_EVENTS
from .decoder import EventStreamDecoder
from .formatter import format_tweets
from .reconciler import PersistenceReconciler
from .relay import OutputRelay
from .telemetry_sink import TelemetryEvent, record_event
from .upstream import UpstreamError, UpstreamInvoker, UpstreamStream

LOG = logging.getLogger("personality.stream")

OUTPUTS_RECEIVED = "outputs_received"
STREAM_ENDED = "stream_ended"
TIMEOUT = "timeout"
CLIENT_DISCONNECTED = "client_disconnected"
UPSTREAM_READ_FAILED = "upstream_read_failed"


class UserNotFound(LookupError):
    def __init__(self, username: str) -> None:
        super().__init__(f"User not found: {username}")
        self.username = username


@dataclass(frozen=True)
class RunRejected:
    """Admission refused the run; reported to the client, not raised."""

    username: str
    tier: Tier
    reason: str


class AnalysisRun:
    def __init__(
        self,
        request: RunRequest,
        upstream: UpstreamStream,
        reconciler: PersistenceReconciler,
        settings: Settings,
        deadline: Optional[float] = None,
    ) -> None:
        self.request = request
        self.state = RunState.STREAMING
        self.tracker = GenerationTracker()
        self.relay = OutputRelay()
        self.events_seen = 0
        self.end_reason: Optional[str] = None
        self.client_closed = False
        self._upstream = upstream
        self._reconciler = reconciler
        self._settings = settings
        self._decoder = EventStreamDecoder()
        self._deadline = deadline
        self._started = False
        self._finished = False

    @property
    def outcome(self) -> RunOutcome:
        return self._reconciler.outcome

    def _transition(self, target: RunState) -> None:
        if not is_valid_transition(self.state, target):
            raise InvalidTransition(self.state, target)
        LOG.debug("run_transition", extra={"from": self.state.value, "to": target.value})
        self.state = target

    async def stream(self) -> AsyncIterator[str]:
        """Yield visible output text in wire order until the run ends."""

        if self._started:
            raise RuntimeError("run stream can only be consumed once")
        self._started = True
        loop = asyncio.get_running_loop()
        deadline = self._deadline
        if deadline is None:
            deadline = loop.time() + self._settings.run_timeout_seconds
        chunks = self._upstream.chunks().__aiter__()
        reason: Optional[str] = None
        try:
            while not self.tracker.terminal:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    reason = STREAM_ENDED
                    break
                for event in self._decoder.feed(chunk):
                    text = await self._handle(event)
                    if text:
                        yield text
                    if self.tracker.terminal:
                        reason = OUTPUTS_RECEIVED
                        break
        except asyncio.TimeoutError:
            reason = TIMEOUT
            LOG.warning(
                "run_timeout",
                extra={"username": self.request.username, "relayed_chars": self.relay.characters},
            )
        except (httpx.HTTPError, httpx.StreamError) as exc:
            reason = UPSTREAM_READ_FAILED
            LOG.error("upstream_read_failed", extra={"username": self.request.username, "err": str(exc)})
        except (asyncio.CancelledError, GeneratorExit):
            reason = CLIENT_DISCONNECTED
            raise
        finally:
            self.client_closed = True
            await asyncio.shield(self._finish(reason))

    async def _handle(self, event: StreamEvent) -> Optional[str]:
        self.events_seen += 1
        STREAM_EVENTS.labels(type=event.type).inc()
        self._maybe_force_output()
        visible = self.tracker.observe(event)
        if isinstance(event, ChunkEvent):
            return self.relay.relay(event, visible)
        if isinstance(event, OutputsEvent):
            self._transition(RunState.FINALIZING)
            await self._reconciler.finalize_outputs(event.values)
        return None

    def _maybe_force_output(self) -> None:
        threshold = self._settings.force_output_after_events
        if not threshold or self.tracker.ever_opened or self.tracker.forced:
            return
        if self.events_seen >= threshold:
            LOG.warning(
                "run_output_forced_visible",
                extra={"username": self.request.username, "events_seen": self.events_seen},
            )
            self.tracker.force_open()

    async def aclose(self) -> None:
        """Release the run if its stream was never consumed or was abandoned mid-way."""

        await self._finish(CLIENT_DISCONNECTED)

    async def _finish(self, reason: Optional[str]) -> None:
        if self._finished:
            return
        self._finished = True
        self.end_reason = reason
        self._decoder.close()
        try:
            await self._upstream.aclose()
        except httpx.HTTPError as exc:
            LOG.warning("upstream_close_failed", extra={"err": str(exc)})
        try:
            if self.state is RunState.STREAMING:
                self._transition(RunState.FINALIZING)
            if not self._reconciler.finalized:
                await self._reconciler.finalize_partial(self.relay.text, reason or STREAM_ENDED)
        finally:
            self._transition(RunState.DONE if self.outcome.succeeded else RunState.FAILED)
            await self._report()

    async def _report(self) -> None:
        outcome = self.outcome
        label = "completed" if outcome.succeeded else ("partial" if outcome.partial else "failed")
        RUN_OUTCOMES.labels(tier=self.request.tier.value, outcome=label).inc()
        properties = {
            "tier": self.request.tier.value,
            "outcome": label,
            "end_reason": self.end_reason,
            "events_seen": self.events_seen,
            "relayed_chars": self.relay.characters,
            "forced_visible": self.tracker.forced,
            "error": outcome.error,
        }
        record_event(TelemetryEvent(name="analysis_run_finished", properties=properties, actor=self.request.username))
        await publish_event(
            "analysis.completed" if outcome.succeeded else "analysis.failed",
            {"username": self.request.username, **properties},
        )


class RunSupervisor:
    def __init__(
        self,
        store: UserStore,
        invoker: UpstreamInvoker,
        guard: Optional[RunGuard] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._invoker = invoker
        self._guard = guard or CooldownAdmissionGate(self._settings.admission_cooldown_seconds)

    async def open_run(self, request: RunRequest) -> Union[AnalysisRun, RunRejected]:
        """Admit and start a run, or explain why not.

        Raises
        ------
        UserNotFound
            No record exists for the username.
        UpstreamError
            The upstream refused the request or did not answer before the
            deadline; nothing was persisted.
        PersistenceError
            The "started" flag could not be written; the upstream
            response is released before re-raising.
        """

        username, tier = request.username, request.tier
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.run_timeout_seconds
        LOG.info("run_admitting", extra={"username": username, "tier": tier.value})
        record = await self._store.get(username)
        if record is None:
            LOG.warning("run_user_missing", extra={"username": username})
            raise UserNotFound(username)

        decision = self._guard.check(record, tier)
        if not decision.admitted:
            LOG.info("run_rejected", extra={"username": username, "tier": tier.value, "reason": decision.reason})
            RUN_OUTCOMES.labels(tier=tier.value, outcome="rejected").inc()
            return RunRejected(username=username, tier=tier, reason=decision.reason or "")

        document = format_tweets(record.tweets, default_author=username)
        LOG.info("run_invoking", extra={"username": username, "tweets": len(record.tweets)})
        try:
            upstream = await self._invoker.invoke(tier, document, record, timeout=max(deadline - loop.time(), 0.0))
        except UpstreamError as exc:
            RUN_OUTCOMES.labels(tier=tier.value, outcome="upstream_error").inc()
            record_event(
                TelemetryEvent(
                    name="analysis_upstream_failed",
                    properties={"tier": tier.value, "status": exc.status_code},
                    actor=username,
                )
            )
            raise

        reconciler = PersistenceReconciler(self._store, record, tier)
        try:
            await reconciler.mark_started()
        except Exception:
            await upstream.aclose()
            raise
        await publish_event("analysis.started", {"username": username, "tier": tier.value})
        return AnalysisRun(request, upstream, reconciler, self._settings, deadline=deadline)


_supervisor: RunSupervisor | None = None
_invoker: UpstreamInvoker | None = None


def get_supervisor() -> RunSupervisor:
    global _supervisor, _invoker
    if _supervisor is None:
        settings = get_settings()
        _invoker = UpstreamInvoker(settings)
        _supervisor = RunSupervisor(get_user_store(), _invoker, settings=settings)
    return _supervisor


async def shutdown_supervisor() -> None:
    global _supervisor, _invoker
    if _invoker is not None:
        await _invoker.aclose()
    _supervisor = None
    _invoker = None

