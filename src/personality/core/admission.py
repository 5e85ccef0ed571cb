from __future__ import annotations

"""Admission checks that keep a user to one in-flight run per tier.

The check is advisory: it reads a record snapshot and applies a cooldown,
it does not lock anything. Callers depend on the :class:`RunGuard`
protocol so a real conditional-write lock can replace it later.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from ..domain.models import Tier, UserRecord

ALREADY_COMPLETED = "already_completed"
ALREADY_RUNNING = "already_running"


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: bool
    reason: Optional[str] = None

    @classmethod
    def admit(cls) -> "AdmissionDecision":
        return cls(admitted=True)

    @classmethod
    def reject(cls, reason: str) -> "AdmissionDecision":
        return cls(admitted=False, reason=reason)


class RunGuard(Protocol):
    def check(self, record: UserRecord, tier: Tier) -> AdmissionDecision: ...


class CooldownAdmissionGate:
    """Reject completed tiers, and started tiers inside the cooldown window.

    The window is measured from the record's ``created_at``, not from the
    tier's ``started_at``. Old records therefore admit a second run even
    while the first is still streaming.
    """

    def __init__(
        self,
        cooldown_seconds: int = 180,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check(self, record: UserRecord, tier: Tier) -> AdmissionDecision:
        if record.completed(tier):
            return AdmissionDecision.reject(ALREADY_COMPLETED)
        if record.started(tier) and self._clock() - _aware(record.created_at) < self._cooldown:
            return AdmissionDecision.reject(ALREADY_RUNNING)
        return AdmissionDecision.admit()


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
