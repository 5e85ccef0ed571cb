from datetime import datetime, timedelta, timezone

from src.personality.core.admission import ALREADY_COMPLETED, ALREADY_RUNNING, CooldownAdmissionGate
from src.personality.domain.models import Tier

from .utils import make_record

NOW = datetime(2024, 9, 1, 12, 0, tzinfo=timezone.utc)


def _gate():
    return CooldownAdmissionGate(cooldown_seconds=180, clock=lambda: NOW)


def test_fresh_record_is_admitted():
    assert _gate().check(make_record(created_at=NOW), Tier.STANDARD).admitted


def test_completed_tier_is_rejected():
    record = make_record(standard_completed=True)
    decision = _gate().check(record, Tier.STANDARD)
    assert not decision.admitted
    assert decision.reason == ALREADY_COMPLETED
    assert _gate().check(record, Tier.EXTENDED).admitted


def test_started_inside_cooldown_is_rejected():
    record = make_record(created_at=NOW - timedelta(minutes=2), extended_started=True)
    decision = _gate().check(record, Tier.EXTENDED)
    assert decision.reason == ALREADY_RUNNING


def test_cooldown_is_measured_from_record_creation():
    # started a second ago, but the record itself is old: admitted again
    record = make_record(
        created_at=NOW - timedelta(minutes=4),
        standard_started=True,
        standard_started_at=NOW - timedelta(seconds=1),
    )
    assert _gate().check(record, Tier.STANDARD).admitted


def test_naive_created_at_is_treated_as_utc():
    record = make_record(created_at=NOW.replace(tzinfo=None) - timedelta(seconds=30), standard_started=True)
    assert not _gate().check(record, Tier.STANDARD).admitted
