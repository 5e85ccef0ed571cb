import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_singletons(monkeypatch):
    """Fresh settings, store and publisher per test; no broker or upstream from the host env."""
    from src.personality import config
    from src.personality.infrastructure import events, user_store
    from src.personality.services import supervisor, telemetry_sink

    for name in ("REDIS_URL", "PERSONALITY_USER_STORE_IMPL", "WORDWARE_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    config.reset_settings()
    events.reset_publisher()
    user_store.set_user_store(None)
    monkeypatch.setattr(supervisor, "_supervisor", None, raising=False)
    monkeypatch.setattr(supervisor, "_invoker", None, raising=False)
    telemetry_sink.clear_recent_events()
    yield
    config.reset_settings()
    user_store.set_user_store(None)
