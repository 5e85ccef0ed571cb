from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import httpx

from src.personality.config import Settings
from src.personality.domain.models import UserRecord
from src.personality.infrastructure.user_store import InMemoryUserStore, PersistenceError
from src.personality.services.supervisor import RunSupervisor
from src.personality.services.upstream import UpstreamInvoker


def line(value: Dict[str, Any]) -> str:
    return json.dumps({"value": value}, ensure_ascii=False) + "\n"


def gen(state: str, label: str) -> str:
    return line({"type": "generation", "state": state, "label": label})


def chunk(text: str) -> str:
    return line({"type": "chunk", "value": text})


def outputs(output: Dict[str, Any]) -> str:
    return line({"type": "outputs", "values": {"output": output}})


SCENARIO_A = [
    gen("start", "output"),
    chunk("hi"),
    gen("end", "output"),
    outputs({"about": "x"}),
]


def make_record(username: str = "jack", **overrides: Any) -> UserRecord:
    data: Dict[str, Any] = {
        "username": username,
        "created_at": datetime.now(timezone.utc) - timedelta(days=1),
        "tweets": [
            {
                "author": {"userName": username},
                "createdAt": "Tue Mar 21 20:50:14 +0000 2006",
                "text": "just setting up my twttr",
                "retweetCount": 120,
                "likeCount": 3000,
            }
        ],
        "analysis": {"existing": "kept"},
    }
    data.update(overrides)
    return UserRecord.model_validate(data)


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "api_key": "test-key",
        "base_url": "https://upstream.test/api/released-app",
        "standard_prompt_id": "roast-prompt",
        "extended_prompt_id": "full-prompt",
        "run_timeout_seconds": 5.0,
        "force_output_after_events": 0,
    }
    values.update(overrides)
    return Settings(**values)


class FlakyUserStore(InMemoryUserStore):
    """Fails saves whose patch matches ``fail_when``; records every patch."""

    def __init__(self, fail_when: Optional[Callable[[Dict[str, Any]], bool]] = None) -> None:
        super().__init__()
        self.fail_when = fail_when
        self.patches: List[Dict[str, Any]] = []

    async def save(self, username, patch):
        self.patches.append(dict(patch))
        if self.fail_when is not None and self.fail_when(dict(patch)):
            raise PersistenceError("database unavailable")
        return await super().save(username, patch)


class UpstreamStub:
    """MockTransport handler serving a scripted chunked body and recording requests."""

    def __init__(
        self,
        chunks: Iterable[bytes | str] = (),
        *,
        status_code: int = 200,
        body: str = "",
        stall_after: bool = False,
        fail_after: bool = False,
        hang_headers: bool = False,
    ) -> None:
        self.chunks = [c.encode("utf-8") if isinstance(c, str) else c for c in chunks]
        self.status_code = status_code
        self.body = body
        self.stall_after = stall_after
        self.fail_after = fail_after
        self.hang_headers = hang_headers
        self.requests: List[httpx.Request] = []

    async def _body(self) -> AsyncIterator[bytes]:
        for piece in self.chunks:
            yield piece
            await asyncio.sleep(0)
        if self.fail_after:
            raise httpx.ReadError("connection reset by peer")
        if self.stall_after:
            await asyncio.sleep(3600)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.hang_headers:
            await asyncio.sleep(3600)
        if self.status_code >= 300:
            return httpx.Response(self.status_code, text=self.body)
        return httpx.Response(self.status_code, content=self._body())

    @property
    def payload(self) -> Dict[str, Any]:
        return json.loads(self.requests[-1].content)


def build_supervisor(store, stub: UpstreamStub, settings: Optional[Settings] = None) -> RunSupervisor:
    settings = settings or make_settings()
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return RunSupervisor(store, UpstreamInvoker(settings, client=client), settings=settings)


async def drain(run) -> List[str]:
    return [piece async for piece in run.stream()]
