from __future__ import annotations

"""Client for the upstream generation service.

One POST per run, no retries: generation is slow, billed and not
idempotent, so any non-success answer ends the run.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from ..config import Settings
from ..domain.models import Tier, UserRecord

LOG = logging.getLogger("personality.upstream")


class UpstreamError(RuntimeError):
    def __init__(self, status_code: int, body: str, message: str = "Wordware API returned an error") -> None:
        super().__init__(f"{message} (status={status_code})")
        self.status_code = status_code
        self.body = body


@dataclass
class UpstreamStream:
    """An open upstream response; :meth:`aclose` releases the connection."""

    response: httpx.Response
    status_code: int

    def chunks(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()

    async def aclose(self) -> None:
        await self.response.aclose()


class UpstreamInvoker:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings
        self._client = client

    def _prompt_id(self, tier: Tier) -> str:
        if tier is Tier.EXTENDED:
            return self._settings.extended_prompt_id
        return self._settings.standard_prompt_id

    def build_payload(self, tweets_markdown: str, record: UserRecord) -> Dict[str, Any]:
        return {
            "inputs": {
                "tweets": f"Tweets: {tweets_markdown}",
                "profilePicture": record.profile_picture,
                "profileInfo": record.full_profile,
                "version": self._settings.prompt_version,
            }
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Header and body reads are bounded by the run deadline, not here.
            timeout = httpx.Timeout(self._settings.connect_timeout_seconds, read=None)
            self._client = httpx.AsyncClient(timeout=timeout)
        return self._client

    async def _send(self, client: httpx.AsyncClient, request: httpx.Request) -> httpx.Response:
        response = await client.send(request, stream=True)
        if not response.is_success:
            try:
                await response.aread()
            finally:
                await response.aclose()
        return response

    async def invoke(
        self,
        tier: Tier,
        tweets_markdown: str,
        record: UserRecord,
        timeout: Optional[float] = None,
    ) -> UpstreamStream:
        """POST the run and wait at most ``timeout`` seconds for the response headers."""

        prompt_id = self._prompt_id(tier)
        url = f"{self._settings.base_url}/{prompt_id}/run"
        LOG.info("upstream_invoke", extra={"tier": tier.value, "prompt_id": prompt_id, "username": record.username})
        client = self._get_client()
        request = client.build_request(
            "POST",
            url,
            json=self.build_payload(tweets_markdown, record),
            headers={"Authorization": f"Bearer {self._settings.api_key}"},
        )
        try:
            response = await asyncio.wait_for(self._send(client, request), timeout=timeout)
        except asyncio.TimeoutError as exc:
            LOG.warning("upstream_timeout", extra={"url": url, "timeout": timeout})
            raise UpstreamError(504, "", "Wordware API timed out") from exc
        except httpx.HTTPError as exc:
            LOG.warning("upstream_unreachable", extra={"url": url, "err": str(exc)})
            raise UpstreamError(502, str(exc), "Wordware API unreachable") from exc

        if not response.is_success:
            body = response.text
            LOG.warning("upstream_error", extra={"status": response.status_code, "body": body[:500]})
            raise UpstreamError(response.status_code, body)

        if response.is_stream_consumed or response.is_closed:
            await response.aclose()
            raise UpstreamError(response.status_code, "", "Wordware API returned no readable body")

        return UpstreamStream(response=response, status_code=response.status_code)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
