from __future__ import annotations

from typing import List, Optional

from ..domain.events import ChunkEvent


class OutputRelay:
    """Decides which chunk text reaches the client and keeps what was sent.

    The kept text is what the fallback finalization persists when the
    upstream never delivers a structured result.
    """

    def __init__(self) -> None:
        self._sent: List[str] = []
        self.chunks_forwarded = 0
        self.chunks_hidden = 0

    def relay(self, event: ChunkEvent, visible: bool) -> Optional[str]:
        if not visible:
            self.chunks_hidden += 1
            return None
        text = event.value or ""
        if not text:
            return None
        self._sent.append(text)
        self.chunks_forwarded += 1
        return text

    @property
    def text(self) -> str:
        return "".join(self._sent)

    @property
    def characters(self) -> int:
        return sum(len(part) for part in self._sent)
