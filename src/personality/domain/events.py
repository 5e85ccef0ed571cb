from __future__ import annotations

"""Wire events emitted by the upstream generation service.

Each newline-delimited line is a JSON object shaped
``{"value": {"type": "generation" | "chunk" | "outputs", ...}}``.
"""

import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

OUTPUT_LABEL = "output"


class GenerationEvent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["generation"] = "generation"
    state: Literal["start", "end"]
    label: str = ""

    @property
    def opens_output(self) -> bool:
        return self.state == "start" and self.label == OUTPUT_LABEL

    @property
    def closes_output(self) -> bool:
        return self.state == "end" and self.label == OUTPUT_LABEL


class ChunkEvent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["chunk"] = "chunk"
    value: Optional[str] = ""


class OutputsEvent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["outputs"] = "outputs"
    values: Dict[str, Any] = Field(default_factory=dict)


StreamEvent = Annotated[Union[GenerationEvent, ChunkEvent, OutputsEvent], Field(discriminator="type")]

_EVENT_ADAPTER: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


class MalformedEventLine(ValueError):
    def __init__(self, line: str, reason: str) -> None:
        super().__init__(reason)
        self.line = line
        self.reason = reason


def parse_event(line: str) -> StreamEvent:
    """Parse one complete wire line into a :data:`StreamEvent`.

    Raises
    ------
    MalformedEventLine
        If the line is not JSON, lacks the ``value`` envelope, or carries
        an unknown/invalid event shape.
    """

    try:
        content = json.loads(line)
    except json.JSONDecodeError as exc:
        raise MalformedEventLine(line, f"invalid json: {exc.msg}") from exc
    value: Optional[Any] = content.get("value") if isinstance(content, dict) else None
    if not isinstance(value, dict):
        raise MalformedEventLine(line, "missing 'value' envelope")
    try:
        return _EVENT_ADAPTER.validate_python(value)
    except ValidationError as exc:
        raise MalformedEventLine(line, f"invalid event: {exc.error_count()} error(s)") from exc
