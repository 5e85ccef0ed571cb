from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

LOG = logging.getLogger("personality.persistence")


class Tier(str, Enum):
    STANDARD = "standard"
    EXTENDED = "extended"

    @property
    def started_field(self) -> str:
        return f"{self.value}_started"

    @property
    def started_at_field(self) -> str:
        return f"{self.value}_started_at"

    @property
    def completed_field(self) -> str:
        return f"{self.value}_completed"


class RunRequest(BaseModel):
    """Inbound run request. ``full`` is the legacy spelling of the extended tier."""

    model_config = ConfigDict(frozen=True)

    username: str = Field(min_length=1)
    tier: Tier = Tier.STANDARD

    @model_validator(mode="before")
    @classmethod
    def _map_legacy_full_flag(cls, data: Any) -> Any:
        if isinstance(data, dict) and "full" in data and "tier" not in data:
            data = dict(data)
            full = data.pop("full")
            data["tier"] = Tier.EXTENDED if full else Tier.STANDARD
        return data


class ContentItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    author: Optional[str] = None
    created_at: Optional[str] = None
    text: Optional[str] = None
    is_retweet: bool = False
    retweet_count: Optional[int] = None
    reply_count: Optional[int] = None
    like_count: Optional[int] = None
    quote_count: Optional[int] = None
    view_count: Optional[int] = None

    @field_validator("author", mode="before")
    @classmethod
    def _author_handle(cls, value: Any) -> Any:
        # Scraped tweets carry the author as an object.
        if isinstance(value, dict):
            return value.get("userName") or value.get("user_name")
        return value

    @field_validator("created_at", mode="before")
    @classmethod
    def _created_at_text(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        return value


class UserRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str
    created_at: datetime
    tweets: List[ContentItem] = Field(default_factory=list)
    profile_picture: Optional[str] = None
    full_profile: Optional[Any] = None
    analysis: Dict[str, Any] = Field(default_factory=dict)

    standard_started: bool = False
    standard_started_at: Optional[datetime] = None
    standard_completed: bool = False
    extended_started: bool = False
    extended_started_at: Optional[datetime] = None
    extended_completed: bool = False

    def started(self, tier: Tier) -> bool:
        return bool(getattr(self, tier.started_field))

    def completed(self, tier: Tier) -> bool:
        return bool(getattr(self, tier.completed_field))


class PartialResult(BaseModel):
    """Best-effort result persisted when no structured output arrived."""

    text: str
    reason: str
    characters: int


ANALYSIS_KEYS = (
    "about",
    "strengths",
    "weaknesses",
    "loveLife",
    "money",
    "health",
    "biggestGoal",
    "colleaguesPerspective",
    "pickupLines",
    "famousPersonComparison",
    "previousLife",
    "animal",
    "fiftyDollarThing",
    "career",
    "lifeSuggestion",
    "roast",
    "emojis",
)


class AnalysisPatch(BaseModel):
    """Typed merge-patch for a user's stored analysis.

    Only the recognised analysis keys are carried; anything else the
    upstream returns is dropped (and logged) in :meth:`from_outputs`.
    """

    model_config = ConfigDict(populate_by_name=True)

    about: Any = None
    strengths: Any = None
    weaknesses: Any = None
    loveLife: Any = None
    money: Any = None
    health: Any = None
    biggestGoal: Any = None
    colleaguesPerspective: Any = None
    pickupLines: Any = None
    famousPersonComparison: Any = None
    previousLife: Any = None
    animal: Any = None
    fiftyDollarThing: Any = None
    career: Any = None
    lifeSuggestion: Any = None
    roast: Any = None
    emojis: Any = None
    partialOutput: Optional[PartialResult] = None

    @classmethod
    def from_outputs(cls, values: Mapping[str, Any]) -> "AnalysisPatch":
        output = values.get("output") if isinstance(values, Mapping) else None
        if not isinstance(output, Mapping):
            raise ValueError("outputs event carries no 'output' mapping")
        known = {k: v for k, v in output.items() if k in ANALYSIS_KEYS}
        ignored = sorted(k for k in output.keys() if k not in ANALYSIS_KEYS)
        if ignored:
            LOG.warning("analysis_patch_ignored_keys", extra={"keys": ignored})
        return cls(**known)

    @classmethod
    def partial(cls, text: str, reason: str) -> "AnalysisPatch":
        return cls(partialOutput=PartialResult(text=text, reason=reason, characters=len(text)))

    @property
    def is_partial(self) -> bool:
        return self.partialOutput is not None

    def as_mapping(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


def merge_analysis(existing: Optional[Mapping[str, Any]], patch: AnalysisPatch) -> Dict[str, Any]:
    """Shallow overwrite: patch keys win, keys absent from the patch are kept."""

    return {**dict(existing or {}), **patch.as_mapping()}


class RunOutcome(BaseModel):
    tier: Tier
    started: bool = False
    completed: bool = False
    succeeded: bool = False
    partial: bool = False
    error: Optional[str] = None


class TierStatus(BaseModel):
    started: bool
    started_at: Optional[datetime] = None
    completed: bool


class RunStatusView(BaseModel):
    username: str
    standard: TierStatus
    extended: TierStatus
    analysis: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record: UserRecord) -> "RunStatusView":
        def _status(tier: Tier) -> TierStatus:
            return TierStatus(
                started=record.started(tier),
                started_at=getattr(record, tier.started_at_field),
                completed=record.completed(tier),
            )

        return cls(
            username=record.username,
            standard=_status(Tier.STANDARD),
            extended=_status(Tier.EXTENDED),
            analysis=dict(record.analysis),
        )
