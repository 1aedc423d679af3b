"""
Pydantic models for WaniKani API payloads and the mirrored entities.

Remote records arrive wrapped in a resource envelope; ``Resource.to_record``
flattens the envelope into the shape stored locally. Entity models allow
extra fields so a whole remote record survives a round trip through the
local store untouched.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


CURRENT_USER_ID = "current"


# =============================================================================
# Enums
# =============================================================================

class SubjectType(str, Enum):
    RADICAL = "radical"
    KANJI = "kanji"
    VOCABULARY = "vocabulary"
    KANA_VOCABULARY = "kana_vocabulary"


# =============================================================================
# API Envelopes
# =============================================================================

class Resource(BaseModel):
    """Single resource envelope: ``{id, object, url, data_updated_at, data}``."""

    id: Optional[int] = None
    object: str
    url: str = ""
    data_updated_at: Optional[datetime] = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        """Flatten the envelope into a local record."""
        record = dict(self.data)
        if self.id is not None:
            record["id"] = self.id
        record["object"] = self.object
        record["url"] = self.url
        if self.data_updated_at is not None:
            record["data_updated_at"] = self.data_updated_at.isoformat()
        return record


class Pages(BaseModel):
    per_page: int = 0
    next_url: Optional[str] = None
    previous_url: Optional[str] = None


class CollectionPage(BaseModel):
    """One page of a paginated collection response."""

    object: str = "collection"
    url: str = ""
    pages: Pages = Field(default_factory=Pages)
    total_count: int = 0
    data: list[Resource] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "CollectionPage":
        return cls()

    @property
    def next_url(self) -> Optional[str]:
        return self.pages.next_url

    def records(self) -> list[dict[str, Any]]:
        return [resource.to_record() for resource in self.data]


# =============================================================================
# Mirrored Entities
# =============================================================================

class Entity(BaseModel):
    """Base for locally mirrored records."""

    model_config = ConfigDict(extra="allow")

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Subject(Entity):
    id: int
    object: Optional[str] = None
    level: int
    slug: Optional[str] = None
    characters: Optional[str] = None
    meanings: list[dict[str, Any]] = Field(default_factory=list)
    readings: list[dict[str, Any]] = Field(default_factory=list)
    component_subject_ids: list[int] = Field(default_factory=list)
    amalgamation_subject_ids: list[int] = Field(default_factory=list)
    meaning_mnemonic: Optional[str] = None
    reading_mnemonic: Optional[str] = None
    document_url: Optional[str] = None
    hidden_at: Optional[datetime] = None

    @property
    def primary_meaning(self) -> Optional[str]:
        for meaning in self.meanings:
            if meaning.get("primary"):
                return meaning.get("meaning")
        return self.meanings[0].get("meaning") if self.meanings else None


class Assignment(Entity):
    id: int
    subject_id: int
    subject_type: Optional[str] = None
    srs_stage: int = 0
    unlocked_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    passed_at: Optional[datetime] = None
    burned_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    hidden: bool = False

    def is_available(self, now: datetime) -> bool:
        """True when ``available_at`` has passed; a missing value never is."""
        if self.available_at is None:
            return False
        return _as_utc(self.available_at) < _as_utc(now)


class StudyMaterial(Entity):
    id: int
    subject_id: int
    subject_type: Optional[str] = None
    meaning_note: Optional[str] = None
    reading_note: Optional[str] = None
    meaning_synonyms: list[str] = Field(default_factory=list)
    hidden: bool = False


class User(Entity):
    id: str = CURRENT_USER_ID
    username: str
    level: int = 1
    started_at: Optional[datetime] = None
    current_vacation_started_at: Optional[datetime] = None
    profile_url: Optional[str] = None


class Summary(BaseModel):
    """Lessons/reviews summary (``/summary``)."""

    lessons: list[dict[str, Any]] = Field(default_factory=list)
    reviews: list[dict[str, Any]] = Field(default_factory=list)
    next_reviews_at: Optional[datetime] = None


# =============================================================================
# Helpers
# =============================================================================

def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Fixed-width ISO-8601 UTC form; sorts lexically in time order."""
    return _as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
