import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

NOTE_MAX_LENGTH = 200
TENTATIVE_PREFIX = "tmp-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def tentative_id() -> str:
    return f"{TENTATIVE_PREFIX}{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Session:
    """Explicit caller context handed to every core operation."""

    owner_id: str
    token: Optional[str] = None


class MetadataPhase(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    COMPLETE = "complete"
    AWAITING_RETRY = "awaiting_retry"
    EXHAUSTED = "exhausted"


class MetadataState(BaseModel):
    attempts: int = 0
    last_attempt_at: datetime | None = None
    complete: bool = False


class Link(BaseModel):
    id: str
    owner_id: str
    url: str
    normalized_url: str
    domain: str | None = None
    title: str | None = None
    description: str | None = None
    thumbnail_url: str | None = None
    note: str | None = None
    space_id: str | None = None
    tag_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    opened_at: datetime | None = None
    metadata: MetadataState = Field(default_factory=MetadataState)
    tentative: bool = False

    @field_validator("tag_ids")
    @classmethod
    def _tag_set(cls, value: List[str]) -> List[str]:
        # order is irrelevant, so keep one canonical order
        return sorted(set(value))


class LinkPatch(BaseModel):
    """
    Partial update for a link. Only fields present in model_fields_set are
    applied, so `space_id=None` moves a link to the unsorted bucket while an
    omitted space_id leaves it alone.
    """

    note: str | None = None
    space_id: str | None = None
    tag_ids: List[str] | None = None
    opened_at: datetime | None = None

    def changes(self) -> dict:
        data = {name: getattr(self, name) for name in self.model_fields_set}
        if data.get("tag_ids") is not None:
            data["tag_ids"] = sorted(set(data["tag_ids"]))
        elif "tag_ids" in data:
            data["tag_ids"] = []
        return data


class LinkMetadata(BaseModel):
    title: str | None = None
    description: str | None = None
    thumbnail_url: str | None = None
    domain: str | None = None

    @property
    def has_content(self) -> bool:
        return bool(self.title) and self.title != self.domain


class Tag(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    color: str = "#682cff"
    usage_count: int = 0


class Space(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    color: str = "#7c3aed"
    link_count: int = 0


class PendingShare(BaseModel):
    url: str


class PaginationCursor(BaseModel):
    page_index: int = -1
    page_size: int = 30
    exhausted: bool = False

    @property
    def next_offset(self) -> int:
        return (self.page_index + 1) * self.page_size
