import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .errors import ConflictError, DuplicateError, NotFoundError
from .models import Link, LinkMetadata, Space, Tag, new_id, utcnow

logger = logging.getLogger(__name__)

STATE_FILE = Path(os.environ.get("LINKCAPTURE_STATE_FILE", "linkcapture_state.json"))

ANY_SPACE: Any = object()


class Config(BaseModel):
    page_size: int = 30
    scroll_threshold: float = 0.8
    metadata_max_attempts: int = 3
    metadata_timeout_seconds: float = 10.0
    metadata_proxy_url: str | None = None
    retry_interval_seconds: float = 60.0
    retry_debounce_seconds: float = 1.0
    retry_batch_size: int = 10
    rate_limit_per_second: int = 20
    rate_limit_per_minute: int = 150
    deep_link_scheme: str = "linkcapture"


class StoreState(BaseModel):
    links: List[Link] = Field(default_factory=list)
    spaces: List[Space] = Field(default_factory=list)
    tags: List[Tag] = Field(default_factory=list)
    config: Config = Field(default_factory=Config)


def load_state(path: Path = STATE_FILE) -> StoreState:
    if not path.exists():
        return StoreState()
    with open(path, "r") as f:
        data = json.load(f)
    return StoreState.model_validate(data)


def save_state(state: StoreState, path: Path = STATE_FILE):
    path.write_text(
        json.dumps(state.model_dump(mode="json"), indent=2)
    )


class LinkStore(ABC):
    """
    Durable store contract. Implementations enforce (owner_id,
    normalized_url) uniqueness and space/tag references and report
    violations as DuplicateError / ConflictError.
    """

    @abstractmethod
    async def insert_link(self, link: Link) -> Link:
        ...

    @abstractmethod
    async def update_link(self, link_id: str, owner_id: str, changes: Dict[str, Any]) -> Link:
        ...

    @abstractmethod
    async def delete_link(self, link_id: str, owner_id: str) -> None:
        ...

    @abstractmethod
    async def get_link(self, link_id: str) -> Optional[Link]:
        ...

    @abstractmethod
    async def list_links(
        self, owner_id: str, offset: int, limit: int, space_id: Any = ANY_SPACE
    ) -> List[Link]:
        ...

    @abstractmethod
    async def incomplete_metadata(self, owner_id: str, max_attempts: int, limit: int) -> List[Link]:
        ...

    @abstractmethod
    async def record_metadata_attempt(self, link_id: str, attempts: int, at: datetime) -> Link:
        ...

    @abstractmethod
    async def save_metadata(self, link_id: str, metadata: LinkMetadata, complete: bool) -> Link:
        ...

    @abstractmethod
    async def reset_metadata(self, link_id: str) -> Link:
        ...

    @abstractmethod
    async def list_tags(self, owner_id: str) -> List[Tag]:
        ...

    @abstractmethod
    async def list_spaces(self, owner_id: str) -> List[Space]:
        ...


class JsonLinkStore(LinkStore):
    """
    Single-user store that keeps the whole state in memory and writes it to
    a JSON file after every change. With path=None nothing is persisted.
    """

    def __init__(self, path: Optional[Path] = STATE_FILE):
        self.path = path
        self.state = load_state(path) if path is not None else StoreState()

    @property
    def config(self) -> Config:
        return self.state.config

    def save(self):
        if self.path is not None:
            save_state(self.state, self.path)

    def _find(self, link_id: str) -> Optional[Link]:
        return next((l for l in self.state.links if l.id == link_id), None)

    def _require(self, link_id: str, owner_id: Optional[str] = None) -> Link:
        link = self._find(link_id)
        if link is None or (owner_id is not None and link.owner_id != owner_id):
            raise NotFoundError(f"link {link_id} not found")
        return link

    def _replace(self, updated: Link) -> Link:
        self.state.links = [updated if l.id == updated.id else l for l in self.state.links]
        self.save()
        return updated

    def _check_references(self, owner_id: str, space_id: Optional[str], tag_ids: Iterable[str]):
        if space_id is not None and not any(
            s.id == space_id and s.owner_id == owner_id for s in self.state.spaces
        ):
            raise ConflictError("That space no longer exists")
        known = {t.id for t in self.state.tags if t.owner_id == owner_id}
        missing = [t for t in tag_ids if t not in known]
        if missing:
            raise ConflictError("One of the selected tags no longer exists")

    async def insert_link(self, link: Link) -> Link:
        existing = next(
            (
                l for l in self.state.links
                if l.owner_id == link.owner_id and l.normalized_url == link.normalized_url
            ),
            None,
        )
        if existing:
            raise DuplicateError(link.normalized_url)
        self._check_references(link.owner_id, link.space_id, link.tag_ids)

        now = utcnow()
        stored = link.model_copy(
            update={"id": new_id(), "tentative": False, "created_at": now, "updated_at": now}
        )
        self.state.links.insert(0, stored)
        self.save()
        return stored

    async def update_link(self, link_id: str, owner_id: str, changes: Dict[str, Any]) -> Link:
        link = self._require(link_id, owner_id)
        self._check_references(owner_id, changes.get("space_id"), changes.get("tag_ids") or [])
        return self._replace(link.model_copy(update={**changes, "updated_at": utcnow()}))

    async def delete_link(self, link_id: str, owner_id: str) -> None:
        self._require(link_id, owner_id)
        self.state.links = [l for l in self.state.links if l.id != link_id]
        self.save()

    async def get_link(self, link_id: str) -> Optional[Link]:
        return self._find(link_id)

    async def list_links(
        self, owner_id: str, offset: int, limit: int, space_id: Any = ANY_SPACE
    ) -> List[Link]:
        rows = [
            l for l in self.state.links
            if l.owner_id == owner_id and (space_id is ANY_SPACE or l.space_id == space_id)
        ]
        rows.sort(key=lambda l: l.created_at, reverse=True)
        return rows[offset:offset + limit]

    async def incomplete_metadata(self, owner_id: str, max_attempts: int, limit: int) -> List[Link]:
        rows = [
            l for l in self.state.links
            if l.owner_id == owner_id
            and not l.metadata.complete
            and l.metadata.attempts < max_attempts
        ]
        rows.sort(key=lambda l: l.metadata.last_attempt_at or l.created_at)
        return rows[:limit]

    async def record_metadata_attempt(self, link_id: str, attempts: int, at: datetime) -> Link:
        link = self._require(link_id)
        state = link.metadata.model_copy(update={"attempts": attempts, "last_attempt_at": at})
        return self._replace(link.model_copy(update={"metadata": state}))

    async def save_metadata(self, link_id: str, metadata: LinkMetadata, complete: bool) -> Link:
        link = self._require(link_id)
        update: Dict[str, Any] = {
            "metadata": link.metadata.model_copy(update={"complete": complete}),
        }
        for field in ("title", "description", "thumbnail_url", "domain"):
            value = getattr(metadata, field)
            if value:
                update[field] = value
        return self._replace(link.model_copy(update=update))

    async def reset_metadata(self, link_id: str) -> Link:
        link = self._require(link_id)
        state = link.metadata.model_copy(update={"attempts": 0, "complete": False})
        return self._replace(link.model_copy(update={"metadata": state}))

    async def list_tags(self, owner_id: str) -> List[Tag]:
        usage: Dict[str, int] = {}
        for l in self.state.links:
            if l.owner_id == owner_id:
                for tag_id in l.tag_ids:
                    usage[tag_id] = usage.get(tag_id, 0) + 1
        return [
            t.model_copy(update={"usage_count": usage.get(t.id, 0)})
            for t in self.state.tags if t.owner_id == owner_id
        ]

    async def list_spaces(self, owner_id: str) -> List[Space]:
        counts: Dict[str, int] = {}
        for l in self.state.links:
            if l.owner_id == owner_id and l.space_id:
                counts[l.space_id] = counts.get(l.space_id, 0) + 1
        return [
            s.model_copy(update={"link_count": counts.get(s.id, 0)})
            for s in self.state.spaces if s.owner_id == owner_id
        ]

    def add_space(self, owner_id: str, name: str, color: Optional[str] = None) -> Space:
        space = Space(owner_id=owner_id, name=name, **({"color": color} if color else {}))
        self.state.spaces.append(space)
        self.save()
        return space

    def add_tag(self, owner_id: str, name: str, color: Optional[str] = None) -> Tag:
        existing = next(
            (t for t in self.state.tags if t.owner_id == owner_id and t.name.lower() == name.lower()),
            None,
        )
        if existing:
            return existing
        tag = Tag(owner_id=owner_id, name=name, **({"color": color} if color else {}))
        self.state.tags.append(tag)
        self.save()
        return tag

    def remove_space(self, space_id: str):
        # links in a removed space fall back to unsorted
        self.state.spaces = [s for s in self.state.spaces if s.id != space_id]
        self.state.links = [
            l.model_copy(update={"space_id": None}) if l.space_id == space_id else l
            for l in self.state.links
        ]
        self.save()
