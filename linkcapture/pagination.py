import logging
from typing import Any, Dict, Iterable, List, Mapping

from .collection import LinkCollection
from .models import Link, PaginationCursor, Session, Tag
from .mutations import OptimisticMutationEngine, Overlay
from .storage import ANY_SPACE, LinkStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 30
DEFAULT_SCROLL_THRESHOLD = 0.8


def filter_links(links: Iterable[Link], query: str, tag_names: Mapping[str, str]) -> List[Link]:
    """
    Case-insensitive match on title, note, domain or any tag name.
    An empty query returns everything.
    """
    q = (query or "").strip().lower()
    links = list(links)
    if not q:
        return links
    res = []
    for l in links:
        fields = [l.title or "", l.note or "", l.domain or ""]
        fields.extend(tag_names.get(t, "") for t in l.tag_ids)
        if any(q in f.lower() for f in fields):
            res.append(l)
    return res


class CollectionLoader:
    """
    Cursor-based pages over one owner's links, optionally scoped to a space.

    Loaded rows live in `view`, which the mutation engine also writes to, so
    optimistic changes show up immediately. Page results are merged with the
    engine's overlay so in-flight creates and deletes are neither lost nor
    duplicated by a page that was fetched before they happened.
    """

    def __init__(
        self,
        store: LinkStore,
        engine: OptimisticMutationEngine,
        session: Session,
        space_id: Any = ANY_SPACE,
        page_size: int = DEFAULT_PAGE_SIZE,
        scroll_threshold: float = DEFAULT_SCROLL_THRESHOLD,
    ):
        self.store = store
        self.engine = engine
        self.session = session
        self.space_id = space_id
        self.page_size = page_size
        self.scroll_threshold = scroll_threshold
        self.cursor = PaginationCursor(page_size=page_size)
        self.view = LinkCollection(session.owner_id, space_id)
        self._loading = False
        self._generation = 0
        self._tag_names: Dict[str, str] = {}
        engine.attach(self.view)

    @property
    def items(self) -> List[Link]:
        return self.view.items

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def has_more(self) -> bool:
        return not self.cursor.exhausted

    def close(self):
        self.engine.detach(self.view)

    def set_tags(self, tags: Iterable[Tag]):
        self._tag_names = {t.id: t.name for t in tags}

    def search(self, query: str) -> List[Link]:
        return filter_links(self.view.items, query, self._tag_names)

    async def _fetch(self, offset: int) -> List[Link]:
        return await self.store.list_links(
            self.session.owner_id, offset, self.cursor.page_size, self.space_id
        )

    def _merge(self, rows: List[Link], overlay: Overlay) -> List[Link]:
        merged: List[Link] = []
        seen = set()
        for link in overlay.created:
            if link.id not in overlay.deleted and self.view.accepts(link):
                merged.append(link)
                seen.add(link.id)
        for row in rows:
            if row.id in overlay.deleted or row.id in seen:
                continue
            link = overlay.updated.get(row.id, row)
            if self.view.accepts(link):
                merged.append(link)
                seen.add(link.id)
        return merged

    async def load_first_page(self) -> List[Link]:
        """Fetch page 0 and replace whatever is loaded."""
        self._generation += 1
        generation = self._generation
        page_size = self.page_size
        self.cursor = PaginationCursor(page_size=page_size)
        self._loading = True
        since = self.engine.watermark
        try:
            rows = await self._fetch(0)
        finally:
            if generation == self._generation:
                self._loading = False
        if generation != self._generation:
            return self.items

        merged = self._merge(rows, self.engine.overlay(self.session.owner_id, since))
        self.cursor = PaginationCursor(
            page_index=0, page_size=page_size, exhausted=len(rows) < page_size
        )
        self.view.reset(merged)
        logger.debug("loaded first page: %d rows, exhausted=%s", len(rows), self.cursor.exhausted)
        return self.items

    async def refresh(self) -> List[Link]:
        """Hard refresh: back to page 0, replacing the loaded set."""
        logger.debug("refreshing %s", self.session.owner_id)
        return await self.load_first_page()

    async def load_next_page(self) -> List[Link]:
        """Append the next page. No-op while a load is running or at the end."""
        if self._loading or self.cursor.exhausted:
            logger.debug(
                "skipping next page (loading=%s, exhausted=%s)", self._loading, self.cursor.exhausted
            )
            return []
        if self.cursor.page_index < 0:
            await self.load_first_page()
            return self.items

        generation = self._generation
        self._loading = True
        since = self.engine.watermark
        try:
            rows = await self._fetch(self.cursor.next_offset)
        finally:
            if generation == self._generation:
                self._loading = False
        if generation != self._generation:
            return []

        overlay = self.engine.overlay(self.session.owner_id, since)
        fresh = [
            overlay.updated.get(r.id, r)
            for r in rows
            if r.id not in overlay.deleted
        ]
        before = set(self.view.ids)
        self.view.extend(l for l in fresh if self.view.accepts(l))
        self.cursor = self.cursor.model_copy(
            update={
                "page_index": self.cursor.page_index + 1,
                "exhausted": len(rows) < self.cursor.page_size,
            }
        )
        logger.debug(
            "loaded page %d: %d rows, exhausted=%s",
            self.cursor.page_index, len(rows), self.cursor.exhausted,
        )
        return [l for l in self.view.items if l.id not in before]

    def should_load_more(self, position: int) -> bool:
        loaded = len(self.view)
        if loaded == 0 or self._loading or self.cursor.exhausted:
            return False
        return position >= self.scroll_threshold * loaded

    async def on_scroll(self, position: int) -> bool:
        """
        `position` is the 1-based index of the last visible item. Loads the
        next page once it passes the threshold share of the loaded rows.
        """
        if not self.should_load_more(position):
            return False
        await self.load_next_page()
        return True
