import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from .models import Link
from .storage import ANY_SPACE

logger = logging.getLogger(__name__)

Observer = Callable[[List[Link]], None]


@dataclass(frozen=True)
class Placement:
    """Where a link sat in a view: its index and the id just before it."""

    index: int
    anchor_id: Optional[str]


class LinkCollection:
    """
    Ordered, owner-scoped list of links backing one screen. Optionally
    scoped to a single space (space_id=None is the unsorted bucket).

    Only the mutation engine and the loader's merge step write to it.
    """

    def __init__(self, owner_id: str, space_id: Any = ANY_SPACE):
        self.owner_id = owner_id
        self.space_id = space_id
        self._items: List[Link] = []
        self._observers: List[Observer] = []

    @property
    def items(self) -> List[Link]:
        return list(self._items)

    @property
    def ids(self) -> List[str]:
        return [l.id for l in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, link_id: str) -> bool:
        return self.index_of(link_id) is not None

    def accepts(self, link: Link) -> bool:
        if link.owner_id != self.owner_id:
            return False
        return self.space_id is ANY_SPACE or link.space_id == self.space_id

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def notify(self):
        snapshot = self.items
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("collection observer failed")

    def index_of(self, link_id: str) -> Optional[int]:
        for i, link in enumerate(self._items):
            if link.id == link_id:
                return i
        return None

    def get(self, link_id: str) -> Optional[Link]:
        i = self.index_of(link_id)
        return self._items[i] if i is not None else None

    def placement(self, link_id: str) -> Optional[Placement]:
        i = self.index_of(link_id)
        if i is None:
            return None
        return Placement(i, self._items[i - 1].id if i > 0 else None)

    def insert(self, index: int, link: Link):
        self._items.insert(max(0, min(index, len(self._items))), link)
        self.notify()

    def replace(self, link_id: str, link: Link) -> bool:
        i = self.index_of(link_id)
        if i is None:
            return False
        self._items[i] = link
        self.notify()
        return True

    def remove(self, link_id: str) -> Optional[Placement]:
        placement = self.placement(link_id)
        if placement is None:
            return None
        del self._items[placement.index]
        self.notify()
        return placement

    def restore(self, link: Link, placement: Optional[Placement]):
        """
        Put a removed link back where it was: right after its old neighbour
        if that neighbour is still here, otherwise at its old index.
        """
        if link.id in self:
            self.replace(link.id, link)
            return
        if placement is None:
            self.insert(0, link)
            return
        if placement.anchor_id is None:
            self.insert(0, link)
            return
        anchor = self.index_of(placement.anchor_id)
        self.insert(anchor + 1 if anchor is not None else placement.index, link)

    def insert_sorted(self, link: Link):
        """Insert by created_at, newest first."""
        for i, item in enumerate(self._items):
            if item.created_at < link.created_at:
                self.insert(i, link)
                return
        self.insert(len(self._items), link)

    def reset(self, links: Iterable[Link]):
        self._items = list(links)
        self.notify()

    def extend(self, links: Iterable[Link]) -> int:
        present = set(self.ids)
        added = []
        for link in links:
            if link.id not in present:
                present.add(link.id)
                added.append(link)
        self._items.extend(added)
        if added:
            self.notify()
        return len(added)
