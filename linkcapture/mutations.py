"""
Optimistic mutation engine.

Every create/update/delete is applied to the attached views immediately,
then sent to the store. When the store call fails the views go back to the
link's last known remote state and the typed error is re-raised, so callers
never rebuild prior state themselves.

Mutations on the same link are ordered by a monotonically increasing
sequence number. A mutation only touches the views when no newer mutation
on that link is still unresolved, so a slow failure cannot undo a later
change.
"""

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set

from .collection import LinkCollection, Placement
from .errors import DuplicateError, NotFoundError, ValidationError
from .models import (
    NOTE_MAX_LENGTH,
    TENTATIVE_PREFIX,
    Link,
    LinkPatch,
    Session,
    tentative_id,
    utcnow,
)
from .storage import LinkStore
from .urls import coerce_url, extract_domain, normalize

logger = logging.getLogger(__name__)

ENRICHED_FIELDS = ("title", "description", "thumbnail_url", "domain", "metadata")

Placements = Dict[int, Optional[Placement]]


@dataclass
class _Tracker:
    confirmed: Optional[Link]  # last known remote state; None = not in the store
    local: Optional[Link]  # what the views currently show
    confirmed_seq: int = 0
    unresolved: Set[int] = field(default_factory=set)


@dataclass(frozen=True)
class JournalEntry:
    event: int
    kind: str  # create | update | delete | confirm | rollback | enrich
    owner_id: str
    link_id: str
    record: Optional[Link]
    previous_id: Optional[str] = None


@dataclass
class Overlay:
    """Local state the loader must lay over freshly fetched rows."""

    created: List[Link] = field(default_factory=list)
    updated: Dict[str, Link] = field(default_factory=dict)
    deleted: Set[str] = field(default_factory=set)


def validate_note(note: Optional[str]):
    if note is not None and len(note) > NOTE_MAX_LENGTH:
        raise ValidationError(f"Note must be {NOTE_MAX_LENGTH} characters or less")


class OptimisticMutationEngine:
    def __init__(
        self,
        store: LinkStore,
        on_created: Optional[Callable[[Link], object]] = None,
        journal_size: int = 256,
    ):
        self.store = store
        self.on_created = on_created
        self._views: List[LinkCollection] = []
        self._trackers: Dict[str, _Tracker] = {}
        self._sequence = itertools.count(1)
        self._events = itertools.count(1)
        self._last_event = 0
        self._journal: Deque[JournalEntry] = deque(maxlen=journal_size)

    # views

    def attach(self, view: LinkCollection):
        if view not in self._views:
            self._views.append(view)

    def detach(self, view: LinkCollection):
        if view in self._views:
            self._views.remove(view)

    @property
    def views(self) -> List[LinkCollection]:
        return list(self._views)

    # local cache queries

    def get(self, link_id: str) -> Optional[Link]:
        tracker = self._trackers.get(link_id)
        if tracker is not None:
            return tracker.local
        for view in self._views:
            link = view.get(link_id)
            if link is not None:
                return link
        return None

    def known_normalized_urls(self, owner_id: str) -> Set[str]:
        urls = {
            l.normalized_url
            for view in self._views if view.owner_id == owner_id
            for l in view.items
        }
        for tracker in self._trackers.values():
            if tracker.local is not None and tracker.local.owner_id == owner_id:
                urls.add(tracker.local.normalized_url)
        return urls

    def is_pending(self, link_id: str) -> bool:
        tracker = self._trackers.get(link_id)
        return bool(tracker and tracker.unresolved)

    @property
    def watermark(self) -> int:
        return self._last_event

    def overlay(self, owner_id: str, since: int) -> Overlay:
        """
        Changes a page fetch started at `since` could not have seen, plus
        everything still in flight.
        """
        latest: Dict[str, JournalEntry] = {}
        for entry in self._journal:
            if entry.event > since and entry.owner_id == owner_id:
                latest[entry.link_id] = entry
                if entry.previous_id:
                    # tentative record was replaced by the stored one
                    latest.pop(entry.previous_id, None)

        result = Overlay()
        created: Dict[str, Link] = {}
        for link_id, entry in latest.items():
            if entry.record is None:
                result.deleted.add(link_id)
            elif entry.kind == "create":
                created[link_id] = entry.record
            else:
                result.updated[link_id] = entry.record

        for link_id, tracker in self._trackers.items():
            if not tracker.unresolved:
                continue
            record = tracker.local or tracker.confirmed
            if record is None or record.owner_id != owner_id:
                continue
            if tracker.local is None:
                result.deleted.add(link_id)
                created.pop(link_id, None)
                result.updated.pop(link_id, None)
            elif tracker.local.tentative:
                created[link_id] = tracker.local
            else:
                result.updated[link_id] = tracker.local

        result.created = sorted(created.values(), key=lambda l: l.created_at, reverse=True)
        return result

    # mutations

    async def create(
        self,
        session: Session,
        url: str,
        note: Optional[str] = None,
        space_id: Optional[str] = None,
        tag_ids: Iterable[str] = (),
    ) -> Link:
        raw = coerce_url(url)
        normalized = normalize(raw)
        validate_note(note)
        if normalized in self.known_normalized_urls(session.owner_id):
            logger.info("duplicate link %s for %s, skipping save", normalized, session.owner_id)
            raise DuplicateError(normalized)

        domain = extract_domain(raw)
        now = utcnow()
        local = Link(
            id=tentative_id(),
            owner_id=session.owner_id,
            url=raw,
            normalized_url=normalized,
            domain=domain,
            title=domain,
            note=note,
            space_id=space_id,
            tag_ids=list(tag_ids),
            created_at=now,
            updated_at=now,
            tentative=True,
        )
        seq = self._begin(local.id, None, local)
        placements: Placements = {}
        for view in self._views:
            if view.accepts(local):
                view.insert(0, local)
        self._log("create", local)
        logger.debug("created %s locally for %s", local.id, normalized)

        try:
            stored = await self.store.insert_link(local)
        except Exception as e:
            logger.warning("save of %s failed, rolling back: %s", normalized, e)
            self._settle(local.id, seq, None, placements, failed=True)
            raise

        tracker = self._trackers.pop(local.id)
        tracker.unresolved.discard(seq)
        for view in self._views:
            if not view.replace(local.id, stored) and view.accepts(stored) and stored.id not in view:
                view.insert_sorted(stored)
        self._log("create", stored, previous_id=local.id)
        logger.info("saved link %s (%s)", stored.id, normalized)

        if self.on_created is not None:
            self.on_created(stored)
        return stored

    async def update(self, session: Session, link_id: str, patch: LinkPatch) -> Link:
        current = self._require_local(session, link_id)
        changes = patch.changes()
        validate_note(changes.get("note"))
        if not changes:
            return current

        seq = self._begin(link_id, current, current)
        optimistic = current.model_copy(update={**changes, "updated_at": utcnow()})
        placements = self._placements(link_id)
        self._show(link_id, optimistic, placements, insert_new=True)
        self._trackers[link_id].local = optimistic
        self._log("update", optimistic)

        try:
            stored = await self.store.update_link(link_id, session.owner_id, changes)
        except Exception as e:
            logger.warning("update of %s failed, rolling back: %s", link_id, e)
            self._settle(link_id, seq, None, placements, failed=True)
            raise

        self._settle(link_id, seq, stored, placements)
        return stored

    async def mark_opened(self, session: Session, link_id: str) -> Link:
        return await self.update(session, link_id, LinkPatch(opened_at=utcnow()))

    async def delete(self, session: Session, link_id: str) -> None:
        current = self._require_local(session, link_id)

        seq = self._begin(link_id, current, current)
        placements = self._placements(link_id)
        self._show(link_id, None, placements)
        self._trackers[link_id].local = None
        self._log("delete", None, owner_id=current.owner_id, link_id=link_id)

        try:
            await self.store.delete_link(link_id, session.owner_id)
        except Exception as e:
            logger.warning("delete of %s failed, restoring: %s", link_id, e)
            self._settle(link_id, seq, None, placements, failed=True)
            raise

        self._settle(link_id, seq, None, placements)

    def apply_enrichment(self, link: Link):
        """Merge freshly fetched metadata into the views without reordering."""
        fields = {name: getattr(link, name) for name in ENRICHED_FIELDS}
        tracker = self._trackers.get(link.id)
        if tracker is not None:
            if tracker.confirmed is not None:
                tracker.confirmed = tracker.confirmed.model_copy(update=fields)
            if tracker.local is not None:
                tracker.local = tracker.local.model_copy(update=fields)
        merged = link
        for view in self._views:
            current = view.get(link.id)
            if current is not None:
                merged = current.model_copy(update=fields)
                view.replace(link.id, merged)
        self._log("enrich", merged)

    # internals

    def _require_local(self, session: Session, link_id: str) -> Link:
        current = self.get(link_id)
        if current is None or current.owner_id != session.owner_id:
            raise NotFoundError(f"link {link_id} not found")
        if current.tentative or link_id.startswith(TENTATIVE_PREFIX):
            raise ValidationError("This link is still being saved")
        return current

    def _begin(self, link_id: str, confirmed: Optional[Link], local: Optional[Link]) -> int:
        seq = next(self._sequence)
        tracker = self._trackers.get(link_id)
        if tracker is None:
            tracker = _Tracker(confirmed=confirmed, local=local)
            self._trackers[link_id] = tracker
        tracker.unresolved.add(seq)
        return seq

    def _settle(
        self,
        link_id: str,
        seq: int,
        stored: Optional[Link],
        placements: Placements,
        failed: bool = False,
    ):
        tracker = self._trackers[link_id]
        tracker.unresolved.discard(seq)
        if not failed and seq >= tracker.confirmed_seq:
            tracker.confirmed = stored
            tracker.confirmed_seq = seq

        newer = [s for s in tracker.unresolved if s > seq]
        if newer:
            logger.debug(
                "%s: mutation %d resolved behind newer mutation %d, leaving view",
                link_id, seq, max(newer),
            )
        else:
            self._show(link_id, tracker.confirmed, placements)
            tracker.local = tracker.confirmed
            if tracker.confirmed is None:
                owner_id = (stored.owner_id if stored else None) or self._owner_of(link_id)
                self._log("rollback" if failed else "confirm", None, owner_id=owner_id, link_id=link_id)
            else:
                self._log("rollback" if failed else "confirm", tracker.confirmed)

        if not tracker.unresolved:
            del self._trackers[link_id]

    def _placements(self, link_id: str) -> Placements:
        return {
            id(view): view.placement(link_id)
            for view in self._views if link_id in view
        }

    def _show(
        self,
        link_id: str,
        record: Optional[Link],
        placements: Placements,
        insert_new: bool = False,
    ):
        for view in self._views:
            present = link_id in view
            if record is None or not view.accepts(record):
                if present:
                    view.remove(link_id)
            elif present:
                view.replace(link_id, record)
            elif id(view) in placements:
                view.restore(record, placements[id(view)])
            elif insert_new:
                view.insert_sorted(record)

    def _owner_of(self, link_id: str) -> str:
        for entry in reversed(self._journal):
            if entry.link_id == link_id:
                return entry.owner_id
        return ""

    def _log(
        self,
        kind: str,
        record: Optional[Link],
        owner_id: Optional[str] = None,
        link_id: Optional[str] = None,
        previous_id: Optional[str] = None,
    ):
        event = next(self._events)
        self._last_event = event
        self._journal.append(
            JournalEntry(
                event=event,
                kind=kind,
                owner_id=owner_id or (record.owner_id if record else ""),
                link_id=link_id or (record.id if record else ""),
                record=record,
                previous_id=previous_id,
            )
        )
