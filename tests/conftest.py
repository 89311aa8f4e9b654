"""
Shared pytest fixtures for linkcapture tests.

FlakyStore wraps the in-memory JSON store so individual store calls can be
made to fail or to wait on an asyncio.Event, which is how remote latency and
remote failures are simulated.
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from linkcapture.models import Link, Session
from linkcapture.mutations import OptimisticMutationEngine
from linkcapture.pagination import CollectionLoader
from linkcapture.storage import ANY_SPACE, JsonLinkStore
from linkcapture.urls import normalize

OWNER = "owner-1"


class FlakyStore(JsonLinkStore):
    def __init__(self, path=None):
        super().__init__(path)
        self.calls: List[str] = []
        self._plans: Dict[str, List[Tuple[Optional[asyncio.Event], Optional[Exception]]]] = defaultdict(list)

    def plan(self, op: str, error: Optional[Exception] = None, gate: Optional[asyncio.Event] = None):
        """Queue behaviour for the next call of `op` (insert/update/delete/list)."""
        self._plans[op].append((gate, error))

    async def _hold(self, op: str):
        self.calls.append(op)
        if not self._plans[op]:
            return
        gate, error = self._plans[op].pop(0)
        if gate is not None:
            await gate.wait()
        if error is not None:
            raise error

    async def insert_link(self, link):
        await self._hold("insert")
        return await super().insert_link(link)

    async def update_link(self, link_id, owner_id, changes):
        await self._hold("update")
        return await super().update_link(link_id, owner_id, changes)

    async def delete_link(self, link_id, owner_id):
        await self._hold("delete")
        return await super().delete_link(link_id, owner_id)

    async def list_links(self, owner_id, offset, limit, space_id=ANY_SPACE):
        # read first, then wait: the response is stale by the time it lands
        rows = await super().list_links(owner_id, offset, limit, space_id)
        await self._hold("list")
        return rows


def seed_links(store: JsonLinkStore, count: int, owner_id: str = OWNER, space_id=None) -> List[Link]:
    """Put `count` links straight into the store; returns them newest first."""
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    links = []
    for i in range(count):
        url = f"https://example.com/item/{i}"
        created = base + timedelta(minutes=i)
        links.append(
            Link(
                id=f"link-{i:03d}",
                owner_id=owner_id,
                url=url,
                normalized_url=normalize(url),
                domain="example.com",
                title=f"Item {i}",
                space_id=space_id,
                created_at=created,
                updated_at=created,
            )
        )
    store.state.links.extend(links)
    return sorted(links, key=lambda l: l.created_at, reverse=True)


@pytest.fixture
def session():
    return Session(owner_id=OWNER)


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def engine(store):
    return OptimisticMutationEngine(store)


@pytest.fixture
def loader(store, engine, session):
    loader = CollectionLoader(store, engine, session, page_size=30)
    yield loader
    loader.close()
