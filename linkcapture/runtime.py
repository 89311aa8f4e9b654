import asyncio
import logging
from typing import Dict, Optional, Set

from .enrichment import Fetcher, MetadataCoordinator
from .lifecycle import AppLifecycleObserver, AppState
from .metadata import MetadataFetcher
from .models import Session
from .mutations import OptimisticMutationEngine
from .pagination import CollectionLoader
from .sharing import SaveFlow, ShareConsumer, ShareReconciler
from .storage import JsonLinkStore

logger = logging.getLogger(__name__)


class Workspace:
    """Everything one owner's screens need, wired to a shared store."""

    def __init__(self, store: JsonLinkStore, session: Session, fetcher: Optional[Fetcher] = None):
        config = store.config
        self.store = store
        self.session = session
        self.coordinator = MetadataCoordinator(
            store,
            fetcher or MetadataFetcher(config.metadata_timeout_seconds, config.metadata_proxy_url),
            config=config,
        )
        self.engine = OptimisticMutationEngine(store, on_created=self.coordinator.schedule)
        self.coordinator.engine = self.engine
        self.loader = CollectionLoader(
            store,
            self.engine,
            session,
            page_size=config.page_size,
            scroll_threshold=config.scroll_threshold,
        )
        self.reconciler = ShareReconciler(config.deep_link_scheme)
        self.consumer = ShareConsumer(self.reconciler, self.open_save_flow)
        self.lifecycle = AppLifecycleObserver(self.coordinator, lambda: self.session)
        self.save_flow: Optional[SaveFlow] = None
        self._flow_task: Optional[asyncio.Task] = None

    def ui_ready(self):
        """The list screen is up; pending and future shares may be delivered."""
        self.consumer.attach()

    def open_save_flow(self, url: str):
        flow = SaveFlow(self.engine, self.session)
        self.save_flow = flow
        self._flow_task = asyncio.ensure_future(flow.start(url))

    async def current_save_flow(self) -> Optional[SaveFlow]:
        # let a delivery scheduled by ui_ready() run first
        await asyncio.sleep(0)
        if self._flow_task is not None:
            await self._flow_task
        return self.save_flow

    def apply_config(self):
        config = self.store.config
        self.loader.page_size = config.page_size
        self.loader.scroll_threshold = config.scroll_threshold
        self.coordinator.limiter.per_second = config.rate_limit_per_second
        self.coordinator.limiter.per_minute = config.rate_limit_per_minute
        self.reconciler.scheme = config.deep_link_scheme
        fetcher = self.coordinator.fetcher
        if isinstance(fetcher, MetadataFetcher):
            fetcher.timeout = config.metadata_timeout_seconds
            fetcher.proxy_url = config.metadata_proxy_url

    async def close(self):
        self.consumer.detach()
        self.loader.close()
        await self.coordinator.close()


class Workspaces:
    """Per-owner workspaces over one store, created on first use."""

    def __init__(self, store: JsonLinkStore, fetcher: Optional[Fetcher] = None):
        self.store = store
        self.fetcher = fetcher
        self._workspaces: Dict[str, Workspace] = {}
        self._background: Set[asyncio.Task] = set()

    def get(self, session: Session) -> Workspace:
        ws = self._workspaces.get(session.owner_id)
        if ws is None:
            logger.debug("creating workspace for %s", session.owner_id)
            ws = Workspace(self.store, session, self.fetcher)
            self._workspaces[session.owner_id] = ws
        elif session.token and ws.session.token != session.token:
            ws.session = session
        return ws

    def resume(self, session: Session):
        """App launch or foreground: retry incomplete metadata in the background."""
        task = self.get(session).lifecycle.on_state_changed(AppState.RESUMED)
        if task is not None:
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return task

    def apply_config(self):
        for ws in self._workspaces.values():
            ws.apply_config()

    async def close(self):
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        for ws in self._workspaces.values():
            await ws.close()
        self._workspaces.clear()
