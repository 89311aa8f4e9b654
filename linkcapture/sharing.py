"""
Share-intent reconciliation and the save flow it opens.

The OS can deliver a shared URL before anything is listening (cold start)
or while the app is running (warm start). ShareReconciler keeps at most one
pending share in a single-slot mailbox; `attach` returns the current
snapshot and registers the listener in one step, and `consume` reads and
clears the slot in one step, so a share is handed to the save flow exactly
once no matter when the UI shows up or how often it is rebuilt.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from .errors import LinkCaptureError
from .models import Link, LinkPatch, PendingShare, Session
from .mutations import OptimisticMutationEngine
from .urls import coerce_url, extract_url

logger = logging.getLogger(__name__)

ShareListener = Callable[[PendingShare], None]
Defer = Callable[[Callable[[], None]], Any]


def parse_share_uri(uri: str, scheme: str) -> Optional[str]:
    """URL carried by `scheme://share?url=<percent-encoded-url>`, else None."""
    parts = urlsplit(uri.strip())
    if parts.scheme.lower() != scheme.lower():
        return None
    target = (parts.netloc or parts.path.strip("/")).lower()
    if target != "share":
        return None
    values = parse_qs(parts.query).get("url")
    if not values:
        return None
    return extract_url(values[0])


class ShareReconciler:
    def __init__(self, scheme: str = "linkcapture"):
        self.scheme = scheme
        self._pending: Optional[PendingShare] = None
        self._listeners: List[ShareListener] = []

    @property
    def pending(self) -> Optional[PendingShare]:
        return self._pending

    def receive_text(self, text: str) -> bool:
        """Share payload from the OS: free text that may contain a URL."""
        url = extract_url(text or "")
        if url is None:
            logger.info("shared text has no URL, ignoring")
            return False
        self._set(url)
        return True

    def receive_uri(self, uri: str) -> bool:
        """Deep link handed over by the OS to a new or running instance."""
        url = parse_share_uri(uri, self.scheme)
        if url is None:
            logger.warning("ignoring deep link %r (expected %s://share?url=...)", uri, self.scheme)
            return False
        self._set(url)
        return True

    def _set(self, url: str):
        if self._pending is not None:
            logger.info("replacing pending share %s with %s", self._pending.url, url)
        self._pending = PendingShare(url=url)
        logger.debug("share pending: %s", url)
        for listener in list(self._listeners):
            try:
                listener(self._pending)
            except Exception:
                logger.exception("share listener failed")

    def attach(self, listener: ShareListener) -> Tuple[Optional[PendingShare], Callable[[], None]]:
        """Register for future shares and return the current one, atomically."""
        self._listeners.append(listener)

        def detach():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return self._pending, detach

    def consume(self) -> Optional[str]:
        """Take the pending URL and clear the slot."""
        pending, self._pending = self._pending, None
        return pending.url if pending else None


class ShareConsumer:
    """
    UI-side half of the handshake. Both the cold-start snapshot and live
    notifications are delivered after the current render pass via `defer`,
    and delivery always goes through `consume`, so only one of them can
    win.
    """

    def __init__(
        self,
        reconciler: ShareReconciler,
        open_save_flow: Callable[[str], Any],
        defer: Optional[Defer] = None,
    ):
        self.reconciler = reconciler
        self.open_save_flow = open_save_flow
        self._defer = defer
        self._detach: Optional[Callable[[], None]] = None

    def _schedule(self, callback: Callable[[], None]):
        if self._defer is not None:
            self._defer(callback)
        else:
            asyncio.get_running_loop().call_soon(callback)

    def attach(self):
        if self._detach is not None:
            return
        snapshot, self._detach = self.reconciler.attach(self._on_share)
        if snapshot is not None:
            logger.debug("share was pending before attach (cold start)")
            self._schedule(self._deliver)

    def detach(self):
        if self._detach is not None:
            self._detach()
            self._detach = None

    def _on_share(self, pending: PendingShare):
        self._schedule(self._deliver)

    def _deliver(self):
        url = self.reconciler.consume()
        if url is None:
            return
        logger.info("opening save flow for shared %s", url)
        self.open_save_flow(url)


class SaveFlowStep(str, Enum):
    URL_INPUT = "url_input"
    SAVING = "saving"
    SUCCESS = "success"
    ADDING_DETAILS = "adding_details"
    ERROR = "error"


class SaveFlow:
    """The add-link flow: enter URL, save, then optionally add details."""

    def __init__(self, engine: OptimisticMutationEngine, session: Session):
        self.engine = engine
        self.session = session
        self.url = ""
        self.step = SaveFlowStep.URL_INPUT
        self.saved: Optional[Link] = None
        self.error: Optional[LinkCaptureError] = None
        self.prefilled = False

    async def start(self, prefill: Optional[str] = None) -> SaveFlowStep:
        if prefill:
            # shared URLs skip manual entry
            self.url = prefill
            self.prefilled = True
            return await self.submit()
        return self.step

    def update_url(self, url: str):
        self.url = url
        self.error = None
        if self.step is SaveFlowStep.ERROR:
            self.step = SaveFlowStep.URL_INPUT

    async def submit(self) -> SaveFlowStep:
        try:
            coerce_url(self.url)
        except LinkCaptureError as e:
            return self._fail(e)

        self.step = SaveFlowStep.SAVING
        try:
            self.saved = await self.engine.create(self.session, self.url)
        except LinkCaptureError as e:
            return self._fail(e)
        self.step = SaveFlowStep.SUCCESS
        return self.step

    def add_details(self):
        if self.saved is not None:
            self.step = SaveFlowStep.ADDING_DETAILS

    async def save_details(self, patch: LinkPatch) -> SaveFlowStep:
        if self.saved is None:
            raise RuntimeError("nothing saved yet")
        try:
            self.saved = await self.engine.update(self.session, self.saved.id, patch)
        except LinkCaptureError as e:
            return self._fail(e)
        self.step = SaveFlowStep.SUCCESS
        return self.step

    def _fail(self, error: LinkCaptureError) -> SaveFlowStep:
        logger.info("save flow for %r stopped: %s", self.url, error.message)
        self.error = error
        self.step = SaveFlowStep.ERROR
        return self.step

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "step": self.step.value,
            "prefilled": self.prefilled,
            "link": self.saved.model_dump(mode="json") if self.saved else None,
            "error": self.error.message if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
        }
