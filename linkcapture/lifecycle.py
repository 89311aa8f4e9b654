import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from .enrichment import MetadataCoordinator
from .models import Session

logger = logging.getLogger(__name__)


class AppState(str, Enum):
    RESUMED = "resumed"
    INACTIVE = "inactive"
    PAUSED = "paused"
    DETACHED = "detached"


class AppLifecycleObserver:
    """
    Turns foreground transitions into metadata retry passes. Nothing else
    triggers automatic retries.
    """

    def __init__(
        self,
        coordinator: MetadataCoordinator,
        session_provider: Callable[[], Optional[Session]],
    ):
        self.coordinator = coordinator
        self.session_provider = session_provider
        self.state: Optional[AppState] = None

    def on_state_changed(self, state: AppState) -> Optional[asyncio.Task]:
        previous, self.state = self.state, AppState(state)
        logger.debug("app state %s -> %s", previous, self.state)
        if self.state is not AppState.RESUMED:
            return None

        session = self.session_provider()
        if session is None:
            logger.debug("app resumed with nobody signed in, skipping metadata retry")
            return None
        return asyncio.ensure_future(self._retry(session))

    async def _retry(self, session: Session) -> int:
        try:
            updated = await self.coordinator.retry_incomplete(session)
        except Exception:
            logger.exception("metadata retry on resume failed")
            return 0
        if updated:
            logger.info("metadata retry on resume updated %d links", updated)
        return updated
