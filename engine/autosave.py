import asyncio

from core.config import settings
from core.exceptions import PersistenceError
from core.logger import logger
from engine.state import SessionState


class AutosaveDriver:
    """
    Periodically overwrites the persisted snapshot of one session.

    A failed flush keeps the session dirty and is retried on the next
    interval; it never raises into the caller's loop.
    """

    def __init__(self, state: SessionState, gateway, interval: float = None):
        self.state = state
        self.gateway = gateway
        self.interval = interval if interval is not None else settings.AUTOSAVE_INTERVAL_SECONDS
        self.failures = 0
        self._in_flight = False

    async def flush(self, force: bool = False) -> bool:
        """Write the current snapshot. Returns True when it reached the store."""
        if self._in_flight:
            return False
        if not force and not self.state.is_dirty:
            return True

        # Capture synchronously so the snapshot is consistent across the await
        revision = self.state.revision
        snapshot = self.state.snapshot()

        self._in_flight = True
        try:
            await self.gateway.upsert_session_snapshot(self.state.session_id, snapshot)
        except PersistenceError as e:
            self.failures += 1
            logger.warning(
                "Autosave failed, retrying next interval",
                session_id=self.state.session_id,
                failures=self.failures,
                error=str(e),
            )
            return False
        finally:
            self._in_flight = False

        self.failures = 0
        self.state.mark_flushed(revision)
        logger.debug("Session autosaved", session_id=self.state.session_id, revision=revision)
        return True

    async def run(self):
        while not self.state.completed:
            await asyncio.sleep(self.interval)
            if self.state.completed:
                break
            await self.flush()
