from typing import Dict, Optional
from core.logger import logger
from engine.runtime import SessionRuntime

class RuntimeRegistry:
    """Live session runtimes in this process, keyed by session id."""
    _instance = None
    _runtimes: Dict[str, SessionRuntime] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(RuntimeRegistry, cls).__new__(cls)
        return cls._instance

    def get(self, session_id: str) -> Optional[SessionRuntime]:
        return self._runtimes.get(session_id)

    async def register(self, runtime: SessionRuntime):
        """Register and start a runtime, stopping any stale one for the same session."""
        existing = self._runtimes.get(runtime.session_id)
        if existing is runtime:
            return
        if existing is not None:
            await existing.stop()
        self._runtimes[runtime.session_id] = runtime
        runtime.start()
        logger.debug("Registered runtime", session_id=runtime.session_id)

    async def discard(self, session_id: str, flush: bool = True):
        """Stop and forget the in-memory runtime. Persisted history is untouched."""
        runtime = self._runtimes.pop(session_id, None)
        if runtime is not None:
            await runtime.stop(flush=flush)
            logger.debug("Discarded runtime", session_id=session_id)

    async def stop_all(self):
        for session_id in list(self._runtimes):
            await self.discard(session_id)

    def __len__(self):
        return len(self._runtimes)

runtime_registry = RuntimeRegistry()
