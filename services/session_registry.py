import hashlib
from typing import Callable, Dict, List, Optional

from core.logger import logger
from core.ports import Clock, QueuedDisplay, Storage
from services.learning_api import LearningApiClient
from services.session_service import SessionOrchestrator


def learner_key(token: str) -> str:
    """Stable storage key for a bearer token; the raw token is never persisted."""
    return hashlib.sha256(token.encode()).hexdigest()[:32]


class SessionRegistry:
    """One orchestrator per learner, created on first use."""

    def __init__(self, storage: Storage, clock: Optional[Clock] = None,
                 api_factory: Optional[Callable[[str], LearningApiClient]] = None):
        self.storage = storage
        self.clock = clock
        self.api_factory = api_factory or (lambda token: LearningApiClient(token=token))
        self._sessions: Dict[str, SessionOrchestrator] = {}

    def get(self, token: str) -> SessionOrchestrator:
        key = learner_key(token)
        orchestrator = self._sessions.get(key)
        if orchestrator is None:
            orchestrator = SessionOrchestrator(
                learner=key,
                api=self.api_factory(token),
                storage=self.storage,
                clock=self.clock,
                display=QueuedDisplay(),
            )
            self._sessions[key] = orchestrator
            logger.info("Orchestrator created", learner=key, total=len(self._sessions))
        return orchestrator

    def find(self, token: str) -> Optional[SessionOrchestrator]:
        return self._sessions.get(learner_key(token))

    def live(self) -> List[SessionOrchestrator]:
        return list(self._sessions.values())

    async def remove(self, token: str):
        orchestrator = self._sessions.pop(learner_key(token), None)
        if orchestrator:
            await orchestrator.api.aclose()

    async def close_all(self):
        """Host shutdown: snapshots are kept so learners can resume."""
        for orchestrator in list(self._sessions.values()):
            await orchestrator.close()
            await orchestrator.api.aclose()
        self._sessions.clear()
        logger.info("All orchestrators closed")
