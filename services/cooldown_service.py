from typing import Optional

from pydantic import ValidationError

from core.config import settings
from core.errors import CooldownViolationError, LearningApiError, TransientApiError
from core.logger import logger
from core.ports import Clock
from models.cooldown import CooldownCheck, CooldownState
from services.learning_api import LearningApiClient
from services.persistence_service import PersistenceStore


class CooldownManager:
    """
    Rest period between batches.

    The backend is authoritative; the locally persisted completion time is
    used only while the backend is unreachable, and is re-validated against
    the backend on every can_start() call.
    """

    def __init__(self, api: LearningApiClient, store: PersistenceStore, clock: Clock, key: str,
                 duration_seconds: Optional[int] = None):
        self.api = api
        self.store = store
        self.clock = clock
        self.key = f"{key}:cooldown"
        duration = duration_seconds if duration_seconds is not None else settings.COOLDOWN_SECONDS
        self.duration_ms = duration * 1000
        self.state: Optional[CooldownState] = None

    async def load(self) -> Optional[CooldownState]:
        record = await self.store.restore(self.key)
        if not record:
            self.state = None
            return None
        try:
            self.state = CooldownState.model_validate(record)
        except ValidationError as e:
            logger.warning("Discarding unreadable cooldown record", error=str(e))
            await self.store.clear(self.key)
            self.state = None
        return self.state

    def adopt(self, state: Optional[CooldownState]):
        """Take over a cooldown state restored from a session snapshot."""
        if state is not None and self.state is None:
            self.state = state

    async def start(self, completed_at_ms: int) -> CooldownState:
        """Called exactly once when a batch completes."""
        self.state = CooldownState(batch_completed_at_ms=completed_at_ms, duration_ms=self.duration_ms)
        await self.store.save(self.key, self.state.model_dump())

        try:
            await self.api.complete_cooldown(completed_at_ms)
            self.state.source = "server"
            await self.store.save(self.key, self.state.model_dump())
        except LearningApiError as e:
            # Local timer still drives the display; can_start() re-checks with the server.
            logger.warning("Could not notify backend of batch completion", error=str(e))

        logger.info("Cooldown started", completed_at=completed_at_ms, source=self.state.source)
        return self.state

    async def can_start(self) -> CooldownCheck:
        try:
            if self.state and self.state.source == "local":
                # The backend never acknowledged this batch; tell it before asking.
                await self.api.complete_cooldown(self.state.batch_completed_at_ms)
                self.state.source = "server"
                await self.store.save(self.key, self.state.model_dump())
            status = await self.api.get_cooldown()
        except CooldownViolationError as e:
            return await self._server_says(max(1, e.remaining_seconds))
        except TransientApiError as e:
            logger.warning("Cooldown server unreachable, using local state", error=str(e))
            remaining = self.remaining()
            return CooldownCheck(allowed=remaining <= 0, remaining_seconds=remaining, source="local")

        remaining = int(status.get("remainingSeconds") or 0)
        if status.get("active") and remaining <= 0:
            remaining = 1
        return await self._server_says(remaining)

    async def _server_says(self, remaining_seconds: int) -> CooldownCheck:
        if remaining_seconds > 0:
            # Re-anchor local state on the authoritative remaining time
            now = self.clock.now_ms()
            completed_at = now - (self.duration_ms - remaining_seconds * 1000)
            self.state = CooldownState(
                batch_completed_at_ms=completed_at, duration_ms=self.duration_ms, source="server"
            )
            await self.store.save(self.key, self.state.model_dump())
        logger.debug("Cooldown check", remaining=remaining_seconds, source="server")
        return CooldownCheck(allowed=remaining_seconds <= 0, remaining_seconds=remaining_seconds, source="server")

    def remaining(self) -> int:
        """Seconds left according to the local state, floored at zero."""
        if not self.state:
            return 0
        ms = self.state.remaining_ms(self.clock.now_ms())
        return -(-ms // 1000)

    async def require_allowed(self) -> CooldownCheck:
        check = await self.can_start()
        if not check.allowed:
            raise CooldownViolationError(
                f"Cooldown active, {check.remaining_seconds}s remaining",
                remaining_seconds=check.remaining_seconds,
            )
        return check

    async def clear(self):
        self.state = None
        await self.store.clear(self.key)
