from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from core.config import settings
from core.logger import logger
from models.item import Item
from services.learning_api import LearningApiClient


class SelectionKind(str, Enum):
    ITEM = "item"
    NEEDS_NEW_SESSION = "needs_new_session"
    EXHAUSTED = "exhausted"


class ItemSource(str, Enum):
    DUE_REVIEW = "due_review"
    BATCH = "batch"
    POOL = "pool"


@dataclass
class SelectionContext:
    subtopic_pool: List[str] = field(default_factory=list)
    batch: Optional[List[Item]] = None
    batch_index: int = 0
    exclude_ids: List[str] = field(default_factory=list)


@dataclass
class Selection:
    kind: SelectionKind
    item: Optional[Item] = None
    source: Optional[ItemSource] = None


class ContentSelector:
    """
    Chooses the next item in fixed priority order:
    due review, current batch, fresh pick from the subtopic pool,
    then a bounded new-session / reset-shown ladder.

    Network errors are not caught here; they reach the orchestrator as
    retryable errors.
    """

    def __init__(self, api: LearningApiClient, max_resets: Optional[int] = None):
        self.api = api
        self.max_resets = max_resets if max_resets is not None else settings.SHOWN_RESET_RETRIES

    async def next(self, context: SelectionContext) -> Selection:
        due = await self.api.fetch_due_review()
        if due:
            logger.info("Serving due review", item_id=due.item_id)
            return Selection(SelectionKind.ITEM, due, ItemSource.DUE_REVIEW)

        if context.batch is not None:
            if context.batch_index < len(context.batch):
                return Selection(SelectionKind.ITEM, context.batch[context.batch_index], ItemSource.BATCH)
            logger.info("Batch index exhausted", served=context.batch_index)
            return Selection(SelectionKind.NEEDS_NEW_SESSION)

        item, all_completed = await self.api.fetch_session_item(context.exclude_ids)
        if item:
            return Selection(SelectionKind.ITEM, item, ItemSource.POOL)
        if not all_completed:
            return Selection(SelectionKind.EXHAUSTED)

        return await self._fallback(context)

    async def _fallback(self, context: SelectionContext) -> Selection:
        logger.info("Subtopic pool completed, forcing a new session")
        context.subtopic_pool = await self.api.start_session(force=True)
        item, _ = await self.api.fetch_session_item(context.exclude_ids)
        if item:
            return Selection(SelectionKind.ITEM, item, ItemSource.POOL)

        for attempt in range(1, self.max_resets + 1):
            logger.info("Pool still exhausted, resetting shown flags", attempt=attempt)
            await self.api.reset_shown()
            item, _ = await self.api.fetch_session_item(context.exclude_ids)
            if item:
                return Selection(SelectionKind.ITEM, item, ItemSource.POOL)

        logger.warning("Content exhausted after bounded retries", attempts=self.max_resets)
        return Selection(SelectionKind.EXHAUSTED)
