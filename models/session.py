from enum import Enum
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from models.cooldown import CooldownState
from models.integrity import IntegrityPrompt, IntegrityState, IntegrityStatus
from models.item import AnswerResult, FollowUpQuestion, Item
from models.timer import Timer


class Phase(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    PRESENTING = "presenting"
    RATED = "rated"
    FOLLOW_UP = "follow_up"
    ANSWERED = "answered"
    BATCH_COMPLETE = "batch_complete"
    COOLDOWN = "cooldown"


class ItemKind(str, Enum):
    FLASHCARD = "flashcard"
    QUIZ = "quiz"


class Session(BaseModel):
    session_id: str
    item_kind: ItemKind = ItemKind.FLASHCARD
    subtopic_pool: List[str] = Field(default_factory=list)
    batch_size: int = 6
    items_completed: int = 0
    correct_count: int = 0
    incorrect_count: int = 0
    results: List[AnswerResult] = Field(default_factory=list)
    phase: Phase = Phase.IDLE
    started_at_ms: int

    # Strict-batch bookkeeping; None in pool mode
    batch: Optional[List[Item]] = None
    batch_index: int = 0
    recent_item_ids: List[str] = Field(default_factory=list)

    # In-flight item state
    current_item: Optional[Item] = None
    current_rating: Optional[int] = None
    follow_up: Optional[FollowUpQuestion] = None

    @property
    def accuracy(self) -> float:
        answered = self.correct_count + self.incorrect_count
        return self.correct_count / answered if answered else 0.0

    def clear_item(self):
        self.current_item = None
        self.current_rating = None
        self.follow_up = None


class BatchSummary(BaseModel):
    results: List[AnswerResult]
    correct: int
    incorrect: int
    accuracy: float
    duration_seconds: float


class Snapshot(BaseModel):
    """Timestamped projection of a session, written on every transition."""
    timestamp: int
    session: Session
    timers: Dict[str, Timer] = Field(default_factory=dict)
    integrity: IntegrityState = Field(default_factory=IntegrityState)
    cooldown: Optional[CooldownState] = None


class SessionView(BaseModel):
    """What the presentation layer renders."""
    phase: Phase
    session_id: Optional[str] = None
    item_kind: Optional[ItemKind] = None
    item: Optional[Item] = None
    rating: Optional[int] = None
    follow_up: Optional[FollowUpQuestion] = None
    timers: Dict[str, int] = Field(default_factory=dict, description="Remaining seconds per active timer")
    items_completed: int = 0
    batch_size: int = 0
    correct_count: int = 0
    incorrect_count: int = 0
    last_result: Optional[AnswerResult] = None
    integrity_status: IntegrityStatus = IntegrityStatus.NORMAL
    tab_switch_count: int = 0
    prompt: Optional[IntegrityPrompt] = None
    cooldown_remaining_seconds: int = 0
    cooldown_source: Optional[Literal["server", "local"]] = None
    summary: Optional[BatchSummary] = None
    ended_reason: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    directives: List[str] = Field(default_factory=list)
