from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class Item(BaseModel):
    """An immutable content card supplied by the learning backend."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    item_id: str = Field(..., alias="questionId", description="Backend question id")
    topic_id: str = Field(..., alias="topicId")
    sub_topic: Optional[str] = Field(None, alias="subTopic")
    difficulty_hint: Optional[str] = Field(None, alias="difficulty")
    prompt: str = Field(..., alias="flashcard", description="Front of the card")
    answer: str = Field("", alias="flashcardAnswer", description="Back of the card")
    explanation: str = ""
    topic: Optional[str] = None
    due_review: bool = Field(False, alias="isDueReview")


class FollowUpQuestion(BaseModel):
    """Difficulty-calibrated practice question shown after a rating."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    question_id: str = Field(..., alias="questionId")
    question: str = ""
    options: Dict[str, str] = Field(..., description="Labeled choices, e.g. {'A': '...', 'B': '...'}")
    correct_key: str = Field(..., alias="key")
    explanation: str = ""
    difficulty: str = ""
    topic: Optional[str] = None


class AnswerResult(BaseModel):
    item_id: str
    question_id: Optional[str] = None
    rating: Optional[int] = None
    selected_option: Optional[str] = Field(None, description="None means the follow-up timed out")
    correct_option: str
    correct: bool
    explanation: str = ""
    difficulty: str = ""
