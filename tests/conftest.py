"""
Pytest configuration and fixtures for LearnLoop tests.
"""
import sys
import os
from unittest.mock import AsyncMock

import pytest

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

from models.item import FollowUpQuestion, Item  # noqa: E402
from services.learning_api import LearningApiClient  # noqa: E402
from services.storage import MemoryStorage  # noqa: E402


class FakeClock:
    """Deterministic wall clock in epoch milliseconds."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.ms = start_ms

    def now_ms(self) -> int:
        return self.ms

    def advance(self, seconds: float):
        self.ms += int(seconds * 1000)


def make_item(n, **overrides) -> Item:
    data = {
        "questionId": f"q{n}",
        "topicId": "math",
        "subTopic": "limits",
        "flashcard": f"Card {n}",
        "flashcardAnswer": f"Answer {n}",
        "explanation": f"Because {n}",
    }
    data.update(overrides)
    return Item.model_validate(data)


def make_follow_up(item_id="q1", key="B") -> FollowUpQuestion:
    return FollowUpQuestion.model_validate({
        "questionId": f"f-{item_id}",
        "question": f"Follow-up for {item_id}",
        "options": {"A": "one", "B": "two", "C": "three", "D": "four"},
        "key": key,
        "explanation": "Two is right",
        "difficulty": "medium",
    })


def make_api(batch=None) -> AsyncMock:
    """Learning backend double with a healthy default for every call."""
    api = AsyncMock(spec=LearningApiClient)
    api.fetch_due_review.return_value = None
    api.fetch_due_reviews.return_value = []
    api.start_session.return_value = ["limits", "derivatives"]
    if batch is None:
        api.fetch_batch.side_effect = lambda size: [make_item(i) for i in range(1, size + 1)]
    else:
        api.fetch_batch.return_value = batch
    api.fetch_session_item.return_value = (make_item(100), False)
    api.reset_shown.return_value = True
    api.submit_rating.return_value = "medium"
    api.fetch_follow_up.side_effect = lambda topic, difficulty, sub_topic=None, item_id=None: make_follow_up(item_id)
    api.submit_answer.return_value = {"correct": True, "explanation": "Two is right"}
    api.get_cooldown.return_value = {"active": False, "remainingSeconds": 0}
    api.complete_cooldown.return_value = {"success": True}
    return api


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def api():
    return make_api()
