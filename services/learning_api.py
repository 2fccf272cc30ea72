import httpx
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from core.config import settings
from core.errors import (
    AuthRequiredError,
    CooldownViolationError,
    LearningApiError,
    NotFoundError,
    SessionRequiredError,
    TransientApiError,
)
from core.logger import logger
from models.item import FollowUpQuestion, Item


class LearningApiClient:
    """Client for the learning content backend (JSON over HTTPS, bearer auth)."""

    def __init__(self, token: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.token = token
        self.client = httpx.AsyncClient(
            base_url=base_url or settings.API_BASE_URL,
            timeout=timeout or settings.API_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                       json: Optional[Dict[str, Any]] = None, auth: bool = True) -> Any:
        headers = {"Content-Type": "application/json"}
        if auth:
            if not self.token:
                raise AuthRequiredError("Authentication required", status=401)
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = await self.client.request(method, path, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Learning API timeout", path=path)
            raise TransientApiError(f"Network timeout calling {path}") from e
        except httpx.TransportError as e:
            logger.warning("Learning API unreachable", path=path, error=str(e))
            raise TransientApiError(f"Network error calling {path}: {e}") from e

        if response.status_code == 204:
            return None
        if response.is_success:
            return response.json()

        raise self._error_for(response)

    def _error_for(self, response: httpx.Response) -> LearningApiError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        status = response.status_code
        message = body.get("error") or body.get("message") or f"Request failed ({status})"

        if body.get("requiresSession") or "No active session" in message:
            return SessionRequiredError(message, status=status)
        if status == 401:
            return AuthRequiredError(message, status=status)
        if status == 404:
            return NotFoundError(message, status=status)
        if status == 429:
            remaining = int(body.get("remainingSeconds") or 0)
            return CooldownViolationError(message, remaining_seconds=remaining, status=status)
        if status >= 500:
            logger.error("Learning API error", status=status, error=message)
            return TransientApiError(message, status=status)
        return LearningApiError(message, status=status)

    async def _with_session(self, method: str, path: str, **kwargs) -> Any:
        """Run a call; if the backend has no active session, start one and retry once."""
        try:
            return await self._request(method, path, **kwargs)
        except SessionRequiredError:
            logger.info("Backend requires a session, starting one", path=path)
            await self.start_session()
            return await self._request(method, path, **kwargs)

    @staticmethod
    def _parse_item(data: Any) -> Optional[Item]:
        if not isinstance(data, dict) or "flashcard" not in data:
            return None
        try:
            return Item.model_validate(data)
        except ValidationError as e:
            raise LearningApiError(f"Malformed flashcard payload: {e}") from e

    # === Content ===

    async def fetch_due_review(self) -> Optional[Item]:
        """Next item whose review date has passed, if any."""
        data = await self._with_session("GET", "/api/flashcards/next-question")
        item = self._parse_item(data)
        if item and not item.due_review:
            item = item.model_copy(update={"due_review": True})
        return item

    async def fetch_due_reviews(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/flashcards/due-reviews")
        return list((data or {}).get("dueQuestions", []))

    async def fetch_session_item(self, exclude_ids: Optional[List[str]] = None) -> Tuple[Optional[Item], bool]:
        """Random unseen item from the session's subtopic pool. Returns (item, all_completed)."""
        params = {"excludeIds": ",".join(exclude_ids)} if exclude_ids else None
        data = await self._with_session("GET", "/api/flashcards/random-json", params=params)
        if isinstance(data, dict) and data.get("allCompleted"):
            return None, True
        return self._parse_item(data), False

    async def start_session(self, force: bool = False) -> List[str]:
        data = await self._request("POST", "/api/flashcards/start-session", json={"force": force})
        subtopics = list((data or {}).get("sessionSubtopics", []))
        logger.info("Backend session started", subtopics=len(subtopics), force=force)
        return subtopics

    async def fetch_batch(self, size: int) -> List[Item]:
        data = await self._with_session("GET", "/api/flashcards/batch", params={"size": size})
        cards = (data or {}).get("flashcards", [])
        items = [self._parse_item(card) for card in cards]
        return [item for item in items if item is not None]

    async def reset_shown(self) -> bool:
        """Reset the backend's shown-item bookkeeping. The endpoint may not exist."""
        try:
            await self._request("POST", "/api/flashcards/reset-shown")
            return True
        except NotFoundError:
            logger.info("Backend has no reset-shown endpoint")
            return False

    # === Rating and follow-up ===

    async def submit_rating(self, item_id: str, rating: int) -> str:
        data = await self._with_session(
            "POST", "/api/flashcards/submit-rating", json={"questionId": item_id, "rating": rating}
        )
        return (data or {}).get("difficulty") or "medium"

    async def fetch_follow_up(self, topic: str, difficulty: str, sub_topic: Optional[str] = None,
                              item_id: Optional[str] = None) -> Optional[FollowUpQuestion]:
        params = {}
        if sub_topic:
            params["subTopic"] = sub_topic
        if item_id:
            params["flashcardQuestionId"] = item_id
        try:
            data = await self._with_session(
                "GET", f"/api/flashcards/question/followup/{topic}/{difficulty}", params=params or None
            )
        except NotFoundError:
            return None
        if not data:
            return None
        try:
            return FollowUpQuestion.model_validate(data)
        except ValidationError as e:
            raise LearningApiError(f"Malformed follow-up payload: {e}") from e

    async def submit_answer(self, question_id: str, option_key: str, item_id: Optional[str] = None,
                            sub_topic: Optional[str] = None) -> Dict[str, Any]:
        body = {"questionId": question_id, "selectedOption": f"Option {option_key}"}
        if item_id:
            body["flashcardQuestionId"] = item_id
        if sub_topic:
            body["subTopic"] = sub_topic
        data = await self._with_session("POST", "/api/flashcards/question/submit", json=body)
        return data or {}

    # === Cooldown ===

    async def get_cooldown(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/flashcards/cooldown") or {}

    async def complete_cooldown(self, completed_at_ms: int) -> Dict[str, Any]:
        return await self._request(
            "POST", "/api/flashcards/cooldown/complete", json={"completedAt": completed_at_ms}
        ) or {}
