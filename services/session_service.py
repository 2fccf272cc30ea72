import uuid
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional

from pydantic import ValidationError

from core.config import settings
from core.errors import (
    AuthRequiredError,
    ContentExhaustedError,
    CooldownViolationError,
    InvalidTransitionError,
    LearningApiError,
)
from core.logger import logger
from core.ports import Clock, DisplayPort, QueuedDisplay, Storage, SystemClock
from models.item import AnswerResult
from models.session import BatchSummary, ItemKind, Phase, Session, SessionView, Snapshot
from services.content_service import ContentSelector, ItemSource, SelectionContext, SelectionKind
from services.cooldown_service import CooldownManager
from services.integrity_service import IntegrityMonitor, IntegrityOutcome
from services.learning_api import LearningApiClient
from services.persistence_service import PersistenceStore
from services.task_manager import TaskManager
from services.timer_service import TimerScheduler

ITEM_TIMER = "item"
FOLLOWUP_TIMER = "followup"
COOLDOWN_TIMER = "cooldown"

# Rating applied when the item timer runs out
AUTO_RATING = 1

TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.IDLE: frozenset({Phase.INITIALIZING}),
    Phase.INITIALIZING: frozenset({Phase.PRESENTING, Phase.RATED, Phase.FOLLOW_UP, Phase.BATCH_COMPLETE}),
    Phase.PRESENTING: frozenset({Phase.RATED}),
    Phase.RATED: frozenset({Phase.FOLLOW_UP, Phase.PRESENTING}),
    Phase.FOLLOW_UP: frozenset({Phase.ANSWERED}),
    Phase.ANSWERED: frozenset({Phase.PRESENTING, Phase.BATCH_COMPLETE}),
    Phase.BATCH_COMPLETE: frozenset({Phase.COOLDOWN}),
    Phase.COOLDOWN: frozenset({Phase.IDLE}),
}

LIVE_PHASES = frozenset({Phase.INITIALIZING, Phase.PRESENTING, Phase.RATED, Phase.FOLLOW_UP, Phase.ANSWERED})


class SessionOrchestrator:
    """
    Drives one learner's timed session through
    Idle -> Initializing -> Presenting -> Rated -> FollowUp -> Answered
    -> (Presenting | BatchComplete) -> Cooldown -> Idle.

    All phase changes go through _transition(), which also writes the snapshot.
    Every completing event is guarded: timer expiry and learner input race for
    the same single-fire guard, and responses that arrive after the phase has
    moved on are discarded.
    """

    def __init__(self, learner: str, api: LearningApiClient, storage: Storage,
                 clock: Optional[Clock] = None, display: Optional[DisplayPort] = None,
                 batch_size: Optional[int] = None, batch_source: Optional[str] = None,
                 cooldown_seconds: Optional[int] = None, max_switches: Optional[int] = None,
                 max_resets: Optional[int] = None):
        self.learner = learner
        self.api = api
        self.clock = clock or SystemClock()
        self.display = display or QueuedDisplay()
        self.batch_size = batch_size or settings.BATCH_SIZE
        self.batch_source = batch_source or settings.BATCH_SOURCE

        self.store = PersistenceStore(storage, self.clock)
        self.timers = TimerScheduler(self.clock)
        self.tasks = TaskManager(owner=learner)
        self.integrity = IntegrityMonitor(self.display, max_switches=max_switches)
        self.cooldown = CooldownManager(api, self.store, self.clock, key=learner, duration_seconds=cooldown_seconds)
        self.selector = ContentSelector(api, max_resets=max_resets)

        self.phase = Phase.IDLE
        self.session: Optional[Session] = None
        self.summary: Optional[BatchSummary] = None
        self.last_result: Optional[AnswerResult] = None
        self.ended_reason: Optional[str] = None
        self.error: Optional[str] = None
        self.retryable = False

        self._epoch = 0
        self._pending_kind = ItemKind.FLASHCARD
        self._pending_answer: Optional[str] = None

    # === Public contract ===

    async def start(self, item_kind: ItemKind = ItemKind.FLASHCARD, force_new: bool = False) -> SessionView:
        """Resume a fresh-enough snapshot, or create a new session."""
        if self.phase != Phase.IDLE:
            raise InvalidTransitionError(self.phase, Phase.INITIALIZING)

        self.error = None
        self.retryable = False
        self.ended_reason = None
        self._pending_kind = item_kind
        await self._transition(Phase.INITIALIZING)
        await self.cooldown.load()

        resumed = False
        if force_new:
            await self.store.clear(self.learner)
        else:
            snapshot = await self.store.restore(self.learner)
            if snapshot:
                resumed = await self._resume(snapshot)

        if not resumed:
            try:
                await self._run_step(self._create_session)
            except (CooldownViolationError, AuthRequiredError):
                await self._teardown("start_refused", clear_snapshot=False)
                raise

        await self.settle()
        return self.view()

    async def rate(self, rating: int) -> SessionView:
        if not 1 <= rating <= 5:
            raise ValueError("Rating must be between 1 and 5")
        if self.integrity.prompt is not None:
            logger.info("Rating ignored, integrity warning pending", rating=rating)
            return self.view()
        if self.phase != Phase.PRESENTING or not self.timers.claim(ITEM_TIMER):
            logger.info("Rating ignored", phase=self.phase.value, rating=rating)
            return self.view()

        logger.info("Item rated", session_id=self.session.session_id, rating=rating)
        await self._rated(rating)
        return self.view()

    async def answer(self, option_key: str) -> SessionView:
        if self.phase != Phase.FOLLOW_UP or not self.session or not self.session.follow_up:
            logger.info("Answer ignored", phase=self.phase.value)
            return self.view()
        if option_key not in self.session.follow_up.options:
            raise ValueError(f"Unknown option {option_key!r}")
        if self.integrity.prompt is not None:
            logger.info("Answer ignored, integrity warning pending", option=option_key)
            return self.view()
        if not self.timers.claim(FOLLOWUP_TIMER):
            logger.info("Answer ignored, follow-up already closed", option=option_key)
            return self.view()

        self._pending_answer = option_key
        await self._run_step(self._submit_answer)
        return self.view()

    async def retry(self) -> SessionView:
        """Re-run the step that last failed."""
        if not self.retryable:
            return self.view()

        step: Optional[Callable[[], Awaitable[None]]] = None
        if self.phase == Phase.INITIALIZING and self.session is None:
            step = self._create_session
        elif self.phase == Phase.RATED and self.session.current_item:
            step = self._request_follow_up
        elif self.phase == Phase.FOLLOW_UP and self._pending_answer is not None:
            step = self._submit_answer
        elif self.phase in (Phase.INITIALIZING, Phase.RATED, Phase.ANSWERED):
            step = self._present_next

        if step is None:
            return self.view()
        logger.info("Retrying failed step", phase=self.phase.value)
        await self._run_step(step)
        return self.view()

    async def start_next_batch(self) -> SessionView:
        """Explicit request for a new batch once the cooldown has elapsed."""
        if self.phase not in (Phase.BATCH_COMPLETE, Phase.COOLDOWN):
            raise InvalidTransitionError(self.phase, Phase.INITIALIZING)

        # Checked at the moment of the action, not only when rendering
        try:
            await self.cooldown.require_allowed()
        except CooldownViolationError:
            self._arm_cooldown_timer()
            raise

        kind = self.session.item_kind if self.session else self._pending_kind
        self.timers.cancel(COOLDOWN_TIMER)
        await self._transition(Phase.IDLE)
        self.session = None
        return await self.start(kind, force_new=True)

    def tick(self) -> List[str]:
        """Called once per second by the host loop."""
        return self.timers.tick()

    async def settle(self):
        """Wait for background work triggered by timers to finish."""
        await self.tasks.wait_idle()

    async def report_visibility(self, hidden: bool) -> SessionView:
        if not self._is_live():
            return self.view()
        outcome = self.integrity.on_visibility_change(hidden)
        await self._apply_integrity(outcome)
        return self.view()

    async def report_navigation(self) -> SessionView:
        if not self._is_live():
            return self.view()
        outcome = self.integrity.on_navigation_attempt()
        await self._apply_integrity(outcome)
        return self.view()

    async def acknowledge(self, confirm: bool) -> SessionView:
        if not self._is_live():
            return self.view()
        outcome = self.integrity.acknowledge(confirm)
        await self._apply_integrity(outcome)
        return self.view()

    async def terminate(self, reason: str = "terminated") -> SessionView:
        self.integrity.terminate(reason)
        await self._teardown(reason, clear_snapshot=True)
        return self.view()

    async def close(self):
        """Host is going away; keep the snapshot so the session can resume."""
        await self._teardown("closed", clear_snapshot=False)

    async def logout(self):
        self.integrity.release_fullscreen()
        await self._teardown("logout", clear_snapshot=True)
        await self.cooldown.clear()

    def view(self) -> SessionView:
        session = self.session
        timers = {}
        for name in self.timers.active_timers():
            remaining = self.timers.remaining(name)
            if remaining is not None:
                timers[name] = remaining

        in_cooldown = self.phase in (Phase.BATCH_COMPLETE, Phase.COOLDOWN)
        return SessionView(
            phase=self.phase,
            session_id=session.session_id if session else None,
            item_kind=session.item_kind if session else None,
            item=session.current_item if session else None,
            rating=session.current_rating if session else None,
            follow_up=session.follow_up if session else None,
            timers=timers,
            items_completed=session.items_completed if session else 0,
            batch_size=session.batch_size if session else self.batch_size,
            correct_count=session.correct_count if session else 0,
            incorrect_count=session.incorrect_count if session else 0,
            last_result=self.last_result,
            integrity_status=self.integrity.status,
            tab_switch_count=self.integrity.state.tab_switch_count,
            prompt=self.integrity.prompt,
            cooldown_remaining_seconds=self.cooldown.remaining() if in_cooldown else 0,
            cooldown_source=self.cooldown.state.source if in_cooldown and self.cooldown.state else None,
            summary=self.summary,
            ended_reason=self.ended_reason,
            error=self.error,
            retryable=self.retryable,
        )

    # === Transitions ===

    async def _transition(self, to: Phase):
        if to not in TRANSITIONS[self.phase]:
            raise InvalidTransitionError(self.phase, to)
        logger.info(
            "Session phase changed",
            learner=self.learner,
            session_id=self.session.session_id if self.session else None,
            from_phase=self.phase.value,
            to_phase=to.value,
        )
        self.phase = to
        self._epoch += 1
        if self.session:
            self.session.phase = to
        await self._persist()

    async def _persist(self):
        if not self.session:
            return
        snapshot = Snapshot(
            timestamp=self.clock.now_ms(),
            session=self.session,
            timers=self.timers.active_timers(),
            integrity=self.integrity.state,
            cooldown=self.cooldown.state,
        )
        await self.store.save(self.learner, snapshot.model_dump(mode="json"))

    async def _run_step(self, step: Callable[[], Awaitable[None]]):
        self.error = None
        self.retryable = False
        try:
            await step()
        except AuthRequiredError as e:
            # Retryable once the host has refreshed the token
            self.error = str(e) or "Authentication required"
            self.retryable = True
            await self._persist()
            raise
        except CooldownViolationError:
            raise
        except (LearningApiError, ContentExhaustedError) as e:
            self.error = str(e) or "Request failed"
            self.retryable = True
            logger.warning("Session step failed", step=step.__name__, phase=self.phase.value, error=self.error)
            await self._persist()

    def _is_stale(self, epoch: int, session: Optional[Session]) -> bool:
        if self._epoch != epoch or self.session is None or self.session is not session:
            logger.info("Discarding late response", learner=self.learner, phase=self.phase.value)
            return True
        return False

    def _is_live(self) -> bool:
        return self.session is not None and self.phase in LIVE_PHASES

    # === Steps ===

    async def _create_session(self):
        epoch = self._epoch
        check = await self.cooldown.can_start()
        if not check.allowed:
            raise CooldownViolationError(
                f"Cooldown active, {check.remaining_seconds}s remaining",
                remaining_seconds=check.remaining_seconds,
            )

        subtopics = await self.api.start_session()
        batch = await self.api.fetch_batch(self.batch_size) if self.batch_source == "fixed" else None
        if self._epoch != epoch or self.phase != Phase.INITIALIZING:
            logger.info("Discarding late session start", learner=self.learner)
            return
        await self.cooldown.clear()

        self.session = Session(
            session_id=uuid.uuid4().hex,
            item_kind=self._pending_kind,
            subtopic_pool=subtopics,
            batch_size=self.batch_size,
            phase=Phase.INITIALIZING,
            started_at_ms=self.clock.now_ms(),
            batch=batch,
        )
        self.integrity.reset()
        self.summary = None
        self.last_result = None
        logger.info("Session created", learner=self.learner, session_id=self.session.session_id,
                    subtopics=len(subtopics), batch=len(batch) if batch is not None else None)
        await self._persist()
        await self._present_next()

    async def _present_next(self):
        session = self.session
        epoch = self._epoch

        context = self._selection_context()
        selection = await self.selector.next(context)
        if self._is_stale(epoch, session):
            return

        if selection.kind != SelectionKind.ITEM:
            logger.info("Re-initializing content", reason=selection.kind.value, session_id=session.session_id)
            await self._reinitialize_content()
            if self._is_stale(epoch, session):
                return
            context = self._selection_context()
            selection = await self.selector.next(context)
            if self._is_stale(epoch, session):
                return
            if selection.kind != SelectionKind.ITEM:
                raise ContentExhaustedError("No flashcards available right now. Please try again.")

        session.subtopic_pool = context.subtopic_pool
        if selection.source == ItemSource.BATCH:
            session.batch_index += 1
        item = selection.item
        session.recent_item_ids = (session.recent_item_ids + [item.item_id])[-settings.RECENT_ITEMS_LIMIT:]
        session.clear_item()
        session.current_item = item

        self.integrity.request_fullscreen()
        self._arm_phase_timer(ITEM_TIMER, self._item_seconds(session), self._on_item_expired)
        await self._transition(Phase.PRESENTING)

    async def _reinitialize_content(self):
        session = self.session
        session.subtopic_pool = await self.api.start_session(force=True)
        if self.batch_source == "fixed":
            needed = max(1, session.batch_size - session.items_completed)
            session.batch = await self.api.fetch_batch(needed)
            session.batch_index = 0

    async def _rated(self, rating: int):
        self.session.current_rating = rating
        await self._transition(Phase.RATED)
        await self._run_step(self._request_follow_up)

    async def _request_follow_up(self):
        session = self.session
        epoch = self._epoch
        item = session.current_item

        difficulty = await self.api.submit_rating(item.item_id, session.current_rating)
        if self._is_stale(epoch, session):
            return
        follow_up = await self.api.fetch_follow_up(item.topic_id, difficulty, item.sub_topic, item.item_id)
        if self._is_stale(epoch, session):
            return

        if follow_up is None:
            logger.info("No follow-up available, moving on", item_id=item.item_id, difficulty=difficulty)
            session.clear_item()
            await self._present_next()
            return

        session.follow_up = follow_up
        self._arm_phase_timer(FOLLOWUP_TIMER, settings.FOLLOWUP_SECONDS, self._on_follow_up_expired)
        await self._transition(Phase.FOLLOW_UP)

    async def _submit_answer(self):
        session = self.session
        epoch = self._epoch
        item = session.current_item
        follow_up = session.follow_up

        data = await self.api.submit_answer(follow_up.question_id, self._pending_answer, item.item_id, item.sub_topic)
        if self._is_stale(epoch, session):
            return
        await self._record_answer(
            selected=self._pending_answer,
            correct=bool(data.get("correct")),
            explanation=data.get("explanation") or follow_up.explanation,
        )

    async def _record_answer(self, selected: Optional[str], correct: bool, explanation: str):
        session = self.session
        if session.items_completed >= session.batch_size:
            logger.error("Answer after batch was full, ignoring", session_id=session.session_id)
            return

        follow_up = session.follow_up
        result = AnswerResult(
            item_id=session.current_item.item_id,
            question_id=follow_up.question_id,
            rating=session.current_rating,
            selected_option=selected,
            correct_option=follow_up.correct_key,
            correct=correct,
            explanation=explanation,
            difficulty=follow_up.difficulty,
        )
        session.results.append(result)
        session.items_completed += 1
        if correct:
            session.correct_count += 1
        else:
            session.incorrect_count += 1
        self.last_result = result
        self._pending_answer = None
        session.clear_item()

        logger.info("Answer recorded", session_id=session.session_id, correct=correct, timed_out=selected is None,
                    completed=session.items_completed, batch_size=session.batch_size)
        await self._transition(Phase.ANSWERED)

        if session.items_completed < session.batch_size:
            await self._present_next()
        else:
            await self._complete_batch()

    async def _complete_batch(self):
        session = self.session
        await self._transition(Phase.BATCH_COMPLETE)

        now = self.clock.now_ms()
        self.summary = self._build_summary(now)
        await self.cooldown.start(now)
        self.integrity.release_fullscreen()
        logger.info("Batch complete", session_id=session.session_id, correct=self.summary.correct,
                    incorrect=self.summary.incorrect, accuracy=round(self.summary.accuracy, 3))

        self._arm_cooldown_timer()
        await self._transition(Phase.COOLDOWN)

    def _build_summary(self, finished_at_ms: int) -> BatchSummary:
        session = self.session
        return BatchSummary(
            results=list(session.results),
            correct=session.correct_count,
            incorrect=session.incorrect_count,
            accuracy=session.accuracy,
            duration_seconds=max(0, finished_at_ms - session.started_at_ms) / 1000,
        )

    # === Resume ===

    async def _resume(self, record: dict) -> bool:
        try:
            snapshot = Snapshot.model_validate(record)
        except ValidationError as e:
            logger.warning("Discarding invalid snapshot", learner=self.learner, error=str(e))
            await self.store.clear(self.learner)
            return False
        if snapshot.integrity.terminated:
            await self.store.clear(self.learner)
            return False

        session = snapshot.session
        self.session = session
        self.integrity.restore(snapshot.integrity)
        self.cooldown.adopt(snapshot.cooldown)
        self._pending_kind = session.item_kind
        logger.info("Resuming session", learner=self.learner, session_id=session.session_id,
                    phase=session.phase.value, completed=session.items_completed)

        if session.items_completed >= session.batch_size:
            # In-flight item state is stale once the batch is full
            session.clear_item()
            completed_at = snapshot.cooldown.batch_completed_at_ms if snapshot.cooldown else snapshot.timestamp
            self.summary = self._build_summary(completed_at)
            if self.cooldown.state is None:
                await self.cooldown.start(completed_at)
            await self._transition(Phase.BATCH_COMPLETE)
            self._arm_cooldown_timer()
            await self._transition(Phase.COOLDOWN)
            return True

        if session.phase == Phase.PRESENTING and session.current_item:
            timer = snapshot.timers.get(ITEM_TIMER)
            self.timers.resume(
                ITEM_TIMER,
                timer.started_at_ms if timer else 0,
                timer.duration_seconds if timer else self._item_seconds(session),
                self._on_item_expired,
            )
            await self._transition(Phase.PRESENTING)
        elif session.phase == Phase.RATED and session.current_item and session.current_rating:
            await self._transition(Phase.RATED)
            await self._run_step(self._request_follow_up)
        elif session.phase == Phase.FOLLOW_UP and session.current_item and session.follow_up:
            timer = snapshot.timers.get(FOLLOWUP_TIMER)
            self.timers.resume(
                FOLLOWUP_TIMER,
                timer.started_at_ms if timer else 0,
                timer.duration_seconds if timer else settings.FOLLOWUP_SECONDS,
                self._on_follow_up_expired,
            )
            await self._transition(Phase.FOLLOW_UP)
        else:
            session.clear_item()
            await self._run_step(self._present_next)
        return True

    # === Timers ===

    def _item_seconds(self, session: Session) -> int:
        if session.item_kind == ItemKind.QUIZ:
            return settings.QUIZ_ITEM_SECONDS
        return settings.FLASHCARD_SECONDS

    def _arm_phase_timer(self, name: str, seconds: int, on_expire: Callable[[], None]):
        # At most one of item/followup runs at a time
        self.timers.cancel(ITEM_TIMER)
        self.timers.cancel(FOLLOWUP_TIMER)
        self.timers.arm(name, seconds, on_expire)

    def _arm_cooldown_timer(self):
        remaining = self.cooldown.remaining()
        if remaining > 0:
            self.timers.arm(COOLDOWN_TIMER, remaining, self._on_cooldown_elapsed)

    def _on_item_expired(self):
        self.tasks.spawn("item_timeout", self._expire_item())

    def _on_follow_up_expired(self):
        self.tasks.spawn("followup_timeout", self._expire_follow_up())

    def _on_cooldown_elapsed(self):
        logger.info("Cooldown elapsed", learner=self.learner)

    async def _expire_item(self):
        if self.phase != Phase.PRESENTING or not self.session:
            return
        logger.info("Item timed out, applying automatic rating", session_id=self.session.session_id,
                    rating=AUTO_RATING)
        await self._rated(AUTO_RATING)

    async def _expire_follow_up(self):
        if self.phase != Phase.FOLLOW_UP or not self.session or not self.session.follow_up:
            return
        logger.info("Follow-up timed out", session_id=self.session.session_id)
        await self._run_step(self._record_timeout)

    async def _record_timeout(self):
        await self._record_answer(selected=None, correct=False, explanation=self.session.follow_up.explanation)

    # === Integrity / teardown ===

    async def _apply_integrity(self, outcome: IntegrityOutcome):
        if outcome == IntegrityOutcome.TERMINATE:
            await self._teardown("integrity_violation", clear_snapshot=True)
        elif outcome in (IntegrityOutcome.NONE, IntegrityOutcome.WARN, IntegrityOutcome.RESUME):
            await self._persist()

    async def _teardown(self, reason: str, clear_snapshot: bool):
        """Cancel timers and in-flight work; late responses for this session are discarded."""
        self.timers.cancel_all()
        self.tasks.cancel_all()
        self._epoch += 1
        self._pending_answer = None
        self.retryable = False
        previous = self.phase
        self.phase = Phase.IDLE
        self.ended_reason = reason
        if clear_snapshot:
            await self.store.clear(self.learner)
        self.session = None
        logger.info("Session ended", learner=self.learner, reason=reason, from_phase=previous.value)

    def _selection_context(self) -> SelectionContext:
        session = self.session
        return SelectionContext(
            subtopic_pool=list(session.subtopic_pool),
            batch=session.batch,
            batch_index=session.batch_index,
            exclude_ids=list(session.recent_item_ids),
        )
