import asyncio
import json
import unittest

from conftest import FakeClock, make_api, make_follow_up, make_item
from core.errors import AuthRequiredError, CooldownViolationError, InvalidTransitionError, TransientApiError
from models.integrity import IntegrityStatus, PromptKind
from models.session import ItemKind, Phase
from services.session_service import SessionOrchestrator
from services.storage import MemoryStorage

SNAPSHOT_KEY = "learnloop:learner-1"


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    batch_size = 2
    batch_source = "fixed"

    def setUp(self):
        self.clock = FakeClock()
        self.storage = MemoryStorage()
        self.api = make_api()
        self.orchestrator = self.build()

    def build(self, **overrides):
        options = dict(
            batch_size=self.batch_size,
            batch_source=self.batch_source,
            cooldown_seconds=300,
            max_switches=2,
            max_resets=3,
        )
        options.update(overrides)
        return SessionOrchestrator("learner-1", self.api, self.storage, clock=self.clock, **options)

    def snapshot(self):
        raw = self.storage.data.get(SNAPSHOT_KEY)
        return json.loads(raw) if raw else None

    async def complete_item(self, option="B"):
        await self.orchestrator.rate(4)
        return await self.orchestrator.answer(option)


class TestHappyPath(SessionTestCase):
    async def test_start_presents_first_batch_item(self):
        view = await self.orchestrator.start()

        self.assertEqual(view.phase, Phase.PRESENTING)
        self.assertEqual(view.item.item_id, "q1")
        self.assertEqual(view.timers, {"item": 30})
        self.assertEqual(view.batch_size, 2)
        self.api.fetch_batch.assert_awaited_once_with(2)
        self.assertEqual(self.orchestrator.display.drain(), ["request_fullscreen"])
        self.assertEqual(self.snapshot()["session"]["phase"], "presenting")

    async def test_quiz_items_get_longer_timer(self):
        view = await self.orchestrator.start(ItemKind.QUIZ)
        self.assertEqual(view.timers, {"item": 60})

    async def test_rate_then_answer(self):
        await self.orchestrator.start()

        view = await self.orchestrator.rate(4)
        self.assertEqual(view.phase, Phase.FOLLOW_UP)
        self.assertEqual(view.follow_up.question_id, "f-q1")
        self.assertEqual(view.timers, {"followup": 60})
        self.api.submit_rating.assert_awaited_once_with("q1", 4)
        self.api.fetch_follow_up.assert_awaited_once_with("math", "medium", "limits", "q1")

        view = await self.orchestrator.answer("B")
        self.api.submit_answer.assert_awaited_once_with("f-q1", "B", "q1", "limits")
        self.assertEqual(view.phase, Phase.PRESENTING)
        self.assertEqual(view.item.item_id, "q2")
        self.assertEqual(view.items_completed, 1)
        self.assertEqual(view.correct_count, 1)
        self.assertTrue(view.last_result.correct)
        self.assertEqual(view.last_result.selected_option, "B")

    async def test_batch_completes_into_cooldown(self):
        await self.orchestrator.start()
        await self.complete_item()
        self.api.submit_answer.return_value = {"correct": False, "explanation": "No"}
        self.clock.advance(5)
        view = await self.complete_item("A")

        self.assertEqual(view.phase, Phase.COOLDOWN)
        self.assertEqual(view.items_completed, 2)
        self.assertEqual(view.summary.correct, 1)
        self.assertEqual(view.summary.incorrect, 1)
        self.assertEqual(view.summary.accuracy, 0.5)
        self.assertEqual(view.summary.duration_seconds, 5)
        self.assertEqual(view.cooldown_remaining_seconds, 300)
        self.assertEqual(view.cooldown_source, "server")
        self.assertIsNone(view.item)
        self.api.complete_cooldown.assert_awaited_once_with(self.clock.now_ms())
        self.assertIn("exit_fullscreen", self.orchestrator.display.drain())

    async def test_one_result_per_item(self):
        await self.orchestrator.start()
        await self.complete_item()
        view = await self.orchestrator.answer("B")

        self.assertEqual(view.items_completed, 1)
        self.assertEqual(len(self.orchestrator.session.results), 1)
        self.api.submit_answer.assert_awaited_once()


class TestValidation(SessionTestCase):
    async def test_start_twice_is_rejected(self):
        await self.orchestrator.start()
        with self.assertRaises(InvalidTransitionError):
            await self.orchestrator.start()

    async def test_rating_out_of_range(self):
        await self.orchestrator.start()
        with self.assertRaises(ValueError):
            await self.orchestrator.rate(6)

    async def test_unknown_option(self):
        await self.orchestrator.start()
        await self.orchestrator.rate(3)
        with self.assertRaises(ValueError):
            await self.orchestrator.answer("Z")

    async def test_answer_outside_follow_up_is_ignored(self):
        await self.orchestrator.start()
        view = await self.orchestrator.answer("B")

        self.assertEqual(view.phase, Phase.PRESENTING)
        self.api.submit_answer.assert_not_awaited()

    async def test_next_batch_requires_finished_batch(self):
        await self.orchestrator.start()
        with self.assertRaises(InvalidTransitionError):
            await self.orchestrator.start_next_batch()


class TestTimers(SessionTestCase):
    async def test_item_timeout_auto_rates_lowest(self):
        await self.orchestrator.start()
        self.clock.advance(30)

        self.assertEqual(self.orchestrator.tick(), ["item"])
        await self.orchestrator.settle()

        self.api.submit_rating.assert_awaited_once_with("q1", 1)
        self.assertEqual(self.orchestrator.phase, Phase.FOLLOW_UP)

    async def test_rating_after_expiry_is_a_no_op(self):
        await self.orchestrator.start()
        self.clock.advance(31)
        self.orchestrator.tick()

        await self.orchestrator.rate(5)
        await self.orchestrator.settle()

        self.api.submit_rating.assert_awaited_once_with("q1", 1)

    async def test_expiry_after_rating_is_a_no_op(self):
        await self.orchestrator.start()
        await self.orchestrator.rate(5)
        self.clock.advance(30)

        self.assertEqual(self.orchestrator.tick(), [])
        await self.orchestrator.settle()
        self.api.submit_rating.assert_awaited_once_with("q1", 5)

    async def test_follow_up_timeout_records_incorrect(self):
        await self.orchestrator.start()
        await self.orchestrator.rate(3)
        self.clock.advance(60)

        self.assertEqual(self.orchestrator.tick(), ["followup"])
        await self.orchestrator.settle()

        view = self.orchestrator.view()
        self.assertEqual(view.items_completed, 1)
        self.assertEqual(view.incorrect_count, 1)
        self.assertIsNone(view.last_result.selected_option)
        self.assertEqual(view.last_result.correct_option, "B")
        self.assertFalse(view.last_result.correct)
        self.api.submit_answer.assert_not_awaited()
        self.assertEqual(view.phase, Phase.PRESENTING)

    async def test_answer_after_follow_up_expiry_is_a_no_op(self):
        await self.orchestrator.start()
        await self.orchestrator.rate(3)
        self.clock.advance(61)
        self.orchestrator.tick()

        await self.orchestrator.answer("B")
        await self.orchestrator.settle()

        self.api.submit_answer.assert_not_awaited()
        self.assertEqual(self.orchestrator.view().items_completed, 1)

    async def test_missed_ticks_do_not_drift(self):
        await self.orchestrator.start()
        self.clock.advance(12)
        self.assertEqual(self.orchestrator.view().timers["item"], 18)


class TestContent(SessionTestCase):
    batch_size = 3

    async def test_due_review_does_not_consume_batch_slot(self):
        self.api.fetch_due_review.side_effect = [make_item(50, isDueReview=True), None, None]

        view = await self.orchestrator.start()
        self.assertEqual(view.item.item_id, "q50")
        self.assertTrue(view.item.due_review)

        view = await self.complete_item()
        self.assertEqual(view.item.item_id, "q1")

    async def test_short_batch_is_refilled_with_new_session(self):
        self.api.fetch_batch.side_effect = [[make_item(1)], [make_item(2), make_item(3)]]

        await self.orchestrator.start()
        view = await self.complete_item()

        self.assertEqual(view.item.item_id, "q2")
        self.assertEqual([c.args for c in self.api.fetch_batch.await_args_list], [(3,), (2,)])
        self.api.start_session.assert_any_await(force=True)

    async def test_skipped_follow_up_moves_on_without_result(self):
        self.api.fetch_follow_up.side_effect = None
        self.api.fetch_follow_up.return_value = None

        await self.orchestrator.start()
        view = await self.orchestrator.rate(2)

        self.assertEqual(view.phase, Phase.PRESENTING)
        self.assertEqual(view.item.item_id, "q2")
        self.assertEqual(view.items_completed, 0)
        self.assertIsNone(view.last_result)

    async def test_recent_items_are_tracked(self):
        await self.orchestrator.start()
        await self.complete_item()
        self.assertEqual(self.orchestrator.session.recent_item_ids, ["q1", "q2"])


class TestPoolMode(SessionTestCase):
    batch_source = "pool"

    async def test_pool_mode_excludes_recent_items(self):
        self.api.fetch_session_item.side_effect = [(make_item(1), False), (make_item(2), False)]

        await self.orchestrator.start()
        view = await self.complete_item()

        self.assertEqual(view.item.item_id, "q2")
        self.api.fetch_batch.assert_not_awaited()
        self.assertEqual(self.api.fetch_session_item.await_args_list[-1].args, (["q1"],))

    async def test_exhausted_content_is_retryable(self):
        self.api.fetch_session_item.return_value = (None, True)

        view = await self.orchestrator.start()

        self.assertEqual(view.phase, Phase.INITIALIZING)
        self.assertTrue(view.retryable)
        self.assertIsNotNone(view.error)
        # bounded: two selection rounds of three resets each
        self.assertEqual(self.api.reset_shown.await_count, 6)

        self.api.fetch_session_item.return_value = (make_item(8), False)
        view = await self.orchestrator.retry()

        self.assertEqual(view.phase, Phase.PRESENTING)
        self.assertEqual(view.item.item_id, "q8")
        self.assertFalse(view.retryable)


class TestRecovery(SessionTestCase):
    async def test_transient_follow_up_failure_then_retry(self):
        self.api.fetch_follow_up.side_effect = [TransientApiError("Network timeout"), make_follow_up("q1")]
        await self.orchestrator.start()

        view = await self.orchestrator.rate(4)
        self.assertEqual(view.phase, Phase.RATED)
        self.assertTrue(view.retryable)
        self.assertEqual(view.error, "Network timeout")

        view = await self.orchestrator.retry()
        self.assertEqual(view.phase, Phase.FOLLOW_UP)
        self.assertIsNone(view.error)

    async def test_transient_answer_failure_then_retry(self):
        self.api.submit_answer.side_effect = [TransientApiError("Network timeout"), {"correct": True}]
        await self.orchestrator.start()
        await self.orchestrator.rate(4)

        view = await self.orchestrator.answer("B")
        self.assertEqual(view.phase, Phase.FOLLOW_UP)
        self.assertTrue(view.retryable)
        self.assertEqual(view.items_completed, 0)

        view = await self.orchestrator.retry()
        self.assertEqual(view.items_completed, 1)
        self.assertEqual(self.api.submit_answer.await_args_list[-1].args, ("f-q1", "B", "q1", "limits"))

    async def test_failed_session_start_is_retryable(self):
        self.api.start_session.side_effect = [TransientApiError("down"), ["limits"]]

        view = await self.orchestrator.start()
        self.assertEqual(view.phase, Phase.INITIALIZING)
        self.assertTrue(view.retryable)

        view = await self.orchestrator.retry()
        self.assertEqual(view.phase, Phase.PRESENTING)

    async def test_expired_token_on_answer_can_be_retried(self):
        self.api.submit_answer.side_effect = [AuthRequiredError("Token expired", status=401), {"correct": True}]
        await self.orchestrator.start()
        await self.orchestrator.rate(4)

        with self.assertRaises(AuthRequiredError):
            await self.orchestrator.answer("B")

        view = self.orchestrator.view()
        self.assertEqual(view.phase, Phase.FOLLOW_UP)
        self.assertTrue(view.retryable)
        self.assertEqual(view.error, "Token expired")

        view = await self.orchestrator.retry()
        self.assertEqual(view.items_completed, 1)
        self.assertFalse(view.retryable)

    async def test_late_response_after_termination_is_discarded(self):
        gate = asyncio.Event()

        async def slow_follow_up(*args, **kwargs):
            await gate.wait()
            return make_follow_up("q1")

        self.api.fetch_follow_up.side_effect = slow_follow_up
        await self.orchestrator.start()

        pending = asyncio.create_task(self.orchestrator.rate(4))
        while not self.api.fetch_follow_up.called:
            await asyncio.sleep(0)
        await self.orchestrator.terminate("test")
        gate.set()
        view = await pending

        self.assertEqual(view.phase, Phase.IDLE)
        self.assertIsNone(view.follow_up)
        self.assertEqual(self.orchestrator.timers.active_timers(), {})
        self.assertIsNone(self.snapshot())


class TestPersistence(SessionTestCase):
    async def test_resume_keeps_remaining_time(self):
        await self.orchestrator.start()
        self.clock.advance(10)
        await self.orchestrator.close()

        resumed = self.build()
        view = await resumed.start()

        self.assertEqual(view.phase, Phase.PRESENTING)
        self.assertEqual(view.item.item_id, "q1")
        self.assertEqual(view.timers, {"item": 20})
        self.api.start_session.assert_awaited_once()

    async def test_resume_after_deadline_expires_immediately(self):
        await self.orchestrator.start()
        await self.orchestrator.close()
        self.clock.advance(40)

        resumed = self.build()
        view = await resumed.start()

        self.api.submit_rating.assert_awaited_once_with("q1", 1)
        self.assertEqual(view.phase, Phase.FOLLOW_UP)

    async def test_resume_follow_up(self):
        await self.orchestrator.start()
        await self.orchestrator.rate(4)
        self.clock.advance(15)
        await self.orchestrator.close()

        resumed = self.build()
        view = await resumed.start()

        self.assertEqual(view.phase, Phase.FOLLOW_UP)
        self.assertEqual(view.timers, {"followup": 45})
        view = await resumed.answer("B")
        self.assertEqual(view.items_completed, 1)

    async def test_stale_snapshot_starts_fresh(self):
        await self.orchestrator.start()
        first_id = self.orchestrator.session.session_id
        await self.orchestrator.close()
        self.clock.advance(3601)

        resumed = self.build()
        view = await resumed.start()

        self.assertEqual(view.phase, Phase.PRESENTING)
        self.assertNotEqual(view.session_id, first_id)
        self.assertEqual(self.api.start_session.await_count, 2)

    async def test_full_batch_resumes_into_cooldown(self):
        await self.orchestrator.start()
        await self.complete_item()
        await self.complete_item()
        self.clock.advance(60)
        await self.orchestrator.close()

        resumed = self.build()
        view = await resumed.start()

        self.assertEqual(view.phase, Phase.COOLDOWN)
        self.assertIsNone(view.item)
        self.assertEqual(view.summary.correct, 2)
        self.assertEqual(view.cooldown_remaining_seconds, 240)
        self.api.complete_cooldown.assert_awaited_once()

    async def test_storage_failure_does_not_break_session(self):
        self.storage.disabled = True

        view = await self.orchestrator.start()
        self.assertEqual(view.phase, Phase.PRESENTING)
        view = await self.complete_item()
        self.assertEqual(view.items_completed, 1)

    async def test_force_new_discards_snapshot(self):
        await self.orchestrator.start()
        first_id = self.orchestrator.session.session_id
        await self.orchestrator.close()

        resumed = self.build()
        view = await resumed.start(force_new=True)

        self.assertNotEqual(view.session_id, first_id)


class TestCooldown(SessionTestCase):
    async def finish_batch(self):
        await self.orchestrator.start()
        await self.complete_item()
        return await self.complete_item()

    async def test_next_batch_refused_during_cooldown(self):
        await self.finish_batch()
        self.api.get_cooldown.return_value = {"active": True, "remainingSeconds": 120}

        with self.assertRaises(CooldownViolationError) as ctx:
            await self.orchestrator.start_next_batch()

        self.assertEqual(ctx.exception.remaining_seconds, 120)
        self.assertEqual(self.orchestrator.phase, Phase.COOLDOWN)
        self.assertEqual(self.orchestrator.view().cooldown_remaining_seconds, 120)

    async def test_next_batch_after_cooldown(self):
        view = await self.finish_batch()
        first_id = view.session_id
        self.clock.advance(300)

        view = await self.orchestrator.start_next_batch()

        self.assertEqual(view.phase, Phase.PRESENTING)
        self.assertNotEqual(view.session_id, first_id)
        self.assertEqual(view.items_completed, 0)
        self.assertIsNone(view.summary)
        self.assertEqual(self.orchestrator.cooldown.state, None)

    async def test_failed_next_batch_keeps_cooldown_record(self):
        await self.finish_batch()
        self.clock.advance(300)
        self.api.start_session.side_effect = TransientApiError("down")

        view = await self.orchestrator.start_next_batch()

        self.assertEqual(view.phase, Phase.INITIALIZING)
        self.assertTrue(view.retryable)
        self.assertIsNotNone(self.orchestrator.cooldown.state)
        self.assertIn(f"{SNAPSHOT_KEY}:cooldown", self.storage.data)

    async def test_offline_cooldown_uses_local_timer(self):
        self.api.complete_cooldown.side_effect = TransientApiError("down")
        view = await self.finish_batch()
        self.assertEqual(view.cooldown_source, "local")
        self.clock.advance(100)

        with self.assertRaises(CooldownViolationError) as ctx:
            await self.orchestrator.start_next_batch()
        self.assertEqual(ctx.exception.remaining_seconds, 200)

    async def test_fresh_start_refused_while_cooling_down(self):
        await self.finish_batch()
        await self.orchestrator.logout()
        self.api.get_cooldown.return_value = {"active": True, "remainingSeconds": 90}

        with self.assertRaises(CooldownViolationError):
            await self.orchestrator.start()
        self.assertEqual(self.orchestrator.phase, Phase.IDLE)


class TestIntegrity(SessionTestCase):
    async def switch_tab(self):
        await self.orchestrator.report_visibility(True)
        return await self.orchestrator.report_visibility(False)

    async def test_first_switch_warns(self):
        await self.orchestrator.start()

        view = await self.switch_tab()

        self.assertEqual(view.phase, Phase.PRESENTING)
        self.assertEqual(view.integrity_status, IntegrityStatus.WARNED)
        self.assertEqual(view.tab_switch_count, 1)
        self.assertEqual(view.prompt.remaining_switches, 1)
        self.assertEqual(self.snapshot()["integrity"]["tab_switch_count"], 1)

    async def test_second_switch_terminates_and_clears_snapshot(self):
        await self.orchestrator.start()
        await self.switch_tab()
        await self.orchestrator.acknowledge(True)

        view = await self.switch_tab()

        self.assertEqual(view.phase, Phase.IDLE)
        self.assertEqual(view.ended_reason, "integrity_violation")
        self.assertIsNone(self.snapshot())
        self.assertEqual(self.orchestrator.timers.active_timers(), {})
        self.assertIn("exit_fullscreen", self.orchestrator.display.drain())

    async def test_cancel_navigation_prompt_terminates(self):
        await self.orchestrator.start()
        view = await self.orchestrator.report_navigation()
        self.assertEqual(view.prompt.title, "Warning")

        view = await self.orchestrator.acknowledge(False)

        self.assertEqual(view.phase, Phase.IDLE)
        self.assertEqual(view.integrity_status, IntegrityStatus.TERMINATED)

    async def test_confirm_navigation_prompt_resumes(self):
        await self.orchestrator.start()
        await self.orchestrator.report_navigation()

        view = await self.orchestrator.acknowledge(True)

        self.assertEqual(view.phase, Phase.PRESENTING)
        self.assertIsNone(view.prompt)
        self.assertIn("pin_history", self.orchestrator.display.drain())

    async def test_rate_and_answer_wait_for_pending_warning(self):
        await self.orchestrator.start()
        await self.switch_tab()

        view = await self.orchestrator.rate(4)
        self.assertEqual(view.phase, Phase.PRESENTING)
        view = await self.orchestrator.answer("B")
        self.assertEqual(view.items_completed, 0)
        self.api.submit_rating.assert_not_awaited()

        await self.orchestrator.acknowledge(True)
        view = await self.orchestrator.rate(4)
        self.assertEqual(view.phase, Phase.FOLLOW_UP)

        await self.orchestrator.report_navigation()
        view = await self.orchestrator.answer("B")
        self.assertEqual(view.phase, Phase.FOLLOW_UP)
        self.api.submit_answer.assert_not_awaited()

    async def test_pending_navigation_warning_survives_resume(self):
        await self.orchestrator.start()
        await self.orchestrator.report_navigation()
        await self.orchestrator.close()

        resumed = self.build()
        view = await resumed.start()

        self.assertEqual(view.phase, Phase.PRESENTING)
        self.assertEqual(view.integrity_status, IntegrityStatus.WARNED)
        self.assertEqual(view.prompt.kind, PromptKind.NAVIGATION)
        view = await resumed.rate(4)
        self.assertEqual(view.phase, Phase.PRESENTING)

        view = await resumed.acknowledge(False)
        self.assertEqual(view.phase, Phase.IDLE)
        self.assertIsNone(self.snapshot())

    async def test_pending_tab_switch_warning_survives_resume(self):
        await self.orchestrator.start()
        await self.switch_tab()
        await self.orchestrator.close()

        resumed = self.build()
        view = await resumed.start()

        self.assertEqual(view.prompt.kind, PromptKind.TAB_SWITCH)
        self.assertEqual(view.prompt.remaining_switches, 1)
        view = await resumed.acknowledge(True)
        self.assertIsNone(view.prompt)
        self.assertIsNone(self.snapshot()["integrity"]["pending_prompt"])

    async def test_events_outside_a_session_are_ignored(self):
        view = await self.orchestrator.report_navigation()
        self.assertIsNone(view.prompt)
        self.assertEqual(view.phase, Phase.IDLE)

    async def test_terminated_snapshot_is_not_resumed(self):
        await self.orchestrator.start()
        first_id = self.orchestrator.session.session_id
        await self.orchestrator.terminate("test")

        view = await self.orchestrator.start()

        self.assertNotEqual(view.session_id, first_id)
        self.assertEqual(view.tab_switch_count, 0)
        self.assertEqual(view.integrity_status, IntegrityStatus.NORMAL)


if __name__ == "__main__":
    unittest.main()
