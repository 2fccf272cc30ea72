from enum import Enum
from typing import Optional

from core.config import settings
from core.logger import logger
from core.ports import DisplayPort
from models.integrity import IntegrityPrompt, IntegrityState, IntegrityStatus, PromptKind


class IntegrityOutcome(str, Enum):
    NONE = "none"
    WARN = "warn"
    RESUME = "resume"
    TERMINATE = "terminate"
    IGNORED = "ignored"


class IntegrityMonitor:
    """
    Watches tab visibility, back/forward navigation and fullscreen for one session.

    The monitor only decides; the orchestrator owns storage and acts on
    IntegrityOutcome.TERMINATE by ending the session.
    """

    def __init__(self, display: DisplayPort, max_switches: Optional[int] = None):
        self.display = display
        self.max_switches = max_switches if max_switches is not None else settings.MAX_TAB_SWITCHES
        self.state = IntegrityState(max_switches=self.max_switches)
        self.status = IntegrityStatus.NORMAL
        self.prompt: Optional[IntegrityPrompt] = None

    def reset(self):
        """New session boundary: counters start from zero."""
        self.state = IntegrityState(max_switches=self.max_switches)
        self.status = IntegrityStatus.NORMAL
        self.prompt = None

    def restore(self, state: IntegrityState):
        self.state = state.model_copy()
        self.prompt = None
        if state.terminated:
            self.status = IntegrityStatus.TERMINATED
        elif state.pending_prompt is not None:
            self._raise_prompt(state.pending_prompt)
        elif state.was_hidden:
            self.status = IntegrityStatus.HIDDEN
        else:
            self.status = IntegrityStatus.NORMAL

    @property
    def terminated(self) -> bool:
        return self.state.terminated

    @property
    def remaining_switches(self) -> int:
        return max(0, self.state.max_switches - self.state.tab_switch_count)

    def request_fullscreen(self):
        """Asks for fullscreen once per session; failure is not fatal."""
        if self.state.fullscreen_attempted or self.terminated:
            return
        self.state.fullscreen_attempted = True
        try:
            self.display.request_fullscreen()
        except Exception as e:
            logger.warning(f"Fullscreen request failed: {e}")

    def release_fullscreen(self):
        try:
            self.display.exit_fullscreen()
        except Exception as e:
            logger.warning(f"Fullscreen exit failed: {e}")

    def on_visibility_change(self, hidden: bool) -> IntegrityOutcome:
        if self.terminated:
            return IntegrityOutcome.IGNORED

        if hidden:
            self.state.was_hidden = True
            if self.status != IntegrityStatus.WARNED:
                self.status = IntegrityStatus.HIDDEN
            logger.info("Session tab hidden", switches=self.state.tab_switch_count)
            return IntegrityOutcome.NONE

        if not self.state.was_hidden:
            return IntegrityOutcome.NONE

        self.state.was_hidden = False
        self.state.tab_switch_count += 1
        logger.info("Tab switch detected", switches=self.state.tab_switch_count, max=self.state.max_switches)

        if self.state.tab_switch_count >= self.state.max_switches:
            self.terminate("tab_switch_limit")
            return IntegrityOutcome.TERMINATE

        self._raise_prompt(PromptKind.TAB_SWITCH)
        return IntegrityOutcome.WARN

    def on_navigation_attempt(self) -> IntegrityOutcome:
        if self.terminated:
            return IntegrityOutcome.IGNORED
        logger.info("Navigation attempt during session")
        self._raise_prompt(PromptKind.NAVIGATION)
        return IntegrityOutcome.WARN

    def acknowledge(self, confirm: bool) -> IntegrityOutcome:
        if self.terminated:
            return IntegrityOutcome.IGNORED
        if self.prompt is None:
            return IntegrityOutcome.NONE

        kind = self.prompt.kind
        if not confirm:
            self.terminate(f"{kind.value}_cancelled")
            return IntegrityOutcome.TERMINATE

        if kind == PromptKind.NAVIGATION:
            try:
                self.display.pin_history()
            except Exception as e:
                logger.warning(f"History pin failed: {e}")
        self.prompt = None
        self.state.pending_prompt = None
        self.status = IntegrityStatus.HIDDEN if self.state.was_hidden else IntegrityStatus.NORMAL
        logger.info("Integrity warning acknowledged", kind=kind.value)
        return IntegrityOutcome.RESUME

    def terminate(self, reason: str) -> bool:
        """Idempotent. Returns True only for the call that actually terminated."""
        if self.terminated:
            return False
        self.state.terminated = True
        self.state.pending_prompt = None
        self.status = IntegrityStatus.TERMINATED
        self.prompt = None
        self.release_fullscreen()
        logger.warning("Session terminated by integrity monitor", reason=reason)
        return True

    def _raise_prompt(self, kind: PromptKind):
        self.status = IntegrityStatus.WARNED
        self.state.pending_prompt = kind
        if kind == PromptKind.TAB_SWITCH:
            remaining = self.remaining_switches
            self.prompt = IntegrityPrompt(
                kind=kind,
                title="Tab Switch Warning",
                message=(
                    f"You have switched tabs. Your session will be terminated if you switch tabs "
                    f"{remaining} more time{'' if remaining == 1 else 's'}."
                ),
                remaining_switches=remaining,
            )
        else:
            self.prompt = IntegrityPrompt(
                kind=kind,
                title="Warning",
                message="Your session will be terminated if you leave this page.",
            )
