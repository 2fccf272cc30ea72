from typing import Callable, Dict, List, Optional

from core.logger import logger
from core.ports import Clock
from models.timer import Timer


class SingleFireGuard:
    """Lets exactly one of several competing completions through."""

    def __init__(self):
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def acquire(self) -> bool:
        if self._fired:
            return False
        self._fired = True
        return True


class _ArmedTimer:
    def __init__(self, timer: Timer, on_expire: Callable[[], None]):
        self.timer = timer
        self.on_expire = on_expire
        self.guard = SingleFireGuard()


class TimerScheduler:
    """
    Named countdown timers anchored to wall-clock start times.

    tick() is called once per second by the host loop; it never blocks.
    Expiry callbacks are plain callables: anything asynchronous they need
    to do must be handed off (see TaskManager).
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._timers: Dict[str, _ArmedTimer] = {}

    def arm(self, name: str, duration_seconds: int, on_expire: Callable[[], None]) -> Timer:
        """Start or replace a named timer."""
        self.cancel(name)
        timer = Timer(name=name, duration_seconds=duration_seconds, started_at_ms=self.clock.now_ms())
        self._timers[name] = _ArmedTimer(timer, on_expire)
        logger.debug("Timer armed", timer=name, duration=duration_seconds)
        return timer

    def resume(self, name: str, started_at_ms: int, duration_seconds: int,
               on_expire: Callable[[], None]) -> bool:
        """
        Re-arm a timer from a persisted start time.
        Returns True when the deadline had already passed, in which case
        on_expire has been called before returning.
        """
        self.cancel(name)
        timer = Timer(name=name, duration_seconds=duration_seconds, started_at_ms=started_at_ms)
        armed = _ArmedTimer(timer, on_expire)
        self._timers[name] = armed
        if timer.remaining(self.clock.now_ms()) <= 0:
            logger.info("Resumed timer already expired", timer=name)
            self._fire(armed)
            return True
        logger.debug("Timer resumed", timer=name, remaining=timer.remaining(self.clock.now_ms()))
        return False

    def tick(self) -> List[str]:
        now = self.clock.now_ms()
        fired = []
        for name, armed in list(self._timers.items()):
            if not armed.timer.active:
                continue
            if armed.timer.remaining(now) <= 0 and self._fire(armed):
                fired.append(name)
        return fired

    def claim(self, name: str) -> bool:
        """
        Manual completion of a timed phase. Wins only if the timer has not
        expired (or been claimed) yet; the timer is deactivated either way.
        """
        armed = self._timers.get(name)
        if not armed or not armed.timer.active:
            return False
        if not armed.guard.acquire():
            return False
        armed.timer.active = False
        return True

    def cancel(self, name: str) -> bool:
        armed = self._timers.pop(name, None)
        if not armed:
            return False
        was_active = armed.timer.active
        armed.timer.active = False
        return was_active

    def cancel_all(self):
        for name in list(self._timers):
            self.cancel(name)

    def remaining(self, name: str) -> Optional[int]:
        armed = self._timers.get(name)
        if not armed or not armed.timer.active:
            return None
        return max(0, armed.timer.remaining(self.clock.now_ms()))

    def is_active(self, name: str) -> bool:
        armed = self._timers.get(name)
        return bool(armed and armed.timer.active)

    def active_timers(self) -> Dict[str, Timer]:
        return {name: armed.timer.model_copy() for name, armed in self._timers.items() if armed.timer.active}

    def _fire(self, armed: _ArmedTimer) -> bool:
        if not armed.guard.acquire():
            return False
        armed.timer.active = False
        logger.info("Timer expired", timer=armed.timer.name)
        armed.on_expire()
        return True
