import time
from typing import List, Optional, Protocol


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    def now_ms(self) -> int:
        return int(time.time() * 1000)


class Storage(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class DisplayPort(Protocol):
    """Browser-side capabilities the integrity monitor can drive."""

    def request_fullscreen(self) -> None: ...

    def exit_fullscreen(self) -> None: ...

    def pin_history(self) -> None: ...


class QueuedDisplay:
    """
    Collects display directives for the presentation layer.
    The host drains them into every response; the browser applies them.
    """

    def __init__(self):
        self._directives: List[str] = []
        self.fullscreen = False

    def request_fullscreen(self) -> None:
        self.fullscreen = True
        self._directives.append("request_fullscreen")

    def exit_fullscreen(self) -> None:
        if self.fullscreen:
            self._directives.append("exit_fullscreen")
        self.fullscreen = False

    def pin_history(self) -> None:
        self._directives.append("pin_history")

    def drain(self) -> List[str]:
        directives, self._directives = self._directives, []
        return directives
