from typing import Literal
from pydantic import BaseModel, Field


class CooldownState(BaseModel):
    batch_completed_at_ms: int
    duration_ms: int = 300000
    source: Literal["server", "local"] = "local"

    def remaining_ms(self, now_ms: int) -> int:
        return max(0, self.duration_ms - (now_ms - self.batch_completed_at_ms))


class CooldownCheck(BaseModel):
    allowed: bool
    remaining_seconds: int = Field(0, ge=0)
    source: Literal["server", "local"] = "server"
