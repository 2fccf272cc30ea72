from pydantic import BaseModel, Field


class Timer(BaseModel):
    name: str
    duration_seconds: int = Field(..., ge=0)
    started_at_ms: int
    active: bool = True

    def remaining(self, now_ms: int) -> int:
        elapsed = (now_ms - self.started_at_ms) // 1000
        return self.duration_seconds - elapsed
