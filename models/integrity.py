from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class IntegrityStatus(str, Enum):
    NORMAL = "normal"
    HIDDEN = "hidden"
    WARNED = "warned"
    TERMINATED = "terminated"


class PromptKind(str, Enum):
    TAB_SWITCH = "tab_switch"
    NAVIGATION = "navigation"


class IntegrityPrompt(BaseModel):
    """A confirm/cancel prompt the learner must answer before continuing."""
    kind: PromptKind
    title: str
    message: str
    remaining_switches: Optional[int] = None


class IntegrityState(BaseModel):
    tab_switch_count: int = Field(0, ge=0)
    max_switches: int = 2
    terminated: bool = False
    fullscreen_attempted: bool = False
    was_hidden: bool = False
    # Warning still awaiting confirm/cancel; rebuilt on resume
    pending_prompt: Optional[PromptKind] = None
