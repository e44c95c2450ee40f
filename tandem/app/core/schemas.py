############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# schemas.py: Request schemas for the chat and vision endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Request schemas.

Requests arrive from the trusted upstream policy gate already sanitized.
``RoutingHints`` carry the gate's decisions: intent, workload mode,
permission tier and whether the request was blocked.
"""

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from tandem.app.core.lifecycle.states import WorkloadMode


class MessageRole(str, Enum):
    """Message roles in a conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    role: MessageRole
    content: str
    images: Optional[List[str]] = None  # base64, no data: prefix


class RoutingHints(BaseModel):
    """Decisions forwarded by the upstream policy gate."""
    intent: str = "chat"
    mode: WorkloadMode = WorkloadMode.MAIN
    tier: str = "free"
    blocked: bool = False
    block_reason: Optional[str] = None

    @field_validator("tier", mode="before")
    @classmethod
    def normalize_tier(cls, v):
        return (v or "free").lower()


class ChatRequest(BaseModel):
    """Chat request accepted by ``POST /api/chat``."""
    messages: List[ChatMessage] = Field(min_length=1)
    session_id: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9_-]{1,128}$")
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    system_prompt: Optional[str] = None
    synthesis: bool = False  # request multi-candidate synthesis when the tier allows it
    hints: RoutingHints = Field(default_factory=RoutingHints)

    @property
    def last_user_message(self) -> str:
        for message in reversed(self.messages):
            if message.role is MessageRole.USER:
                return message.content
        return self.messages[-1].content


class VisionRequest(BaseModel):
    """Image request accepted by ``POST /api/vision/generate``."""
    prompt: str = Field(min_length=1, max_length=4000)
    session_id: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9_-]{1,128}$")
    width: Optional[int] = Field(default=None, ge=256, le=2048)
    height: Optional[int] = Field(default=None, ge=256, le=2048)
    seed: Optional[int] = None
    negative_prompt: Optional[str] = None
    flux_mode: Literal["schnell", "dev"] = "schnell"
    hints: RoutingHints = Field(default_factory=lambda: RoutingHints(mode=WorkloadMode.VISION))

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt must not be blank")
        return v.strip()


class CleanupRequest(BaseModel):
    profile: Optional[str] = None
