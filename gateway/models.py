"""Request and response models for the completion gateway."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["system", "user", "assistant"]


class ChatTurn(BaseModel):
    """One message of the conversation context."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class CompletionRequest(BaseModel):
    """A single chat completion call.

    ``temperature`` and ``max_output_tokens`` left as None are filled in from
    settings by the router; range checks happen there so that a bad value
    surfaces as a gateway ValidationError before any backend is contacted.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    turns: tuple[ChatTurn, ...]
    backend: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    streaming: bool = False
    cacheable: bool = False
    requester_id: Optional[str] = None
    tier: str = "free"


class CompletionResult(BaseModel):
    """Outcome of a non-streaming completion."""

    model_config = ConfigDict(frozen=True)

    content: str
    prompt_tokens: int = Field(ge=0)
    completion_tokens: int = Field(ge=0)
    total_tokens: int = Field(ge=0)
    finish_reason: Optional[str] = None
    backend_used: str
    model_used: str
    tokens_estimated: bool = False

    @model_validator(mode="after")
    def check_total(self) -> CompletionResult:
        """Total must always be the sum of prompt and completion tokens."""
        if self.total_tokens != self.prompt_tokens + self.completion_tokens:
            raise ValueError(
                f"total_tokens ({self.total_tokens}) must equal prompt_tokens + "
                f"completion_tokens ({self.prompt_tokens + self.completion_tokens})"
            )
        return self


class BackendHandle(BaseModel):
    """What the registry knows about one backend."""

    model_config = ConfigDict(frozen=True)

    name: str
    configured: bool
    supports_streaming: bool = True
    supports_embeddings: bool = False
    supports_moderation: bool = False


class ModelOption(BaseModel):
    """A model a requester may pick."""

    model_config = ConfigDict(frozen=True)

    backend: str
    model: str
    display_name: str


class ModerationResult(BaseModel):
    """Verdict from the moderation oracle."""

    flagged: bool = False
    categories: dict[str, bool] = Field(default_factory=dict)
    scores: dict[str, float] = Field(default_factory=dict)
