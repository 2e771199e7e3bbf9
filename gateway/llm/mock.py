"""Mock chat model for development and testing."""

from __future__ import annotations

from typing import Any, AsyncGenerator, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)


class MockLLM(BaseChatModel):
    """Deterministic chat model that never leaves the process.

    The reply depends only on the conversation, so the same request always
    produces the same text whether it is invoked or streamed. Streaming
    yields the reply word by word and then an empty chunk carrying the
    stop reason.
    """

    response_text: Optional[str] = None

    @property
    def _llm_type(self) -> str:
        return "mock"

    def _generate(self, *args, **kwargs):
        raise NotImplementedError("Use ainvoke instead")

    def reply_for(self, messages: list[BaseMessage]) -> str:
        """The reply this model gives to ``messages``."""
        if self.response_text is not None:
            return self.response_text

        last_message = str(messages[-1].content).lower() if messages else ""

        # Echo system prompt if requested
        if "what is in my system prompt" in last_message:
            system_msg = next(
                (str(m.content) for m in messages if isinstance(m, SystemMessage)), "None"
            )
            return f"System prompt contains: {system_msg}"

        if "hello" in last_message:
            return "Hello! How can I assist you today?"
        if "help" in last_message:
            return "I'd be happy to help! What would you like to work on?"
        return "I understand. Let me help you with that."

    async def ainvoke(
        self,
        input: list[BaseMessage] | str,
        config: Any | None = None,
        **kwargs: Any,
    ) -> AIMessage:
        """Return the full reply at once."""
        messages = input if isinstance(input, list) else [HumanMessage(content=input)]
        return AIMessage(
            content=self.reply_for(messages),
            response_metadata={"finish_reason": "stop", "model_name": "mock-deterministic"},
        )

    async def astream(
        self,
        input: list[BaseMessage] | str,
        config: Any | None = None,
        **kwargs: Any,
    ) -> AsyncGenerator[AIMessageChunk, None]:
        """Stream the reply word by word."""
        messages = input if isinstance(input, list) else [HumanMessage(content=input)]
        words = self.reply_for(messages).split(" ")
        for i, word in enumerate(words):
            yield AIMessageChunk(content=word + (" " if i < len(words) - 1 else ""))

        # Final empty chunk signals completion
        yield AIMessageChunk(content="", response_metadata={"finish_reason": "stop"})
