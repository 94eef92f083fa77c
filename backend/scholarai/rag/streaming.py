"""
Chat stream — pull-based, cancellable token stream over a LangChain chat model.

    stream = ChatStream(llm, build_chat_messages(question, context, system_prompt, history))
    async with stream:
        async for fragment in stream:
            await send(fragment)          # slow consumer ⇒ slow provider reads

The consumer drives every read, so backpressure comes for free. cancel() /
aclose() closes the provider's async generator (and with it the HTTP
stream); iterating afterwards simply stops.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from scholarai.core.config import Settings
from scholarai.schemas.documents import RetrievalContext

logger = logging.getLogger(__name__)

NO_CONTEXT_INSTRUCTION = (
    "No relevant context was found in the selected documents for this question. "
    "Say so plainly instead of answering from general knowledge."
)

_CONTEXT_INSTRUCTIONS = """\
INSTRUCTIONS:
- Answer the user's question based ONLY on the context provided above
- If the answer is not in the context, politely say so
- Cite specific sections (page numbers) when possible"""


def get_llm(settings: Settings) -> ChatOpenAI:
    """The configured chat model, with token streaming enabled."""
    return ChatOpenAI(
        model=settings.llm_model,
        api_key=settings.openai_api_key,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        streaming=True,
    )


def build_chat_messages(
    question:      str,
    context:       RetrievalContext,
    system_prompt: str,
    history:       Sequence[tuple[str, str]] = (),
    history_turns: int = 5,
) -> list[BaseMessage]:
    """
    [system (+context), last `history_turns` history messages, user question]

    history items are (role, content) with role "user" or "assistant".
    """
    if context.is_empty:
        system = f"{system_prompt}\n\n{NO_CONTEXT_INSTRUCTION}"
    else:
        sources = "\n\n---\n\n".join(
            f"[page {c.page_number}] {c.text}" for c in context.chunks
        )
        system = f"{system_prompt}\n\nCONTEXT FROM DOCUMENT:\n{sources}\n\n{_CONTEXT_INSTRUCTIONS}"

    messages: list[BaseMessage] = [SystemMessage(content=system)]
    recent = list(history)[-history_turns:] if history_turns > 0 else []
    for role, content in recent:
        if role == "assistant":
            messages.append(AIMessage(content=content))
        else:
            messages.append(HumanMessage(content=content))
    messages.append(HumanMessage(content=question))
    return messages


class ChatStream:
    """Async iterator of text fragments; single use."""

    def __init__(self, llm: BaseChatModel, messages: list[BaseMessage]) -> None:
        self._llm      = llm
        self._messages = messages
        self._stream: AsyncIterator | None = None
        self._closed   = False
        self.fragments = 0

    @classmethod
    def from_settings(
        cls,
        settings:      Settings,
        question:      str,
        context:       RetrievalContext,
        system_prompt: str,
        history:       Sequence[tuple[str, str]] = (),
        llm:           BaseChatModel | None = None,
    ) -> "ChatStream":
        messages = build_chat_messages(
            question, context, system_prompt, history,
            history_turns=settings.chat_history_turns,
        )
        return cls(llm or get_llm(settings), messages)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "ChatStream":
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        if self._stream is None:
            self._stream = self._llm.astream(self._messages)

        while True:
            try:
                chunk = await self._stream.__anext__()
            except StopAsyncIteration:
                await self.aclose()
                raise
            text = _chunk_text(chunk.content)
            if text:
                self.fragments += 1
                return text

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._stream is not None and hasattr(self._stream, "aclose"):
            await self._stream.aclose()
        logger.debug("Chat stream closed | fragments=%d", self.fragments)

    async def cancel(self) -> None:
        logger.info("Chat stream cancelled | fragments=%d", self.fragments)
        await self.aclose()

    async def __aenter__(self) -> "ChatStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def _chunk_text(content) -> str:
    if isinstance(content, str):
        return content
    # Multi-part content blocks
    return "".join(
        part.get("text", "") if isinstance(part, dict) else str(part)
        for part in content or []
    )
