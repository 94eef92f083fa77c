"""
Unit Tests — ChatStream and chat message assembly

The chat model is a fake whose astream() is an async generator that records
how far it was consumed and whether it was closed.
"""

from __future__ import annotations

import uuid

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage

from scholarai.rag.streaming import (
    NO_CONTEXT_INSTRUCTION,
    ChatStream,
    build_chat_messages,
    get_llm,
)
from scholarai.schemas.documents import RankedChunk, RetrievalContext


class FakeChatModel:
    def __init__(self, fragments) -> None:
        self.fragments = list(fragments)
        self.started = False
        self.yielded = 0
        self.closed = False
        self.received = None

    async def astream(self, messages):
        self.started = True
        self.received = messages
        try:
            for fragment in self.fragments:
                self.yielded += 1
                yield AIMessageChunk(content=fragment)
        finally:
            self.closed = True


def _context() -> RetrievalContext:
    return RetrievalContext(
        query="q",
        text="Entropy never decreases.",
        chunks=[
            RankedChunk(
                chunk_id="c0",
                document_id=uuid.uuid4(),
                chunk_index=0,
                page_number=7,
                text="Entropy never decreases.",
                score=0.9,
            ),
        ],
    )


# ─────────────────────────────────────────────────────────────────────────────
# Streaming
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestChatStream:

    async def test_yields_fragments_in_order(self):
        llm = FakeChatModel(["Entropy ", "", "always ", "grows."])
        stream = ChatStream(llm, [HumanMessage(content="hi")])

        received = [fragment async for fragment in stream]

        assert received == ["Entropy ", "always ", "grows."]
        assert stream.fragments == 3
        assert stream.closed
        assert llm.closed

    async def test_provider_not_called_until_first_read(self):
        llm = FakeChatModel(["a"])
        stream = ChatStream(llm, [HumanMessage(content="hi")])

        assert llm.started is False
        assert await stream.__anext__() == "a"
        assert llm.started is True

    async def test_cancel_closes_provider_stream(self):
        llm = FakeChatModel(["one ", "two ", "three"])
        stream = ChatStream(llm, [HumanMessage(content="hi")])

        assert await stream.__anext__() == "one "
        await stream.cancel()

        assert llm.closed
        assert llm.yielded == 1
        assert [f async for f in stream] == []

    async def test_context_manager_closes_on_early_exit(self):
        llm = FakeChatModel(["one ", "two "])
        async with ChatStream(llm, [HumanMessage(content="hi")]) as stream:
            async for _ in stream:
                break
        assert stream.closed
        assert llm.closed

    async def test_close_before_start_is_safe(self):
        llm = FakeChatModel(["never"])
        stream = ChatStream(llm, [HumanMessage(content="hi")])
        await stream.aclose()
        assert [f async for f in stream] == []
        assert llm.started is False

    async def test_multi_part_content(self):
        class BlockModel(FakeChatModel):
            async def astream(self, messages):
                yield AIMessageChunk(content=[{"type": "text", "text": "block"}, {"type": "text", "text": "s"}])

        stream = ChatStream(BlockModel([]), [HumanMessage(content="hi")])
        assert [f async for f in stream] == ["blocks"]


# ─────────────────────────────────────────────────────────────────────────────
# Message assembly
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestBuildChatMessages:

    def test_context_goes_into_system_prompt(self):
        messages = build_chat_messages("What grows?", _context(), "You are a tutor.")

        assert isinstance(messages[0], SystemMessage)
        assert messages[0].content.startswith("You are a tutor.")
        assert "[page 7] Entropy never decreases." in messages[0].content
        assert isinstance(messages[-1], HumanMessage)
        assert messages[-1].content == "What grows?"

    def test_empty_context_says_so(self):
        messages = build_chat_messages("q", RetrievalContext.empty("q"), "You are a tutor.")
        assert NO_CONTEXT_INSTRUCTION in messages[0].content

    def test_history_keeps_last_turns_with_roles(self):
        history = [("user", f"u{i}") if i % 2 == 0 else ("assistant", f"a{i}") for i in range(8)]

        messages = build_chat_messages("now?", _context(), "sys", history=history, history_turns=5)

        middle = messages[1:-1]
        assert [m.content for m in middle] == ["a3", "u4", "a5", "u6", "a7"]
        assert isinstance(middle[0], AIMessage)
        assert isinstance(middle[1], HumanMessage)

    def test_zero_history_turns(self):
        messages = build_chat_messages("q", _context(), "sys", history=[("user", "old")], history_turns=0)
        assert len(messages) == 2


@pytest.mark.unit
def test_get_llm_uses_settings(settings):
    llm = get_llm(settings)
    assert llm.model_name == settings.llm_model
    assert llm.streaming is True


@pytest.mark.unit
async def test_stream_from_settings_uses_history_turns(settings):
    llm = FakeChatModel(["ok"])
    tuned = settings.model_copy(update={"chat_history_turns": 2})
    history = [("user", "u0"), ("assistant", "a1"), ("user", "u2"), ("assistant", "a3")]

    stream = ChatStream.from_settings(tuned, "next?", _context(), "sys", history, llm=llm)
    received = [fragment async for fragment in stream]

    assert received == ["ok"]
    assert [m.content for m in llm.received[1:-1]] == ["u2", "a3"]
    assert llm.received[-1].content == "next?"
