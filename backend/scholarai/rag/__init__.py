"""
RAG package — query-time side of the ingestion core.

  ContextAssembler  retrieval + token-bounded context with citations
  ChatStream        cancellable token stream (import from scholarai.rag.streaming;
                    pulls in langchain-openai)
"""

from scholarai.rag.context import ContextAssembler, estimate_tokens

__all__ = [
    "ContextAssembler",
    "estimate_tokens",
    # ChatStream, build_chat_messages — import directly from scholarai.rag.streaming
]
