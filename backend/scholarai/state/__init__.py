from scholarai.state.machine import (
    ALLOWED_TRANSITIONS,
    DerivedMetadata,
    DocumentStateMachine,
    can_transition,
    is_terminal,
)
from scholarai.state.store import DocumentRecord, DocumentStore, InMemoryDocumentStore

__all__ = [
    "ALLOWED_TRANSITIONS",
    "DerivedMetadata",
    "DocumentStateMachine",
    "can_transition",
    "is_terminal",
    "DocumentRecord",
    "DocumentStore",
    "InMemoryDocumentStore",
]
