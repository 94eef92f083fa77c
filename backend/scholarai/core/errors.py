"""
Error taxonomy for the ingestion core.

  ErrorKind.INPUT          unreadable / corrupt / unsupported source file
  ErrorKind.TRANSIENT      provider timeout, index write failure, anything unknown
  ErrorKind.CONFIGURATION  dimension mismatch, missing parameter (never retried)
  ErrorKind.EXHAUSTED      max attempts reached; last message is kept

Stage code raises; IngestionPipeline catches at its boundary, records the
structured error on the Document and hands `retryable` to the job queue,
which owns the backoff policy.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INPUT         = "input"
    TRANSIENT     = "transient"
    CONFIGURATION = "configuration"
    EXHAUSTED     = "exhausted"


# ---------------------------------------------------------------------------
# Pipeline errors (recorded on the Document)
# ---------------------------------------------------------------------------

class IngestionError(Exception):
    """Base for every error the pipeline knows how to classify."""

    kind:      ErrorKind = ErrorKind.TRANSIENT
    retryable: bool      = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InputError(IngestionError):
    kind = ErrorKind.INPUT


class UnsupportedFileError(InputError):
    def __init__(self, content_type: str) -> None:
        super().__init__(f"unsupported file type: {content_type or 'unknown'}")
        self.content_type = content_type


class TransientError(IngestionError):
    kind = ErrorKind.TRANSIENT


class EmbeddingBatchError(TransientError):
    """A sub-batch failed after retries; `start:end` is its slice of the input."""

    def __init__(self, batch_index: int, start: int, end: int, reason: str) -> None:
        super().__init__(
            f"embedding sub-batch {batch_index} (items {start}-{end - 1}) failed: {reason}"
        )
        self.batch_index = batch_index
        self.start = start
        self.end = end


class ConfigurationError(IngestionError):
    kind = ErrorKind.CONFIGURATION
    retryable = False


class DimensionMismatchError(ConfigurationError):
    def __init__(self, index: int, expected: int, actual: int) -> None:
        super().__init__(
            f"embedding dimension mismatch at item {index}: expected {expected}, got {actual}"
        )
        self.index = index
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Coordination errors (never recorded as a processing failure)
# ---------------------------------------------------------------------------

class StaleLeaseError(Exception):
    """The caller no longer owns the job / document it is trying to write."""


class InvalidTransitionError(Exception):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"invalid state transition {current} -> {target}")
        self.current = current
        self.target = target


class DocumentNotFoundError(LookupError):
    def __init__(self, document_id) -> None:
        super().__init__(f"document {document_id} not found")
        self.document_id = document_id


def classify(exc: BaseException) -> IngestionError:
    """Map any exception onto the taxonomy; unknown errors count as transient."""
    if isinstance(exc, IngestionError):
        return exc
    err = TransientError(f"{type(exc).__name__}: {exc}")
    err.__cause__ = exc
    return err
