"""Structured exception hierarchy for the loader.

Every error carries a message plus optional details and a suggestion so
failures can be logged as structured data and replayed without re-deriving
state.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from shardloader.lib.models import LoadContext, LoadOutcome, ShardFailure

__all__ = [
    "LoaderError",
    "ConfigurationError",
    "BrokerError",
    "StageError",
    "StageVerificationError",
    "LedgerError",
    "WarehouseError",
    "ShardReadError",
    "LoadFailedError",
    "RecordValidationError",
]


class LoaderError(Exception):
    """Base exception for all loader errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        table: Optional[str] = None,
        stream: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.table = table
        self.stream = stream
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if table or stream:
            parts.insert(0, f"[{table or '?'} <- {stream or '?'}]")

        if self.details:
            parts.append("\nDetails:")
            parts.extend(f"  {k}: {v}" for k, v in self.details.items())

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "table": self.table,
            "stream": self.stream,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ConfigurationError(LoaderError):
    """Invalid or incomplete configuration. Fatal, never retried."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class BrokerError(LoaderError):
    """Failure talking to the stream broker."""

    pass


class StageError(LoaderError):
    """Failure writing to or reading from the blob stage."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.url = url
        self.cause = cause

        details = kwargs.pop("details", {})
        if url:
            details["url"] = url
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class StageVerificationError(StageError):
    """Stored blob size never matched the local size.

    Only raised when strict verification is enabled.
    """

    def __init__(
        self,
        message: str,
        *,
        expected: Optional[int] = None,
        actual: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        self.expected = expected
        self.actual = actual

        details = kwargs.pop("details", {})
        details["expected_size"] = expected
        details["actual_size"] = actual

        suggestion = kwargs.pop("suggestion", None) or (
            "The object store may be serving a stale read. Re-run the load; "
            "nothing was committed."
        )
        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class LedgerError(LoaderError):
    """The checkpoint ledger is in a state the loader cannot interpret."""

    pass


class WarehouseError(LoaderError):
    """Failure executing a statement against the warehouse."""

    pass


class ShardReadError(LoaderError):
    """One or more shard workers failed during the read/stage phase.

    The cycle is aborted before the commit phase, so none of the shards
    (including the ones that succeeded) are loaded.
    """

    def __init__(
        self,
        message: str,
        *,
        failures: "List[ShardFailure]",
        context: "Optional[LoadContext]" = None,
        **kwargs: Any,
    ) -> None:
        self.failures = failures
        self.context = context

        details = kwargs.pop("details", {})
        for failure in failures:
            details[f"shard {failure.shard_id}"] = (
                f"{type(failure.error).__name__}: {failure.error}"
            )

        suggestion = kwargs.pop("suggestion", None) or (
            "Staged blobs of this cycle are orphaned and safe to delete. "
            "The next cycle resumes from the last committed checkpoint."
        )

        table = kwargs.pop("table", None)
        stream = kwargs.pop("stream", None)
        super().__init__(
            message,
            table=context.table if context else table,
            stream=context.stream if context else stream,
            details=details,
            suggestion=suggestion,
            **kwargs,
        )


class LoadFailedError(LoaderError):
    """A load cycle finished with a failed outcome."""

    def __init__(self, outcome: "LoadOutcome") -> None:
        self.outcome = outcome
        context = outcome.context
        failure = outcome.failure.value if outcome.failure else "unknown"

        details: Dict[str, Any] = {"failure": failure}
        details.update(outcome.detail)

        super().__init__(
            f"Load failed: {failure}",
            table=context.table if context else None,
            stream=context.stream if context else None,
            details=details,
        )


class RecordValidationError(LoaderError):
    """A record does not conform to its table schema."""

    def __init__(
        self,
        message: str,
        *,
        column: Optional[str] = None,
        value: Any = None,
        type_definition: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.column = column
        self.value = value
        self.type_definition = type_definition

        details = kwargs.pop("details", {})
        if column:
            details["column"] = column
        if value is not None:
            details["value"] = repr(value)
        if type_definition:
            details["type"] = type_definition

        super().__init__(message, details=details, **kwargs)
