"""
State Reconstruction Exceptions - Custom exception hierarchy.

Exceptions are raised at the edges (one malformed record, one failed
fetch) and converted into diagnostics by the batch-level callers.
None of them is allowed to blind a whole snapshot.
"""

from datetime import datetime
from typing import Any, Optional


class ReconstructionError(Exception):
    """Base exception for all state reconstruction errors."""

    def __init__(
        self,
        message: str,
        event_type: Optional[str] = None,
        tx_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.event_type = event_type
        self.tx_id = tx_id
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "event_type": self.event_type,
            "tx_id": self.tx_id,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.event_type:
            parts.append(f"[event={self.event_type}]")
        if self.tx_id:
            parts.append(f"[tx={self.tx_id}]")
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class NormalizationError(ReconstructionError):
    """A single raw event could not be converted to canonical form."""

    def __init__(
        self,
        message: str,
        event_type: Optional[str] = None,
        tx_id: Optional[str] = None,
        field_name: Optional[str] = None,
        raw_data: Optional[Any] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, event_type, tx_id, original_error, context)
        self.field_name = field_name
        self.raw_data = raw_data

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "field_name": self.field_name,
            "raw_data": str(self.raw_data)[:500] if self.raw_data is not None else None,
        })
        return data


class FetchError(ReconstructionError):
    """Error while reading events or objects from the ledger."""

    def __init__(
        self,
        message: str,
        event_type: Optional[str] = None,
        method: Optional[str] = None,
        status_code: Optional[int] = None,
        request_url: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, event_type, None, original_error, context)
        self.method = method
        self.status_code = status_code
        self.request_url = request_url

    def is_client_error(self) -> bool:
        """Client errors are not worth retrying."""
        return self.status_code is not None and 400 <= self.status_code < 500

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "method": self.method,
            "status_code": self.status_code,
            "request_url": self.request_url,
        })
        return data


class RpcResponseError(FetchError):
    """The node answered with a JSON-RPC error object. Never retried."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        rpc_code: Optional[int] = None,
        request_url: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, None, method, None, request_url, None, context)
        self.rpc_code = rpc_code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["rpc_code"] = self.rpc_code
        return data


class ConfigurationError(ReconstructionError):
    """Invalid engine configuration."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, None, None, original_error, context)
        self.config_key = config_key

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["config_key"] = self.config_key
        return data


class AllocationValidationError(ReconstructionError):
    """An allocation set was refused at the submission boundary."""

    def __init__(
        self,
        message: str,
        errors: Optional[list[str]] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, None, None, None, context)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["errors"] = list(self.errors)
        return data
