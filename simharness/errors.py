"""
Simulation Harness Error Hierarchy

Unified exception hierarchy for consistent error handling across the harness.
All custom exceptions inherit from SimHarnessError for easy catching and
filtering.

Usage:
    from simharness.errors import StoreUnavailableError, SnapshotError

    try:
        store.save_run(record)
    except StoreUnavailableError as e:
        logger.critical(f"Simulation store offline: {e.message}")
"""

from typing import Any

__all__ = [
    "ConfigurationError",
    "InfrastructureError",
    "InvariantError",
    "InvariantRegistrationError",
    # Base error
    "SimHarnessError",
    "SnapshotError",
    # Persistence errors
    "StorageError",
    "StoreUnavailableError",
    "SyncError",
    # Validation errors
    "ValidationError",
]


class SimHarnessError(Exception):
    """Base exception for all harness errors.

    Attributes:
        code: Machine-readable error code for categorization
        message: Human-readable error description
        context: Additional context for debugging
    """
    code: str = "SIMHARNESS_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


# =============================================================================
# Harness-internal Errors
# =============================================================================


class SnapshotError(SimHarnessError):
    """State could not be copied.

    Raised when neither a deep copy nor a JSON round trip can produce an
    independent snapshot of the subject state.
    """
    code: str = "SNAPSHOT_ERROR"


class InvariantError(SimHarnessError):
    """An invariant predicate misbehaved.

    Raised when a predicate returns something that cannot be interpreted as
    a list of violations. Never raised for a detected violation: those are
    data, not errors.

    Attributes:
        invariant: Name of the predicate that failed
    """
    code: str = "INVARIANT_ERROR"

    def __init__(
        self,
        message: str,
        invariant: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.invariant = invariant
        if invariant:
            self.context["invariant"] = invariant


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(SimHarnessError):
    """Input validation failed."""
    code: str = "VALIDATION_ERROR"


class InvariantRegistrationError(ValidationError):
    """Invalid invariant registration.

    Raised at registration time (never at evaluation time) when a predicate
    has an empty or duplicate name, is not callable, or does not accept the
    arguments its kind requires.
    """
    code: str = "INVARIANT_REGISTRATION_ERROR"


class ConfigurationError(ValidationError):
    """Invalid harness configuration."""
    code: str = "CONFIGURATION_ERROR"


# =============================================================================
# Infrastructure Errors
# =============================================================================


class InfrastructureError(SimHarnessError):
    """Base class for collaborator and persistence failures."""
    code: str = "INFRASTRUCTURE_ERROR"


class StorageError(InfrastructureError):
    """A store operation failed and was rolled back.

    Attributes:
        table: Table the failed operation was writing or reading
    """
    code: str = "STORAGE_ERROR"

    def __init__(
        self,
        message: str,
        table: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.table = table
        if table:
            self.context["table"] = table


class StoreUnavailableError(StorageError):
    """The simulation store cannot be opened or written at all.

    This is a data-loss risk and must surface loudly; callers must not treat
    it like an ordinary harness-internal failure.
    """
    code: str = "STORE_UNAVAILABLE"


class SyncError(InfrastructureError):
    """Remote reporting sink rejected or could not receive a report.

    Attributes:
        fingerprint: Fingerprint of the violation being synced
        status_code: HTTP status returned by the sink, if any
    """
    code: str = "SYNC_ERROR"

    def __init__(
        self,
        message: str,
        fingerprint: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.fingerprint = fingerprint
        self.status_code = status_code
        if fingerprint:
            self.context["fingerprint"] = fingerprint
        if status_code is not None:
            self.context["status_code"] = status_code
