"""Shared kernel exception hierarchy."""
from typing import Optional, Dict, Any


class DomainException(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}


class ValidationError(DomainException):
    """Raised when a record or document does not match its schema."""

    def __init__(self, message: str, field: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details={"field": field, **(details or {})})
        self.field = field


class TransformationError(DomainException):
    """Raised when a primary record cannot be turned into a secondary document."""

    def __init__(
        self,
        message: str,
        original_data: Any = None,
        validation_errors: Optional[Any] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSFORMATION_ERROR",
            details={"original_data": original_data, "validation_errors": validation_errors},
        )
        self.original_data = original_data
        self.validation_errors = validation_errors


class DualStorageError(DomainException):
    """Raised when a dual write fails.

    ``rollback_failed`` is set when the compensating delete of the primary
    row failed too; the stores are then known to disagree and an operator
    has to clean up by hand.
    """

    def __init__(
        self,
        message: str,
        code: str = "DUAL_STORAGE_ERROR",
        details: Optional[Dict[str, Any]] = None,
        rollback_failed: bool = False,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.rollback_failed = rollback_failed


class StorageStrategyError(DomainException):
    """Raised when the storage strategy conflicts with the environment."""

    def __init__(self, message: str, strategy: str, environment: str) -> None:
        super().__init__(
            message,
            code="STORAGE_STRATEGY_ERROR",
            details={"strategy": strategy, "environment": environment},
        )
        self.strategy = strategy
        self.environment = environment


class EntityNotFoundError(DomainException):
    """Raised when a domain entity is not found."""


class DuplicateProjectError(DomainException):
    """Raised when an owner already has a project with the same title."""


class ExternalServiceError(DomainException):
    """Raised when an external service fails."""


class StoreError(ExternalServiceError):
    """Raised by store clients."""


class PrimaryStoreError(StoreError):
    """Raised when the primary (relational) store fails."""


class SecondaryStoreError(StoreError):
    """Raised when the secondary (document) store fails."""


class UniqueConstraintError(PrimaryStoreError):
    """Raised when a primary write violates a unique constraint."""
