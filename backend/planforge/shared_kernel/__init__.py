"""Shared kernel primitives (errors, value objects, responses)."""

from .exceptions import (
    DomainException,
    ValidationError,
    TransformationError,
    DualStorageError,
    StorageStrategyError,
    EntityNotFoundError,
    DuplicateProjectError,
    ExternalServiceError,
    StoreError,
    PrimaryStoreError,
    SecondaryStoreError,
    UniqueConstraintError,
)
from .value_objects import SemanticVersion
from .result import ServiceResponse

__all__ = [
    "DomainException",
    "ValidationError",
    "TransformationError",
    "DualStorageError",
    "StorageStrategyError",
    "EntityNotFoundError",
    "DuplicateProjectError",
    "ExternalServiceError",
    "StoreError",
    "PrimaryStoreError",
    "SecondaryStoreError",
    "UniqueConstraintError",
    "SemanticVersion",
    "ServiceResponse",
]
