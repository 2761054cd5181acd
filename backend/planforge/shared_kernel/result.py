"""Service response type returned at the repository boundary."""
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class ServiceResponse(Generic[T]):
    """Either a success payload or a user-facing error message."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.success

    @property
    def is_failure(self) -> bool:
        return not self.success

    @classmethod
    def ok(cls, data: T, **metadata: Any) -> "ServiceResponse[T]":
        return cls(success=True, data=data, metadata=dict(metadata))

    @classmethod
    def fail(cls, error: str, code: Optional[str] = None, **metadata: Any) -> "ServiceResponse[T]":
        return cls(success=False, error=error, code=code, metadata=dict(metadata))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.success:
            payload["data"] = self.data
        else:
            payload["error"] = self.error
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload
