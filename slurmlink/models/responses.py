"""Common result envelope and API response models."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorInfo(BaseModel):
    """Serializable view of a classified failure."""

    kind: str
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)
    suggestions: list[str] = Field(default_factory=list)


class OperationResult(BaseModel):
    """Success/error envelope returned by every boundary operation."""

    success: bool
    data: Any = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def ok(cls, data: Any = None) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: ErrorInfo) -> OperationResult:
        return cls(success=False, error=error)


class HealthResponse(BaseModel):
    status: str
    version: str
