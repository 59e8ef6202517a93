"""Uniform response envelope shared by every endpoint."""
from math import ceil
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "PaginationMeta":
        return cls(
            page=page,
            limit=limit,
            total=total,
            pages=ceil(total / limit) if total > 0 else 1,
        )


class APIResponse(BaseModel, Generic[T]):
    """Successful single-object response."""
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class PaginatedResponse(BaseModel, Generic[T]):
    """Successful list response with page metadata."""
    success: bool = True
    data: List[T] = Field(default_factory=list)
    pagination: PaginationMeta
    message: Optional[str] = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict = Field(default_factory=dict)
    retryable: bool = False


class ErrorResponse(BaseModel):
    """
    Failed response.

    ``data`` carries the current authoritative state of the entity the
    operation was rejected against (stock balance, transfer status, bag
    weight) when there is one.
    """
    success: bool = False
    error: ErrorDetail
    data: Optional[Any] = None
