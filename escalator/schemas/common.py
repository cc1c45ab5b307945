"""Response envelopes and pagination shared by all routes."""

from typing import Generic, Sequence, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginationParams(BaseModel):
    """Page selection from the query string."""

    page: int = Field(default=1, ge=1, description="Page number")
    page_size: int = Field(default=20, ge=1, le=100, description="Items per page")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def slice(self, values: Sequence[T]) -> list[T]:
        """Cut the current page out of a fully loaded sequence."""
        return list(values[self.offset:self.offset + self.page_size])


class APIResponse(BaseModel, Generic[T]):
    """Success envelope; errors use the same keys with the HTTP status as code."""

    code: int = Field(default=0, description="0 on success")
    message: str = Field(default="success")
    data: T | None = None


class PaginatedResponse(BaseModel, Generic[T]):
    """Envelope for one page of a list."""

    code: int = Field(default=0, description="0 on success")
    message: str = Field(default="success")
    data: list[T] = Field(default_factory=list)
    total: int = Field(default=0, ge=0, description="Size of the whole list")
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

    @classmethod
    def of(cls, data: list, total: int, pagination: PaginationParams) -> "PaginatedResponse":
        """Wrap an already cut page."""
        return cls(data=data, total=total, page=pagination.page, page_size=pagination.page_size)
