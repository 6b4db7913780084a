"""Standardized response models for all API endpoints."""

from datetime import UTC, datetime
from typing import Generic, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field

T = TypeVar("T")


class APIMetadata(BaseModel):
    """Metadata included in all API responses."""

    request_id: str = Field(
        default_factory=lambda: str(uuid4()), description="Unique request identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Response timestamp (UTC)",
    )
    version: str = Field(default="v1", description="API version")
    environment: str = Field(default="development", description="Environment name")


class StandardResponse(BaseModel, Generic[T]):
    """Standard response format for all API endpoints."""

    success: bool = Field(description="Whether the request was successful")
    data: T | None = Field(default=None, description="Response data")
    message: str | None = Field(default=None, description="Human-readable message")
    metadata: APIMetadata = Field(
        default_factory=APIMetadata, description="Response metadata"
    )


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(description="Error code")
    message: str = Field(description="Error message")
    field: str | None = Field(
        default=None, description="Field that caused the error (for validation errors)"
    )


class ErrorResponse(BaseModel):
    """Standard error response format."""

    success: bool = Field(default=False, description="Always false for errors")
    error: ErrorDetail = Field(description="Error details")
    metadata: APIMetadata = Field(
        default_factory=APIMetadata, description="Response metadata"
    )
