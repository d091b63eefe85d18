"""Pydantic models shared by every endpoint."""

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Error detail with machine-readable code and human-readable message."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")


class ApiErrorResponse(BaseModel):
    """Error body nested under ``detail`` in every error response."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = Field("healthy", description="Service status")
    storage: str = Field(..., description="Active storage backend (memory or firestore)")
