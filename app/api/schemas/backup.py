"""Response schemas for the backup endpoints."""
from pydantic import BaseModel, Field


class RestoreResponse(BaseModel):
    """Body returned after a successful restore."""
    message: str = Field(..., description="Human readable result")


class ErrorResponse(BaseModel):
    """Body returned for every failed request."""
    error: str = Field(..., description="What went wrong")
