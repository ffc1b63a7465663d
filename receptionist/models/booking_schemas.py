"""
Pydantic schemas for booking API calls.
"""

from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class BookingRequest(BaseModel):
    """Body of POST /booking. The tenant travels in a header, never here."""
    function_name: str = Field(..., alias="functionName", description="Catalog function to execute")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Function parameters")
    session_id: Optional[str] = Field(None, alias="sessionId", description="Session making the call")

    class Config:
        populate_by_name = True


class BookingResponse(BaseModel):
    """Body returned by POST /booking."""
    success: bool = Field(..., description="Whether execution was successful")
    result: Optional[Any] = Field(None, description="Function result")
    error: Optional[Any] = Field(None, description="Error message or structured validation error")


class BookingResult(BaseModel):
    """Outcome of one adapter invocation, as seen by the supervisor."""
    success: bool = Field(..., description="Whether execution was successful")
    result: Optional[Any] = Field(None, description="Response data")
    error: Optional[Any] = Field(None, description="Error message if failed")
    status_code: Optional[int] = Field(None, description="HTTP status code")
    duration_ms: float = Field(..., description="Execution time in milliseconds")
