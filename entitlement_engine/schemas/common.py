"""
Common Schemas
==============

Error envelope shared by every endpoint. Documents the body written by
the exception handlers in ``core.errors``.
"""

from typing import Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Error detail structure."""

    code: str
    message: str
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    success: bool = False
    error: ErrorDetail
