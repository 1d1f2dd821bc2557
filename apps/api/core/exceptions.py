"""
Custom exception classes and error handling.

Two families live here:
- APIException and friends: consistent HTTP error responses.
- PipelineError and friends: raised inside the decision pipeline only for
  states that are genuinely unexpected. Expected outcomes (baseline not
  ready, no wake, suppression) are typed results, never exceptions.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code
        )


class ConflictError(APIException):
    """Resource conflict (e.g., duplicate entry)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


# =============================================================================
# PIPELINE ERRORS
# =============================================================================

class PipelineError(Exception):
    """Base class for unexpected failures inside the decision pipeline."""

    error_code = "PIPELINE_ERROR"

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage


class MalformedInputError(PipelineError):
    """Input has the wrong shape (missing required field, value out of domain)."""

    error_code = "MALFORMED_INPUT"

    def __init__(self, message: str, *, field: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.field = field


class UpstreamDependencyError(PipelineError):
    """An external collaborator (text generation, candidate retrieval) failed or timed out."""

    error_code = "UPSTREAM_FAILURE"

    def __init__(self, dependency: str, message: str, *, timed_out: bool = False):
        super().__init__(f"{dependency}: {message}", stage=dependency)
        self.dependency = dependency
        self.timed_out = timed_out
