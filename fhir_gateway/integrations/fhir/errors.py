"""
FHIR error types and OperationOutcome rendering

Every error raised by the resource store or an operation carries the HTTP
status it maps to and renders as a FHIR OperationOutcome.
"""

from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from .fhir_models import FHIR_JSON

# ==============================================================================
# Exceptions
# ==============================================================================


class FHIRError(Exception):
    """Base FHIR error"""

    status_code: int = 500
    issue_code: str = "exception"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_operation_outcome(self) -> Dict[str, Any]:
        return operation_outcome("error", self.issue_code, self.message)


class ResourceNotFoundError(FHIRError):
    """Resource not found"""

    status_code = 404
    issue_code = "not-found"


class InvalidResourceError(FHIRError):
    """Request body is not a usable FHIR resource"""

    status_code = 400
    issue_code = "invalid"


class UnprocessableResourceError(FHIRError):
    """Resource is well-formed but violates a business rule"""

    status_code = 422
    issue_code = "processing"


class PreconditionFailedError(FHIRError):
    """Operation precondition not met"""

    status_code = 412
    issue_code = "business-rule"


# ==============================================================================
# OperationOutcome
# ==============================================================================


def operation_outcome(severity: str, code: str, diagnostics: str) -> Dict[str, Any]:
    """Build a single-issue OperationOutcome resource."""
    return {
        "resourceType": "OperationOutcome",
        "issue": [
            {
                "severity": severity,
                "code": code,
                "diagnostics": diagnostics,
            }
        ],
    }


async def fhir_error_handler(request: Request, exc: FHIRError) -> JSONResponse:
    """FastAPI exception handler rendering FHIRError as an OperationOutcome."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_operation_outcome(),
        media_type=FHIR_JSON,
    )
