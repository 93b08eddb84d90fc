"""
Structured Error Utilities

Turns identity errors into standardized HTTP error responses so the UI can
tell validation failures, conflicts and expired sessions apart.

Error Response Format:
{
    "error": "validation_error" | "uniqueness_conflict" | ...,
    "parameter": "phone",
    "message": "phone number is not valid"
}
"""

import logging
from typing import Optional, Any, NoReturn

from fastapi import HTTPException, status

from identity.errors import (
    IdentityError,
    ValidationError,
    NotFoundError,
    UniquenessConflict,
    GenerationExhausted,
    PolicyViolation,
    ConflictingIdentity,
    EphemeralExpired,
    PartialMergeFailure,
    AuthenticationFailed,
)

logger = logging.getLogger(__name__)

# Most specific class first
ERROR_STATUS_CODES = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UniquenessConflict, status.HTTP_409_CONFLICT),
    (GenerationExhausted, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PolicyViolation, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConflictingIdentity, status.HTTP_409_CONFLICT),
    (EphemeralExpired, status.HTTP_410_GONE),
    (PartialMergeFailure, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (AuthenticationFailed, status.HTTP_401_UNAUTHORIZED),
]


class ValidationErrorResponse:
    """Structured error response builder."""

    @staticmethod
    def invalid_parameter(parameter: Optional[str], message: str, value: Optional[Any] = None) -> dict:
        response = {
            "error": "validation_error",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response

    @staticmethod
    def from_identity_error(error: IdentityError) -> dict:
        """
        Build the response body for an identity error.

        Args:
            error: The raised identity error

        Returns:
            Structured error dict
        """
        if isinstance(error, ValidationError):
            return ValidationErrorResponse.invalid_parameter(error.parameter, error.message)
        return error.to_dict()


def status_code_for(error: IdentityError) -> int:
    for error_class, code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def raise_identity_error(error: IdentityError) -> NoReturn:
    """
    Raise HTTPException carrying the structured body for ``error``.

    Raises:
        HTTPException with the mapped status and structured error body
    """
    code = status_code_for(error)
    if code >= 500:
        logger.error(f"Identity operation failed: {error.code}: {error.message}")
    headers = {"WWW-Authenticate": "Password"} if code == status.HTTP_401_UNAUTHORIZED else None
    raise HTTPException(
        status_code=code,
        detail=ValidationErrorResponse.from_identity_error(error),
        headers=headers,
    ) from error
