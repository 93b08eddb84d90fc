"""
Utils Package

Provides utility modules for:
- validation_errors: Structured HTTP error bodies for identity errors
"""

from .validation_errors import (
    ValidationErrorResponse,
    raise_identity_error,
    status_code_for,
)

__all__ = [
    'ValidationErrorResponse',
    'raise_identity_error',
    'status_code_for',
]
