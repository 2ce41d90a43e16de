"""
Domain error taxonomy

Every error carries a stable machine code plus a message safe to show users.
The API layer maps these to HTTP status codes; the job processor turns any
of them into an item-level failure.
"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base class for expected, classified failures"""

    code = "DOMAIN_ERROR"
    default_user_message = "Something went wrong. Please try again."

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        user_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.user_message = user_message or self.default_user_message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.user_message,
            "details": self.details,
        }


class ValidationError(DomainError):
    """Malformed input to a public operation; raised before any state mutation"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("user_message", message)
        super().__init__(message, **kwargs)


class AuthorizationError(DomainError):
    """Caller does not own the referenced record"""

    code = "UNAUTHORIZED"
    default_user_message = "You do not have access to this resource."


class AuthenticationRequiredError(AuthorizationError):
    """No authenticated user on the request"""

    code = "UNAUTHENTICATED"
    default_user_message = "Please sign in to continue."


class DuplicateFileError(DomainError):
    """The same file bytes were already imported by this user"""

    code = "DUPLICATE_FILE"
    default_user_message = "This file has already been imported."

    def __init__(self, message: str, existing_document_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if existing_document_id:
            details["existing_document_id"] = existing_document_id
        super().__init__(message, details=details, **kwargs)
        self.existing_document_id = existing_document_id


class ProviderError(DomainError):
    """External AI / extraction call failed or returned unschematized data"""

    code = "PROVIDER_ERROR"
    default_user_message = "An external service failed. Please retry later."

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider


class ExtractionError(ProviderError):
    """Document extraction failed (distinct from a low-confidence result)"""

    code = "EXTRACTION_ERROR"
    default_user_message = "We could not read this document."


class ProcessingError(DomainError):
    """Catch-all for a batch item's pipeline failure"""

    code = "PROCESSING_ERROR"
    default_user_message = "This file could not be processed."


def describe_error(error: object) -> str:
    """
    Produce a human-readable message for any raised value.

    Never raises: a failing __str__ / __repr__ falls back to the type name.

    Args:
        error: Exception instance or any other value

    Returns:
        Non-empty message string
    """
    try:
        if isinstance(error, DomainError):
            return error.message or error.code
        if isinstance(error, BaseException):
            text = str(error)
            if text:
                return text
            return type(error).__name__
        if isinstance(error, str):
            return error or "Unknown error"
        return repr(error)
    except Exception:
        try:
            return f"Unprintable error of type {type(error).__name__}"
        except Exception:
            return "Unknown error"


def to_user_message(error: object) -> str:
    """Map any error to a message that is safe to display"""
    if isinstance(error, DomainError):
        return error.user_message
    return DomainError.default_user_message
