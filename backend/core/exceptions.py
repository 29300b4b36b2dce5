from typing import Optional

from fastapi import HTTPException, status


def credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )


def forbidden_exception(detail: str = "Access denied") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=detail,
    )


# ── Dispatch error taxonomy ───────────────────────────────────────────────────
class DispatchError(HTTPException):
    """
    Base of every typed error raised by the dispatch engine.
    `code` is stable and machine-readable; `detail` is the plain-language message.
    """
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "dispatch_error"
    retryable: bool = False
    default_detail: str = "Request rejected"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class NotFound(DispatchError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_detail = "Resource not found"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class InvalidTransition(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"
    default_detail = "This order is no longer available"


class Unauthorized(DispatchError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "unauthorized"
    default_detail = "You are not allowed to perform this action"


class NoFreeAgent(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    code = "no_free_agent"
    default_detail = "No free agent is online right now. Retry later or assign manually."


class ConflictingAssignment(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflicting_assignment"
    default_detail = "This order was just taken by someone else"


class StorageUnavailable(DispatchError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "storage_unavailable"
    retryable = True
    default_detail = "Storage is temporarily unavailable, please retry"


class DispatchValidationError(DispatchError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"
    default_detail = "Invalid request"


class ProofRequired(DispatchValidationError):
    code = "proof_required"
    default_detail = "At least one proof-of-delivery image is required"
