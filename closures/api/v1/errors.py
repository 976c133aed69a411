"""
Mapping of service errors to HTTP errors.
"""

from fastapi import HTTPException, status

from closures.core.exceptions import (
    ClosureError,
    CreateFailed,
    DocumentExistsError,
    ErrorKind,
)

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.PROVISION_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.DISPATCH_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.TIMEOUT_EXCEEDED: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.CREATE_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_exception(error: ClosureError) -> HTTPException:
    """
    Convert a service error into an HTTPException.

    Duplicate documents are a conflict; failed batches carry the
    per-item errors next to the aggregate message.
    """
    if isinstance(error, DocumentExistsError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error.message)
    if isinstance(error, CreateFailed):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": error.message, "errors": error.errors},
        )
    return HTTPException(
        status_code=_STATUS_BY_KIND.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=error.message,
    )
