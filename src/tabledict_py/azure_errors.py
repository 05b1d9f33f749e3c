from __future__ import annotations

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

from .errors import (
    BatchFailedError,
    ConflictError,
    NotFoundError,
    StoreError,
    ThrottledError,
    UnavailableError,
    ValidationError,
)

_THROTTLING_CODES = frozenset({"ServerBusy", "TooManyRequests"})


def map_azure_error(err: AzureError) -> Exception:
    message = str(getattr(err, "message", None) or err)

    if isinstance(err, ResourceNotFoundError):
        return NotFoundError(message)
    if isinstance(err, (ResourceExistsError, ResourceModifiedError)):
        return ConflictError(message)
    if isinstance(err, (ServiceRequestError, ServiceResponseError)):
        return UnavailableError(code=type(err).__name__, message=message)
    if not isinstance(err, HttpResponseError):
        return StoreError(code=type(err).__name__, message=message)

    status = err.status_code or 0
    code = str(err.error_code or status or "UnknownError")

    if status == 404:
        return NotFoundError(message)
    if status in {409, 412}:
        return ConflictError(message)
    if status == 429 or code in _THROTTLING_CODES:
        return ThrottledError(code=code, message=message)
    if status == 400:
        return ValidationError(message)
    if status >= 500:
        return UnavailableError(code=code, message=message)

    return StoreError(code=code, message=message)


def map_transaction_error(err: AzureError) -> Exception:
    """Map a failed ``submit_transaction`` call, keeping the failing operation index."""
    index = getattr(err, "index", None)
    if index is None:
        return map_azure_error(err)
    return BatchFailedError(
        message=f"transaction failed at operation {index}: {getattr(err, 'message', None) or err}",
        index=int(index),
        cause=map_azure_error(err),
    )
