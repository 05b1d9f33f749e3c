from __future__ import annotations

from botocore.exceptions import ClientError

from .errors import (
    BatchFailedError,
    ConflictError,
    NotFoundError,
    StoreError,
    ThrottledError,
    UnavailableError,
    ValidationError,
)

_THROTTLING_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "RequestLimitExceeded",
        "ThrottlingException",
    }
)
_UNAVAILABLE_CODES = frozenset({"InternalServerError", "ServiceUnavailable"})


def map_client_error(err: ClientError) -> Exception:
    code = str(err.response.get("Error", {}).get("Code", ""))
    message = str(err.response.get("Error", {}).get("Message", ""))

    if code == "ConditionalCheckFailedException":
        # ALL_OLD is requested on conditional writes; no old item means the row was missing.
        if err.response.get("Item") is None:
            return NotFoundError(message or "entity not found")
        return ConflictError(message or "version mismatch")
    if code == "ValidationException":
        return ValidationError(message)
    if code == "ResourceNotFoundException":
        return NotFoundError(message)
    if code in _THROTTLING_CODES:
        return ThrottledError(code=code, message=message or str(err))
    if code in _UNAVAILABLE_CODES:
        return UnavailableError(code=code, message=message or str(err))

    return StoreError(code=code or "UnknownError", message=message or str(err))


def map_transaction_error(err: ClientError) -> Exception:
    code = str(err.response.get("Error", {}).get("Code", ""))
    message = str(err.response.get("Error", {}).get("Message", ""))

    if code == "TransactionCanceledException":
        reasons = [r for r in err.response.get("CancellationReasons") or [] if isinstance(r, dict)]
        for index, reason in enumerate(reasons):
            reason_code = str(reason.get("Code") or "None")
            if reason_code == "None":
                continue
            cause = _reason_error(reason_code, str(reason.get("Message") or ""), reason.get("Item"))
            return BatchFailedError(
                message=message or f"transaction canceled: {reason_code}",
                index=index,
                cause=cause,
            )

        return BatchFailedError(message=message or "transaction canceled", index=-1)

    return map_client_error(err)


def _reason_error(code: str, message: str, item: object) -> Exception:
    if code == "ConditionalCheckFailed":
        if item is None:
            return NotFoundError(message or "entity not found")
        return ConflictError(message or "version mismatch")
    if code in {"ProvisionedThroughputExceeded", "ThrottlingError"}:
        return ThrottledError(code=code, message=message or code)
    if code == "ValidationError":
        return ValidationError(message or code)
    return StoreError(code=code, message=message or code)
