from __future__ import annotations


class TabledictError(Exception):
    pass


class ValidationError(TabledictError):
    pass


class IdentifierValidationError(ValidationError):
    def __init__(self, *, type: str, detail: str) -> None:
        super().__init__(f"invalid identifier: {type}: {detail}")
        self.type = type
        self.detail = detail


class UnsupportedShapeError(ValidationError):
    pass


class TypeMismatchError(ValidationError):
    pass


class NotFoundError(TabledictError):
    pass


class KeyNotFoundError(NotFoundError, KeyError):
    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"key not found: {self.key!r}"


class ConflictError(TabledictError):
    pass


class KeyExistsError(ConflictError):
    def __init__(self, key: str) -> None:
        super().__init__(f"an entry with the same key already exists: {key!r}")
        self.key = key


class StoreError(TabledictError):
    def __init__(self, *, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class UnavailableError(StoreError):
    pass


class ThrottledError(StoreError):
    pass


class BatchFailedError(TabledictError):
    def __init__(self, *, message: str, index: int, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.index = index
        self.cause = cause
