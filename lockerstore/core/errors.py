"""
Exceptions raised by the locker store.

Every error carries a human readable ``message`` and a ``details`` dict so
callers can classify and log failures without parsing strings. Driver and
transport errors (and asyncio cancellation) are never wrapped; they pass
through unchanged.
"""

from typing import Any


class StoreError(Exception):
    """Base exception for all locker store errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(StoreError):
    """
    Raised when the store cannot be configured.

    Examples:
    - Empty database URL
    - Unsupported database scheme
    """

    pass


class ValidationError(StoreError):
    """
    Raised when a builder fails validation before any SQL is emitted.

    Examples:
    - Required field missing on create
    - Unknown column in a predicate, order or projection
    - Value outside the column's range
    - UpdateOne without an id

    Not retryable.
    """

    def __init__(self, name: str, cause: str | Exception):
        self.name = name
        self.cause = cause
        super().__init__(
            f'validator failed for field "{name}": {cause}',
            details={"field": name, "cause": str(cause)},
        )


class NotFoundError(StoreError):
    """
    Raised when a requested entity does not exist.

    Returned by ``only``/``first``, ``update_one``, ``delete_one`` and ``get``.
    """

    def __init__(self, label: str, message: str | None = None):
        self.label = label
        super().__init__(message or f"{label} not found", details={"label": label})


class NotSingularError(StoreError):
    """Raised by ``only`` when more than one entity matched."""

    def __init__(self, label: str):
        self.label = label
        super().__init__(f"{label} not singular", details={"label": label})


class ConstraintError(StoreError):
    """
    Raised when the database rejects a write on a constraint.

    Examples:
    - Duplicate ``did``/``hash``/``code``
    - Foreign key pointing at a missing account

    The original driver exception is kept as ``__cause__``.
    """

    def __init__(self, message: str):
        super().__init__(message, details={"driver_message": message})


class NotLoadedError(StoreError):
    """Raised when reading an edge that was not requested for eager loading."""

    def __init__(self, edge: str):
        self.edge = edge
        super().__init__(f"{edge} edge was not loaded", details={"edge": edge})


class NotInTransactionError(StoreError):
    """Raised when a committed or rolled back transaction is used again."""

    def __init__(self) -> None:
        super().__init__("not in transaction")


class MutationStateError(StoreError):
    """
    Raised when a mutation is used outside of its lifecycle.

    Examples:
    - Saving a builder twice
    - Reading old values after the mutation was executed
    - Reading old values on a non UpdateOne operation
    """

    pass


class SchemaMigrationRequiredError(StoreError):
    """Raised when the live database does not match the declared schema."""

    def __init__(self, differences: list[str]):
        self.differences = differences
        super().__init__("schema migration required", details={"differences": differences})


# ============================================================================
# Domain-level errors raised by the identity backend
# ============================================================================


class AccountExistsError(StoreError):
    """Raised when an account with the same DID or e-mail already exists."""

    def __init__(self, message: str = "account exists"):
        super().__init__(message)


class DIDExistsError(StoreError):
    """Raised when a different DID document is already stored under the DID."""

    def __init__(self, message: str = "DID document exists"):
        super().__init__(message)


class AccountNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("Account", "account not found")


class DIDNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("DID", "DID document not found")


class IdentityNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("Identity", "identity not found")


class LockerNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("Locker", "locker not found")


class AccessKeyNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("AccessKey", "access key not found")


class PropertyNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("Property", "property not found")


class RecoveryCodeNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("RecoveryCode", "recovery code not found")


# ============================================================================
# Classification helpers
# ============================================================================


def is_not_found(error: BaseException | None) -> bool:
    return isinstance(error, NotFoundError)


def is_not_singular(error: BaseException | None) -> bool:
    return isinstance(error, NotSingularError)


def is_not_loaded(error: BaseException | None) -> bool:
    return isinstance(error, NotLoadedError)


def is_constraint_error(error: BaseException | None) -> bool:
    return isinstance(error, ConstraintError)


def is_validation_error(error: BaseException | None) -> bool:
    return isinstance(error, ValidationError)


def mask_not_found(error: BaseException | None) -> BaseException | None:
    """
    Return None for not-found errors and the error itself otherwise.

    Useful when absence is an expected outcome:

        err = mask_not_found(exc)
        if err is not None:
            raise err
    """
    if is_not_found(error):
        return None
    return error
