"""
Error types for NodeDB.

This module defines every exception raised by the type engine, the schema
registry and the persistence engine:
- NodeDbError: Base exception
- AssertFailed: Attribute validation failures (and sub-reasons)
- ObjectNotFound / PrimaryKeyMissing / ObjectIsAnonymous: Key problems
- TransactionFailed / TransactionRollbackFailed: Failed saves and removes
- DBConnectFailed / DBQueryFailed: Backing store I/O failures
- FileAccessError / VersionArchiveError / WrongHost: Flatfile failures
- InvalidArgument / MethodNotApplicable / DataConversionFailed: Misuse

Invariants:
    - All errors inherit from NodeDbError
    - Every error carries a stable ``code`` for programmatic handling
    - Driver exceptions are chained (``raise ... from exc``), never discarded
    - Secrets (passwords) never appear in messages or details

How to change safely:
    - Add new kinds as subclasses of an existing kind where possible
    - Never change an existing ``code`` value; callers branch on it
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class NodeDbError(Exception):
    """Base exception for all NodeDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "NODEDB_ERROR"
        self.details = details or {}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class AssertFailed(NodeDbError):
    """An attribute value did not satisfy its Type.

    Raised when:
    - A required value is missing
    - A value is outside the allowed list or fails a reference check
    - A size, range or pattern rule fails
    - The base type predicate rejects the value

    Attributes:
        attribute: Name of the attribute being validated
        value: Offending value, stringified
        reason: Human-readable reason
    """

    code_suffix = "FAILED"

    def __init__(
        self,
        reason: str,
        attribute: Optional[str] = None,
        value: Any = None,
    ) -> None:
        shown = "undef" if value is None else str(value)
        if attribute is not None:
            message = f'Assertion for "{attribute}" value "{shown}" failed: {reason}'
        else:
            message = reason
        super().__init__(
            message,
            code=f"VALIDATION_{self.code_suffix}",
            details={"attribute": attribute, "value": shown, "reason": reason},
        )
        self.attribute = attribute
        self.value = shown
        self.reason = reason


ValidationFailed = AssertFailed


class MissingRequiredValue(AssertFailed):
    """A null value was given for a non-optional attribute."""

    code_suffix = "MISSING_REQUIRED"


class ValueNotAllowed(AssertFailed):
    """Value is not in the allowed list, or the allowed predicate refused it."""

    code_suffix = "NOT_ALLOWED"


class SizeMismatch(AssertFailed):
    """Value length or element count violates size/min_size/max_size."""

    code_suffix = "SIZE"


class OutOfRange(AssertFailed):
    """Numeric value violates min/max."""

    code_suffix = "RANGE"


class PatternMismatch(AssertFailed):
    """String form of the value does not match the regex rule."""

    code_suffix = "PATTERN"


class TypeMismatch(AssertFailed):
    """Base type predicate rejected the value."""

    code_suffix = "TYPE"


# ---------------------------------------------------------------------------
# Keys and objects
# ---------------------------------------------------------------------------


class ObjectNotFound(NodeDbError):
    """No stored object matches the requested id or name."""

    def __init__(self, message: str, entity: Optional[str] = None, key: Any = None) -> None:
        super().__init__(
            message,
            code="OBJECT_NOT_FOUND",
            details={"entity": entity, "key": None if key is None else str(key)},
        )
        self.entity = entity
        self.key = key


class PrimaryKeyMissing(NodeDbError):
    """Entity has no primary key Type, or an object has no usable key."""

    def __init__(self, message: str, entity: Optional[str] = None) -> None:
        super().__init__(message, code="PRIMARY_KEY_MISSING", details={"entity": entity})
        self.entity = entity


class ObjectIsAnonymous(NodeDbError):
    """Remove was attempted on an object that has no primary key value."""

    def __init__(self, message: str, entity: Optional[str] = None) -> None:
        super().__init__(message, code="OBJECT_IS_ANONYMOUS", details={"entity": entity})
        self.entity = entity


# ---------------------------------------------------------------------------
# Transactions and I/O
# ---------------------------------------------------------------------------


class TransactionFailed(NodeDbError):
    """A save or remove failed and was rolled back.

    Attributes:
        rolled_back: True when the rollback succeeded and the store is consistent
    """

    rolled_back = True

    def __init__(self, message: str, entity: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="TRANSACTION_FAILED",
            details={"entity": entity, "rolled_back": self.rolled_back},
        )
        self.entity = entity


class TransactionRollbackFailed(TransactionFailed):
    """A save or remove failed and the rollback failed too.

    Data integrity of the backing store is uncertain after this error.
    """

    rolled_back = False

    def __init__(self, message: str, entity: Optional[str] = None) -> None:
        super().__init__(message, entity=entity)
        self.code = "TRANSACTION_ROLLBACK_FAILED"


class DBConnectFailed(NodeDbError):
    """Could not connect to a SQL backing store."""

    def __init__(self, message: str, database: Optional[str] = None, driver: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="DB_CONNECT_FAILED",
            details={"database": database, "driver": driver},
        )
        self.database = database
        self.driver = driver


class DBQueryFailed(NodeDbError):
    """A SQL statement failed.

    Attributes:
        sql: Statement text that failed
    """

    def __init__(self, message: str, sql: Optional[str] = None) -> None:
        super().__init__(message, code="DB_QUERY_FAILED", details={"sql": sql})
        self.sql = sql


class FileAccessError(NodeDbError):
    """A flatfile could not be read, written or removed."""

    def __init__(self, message: str, path: Optional[str] = None, code: Optional[str] = None) -> None:
        super().__init__(message, code=code or "FILE_ACCESS_ERROR", details={"path": path})
        self.path = path


class VersionArchiveError(FileAccessError):
    """A version archive operation (checkout, checkin, revert, log) failed."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, path=path, code="VERSION_ARCHIVE_ERROR")


class WrongHost(NodeDbError):
    """Flatfile writes are pinned to a master host and this is not it."""

    def __init__(self, message: str, expected: Optional[str] = None, actual: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="WRONG_HOST",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Misuse and data
# ---------------------------------------------------------------------------


class InvalidArgument(NodeDbError):
    """Programmer or caller misuse."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None) -> None:
        super().__init__(message, code=code or "INVALID_ARGUMENT", details=details)


class RegistryFrozenError(InvalidArgument):
    """Entity declared after the registry was frozen."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="REGISTRY_FROZEN")


class DuplicateEntityError(InvalidArgument):
    """An entity with the same name is already declared."""

    def __init__(self, message: str, entity: Optional[str] = None) -> None:
        super().__init__(message, details={"entity": entity}, code="DUPLICATE_ENTITY")
        self.entity = entity


class MethodNotApplicable(NodeDbError):
    """Operation is not supported by the entity's configured backing store."""

    def __init__(self, message: str, entity: Optional[str] = None) -> None:
        super().__init__(message, code="METHOD_NOT_APPLICABLE", details={"entity": entity})
        self.entity = entity


class DataConversionFailed(NodeDbError):
    """Serialized data (YAML, JSON, cache payload) could not be decoded."""

    def __init__(self, message: str, source: Optional[str] = None) -> None:
        super().__init__(message, code="DATA_CONVERSION_FAILED", details={"source": source})
        self.source = source
