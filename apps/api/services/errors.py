"""Domain error taxonomy and backing-store error translation."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError


class IngestError(Exception):
    """Base class for every failure surfaced by the ingestion core."""

    code = "INGEST_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "errorCode": self.code,
            "message": self.message,
            "details": self.details or None,
        }


class InvalidIdentifier(IngestError):
    code = "INVALID_IDENTIFIER"


class UnsupportedFormat(IngestError):
    code = "UNSUPPORTED_FORMAT"


class FileParseError(IngestError):
    code = "PARSE_ERROR"


class FileTooLarge(IngestError):
    code = "FILE_TOO_LARGE"
    status_code = 413


class QuotaExceeded(IngestError):
    status_code = 507


class TableLimitExceeded(QuotaExceeded):
    code = "TABLE_LIMIT_EXCEEDED"


class StorageQuotaExceeded(QuotaExceeded):
    code = "STORAGE_QUOTA_EXCEEDED"


class DuplicateTable(IngestError):
    code = "DUPLICATE_TABLE"
    status_code = 409


class TableNotFound(IngestError):
    code = "TABLE_NOT_FOUND"
    status_code = 404


class SessionNotFound(IngestError):
    code = "SESSION_NOT_FOUND"
    status_code = 404


class SchemaMismatch(IngestError):
    code = "SCHEMA_MISMATCH"


class ConfirmationRequired(IngestError):
    code = "CONFIRMATION_REQUIRED"


class ConstraintViolation(IngestError):
    code = "CONSTRAINT_VIOLATION"


class QuotaCheckFailed(IngestError):
    code = "QUOTA_CHECK_FAILED"
    status_code = 503
    retryable = True


class LockAcquisitionFailed(IngestError):
    code = "LOCK_ACQUISITION_FAILED"
    status_code = 503
    retryable = True


class BackendUnavailable(IngestError):
    code = "BACKEND_ERROR"
    status_code = 503
    retryable = True


class ProcessingFailed(IngestError):
    code = "PROCESSING_FAILED"
    status_code = 500


# SQLSTATE -> (error class, code, business message)
PG_ERROR_CODES = {
    "42P01": (TableNotFound, "TABLE_NOT_FOUND", "The table could not be found. It may have been deleted."),
    "42703": (
        SchemaMismatch,
        "COLUMN_NOT_FOUND",
        "The specified column was not found in the table. Please check the column name.",
    ),
    "23505": (
        ConstraintViolation,
        "DUPLICATE_KEY",
        "A row with this key already exists. Use upsert to update existing rows.",
    ),
    "23502": (
        ConstraintViolation,
        "NOT_NULL_VIOLATION",
        "Required column cannot be empty. Please provide a value.",
    ),
    "22P02": (
        ConstraintViolation,
        "INVALID_TEXT_REPRESENTATION",
        "Invalid data format. Please check your data types match the table schema.",
    ),
    "22007": (
        ConstraintViolation,
        "INVALID_DATETIME_FORMAT",
        "Invalid date value. Please check your date columns.",
    ),
    "22003": (
        ConstraintViolation,
        "NUMERIC_VALUE_OUT_OF_RANGE",
        "A numeric value is out of range for its column.",
    ),
    "42P07": (
        DuplicateTable,
        "DUPLICATE_TABLE",
        "A table with this name already exists. Please choose a different name.",
    ),
    "3F000": (ConstraintViolation, "INVALID_SCHEMA_NAME", "Schema not found. Please contact support."),
    "42P10": (
        ConstraintViolation,
        "MISSING_UNIQUE_CONSTRAINT",
        "Upsert needs a unique key on the conflict columns. Use columns that uniquely identify each row.",
    ),
    "57014": (
        BackendUnavailable,
        "QUERY_CANCELED",
        "Query took too long and was cancelled. Please try with less data or contact support.",
    ),
    "55P03": (
        LockAcquisitionFailed,
        "LOCK_NOT_AVAILABLE",
        "The storage account is busy with another upload. Please retry shortly.",
    ),
}


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for attr in ("sqlstate", "pgcode"):
        value = getattr(orig, attr, None)
        if value:
            return str(value)
    return None


def translate_db_error(exc: Exception) -> IngestError:
    """Map a backing-store failure to a business-facing domain error."""
    if isinstance(exc, IngestError):
        return exc
    if not isinstance(exc, DBAPIError):
        if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return BackendUnavailable(str(exc) or exc.__class__.__name__)
        return ProcessingFailed(
            "The operation failed and will not succeed on retry. Please check the file contents.",
            details={"reason": str(exc) or exc.__class__.__name__},
        )

    state = _sqlstate(exc)
    if state and state in PG_ERROR_CODES:
        error_cls, code, message = PG_ERROR_CODES[state]
        error = error_cls(message, details={"sqlstate": state})
        error.code = code
        return error

    raw = str(getattr(exc, "orig", exc))
    lowered = raw.lower()
    if "on conflict clause does not match" in lowered:
        error = ConstraintViolation(PG_ERROR_CODES["42P10"][2], details={"reason": raw})
        error.code = "MISSING_UNIQUE_CONSTRAINT"
        return error
    if "unique constraint" in lowered:
        error = ConstraintViolation(PG_ERROR_CODES["23505"][2], details={"reason": raw})
        error.code = "DUPLICATE_KEY"
        return error
    if "no such table" in lowered:
        return TableNotFound("The table could not be found. It may have been deleted.")
    if "already exists" in lowered:
        return DuplicateTable("A table with this name already exists. Please choose a different name.")
    if "no column named" in lowered or "no such column" in lowered:
        return SchemaMismatch(
            "The specified column was not found in the table. Please check the column name.",
            details={"reason": raw},
        )
    if "not null constraint" in lowered:
        return ConstraintViolation("Required column cannot be empty. Please provide a value.")

    if exc.connection_invalidated or isinstance(exc, (OperationalError, InterfaceError)):
        return BackendUnavailable("The database is temporarily unavailable. Please try again.", details={"reason": raw})
    return ProcessingFailed("The database rejected the operation.", details={"reason": raw})
