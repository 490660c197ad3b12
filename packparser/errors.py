"""
Import Errors
=============
Error taxonomy for the import pipeline.

Each error carries a stable ``kind`` surfaced to the submitting user,
a human-readable message, and whether the scheduler may retry the job.
Internal detail (tracebacks, library messages) goes to ``detail`` and
the log only.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"
    TOO_LARGE = "too_large"
    PASSWORD_PROTECTED = "password_protected"
    CORRUPTED = "corrupted"
    TRANSIENT_IO = "transient_io"
    NORMALIZER_UNAVAILABLE = "normalizer_unavailable"
    SCHEMA_VALIDATION_FAILED = "schema_validation_failed"
    PARSING_FAILED = "parsing_failed"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


_HINTS = {
    ErrorKind.UNSUPPORTED_FORMAT: "Upload the package as a .docx or .pdf file.",
    ErrorKind.TOO_LARGE: "Split the package or compress embedded images.",
    ErrorKind.PASSWORD_PROTECTED: "Remove the password and upload again.",
    ErrorKind.CORRUPTED: "Open the file in a word processor, re-save it and retry.",
    ErrorKind.TRANSIENT_IO: "Try again in a few minutes.",
    ErrorKind.NORMALIZER_UNAVAILABLE: "Try again in a few minutes.",
    ErrorKind.SCHEMA_VALIDATION_FAILED: "Check the document structure and retry.",
    ErrorKind.PARSING_FAILED: (
        "Make sure tours start with 'Тур N' and questions with 'N.'."
    ),
    ErrorKind.TIMEOUT: "The document took too long to process; try a smaller file.",
    ErrorKind.INTERNAL: "Contact support if the problem persists.",
}


class PackageImportError(Exception):
    """Base class for classified import failures."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retriable: bool = False

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def hint(self) -> str:
        return _HINTS.get(self.kind, "")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "hint": self.hint,
        }


# ─── Extraction / Upload ─────────────────────────────────────────────────────


class UnsupportedFormatError(PackageImportError):
    kind = ErrorKind.UNSUPPORTED_FORMAT


class TooLargeError(PackageImportError):
    kind = ErrorKind.TOO_LARGE


class PasswordProtectedError(PackageImportError):
    kind = ErrorKind.PASSWORD_PROTECTED


class CorruptedDocumentError(PackageImportError):
    kind = ErrorKind.CORRUPTED


# ─── Retriable ───────────────────────────────────────────────────────────────


class TransientIOError(PackageImportError):
    kind = ErrorKind.TRANSIENT_IO
    retriable = True


class NormalizerUnavailableError(PackageImportError):
    kind = ErrorKind.NORMALIZER_UNAVAILABLE
    retriable = True


# ─── Parsing / Lifecycle ─────────────────────────────────────────────────────


class SchemaValidationError(PackageImportError):
    kind = ErrorKind.SCHEMA_VALIDATION_FAILED


class ParsingError(PackageImportError):
    kind = ErrorKind.PARSING_FAILED


class JobTimeoutError(PackageImportError):
    kind = ErrorKind.TIMEOUT


class JobCancelled(Exception):
    """Raised at a step boundary once cancellation was requested."""


RETRIABLE_ERRORS = (TransientIOError, NormalizerUnavailableError)


def hint_for(kind: str) -> str:
    """Remediation hint for a stored error kind (empty when unknown)."""
    try:
        return _HINTS.get(ErrorKind(kind), "")
    except ValueError:
        return ""
