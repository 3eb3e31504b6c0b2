"""
errors.py - Error taxonomy for the PDF engine.

Fatal problems are raised as exceptions. Recoverable per-object problems inside a
bulk operation (one bad image among many) are collected as SubFailure records and
returned next to the best-effort result.
"""

from dataclasses import dataclass
from typing import Optional


class PDFEngineError(Exception):
    """Base class for all engine errors."""


class InvalidArgumentError(PDFEngineError):
    """Bad index, closed handle or out-of-range option."""


class NotFoundError(PDFEngineError):
    """Missing object id or page."""


class CorruptPDFError(PDFEngineError):
    """Malformed object graph or stream."""


class CodecFailureError(PDFEngineError):
    """Image or stream decode/encode failed."""


class IOFailureError(PDFEngineError):
    """Reading from or writing to storage failed."""


class OperationCancelledError(PDFEngineError):
    """A cooperative cancellation request was honoured."""


@dataclass
class SubFailure:
    """A recoverable failure attached to one object of a bulk operation."""
    obj_id: Optional[int]
    kind: str
    message: str

    @classmethod
    def from_exception(cls, obj_id: Optional[int], exc: Exception) -> "SubFailure":
        return cls(obj_id=obj_id, kind=type(exc).__name__, message=str(exc))

    def __str__(self) -> str:
        where = f"object {self.obj_id}" if self.obj_id is not None else "document"
        return f"{where}: {self.kind}: {self.message}"
