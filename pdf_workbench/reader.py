"""
reader.py - File-level parsing through pikepdf.

qpdf does the byte-level work (cross-reference tables and streams, object
streams, repair of damaged files, decryption). This module only walks the
objects it returns and converts them into the engine's own object model.
"""

import io
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Tuple

import pikepdf

from .errors import CorruptPDFError, IOFailureError
from .primitives import PDFName, PDFReference, PDFStream, PDFString, name_of
from .store import ObjectStore

logger = logging.getLogger(__name__)

# Cross-reference machinery is regenerated on save
_SKIPPED_TYPES = {"XRef", "ObjStm"}


def _convert(value: Any) -> Any:
    """Convert a value found inside another object (indirect -> reference)."""
    if isinstance(value, pikepdf.Object) and value.is_indirect:
        return PDFReference(*value.objgen)
    return _convert_direct(value)


def _convert_direct(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, (Decimal, float)):
        return float(value)
    if isinstance(value, pikepdf.Name):
        return PDFName(str(value)[1:])
    if isinstance(value, pikepdf.String):
        return PDFString(bytes(value))
    if isinstance(value, pikepdf.Array):
        return [_convert(item) for item in value]
    if isinstance(value, pikepdf.Stream):
        dictionary = {key[1:]: _convert(item) for key, item in value.stream_dict.items()}
        dictionary.pop("Length", None)
        return PDFStream(dictionary, value.read_raw_bytes())
    if isinstance(value, pikepdf.Dictionary):
        return {key[1:]: _convert(item) for key, item in value.items()}
    raise CorruptPDFError(f"Unsupported object type {type(value).__name__}")


def _load(pdf: pikepdf.Pdf) -> Tuple[ObjectStore, dict]:
    store = ObjectStore()
    skipped = 0
    for obj in pdf.objects:
        # Scalars and nulls come back as Python values without an object id;
        # pikepdf also inlines them wherever they are referenced.
        if not isinstance(obj, pikepdf.Object):
            skipped += 1
            continue
        obj_id, generation = obj.objgen
        if obj_id == 0:
            continue
        value = _convert_direct(obj)
        if isinstance(value, PDFStream) and name_of(value.dictionary.get("Type")) in _SKIPPED_TYPES:
            continue
        store.insert(obj_id, value, generation)

    trailer = {}
    for key in ("Root", "Info", "ID"):
        if f"/{key}" in pdf.trailer:
            trailer[key] = _convert(pdf.trailer[f"/{key}"])
    if skipped:
        logger.debug(f"Inlined {skipped} scalar objects")
    return store, trailer


def parse_pdf(data: bytes) -> Tuple[ObjectStore, dict]:
    """Parse raw file bytes into an object store and a trailer dict."""
    try:
        with pikepdf.open(io.BytesIO(data)) as pdf:
            store, trailer = _load(pdf)
    except pikepdf.PasswordError as exc:
        raise CorruptPDFError(f"Document is password protected: {exc}") from exc
    except pikepdf.PdfError as exc:
        raise CorruptPDFError(f"Could not parse PDF: {exc}") from exc

    if not isinstance(trailer.get("Root"), PDFReference):
        raise CorruptPDFError("Trailer has no /Root reference")
    logger.debug(f"Parsed {len(store)} objects")
    return store, trailer


def parse_pdf_from_file(path) -> Tuple[ObjectStore, dict]:
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise IOFailureError(f"Could not read {path}: {exc}") from exc
    return parse_pdf(data)
