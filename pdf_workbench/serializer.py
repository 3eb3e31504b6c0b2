"""
serializer.py - PDF syntax writer.

Turns object values back into PDF syntax and assembles complete files with either
a classic cross-reference table or a compressed cross-reference stream with
object streams.
"""

from __future__ import annotations

import io
import logging
import math
import zlib
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .primitives import PDFName, PDFReference, PDFStream, PDFString

logger = logging.getLogger(__name__)

PDF_HEADER = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n"

# Objects packed into one object stream
OBJECT_STREAM_SIZE = 100

_NAME_REGULAR = frozenset(range(0x21, 0x7F)) - frozenset(b"()<>[]{}/%#")
_STRING_ESCAPES = {
    0x28: b"\\(",
    0x29: b"\\)",
    0x5C: b"\\\\",
    0x0A: b"\\n",
    0x0D: b"\\r",
    0x09: b"\\t",
    0x08: b"\\b",
    0x0C: b"\\f",
}

ReferenceWriter = Callable[[PDFReference], bytes]


def encode_name(name: str) -> bytes:
    out = bytearray(b"/")
    for byte in name.encode("utf-8", errors="surrogateescape"):
        if byte in _NAME_REGULAR:
            out.append(byte)
        else:
            out.extend(b"#%02X" % byte)
    return bytes(out)


def encode_string(value: PDFString) -> bytes:
    if value.is_hex:
        return b"<" + value.value.hex().upper().encode("ascii") + b">"
    out = bytearray(b"(")
    for byte in value.value:
        escaped = _STRING_ESCAPES.get(byte)
        if escaped is not None:
            out.extend(escaped)
        elif byte < 0x20:
            out.extend(b"\\%03o" % byte)
        else:
            out.append(byte)
    out.extend(b")")
    return bytes(out)


def format_number(value) -> str:
    if isinstance(value, int):
        return str(value)
    if not math.isfinite(value):
        return "0"
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def _default_reference(ref: PDFReference) -> bytes:
    return f"{ref.obj_id} {ref.generation} R".encode("ascii")


def serialize(
    value: Any,
    ref_writer: Optional[ReferenceWriter] = None,
    sort_keys: bool = False,
) -> bytes:
    """Serialize a direct value.

    ``ref_writer`` controls how references are emitted and ``sort_keys`` gives a
    canonical dictionary order; both are used for content-addressed comparison.
    """
    if isinstance(value, PDFName):
        return encode_name(value.value)
    if isinstance(value, PDFReference):
        return (ref_writer or _default_reference)(value)
    if isinstance(value, bool):
        return b"true" if value else b"false"
    if value is None:
        return b"null"
    if isinstance(value, (int, float)):
        return format_number(value).encode("ascii")
    if isinstance(value, PDFString):
        return encode_string(value)
    if isinstance(value, dict):
        keys = sorted(value) if sort_keys else list(value)
        parts = [
            encode_name(key) + b" " + serialize(value[key], ref_writer, sort_keys)
            for key in keys
        ]
        return b"<<" + b" ".join(parts) + b">>"
    if isinstance(value, (list, tuple)):
        return b"[" + b" ".join(serialize(item, ref_writer, sort_keys) for item in value) + b"]"
    raise TypeError(f"Unsupported value type: {type(value)!r}")


def serialize_stream_head(stream: PDFStream, ref_writer: Optional[ReferenceWriter] = None) -> bytes:
    head = dict(stream.dictionary)
    head["Length"] = len(stream.data)
    return serialize(head, ref_writer)


def _object_bytes(obj_id: int, generation: int, value: Any) -> bytes:
    out = [f"{obj_id} {generation} obj\n".encode("ascii")]
    if isinstance(value, PDFStream):
        out.append(serialize_stream_head(value))
        out.append(b"\nstream\n")
        out.append(value.data)
        out.append(b"\nendstream")
    else:
        out.append(serialize(value))
    out.append(b"\nendobj\n")
    return b"".join(out)


def _free_list(size: int, used: Iterable[int]) -> Dict[int, int]:
    """Map each free id (including 0) to the next free id, 0 terminated."""
    used = set(used)
    free_ids = [0] + [obj_id for obj_id in range(1, size) if obj_id not in used]
    return {obj_id: free_ids[(i + 1) % len(free_ids)] for i, obj_id in enumerate(free_ids)}


def _trailer_entries(trailer: dict) -> dict:
    return {key: trailer[key] for key in ("Root", "Info", "ID") if key in trailer}


def write_pdf(
    objects: Iterable[Tuple[int, int, Any]],
    trailer: dict,
    use_xref_stream: bool = False,
) -> bytes:
    """Assemble a complete PDF from ``(obj_id, generation, value)`` triples.

    Objects are written in id order. With ``use_xref_stream`` the generation-0
    non-stream objects are packed into object streams and the cross-reference
    section is a compressed stream.
    """
    ordered = sorted(objects, key=lambda item: item[0])
    if use_xref_stream:
        return _write_with_xref_stream(ordered, trailer)

    buffer = io.BytesIO()
    buffer.write(PDF_HEADER)
    offsets: Dict[int, Tuple[int, int]] = {}
    for obj_id, generation, value in ordered:
        offsets[obj_id] = (buffer.tell(), generation)
        buffer.write(_object_bytes(obj_id, generation, value))

    size = (ordered[-1][0] if ordered else 0) + 1
    free = _free_list(size, offsets)
    xref_position = buffer.tell()
    buffer.write(f"xref\n0 {size}\n".encode("ascii"))
    for obj_id in range(size):
        if obj_id in offsets:
            offset, generation = offsets[obj_id]
            buffer.write(f"{offset:010d} {generation:05d} n \n".encode("ascii"))
        else:
            generation = 65535 if obj_id == 0 else 0
            buffer.write(f"{free[obj_id]:010d} {generation:05d} f \n".encode("ascii"))

    trailer_dict = _trailer_entries(trailer)
    trailer_dict["Size"] = size
    buffer.write(b"trailer\n")
    buffer.write(serialize(trailer_dict))
    buffer.write(f"\nstartxref\n{xref_position}\n%%EOF\n".encode("ascii"))
    logger.debug(f"Serialized {len(ordered)} objects, xref table at {xref_position}")
    return buffer.getvalue()


def _build_object_stream(members: List[Tuple[int, Any]]) -> PDFStream:
    header_parts = []
    bodies = []
    offset = 0
    for obj_id, value in members:
        body = serialize(value) + b"\n"
        header_parts.append(f"{obj_id} {offset}")
        bodies.append(body)
        offset += len(body)
    header = (" ".join(header_parts) + "\n").encode("ascii")
    payload = header + b"".join(bodies)
    return PDFStream(
        {
            "Type": PDFName("ObjStm"),
            "N": len(members),
            "First": len(header),
            "Filter": PDFName("FlateDecode"),
        },
        zlib.compress(payload, 9),
    )


def _write_with_xref_stream(ordered: List[Tuple[int, int, Any]], trailer: dict) -> bytes:
    buffer = io.BytesIO()
    buffer.write(PDF_HEADER)

    next_id = (ordered[-1][0] if ordered else 0) + 1
    # id -> (type, field2, field3) as in the PDF xref stream row layout
    entries: Dict[int, Tuple[int, int, int]] = {}
    packable: List[Tuple[int, Any]] = []

    for obj_id, generation, value in ordered:
        if generation == 0 and not isinstance(value, PDFStream):
            packable.append((obj_id, value))
            continue
        entries[obj_id] = (1, buffer.tell(), generation)
        buffer.write(_object_bytes(obj_id, generation, value))

    for start in range(0, len(packable), OBJECT_STREAM_SIZE):
        members = packable[start:start + OBJECT_STREAM_SIZE]
        stream_id = next_id
        next_id += 1
        entries[stream_id] = (1, buffer.tell(), 0)
        buffer.write(_object_bytes(stream_id, 0, _build_object_stream(members)))
        for index, (obj_id, _) in enumerate(members):
            entries[obj_id] = (2, stream_id, index)

    xref_id = next_id
    size = xref_id + 1
    xref_position = buffer.tell()
    entries[xref_id] = (1, xref_position, 0)

    free = _free_list(size, entries)
    for obj_id, next_free in free.items():
        entries[obj_id] = (0, next_free, 65535 if obj_id == 0 else 0)

    width = max(1, (max(field2 for _, field2, _ in entries.values()).bit_length() + 7) // 8)
    rows = bytearray()
    for obj_id in range(size):
        kind, field2, field3 = entries[obj_id]
        rows.append(kind)
        rows.extend(field2.to_bytes(width, "big"))
        rows.extend(field3.to_bytes(2, "big"))

    xref_dict = _trailer_entries(trailer)
    xref_dict.update({
        "Type": PDFName("XRef"),
        "Size": size,
        "W": [1, width, 2],
        "Filter": PDFName("FlateDecode"),
    })
    buffer.write(_object_bytes(xref_id, 0, PDFStream(xref_dict, zlib.compress(bytes(rows), 9))))
    buffer.write(f"startxref\n{xref_position}\n%%EOF\n".encode("ascii"))
    logger.debug(
        f"Serialized {len(ordered)} objects ({len(packable)} packed), "
        f"xref stream at {xref_position}"
    )
    return buffer.getvalue()
