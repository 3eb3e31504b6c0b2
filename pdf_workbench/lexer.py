"""
lexer.py - Content stream tokenizer and operation parser.

A content stream is a flat sequence of operands followed by an operator
keyword. Tokens map onto the engine's object model (PDFName, PDFString,
numbers, lists, dicts); operators are plain ``str``. Inline images
(``BI ... ID <bytes> EI``) are returned as a single ``BI`` operation whose only
operand is an InlineImage.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, NamedTuple, Tuple

from .errors import CorruptPDFError
from .primitives import PDFName, PDFString
from .serializer import encode_name, serialize

_WHITESPACE = b"\x00\t\n\r\f "
_DELIMITERS = b"()<>[]{}/%"
_NUMBER_RE = re.compile(rb"^[+-]?(\d+\.?\d*|\.\d+)$")
_OCTAL = b"01234567"
_ESCAPES = {
    ord("n"): b"\n",
    ord("r"): b"\r",
    ord("t"): b"\t",
    ord("b"): b"\b",
    ord("f"): b"\f",
}


class ContentSyntaxError(CorruptPDFError):
    """Raised for content streams that cannot be tokenized."""


@dataclass
class InlineImage:
    dictionary: Dict[str, Any]
    data: bytes


class Operation(NamedTuple):
    operands: List[Any]
    operator: str


class _Mark(str):
    """Structural token (``[``, ``]``, ``<<``, ``>>``) kept apart from keywords."""


def _skip_whitespace(data: bytes, index: int) -> int:
    length = len(data)
    while index < length:
        byte = data[index]
        if byte in _WHITESPACE:
            index += 1
        elif byte == 0x25:  # '%' comment
            while index < length and data[index] not in (0x0A, 0x0D):
                index += 1
        else:
            break
    return index


def _read_regular(data: bytes, index: int) -> Tuple[bytes, int]:
    start = index
    while index < len(data) and data[index] not in _WHITESPACE and data[index] not in _DELIMITERS:
        index += 1
    return data[start:index], index


def _parse_name(data: bytes, index: int) -> Tuple[PDFName, int]:
    raw, index = _read_regular(data, index + 1)
    if b"#" in raw:
        raw = re.sub(rb"#([0-9A-Fa-f]{2})", lambda match: bytes([int(match.group(1), 16)]), raw)
    return PDFName(raw.decode("utf-8", errors="surrogateescape")), index


def _parse_literal_string(data: bytes, index: int) -> Tuple[PDFString, int]:
    index += 1
    depth = 1
    out = bytearray()
    length = len(data)
    while index < length:
        byte = data[index]
        if byte == 0x5C:  # backslash
            index += 1
            if index >= length:
                break
            byte = data[index]
            if byte in _ESCAPES:
                out.extend(_ESCAPES[byte])
            elif byte in _OCTAL:
                digits = data[index:index + 3]
                count = 1
                while count < len(digits) and digits[count] in _OCTAL:
                    count += 1
                out.append(int(digits[:count], 8) & 0xFF)
                index += count - 1
            elif byte == 0x0D:
                if data[index + 1:index + 2] == b"\n":
                    index += 1
            elif byte != 0x0A:
                out.append(byte)
        elif byte == 0x28:
            depth += 1
            out.append(byte)
        elif byte == 0x29:
            depth -= 1
            if depth == 0:
                return PDFString(bytes(out)), index + 1
            out.append(byte)
        else:
            out.append(byte)
        index += 1
    raise ContentSyntaxError("Unterminated literal string")


def _parse_hex_string(data: bytes, index: int) -> Tuple[PDFString, int]:
    end = data.find(b">", index + 1)
    if end < 0:
        raise ContentSyntaxError("Unterminated hex string")
    digits = bytes(b for b in data[index + 1:end] if b not in _WHITESPACE)
    if len(digits) % 2:
        digits += b"0"
    try:
        value = bytes.fromhex(digits.decode("ascii"))
    except ValueError as exc:
        raise ContentSyntaxError(f"Bad hex string: {exc}") from exc
    return PDFString(value, is_hex=True), end + 1


def iter_tokens(data: bytes) -> Iterator[Any]:
    """Yield raw tokens. Inline image payloads are yielded as bytes after ``ID``."""
    index = 0
    length = len(data)
    while True:
        index = _skip_whitespace(data, index)
        if index >= length:
            return
        byte = data[index]
        if byte == 0x2F:  # '/'
            token, index = _parse_name(data, index)
        elif byte == 0x28:  # '('
            token, index = _parse_literal_string(data, index)
        elif byte == 0x3C:  # '<'
            if data[index + 1:index + 2] == b"<":
                token, index = _Mark("<<"), index + 2
            else:
                token, index = _parse_hex_string(data, index)
        elif byte == 0x3E:  # '>'
            if data[index + 1:index + 2] != b">":
                raise ContentSyntaxError(f"Stray '>' at offset {index}")
            token, index = _Mark(">>"), index + 2
        elif byte in (0x5B, 0x5D):  # '[' ']'
            token, index = _Mark(chr(byte)), index + 1
        elif byte in (0x7B, 0x7D):  # '{' '}' only appear in type 4 functions
            index += 1
            continue
        elif byte == 0x29:
            raise ContentSyntaxError(f"Stray ')' at offset {index}")
        else:
            raw, index = _read_regular(data, index)
            if _NUMBER_RE.match(raw):
                token = float(raw) if b"." in raw else int(raw)
            else:
                token = raw.decode("latin-1")
                if token == "ID":
                    yield token
                    payload, index = _read_inline_data(data, index)
                    yield payload
                    continue
        yield token


def _read_inline_data(data: bytes, index: int) -> Tuple[bytes, int]:
    # A single whitespace byte separates ID from the payload
    start = index + 1 if index < len(data) and data[index] in _WHITESPACE else index
    search = start
    while True:
        end = data.find(b"EI", search)
        if end < 0:
            raise ContentSyntaxError("Inline image without EI")
        before_ok = end > start and data[end - 1] in _WHITESPACE
        after = data[end + 2:end + 3]
        after_ok = not after or after[0] in _WHITESPACE or after[0] in _DELIMITERS
        if before_ok and after_ok:
            return data[start:end - 1], end + 2
        search = end + 2


def _build_value(token: Any, tokens: Iterator[Any]) -> Any:
    """Turn a token into an operand, consuming the rest of arrays and dicts."""
    if isinstance(token, _Mark):
        if token == "[":
            items = []
            for item in tokens:
                if item == "]" and isinstance(item, _Mark):
                    return items
                items.append(_build_value(item, tokens))
            raise ContentSyntaxError("Unterminated array")
        if token == "<<":
            entries = []
            for item in tokens:
                if item == ">>" and isinstance(item, _Mark):
                    if len(entries) % 2:
                        raise ContentSyntaxError("Dictionary with odd number of items")
                    return _pairs_to_dict(entries)
                entries.append(_build_value(item, tokens))
            raise ContentSyntaxError("Unterminated dictionary")
        raise ContentSyntaxError(f"Unexpected '{token}'")
    if token == "true":
        return True
    if token == "false":
        return False
    if token == "null":
        return None
    return token


def _pairs_to_dict(entries: List[Any]) -> Dict[str, Any]:
    result = {}
    for key, value in zip(entries[::2], entries[1::2]):
        if not isinstance(key, PDFName):
            raise ContentSyntaxError("Dictionary key is not a name")
        result[key.value] = value
    return result


def parse_content(data: bytes) -> List[Operation]:
    """Parse a content stream into a list of operations.

    Operands left over at the end of the stream (no operator) are dropped.
    """
    operations: List[Operation] = []
    operands: List[Any] = []
    tokens = iter_tokens(data)
    for token in tokens:
        if isinstance(token, str) and not isinstance(token, _Mark) and token not in ("true", "false", "null"):
            if token == "BI":
                operations.append(_parse_inline_image(tokens))
                operands = []
                continue
            operations.append(Operation(operands, token))
            operands = []
        else:
            operands.append(_build_value(token, tokens))
    return operations


def _parse_inline_image(tokens: Iterator[Any]) -> Operation:
    entries = []
    for token in tokens:
        if token == "ID" and not isinstance(token, _Mark):
            if len(entries) % 2:
                raise ContentSyntaxError("Inline image dictionary with odd number of items")
            payload = next(tokens, b"")
            return Operation([InlineImage(_pairs_to_dict(entries), payload)], "BI")
        entries.append(_build_value(token, tokens))
    raise ContentSyntaxError("Inline image without ID")


def _serialize_operand(value: Any) -> bytes:
    if isinstance(value, InlineImage):
        parts = [b"BI"]
        for key, item in value.dictionary.items():
            parts.append(encode_name(key) + b" " + serialize(item))
        return b" ".join(parts) + b"\nID\n" + value.data + b"\nEI"
    return serialize(value)


def unparse_content(operations: List[Operation]) -> bytes:
    lines = []
    for operands, operator in operations:
        if operator == "BI" and operands and isinstance(operands[0], InlineImage):
            lines.append(_serialize_operand(operands[0]))
            continue
        parts = [_serialize_operand(operand) for operand in operands]
        parts.append(operator.encode("latin-1"))
        lines.append(b" ".join(parts))
    return b"\n".join(lines) + (b"\n" if lines else b"")
