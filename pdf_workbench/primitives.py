"""
primitives.py - PDF object variants.

Values in the object graph are plain Python data:

    None                 Null
    bool                 Boolean
    int / float          Number
    PDFName              Name (stored without the leading slash)
    PDFString            String (raw bytes)
    list                 Array
    dict                 Dictionary (str keys without the slash)
    PDFStream            Stream (dictionary + raw, still-encoded payload)
    PDFReference         Reference (object id + generation)

References are plain values, so objects can be copied, compared and serialized
without pointer fixups.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional


@dataclass(frozen=True)
class PDFName:
    """A PDF name object (``/Page``)."""

    value: str

    def __str__(self) -> str:
        return f"/{self.value}"


@dataclass(frozen=True)
class PDFString:
    """A PDF string. ``is_hex`` only affects how it is written back."""

    value: bytes
    is_hex: bool = False

    def text(self) -> str:
        """Decode as UTF-16 (with BOM) or PDFDocEncoding approximated by latin-1."""
        if self.value.startswith(b"\xfe\xff"):
            return self.value[2:].decode("utf-16-be", errors="replace")
        return self.value.decode("latin-1")


@dataclass(frozen=True)
class PDFReference:
    """Object reference (``12 0 R``)."""

    obj_id: int
    generation: int = 0


@dataclass
class PDFStream:
    """Stream dictionary plus its encoded bytes.

    ``Length`` is not kept in the dictionary; the serializer writes the real
    payload length.
    """

    dictionary: Dict[str, Any]
    data: bytes

    @property
    def filters(self) -> List[str]:
        value = self.dictionary.get("Filter")
        if isinstance(value, PDFName):
            return [value.value]
        if isinstance(value, list):
            return [item.value for item in value if isinstance(item, PDFName)]
        return []

    @property
    def decode_parms(self) -> List[Optional[dict]]:
        value = self.dictionary.get("DecodeParms", self.dictionary.get("DP"))
        count = len(self.filters)
        if isinstance(value, dict):
            return [value] + [None] * (count - 1)
        if isinstance(value, list):
            parms = [item if isinstance(item, dict) else None for item in value]
            return (parms + [None] * count)[:count]
        return [None] * count

    def set_encoded(self, data: bytes, filter_name: Optional[str] = None) -> None:
        """Replace the payload and its filter chain."""
        self.data = data
        self.dictionary.pop("DecodeParms", None)
        self.dictionary.pop("DP", None)
        if filter_name is None:
            self.dictionary.pop("Filter", None)
        else:
            self.dictionary["Filter"] = PDFName(filter_name)


def is_name(value: Any, name: str) -> bool:
    return isinstance(value, PDFName) and value.value == name


def name_of(value: Any) -> Optional[str]:
    return value.value if isinstance(value, PDFName) else None


def is_image_stream(value: Any) -> bool:
    return isinstance(value, PDFStream) and is_name(value.dictionary.get("Subtype"), "Image")


def iter_references(value: Any) -> Iterator[PDFReference]:
    """Yield every reference nested inside a value (not following them)."""
    stack = [value]
    while stack:
        item = stack.pop()
        if isinstance(item, PDFReference):
            yield item
        elif isinstance(item, dict):
            stack.extend(item.values())
        elif isinstance(item, list):
            stack.extend(item)
        elif isinstance(item, PDFStream):
            stack.extend(item.dictionary.values())


def copy_value(value: Any, map_reference=None) -> Any:
    """Copy the direct structure of a value.

    ``map_reference`` is called for every reference and its return value is
    used in the copy; by default references are kept as they are.
    """
    if isinstance(value, PDFReference):
        return map_reference(value) if map_reference else value
    if isinstance(value, dict):
        return {key: copy_value(item, map_reference) for key, item in value.items()}
    if isinstance(value, list):
        return [copy_value(item, map_reference) for item in value]
    if isinstance(value, PDFStream):
        return PDFStream(copy_value(value.dictionary, map_reference), value.data)
    return value
