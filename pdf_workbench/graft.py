"""
graft.py - Copying pages and objects between documents.

A GraftMap remembers which source objects already have a copy in the
destination, so fonts and images shared by many pages (or grafted twice) are
copied once. The copy is worklist driven: every newly seen source object gets a
placeholder id in the destination first and is filled in later, which keeps
cycles finite and the Python stack flat.
"""

import logging
import weakref
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidArgumentError
from .primitives import PDFName, PDFReference, copy_value, name_of

logger = logging.getLogger(__name__)

# Keys copied from the source page dictionary
PAGE_KEYS = (
    "Contents", "Resources", "MediaBox", "CropBox", "BleedBox", "TrimBox",
    "ArtBox", "Rotate", "UserUnit", "Group", "Annots",
)

_PAGE_TREE_TYPES = {"Page", "Pages"}


@dataclass
class GraftResult:
    page_index: int
    objects_copied: int = 0
    objects_reused: int = 0


class GraftMap:
    """
    (source document uid, source object id) -> destination object id.

    Bound to a single destination document; documents are held weakly.
    """

    def __init__(self, destination):
        if destination is None or destination.closed:
            raise InvalidArgumentError("Graft map needs an open destination document")
        self._destination = weakref.ref(destination)
        self._mapping: Dict[Tuple[str, int], int] = {}

    def __len__(self) -> int:
        return len(self._mapping)

    @property
    def destination(self):
        return self._destination()

    def lookup(self, source, obj_id: int) -> Optional[int]:
        return self._mapping.get((source.uid, obj_id))

    def record(self, source, obj_id: int, dest_id: int) -> None:
        self._mapping[(source.uid, obj_id)] = dest_id

    def check(self, destination, source=None) -> None:
        bound = self._destination()
        if bound is None or bound.closed:
            raise InvalidArgumentError("Graft map destination is closed")
        if destination is not bound:
            raise InvalidArgumentError("Graft map is bound to a different destination document")
        if source is not None and source.closed:
            raise InvalidArgumentError("Source document is closed")


class _Grafter:
    """One graft operation: copies referenced objects through the map."""

    def __init__(self, graft_map: GraftMap, destination, source, overrides: Optional[Dict[int, PDFReference]] = None):
        self.map = graft_map
        self.destination = destination
        self.source = source
        self.overrides = overrides or {}
        self.worklist: List[Tuple[int, int]] = []
        self.copied = 0
        self.reused = 0

    def map_reference(self, ref: PDFReference) -> Optional[PDFReference]:
        if ref.obj_id in self.overrides:
            return self.overrides[ref.obj_id]

        dest_store = self.destination.store
        dest_id = self.map.lookup(self.source, ref.obj_id)
        if dest_id is not None and dest_id in dest_store:
            self.reused += 1
            return dest_store.reference(dest_id)

        if not self.source.store.is_live(ref):
            logger.warning(f"Dangling reference {ref.obj_id} {ref.generation} R not copied")
            return None
        value = self.source.store.get(ref.obj_id)
        # Other pages (and the page tree) are never pulled in through links
        if isinstance(value, dict) and name_of(value.get("Type")) in _PAGE_TREE_TYPES:
            logger.debug(f"Not following reference to page tree object {ref.obj_id}")
            return None

        placeholder = dest_store.put(None)
        self.map.record(self.source, ref.obj_id, placeholder.obj_id)
        self.worklist.append((ref.obj_id, placeholder.obj_id))
        self.copied += 1
        return placeholder

    def copy(self, value: Any) -> Any:
        return copy_value(value, self.map_reference)

    def run(self) -> None:
        while self.worklist:
            src_id, dest_id = self.worklist.pop()
            value = self.source.store.get(src_id)
            self.destination.store.replace(dest_id, self.copy(value))


def graft_object(graft_map: GraftMap, destination, source, value: Any) -> Any:
    """Copy an arbitrary value (usually a reference) from source into destination."""
    graft_map.check(destination, source)
    grafter = _Grafter(graft_map, destination, source)
    result = grafter.copy(value)
    grafter.run()
    return result


def graft_page(graft_map: GraftMap, destination, dest_index: int, source, src_index: int) -> GraftResult:
    """
    Copy page ``src_index`` of ``source`` into ``destination``.

    Args:
        graft_map: Map bound to ``destination``
        destination: Document receiving the page
        dest_index: Insert position, -1 to append
        source: Document to copy from
        src_index: Page index in ``source``

    Returns:
        GraftResult with the new page index and copy statistics
    """
    graft_map.check(destination, source)
    if dest_index != -1 and not 0 <= dest_index <= destination.page_count:
        raise InvalidArgumentError(
            f"Destination index {dest_index} out of range (0-{destination.page_count})"
        )
    src_ref = source.page_ref(src_index)
    src_page = source.page(src_index)

    new_ref = destination.store.put(None)
    grafter = _Grafter(graft_map, destination, source, {src_ref.obj_id: new_ref})
    page = {"Type": PDFName("Page")}
    for key in PAGE_KEYS:
        if key in src_page:
            page[key] = grafter.copy(src_page[key])
    grafter.run()
    destination.store.replace(new_ref.obj_id, page)

    index = destination.insert_page(dest_index, new_ref)
    logger.debug(
        f"Grafted page {src_index} -> {index}: {grafter.copied} objects copied, "
        f"{grafter.reused} reused"
    )
    return GraftResult(index, grafter.copied, grafter.reused)
