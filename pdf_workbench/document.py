"""
document.py - Document model: object store, trailer and the flat page list.

On open the page tree is flattened. Inheritable attributes are pushed down into
every page and a single /Pages node holds all pages as direct kids, so page
identity is simply the position in ``Document.pages``.
"""

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .codec import ImageCodec, Raster, TargetCodec, decode_stream
from .errors import CorruptPDFError, InvalidArgumentError
from .primitives import PDFName, PDFReference, PDFStream, copy_value, is_name
from .reader import parse_pdf, parse_pdf_from_file
from .store import ObjectStore

logger = logging.getLogger(__name__)

INHERITABLE_KEYS = ("Resources", "MediaBox", "CropBox", "Rotate")
DEFAULT_MEDIA_BOX = [0, 0, 612, 792]


class Document:
    """
    An open PDF document.

    Not safe for concurrent mutation; use snapshot() to render while another
    worker saves.
    """

    def __init__(self, store: ObjectStore, trailer: dict, path: Optional[Path] = None):
        self.uid = uuid.uuid4().hex
        self.store = store
        self.trailer = dict(trailer)
        self.path = Path(path) if path is not None else None
        self.pages: List[PDFReference] = []
        self._pages_id: Optional[int] = None
        self._closed = False
        self._load_page_tree()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def open(cls, path) -> "Document":
        path = Path(path)
        store, trailer = parse_pdf_from_file(path)
        document = cls(store, trailer, path)
        logger.info(f"Opened {path.name}: {document.page_count} pages, {len(store)} objects")
        return document

    @classmethod
    def from_bytes(cls, data: bytes) -> "Document":
        store, trailer = parse_pdf(data)
        return cls(store, trailer)

    @classmethod
    def new(cls) -> "Document":
        store = ObjectStore()
        pages_ref = store.put({"Type": PDFName("Pages"), "Kids": [], "Count": 0})
        catalog_ref = store.put({"Type": PDFName("Catalog"), "Pages": pages_ref})
        return cls(store, {"Root": catalog_ref})

    def snapshot(self) -> "Document":
        """Independent copy of the object graph (same ids, new identity)."""
        self._check_open()
        return Document(self.store.copy(), copy_value(self.trailer), self.path)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.store = ObjectStore()
            self.pages = []

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"{self.page_count} pages"
        return f"<Document {self.uid[:8]} {state}>"

    def _check_open(self) -> None:
        if self._closed:
            raise InvalidArgumentError("Document is closed")

    # ------------------------------------------------------------------
    # Page tree
    # ------------------------------------------------------------------

    @property
    def catalog(self) -> dict:
        catalog = self.store.resolve(self.trailer.get("Root"))
        if not isinstance(catalog, dict):
            raise CorruptPDFError("Document catalog is missing")
        return catalog

    def _load_page_tree(self) -> None:
        root = self.trailer.get("Root")
        catalog = self.catalog
        self.store.mark_root(root.obj_id)
        info = self.trailer.get("Info")
        if isinstance(info, PDFReference) and self.store.is_live(info):
            self.store.mark_root(info.obj_id)

        tree_ref = catalog.get("Pages")
        visited = set()
        stack: List[Tuple[Any, Dict[str, Any]]] = [(tree_ref, {})]
        while stack:
            ref, inherited = stack.pop()
            if not isinstance(ref, PDFReference):
                logger.warning(f"Ignoring direct page tree node {ref!r}")
                continue
            if ref.obj_id in visited:
                logger.warning(f"Page tree loop at object {ref.obj_id}")
                continue
            visited.add(ref.obj_id)
            node = self.store.resolve(ref)
            if not isinstance(node, dict):
                continue
            if "Kids" in node or is_name(node.get("Type"), "Pages"):
                attributes = dict(inherited)
                attributes.update({key: node[key] for key in INHERITABLE_KEYS if key in node})
                kids = self.store.resolve(node.get("Kids"))
                if isinstance(kids, list):
                    stack.extend((kid, attributes) for kid in reversed(kids))
                continue
            for key in INHERITABLE_KEYS:
                if key not in node and key in inherited:
                    node[key] = copy_value(inherited[key])
            node.setdefault("MediaBox", list(DEFAULT_MEDIA_BOX))
            node["Type"] = PDFName("Page")
            self.pages.append(ref)

        if isinstance(tree_ref, PDFReference) and isinstance(self.store.resolve(tree_ref), dict):
            self._pages_id = tree_ref.obj_id
        else:
            self._pages_id = self.store.put({}).obj_id
            catalog["Pages"] = self.store.reference(self._pages_id)
        self.sync_page_tree()

    def sync_page_tree(self) -> None:
        """Rewrite the single /Pages node and every page's /Parent."""
        pages_ref = self.store.reference(self._pages_id)
        self.store.replace(self._pages_id, {
            "Type": PDFName("Pages"),
            "Kids": list(self.pages),
            "Count": len(self.pages),
        })
        for ref in self.pages:
            page = self.store.resolve(ref)
            if isinstance(page, dict):
                page["Parent"] = pages_ref

    @property
    def page_count(self) -> int:
        return len(self.pages)

    def _check_index(self, index: int) -> int:
        self._check_open()
        if not isinstance(index, int) or not 0 <= index < len(self.pages):
            raise InvalidArgumentError(f"Page index {index} out of range (0-{len(self.pages) - 1})")
        return index

    def page_ref(self, index: int) -> PDFReference:
        return self.pages[self._check_index(index)]

    def page(self, index: int) -> dict:
        page = self.store.resolve(self.page_ref(index))
        if not isinstance(page, dict):
            raise CorruptPDFError(f"Page {index} is not a dictionary")
        return page

    def page_box(self, index: int) -> List[float]:
        page = self.page(index)
        for key in ("CropBox", "MediaBox"):
            box = self.store.resolve(page.get(key))
            if isinstance(box, list) and len(box) == 4:
                values = [self.store.resolve(v) for v in box]
                if all(isinstance(v, (int, float)) for v in values):
                    return [float(v) for v in values]
        return [float(v) for v in DEFAULT_MEDIA_BOX]

    def page_rotation(self, index: int) -> int:
        rotate = self.store.resolve(self.page(index).get("Rotate", 0))
        if not isinstance(rotate, (int, float)):
            return 0
        return int(rotate) // 90 * 90 % 360

    def page_size(self, index: int) -> Tuple[float, float]:
        """Visible page size in points, with /Rotate applied."""
        x0, y0, x1, y1 = self.page_box(index)
        width, height = abs(x1 - x0), abs(y1 - y0)
        if self.page_rotation(index) in (90, 270):
            width, height = height, width
        return width, height

    def page_resources(self, index: int) -> dict:
        resources = self.store.resolve(self.page(index).get("Resources"))
        return resources if isinstance(resources, dict) else {}

    def content_refs(self, index: int) -> List[PDFReference]:
        contents = self.page(index).get("Contents")
        if isinstance(contents, PDFReference):
            resolved = self.store.resolve(contents)
            if isinstance(resolved, list):
                contents = resolved
            else:
                return [contents]
        if isinstance(contents, list):
            return [item for item in contents if isinstance(item, PDFReference)]
        return []

    def page_content(self, index: int) -> bytes:
        """Decoded content of a page; multiple streams are joined with newlines."""
        parts = []
        for ref in self.content_refs(index):
            stream = self.store.resolve(ref)
            if isinstance(stream, PDFStream):
                parts.append(decode_stream(stream))
        return b"\n".join(parts)

    def set_page_content(self, index: int, data: bytes) -> PDFReference:
        ref = self.store.put(PDFStream({}, data))
        self.page(index)["Contents"] = ref
        return ref

    # ------------------------------------------------------------------
    # Page list edits
    # ------------------------------------------------------------------

    def delete_page(self, index: int) -> None:
        self._check_index(index)
        del self.pages[index]
        self.sync_page_tree()

    def delete_page_range(self, start: int, end: int) -> None:
        """Delete pages ``start`` (inclusive) to ``end`` (exclusive)."""
        self._check_open()
        if not 0 <= start <= end <= len(self.pages):
            raise InvalidArgumentError(f"Invalid page range [{start}, {end}) for {len(self.pages)} pages")
        del self.pages[start:end]
        self.sync_page_tree()

    def insert_page(self, index: int, ref: PDFReference) -> int:
        """Insert a page reference; ``-1`` appends. Returns the final index."""
        self._check_open()
        if index == -1:
            index = len(self.pages)
        if not 0 <= index <= len(self.pages):
            raise InvalidArgumentError(f"Insert index {index} out of range (0-{len(self.pages)})")
        self.pages.insert(index, ref)
        self.sync_page_tree()
        return index

    def add_blank_page(self, width: float = 612, height: float = 792, index: int = -1) -> int:
        self._check_open()
        if width <= 0 or height <= 0:
            raise InvalidArgumentError(f"Invalid page size {width}x{height}")
        ref = self.store.put({
            "Type": PDFName("Page"),
            "MediaBox": [0, 0, width, height],
            "Resources": {},
        })
        return self.insert_page(index, ref)

    def embed_image(
        self,
        page_index: int,
        pixels: np.ndarray,
        rect: Sequence[float],
        quality: int = 75,
        target: TargetCodec = TargetCodec.DCT,
        codec: Optional[ImageCodec] = None,
    ) -> str:
        """
        Draw an RGB or gray array on a page.

        Args:
            page_index: Page to draw on
            pixels: uint8 array, (H, W) or (H, W, 3)
            rect: (x, y, width, height) in page space
            quality: JPEG quality for TargetCodec.DCT

        Returns:
            Resource name of the new image XObject
        """
        codec = codec or ImageCodec()
        page = self.page(page_index)
        encoded = codec.encode(Raster(np.asarray(pixels, dtype=np.uint8)), target, quality)
        image_ref = self.store.put(PDFStream({
            "Type": PDFName("XObject"),
            "Subtype": PDFName("Image"),
            "Width": encoded.width,
            "Height": encoded.height,
            "ColorSpace": PDFName(encoded.color_space),
            "BitsPerComponent": 8,
            "Filter": PDFName(target.value),
        }, encoded.data))

        resources = self.store.resolve(page.get("Resources"))
        if not isinstance(resources, dict):
            resources = page["Resources"] = {}
        xobjects = self.store.resolve(resources.get("XObject"))
        if not isinstance(xobjects, dict):
            xobjects = resources["XObject"] = {}
        number = 0
        while f"Im{number}" in xobjects:
            number += 1
        name = f"Im{number}"
        xobjects[name] = image_ref

        x, y, width, height = (float(v) for v in rect)
        content = f"q\n{width:.4f} 0 0 {height:.4f} {x:.4f} {y:.4f} cm\n/{name} Do\nQ\n"
        content_ref = self.store.put(PDFStream({}, content.encode("latin-1")))
        page["Contents"] = self.content_refs(page_index) + [content_ref]

        logger.debug(
            f"Embedded {encoded.width}x{encoded.height} image as /{name} on page {page_index}: "
            f"{len(encoded.data):,} bytes"
        )
        return name
