"""
rasterize.py - Page rendering to pixel buffers.

Two interpreters are available:
- BasicInterpreter: numpy/OpenCV painter for paths, colors, image and form
  XObjects. Text, shadings and inline images are skipped with a diagnostic.
- MuPDFInterpreter: hands the page to PyMuPDF for full-fidelity previews.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import numpy as np
import cv2
from PIL import Image
try:
    import fitz  # pip install pymupdf
except ImportError:
    import pymupdf as fitz  # apt install python3-pymupdf

from .codec import ImageCodec, decode_stream
from .errors import CodecFailureError, CorruptPDFError, InvalidArgumentError
from .geometry import from_operands, line_scale, page_transform, translate
from .lexer import parse_content
from .planner import UnsupportedImage, inspect_image
from .primitives import PDFReference, PDFStream, is_name, name_of
from .serializer import write_pdf

logger = logging.getLogger(__name__)

# Largest buffer render_page will allocate
MAX_PIXELS = 200_000_000

THUMBNAIL_SIZE = 150

# Fixed-point bits for OpenCV polygon coordinates
_SHIFT = 4
_BEZIER_STEPS = 16


@dataclass
class Pixmap:
    """Dense RGB or RGBA raster owned by the caller.

    ``diagnostics`` lists what the interpreter skipped or could not draw,
    as "message (xN)" strings.
    """
    width: int
    height: int
    channels: int
    samples: bytes
    diagnostics: List[str] = field(default_factory=list)

    @property
    def stride(self) -> int:
        return self.width * self.channels

    @property
    def has_alpha(self) -> bool:
        return self.channels == 4

    @classmethod
    def from_array(cls, array: np.ndarray, diagnostics: Optional[List[str]] = None) -> "Pixmap":
        array = np.ascontiguousarray(array, dtype=np.uint8)
        return cls(array.shape[1], array.shape[0], array.shape[2], array.tobytes(), list(diagnostics or []))

    def to_array(self) -> np.ndarray:
        """Copy of the samples as an (H, W, channels) array."""
        return np.frombuffer(self.samples, dtype=np.uint8).reshape(
            self.height, self.width, self.channels
        ).copy()

    def pixel(self, x: int, y: int) -> Tuple[int, ...]:
        offset = y * self.stride + x * self.channels
        return tuple(self.samples[offset:offset + self.channels])

    def save_png(self, path) -> None:
        mode = "RGBA" if self.has_alpha else "RGB"
        Image.frombytes(mode, (self.width, self.height), self.samples).save(Path(path), format="PNG")


def _cmyk_to_rgb(c: float, m: float, y: float, k: float) -> Tuple[float, float, float]:
    return (
        255.0 * (1 - c) * (1 - k),
        255.0 * (1 - m) * (1 - k),
        255.0 * (1 - y) * (1 - k),
    )


def _color(values: List[float]) -> Optional[Tuple[float, float, float]]:
    values = [min(1.0, max(0.0, float(v))) for v in values]
    if len(values) == 1:
        return (values[0] * 255.0,) * 3
    if len(values) == 3:
        return tuple(v * 255.0 for v in values)
    if len(values) == 4:
        return _cmyk_to_rgb(*values)
    return None


@dataclass
class _GraphicsState:
    ctm: np.ndarray
    fill: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    stroke: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    line_width: float = 1.0
    fill_alpha: float = 1.0
    stroke_alpha: float = 1.0
    clip: Optional[np.ndarray] = None


class _Subpath:
    def __init__(self, start):
        self.points = [start]
        self.closed = False


class _PageRenderer:
    """Paints one page's content into a float RGB canvas."""

    def __init__(self, store, canvas: np.ndarray, device: np.ndarray, codec: ImageCodec, diagnostics: Counter):
        self.store = store
        self.canvas = canvas
        self.height, self.width = canvas.shape[:2]
        self.codec = codec
        self.diagnostics = diagnostics
        self.state = _GraphicsState(ctm=device)
        self.stack: List[_GraphicsState] = []
        self.path: List[_Subpath] = []
        self.pending_clip = False
        self.active_forms: Set[int] = set()
        self.images: Dict[int, Optional[np.ndarray]] = {}

    # ------------------------------------------------------------------

    def run(self, content: bytes, resources: dict) -> None:
        for operands, operator in parse_content(content):
            handler = self.HANDLERS.get(operator)
            if handler is None:
                self.diagnostics[f"unsupported operator {operator}"] += 1
                continue
            try:
                handler(self, operands, resources)
            except (TypeError, ValueError, IndexError) as exc:
                logger.debug(f"Bad operands for {operator}: {exc}")
                self.diagnostics[f"malformed {operator}"] += 1

    def _point(self, x, y) -> Tuple[float, float]:
        m = self.state.ctm
        x, y = float(x), float(y)
        return (x * m[0, 0] + y * m[1, 0] + m[2, 0], x * m[0, 1] + y * m[1, 1] + m[2, 1])

    def _composite(self, coverage: np.ndarray, color, alpha: float) -> None:
        weight = coverage.astype(np.float32) * (alpha / 255.0)
        if self.state.clip is not None:
            weight *= self.state.clip
        weight = weight[:, :, None]
        self.canvas *= 1.0 - weight
        self.canvas += weight * np.asarray(color, dtype=np.float32)

    def _polygons(self, closed_only: bool) -> List[np.ndarray]:
        polygons = []
        for subpath in self.path:
            if len(subpath.points) < (3 if closed_only else 2):
                continue
            points = np.clip(np.asarray(subpath.points, dtype=np.float64), -1e6, 1e6)
            polygons.append(np.round(points * (1 << _SHIFT)).astype(np.int32))
        return polygons

    def _fill_mask(self) -> np.ndarray:
        mask = np.zeros((self.height, self.width), dtype=np.uint8)
        polygons = self._polygons(closed_only=True)
        if polygons:
            cv2.fillPoly(mask, polygons, 255, lineType=cv2.LINE_AA, shift=_SHIFT)
        return mask

    def _stroke_mask(self) -> np.ndarray:
        mask = np.zeros((self.height, self.width), dtype=np.uint8)
        thickness = max(1, int(round(self.state.line_width * line_scale(self.state.ctm))))
        for subpath, polygon in zip(
            (s for s in self.path if len(s.points) >= 2), self._polygons(closed_only=False)
        ):
            cv2.polylines(mask, [polygon], subpath.closed, 255, thickness, cv2.LINE_AA, _SHIFT)
        return mask

    def _finish_path(self) -> None:
        if self.pending_clip:
            clip = self._fill_mask().astype(np.float32) / 255.0
            self.state.clip = clip if self.state.clip is None else self.state.clip * clip
            self.pending_clip = False
        self.path = []

    # ------------------------------------------------------------------
    # Graphics state
    # ------------------------------------------------------------------

    def _op_save(self, operands, resources):
        self.stack.append(replace(self.state))

    def _op_restore(self, operands, resources):
        if self.stack:
            self.state = self.stack.pop()

    def _op_concat(self, operands, resources):
        self.state.ctm = from_operands(operands) @ self.state.ctm

    def _op_line_width(self, operands, resources):
        self.state.line_width = float(operands[0])

    def _op_ext_gstate(self, operands, resources):
        states = self.store.resolve(resources.get("ExtGState"))
        params = self.store.resolve(states.get(name_of(operands[0]))) if isinstance(states, dict) else None
        if not isinstance(params, dict):
            return
        for key, attribute in (("ca", "fill_alpha"), ("CA", "stroke_alpha"), ("LW", "line_width")):
            value = self.store.resolve(params.get(key))
            if isinstance(value, (int, float)):
                setattr(self.state, attribute, float(value))

    def _op_ignore(self, operands, resources):
        pass

    # ------------------------------------------------------------------
    # Color
    # ------------------------------------------------------------------

    def _set_color(self, operands, stroke: bool):
        numbers = [v for v in operands if isinstance(v, (int, float))]
        color = _color(numbers)
        if color is None:
            self.diagnostics["unsupported color"] += 1
            return
        if stroke:
            self.state.stroke = color
        else:
            self.state.fill = color

    def _op_fill_color(self, operands, resources):
        self._set_color(operands, stroke=False)

    def _op_stroke_color(self, operands, resources):
        self._set_color(operands, stroke=True)

    def _op_fill_space(self, operands, resources):
        self.state.fill = (0.0, 0.0, 0.0)

    def _op_stroke_space(self, operands, resources):
        self.state.stroke = (0.0, 0.0, 0.0)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _current_point(self):
        if not self.path:
            raise ValueError("no current point")
        return self.path[-1].points[-1]

    def _op_move(self, operands, resources):
        self.path.append(_Subpath(self._point(*operands)))

    def _op_line(self, operands, resources):
        self._current_point()
        self.path[-1].points.append(self._point(*operands))

    def _curve_to(self, p1, p2, p3):
        p0 = np.asarray(self._current_point())
        p1, p2, p3 = (np.asarray(p) for p in (p1, p2, p3))
        for step in range(1, _BEZIER_STEPS + 1):
            t = step / _BEZIER_STEPS
            u = 1 - t
            point = u ** 3 * p0 + 3 * u * u * t * p1 + 3 * u * t * t * p2 + t ** 3 * p3
            self.path[-1].points.append((float(point[0]), float(point[1])))

    def _op_curve(self, operands, resources):
        x1, y1, x2, y2, x3, y3 = operands
        self._curve_to(self._point(x1, y1), self._point(x2, y2), self._point(x3, y3))

    def _op_curve_v(self, operands, resources):
        x2, y2, x3, y3 = operands
        self._curve_to(self._current_point(), self._point(x2, y2), self._point(x3, y3))

    def _op_curve_y(self, operands, resources):
        x1, y1, x3, y3 = operands
        end = self._point(x3, y3)
        self._curve_to(self._point(x1, y1), end, end)

    def _op_close(self, operands, resources):
        if self.path:
            self.path[-1].closed = True

    def _op_rect(self, operands, resources):
        x, y, w, h = (float(v) for v in operands)
        subpath = _Subpath(self._point(x, y))
        subpath.points.extend([self._point(x + w, y), self._point(x + w, y + h), self._point(x, y + h)])
        subpath.closed = True
        self.path.append(subpath)

    def _op_clip(self, operands, resources):
        self.pending_clip = True

    def _paint(self, fill: bool, stroke: bool, close: bool = False):
        if close:
            self._op_close([], {})
        if fill:
            self._composite(self._fill_mask(), self.state.fill, self.state.fill_alpha)
        if stroke:
            self._composite(self._stroke_mask(), self.state.stroke, self.state.stroke_alpha)
        self._finish_path()

    def _op_stroke(self, operands, resources):
        self._paint(fill=False, stroke=True)

    def _op_close_stroke(self, operands, resources):
        self._paint(fill=False, stroke=True, close=True)

    def _op_fill(self, operands, resources):
        self._paint(fill=True, stroke=False)

    def _op_fill_stroke(self, operands, resources):
        self._paint(fill=True, stroke=True)

    def _op_close_fill_stroke(self, operands, resources):
        self._paint(fill=True, stroke=True, close=True)

    def _op_end_path(self, operands, resources):
        self._finish_path()

    # ------------------------------------------------------------------
    # XObjects
    # ------------------------------------------------------------------

    def _op_xobject(self, operands, resources):
        xobjects = self.store.resolve(resources.get("XObject"))
        ref = xobjects.get(name_of(operands[0])) if isinstance(xobjects, dict) else None
        stream = self.store.resolve(ref)
        if not isinstance(stream, PDFStream):
            self.diagnostics["missing XObject"] += 1
            return
        subtype = stream.dictionary.get("Subtype")
        obj_id = ref.obj_id if isinstance(ref, PDFReference) else 0
        if is_name(subtype, "Image"):
            self._draw_image(obj_id, stream)
        elif is_name(subtype, "Form"):
            self._draw_form(obj_id, stream, resources)
        else:
            self.diagnostics[f"XObject {name_of(subtype)}"] += 1

    def _decode_image(self, obj_id: int, stream: PDFStream) -> Optional[np.ndarray]:
        if obj_id and obj_id in self.images:
            return self.images[obj_id]
        pixels = None
        try:
            info = inspect_image(stream, self.store, obj_id)
            raster = self.codec.decode(stream.data, list(zip(stream.filters, stream.decode_parms)), info.layout)
            pixels = raster.pixels
            if pixels.ndim == 2:
                pixels = cv2.cvtColor(pixels, cv2.COLOR_GRAY2RGB)
        except UnsupportedImage as exc:
            self.diagnostics[f"image skipped ({exc})"] += 1
        except CodecFailureError as exc:
            logger.debug(f"Image {obj_id} could not be decoded: {exc}")
            self.diagnostics["undecodable image"] += 1
        if obj_id:
            self.images[obj_id] = pixels
        return pixels

    def _draw_image(self, obj_id: int, stream: PDFStream) -> None:
        pixels = self._decode_image(obj_id, stream)
        if pixels is None:
            return
        h, w = pixels.shape[:2]
        # Pixel centers -> unit square (row 0 at the top) -> device, then back to centers
        m = (
            translate(0.5, 0.5)
            @ from_operands((1.0 / w, 0, 0, -1.0 / h, 0, 1))
            @ self.state.ctm
            @ translate(-0.5, -0.5)
        )
        affine = np.array([[m[0, 0], m[1, 0], m[2, 0]], [m[0, 1], m[1, 1], m[2, 1]]], dtype=np.float64)
        size = (self.width, self.height)
        warped = cv2.warpAffine(pixels, affine, size, flags=cv2.INTER_LINEAR,
                                borderMode=cv2.BORDER_CONSTANT, borderValue=0)
        coverage = cv2.warpAffine(np.full((h, w), 255, dtype=np.uint8), affine, size,
                                  flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT, borderValue=0)
        self._composite(coverage, warped.astype(np.float32), self.state.fill_alpha)

    def _draw_form(self, obj_id: int, stream: PDFStream, resources: dict) -> None:
        if obj_id in self.active_forms:
            self.diagnostics["recursive form XObject"] += 1
            return
        try:
            content = decode_stream(stream)
        except CodecFailureError as exc:
            logger.debug(f"Form {obj_id} could not be decoded: {exc}")
            self.diagnostics["undecodable form XObject"] += 1
            return

        form_resources = self.store.resolve(stream.dictionary.get("Resources"))
        if not isinstance(form_resources, dict):
            form_resources = resources
        saved_state, saved_depth, saved_path = replace(self.state), len(self.stack), self.path
        matrix = self.store.resolve(stream.dictionary.get("Matrix"))
        if isinstance(matrix, list) and len(matrix) == 6:
            values = [self.store.resolve(v) for v in matrix]
            if all(isinstance(v, (int, float)) for v in values):
                self.state.ctm = from_operands(values) @ self.state.ctm
        self.path = []
        self.active_forms.add(obj_id)
        try:
            self.run(content, form_resources)
        finally:
            self.active_forms.discard(obj_id)
            self.state = saved_state
            del self.stack[saved_depth:]
            self.path = saved_path

    # ------------------------------------------------------------------
    # Skipped features
    # ------------------------------------------------------------------

    def _op_text(self, operands, resources):
        self.diagnostics["text not rendered"] += 1

    def _op_shading(self, operands, resources):
        self.diagnostics["shading not rendered"] += 1

    def _op_inline_image(self, operands, resources):
        self.diagnostics["inline image not rendered"] += 1

    HANDLERS = {
        "q": _op_save, "Q": _op_restore, "cm": _op_concat,
        "w": _op_line_width, "gs": _op_ext_gstate,
        "J": _op_ignore, "j": _op_ignore, "M": _op_ignore, "d": _op_ignore,
        "ri": _op_ignore, "i": _op_ignore,
        "g": _op_fill_color, "rg": _op_fill_color, "k": _op_fill_color,
        "sc": _op_fill_color, "scn": _op_fill_color,
        "G": _op_stroke_color, "RG": _op_stroke_color, "K": _op_stroke_color,
        "SC": _op_stroke_color, "SCN": _op_stroke_color,
        "cs": _op_fill_space, "CS": _op_stroke_space,
        "m": _op_move, "l": _op_line, "c": _op_curve, "v": _op_curve_v, "y": _op_curve_y,
        "h": _op_close, "re": _op_rect,
        "W": _op_clip, "W*": _op_clip,
        "S": _op_stroke, "s": _op_close_stroke,
        "f": _op_fill, "F": _op_fill, "f*": _op_fill,
        "B": _op_fill_stroke, "B*": _op_fill_stroke,
        "b": _op_close_fill_stroke, "b*": _op_close_fill_stroke,
        "n": _op_end_path,
        "Do": _op_xobject,
        "BT": _op_ignore, "ET": _op_ignore,
        "Tc": _op_ignore, "Tw": _op_ignore, "Tz": _op_ignore, "TL": _op_ignore,
        "Tf": _op_ignore, "Tr": _op_ignore, "Ts": _op_ignore,
        "Td": _op_ignore, "TD": _op_ignore, "Tm": _op_ignore, "T*": _op_ignore,
        "Tj": _op_text, "TJ": _op_text, "'": _op_text, '"': _op_text,
        "d0": _op_ignore, "d1": _op_ignore,
        "sh": _op_shading, "BI": _op_inline_image,
        "MP": _op_ignore, "DP": _op_ignore, "BMC": _op_ignore, "BDC": _op_ignore, "EMC": _op_ignore,
        "BX": _op_ignore, "EX": _op_ignore,
    }


class BasicInterpreter:
    """Built-in numpy/OpenCV content stream interpreter."""

    name = "basic"

    def __init__(self, codec: Optional[ImageCodec] = None):
        self.codec = codec or ImageCodec()

    def paint(self, document, page_index: int, scale: float, device: np.ndarray,
              size: Tuple[int, int]) -> Tuple[np.ndarray, List[str]]:
        width, height = size
        canvas = np.full((height, width, 3), 255.0, dtype=np.float32)
        diagnostics: Counter = Counter()
        renderer = _PageRenderer(document.store, canvas, device, self.codec, diagnostics)
        try:
            renderer.run(document.page_content(page_index), document.page_resources(page_index))
        except (CodecFailureError, CorruptPDFError) as exc:
            logger.warning(f"Page {page_index}: content could not be read: {exc}")
            diagnostics["unreadable content"] += 1
        rgb = np.clip(np.round(canvas), 0, 255).astype(np.uint8)
        return rgb, [f"{message} (x{count})" for message, count in sorted(diagnostics.items())]


class MuPDFInterpreter:
    """Renders through PyMuPDF from a serialized copy of the document."""

    name = "mupdf"

    def paint(self, document, page_index: int, scale: float, device: np.ndarray,
              size: Tuple[int, int]) -> Tuple[np.ndarray, List[str]]:
        width, height = size
        data = write_pdf(document.store.items(), document.trailer)
        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                page = doc[page_index]
                pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
                image = np.frombuffer(pixmap.samples, dtype=np.uint8).reshape(
                    pixmap.height, pixmap.width, pixmap.n
                )[:, :, :3].copy()
        except (RuntimeError, ValueError) as exc:
            raise CorruptPDFError(f"MuPDF could not render page {page_index}: {exc}") from exc

        # MuPDF rounds page bounds on its own; fit its output to our buffer
        canvas = np.full((height, width, 3), 255, dtype=np.uint8)
        rows, cols = min(height, image.shape[0]), min(width, image.shape[1])
        canvas[:rows, :cols] = image[:rows, :cols]
        return canvas, []


class Rasterizer:
    """Renders pages with an interpreter; keeps the diagnostics of the last render."""

    def __init__(self, interpreter=None):
        self.interpreter = interpreter or BasicInterpreter()
        self.diagnostics: List[str] = []

    def render(self, document, index: int, scale: float = 1.0, alpha: bool = False) -> Pixmap:
        if not isinstance(scale, (int, float)) or not math.isfinite(scale) or scale <= 0:
            raise InvalidArgumentError(f"Invalid scale {scale!r}")
        box = document.page_box(index)
        device, width, height = page_transform(box, document.page_rotation(index), scale)
        width, height = max(1, width), max(1, height)
        if width * height > MAX_PIXELS:
            raise InvalidArgumentError(f"Render size {width}x{height} is too large")

        rgb, self.diagnostics = self.interpreter.paint(document, index, scale, device, (width, height))
        if self.diagnostics:
            logger.debug(f"Page {index} rendered with {len(self.diagnostics)} diagnostics: {self.diagnostics}")
        if alpha:
            rgb = np.dstack([rgb, np.full((height, width), 255, dtype=np.uint8)])
        logger.debug(f"Rendered page {index}: {width}x{height} @ {scale:.2f}x ({self.interpreter.name})")
        return Pixmap.from_array(rgb, self.diagnostics)


def render_page(document, index: int, scale: float = 1.0, alpha: bool = False, interpreter=None) -> Pixmap:
    """
    Render a page.

    Output size is ceil(page box * scale) with /Rotate applied; the buffer
    starts opaque white.
    """
    return Rasterizer(interpreter).render(document, index, scale, alpha)


def render_thumbnail(document, index: int, max_size: int = THUMBNAIL_SIZE, interpreter=None) -> Pixmap:
    """Render a page scaled to fit a max_size x max_size square."""
    width, height = document.page_size(index)
    scale = max_size / max(width, height, 1e-6)
    return render_page(document, index, scale, interpreter=interpreter)
