"""
planner.py - Decides what to do with each image XObject.

    inspect_image()            -> ImageInfo (or UnsupportedImage)
    collect_image_placements() -> lowest effective DPI per image id
    plan_image_rewrite()       -> ImageRewritePlan

Nothing here mutates the document.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

import numpy as np

from .codec import PixelLayout, TargetCodec, decode_stream, normalize_filter
from .config import ImageRewriteConfig
from .errors import PDFEngineError
from .geometry import effective_dpi, from_operands, identity
from .lexer import parse_content
from .primitives import PDFReference, PDFStream, PDFString, is_image_stream, is_name, name_of

logger = logging.getLogger(__name__)

UNSUPPORTED_FILTERS = {"JBIG2Decode", "CCITTFaxDecode", "JPXDecode", "LZWDecode"}
LOSSY_FILTERS = {"DCTDecode"}

_DEVICE_COMPONENTS = {"DeviceGray": 1, "CalGray": 1, "DeviceRGB": 3, "CalRGB": 3}


class UnsupportedImage(Exception):
    """The image cannot be rewritten; the message says why."""


@dataclass
class ImageInfo:
    """What the planner and codec need to know about an image stream."""
    obj_id: int
    width: int
    height: int
    bits_per_component: int
    components: int
    color_space: str
    filters: List[str]
    lossy: bool
    palette: Optional[bytes] = None
    palette_components: int = 0
    is_icc: bool = False

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def layout(self) -> PixelLayout:
        return PixelLayout(
            width=self.width,
            height=self.height,
            components=self.components,
            bits_per_component=self.bits_per_component,
            palette=self.palette,
            palette_components=self.palette_components,
        )


@dataclass
class ImageRewritePlan:
    recompress: bool
    target_codec: Optional[TargetCodec]
    quality: Optional[int]
    downsample_to_dpi: Optional[float]
    effective_dpi: float = 0.0
    reason: str = ""

    @property
    def actionable(self) -> bool:
        return self.recompress or self.downsample_to_dpi is not None

    @classmethod
    def skip(cls, reason: str, dpi: float = 0.0) -> "ImageRewritePlan":
        return cls(False, None, None, None, dpi, reason)

    def target_size(self, width: int, height: int):
        """Pixel size after downsampling (unchanged when not downsampling)."""
        if self.downsample_to_dpi is None or self.effective_dpi <= 0:
            return width, height
        factor = min(1.0, self.downsample_to_dpi / self.effective_dpi)
        return max(1, int(round(width * factor))), max(1, int(round(height * factor)))


def _color_space(value: Any, store) -> tuple:
    """Return (family, components, is_icc, palette, palette_components)."""
    value = store.resolve(value)
    family = name_of(value)
    if family is not None:
        if family in _DEVICE_COMPONENTS:
            return family, _DEVICE_COMPONENTS[family], False, None, 0
        raise UnsupportedImage(f"color space {family}")
    if not isinstance(value, list) or not value:
        raise UnsupportedImage("missing color space")

    family = name_of(store.resolve(value[0]))
    if family in _DEVICE_COMPONENTS:
        return family, _DEVICE_COMPONENTS[family], False, None, 0
    if family == "ICCBased":
        profile = store.resolve(value[1]) if len(value) > 1 else None
        count = store.resolve(profile.dictionary.get("N")) if isinstance(profile, PDFStream) else None
        if count not in (1, 3):
            raise UnsupportedImage(f"ICC profile with {count} components")
        return "ICCBased", count, True, None, 0
    if family in ("Indexed", "I"):
        if len(value) < 4:
            raise UnsupportedImage("malformed Indexed color space")
        base, base_components, _, _, _ = _color_space(value[1], store)
        hival = store.resolve(value[2])
        lookup = store.resolve(value[3])
        if isinstance(lookup, PDFString):
            table = lookup.value
        elif isinstance(lookup, PDFStream):
            try:
                table = decode_stream(lookup)
            except PDFEngineError as exc:
                raise UnsupportedImage(f"unreadable palette: {exc}") from exc
        else:
            raise UnsupportedImage("missing palette")
        if not isinstance(hival, int):
            raise UnsupportedImage("missing palette size")
        table = table[:(hival + 1) * base_components]
        return f"Indexed/{base}", 1, False, table, base_components
    raise UnsupportedImage(f"color space {family}")


def inspect_image(stream: PDFStream, store, obj_id: int = 0) -> ImageInfo:
    """Describe an image XObject, raising UnsupportedImage when it cannot be rewritten."""
    if not is_image_stream(stream):
        raise UnsupportedImage("not an image XObject")
    d = stream.dictionary

    if store.resolve(d.get("ImageMask")) is True:
        raise UnsupportedImage("stencil mask")
    if isinstance(store.resolve(d.get("Mask")), list):
        raise UnsupportedImage("color key mask")
    if "Decode" in d:
        raise UnsupportedImage("Decode array")

    filters = [normalize_filter(name) for name in stream.filters]
    blocked = UNSUPPORTED_FILTERS.intersection(filters)
    if blocked:
        raise UnsupportedImage(f"{sorted(blocked)[0]} encoding")
    if "DCTDecode" in filters and filters[-1] != "DCTDecode":
        raise UnsupportedImage("filters after DCTDecode")

    width = store.resolve(d.get("Width"))
    height = store.resolve(d.get("Height"))
    if not isinstance(width, int) or not isinstance(height, int) or width <= 0 or height <= 0:
        raise UnsupportedImage("invalid dimensions")

    family, components, is_icc, palette, palette_components = _color_space(d.get("ColorSpace"), store)
    bits = store.resolve(d.get("BitsPerComponent", 8))
    if palette is not None:
        if bits not in (1, 2, 4, 8):
            raise UnsupportedImage(f"{bits}-bit palette image")
    elif bits != 8:
        raise UnsupportedImage(f"{bits} bits per component")

    return ImageInfo(
        obj_id=obj_id,
        width=width,
        height=height,
        bits_per_component=bits,
        components=components,
        color_space=family,
        filters=filters,
        lossy=bool(LOSSY_FILTERS.intersection(filters)),
        palette=palette,
        palette_components=palette_components,
        is_icc=is_icc,
    )


def plan_image_rewrite(
    info: ImageInfo,
    placement_dpi: Optional[float],
    config: ImageRewriteConfig,
) -> ImageRewritePlan:
    """
    Decide how to rewrite one image.

    An image qualifies when it is drawn at more than target_dpi + dpi_headroom.
    Qualifying lossy images are re-encoded as JPEG at the configured quality;
    lossless ones too when convert_lossless is set, otherwise they are only
    downsampled and stay Flate encoded.
    """
    if not placement_dpi or placement_dpi <= 0:
        return ImageRewritePlan.skip("not placed on any page")

    threshold = config.target_dpi + config.dpi_headroom
    if placement_dpi <= threshold:
        return ImageRewritePlan.skip(
            f"{placement_dpi:.0f} DPI does not exceed {threshold:.0f} DPI", placement_dpi
        )

    to_lossy = info.lossy or config.convert_lossless
    recompress = config.recompress and to_lossy
    downsample_to = config.target_dpi if config.downsample else None
    if not recompress and downsample_to is None:
        return ImageRewritePlan.skip("downsampling and recompression disabled", placement_dpi)

    target = TargetCodec.DCT if to_lossy else TargetCodec.FLATE
    return ImageRewritePlan(
        recompress=recompress,
        target_codec=target,
        quality=config.jpeg_quality if target is TargetCodec.DCT else None,
        downsample_to_dpi=downsample_to,
        effective_dpi=placement_dpi,
    )


class _PlacementScanner:
    """Walks content streams tracking the CTM and records image placements."""

    def __init__(self, store):
        self.store = store
        self.placements: Dict[int, float] = {}
        self.failures = 0

    def scan(self, content: bytes, resources: dict, ctm: np.ndarray, active: Set[int]) -> None:
        stack = []
        for operands, operator in parse_content(content):
            if operator == "q":
                stack.append(ctm)
            elif operator == "Q":
                if stack:
                    ctm = stack.pop()
            elif operator == "cm" and len(operands) == 6:
                if all(isinstance(v, (int, float)) for v in operands):
                    ctm = from_operands(operands) @ ctm
            elif operator == "Do" and operands:
                self._do(name_of(operands[0]), resources, ctm, active)

    def _do(self, name: Optional[str], resources: dict, ctm: np.ndarray, active: Set[int]) -> None:
        xobjects = self.store.resolve(resources.get("XObject"))
        if name is None or not isinstance(xobjects, dict):
            return
        ref = xobjects.get(name)
        if not isinstance(ref, PDFReference):
            return
        xobject = self.store.resolve(ref)
        if not isinstance(xobject, PDFStream):
            return
        subtype = xobject.dictionary.get("Subtype")
        if is_name(subtype, "Image"):
            width = self.store.resolve(xobject.dictionary.get("Width"))
            height = self.store.resolve(xobject.dictionary.get("Height"))
            if isinstance(width, int) and isinstance(height, int):
                dpi = effective_dpi(width, height, ctm)
                if dpi > 0:
                    previous = self.placements.get(ref.obj_id)
                    self.placements[ref.obj_id] = dpi if previous is None else min(previous, dpi)
        elif is_name(subtype, "Form"):
            if ref.obj_id in active:
                logger.debug(f"Skipping recursive form XObject {ref.obj_id}")
                return
            matrix = self.store.resolve(xobject.dictionary.get("Matrix"))
            form_ctm = ctm
            if isinstance(matrix, list) and len(matrix) == 6:
                values = [self.store.resolve(v) for v in matrix]
                if all(isinstance(v, (int, float)) for v in values):
                    form_ctm = from_operands(values) @ ctm
            form_resources = self.store.resolve(xobject.dictionary.get("Resources"))
            if not isinstance(form_resources, dict):
                form_resources = resources
            try:
                content = decode_stream(xobject)
                self.scan(content, form_resources, form_ctm, active | {ref.obj_id})
            except PDFEngineError as exc:
                self.failures += 1
                logger.warning(f"Could not scan form XObject {ref.obj_id}: {exc}")


def collect_image_placements(document) -> Dict[int, float]:
    """Map image object id -> lowest effective DPI at which any page draws it."""
    scanner = _PlacementScanner(document.store)
    for index in range(document.page_count):
        try:
            content = document.page_content(index)
            scanner.scan(content, document.page_resources(index), identity(), set())
        except PDFEngineError as exc:
            scanner.failures += 1
            logger.warning(f"Could not scan page {index} for images: {exc}")
    logger.debug(
        f"Found {len(scanner.placements)} placed images on {document.page_count} pages"
    )
    return scanner.placements
