"""
codec.py - Image codec adapter.

Decodes stream filter chains and image payloads into numpy rasters and encodes
rasters back to JPEG (DCTDecode, via Pillow) or Flate (zlib). Byte filters and
their predictors are undone by qpdf through pikepdf. Resampling uses OpenCV's
area filter.

Rasters are uint8 arrays shaped (H, W) for gray or (H, W, 3) for RGB.
"""

import io
import logging
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image
import cv2
import pikepdf

from .errors import CodecFailureError
from .primitives import PDFName, PDFReference

logger = logging.getLogger(__name__)

# Saturation threshold for grayscale conversion (out of 255)
GRAYSCALE_SATURATION_THRESHOLD = 10

FILTER_ALIASES = {
    "Fl": "FlateDecode",
    "AHx": "ASCIIHexDecode",
    "A85": "ASCII85Decode",
    "RL": "RunLengthDecode",
    "DCT": "DCTDecode",
    "LZW": "LZWDecode",
    "CCF": "CCITTFaxDecode",
}

IMAGE_FILTERS = {"DCTDecode", "JPXDecode", "JBIG2Decode", "CCITTFaxDecode"}

# Filters qpdf decodes to plain bytes
BYTE_FILTERS = {"FlateDecode", "LZWDecode", "ASCIIHexDecode", "ASCII85Decode", "RunLengthDecode"}

FilterChain = Sequence[Tuple[str, Optional[dict]]]


class TargetCodec(Enum):
    DCT = "DCTDecode"
    FLATE = "FlateDecode"

    @property
    def lossy(self) -> bool:
        return self is TargetCodec.DCT


@dataclass
class Raster:
    """Decoded image pixels."""
    pixels: np.ndarray

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def components(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])


@dataclass
class PixelLayout:
    """How raw (non-JPEG) samples are packed."""
    width: int
    height: int
    components: int
    bits_per_component: int = 8
    palette: Optional[bytes] = None
    palette_components: int = 0


@dataclass
class EncodedImage:
    data: bytes
    codec: TargetCodec
    width: int
    height: int
    components: int

    @property
    def color_space(self) -> str:
        return "DeviceRGB" if self.components == 3 else "DeviceGray"


def normalize_filter(name: str) -> str:
    return FILTER_ALIASES.get(name, name)


# ----------------------------------------------------------------------
# Stream filters
# ----------------------------------------------------------------------

def _pdf_value(value):
    """Convert a decode parameter value to its pikepdf form."""
    if isinstance(value, PDFName):
        return pikepdf.Name(f"/{value.value}")
    if isinstance(value, dict):
        return pikepdf.Dictionary({f"/{key}": _pdf_value(item) for key, item in value.items()})
    if isinstance(value, list):
        return pikepdf.Array([_pdf_value(item) for item in value])
    if isinstance(value, PDFReference):
        raise CodecFailureError("Indirect decode parameters are not supported")
    return value


def _qpdf_decode(data: bytes, chain: FilterChain) -> bytes:
    """Run byte filters (and their predictors) through qpdf."""
    pdf = pikepdf.Pdf.new()
    try:
        stream = pikepdf.Stream(pdf, data)
        stream.Filter = pikepdf.Array([pikepdf.Name(f"/{name}") for name, _ in chain])
        stream.DecodeParms = pikepdf.Array([_pdf_value(parms) if parms else None for _, parms in chain])
        return stream.read_bytes(pikepdf.StreamDecodeLevel.specialized)
    except (pikepdf.PdfError, RuntimeError) as exc:
        names = ", ".join(name for name, _ in chain)
        raise CodecFailureError(f"{names} data could not be decoded: {exc}") from exc
    finally:
        pdf.close()


def decode_filters(data: bytes, chain: FilterChain, stop_at_image: bool = False) -> Tuple[bytes, List[str]]:
    """Run a filter chain over ``data``.

    With ``stop_at_image`` decoding stops at the first image codec filter
    (DCT, JPX, JBIG2, CCITT) and the remaining filter names are returned;
    otherwise image filters raise CodecFailureError.
    """
    chain = [(normalize_filter(name), parms) for name, parms in chain]
    remaining: List[str] = []
    for position, (name, _) in enumerate(chain):
        if name in IMAGE_FILTERS:
            if not stop_at_image:
                raise CodecFailureError(f"{name} cannot be decoded to bytes")
            remaining = [item[0] for item in chain[position:]]
            chain = chain[:position]
            break
        if name not in BYTE_FILTERS:
            raise CodecFailureError(f"Unsupported filter {name}")

    if chain:
        data = _qpdf_decode(data, chain)
    return data, remaining


def decode_stream(stream) -> bytes:
    """Fully decode a non-image stream (content streams, lookup tables)."""
    data, _ = decode_filters(stream.data, list(zip(stream.filters, stream.decode_parms)))
    return data


# ----------------------------------------------------------------------
# Sample unpacking
# ----------------------------------------------------------------------

def unpack_samples(buffer: bytes, samples_per_row: int, height: int, bits: int) -> np.ndarray:
    """Unpack rows of ``bits``-wide samples into a (height, samples_per_row) uint8 array."""
    row_bytes = (samples_per_row * bits + 7) // 8
    needed = row_bytes * height
    if len(buffer) < needed:
        raise CodecFailureError(f"Image data truncated: {len(buffer)} of {needed} bytes")
    rows = np.frombuffer(buffer[:needed], dtype=np.uint8).reshape(height, row_bytes)
    if bits == 8:
        return rows[:, :samples_per_row].copy()
    if bits not in (1, 2, 4):
        raise CodecFailureError(f"Unsupported sample depth {bits}")
    bit_planes = np.unpackbits(rows, axis=1)[:, :samples_per_row * bits]
    weights = (1 << np.arange(bits - 1, -1, -1)).astype(np.uint8)
    return (bit_planes.reshape(height, samples_per_row, bits) * weights).sum(axis=2).astype(np.uint8)


def expand_palette(indices: np.ndarray, palette: bytes, components: int) -> np.ndarray:
    entries = len(palette) // components
    if entries == 0:
        raise CodecFailureError("Empty palette")
    table = np.frombuffer(palette[:entries * components], dtype=np.uint8).reshape(entries, components)
    pixels = table[np.minimum(indices, entries - 1)]
    return pixels[:, :, 0] if components == 1 else pixels


# ----------------------------------------------------------------------
# Raster helpers
# ----------------------------------------------------------------------

def is_grayscale_image(image: np.ndarray) -> bool:
    """
    Check if image is effectively grayscale based on saturation.

    Only returns True if the entire image has very low saturation.
    """
    if len(image.shape) != 3 or image.shape[2] != 3:
        return True

    hsv = cv2.cvtColor(image, cv2.COLOR_RGB2HSV)
    mean_saturation = np.mean(hsv[:, :, 1])

    is_gray = mean_saturation < GRAYSCALE_SATURATION_THRESHOLD
    logger.debug(f"Mean saturation: {mean_saturation:.1f}, is_grayscale: {is_gray}")
    return is_gray


class ImageCodec:
    """
    Default codec adapter: Pillow for JPEG, zlib for Flate, OpenCV for resampling.

    Every failure surfaces as CodecFailureError so callers can record it per
    image and carry on.
    """

    def decode(self, data: bytes, chain: FilterChain, layout: PixelLayout) -> Raster:
        """Decode an image payload through its filter chain into a raster."""
        data, remaining = decode_filters(data, chain, stop_at_image=True)
        if remaining:
            if remaining != ["DCTDecode"]:
                raise CodecFailureError(f"Unsupported image filters {remaining}")
            return self._decode_jpeg(data, layout)
        return self._decode_raw(data, layout)

    def _decode_jpeg(self, data: bytes, layout: PixelLayout) -> Raster:
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                if img.mode not in ("L", "RGB"):
                    if img.mode == "CMYK":
                        raise CodecFailureError("CMYK JPEG images are not supported")
                    img = img.convert("RGB")
                pixels = np.array(img)
        except (OSError, ValueError, SyntaxError) as exc:
            raise CodecFailureError(f"JPEG data is corrupt: {exc}") from exc

        if pixels.shape[1] != layout.width or pixels.shape[0] != layout.height:
            logger.debug(
                f"JPEG size {pixels.shape[1]}x{pixels.shape[0]} differs from "
                f"dictionary size {layout.width}x{layout.height}"
            )
        return Raster(pixels)

    def _decode_raw(self, data: bytes, layout: PixelLayout) -> Raster:
        if layout.width <= 0 or layout.height <= 0:
            raise CodecFailureError(f"Invalid image size {layout.width}x{layout.height}")
        if layout.palette is not None:
            indices = unpack_samples(data, layout.width, layout.height, layout.bits_per_component)
            return Raster(expand_palette(indices, layout.palette, layout.palette_components))
        if layout.bits_per_component != 8:
            raise CodecFailureError(f"Unsupported bit depth {layout.bits_per_component}")
        samples = unpack_samples(data, layout.width * layout.components, layout.height, 8)
        if layout.components == 1:
            return Raster(samples)
        return Raster(samples.reshape(layout.height, layout.width, layout.components))

    def encode(self, raster: Raster, codec: TargetCodec, quality: Optional[int] = None) -> EncodedImage:
        """Encode a raster as JPEG or Flate."""
        pixels = np.ascontiguousarray(raster.pixels)
        if codec is TargetCodec.DCT:
            buffer = io.BytesIO()
            try:
                Image.fromarray(pixels).save(
                    buffer,
                    format="JPEG",
                    quality=quality or 75,
                    optimize=True,
                    subsampling=2  # 4:2:0 chroma subsampling
                )
            except (OSError, ValueError) as exc:
                raise CodecFailureError(f"JPEG encoding failed: {exc}") from exc
            data = buffer.getvalue()
        else:
            data = zlib.compress(pixels.tobytes(), 9)
        return EncodedImage(data, codec, raster.width, raster.height, raster.components)

    def resample(self, raster: Raster, width: int, height: int) -> Raster:
        """Box/area-filter resample to the given size."""
        width, height = max(1, int(width)), max(1, int(height))
        if (width, height) == (raster.width, raster.height):
            return raster
        resized = cv2.resize(raster.pixels, (width, height), interpolation=cv2.INTER_AREA)
        return Raster(resized)

    def to_grayscale(self, raster: Raster) -> Raster:
        if raster.components == 1:
            return raster
        return Raster(cv2.cvtColor(raster.pixels, cv2.COLOR_RGB2GRAY))

    def is_grayscale(self, raster: Raster) -> bool:
        return is_grayscale_image(raster.pixels)
