"""
compression.py - Image recompression.

Applies the planner's decisions to image XObjects:
- decode through the codec adapter
- downsample to the target DPI (area filter)
- collapse effectively-gray images to DeviceGray
- re-encode as JPEG or Flate and swap the payload in place

One broken image never stops the run; its CodecFailureError becomes a
SubFailure on the report.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .codec import ImageCodec
from .config import ImageRewriteConfig
from .errors import CodecFailureError, OperationCancelledError, SubFailure
from .planner import (
    ImageInfo,
    ImageRewritePlan,
    UnsupportedImage,
    collect_image_placements,
    inspect_image,
    plan_image_rewrite,
)
from .primitives import PDFName, PDFStream, is_image_stream

logger = logging.getLogger(__name__)


@dataclass
class ImageRewriteResult:
    """What happened to one image."""
    obj_id: int
    rewritten: bool
    original_size: int = 0
    new_size: int = 0
    original_dims: tuple = (0, 0)
    new_dims: tuple = (0, 0)
    reason: str = ""


@dataclass
class ImageRewriteReport:
    total: int = 0
    rewritten: int = 0
    skipped: int = 0
    bytes_before: int = 0
    bytes_after: int = 0
    failures: List[SubFailure] = field(default_factory=list)
    results: List[ImageRewriteResult] = field(default_factory=list)

    @property
    def saved_bytes(self) -> int:
        return self.bytes_before - self.bytes_after


def rewrite_image(
    stream: PDFStream,
    info: ImageInfo,
    plan: ImageRewritePlan,
    codec: ImageCodec,
    config: ImageRewriteConfig,
) -> ImageRewriteResult:
    """
    Rewrite a single image stream according to its plan.

    The stream is only touched when the image was downsampled or the new
    encoding is smaller.
    """
    chain = list(zip(stream.filters, stream.decode_parms))
    raster = codec.decode(stream.data, chain, info.layout)
    original_dims = (raster.width, raster.height)
    result = ImageRewriteResult(info.obj_id, False, len(stream.data), len(stream.data), original_dims, original_dims)

    width, height = plan.target_size(raster.width, raster.height)
    downsampled = (width, height) != original_dims
    raster = codec.resample(raster, width, height)

    if config.detect_grayscale and raster.components == 3 and codec.is_grayscale(raster):
        raster = codec.to_grayscale(raster)

    encoded = codec.encode(raster, plan.target_codec, plan.quality)
    if not downsampled and len(encoded.data) >= len(stream.data):
        result.reason = "re-encoding would not reduce size"
        return result

    stream.set_encoded(encoded.data, encoded.codec.value)
    d = stream.dictionary
    d["Width"] = encoded.width
    d["Height"] = encoded.height
    d["BitsPerComponent"] = 8
    if not (info.is_icc and encoded.components == info.components):
        d["ColorSpace"] = PDFName(encoded.color_space)

    result.rewritten = True
    result.new_size = len(encoded.data)
    result.new_dims = (encoded.width, encoded.height)
    logger.debug(
        f"Image {info.obj_id}: {original_dims[0]}x{original_dims[1]} -> "
        f"{encoded.width}x{encoded.height} | {result.original_size:,} -> "
        f"{result.new_size:,} bytes | {encoded.codec.name} q={plan.quality}"
    )
    return result


def rewrite_images(
    document,
    config: ImageRewriteConfig,
    codec: Optional[ImageCodec] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ImageRewriteReport:
    """
    Rewrite every image XObject of a document in place.

    Args:
        document: Document to modify
        config: Image rewrite policy
        codec: Codec adapter (default ImageCodec)
        progress_callback: Optional callback(images processed, total)
        cancel_event: Checked between images

    Returns:
        ImageRewriteReport with per-image results and sub-failures
    """
    config.validate()
    codec = codec or ImageCodec()
    store = document.store
    placements = collect_image_placements(document)
    image_ids = [obj_id for obj_id, _, value in store.items() if is_image_stream(value)]

    report = ImageRewriteReport(total=len(image_ids))
    for count, obj_id in enumerate(image_ids, start=1):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"Cancelled after {count - 1} of {len(image_ids)} images")

        stream = store.get(obj_id)
        try:
            info = inspect_image(stream, store, obj_id)
            plan = plan_image_rewrite(info, placements.get(obj_id), config)
            if not plan.actionable:
                result = ImageRewriteResult(obj_id, False, len(stream.data), len(stream.data), reason=plan.reason)
            else:
                result = rewrite_image(stream, info, plan, codec, config)
        except UnsupportedImage as exc:
            result = ImageRewriteResult(obj_id, False, len(stream.data), len(stream.data), reason=str(exc))
        except CodecFailureError as exc:
            logger.warning(f"Image {obj_id} failed: {exc}")
            report.failures.append(SubFailure.from_exception(obj_id, exc))
            result = ImageRewriteResult(obj_id, False, len(stream.data), len(stream.data), reason=str(exc))

        report.results.append(result)
        report.bytes_before += result.original_size
        report.bytes_after += result.new_size
        if result.rewritten:
            report.rewritten += 1
        else:
            report.skipped += 1
            if result.reason:
                logger.debug(f"Image {obj_id} kept: {result.reason}")

        if progress_callback:
            progress_callback(count, len(image_ids))

    logger.info(
        f"Images: {report.rewritten}/{report.total} rewritten, "
        f"{len(report.failures)} failed, {report.bytes_before:,} -> {report.bytes_after:,} bytes"
    )
    return report
