"""
pipeline.py - Save pipeline and high-level compression.

Save pipeline (on a working copy of the document):
1. Rewrite images (compress_images)
2. Clean page content streams (clean_content_streams / sanitize)
3. Garbage ladder: 1 sweep, 2 merge duplicates, 3 renumber, 4 xref stream
4. Flate-compress unfiltered streams, font programs and images
5. Serialize and publish atomically
"""

import logging
import multiprocessing
import os
import stat
import tempfile
import threading
import time
import zlib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set

from .codec import ImageCodec
from .compression import ImageRewriteReport, rewrite_images
from .config import CompressionSettings, SaveOptions
from .content import ContentCleanReport, clean_document
from .document import Document
from .errors import IOFailureError, OperationCancelledError, PDFEngineError, SubFailure
from .primitives import PDFReference, PDFStream, is_image_stream
from .serializer import write_pdf

logger = logging.getLogger(__name__)

FONT_FILE_KEYS = ("FontFile", "FontFile2", "FontFile3")


@dataclass
class SaveResult:
    """Outcome of a save: the bytes plus what each stage did."""
    data: bytes = b""
    output_path: Optional[Path] = None
    object_count: int = 0
    objects_removed: int = 0
    objects_merged: int = 0
    streams_compressed: int = 0
    images: Optional[ImageRewriteReport] = None
    content: Optional[ContentCleanReport] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def sub_failures(self) -> List[SubFailure]:
        failures = []
        if self.images is not None:
            failures.extend(self.images.failures)
        if self.content is not None:
            failures.extend(self.content.failures)
        return failures


@dataclass
class CompressionResult:
    """Result of compressing one PDF."""
    input_path: Path
    output_path: Path
    success: bool
    error: Optional[str] = None
    settings_name: str = ""

    page_count: int = 0
    input_size: int = 0
    output_size: int = 0
    duration: float = 0.0

    images_total: int = 0
    images_rewritten: int = 0
    sub_failures: List[SubFailure] = field(default_factory=list)

    @property
    def saved_bytes(self) -> int:
        return max(0, self.input_size - self.output_size)

    @property
    def reduction_pct(self) -> float:
        if self.input_size == 0:
            return 0
        return self.saved_bytes / self.input_size * 100

    def summary(self) -> str:
        return (
            f"Input:  {self.input_path.name} ({self.input_size:,} bytes)\n"
            f"Output: {self.output_path.name} ({self.output_size:,} bytes)\n"
            f"Reduction: {self.reduction_pct:.1f}%\n"
            f"Pages: {self.page_count}\n"
            f"Images: {self.images_rewritten}/{self.images_total} rewritten, "
            f"{len(self.sub_failures)} failed\n"
            f"Time: {self.duration:.1f}s"
        )


def _check_cancel(cancel_event: Optional[threading.Event], stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError(f"Cancelled before {stage}")


def _font_program_ids(store) -> Set[int]:
    ids = set()
    for _, _, value in store.items():
        if isinstance(value, dict) and "FontName" in value:
            for key in FONT_FILE_KEYS:
                ref = value.get(key)
                if isinstance(ref, PDFReference):
                    ids.add(ref.obj_id)
    return ids


def compress_streams(store, options: SaveOptions) -> int:
    """Flate-encode streams that have no filter yet. Returns how many were compressed."""
    fonts = _font_program_ids(store) if options.compress_fonts else set()
    count = 0
    for obj_id, _, value in store.items():
        if not isinstance(value, PDFStream) or value.filters or not value.data:
            continue
        if is_image_stream(value):
            wanted = options.compress_images
        elif obj_id in fonts:
            wanted = True
        else:
            wanted = options.compress_streams
        if not wanted:
            continue
        compressed = zlib.compress(value.data, 9)
        if len(compressed) < len(value.data):
            value.set_encoded(compressed, "FlateDecode")
            count += 1
    return count


def save_to_bytes(
    document: Document,
    options: Optional[SaveOptions] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cancel_event: Optional[threading.Event] = None,
    codec: Optional[ImageCodec] = None,
) -> SaveResult:
    """
    Run the save pipeline and return the serialized file.

    The document itself is not modified; every stage works on a snapshot.
    """
    options = (options or SaveOptions()).validate()
    work = document.snapshot()
    result = SaveResult()

    if options.linearize:
        logger.info("Linearization requested; writing a regular (non-linearized) file")
    if options.regenerate_appearances:
        logger.info("Appearance regeneration requested; existing appearance streams are kept")

    if options.compress_images:
        result.images = rewrite_images(work, options.images, codec, progress_callback, cancel_event)

    _check_cancel(cancel_event, "content cleaning")
    if options.clean_content_streams:
        result.content = clean_document(work, options.sanitize, cancel_event)

    _check_cancel(cancel_event, "compaction")
    store, trailer = work.store, work.trailer
    if options.garbage_level >= 1:
        compaction = store.compact(
            sweep=True,
            dedup=options.garbage_level >= 2,
            renumber=options.garbage_level >= 3,
        )
        store = compaction.store
        trailer = compaction.remap_value(trailer)
        result.objects_removed = compaction.removed
        result.objects_merged = compaction.merged

    result.streams_compressed = compress_streams(store, options)
    result.object_count = len(store)
    result.data = write_pdf(store.items(), trailer, use_xref_stream=options.garbage_level >= 4)

    logger.info(
        f"Serialized {work.page_count} pages, {result.object_count} objects "
        f"(garbage={options.garbage_level}, {result.objects_removed} removed, "
        f"{result.objects_merged} merged): {result.size:,} bytes"
    )
    return result


def _remove_temp(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning(f"Could not remove temporary file {path}: {exc}")


def _current_umask() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return umask


# Read once at import; os.umask() is process-wide
_UMASK = _current_umask()


def _publish_mode(output_path: Path) -> int:
    """Mode for a published file: the target's current mode, else 0o666 minus umask."""
    try:
        return stat.S_IMODE(os.stat(output_path).st_mode)
    except FileNotFoundError:
        return 0o666 & ~_UMASK


def write_atomic(output_path: Path, data: bytes) -> None:
    """Write to a temporary file next to ``output_path`` and rename it into place."""
    output_path = Path(output_path)
    directory = output_path.parent if str(output_path.parent) else Path(".")
    try:
        fd, temp_name = tempfile.mkstemp(prefix=f".{output_path.name}.", suffix=".tmp", dir=directory)
    except OSError as exc:
        raise IOFailureError(f"Cannot write to {directory}: {exc}") from exc
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_name, _publish_mode(output_path))
        os.replace(temp_name, output_path)
    except OSError as exc:
        _remove_temp(temp_name)
        raise IOFailureError(f"Could not write {output_path}: {exc}") from exc


def save(
    document: Document,
    options: Optional[SaveOptions],
    output_path,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cancel_event: Optional[threading.Event] = None,
    codec: Optional[ImageCodec] = None,
) -> SaveResult:
    """Save a document to ``output_path``. Nothing is visible there unless the save succeeds."""
    output_path = Path(output_path)
    result = save_to_bytes(document, options, progress_callback, cancel_event, codec)
    write_atomic(output_path, result.data)
    result.output_path = output_path
    logger.info(f"Saved {document.page_count} pages to {output_path}")
    return result


def compress_pdf(
    input_path: Path,
    output_path: Path,
    settings: Optional[CompressionSettings] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> CompressionResult:
    """
    Compress a PDF file.

    Args:
        input_path: Input PDF
        output_path: Output PDF
        settings: Quality preset or explicit save options (default: medium)
        progress_callback: Optional callback(images processed, total)
        cancel_event: Cooperative cancellation

    Returns:
        CompressionResult; failures are reported on it, not raised
        (except cancellation)
    """
    input_path = Path(input_path)
    output_path = Path(output_path)
    settings = settings or CompressionSettings()

    result = CompressionResult(
        input_path=input_path,
        output_path=output_path,
        success=False,
        settings_name=settings.display_name,
    )

    try:
        start_time = time.time()
        options = settings.to_save_options()

        try:
            result.input_size = input_path.stat().st_size
        except OSError as exc:
            raise IOFailureError(f"Cannot read {input_path}: {exc}") from exc

        with Document.open(input_path) as document:
            result.page_count = document.page_count
            logger.info(
                f"Processing {input_path.name}: {result.page_count} pages, "
                f"{result.input_size:,} bytes, {settings.display_name}"
            )
            saved = save(document, options, output_path, progress_callback, cancel_event)

        result.output_size = len(saved.data)
        result.sub_failures = saved.sub_failures
        if saved.images is not None:
            result.images_total = saved.images.total
            result.images_rewritten = saved.images.rewritten
        result.duration = time.time() - start_time
        result.success = True

        logger.info(f"\n{result.summary()}")

    except OperationCancelledError:
        raise
    except PDFEngineError as e:
        logger.error(f"Compression failed: {e}")
        result.error = str(e)

    return result


def compress_batch(
    jobs: Sequence[tuple],
    settings: Optional[CompressionSettings] = None,
    max_workers: int = 0,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[CompressionResult]:
    """
    Compress many PDFs in parallel, one document per worker.

    Args:
        jobs: (input_path, output_path) pairs
        max_workers: Parallel workers (0 = auto)
        progress_callback: Optional callback(files done, total)

    Returns:
        Results in the same order as ``jobs``
    """
    settings = settings or CompressionSettings()
    if max_workers <= 0:
        max_workers = settings.max_workers or multiprocessing.cpu_count()
    max_workers = max(1, min(max_workers, len(jobs) or 1))

    logger.info(f"Batch: {len(jobs)} files, {max_workers} workers")
    results: List[Optional[CompressionResult]] = [None] * len(jobs)

    if max_workers == 1:
        for index, (input_path, output_path) in enumerate(jobs):
            results[index] = compress_pdf(input_path, output_path, settings, cancel_event=cancel_event)
            if progress_callback:
                progress_callback(index + 1, len(jobs))
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(compress_pdf, input_path, output_path, settings, None, cancel_event): i
                for i, (input_path, output_path) in enumerate(jobs)
            }

            completed = 0
            for future in as_completed(futures):
                results[futures[future]] = future.result()
                completed += 1
                if progress_callback:
                    progress_callback(completed, len(jobs))

    succeeded = sum(1 for r in results if r is not None and r.success)
    logger.info(f"Batch complete: {succeeded}/{len(jobs)} files")
    return results
