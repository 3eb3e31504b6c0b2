"""
tools.py - Page tools built on grafting: merge, extract a range, split.

All outputs are saved with garbage level 3 (sweep, merge duplicates,
renumber) and published atomically.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from .config import SaveOptions
from .document import Document
from .errors import InvalidArgumentError
from .graft import GraftMap, graft_page
from .pipeline import save

logger = logging.getLogger(__name__)

TOOLS_GARBAGE_LEVEL = 3


def _tool_options() -> SaveOptions:
    return SaveOptions(garbage_level=TOOLS_GARBAGE_LEVEL)


@dataclass
class MergeResult:
    output_path: Path
    source_count: int
    page_count: int
    output_size: int
    duration: float


@dataclass
class SplitResult:
    """One output file of an extract or split."""
    output_path: Path
    first_page: int
    last_page: int
    output_size: int
    duration: float = 0.0

    @property
    def page_count(self) -> int:
        return self.last_page - self.first_page + 1

    @property
    def page_range(self) -> str:
        if self.first_page == self.last_page:
            return str(self.first_page)
        return f"{self.first_page}-{self.last_page}"


@dataclass
class SplitPair:
    part1: SplitResult
    part2: SplitResult


def merge_pdfs(
    sources: Sequence,
    output_path,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> MergeResult:
    """
    Concatenate the pages of several PDFs.

    Each source gets its own graft map, so objects shared between pages of one
    source are copied once.
    """
    if len(sources) < 2:
        raise InvalidArgumentError("Merging needs at least two documents")
    start_time = time.time()
    output_path = Path(output_path)

    with Document.new() as merged:
        for index, source_path in enumerate(sources):
            if progress_callback:
                progress_callback(index, len(sources))
            with Document.open(source_path) as source:
                graft_map = GraftMap(merged)
                for page_index in range(source.page_count):
                    graft_page(graft_map, merged, -1, source, page_index)
                logger.debug(f"Merged {source.page_count} pages from {Path(source_path).name}")

        result = save(merged, _tool_options(), output_path)
        page_count = merged.page_count
    if progress_callback:
        progress_callback(len(sources), len(sources))

    logger.info(f"Merged {len(sources)} files ({page_count} pages) into {output_path.name}")
    return MergeResult(output_path, len(sources), page_count, result.size, time.time() - start_time)


def _copy_pages(source: Document, indexes: range, output_path: Path) -> int:
    with Document.new() as target:
        graft_map = GraftMap(target)
        for page_index in indexes:
            graft_page(graft_map, target, -1, source, page_index)
        return save(target, _tool_options(), output_path).size


def extract_range(source_path, start: int, end: int, output_path) -> SplitResult:
    """Copy pages ``start``..``end`` (1-based, inclusive) into a new file."""
    start_time = time.time()
    output_path = Path(output_path)
    with Document.open(source_path) as source:
        if not 1 <= start <= end <= source.page_count:
            raise InvalidArgumentError(
                f"Invalid page range {start}-{end} for {source.page_count} pages"
            )
        size = _copy_pages(source, range(start - 1, end), output_path)
    result = SplitResult(output_path, start, end, size, time.time() - start_time)
    logger.info(f"Extracted pages {result.page_range} to {output_path.name}")
    return result


def split_at_page(source_path, split_page: int, output_path1, output_path2) -> SplitPair:
    """
    Split a PDF in two. ``split_page`` (1-based) becomes the first page of part 2.
    """
    start_time = time.time()
    output_path1, output_path2 = Path(output_path1), Path(output_path2)
    with Document.open(source_path) as source:
        page_count = source.page_count
        if page_count < 2:
            raise InvalidArgumentError("Document must have at least 2 pages to split")
        if not 2 <= split_page <= page_count:
            raise InvalidArgumentError(f"Split page {split_page} out of range (2-{page_count})")
        size1 = _copy_pages(source, range(0, split_page - 1), output_path1)
        size2 = _copy_pages(source, range(split_page - 1, page_count), output_path2)

    duration = time.time() - start_time
    part1 = SplitResult(output_path1, 1, split_page - 1, size1, duration)
    part2 = SplitResult(output_path2, split_page, page_count, size2, duration)
    logger.info(f"Split at page {split_page}: {part1.page_range} / {part2.page_range}")
    return SplitPair(part1, part2)
