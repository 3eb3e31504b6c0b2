#!/usr/bin/env python3
"""
optimize_pdf.py - PDF compression and page tools CLI.

Usage:
    python optimize_pdf.py compress input.pdf -o output.pdf
    python optimize_pdf.py compress *.pdf --output-dir ./compressed/ --quality low
    python optimize_pdf.py merge a.pdf b.pdf -o merged.pdf
    python optimize_pdf.py split input.pdf --at 5
    python optimize_pdf.py extract input.pdf --pages 3-7 -o excerpt.pdf
    python optimize_pdf.py render input.pdf --page 1 --scale 2 -o page1.png
"""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from pdf_workbench.config import CompressionQuality, CompressionSettings, SaveOptions
from pdf_workbench.document import Document
from pdf_workbench.errors import PDFEngineError
from pdf_workbench.pipeline import compress_batch, compress_pdf
from pdf_workbench.rasterize import MuPDFInterpreter, render_page, render_thumbnail
from pdf_workbench.tools import extract_range, merge_pdfs, split_at_page


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Shrink PDFs by recompressing images and compacting the file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Quality presets:
  low     JPEG 30%, 72 DPI   (smallest files)
  medium  JPEG 50%, 100 DPI  (default)
  high    JPEG 70%, 150 DPI  (better quality)

Images drawn at more than target DPI + 50 are downsampled; lossless images
that qualify are converted to JPEG unless --keep-lossless is given.
"""
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    compress = commands.add_parser("compress", help="Compress one or more PDFs")
    compress.add_argument("input", nargs="+", type=Path, help="Input PDF file(s)")
    output = compress.add_mutually_exclusive_group()
    output.add_argument("-o", "--output", type=Path, help="Output file (single input only)")
    output.add_argument("--output-dir", type=Path, help="Output directory (for multiple files)")
    compress.add_argument(
        "--quality",
        choices=[q.value for q in CompressionQuality],
        default=CompressionQuality.MEDIUM.value,
        help="Quality preset (default: medium)"
    )
    compress.add_argument("-q", "--jpeg-quality", type=int, help="JPEG quality 1-100 (overrides preset)")
    compress.add_argument("-d", "--dpi", type=int, help="Target image DPI (overrides preset)")
    compress.add_argument("-g", "--garbage", type=int, default=4, help="Garbage level 0-4 (default: 4)")
    compress.add_argument("--keep-lossless", action="store_true", help="Never convert lossless images to JPEG")
    compress.add_argument("--no-clean", action="store_true", help="Leave content streams untouched")
    compress.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Parallel workers for batches (0 = auto)"
    )

    merge = commands.add_parser("merge", help="Merge PDFs in the given order")
    merge.add_argument("input", nargs="+", type=Path, help="Input PDF files")
    merge.add_argument("-o", "--output", type=Path, required=True, help="Output file")

    split = commands.add_parser("split", help="Split a PDF in two")
    split.add_argument("input", type=Path, help="Input PDF")
    split.add_argument("--at", type=int, required=True, help="First page of part 2 (1-based)")
    split.add_argument("--output-dir", type=Path, help="Output directory (default: next to input)")

    extract = commands.add_parser("extract", help="Extract a page range")
    extract.add_argument("input", type=Path, help="Input PDF")
    extract.add_argument("--pages", required=True, help="Page range, e.g. 3-7 or 4 (1-based)")
    extract.add_argument("-o", "--output", type=Path, help="Output file")

    render = commands.add_parser("render", help="Render a page to PNG")
    render.add_argument("input", type=Path, help="Input PDF")
    render.add_argument("--page", type=int, default=1, help="Page number (1-based, default: 1)")
    render.add_argument("--scale", type=float, default=1.0, help="Zoom factor (default: 1.0)")
    render.add_argument("--thumbnail", action="store_true", help="Render a 150px thumbnail")
    render.add_argument("--mupdf", action="store_true", help="Render with MuPDF")
    render.add_argument("-o", "--output", type=Path, help="Output PNG")

    return parser.parse_args(argv)


def print_progress(current: int, total: int):
    """Print progress bar."""
    if total <= 0:
        return
    width = 40
    filled = int(width * current / total)
    bar = "=" * filled + "-" * (width - filled)
    pct = current / total * 100
    print(f"\r[{bar}] {current}/{total} ({pct:.0f}%)", end="", file=sys.stderr)
    if current == total:
        print(file=sys.stderr)


def _valid_pdfs(paths):
    valid_inputs = []
    for p in paths:
        if not p.exists():
            print(f"Error: File not found: {p}", file=sys.stderr)
            continue
        if p.suffix.lower() != ".pdf":
            print(f"Warning: Skipping non-PDF: {p}", file=sys.stderr)
            continue
        valid_inputs.append(p)
    return valid_inputs


def _settings(args) -> CompressionSettings:
    quality = CompressionQuality(args.quality)
    options = SaveOptions.for_quality(quality)
    options.garbage_level = args.garbage
    options.clean_content_streams = not args.no_clean
    options.sanitize = not args.no_clean
    options.images = replace(
        options.images,
        jpeg_quality=args.jpeg_quality if args.jpeg_quality is not None else options.images.jpeg_quality,
        target_dpi=args.dpi if args.dpi is not None else options.images.target_dpi,
        convert_lossless=not args.keep_lossless,
    )
    customized = (
        args.jpeg_quality is not None or args.dpi is not None or args.garbage != 4
        or args.keep_lossless or args.no_clean
    )
    return CompressionSettings(quality=quality, options=options if customized else None, max_workers=args.workers)


def cmd_compress(args) -> int:
    valid_inputs = _valid_pdfs(args.input)
    if not valid_inputs:
        print("Error: No valid PDF files", file=sys.stderr)
        return 1

    if len(valid_inputs) > 1 and args.output:
        print("Error: Use --output-dir for multiple files", file=sys.stderr)
        return 1

    settings = _settings(args)

    # Process single file
    if len(valid_inputs) == 1 and not args.output_dir:
        input_path = valid_inputs[0]
        output_path = args.output or input_path.with_stem(input_path.stem + "_compressed")

        result = compress_pdf(input_path, output_path, settings, progress_callback=print_progress)
        if result.success:
            print(f"\n{result.summary()}")
            for failure in result.sub_failures:
                print(f"Warning: {failure}", file=sys.stderr)
            return 0
        print(f"Error: {result.error}", file=sys.stderr)
        return 1

    # Batch processing
    output_dir = args.output_dir or Path(".")
    output_dir.mkdir(parents=True, exist_ok=True)
    jobs = [(p, output_dir / f"{p.stem}_compressed.pdf") for p in valid_inputs]
    results = compress_batch(jobs, settings, max_workers=args.workers, progress_callback=print_progress)

    total_in = sum(r.input_size for r in results)
    total_out = sum(r.output_size for r in results if r.success)
    successes = sum(1 for r in results if r.success)
    for result in results:
        if not result.success:
            print(f"Error: {result.input_path.name}: {result.error}", file=sys.stderr)

    print(f"\n{'='*50}")
    print(f"Batch complete: {successes}/{len(valid_inputs)} files")
    print(f"Total: {total_in:,} -> {total_out:,} bytes")
    if total_in > 0:
        print(f"Reduction: {(1 - total_out/total_in)*100:.1f}%")
    return 0 if successes == len(valid_inputs) else 1


def cmd_merge(args) -> int:
    valid_inputs = _valid_pdfs(args.input)
    if len(valid_inputs) < 2:
        print("Error: Need at least two PDF files to merge", file=sys.stderr)
        return 1
    result = merge_pdfs(valid_inputs, args.output, progress_callback=print_progress)
    print(f"Merged {result.source_count} files, {result.page_count} pages -> "
          f"{result.output_path} ({result.output_size:,} bytes)")
    return 0


def cmd_split(args) -> int:
    output_dir = args.output_dir or args.input.parent
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = args.input.stem
    pair = split_at_page(
        args.input,
        args.at,
        output_dir / f"{stem}_part1.pdf",
        output_dir / f"{stem}_part2.pdf",
    )
    for part in (pair.part1, pair.part2):
        print(f"Pages {part.page_range} -> {part.output_path} ({part.output_size:,} bytes)")
    return 0


def _parse_range(text: str):
    start, _, end = text.partition("-")
    try:
        first = int(start)
        last = int(end) if end else first
    except ValueError:
        raise PDFEngineError(f"Invalid page range: {text}") from None
    return first, last


def cmd_extract(args) -> int:
    first, last = _parse_range(args.pages)
    output_path = args.output or args.input.with_stem(f"{args.input.stem}_p{args.pages}")
    result = extract_range(args.input, first, last, output_path)
    print(f"Pages {result.page_range} -> {result.output_path} ({result.output_size:,} bytes)")
    return 0


def cmd_render(args) -> int:
    interpreter = MuPDFInterpreter() if args.mupdf else None
    output_path = args.output or args.input.with_name(f"{args.input.stem}_p{args.page}.png")
    with Document.open(args.input) as document:
        if args.thumbnail:
            pixmap = render_thumbnail(document, args.page - 1, interpreter=interpreter)
        else:
            pixmap = render_page(document, args.page - 1, args.scale, interpreter=interpreter)
    pixmap.save_png(output_path)
    print(f"Page {args.page}: {pixmap.width}x{pixmap.height} -> {output_path}")
    for diagnostic in pixmap.diagnostics:
        print(f"Warning: {diagnostic}", file=sys.stderr)
    return 0


COMMANDS = {
    "compress": cmd_compress,
    "merge": cmd_merge,
    "split": cmd_split,
    "extract": cmd_extract,
    "render": cmd_render,
}


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbose)
    try:
        code = COMMANDS[args.command](args)
    except PDFEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
