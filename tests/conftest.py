from __future__ import annotations

from pathlib import Path
from typing import Sequence

import numpy as np
import pytest

from pdf_workbench.codec import TargetCodec
from pdf_workbench.config import SaveOptions
from pdf_workbench.document import Document
from pdf_workbench.pipeline import save


def make_rgb_image(width: int, height: int, seed: int = 0) -> np.ndarray:
    """Colorful gradient with a little noise, so JPEG has something to chew on."""
    rng = np.random.default_rng(seed)
    y, x = np.mgrid[0:height, 0:width]
    pixels = np.stack([
        x * 255 // max(1, width - 1),
        y * 255 // max(1, height - 1),
        np.full_like(x, 128),
    ], axis=2)
    noise = rng.integers(0, 24, size=pixels.shape)
    return np.clip(pixels + noise, 0, 255).astype(np.uint8)


def image_document(pixels: np.ndarray, dpi: float, target: TargetCodec = TargetCodec.FLATE) -> Document:
    """One US letter page with ``pixels`` drawn at ``dpi``."""
    document = Document.new()
    document.add_blank_page()
    height, width = pixels.shape[:2]
    document.embed_image(0, pixels, (36, 36, width * 72.0 / dpi, height * 72.0 / dpi), target=target)
    return document


def image_stream(document: Document, name: str = "Im0", page_index: int = 0):
    xobjects = document.store.resolve(document.page_resources(page_index)["XObject"])
    return document.store.resolve(xobjects[name])


def write_pages_pdf(path: Path, widths: Sequence[float]) -> Path:
    """A PDF whose page i is ``widths[i]`` points wide, to tell pages apart."""
    with Document.new() as document:
        for width in widths:
            document.add_blank_page(width=width, height=200)
        save(document, SaveOptions(garbage_level=1), path)
    return path


@pytest.fixture
def blank_document():
    document = Document.new()
    document.add_blank_page()
    yield document
    document.close()
