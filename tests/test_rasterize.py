import numpy as np
import pytest
from PIL import Image

from pdf_workbench.codec import TargetCodec
from pdf_workbench.document import Document
from pdf_workbench.errors import InvalidArgumentError
from pdf_workbench.primitives import PDFName, PDFStream
from pdf_workbench.rasterize import MuPDFInterpreter, Pixmap, Rasterizer, render_page, render_thumbnail

WHITE = (255, 255, 255)


def test_render_size_follows_scale(blank_document):
    pixmap = render_page(blank_document, 0, scale=2)
    assert (pixmap.width, pixmap.height) == (1224, 1584)
    assert pixmap.channels == 3
    assert pixmap.stride == 1224 * 3
    assert len(pixmap.samples) == pixmap.stride * pixmap.height
    assert pixmap.pixel(0, 0) == WHITE
    assert pixmap.pixel(1223, 1583) == WHITE


def test_fractional_scale_rounds_up(blank_document):
    pixmap = render_page(blank_document, 0, scale=0.5005)
    assert (pixmap.width, pixmap.height) == (307, 397)


def test_rotation_swaps_dimensions(blank_document):
    blank_document.page(0)["Rotate"] = 90
    pixmap = render_page(blank_document, 0)
    assert (pixmap.width, pixmap.height) == (792, 612)


def test_filled_rectangle(blank_document):
    blank_document.set_page_content(0, b"1 0 0 rg 100 100 200 200 re f")
    pixmap = render_page(blank_document, 0)
    # Page y runs up, device rows run down
    assert pixmap.pixel(200, 792 - 200) == (255, 0, 0)
    assert pixmap.pixel(50, 50) == WHITE
    assert pixmap.pixel(200, 792 - 350) == WHITE


def test_rotated_page_content_moves(blank_document):
    blank_document.set_page_content(0, b"0 0 1 rg 0 0 100 100 re f")
    blank_document.page(0)["Rotate"] = 90
    pixmap = render_page(blank_document, 0)
    # Bottom-left corner of the page ends up top-left after a clockwise turn
    assert pixmap.pixel(50, 50) == (0, 0, 255)
    assert pixmap.pixel(50, 600) == WHITE


def test_gray_cmyk_and_stroke_colors():
    document = Document.new()
    document.add_blank_page(width=100, height=100)
    document.set_page_content(0, (
        b"0.5 g 0 0 50 50 re f "
        b"0 0 0 1 k 50 50 50 50 re f "
        b"0 1 0 RG 10 w 0 75 m 40 75 l S"
    ))
    pixmap = render_page(document, 0)
    assert pixmap.pixel(25, 75) == (128, 128, 128)
    assert pixmap.pixel(75, 25) == (0, 0, 0)
    assert pixmap.pixel(20, 25) == (0, 255, 0)


def test_clip_limits_painting():
    document = Document.new()
    document.add_blank_page(width=100, height=100)
    document.set_page_content(0, b"q 0 0 50 100 re W n 1 0 0 rg 0 0 100 100 re f Q")
    pixmap = render_page(document, 0)
    assert pixmap.pixel(25, 50) == (255, 0, 0)
    assert pixmap.pixel(75, 50) == WHITE


def test_image_xobject_is_drawn():
    document = Document.new()
    document.add_blank_page(width=100, height=100)
    pixels = np.zeros((4, 4, 3), dtype=np.uint8)
    pixels[:, :, 2] = 255
    document.embed_image(0, pixels, (0, 0, 50, 50), target=TargetCodec.FLATE)
    pixmap = render_page(document, 0)
    assert pixmap.pixel(25, 75) == (0, 0, 255)
    assert pixmap.pixel(75, 25) == WHITE


def test_form_xobject_with_matrix():
    document = Document.new()
    document.add_blank_page(width=100, height=100)
    form = document.store.put(PDFStream({
        "Type": PDFName("XObject"),
        "Subtype": PDFName("Form"),
        "BBox": [0, 0, 10, 10],
        "Matrix": [5, 0, 0, 5, 0, 0],
    }, b"0 1 0 rg 0 0 10 10 re f"))
    document.page(0)["Resources"] = {"XObject": {"Fm0": form}}
    document.set_page_content(0, b"/Fm0 Do 1 0 0 rg 60 60 10 10 re f")
    pixmap = render_page(document, 0)
    assert pixmap.pixel(25, 75) == (0, 255, 0)
    assert pixmap.pixel(65, 35) == (255, 0, 0)


def test_unsupported_operators_are_diagnosed(blank_document):
    blank_document.set_page_content(0, b"BT /F1 12 Tf (hi) Tj ET /Sh0 sh 1 2 frob")
    rasterizer = Rasterizer()
    pixmap = rasterizer.render(blank_document, 0)
    assert pixmap.pixel(0, 0) == WHITE
    assert "text not rendered (x1)" in rasterizer.diagnostics
    assert "shading not rendered (x1)" in rasterizer.diagnostics
    assert "unsupported operator frob (x1)" in rasterizer.diagnostics
    assert pixmap.diagnostics == rasterizer.diagnostics


def test_render_page_reports_skipped_content(blank_document):
    blank_document.set_page_content(0, b"BT /F1 12 Tf (hi) Tj ET /Sh0 sh")
    pixmap = render_page(blank_document, 0)
    assert pixmap.diagnostics == ["shading not rendered (x1)", "text not rendered (x1)"]

    blank_document.set_page_content(0, b"1 0 0 rg 0 0 10 10 re f")
    assert render_page(blank_document, 0).diagnostics == []


def test_alpha_channel(blank_document):
    pixmap = render_page(blank_document, 0, scale=0.25, alpha=True)
    assert pixmap.has_alpha
    assert pixmap.stride == pixmap.width * 4
    assert pixmap.pixel(3, 3) == (255, 255, 255, 255)


def test_thumbnail_fits_square(blank_document):
    pixmap = render_thumbnail(blank_document, 0)
    assert pixmap.height == 150
    assert pixmap.width == 116


@pytest.mark.parametrize("scale", [0, -1, float("inf"), float("nan")])
def test_invalid_scale(blank_document, scale):
    with pytest.raises(InvalidArgumentError):
        render_page(blank_document, 0, scale=scale)


def test_invalid_page_index(blank_document):
    with pytest.raises(InvalidArgumentError):
        render_page(blank_document, 1)


def test_pixmap_png_export(tmp_path):
    array = np.zeros((3, 5, 3), dtype=np.uint8)
    array[1, 2] = (10, 20, 30)
    pixmap = Pixmap.from_array(array)
    assert pixmap.pixel(2, 1) == (10, 20, 30)
    assert np.array_equal(pixmap.to_array(), array)

    path = tmp_path / "out.png"
    pixmap.save_png(path)
    with Image.open(path) as image:
        assert image.size == (5, 3)
        assert image.getpixel((2, 1)) == (10, 20, 30)


def test_mupdf_interpreter_matches_buffer_size(blank_document):
    blank_document.set_page_content(0, b"1 0 0 rg 100 100 200 200 re f")
    pixmap = render_page(blank_document, 0, scale=2, interpreter=MuPDFInterpreter())
    assert (pixmap.width, pixmap.height) == (1224, 1584)
    assert pixmap.pixel(400, 2 * (792 - 200)) == (255, 0, 0)
    assert pixmap.pixel(10, 10) == WHITE
