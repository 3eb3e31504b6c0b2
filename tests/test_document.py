import pytest

from pdf_workbench.codec import TargetCodec
from pdf_workbench.config import SaveOptions
from pdf_workbench.document import Document
from pdf_workbench.errors import CorruptPDFError, InvalidArgumentError, IOFailureError
from pdf_workbench.pipeline import save
from pdf_workbench.primitives import PDFName, PDFReference
from pdf_workbench.store import ObjectStore

from conftest import image_stream, make_rgb_image


def _nested_tree_document():
    store = ObjectStore()
    page1 = store.put({"Type": PDFName("Page")})
    page2 = store.put({"Type": PDFName("Page"), "MediaBox": [0, 0, 200, 100]})
    page3 = store.put({"Type": PDFName("Page")})
    middle = store.put({"Type": PDFName("Pages"), "Kids": [page2, page3], "Count": 2, "Rotate": 90})
    root = store.put({
        "Type": PDFName("Pages"),
        "Kids": [page1, middle],
        "Count": 3,
        "MediaBox": [0, 0, 300, 400],
        "Resources": {"ProcSet": [PDFName("PDF")]},
    })
    catalog = store.put({"Type": PDFName("Catalog"), "Pages": root})
    return Document(store, {"Root": catalog}), root


def test_new_document_is_empty():
    with Document.new() as document:
        assert document.page_count == 0
        assert document.catalog["Type"] == PDFName("Catalog")


def test_page_tree_is_flattened_with_inherited_attributes():
    document, root = _nested_tree_document()
    assert document.page_count == 3
    assert document.page_size(0) == (300, 400)
    assert document.page_size(1) == (100, 200)
    assert document.page_size(2) == (400, 300)
    assert document.page_rotation(2) == 90
    assert document.page_resources(2) == {"ProcSet": [PDFName("PDF")]}

    pages_node = document.store.get(root.obj_id)
    assert pages_node["Kids"] == document.pages
    assert pages_node["Count"] == 3
    assert all(document.page(i)["Parent"] == root for i in range(3))


def test_page_tree_loops_terminate():
    store = ObjectStore()
    page = store.put({"Type": PDFName("Page")})
    root = store.put({"Type": PDFName("Pages"), "Count": 1})
    store.get(root.obj_id)["Kids"] = [page, root]
    catalog = store.put({"Type": PDFName("Catalog"), "Pages": root})
    document = Document(store, {"Root": catalog})
    assert document.page_count == 1


def test_missing_media_box_defaults_to_letter():
    document, _ = _nested_tree_document()
    document.page(0).pop("MediaBox")
    assert document.page_box(0) == [0, 0, 612, 792]


def test_crop_box_wins_over_media_box(blank_document):
    blank_document.page(0)["CropBox"] = [10, 10, 110, 60]
    assert blank_document.page_size(0) == (100, 50)


def test_page_index_errors(blank_document):
    for index in (-1, 1, "0"):
        with pytest.raises(InvalidArgumentError):
            blank_document.page(index)


def test_delete_page_range():
    document = Document.new()
    for width in range(10, 110, 10):
        document.add_blank_page(width=width)
    original = list(document.pages)

    document.delete_page_range(2, 5)
    assert document.page_count == 7
    assert document.pages == original[:2] + original[5:]
    assert [document.page_size(i)[0] for i in range(7)] == [10, 20, 60, 70, 80, 90, 100]
    assert document.store.resolve(document.catalog["Pages"])["Count"] == 7

    document.delete_page_range(3, 3)
    assert document.page_count == 7
    for start, end in ((-1, 2), (4, 2), (0, 8)):
        with pytest.raises(InvalidArgumentError):
            document.delete_page_range(start, end)


def test_delete_and_insert_pages(blank_document):
    blank_document.add_blank_page(width=100, height=100, index=0)
    assert blank_document.page_size(0) == (100, 100)
    removed = blank_document.page_ref(0)
    blank_document.delete_page(0)
    assert blank_document.page_count == 1
    assert blank_document.insert_page(-1, removed) == 1
    with pytest.raises(InvalidArgumentError):
        blank_document.insert_page(5, removed)
    with pytest.raises(InvalidArgumentError):
        blank_document.add_blank_page(width=0)


def test_embed_image_adds_xobject_and_content(blank_document):
    pixels = make_rgb_image(20, 10)
    assert blank_document.embed_image(0, pixels, (10, 20, 200, 100), target=TargetCodec.FLATE) == "Im0"
    assert blank_document.embed_image(0, pixels[:, :, 0], (0, 0, 50, 50)) == "Im1"

    flate = image_stream(blank_document, "Im0")
    assert flate.dictionary["Width"] == 20
    assert flate.dictionary["Height"] == 10
    assert flate.dictionary["ColorSpace"] == PDFName("DeviceRGB")
    jpeg = image_stream(blank_document, "Im1")
    assert jpeg.dictionary["ColorSpace"] == PDFName("DeviceGray")
    assert jpeg.dictionary["Filter"] == PDFName("DCTDecode")

    content = blank_document.page_content(0)
    assert b"200.0000 0 0 100.0000 10.0000 20.0000 cm\n/Im0 Do" in content
    assert b"/Im1 Do" in content
    assert len(blank_document.content_refs(0)) == 2


def test_snapshot_is_independent(blank_document):
    copy = blank_document.snapshot()
    assert copy.uid != blank_document.uid
    copy.add_blank_page()
    copy.page(0)["Rotate"] = 90
    assert blank_document.page_count == 1
    assert "Rotate" not in blank_document.page(0)


def test_close_releases_the_document(blank_document):
    blank_document.close()
    assert blank_document.closed
    with pytest.raises(InvalidArgumentError):
        blank_document.page(0)
    with pytest.raises(InvalidArgumentError):
        blank_document.snapshot()


def test_open_round_trip(tmp_path):
    path = tmp_path / "doc.pdf"
    with Document.new() as document:
        document.add_blank_page(width=300, height=200)
        document.page(0)["Rotate"] = 270
        save(document, SaveOptions(garbage_level=4), path)

    with Document.open(path) as reopened:
        assert reopened.path == path
        assert reopened.page_count == 1
        assert reopened.page_size(0) == (200, 300)
        assert isinstance(reopened.trailer["Root"], PDFReference)


def test_open_errors(tmp_path):
    with pytest.raises(IOFailureError):
        Document.open(tmp_path / "nope.pdf")
    with pytest.raises(CorruptPDFError):
        Document.from_bytes(b"%PDF-1.4\nnothing useful here")
