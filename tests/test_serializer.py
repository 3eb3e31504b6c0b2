import pytest

from pdf_workbench.primitives import PDFName, PDFReference, PDFStream, PDFString
from pdf_workbench.reader import parse_pdf
from pdf_workbench.serializer import encode_name, encode_string, format_number, serialize, write_pdf


def test_encode_name_escapes_delimiters_and_spaces():
    assert encode_name("Type") == b"/Type"
    assert encode_name("A B") == b"/A#20B"
    assert encode_name("a/b#") == b"/a#2Fb#23"


def test_encode_string_escapes():
    assert encode_string(PDFString(b"a(b)c\\")) == b"(a\\(b\\)c\\\\)"
    assert encode_string(PDFString(b"\n\x01")) == b"(\\n\\001)"
    assert encode_string(PDFString(b"\x00\xff", is_hex=True)) == b"<00FF>"


@pytest.mark.parametrize("value, expected", [
    (3, "3"),
    (1.5, "1.5"),
    (2.0, "2"),
    (-0.0000001, "0"),
    (0.1234567, "0.123457"),
    (float("nan"), "0"),
])
def test_format_number(value, expected):
    assert format_number(value) == expected


def test_serialize_nested_values():
    value = {
        "Type": PDFName("Annot"),
        "Rect": [0, 0, 10.5, 20],
        "P": PDFReference(4, 1),
        "Open": False,
        "Parent": None,
    }
    assert serialize(value) == b"<</Type /Annot /Rect [0 0 10.5 20] /P 4 1 R /Open false /Parent null>>"


def test_serialize_sorted_keys_with_custom_references():
    value = {"B": PDFReference(9), "A": 1}
    assert serialize(value, lambda ref: b"0 0 R", sort_keys=True) == b"<</A 1 /B 0 0 R>>"


def test_serialize_rejects_unknown_types():
    with pytest.raises(TypeError):
        serialize(object())


def _objects():
    return [
        (1, 0, {"Type": PDFName("Catalog"), "Pages": PDFReference(2)}),
        (2, 0, {"Type": PDFName("Pages"), "Kids": [PDFReference(4)], "Count": 1}),
        (3, 0, PDFStream({}, b"0 0 m 10 10 l S")),
        (4, 0, {
            "Type": PDFName("Page"),
            "Parent": PDFReference(2),
            "MediaBox": [0, 0, 612, 792],
            "Contents": PDFReference(3),
            "Title": PDFString(b"(hello)"),
            "Odd Name": PDFName("x y"),
        }),
        (6, 0, {"Skipped": 5}),
    ]


@pytest.mark.parametrize("use_xref_stream", [False, True])
def test_write_pdf_reads_back(use_xref_stream):
    data = write_pdf(_objects(), {"Root": PDFReference(1)}, use_xref_stream=use_xref_stream)
    assert data.startswith(b"%PDF-1.7")
    assert data.rstrip().endswith(b"%%EOF")
    if use_xref_stream:
        assert b"/XRef" in data and b"/ObjStm" in data
    else:
        assert b"\nxref\n0 7\n" in data

    store, trailer = parse_pdf(data)
    assert trailer["Root"] == PDFReference(1)
    assert store.get(3).data == b"0 0 m 10 10 l S"
    page = store.get(4)
    assert page["Title"] == PDFString(b"(hello)")
    assert page["Odd Name"] == PDFName("x y")
    assert page["MediaBox"] == [0, 0, 612, 792]
    assert 5 not in store
