import pytest

from pdf_workbench.document import Document
from pdf_workbench.errors import InvalidArgumentError
from pdf_workbench.tools import extract_range, merge_pdfs, split_at_page

from conftest import write_pages_pdf


def _widths(path):
    with Document.open(path) as document:
        return [document.page_size(i)[0] for i in range(document.page_count)]


def test_merge_keeps_source_order(tmp_path):
    first = write_pages_pdf(tmp_path / "a.pdf", [100, 110])
    second = write_pages_pdf(tmp_path / "b.pdf", [200, 210, 220])
    output = tmp_path / "merged.pdf"

    progress = []
    result = merge_pdfs([first, second, first], output, lambda done, total: progress.append((done, total)))
    assert result.source_count == 3
    assert result.page_count == 7
    assert result.output_size == output.stat().st_size
    assert _widths(output) == [100, 110, 200, 210, 220, 100, 110]
    assert progress[-1] == (3, 3)


def test_merge_needs_two_documents(tmp_path):
    only = write_pages_pdf(tmp_path / "a.pdf", [100])
    with pytest.raises(InvalidArgumentError):
        merge_pdfs([only], tmp_path / "merged.pdf")
    assert not (tmp_path / "merged.pdf").exists()


def test_extract_range_is_one_based_inclusive(tmp_path):
    source = write_pages_pdf(tmp_path / "src.pdf", [100, 110, 120, 130, 140])
    result = extract_range(source, 2, 4, tmp_path / "part.pdf")
    assert result.page_range == "2-4"
    assert result.page_count == 3
    assert _widths(tmp_path / "part.pdf") == [110, 120, 130]

    single = extract_range(source, 5, 5, tmp_path / "last.pdf")
    assert single.page_range == "5"
    assert _widths(tmp_path / "last.pdf") == [140]


@pytest.mark.parametrize("start, end", [(0, 2), (3, 2), (1, 6)])
def test_extract_range_rejects_bad_ranges(tmp_path, start, end):
    source = write_pages_pdf(tmp_path / "src.pdf", [100, 110, 120, 130, 140])
    with pytest.raises(InvalidArgumentError):
        extract_range(source, start, end, tmp_path / "part.pdf")


def test_split_at_page(tmp_path):
    source = write_pages_pdf(tmp_path / "src.pdf", [100, 110, 120, 130, 140])
    pair = split_at_page(source, 3, tmp_path / "one.pdf", tmp_path / "two.pdf")
    assert (pair.part1.page_range, pair.part2.page_range) == ("1-2", "3-5")
    assert _widths(tmp_path / "one.pdf") == [100, 110]
    assert _widths(tmp_path / "two.pdf") == [120, 130, 140]


def test_split_rejects_bad_pages(tmp_path):
    source = write_pages_pdf(tmp_path / "src.pdf", [100, 110, 120])
    for split_page in (1, 4):
        with pytest.raises(InvalidArgumentError):
            split_at_page(source, split_page, tmp_path / "one.pdf", tmp_path / "two.pdf")

    single = write_pages_pdf(tmp_path / "single.pdf", [100])
    with pytest.raises(InvalidArgumentError):
        split_at_page(single, 2, tmp_path / "one.pdf", tmp_path / "two.pdf")
