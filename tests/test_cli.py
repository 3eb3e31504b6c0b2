import pytest
from PIL import Image

from optimize_pdf import main, parse_args
from pdf_workbench.config import SaveOptions
from pdf_workbench.document import Document
from pdf_workbench.pipeline import save

from conftest import image_document, make_rgb_image, write_pages_pdf


def _run(argv):
    with pytest.raises(SystemExit) as exit_info:
        main(argv)
    return exit_info.value.code


def _image_pdf(path):
    with image_document(make_rgb_image(300, 300), dpi=600) as document:
        save(document, SaveOptions(garbage_level=1), path)
    return path


def test_parse_args_defaults():
    args = parse_args(["compress", "in.pdf"])
    assert args.quality == "medium"
    assert args.garbage == 4
    assert args.workers == 0


def test_compress_single_file(tmp_path, capsys):
    source = _image_pdf(tmp_path / "scan.pdf")
    output = tmp_path / "small.pdf"
    assert _run(["compress", str(source), "-o", str(output), "--quality", "low"]) == 0
    assert output.exists()
    assert "Reduction" in capsys.readouterr().out


def test_compress_default_output_name(tmp_path):
    source = _image_pdf(tmp_path / "scan.pdf")
    assert _run(["compress", str(source), "-q", "40", "-d", "120", "--keep-lossless"]) == 0
    assert (tmp_path / "scan_compressed.pdf").exists()


def test_compress_batch(tmp_path):
    sources = [_image_pdf(tmp_path / f"doc{i}.pdf") for i in range(2)]
    out_dir = tmp_path / "out"
    assert _run(["compress", *map(str, sources), "--output-dir", str(out_dir), "--workers", "2"]) == 0
    assert sorted(p.name for p in out_dir.iterdir()) == ["doc0_compressed.pdf", "doc1_compressed.pdf"]


def test_compress_rejects_missing_inputs(tmp_path):
    assert _run(["compress", str(tmp_path / "nope.pdf")]) == 1


def test_merge_split_extract(tmp_path):
    first = write_pages_pdf(tmp_path / "a.pdf", [100, 110])
    second = write_pages_pdf(tmp_path / "b.pdf", [200])
    merged = tmp_path / "merged.pdf"
    assert _run(["merge", str(first), str(second), "-o", str(merged)]) == 0
    with Document.open(merged) as document:
        assert document.page_count == 3

    assert _run(["split", str(merged), "--at", "2"]) == 0
    assert (tmp_path / "merged_part1.pdf").exists()
    assert (tmp_path / "merged_part2.pdf").exists()

    assert _run(["extract", str(merged), "--pages", "2-3", "-o", str(tmp_path / "tail.pdf")]) == 0
    with Document.open(tmp_path / "tail.pdf") as document:
        assert document.page_count == 2

    assert _run(["extract", str(merged), "--pages", "x-y"]) == 1
    assert _run(["split", str(merged), "--at", "9"]) == 1


def test_render(tmp_path):
    source = write_pages_pdf(tmp_path / "a.pdf", [100, 200])
    output = tmp_path / "page.png"
    assert _run(["render", str(source), "--page", "2", "--scale", "0.5", "-o", str(output)]) == 0
    with Image.open(output) as image:
        assert image.size == (100, 100)

    assert _run(["render", str(source), "--thumbnail"]) == 0
    with Image.open(tmp_path / "a_p1.png") as image:
        assert max(image.size) == 150
