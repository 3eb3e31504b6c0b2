import pytest

from pdf_workbench.codec import TargetCodec
from pdf_workbench.config import ImageRewriteConfig
from pdf_workbench.document import Document
from pdf_workbench.errors import InvalidArgumentError
from pdf_workbench.planner import (
    ImageInfo,
    ImageRewritePlan,
    UnsupportedImage,
    collect_image_placements,
    inspect_image,
    plan_image_rewrite,
)
from pdf_workbench.primitives import PDFName, PDFReference, PDFStream, PDFString
from pdf_workbench.store import ObjectStore

from conftest import image_document, image_stream, make_rgb_image


def _info(lossy=False, **overrides):
    values = dict(
        obj_id=7,
        width=600,
        height=400,
        bits_per_component=8,
        components=3,
        color_space="DeviceRGB",
        filters=["DCTDecode"] if lossy else ["FlateDecode"],
        lossy=lossy,
    )
    values.update(overrides)
    return ImageInfo(**values)


def _image(**entries):
    dictionary = {
        "Type": PDFName("XObject"),
        "Subtype": PDFName("Image"),
        "Width": 10,
        "Height": 10,
        "ColorSpace": PDFName("DeviceRGB"),
        "BitsPerComponent": 8,
        "Filter": PDFName("FlateDecode"),
    }
    dictionary.update(entries)
    return PDFStream(dictionary, b"")


def test_threshold_is_target_plus_headroom():
    config = ImageRewriteConfig(target_dpi=150, dpi_headroom=50)

    plan = plan_image_rewrite(_info(lossy=True), 600, config)
    assert plan.actionable
    assert plan.recompress
    assert plan.target_codec is TargetCodec.DCT
    assert plan.quality == config.jpeg_quality
    assert plan.downsample_to_dpi == 150

    plan = plan_image_rewrite(_info(lossy=True), 180, config)
    assert not plan.actionable
    assert "180" in plan.reason

    assert not plan_image_rewrite(_info(), 200, config).actionable
    assert plan_image_rewrite(_info(), 200.5, config).actionable


def test_unplaced_images_are_skipped():
    plan = plan_image_rewrite(_info(), None, ImageRewriteConfig())
    assert not plan.actionable
    assert plan.reason == "not placed on any page"


def test_lossless_conversion_flag():
    config = ImageRewriteConfig(target_dpi=100)
    plan = plan_image_rewrite(_info(), 600, config)
    assert plan.target_codec is TargetCodec.DCT
    assert plan.recompress

    config = ImageRewriteConfig(target_dpi=100, convert_lossless=False)
    plan = plan_image_rewrite(_info(), 600, config)
    assert plan.target_codec is TargetCodec.FLATE
    assert not plan.recompress
    assert plan.quality is None
    assert plan.downsample_to_dpi == 100


def test_flags_switch_off_actions():
    only_recompress = ImageRewriteConfig(downsample=False)
    plan = plan_image_rewrite(_info(lossy=True), 600, only_recompress)
    assert plan.recompress and plan.downsample_to_dpi is None

    nothing = ImageRewriteConfig(downsample=False, recompress=False)
    assert not plan_image_rewrite(_info(lossy=True), 600, nothing).actionable

    lossless_no_downsample = ImageRewriteConfig(downsample=False, convert_lossless=False)
    assert not plan_image_rewrite(_info(), 600, lossless_no_downsample).actionable


def test_target_size():
    plan = ImageRewritePlan(True, TargetCodec.DCT, 50, 150, effective_dpi=600)
    assert plan.target_size(600, 400) == (150, 100)
    assert ImageRewritePlan.skip("x").target_size(600, 400) == (600, 400)


def test_config_validation():
    with pytest.raises(InvalidArgumentError):
        ImageRewriteConfig(jpeg_quality=0).validate()
    with pytest.raises(InvalidArgumentError):
        ImageRewriteConfig(target_dpi=0).validate()
    assert ImageRewriteConfig().dpi_threshold == 150


def test_inspect_image_describes_supported_images():
    store = ObjectStore()
    info = inspect_image(_image(), store, 3)
    assert (info.obj_id, info.width, info.components, info.lossy) == (3, 10, 3, False)

    info = inspect_image(_image(Filter=PDFName("DCTDecode")), store)
    assert info.lossy

    palette = _image(
        ColorSpace=[PDFName("Indexed"), PDFName("DeviceRGB"), 1, PDFString(bytes(6))],
        BitsPerComponent=1,
    )
    info = inspect_image(palette, store)
    assert info.palette == bytes(6)
    assert info.palette_components == 3
    assert info.components == 1

    profile = store.put(PDFStream({"N": 3}, b""))
    info = inspect_image(_image(ColorSpace=[PDFName("ICCBased"), profile]), store)
    assert info.is_icc and info.components == 3


@pytest.mark.parametrize("entries", [
    {"ImageMask": True},
    {"Mask": [0, 10]},
    {"Decode": [1, 0]},
    {"Filter": PDFName("JBIG2Decode")},
    {"Filter": PDFName("CCITTFaxDecode")},
    {"Filter": PDFName("JPXDecode")},
    {"Filter": PDFName("LZWDecode")},
    {"Filter": [PDFName("DCTDecode"), PDFName("FlateDecode")]},
    {"ColorSpace": PDFName("DeviceCMYK")},
    {"BitsPerComponent": 16},
    {"Width": 0},
])
def test_inspect_image_rejects_unsupported(entries):
    with pytest.raises(UnsupportedImage):
        inspect_image(_image(**entries), ObjectStore())


def test_placement_dpi_from_content():
    document = image_document(make_rgb_image(300, 300), dpi=300)
    ref = document.page_resources(0)["XObject"]["Im0"]
    placements = collect_image_placements(document)
    assert placements[ref.obj_id] == pytest.approx(300)


def test_largest_placement_wins():
    document = image_document(make_rgb_image(300, 300), dpi=300)
    ref = document.page_resources(0)["XObject"]["Im0"]
    document.set_page_content(0, b"q 72 0 0 72 0 0 cm /Im0 Do Q q 144 0 0 144 0 0 cm /Im0 Do Q")
    assert collect_image_placements(document)[ref.obj_id] == pytest.approx(150)


def test_placement_through_form_xobject():
    document = image_document(make_rgb_image(300, 300), dpi=300)
    image_ref = document.page_resources(0)["XObject"]["Im0"]
    form = document.store.put(PDFStream({
        "Type": PDFName("XObject"),
        "Subtype": PDFName("Form"),
        "BBox": [0, 0, 1, 1],
        "Matrix": [2, 0, 0, 2, 0, 0],
        "Resources": {"XObject": {"Im0": image_ref}},
    }, b"36 0 0 36 0 0 cm /Im0 Do"))
    document.page_resources(0)["XObject"] = {"Fm0": form}
    document.set_page_content(0, b"/Fm0 Do")
    assert collect_image_placements(document)[image_ref.obj_id] == pytest.approx(300)


def test_self_referencing_form_terminates():
    document = Document.new()
    document.add_blank_page()
    form = document.store.put(PDFStream({"Subtype": PDFName("Form")}, b"/Fm0 Do"))
    form_stream = document.store.get(form.obj_id)
    form_stream.dictionary["Resources"] = {"XObject": {"Fm0": PDFReference(form.obj_id)}}
    document.page(0)["Resources"] = {"XObject": {"Fm0": form}}
    document.set_page_content(0, b"/Fm0 Do")
    assert collect_image_placements(document) == {}


def test_planning_does_not_touch_the_store():
    document = image_document(make_rgb_image(60, 60), dpi=600)
    stream = image_stream(document)
    before = (dict(stream.dictionary), stream.data)
    ref = document.page_resources(0)["XObject"]["Im0"]
    info = inspect_image(stream, document.store, ref.obj_id)
    plan = plan_image_rewrite(info, collect_image_placements(document)[ref.obj_id], ImageRewriteConfig())
    assert plan.actionable
    assert (stream.dictionary, stream.data) == before
