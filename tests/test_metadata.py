import pytest
from PIL import Image
from PIL.PngImagePlugin import PngInfo

from conftest import write_image, xmp_packet
from tag_trainer.data.metadata import MetadataReadError, parse_xmp, read_image_tags


def test_parse_xmp_bags():
    categories, keywords = parse_xmp(
        xmp_packet(keywords=["Cat", "Sofa"], categories=["Animals"]).encode()
    )
    assert categories == ["Animals"]
    assert keywords == ["Cat", "Sofa"]


def test_parse_xmp_malformed():
    with pytest.raises(MetadataReadError):
        parse_xmp(b"<x:xmpmeta><unclosed></x:xmpmeta>")


def test_sidecar_tags(tmp_path):
    path = write_image(tmp_path / "a.jpg", keywords=["beach"], categories=["Travel"])
    categories, keywords = read_image_tags(str(path))
    assert categories == ["Travel"]
    assert keywords == ["beach"]


def test_embedded_xmp_in_png(tmp_path):
    info = PngInfo()
    info.add_itxt("XML:com.adobe.xmp", xmp_packet(keywords=["mountain"]), zip=False)
    path = tmp_path / "b.png"
    Image.new("RGB", (8, 8), (0, 0, 255)).save(str(path), pnginfo=info)
    categories, keywords = read_image_tags(str(path))
    assert keywords == ["mountain"]
    assert categories == []


def test_untagged_and_unreadable(tmp_path):
    path = write_image(tmp_path / "plain.png")
    assert read_image_tags(str(path)) == ([], [])

    broken = tmp_path / "broken.jpg"
    broken.write_bytes(b"definitely not an image")
    assert read_image_tags(str(broken)) == ([], [])

    with pytest.raises(MetadataReadError):
        read_image_tags(str(tmp_path / "missing.jpg"))
