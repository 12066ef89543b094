"""
metadata.py — Image Tag Metadata Reader
=========================================
Key functions: read_image_tags

PURPOSE:
    Reads the catalog tags stored inside an image file so that local
    folders can be used as a training source:

      - keywords   → XMP dc:subject bag  (+ IPTC 2:25 Keywords)
      - categories → XMP dc:type bag

    A sidecar `<name>.xmp` next to the image is read as well, which is how
    RAW/TIFF workflows usually keep their tags.

NOTES:
    Only reads metadata; writing tags back is handled by the tagging app.
"""

import logging
import os
import xml.etree.ElementTree as ET

from PIL import Image, IptcImagePlugin

logger = logging.getLogger("tag-trainer")

RDF_NS = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"
DC_NS = "http://purl.org/dc/elements/1.1/"

_XMP_START = b"<x:xmpmeta"
_XMP_END = b"</x:xmpmeta>"

# IPTC record 2, dataset 25
_IPTC_KEYWORDS = (2, 25)


class MetadataReadError(OSError):
    """Raised when an image's tag metadata cannot be read or parsed."""


def _extract_xmp_packet(data: bytes) -> bytes | None:
    start = data.find(_XMP_START)
    if start < 0:
        return None
    end = data.find(_XMP_END, start)
    if end < 0:
        return None
    return data[start:end + len(_XMP_END)]


def _xmp_bag(root: ET.Element, tag: str) -> list[str]:
    """Collect every rdf:li value under dc:<tag> (Bag, Seq or Alt)."""
    values = []
    for element in root.iter(f"{{{DC_NS}}}{tag}"):
        items = list(element.iter(f"{{{RDF_NS}}}li"))
        if items:
            values.extend((li.text or "") for li in items)
        elif element.text and element.text.strip():
            values.append(element.text)
    return values


def parse_xmp(packet: bytes) -> tuple[list[str], list[str]]:
    """
    Parse an XMP packet.

    Returns:
        (categories, keywords)
    """
    try:
        root = ET.fromstring(packet)
    except ET.ParseError as e:
        raise MetadataReadError(f"Malformed XMP packet: {e}") from e
    return _xmp_bag(root, "type"), _xmp_bag(root, "subject")


def _read_iptc_keywords(path: str) -> list[str]:
    with Image.open(path) as img:
        info = IptcImagePlugin.getiptcinfo(img) or {}
    raw = info.get(_IPTC_KEYWORDS)
    if raw is None:
        return []
    if isinstance(raw, bytes):
        raw = [raw]
    return [v.decode("utf-8", errors="replace") for v in raw]


def read_image_tags(path: str) -> tuple[list[str], list[str]]:
    """
    Read categories and keywords for one image.

    Args:
        path: Image file path.

    Returns:
        (categories, keywords) — raw strings, not yet normalised.

    Raises:
        MetadataReadError: file missing or metadata unreadable.
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise MetadataReadError(f"Cannot read {path}: {e}") from e

    categories: list[str] = []
    keywords: list[str] = []

    packet = _extract_xmp_packet(data)
    if packet is not None:
        cats, kws = parse_xmp(packet)
        categories.extend(cats)
        keywords.extend(kws)

    sidecar = os.path.splitext(path)[0] + ".xmp"
    if os.path.isfile(sidecar):
        with open(sidecar, "rb") as f:
            side_packet = _extract_xmp_packet(f.read())
        if side_packet is not None:
            cats, kws = parse_xmp(side_packet)
            categories.extend(cats)
            keywords.extend(kws)

    try:
        keywords.extend(_read_iptc_keywords(path))
    except (OSError, SyntaxError):
        # Not an image Pillow can open; XMP tags (if any) are still valid
        logger.debug(f"No IPTC block readable for {path}")

    return categories, keywords
