"""
sources.py — Item Sources for Dataset Assembly
================================================
Key classes: SourceItem, LocalFolderItemSource, ManifestItemSource,
             CatalogItemSource

PURPOSE:
    Every origin of training images (a local folder, an exported catalog
    manifest, or a live catalog query) is exposed through the same small
    capability: `iter_items(max_items, include_subfolders)` yields
    `SourceItem(file_path, categories, keywords)`.  The dataset assembler
    therefore has exactly one implementation regardless of origin.

NOTES:
    - Metadata failures never abort enumeration: the item is yielded with no
      tags and a warning is logged.
    - The `max_items` cap is applied here, before vocabulary construction.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Iterator, Protocol

import pandas as pd

from tag_trainer.data.metadata import MetadataReadError, read_image_tags

logger = logging.getLogger("tag-trainer")

SUPPORTED_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".tiff", ".tif", ".gif", ".webp")

# Separators accepted inside a manifest's categories / keywords cells
_MANIFEST_SEPARATORS = (";", "|")


@dataclass
class SourceItem:
    """One candidate image with its raw (un-normalised) tag strings."""

    file_path: str | None
    categories: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    item_id: int | None = None
    file_name: str | None = None

    @property
    def tags(self) -> list[str]:
        return list(self.categories) + list(self.keywords)

    @property
    def display_name(self) -> str:
        if self.file_name:
            return self.file_name
        if self.file_path:
            return os.path.basename(self.file_path)
        return f"item {self.item_id}"


class ItemSource(Protocol):
    """Anything that can enumerate candidate items for dataset assembly."""

    def iter_items(
        self, max_items: int | None = None, include_subfolders: bool | None = None,
    ) -> Iterator[SourceItem]:
        ...

    def describe(self) -> str:
        ...


def _read_tags_or_warn(path: str) -> tuple[list[str], list[str]]:
    try:
        return read_image_tags(path)
    except MetadataReadError as e:
        logger.warning(f"Could not read metadata for {path}: {e}")
        return [], []


def _capped(items, max_items):
    if max_items is None or max_items <= 0:
        yield from items
        return
    for i, item in enumerate(items):
        if i >= max_items:
            return
        yield item


# ──────────────────────────────────────────────────────────────
# Local folder
# ──────────────────────────────────────────────────────────────

class LocalFolderItemSource:
    """Images on disk, tags read from embedded / sidecar XMP metadata."""

    def __init__(self, folder: str, include_subfolders: bool = True):
        self.folder = folder
        self.include_subfolders = include_subfolders

    def describe(self) -> str:
        return f"local:{self.folder}"

    def list_image_files(self, include_subfolders: bool | None = None) -> list[str]:
        """Sorted list of supported image files (extension match is case-insensitive)."""
        if not os.path.isdir(self.folder):
            raise FileNotFoundError(f"Folder not found: {self.folder}")
        recursive = self.include_subfolders if include_subfolders is None else include_subfolders

        files = []
        if recursive:
            for root, dirs, names in os.walk(self.folder):
                dirs.sort()
                for name in names:
                    if name.lower().endswith(SUPPORTED_EXTENSIONS):
                        files.append(os.path.join(root, name))
        else:
            for name in os.listdir(self.folder):
                full = os.path.join(self.folder, name)
                if os.path.isfile(full) and name.lower().endswith(SUPPORTED_EXTENSIONS):
                    files.append(full)
        return sorted(files)

    def iter_items(self, max_items=None, include_subfolders=None):
        files = self.list_image_files(include_subfolders)
        logger.info(f"Found {len(files):,} image files in {self.folder}")
        for path in _capped(files, max_items):
            categories, keywords = _read_tags_or_warn(path)
            yield SourceItem(
                file_path=path,
                categories=categories,
                keywords=keywords,
                file_name=os.path.basename(path),
            )


# ──────────────────────────────────────────────────────────────
# CSV manifest (catalog export)
# ──────────────────────────────────────────────────────────────

def _split_cell(value) -> list[str]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return []
    text = str(value)
    for sep in _MANIFEST_SEPARATORS[1:]:
        text = text.replace(sep, _MANIFEST_SEPARATORS[0])
    return [part.strip() for part in text.split(_MANIFEST_SEPARATORS[0]) if part.strip()]


class ManifestItemSource:
    """
    A catalog export in CSV form.

    Required column: file_path.  Optional: id, file_name, categories,
    keywords (multiple values separated by ';' or '|').  Relative paths are
    resolved against the manifest's directory.
    """

    def __init__(self, csv_path: str):
        self.csv_path = csv_path

    def describe(self) -> str:
        return f"manifest:{self.csv_path}"

    def iter_items(self, max_items=None, include_subfolders=None):
        df = pd.read_csv(self.csv_path, dtype={"file_path": str})
        if "file_path" not in df.columns:
            raise ValueError(f"Manifest {self.csv_path} has no 'file_path' column")
        base_dir = os.path.dirname(os.path.abspath(self.csv_path))
        logger.info(f"Manifest {self.csv_path}: {len(df):,} rows")

        for row in _capped(df.to_dict("records"), max_items):
            path = row.get("file_path")
            if isinstance(path, str) and path and not os.path.isabs(path):
                path = os.path.join(base_dir, path)
            elif not isinstance(path, str) or not path:
                path = None
            item_id = row.get("id")
            yield SourceItem(
                file_path=path,
                categories=_split_cell(row.get("categories")),
                keywords=_split_cell(row.get("keywords")),
                item_id=int(item_id) if item_id is not None and not pd.isna(item_id) else None,
                file_name=row.get("file_name") if isinstance(row.get("file_name"), str) else None,
            )


# ──────────────────────────────────────────────────────────────
# Live catalog
# ──────────────────────────────────────────────────────────────

class CatalogClient(Protocol):
    """The two catalog calls dataset assembly needs."""

    def search_media_items(self, query: str, max_items: int | None) -> list[dict]:
        """Return items as dicts with at least 'id' and 'fileName'."""
        ...

    def get_absolute_paths(self, item_ids: list[int]) -> dict[str, str]:
        """Map str(item id) → absolute file path."""
        ...


class CatalogItemSource:
    """
    Items from a DAM catalog query or collection.

    Exactly one of `query` (free-text search) or `collection_id` is used;
    the collection takes precedence.  Tags are read from the file at the
    resolved path, the same way as for local folders.
    """

    def __init__(self, client: CatalogClient, query: str = "", collection_id: int | None = None):
        self.client = client
        self.query = query
        self.collection_id = collection_id

    def describe(self) -> str:
        if self.collection_id is not None:
            return f"catalog:collection={self.collection_id}"
        return f"catalog:query={self.query!r}"

    def _search_expression(self) -> str:
        # Catalog tag ids: 12 = collections, 5000 = free-text search
        if self.collection_id is not None:
            return f"12,{self.collection_id}"
        return f"5000,{self.query}"

    def iter_items(self, max_items=None, include_subfolders=None):
        media_items = self.client.search_media_items(self._search_expression(), max_items) or []
        if not media_items:
            logger.warning(f"No media items found for {self.describe()}")
            return
        media_items = list(_capped(media_items, max_items))

        ids = [int(m["id"]) for m in media_items]
        paths = self.client.get_absolute_paths(ids) or {}
        if not paths:
            logger.warning("Failed to get file paths from the catalog; items cannot be resolved.")

        for media in media_items:
            item_id = int(media["id"])
            path = paths.get(str(item_id))
            file_name = media.get("fileName") or media.get("file_name")
            if not path or not os.path.isfile(path):
                logger.warning(f"File not found for media item {item_id}: {file_name}")
                yield SourceItem(file_path=None, item_id=item_id, file_name=file_name)
                continue
            categories, keywords = _read_tags_or_warn(path)
            yield SourceItem(
                file_path=path,
                categories=categories,
                keywords=keywords,
                item_id=item_id,
                file_name=file_name,
            )


def build_item_source(extraction_cfg: dict, client: CatalogClient | None = None) -> ItemSource:
    """Create the item source described by the `extraction` config section."""
    kind = extraction_cfg.get("source", "local")
    if kind == "local":
        return LocalFolderItemSource(
            extraction_cfg["folder"],
            include_subfolders=extraction_cfg.get("include_subfolders", True),
        )
    if kind == "manifest":
        return ManifestItemSource(extraction_cfg["manifest"])
    if kind == "catalog":
        if client is None:
            raise ValueError("source 'catalog' needs a catalog client")
        return CatalogItemSource(
            client,
            query=extraction_cfg.get("query", ""),
            collection_id=extraction_cfg.get("collection_id"),
        )
    raise ValueError(f"Unknown extraction source: {kind!r}")
