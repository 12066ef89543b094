import os

import pandas as pd
import pytest

from conftest import write_image
from tag_trainer.data.sources import (
    CatalogItemSource,
    LocalFolderItemSource,
    ManifestItemSource,
    build_item_source,
)


class FakeCatalogClient:
    """In-memory stand-in for a DAM catalog connection."""

    def __init__(self, media_items, paths):
        self.media_items = media_items
        self.paths = paths
        self.queries = []

    def search_media_items(self, query, max_items):
        self.queries.append(query)
        return self.media_items

    def get_absolute_paths(self, item_ids):
        return {str(i): self.paths[i] for i in item_ids if i in self.paths}


@pytest.fixture
def image_folder(tmp_path):
    write_image(tmp_path / "b.JPG", keywords=["dog"])
    write_image(tmp_path / "a.png", keywords=["cat"], categories=["Animals"])
    (tmp_path / "notes.txt").write_text("not an image")
    sub = tmp_path / "sub"
    sub.mkdir()
    write_image(sub / "c.webp", keywords=["bird"])
    return tmp_path


class TestLocalFolderItemSource:

    def test_lists_supported_files_recursively(self, image_folder):
        source = LocalFolderItemSource(str(image_folder))
        names = [os.path.relpath(p, image_folder) for p in source.list_image_files()]
        assert names == ["a.png", "b.JPG", os.path.join("sub", "c.webp")]

    def test_without_subfolders(self, image_folder):
        source = LocalFolderItemSource(str(image_folder), include_subfolders=False)
        assert len(source.list_image_files()) == 2
        assert len(list(source.iter_items(include_subfolders=True))) == 3

    def test_items_carry_tags(self, image_folder):
        items = list(LocalFolderItemSource(str(image_folder)).iter_items())
        first = items[0]
        assert first.file_name == "a.png"
        assert first.categories == ["Animals"]
        assert first.keywords == ["cat"]
        assert first.tags == ["Animals", "cat"]

    def test_max_items(self, image_folder):
        items = list(LocalFolderItemSource(str(image_folder)).iter_items(max_items=2))
        assert [i.file_name for i in items] == ["a.png", "b.JPG"]

    def test_missing_folder(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            list(LocalFolderItemSource(str(tmp_path / "nope")).iter_items())


def test_manifest_source(tmp_path):
    write_image(tmp_path / "one.jpg")
    pd.DataFrame({
        "id": [10, 11],
        "file_path": ["one.jpg", "/absolute/two.jpg"],
        "categories": ["Animals", None],
        "keywords": ["cat; sofa", "dog|beach"],
    }).to_csv(tmp_path / "manifest.csv", index=False)

    items = list(ManifestItemSource(str(tmp_path / "manifest.csv")).iter_items())
    assert [i.item_id for i in items] == [10, 11]
    assert items[0].file_path == os.path.join(str(tmp_path), "one.jpg")
    assert items[0].categories == ["Animals"]
    assert items[0].keywords == ["cat", "sofa"]
    assert items[1].file_path == "/absolute/two.jpg"
    assert items[1].categories == []
    assert items[1].keywords == ["dog", "beach"]


def test_manifest_requires_file_path(tmp_path):
    pd.DataFrame({"name": ["x"]}).to_csv(tmp_path / "bad.csv", index=False)
    with pytest.raises(ValueError):
        list(ManifestItemSource(str(tmp_path / "bad.csv")).iter_items())


class TestCatalogItemSource:

    def test_collection_query_and_resolution(self, tmp_path):
        path = write_image(tmp_path / "x.jpg", keywords=["sunset"])
        client = FakeCatalogClient(
            media_items=[{"id": 1, "fileName": "x.jpg"}, {"id": 2, "fileName": "gone.jpg"}],
            paths={1: str(path)},
        )
        source = CatalogItemSource(client, query="ignored", collection_id=7)
        items = list(source.iter_items())

        assert client.queries == ["12,7"]
        assert items[0].file_path == str(path)
        assert items[0].keywords == ["sunset"]
        assert items[1].file_path is None
        assert items[1].display_name == "gone.jpg"

    def test_free_text_query(self):
        client = FakeCatalogClient(media_items=[], paths={})
        assert list(CatalogItemSource(client, query="beach").iter_items()) == []
        assert client.queries == ["5000,beach"]


def test_build_item_source(tmp_path):
    assert isinstance(build_item_source({"folder": str(tmp_path)}), LocalFolderItemSource)
    assert isinstance(
        build_item_source({"source": "manifest", "manifest": "m.csv"}), ManifestItemSource
    )
    with pytest.raises(ValueError):
        build_item_source({"source": "catalog"})
    with pytest.raises(ValueError):
        build_item_source({"source": "ftp"})
