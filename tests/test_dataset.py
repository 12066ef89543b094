import numpy as np
import pytest

from conftest import make_cat_dog_dataset, write_image, write_truncated_jpeg
from tag_trainer.data.dataset import (
    FeatureLabelDataset,
    build_dataloaders,
    build_dataset,
    load_dataset,
    save_dataset,
    split_samples,
)
from tag_trainer.data.sources import LocalFolderItemSource


@pytest.fixture
def cat_dog_folder(tmp_path):
    folder = tmp_path / "images"
    folder.mkdir()
    for i in range(80):
        write_image(folder / f"cat_{i:03d}.jpg", color=(220, 40, 40), keywords=["cat"])
    for i in range(20):
        write_image(folder / f"dog_{i:03d}.jpg", color=(40, 40, 220), keywords=["dog"])
    return folder


def test_cat_dog_assembly(cat_dog_folder, tiny_extractor):
    dataset = build_dataset(LocalFolderItemSource(str(cat_dog_folder)), tiny_extractor)

    assert dict(dataset.vocabulary) == {"cat": 0, "dog": 1}
    assert len(dataset) == 100
    assert dataset.feature_dimension == 4
    assert dataset.label_dimension == 2
    assert dataset.excluded_count == 0
    assert not dataset.cancelled
    for s in dataset.samples:
        assert s.features.shape == (4,)
        expected = [1.0, 0.0] if s.file_name.startswith("cat") else [0.0, 1.0]
        assert s.labels.tolist() == expected
    assert dataset.label_matrix().sum(axis=0).tolist() == [80.0, 20.0]


def test_corrupt_image_is_excluded(tmp_path, tiny_extractor):
    for i in range(49):
        write_image(tmp_path / f"ok_{i:02d}.png", keywords=["beach"])
    (tmp_path / "broken.jpg").write_bytes(b"not an image at all")

    dataset = build_dataset(LocalFolderItemSource(str(tmp_path)), tiny_extractor)
    assert len(dataset) == 49
    assert dataset.excluded_count == 1
    assert "broken.jpg" not in {s.file_name for s in dataset.samples}
    assert "excluded 1" in dataset.summary()


def test_truncated_jpeg_is_excluded(tmp_path, tiny_extractor):
    for i in range(50):
        write_image(tmp_path / f"ok_{i:02d}.png", keywords=["beach"])
    write_truncated_jpeg(tmp_path / "cut.jpg")

    dataset = build_dataset(LocalFolderItemSource(str(tmp_path)), tiny_extractor)
    assert len(dataset) == 50
    assert dataset.excluded_count == 1
    assert "cut.jpg" not in {s.file_name for s in dataset.samples}


def test_assembly_is_reproducible(cat_dog_folder, tiny_extractor):
    source = LocalFolderItemSource(str(cat_dog_folder))
    a = build_dataset(source, tiny_extractor, seed=3)
    b = build_dataset(source, tiny_extractor, seed=3)
    assert [s.file_name for s in a.samples] == [s.file_name for s in b.samples]
    assert np.array_equal(a.label_matrix(), b.label_matrix())
    assert np.allclose(a.feature_matrix(), b.feature_matrix())


def test_untagged_items_get_all_zero_labels(tmp_path, tiny_extractor):
    write_image(tmp_path / "a.png", keywords=["cat"])
    write_image(tmp_path / "b.png")
    dataset = build_dataset(LocalFolderItemSource(str(tmp_path)), tiny_extractor)
    by_name = {s.file_name: s for s in dataset.samples}
    assert by_name["b.png"].labels.tolist() == [0.0]
    assert by_name["a.png"].labels.tolist() == [1.0]


def test_progress_and_cancellation(cat_dog_folder, tiny_extractor):
    calls = []
    polls = {"n": 0}

    def should_cancel():
        polls["n"] += 1
        return polls["n"] > 10

    dataset = build_dataset(
        LocalFolderItemSource(str(cat_dog_folder)), tiny_extractor,
        progress=lambda done, total, msg: calls.append((done, total, msg)),
        should_cancel=should_cancel,
    )
    assert dataset.cancelled
    assert len(dataset) == 10
    assert [c[0] for c in calls] == list(range(1, 11))
    assert all(c[1] == 100 for c in calls)
    assert calls[0][2].startswith("Processed ")
    # The vocabulary still covers every enumerated item
    assert dataset.vocabulary.terms == ["cat", "dog"]


def test_max_items(cat_dog_folder, tiny_extractor):
    dataset = build_dataset(LocalFolderItemSource(str(cat_dog_folder)), tiny_extractor, max_items=5)
    assert len(dataset) == 5
    assert dataset.vocabulary.terms == ["cat"]


def test_save_load_roundtrip(tmp_path, cat_dog_dataset):
    save_dataset(cat_dog_dataset, str(tmp_path / "ds"))
    loaded = load_dataset(str(tmp_path / "ds"))

    assert loaded.vocabulary == cat_dog_dataset.vocabulary
    assert [s.id for s in loaded.samples] == [s.id for s in cat_dog_dataset.samples]
    assert np.array_equal(loaded.feature_matrix(), cat_dog_dataset.feature_matrix())
    assert np.array_equal(loaded.label_matrix(), cat_dog_dataset.label_matrix())
    assert loaded.summary_dict()["sample_count"] == 100


def test_validate_rejects_mismatched_sample(cat_dog_dataset):
    cat_dog_dataset.samples[3].labels = np.zeros(3, dtype=np.float32)
    with pytest.raises(ValueError):
        cat_dog_dataset.validate()


class TestSplitting:

    def test_split_sizes(self, cat_dog_dataset):
        train, val = split_samples(cat_dog_dataset.samples, 0.2)
        assert len(train) == 80
        assert len(val) == 20
        assert val == cat_dog_dataset.samples[80:]

    def test_split_rounds_down(self):
        samples = make_cat_dog_dataset(n_cat=5, n_dog=2).samples
        train, val = split_samples(samples, 0.2)
        assert (len(train), len(val)) == (6, 1)

    def test_dataloaders_keep_order(self, cat_dog_dataset):
        train_loader, val_loader = build_dataloaders(cat_dog_dataset, 0.2, batch_size=16)
        assert len(train_loader) == 5
        assert len(val_loader) == 2
        first = next(iter(train_loader))
        assert tuple(first["features"].shape) == (16, 4)
        assert tuple(first["labels"].shape) == (16, 2)
        assert np.allclose(first["features"][0].numpy(), cat_dog_dataset.samples[0].features)

    def test_tensor_view(self, cat_dog_dataset):
        view = FeatureLabelDataset(cat_dog_dataset.samples[:3])
        assert len(view) == 3
        assert set(view[0]) == {"features", "labels"}
        assert len(FeatureLabelDataset([])) == 0
