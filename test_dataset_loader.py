import logging

import numpy as np
import pytest

from training.config import InputShape, JobConfig
from training.data import (
    BatchSource,
    Sample,
    list_samples,
    prepare_dataset,
    seed_for_job,
    split_samples,
)
from training.exceptions import EmptyDatasetError


def test_list_samples_labels_follow_class_order(image_tree):
    root = image_tree("ds", ["normal", "pneumonia"], train_per_class=3, val_per_class=1)
    samples = list_samples(root, ["normal", "pneumonia"])

    assert len(samples["train"]) == 6
    assert len(samples["validation"]) == 2
    assert {s.label for s in samples["train"] if s.path.parent.name == "normal"} == {0}
    assert {s.label for s in samples["train"] if s.path.parent.name == "pneumonia"} == {1}


def test_list_samples_extension_filter_is_case_insensitive(image_tree):
    root = image_tree("ds", ["a"], train_per_class=1)
    cls = root / "train" / "a"
    (cls / "img_0.png").rename(cls / "UPPER.PNG")
    (cls / "notes.txt").write_text("not an image")
    (cls / "scan.JPEG").write_bytes((cls / "UPPER.PNG").read_bytes())

    names = sorted(s.path.name for s in list_samples(root, ["a"])["train"])
    assert names == ["UPPER.PNG", "scan.JPEG"]


def test_empty_dataset_raises(image_tree):
    root = image_tree("empty", ["normal", "pneumonia"], train_per_class=0)
    with pytest.raises(EmptyDatasetError, match="empty"):
        list_samples(root, ["normal", "pneumonia"])


def _fake_samples(n_train, n_val):
    return {
        "train": [Sample(path=f"t{i}", label=i % 2) for i in range(n_train)],
        "validation": [Sample(path=f"v{i}", label=i % 2) for i in range(n_val)],
    }


def test_existing_validation_split_is_used_as_is():
    train, val = split_samples(_fake_samples(8, 3), 0.5, seed=1)
    assert len(train) == 8 and len(val) == 3
    assert {s.path for s in val} == {"v0", "v1", "v2"}


def test_split_without_validation_cuts_at_floor():
    train, val = split_samples(_fake_samples(10, 0), 0.2, seed=1)
    assert (len(train), len(val)) == (8, 2)

    train, val = split_samples(_fake_samples(7, 0), 0.5, seed=1)
    assert (len(train), len(val)) == (3, 4)


def test_split_keeps_at_least_one_training_sample():
    train, val = split_samples(_fake_samples(1, 0), 0.5, seed=1)
    assert len(train) == 1 and val == []


def test_shuffle_is_deterministic_per_job():
    samples = _fake_samples(20, 0)
    first = split_samples(samples, 0.2, seed_for_job(42))
    second = split_samples(samples, 0.2, seed_for_job(42))
    other = split_samples(samples, 0.2, seed_for_job(43))
    assert first == second
    assert first != other


def test_batch_source_yields_short_last_batch(image_tree):
    root = image_tree("ds", ["a", "b"], train_per_class=5)
    samples = list_samples(root, ["a", "b"])["train"]
    source = BatchSource(samples, 2, InputShape(8, 8, 3), batch_size=4)

    sizes = [xs.shape[0] for xs, ys in source]
    assert len(source) == 3
    assert sizes == [4, 4, 2]
    xs, ys = next(iter(source))
    assert xs.shape == (4, 8, 8, 3)
    assert ys.shape == (4, 2)


def test_batch_source_skips_bad_images_and_logs_once(image_tree, caplog):
    root = image_tree("ds", ["a"], train_per_class=3)
    bad = root / "train" / "a" / "img_1.png"
    bad.write_bytes(b"corrupt")
    source = BatchSource(list_samples(root, ["a"])["train"], 1, InputShape(8, 8, 3), 2)

    with caplog.at_level(logging.WARNING, logger="training.data"):
        first = sum(xs.shape[0] for xs, _ in source)
        second = sum(xs.shape[0] for xs, _ in source)

    assert first == second == 2
    assert source.skipped == 1
    assert sum("Skipping sample" in r.message for r in caplog.records) == 1


def test_cycle_raises_when_nothing_decodes(image_tree):
    root = image_tree("ds", ["a"], train_per_class=2)
    for f in (root / "train" / "a").iterdir():
        f.write_bytes(b"junk")
    source = BatchSource(list_samples(root, ["a"])["train"], 1, InputShape(8, 8, 3), 2)

    with pytest.raises(EmptyDatasetError):
        next(source.cycle())


def test_cycle_repeats_passes(image_tree):
    root = image_tree("ds", ["a"], train_per_class=3)
    source = BatchSource(list_samples(root, ["a"])["train"], 1, InputShape(8, 8, 3), 2)
    batches = source.cycle()
    sizes = [next(batches)[0].shape[0] for _ in range(4)]
    batches.close()
    assert sizes == [2, 1, 2, 1]


def test_prepare_dataset(image_tree):
    root = image_tree("ds", ["normal", "pneumonia"], train_per_class=5)
    config = JobConfig(job_id=7, input_shape=InputShape(8, 8, 1), batch_size=3, validation_split=0.2)
    prepared = prepare_dataset(root, ["normal", "pneumonia"], config)

    assert prepared.class_names == ["normal", "pneumonia"]
    assert prepared.train_count == 8
    assert prepared.val_count == 2
    xs, ys = next(iter(prepared.train))
    assert xs.shape == (3, 8, 8, 1)
    assert np.allclose(ys.sum(axis=1), 1.0)


def test_prepare_dataset_without_classes():
    with pytest.raises(EmptyDatasetError):
        prepare_dataset("/nonexistent", [], JobConfig(job_id=1))
