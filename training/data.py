"""
Dataset loading from the on-disk ``split/class/`` tree.

A dataset root looks like::

    root/train/<class>/*.jpg|jpeg|png
    root/validation/<class>/*.jpg|jpeg|png

Labels are the index of the class in the dataset's ordered class list.
Samples are shuffled with a permutation seeded from the job id, so a
replayed job sees exactly the same order.  Decoding happens lazily in
``BatchSource`` one batch at a time; only the current batch is held in
memory.

Public API
----------
list_samples     – Labelled sample index for both splits.
seed_for_job     – Stable shuffle seed derived from a job id.
split_samples    – Shuffle + train/validation split.
BatchSource      – Iterable of ``(xs, ys)`` batches over a sample list.
prepare_dataset  – All of the above for one ``Dataset`` + ``JobConfig``.
"""

from __future__ import annotations

import logging
import math
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .config import (
    TRAIN_SPLIT_NAME,
    VALIDATION_SPLIT_NAME,
    InputShape,
    JobConfig,
)
from .exceptions import DecodeError, EmptyDatasetError
from .images import decode_image, one_hot

logger = logging.getLogger(__name__)

IMG_EXTS = frozenset({".jpg", ".jpeg", ".png"})


@dataclass(frozen=True)
class Sample:
    path: Path
    label: int


@dataclass
class PreparedDataset:
    """Result of ``prepare_dataset``: class list plus both batch sources."""

    class_names: List[str]
    train: "BatchSource"
    validation: Optional["BatchSource"]

    @property
    def train_count(self) -> int:
        return len(self.train.samples)

    @property
    def val_count(self) -> int:
        return len(self.validation.samples) if self.validation else 0


# ═══════════════════════════════════════════════════════════════════════════
# Indexing & splitting
# ═══════════════════════════════════════════════════════════════════════════

def _list_class_dir(directory: Path) -> List[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        f for f in directory.iterdir()
        if f.is_file() and f.suffix.lower() in IMG_EXTS
    )


def list_samples(root: Path, class_names: Sequence[str]) -> Dict[str, List[Sample]]:
    """Index every image under ``root/{train,validation}/<class>/``.

    Returns
    -------
    dict
        ``{"train": [Sample, ...], "validation": [Sample, ...]}``.

    Raises
    ------
    EmptyDatasetError
        If neither split contains a single image.
    """
    root = Path(root)
    samples: Dict[str, List[Sample]] = {TRAIN_SPLIT_NAME: [], VALIDATION_SPLIT_NAME: []}

    for label, class_name in enumerate(class_names):
        for split in (TRAIN_SPLIT_NAME, VALIDATION_SPLIT_NAME):
            files = _list_class_dir(root / split / class_name)
            samples[split].extend(Sample(path=f, label=label) for f in files)

    n_train = len(samples[TRAIN_SPLIT_NAME])
    n_val = len(samples[VALIDATION_SPLIT_NAME])
    if n_train + n_val == 0:
        raise EmptyDatasetError(
            f"Dataset is empty: no jpg/jpeg/png images under {root} "
            f"for classes {list(class_names)}"
        )

    logger.info(
        "Indexed %s: %d train / %d validation images, %d classes",
        root, n_train, n_val, len(class_names),
    )
    return samples


def seed_for_job(job_id) -> int:
    """Stable 32-bit shuffle seed for a job id."""
    return zlib.crc32(str(job_id).encode("utf-8")) & 0xFFFFFFFF


def split_samples(
    samples: Dict[str, List[Sample]],
    validation_split: float,
    seed: int,
) -> Tuple[List[Sample], List[Sample]]:
    """Shuffle and split into ``(train, validation)``.

    If both splits are populated on disk they are used as-is (each
    shuffled).  Otherwise every sample is shuffled together and cut at
    ``floor(N * (1 - validation_split))``, keeping at least one training
    sample.
    """
    rng = np.random.default_rng(seed)
    train = samples.get(TRAIN_SPLIT_NAME, [])
    validation = samples.get(VALIDATION_SPLIT_NAME, [])

    if train and validation:
        return (
            [train[i] for i in rng.permutation(len(train))],
            [validation[i] for i in rng.permutation(len(validation))],
        )

    pool = train + validation
    shuffled = [pool[i] for i in rng.permutation(len(pool))]
    boundary = max(1, math.floor(len(shuffled) * (1 - validation_split)))
    return shuffled[:boundary], shuffled[boundary:]


# ═══════════════════════════════════════════════════════════════════════════
# Batching
# ═══════════════════════════════════════════════════════════════════════════

class BatchSource:
    """Batches of decoded images and one-hot labels over a fixed sample list.

    Iterating gives one exhaustive pass.  ``cycle()`` repeats passes
    forever for the training loop.  Images that fail to decode are
    logged once, remembered, and skipped; a batch is yielded as long as
    at least one of its samples decoded.
    """

    def __init__(
        self,
        samples: Sequence[Sample],
        num_classes: int,
        shape: InputShape,
        batch_size: int,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.samples = list(samples)
        self.num_classes = num_classes
        self.shape = shape
        self.batch_size = batch_size
        self._bad_paths: set = set()

    def __len__(self) -> int:
        """Number of batches in one pass (``ceil(n / batch_size)``)."""
        return math.ceil(len(self.samples) / self.batch_size)

    @property
    def skipped(self) -> int:
        return len(self._bad_paths)

    def _decode_chunk(self, chunk: Sequence[Sample]) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        images: List[np.ndarray] = []
        labels: List[int] = []
        for sample in chunk:
            if sample.path in self._bad_paths:
                continue
            try:
                images.append(decode_image(sample.path, self.shape))
            except DecodeError as exc:
                self._bad_paths.add(sample.path)
                logger.warning("Skipping sample: %s", exc)
                continue
            labels.append(sample.label)

        if not images:
            return None
        xs = np.stack(images, axis=0)
        ys = one_hot(labels, self.num_classes)
        del images
        return xs, ys

    def __iter__(self) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
        for start in range(0, len(self.samples), self.batch_size):
            batch = self._decode_chunk(self.samples[start:start + self.batch_size])
            if batch is not None:
                yield batch

    def cycle(self) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
        """Repeat passes forever.

        Raises
        ------
        EmptyDatasetError
            If a complete pass produces no decodable image.
        """
        while True:
            produced = False
            for batch in self:
                produced = True
                yield batch
            if not produced:
                raise EmptyDatasetError(
                    f"Dataset is empty: none of {len(self.samples)} samples could be decoded"
                )


# ═══════════════════════════════════════════════════════════════════════════
# One-call preparation
# ═══════════════════════════════════════════════════════════════════════════

def prepare_dataset(root: Path, class_names: Sequence[str], config: JobConfig) -> PreparedDataset:
    """Index, shuffle, split and wrap a dataset for one training job.

    Raises
    ------
    EmptyDatasetError
        If the dataset has no classes or no images.
    """
    if not class_names:
        raise EmptyDatasetError("Dataset is empty: it defines no classes")

    samples = list_samples(root, class_names)
    train, validation = split_samples(
        samples, config.validation_split, seed_for_job(config.job_id),
    )

    num_classes = len(class_names)
    prepared = PreparedDataset(
        class_names=list(class_names),
        train=BatchSource(train, num_classes, config.input_shape, config.batch_size),
        validation=(
            BatchSource(validation, num_classes, config.input_shape, config.batch_size)
            if validation else None
        ),
    )

    logger.info(
        "Prepared dataset for job %s — train=%d, validation=%d, batch=%d",
        config.job_id, prepared.train_count, prepared.val_count, config.batch_size,
    )
    return prepared
