"""
Image decoding and normalisation shared by training and inference.

Pipeline for a single image::

    bytes / path
      → Pillow decode (JPEG or PNG only)
      → RGB
      → bilinear resize to (w, h)        ← "fill": no crop, aspect may distort
      → luma 0.299·R + 0.587·G + 0.114·B  (only when c == 1)
      → float32 / 255
      → [1, h, w, c]

The same bytes and shape always give bit-identical arrays: every step
is a fixed Pillow / numpy operation with no randomness.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import BinaryIO, Iterable, Sequence, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from .config import InputShape
from .exceptions import DecodeError

logger = logging.getLogger(__name__)

ImageSource = Union[str, Path, bytes, bytearray, BinaryIO]

SUPPORTED_FORMATS = frozenset({"JPEG", "PNG"})
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)


def _describe(source: ImageSource) -> str:
    if isinstance(source, (str, Path)):
        return str(source)
    return getattr(source, "name", None) or "<buffer>"


def _open(source: ImageSource) -> Image.Image:
    if isinstance(source, (bytes, bytearray)):
        return Image.open(io.BytesIO(source))
    if isinstance(source, Path):
        return Image.open(str(source))
    return Image.open(source)


def decode_image(source: ImageSource, shape: InputShape) -> np.ndarray:
    """Decode *source* into a ``(h, w, c)`` float32 array in ``[0, 1]``.

    Raises
    ------
    DecodeError
        If the source is missing, is not JPEG/PNG, or fails to decode.
    """
    where = _describe(source)
    try:
        with _open(source) as img:
            if img.format not in SUPPORTED_FORMATS:
                raise DecodeError(where, f"unsupported format {img.format}")
            rgb = img.convert("RGB").resize(
                (shape.width, shape.height), Image.Resampling.BILINEAR,
            )
            arr = np.asarray(rgb, dtype=np.float32)
    except DecodeError:
        raise
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise DecodeError(where, str(exc)) from exc

    if shape.channels == 1:
        arr = (arr @ LUMA_WEIGHTS)[..., np.newaxis]

    return arr / np.float32(255.0)


def load_image(source: ImageSource, shape: InputShape) -> np.ndarray:
    """Return a batch-ready ``(1, h, w, c)`` float32 array in ``[0, 1]``."""
    return np.expand_dims(decode_image(source, shape), axis=0)


def stack_images(sources: Iterable[ImageSource], shape: InputShape) -> np.ndarray:
    """Decode every source and stack them into ``(N, h, w, c)``.

    Any decode failure propagates; callers that tolerate bad samples
    decode one by one (see ``training.data.BatchSource``).
    """
    arrays = [decode_image(s, shape) for s in sources]
    if not arrays:
        return np.zeros((0, *shape.hwc), dtype=np.float32)
    return np.stack(arrays, axis=0)


def one_hot(labels: Sequence[int], num_classes: int) -> np.ndarray:
    """One-hot encode integer labels into a ``(N, num_classes)`` float32 array."""
    out = np.zeros((len(labels), num_classes), dtype=np.float32)
    out[np.arange(len(labels)), np.asarray(labels, dtype=np.int64)] = 1.0
    return out
