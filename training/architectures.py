"""
Network topologies for image classification jobs.

Three named architectures, all ending in a ``Dense(K, softmax)`` head:

simple
    Flatten → Dense(128, relu) → Dropout(0.5) → Dense(K)

default (VGG-style)
    [Conv3×3 → Conv3×3 → MaxPool] × {32, 64, 128, 256 filters}
    → Flatten → Dense(512, relu) → Dropout(0.5) → Dense(K)

mobilenet
    Conv3×3/2(32) → BN
    → [DepthwiseConv3×3 → Conv1×1 → BN] × {64/1, 128/2, 128/1, 256/2, 256/1, 512/2}
    → GlobalAveragePooling2D → Dropout(0.2) → Dense(K)

All are compiled with Adam, categorical cross-entropy and accuracy.
"""

from __future__ import annotations

import logging

import tensorflow as tf
from tensorflow.keras.layers import (
    BatchNormalization,
    Conv2D,
    Dense,
    DepthwiseConv2D,
    Dropout,
    Flatten,
    GlobalAveragePooling2D,
    Input,
    MaxPooling2D,
)
from tensorflow.keras.optimizers import Adam

from .config import ARCHITECTURES, InputShape
from .exceptions import ValidationError

logger = logging.getLogger(__name__)

TRAINING_LEARNING_RATE = 1e-4

VGG_FILTERS = (32, 64, 128, 256)
MOBILENET_BLOCKS = ((64, 1), (128, 2), (128, 1), (256, 2), (256, 1), (512, 2))


def _simple(shape: InputShape, num_classes: int) -> tf.keras.Sequential:
    return tf.keras.Sequential([
        Input(shape=shape.hwc),
        Flatten(),
        Dense(128, activation="relu"),
        Dropout(0.5),
        Dense(num_classes, activation="softmax", name="predictions"),
    ], name="simple")


def _vgg(shape: InputShape, num_classes: int) -> tf.keras.Sequential:
    layers = [Input(shape=shape.hwc)]
    for filters in VGG_FILTERS:
        layers += [
            Conv2D(filters, 3, padding="same", activation="relu"),
            Conv2D(filters, 3, padding="same", activation="relu"),
            # "same" keeps tiny inputs from collapsing to zero size
            MaxPooling2D(pool_size=2, strides=2, padding="same"),
        ]
    layers += [
        Flatten(),
        Dense(512, activation="relu"),
        Dropout(0.5),
        Dense(num_classes, activation="softmax", name="predictions"),
    ]
    return tf.keras.Sequential(layers, name="default")


def _mobilenet(shape: InputShape, num_classes: int) -> tf.keras.Sequential:
    layers = [
        Input(shape=shape.hwc),
        Conv2D(32, 3, strides=2, padding="same", activation="relu"),
        BatchNormalization(),
    ]
    for filters, strides in MOBILENET_BLOCKS:
        layers += [
            DepthwiseConv2D(3, strides=strides, padding="same", activation="relu"),
            Conv2D(filters, 1, padding="same", activation="relu"),
            BatchNormalization(),
        ]
    layers += [
        GlobalAveragePooling2D(),
        Dropout(0.2),
        Dense(num_classes, activation="softmax", name="predictions"),
    ]
    return tf.keras.Sequential(layers, name="mobilenet")


_BUILDERS = {
    "simple": _simple,
    "default": _vgg,
    "mobilenet": _mobilenet,
}


def compile_model(model: tf.keras.Model, learning_rate: float | None = None) -> tf.keras.Model:
    """Compile with Adam + categorical cross-entropy + accuracy.

    ``learning_rate=None`` keeps Adam's default (used when loading).
    """
    optimizer = Adam(learning_rate=learning_rate) if learning_rate else Adam()
    model.compile(
        optimizer=optimizer,
        loss=tf.keras.losses.CategoricalCrossentropy(),
        metrics=["accuracy"],
    )
    return model


def build_model(
    architecture: str,
    input_shape: InputShape,
    num_classes: int,
    *,
    for_training: bool = True,
) -> tf.keras.Model:
    """Build and compile one of the named architectures.

    Parameters
    ----------
    architecture : str
        ``simple``, ``default`` or ``mobilenet``.
    input_shape : InputShape
        Image geometry; the network input is ``(h, w, c)``.
    num_classes : int
        Output width K; ``K == 1`` is allowed (softmax is constant 1.0).
    for_training : bool
        Compile with the training learning rate (1e-4) rather than
        Adam's default.

    Raises
    ------
    ValidationError
        On an unknown architecture tag or a non-positive class count.
    """
    if architecture not in ARCHITECTURES:
        raise ValidationError(
            f"Unknown architecture '{architecture}'; expected one of {', '.join(ARCHITECTURES)}"
        )
    if num_classes < 1:
        raise ValidationError("A model needs at least one output class")

    model = _BUILDERS[architecture](input_shape, num_classes)
    compile_model(model, TRAINING_LEARNING_RATE if for_training else None)

    logger.info(
        "Built '%s' model: input %s, %d classes, %d params",
        architecture, input_shape.hwc, num_classes, model.count_params(),
    )
    return model
