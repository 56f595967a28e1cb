import numpy as np
import pytest

from training.architectures import TRAINING_LEARNING_RATE, build_model
from training.config import InputShape
from training.exceptions import ValidationError


@pytest.mark.parametrize("architecture", ["simple", "default", "mobilenet"])
def test_output_width_matches_class_count(architecture):
    shape = InputShape(16, 16, 3)
    model = build_model(architecture, shape, num_classes=3)

    assert model.output_shape == (None, 3)
    probs = model.predict_on_batch(np.zeros((2, 16, 16, 3), dtype=np.float32))
    assert np.allclose(np.asarray(probs).sum(axis=1), 1.0, atol=1e-5)


def test_grayscale_input_shape():
    model = build_model("default", InputShape(width=20, height=12, channels=1), num_classes=2)
    assert model.input_shape == (None, 12, 20, 1)


def test_simple_layer_stack():
    model = build_model("simple", InputShape(8, 8, 3), num_classes=2)
    kinds = [type(layer).__name__ for layer in model.layers]
    assert kinds == ["Flatten", "Dense", "Dropout", "Dense"]
    assert model.layers[1].units == 128
    assert model.layers[-1].name == "predictions"


def test_default_has_four_conv_blocks():
    model = build_model("default", InputShape(16, 16, 3), num_classes=2)
    convs = [layer.filters for layer in model.layers if type(layer).__name__ == "Conv2D"]
    assert convs == [32, 32, 64, 64, 128, 128, 256, 256]


def test_mobilenet_has_six_separable_blocks():
    model = build_model("mobilenet", InputShape(32, 32, 3), num_classes=2)
    depthwise = [l for l in model.layers if type(l).__name__ == "DepthwiseConv2D"]
    pointwise = [l.filters for l in model.layers if type(l).__name__ == "Conv2D"][1:]
    assert len(depthwise) == 6
    assert pointwise == [64, 128, 128, 256, 256, 512]


def test_training_learning_rate():
    model = build_model("simple", InputShape(8, 8, 3), num_classes=2)
    assert float(np.asarray(model.optimizer.learning_rate)) == pytest.approx(TRAINING_LEARNING_RATE)


def test_single_class_output_is_constant_one():
    model = build_model("simple", InputShape(8, 8, 3), num_classes=1)
    probs = np.asarray(model.predict_on_batch(np.random.rand(3, 8, 8, 3).astype(np.float32)))
    assert probs.shape == (3, 1)
    assert np.allclose(probs, 1.0)


def test_unknown_architecture_is_rejected():
    with pytest.raises(ValidationError):
        build_model("resnet", InputShape(8, 8, 3), num_classes=2)
    with pytest.raises(ValidationError):
        build_model("simple", InputShape(8, 8, 3), num_classes=0)
