import json
import threading

import numpy as np
import pytest

from training.config import InputShape
from training.data import BatchSource, PreparedDataset, list_samples
from training.evaluate import evaluate_model
from training.exceptions import Cancelled, EmptyDatasetError
from training.train import TrainingLoop


class ScriptedModel:
    """Stand-in for a compiled Keras model that records every call."""

    def __init__(self, on_step=None):
        self.train_calls = 0
        self.test_calls = 0
        self.resets = 0
        self.on_step = on_step

    def reset_metrics(self):
        self.resets += 1

    def train_on_batch(self, xs, ys, return_dict=False):
        self.train_calls += 1
        if self.on_step is not None:
            self.on_step(self.train_calls)
        return {"loss": 1.0 / self.train_calls, "accuracy": 0.5}

    def test_on_batch(self, xs, ys, return_dict=False):
        self.test_calls += 1
        return {"loss": 0.25, "accuracy": 0.75}

    def predict_on_batch(self, xs):
        # Perfect classifier for the two-colour fixture: dark → 0, bright → 1
        bright = xs.reshape(len(xs), -1).mean(axis=1) > 0.5
        out = np.zeros((len(xs), 2), dtype=np.float32)
        out[np.arange(len(xs)), bright.astype(int)] = 1.0
        return out


@pytest.fixture
def prepared(image_tree):
    root = image_tree("ds", ["normal", "pneumonia"], train_per_class=5, val_per_class=2)
    samples = list_samples(root, ["normal", "pneumonia"])
    shape = InputShape(8, 8, 3)
    return PreparedDataset(
        class_names=["normal", "pneumonia"],
        train=BatchSource(samples["train"], 2, shape, batch_size=4),
        validation=BatchSource(samples["validation"], 2, shape, batch_size=4),
    )


def test_runs_ceil_steps_per_epoch_and_one_event_per_epoch(prepared):
    model = ScriptedModel()
    events = []
    result = TrainingLoop(model, prepared, epochs=3, on_epoch=events.append).run()

    assert model.train_calls == 3 * 3          # ceil(10 / 4) steps per epoch
    assert model.test_calls == 3 * 1           # ceil(4 / 4) validation batches
    assert [e.epoch for e in events] == [1, 2, 3]
    assert all(e.total_epochs == 3 for e in events)
    assert len(result.history) == 3
    assert result.final.val_loss == pytest.approx(0.25)
    assert result.final.val_accuracy == pytest.approx(0.75)
    # epoch mean of the per-step losses 1/7, 1/8, 1/9
    assert result.final.train_loss == pytest.approx(np.mean([1 / 7, 1 / 8, 1 / 9]))


def test_single_epoch_emits_exactly_one_event(prepared):
    events = []
    TrainingLoop(ScriptedModel(), prepared, epochs=1, on_epoch=events.append).run()
    assert len(events) == 1
    assert events[0].epoch == 1


def test_no_validation_source_leaves_val_metrics_empty(prepared):
    prepared.validation = None
    result = TrainingLoop(ScriptedModel(), prepared, epochs=1).run()
    assert result.final.val_loss is None
    assert result.final.val_accuracy is None


def test_cancel_is_seen_at_next_step_boundary(prepared):
    cancel = threading.Event()

    def on_step(n):
        if n == 2:
            cancel.set()

    model = ScriptedModel(on_step=on_step)
    events = []
    with pytest.raises(Cancelled):
        TrainingLoop(model, prepared, epochs=5, cancel_event=cancel, on_epoch=events.append).run()

    assert model.train_calls == 2
    assert events == []


def test_cancel_before_start_runs_no_steps(prepared):
    cancel = threading.Event()
    cancel.set()
    model = ScriptedModel()
    with pytest.raises(Cancelled):
        TrainingLoop(model, prepared, epochs=2, cancel_event=cancel).run()
    assert model.train_calls == 0


def test_real_model_trains_on_tiny_dataset(prepared):
    from training.architectures import build_model

    model = build_model("simple", InputShape(8, 8, 3), num_classes=2)
    result = TrainingLoop(model, prepared, epochs=2).run()

    assert [m.epoch for m in result.history] == [1, 2]
    assert all(np.isfinite(m.train_loss) for m in result.history)
    assert 0.0 <= result.final.val_accuracy <= 1.0
    assert result.training_time > 0


def test_evaluate_model_writes_metrics_and_confusion_matrix(prepared, tmp_path):
    metrics = evaluate_model(ScriptedModel(), prepared.train, prepared.class_names, tmp_path)

    assert metrics["accuracy"] == 1.0
    assert metrics["macro_f1"] == 1.0
    assert metrics["samples"] == 10
    assert metrics["confusion_matrix"] == [[5, 0], [0, 5]]
    assert [c["class"] for c in metrics["per_class"]] == ["normal", "pneumonia"]
    assert (tmp_path / "confusion_matrix.png").stat().st_size > 0
    assert json.loads((tmp_path / "metrics.json").read_text())["accuracy"] == 1.0


def test_concurrent_evaluations_each_write_their_plot(prepared, tmp_path):
    errors = []

    def evaluate(index):
        try:
            evaluate_model(ScriptedModel(), prepared.train, prepared.class_names, tmp_path / str(index))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=evaluate, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    for i in range(4):
        assert (tmp_path / str(i) / "confusion_matrix.png").read_bytes().startswith(b"\x89PNG")


def test_evaluate_model_with_nothing_decodable(image_tree):
    root = image_tree("bad", ["a"], train_per_class=2)
    for f in (root / "train" / "a").iterdir():
        f.write_bytes(b"junk")
    source = BatchSource(list_samples(root, ["a"])["train"], 1, InputShape(8, 8, 3), 2)
    with pytest.raises(EmptyDatasetError):
        evaluate_model(ScriptedModel(), source, ["a"])
