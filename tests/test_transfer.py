import numpy as np
import pytest
import torch.nn as nn

import speech_commands
from speech_commands import SpectrogramData, TransferLearnConfig, array_source
from speech_commands.model import find_hidden_dense_layer

FRAMES, BINS = 43, 232


@pytest.fixture
def base(model_dir):
    rec = speech_commands.create(model_dir=model_dir)
    rec.ensure_model_loaded()
    return rec


def _examples(seed: int, count: int, offset: float) -> list[np.ndarray]:
    rng = np.random.default_rng(seed)
    return [rng.normal(offset, 1.0, size=(FRAMES, BINS)).astype(np.float32) for _ in range(count)]


@pytest.fixture
def transfer(base):
    rec = base.create_transfer("colors")
    for example in _examples(0, 4, 0.0):
        rec.add_example("red", example)
    for example in _examples(1, 4, 3.0):
        rec.add_example("blue", example)
    return rec


class RecordingCallback:
    def __init__(self):
        self.events = []

    def on_train_begin(self):
        self.events.append("begin")

    def on_epoch_end(self, epoch, logs):
        self.events.append(("epoch", epoch, sorted(logs)))

    def on_train_end(self, history):
        self.events.append("end")


def test_create_transfer_requires_loaded_model_and_unique_name(model_dir, base):
    with pytest.raises(RuntimeError, match="not been loaded"):
        speech_commands.create(model_dir=model_dir).create_transfer("x")
    with pytest.raises(ValueError, match="non-empty string"):
        base.create_transfer("")

    base.create_transfer("x")
    with pytest.raises(ValueError, match="already a transfer-learning model named 'x'"):
        base.create_transfer("x")


def test_examples_are_counted_and_cleared(transfer):
    assert transfer.count_examples() == {"red": 4, "blue": 4}
    assert transfer.word_labels() == ["blue", "red"]

    transfer.clear_examples()

    assert transfer.word_labels() is None
    with pytest.raises(RuntimeError, match="No examples have been collected"):
        transfer.count_examples()
    with pytest.raises(RuntimeError, match="No transfer learning examples exist"):
        transfer.clear_examples()


def test_add_example_validates_size(base):
    rec = base.create_transfer("sizes")
    with pytest.raises(ValueError, match="elements"):
        rec.add_example("red", np.zeros((FRAMES, 10), dtype=np.float32))
    with pytest.raises(ValueError, match="non-empty string"):
        rec.add_example("", np.zeros((FRAMES, BINS), dtype=np.float32))

    rec.add_example("red", SpectrogramData(data=np.zeros(FRAMES * BINS, dtype=np.float32), frame_size=BINS))
    assert rec.count_examples() == {"red": 1}


def test_train_requires_two_words(base):
    rec = base.create_transfer("lonely")
    with pytest.raises(RuntimeError, match="no transfer learning example"):
        rec.train()

    rec.add_example("red", _examples(0, 1, 0.0)[0])
    with pytest.raises(RuntimeError, match="only 1 word label"):
        rec.train()


def test_untrained_transfer_model_is_not_usable(transfer, tmp_path):
    with pytest.raises(RuntimeError, match="has not been trained"):
        transfer.ensure_model_loaded()
    with pytest.raises(RuntimeError, match="has not been trained"):
        transfer.save(tmp_path / "model")


def test_train_reports_history_and_callbacks(transfer):
    callback = RecordingCallback()
    config = TransferLearnConfig(
        epochs=3,
        batch_size=4,
        validation_split=0.25,
        optimizer="adam",
        callback=callback,
        random_state=0,
    )

    history = transfer.train(config)

    assert history.epoch == [0, 1, 2]
    assert set(history.history) == {"loss", "acc", "val_loss", "val_acc"}
    assert all(0.0 <= acc <= 1.0 for acc in history.history["acc"])
    frame = history.to_frame()
    assert frame.index.name == "epoch"
    assert len(frame) == 3

    assert callback.events[0] == "begin"
    assert callback.events[1] == ("epoch", 0, ["acc", "loss", "val_acc", "val_loss"])
    assert callback.events[-1] == "end"


def test_train_only_updates_the_new_head(transfer, base):
    transfer.train(TransferLearnConfig(epochs=1, random_state=0))

    trainable = [name for name, param in transfer.model.named_parameters() if param.requires_grad]
    last_dense = max(i for i, layer in enumerate(transfer.model) if isinstance(layer, nn.Linear))
    assert trainable == [f"{last_dense}.weight", f"{last_dense}.bias"]
    assert all(param.requires_grad for param in base.model.parameters())


def test_trained_transfer_model_recognizes_and_reloads(transfer, tmp_path):
    transfer.train(TransferLearnConfig(epochs=2, random_state=0))

    example = _examples(2, 1, 0.0)[0].reshape(1, FRAMES, BINS, 1)
    scores = transfer.recognize(example).scores
    assert scores.shape == (2,)
    assert scores.sum() == pytest.approx(1.0, rel=1e-5)

    transfer.save(tmp_path / "colors")
    reloaded = speech_commands.create(model_dir=tmp_path / "colors")
    reloaded.ensure_model_loaded()

    assert reloaded.word_labels() == ["blue", "red"]
    np.testing.assert_allclose(reloaded.recognize(example).scores, scores, rtol=1e-5, atol=1e-6)


def test_new_words_rebuild_the_head(transfer):
    transfer.train(TransferLearnConfig(epochs=1, random_state=0))
    transfer.add_example("green", _examples(3, 1, -3.0)[0])

    transfer.train(TransferLearnConfig(epochs=1, random_state=0))

    assert transfer.recognize(np.zeros((1, FRAMES, BINS, 1), dtype=np.float32)).scores.shape == (3,)


def test_examples_round_trip_through_joblib(transfer, base, tmp_path):
    path = transfer.save_examples(tmp_path)
    assert path.name == "examples.joblib"

    other = base.create_transfer("copy")
    assert other.load_examples(path) == {"red": 4, "blue": 4}
    assert other.load_examples(path) == {"red": 8, "blue": 8}
    assert other.load_examples(path, clear_existing=True) == {"red": 4, "blue": 4}


def test_collect_example_from_audio(base, tone):
    rec = base.create_transfer("audio")

    spectrogram = rec.collect_example("hum", array_source(tone(1.5)))

    assert spectrogram.frame_size == BINS
    assert spectrogram.to_array().shape == (FRAMES, BINS)
    assert rec.count_examples() == {"hum": 1}
    assert not rec.is_streaming()


def test_collect_example_fails_on_short_audio(base, tone):
    rec = base.create_transfer("short")
    with pytest.raises(RuntimeError, match="ended before"):
        rec.collect_example("hum", array_source(tone(0.5)))
    assert not rec.is_streaming()


def test_hidden_dense_layer_is_required():
    with pytest.raises(RuntimeError, match="Cannot find a hidden dense layer"):
        find_hidden_dense_layer(nn.Sequential(nn.Linear(4, 2), nn.Softmax(dim=-1)))


def test_labels_follow_trained_head_until_retrained(transfer):
    transfer.train(TransferLearnConfig(epochs=1, random_state=0))
    transfer.add_example("apple", _examples(4, 1, -3.0)[0])

    assert transfer.word_labels() == ["blue", "red"]
    assert transfer.count_examples() == {"red": 4, "blue": 4, "apple": 1}
    scores = transfer.recognize(np.zeros((1, FRAMES, BINS, 1), dtype=np.float32)).scores
    assert [item["word"] for item in transfer.top_k(scores, k=2)] in (["blue", "red"], ["red", "blue"])
    assert transfer.scores_series(scores).index.tolist() == ["blue", "red"]

    transfer.train(TransferLearnConfig(epochs=1, random_state=0))

    assert transfer.word_labels() == ["apple", "blue", "red"]
