import io
import json
import sys
import types

import numpy as np
import pytest
import torch

import speech_commands
from speech_commands import StreamingRecognitionConfig, array_source
from speech_commands.config import METADATA_FILENAME

INPUT_SHAPE = (43, 232, 1)
WORDS = ["_background_noise_", "_unknown_", "no", "yes"]

ELEMENTS = int(np.prod(INPUT_SHAPE))


@pytest.fixture
def recognizer(model_dir):
    rec = speech_commands.create("BROWSER_FFT", model_dir=model_dir)
    rec.ensure_model_loaded()
    return rec


def test_create_rejects_unsupported_fft_types():
    with pytest.raises(NotImplementedError):
        speech_commands.create("SOFT_FFT")
    with pytest.raises(ValueError, match="Invalid fft_type"):
        speech_commands.create("nonsense")


def test_model_dir_defaults_to_environment(monkeypatch, model_dir):
    monkeypatch.setenv("SPEECH_COMMANDS_MODEL_DIR", str(model_dir))
    rec = speech_commands.create()
    rec.ensure_model_loaded()
    assert rec.word_labels() == WORDS


def test_missing_model_raises(tmp_path):
    rec = speech_commands.create(model_dir=tmp_path / "missing")
    with pytest.raises(FileNotFoundError):
        rec.ensure_model_loaded()


def test_loaded_model_metadata(recognizer):
    assert recognizer.word_labels() == WORDS
    assert recognizer.model_input_shape() == (None, *INPUT_SHAPE)

    params = recognizer.params()
    assert params.filter_size == 232
    assert params.spectrogram_duration_millis == pytest.approx(43 * 1024 / 44_100 * 1e3)


def test_accessors_before_loading(model_dir):
    rec = speech_commands.create(model_dir=model_dir)
    assert rec.word_labels() is None
    with pytest.raises(RuntimeError, match="Model has not been loaded yet"):
        rec.model_input_shape()


def test_word_count_mismatch_is_reported(model_dir):
    with (model_dir / METADATA_FILENAME).open("w", encoding="utf-8") as fp:
        json.dump({"words": WORDS[:3]}, fp)
    rec = speech_commands.create(model_dir=model_dir)
    with pytest.raises(ValueError, match="Mismatch"):
        rec.ensure_model_loaded()


def test_recognize_single_example_returns_scores(recognizer):
    result = recognizer.recognize(np.zeros((1, *INPUT_SHAPE), dtype=np.float32))

    assert isinstance(result.scores, np.ndarray)
    assert result.scores.shape == (len(WORDS),)
    assert result.scores.sum() == pytest.approx(1.0, rel=1e-5)
    assert result.spectrogram is None


def test_recognize_flat_batch_and_tensor(recognizer):
    flat = recognizer.recognize(np.zeros(2 * ELEMENTS, dtype=np.float32))
    assert isinstance(flat.scores, list)
    assert len(flat.scores) == 2

    tensor = recognizer.recognize(torch.zeros(3, *INPUT_SHAPE))
    assert len(tensor.scores) == 3


def test_recognize_validates_input(recognizer):
    with pytest.raises(ValueError, match="integer multiple"):
        recognizer.recognize(np.zeros(ELEMENTS + 1, dtype=np.float32))
    with pytest.raises(ValueError, match="rank 4"):
        recognizer.recognize(np.zeros(INPUT_SHAPE, dtype=np.float32))
    with pytest.raises(ValueError, match=r"shape \[null,43,232,1\]"):
        recognizer.recognize(np.zeros((1, 43, 100, 1), dtype=np.float32))


def test_top_k_orders_words_by_score(recognizer):
    scores = np.array([0.1, 0.2, 0.3, 0.4], dtype=np.float32)

    top = recognizer.top_k(scores, k=2)

    assert [item["word"] for item in top] == ["yes", "no"]
    assert top[0]["score"] == pytest.approx(0.4)
    assert recognizer.scores_series(scores).index.tolist() == WORDS


def _stream(recognizer, config, seconds=3.0, tone=None):
    results = []
    recognizer.start_streaming(results.append, config, source=array_source(tone(seconds)))
    assert recognizer.is_streaming()
    assert recognizer._extractor.wait(timeout=30)
    recognizer.stop_streaming()
    assert not recognizer.is_streaming()
    return results


def test_streaming_invokes_callback_per_spectrogram(recognizer, tone):
    config = StreamingRecognitionConfig(overlap_factor=0.5, invoke_callback_on_noise_and_unknown=True)

    results = _stream(recognizer, config, tone=tone)

    # 129 columns, a full window first fires on column 44 and then every 22 columns
    assert len(results) == 4
    assert all(r.scores.shape == (len(WORDS),) for r in results)


def test_streaming_skips_noise_and_unknown(recognizer, tone):
    recognizer._predict = lambda x: np.array([[0.7, 0.1, 0.1, 0.1]], dtype=np.float32)

    assert _stream(recognizer, StreamingRecognitionConfig(), tone=tone) == []
    noisy = _stream(recognizer, StreamingRecognitionConfig(invoke_callback_on_noise_and_unknown=True), tone=tone)
    assert len(noisy) == 4


def test_streaming_threshold_min_samples_and_spectrogram(recognizer, tone):
    recognizer._predict = lambda x: np.array([[0.1, 0.1, 0.1, 0.7]], dtype=np.float32)

    assert _stream(recognizer, StreamingRecognitionConfig(probability_threshold=0.9), tone=tone) == []

    paired = _stream(recognizer, StreamingRecognitionConfig(min_samples=2), tone=tone)
    assert len(paired) == 2

    with_spectrogram = _stream(recognizer, StreamingRecognitionConfig(include_spectrogram=True), tone=tone)
    spectrogram = with_spectrogram[0].spectrogram
    assert spectrogram.frame_size == 232
    assert spectrogram.to_array().shape == (43, 232)


def test_streaming_state_errors(recognizer, tone):
    with pytest.raises(RuntimeError, match="not ongoing"):
        recognizer.stop_streaming()

    recognizer.start_streaming(lambda result: None, source=array_source(tone(0.5)))
    try:
        with pytest.raises(RuntimeError, match="ongoing"):
            recognizer.start_streaming(lambda result: None, source=array_source(tone(0.5)))
    finally:
        recognizer.stop_streaming()


def test_streaming_config_validation():
    with pytest.raises(ValueError):
        StreamingRecognitionConfig(overlap_factor=1.0)
    with pytest.raises(ValueError):
        StreamingRecognitionConfig(probability_threshold=1.5)
    with pytest.raises(ValueError):
        StreamingRecognitionConfig(min_samples=0)


def test_load_audio_rejects_undecodable_bytes():
    with pytest.raises(ValueError, match="Could not decode"):
        speech_commands.load_audio(io.BytesIO(b"not audio at all"))


class SilentInputStream:
    def __init__(self, **kwargs):
        self.closed = False

    def start(self):
        pass

    def stop(self):
        pass

    def close(self):
        self.closed = True


def test_microphone_source_yields_while_device_is_silent(monkeypatch):
    streams = []

    def make_stream(**kwargs):
        streams.append(SilentInputStream(**kwargs))
        return streams[-1]

    monkeypatch.setitem(sys.modules, "sounddevice", types.SimpleNamespace(InputStream=make_stream))

    source = speech_commands.microphone_source(timeout=0.01)
    block = next(source)
    source.close()

    assert block.size == 0
    assert streams[0].closed
