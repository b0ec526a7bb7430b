from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

import posenet
from speech_commands import build_model, save_model

SAMPLE_RATE = 44_100
INPUT_SHAPE = (43, 232, 1)
WORDS = ["_background_noise_", "_unknown_", "no", "yes"]


@pytest.fixture
def tone():
    def _tone(seconds: float = 1.0, freq: float = 440.0, sr: int = SAMPLE_RATE) -> np.ndarray:
        t = np.linspace(0, seconds, int(sr * seconds), endpoint=False)
        return (0.5 * np.sin(2 * np.pi * freq * t)).astype(np.float32)

    return _tone


@pytest.fixture
def tone_writer(tmp_path, tone):
    def _write(filename: str = "tone.wav", seconds: float = 1.0, freq: float = 440.0) -> Path:
        path = tmp_path / filename
        sf.write(path, tone(seconds, freq), SAMPLE_RATE)
        return path

    return _write


@pytest.fixture
def model_dir(tmp_path) -> Path:
    target = tmp_path / "base_model"
    model = build_model(INPUT_SHAPE, len(WORDS), hidden_units=16)
    save_model(model, WORDS, INPUT_SHAPE, target)
    return target


@pytest.fixture(scope="session")
def pose_net():
    return posenet.load(multiplier=0.5)
