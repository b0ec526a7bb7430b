"""Configuration and constants for the speech-command recognizer."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence

FFT_TYPES: Sequence[str] = ("BROWSER_FFT", "SOFT_FFT")

BACKGROUND_NOISE_TAG = "_background_noise_"
UNKNOWN_TAG = "_unknown_"

MODEL_FILENAME = "model.pt"
METADATA_FILENAME = "metadata.json"
EXAMPLES_FILENAME = "examples.joblib"

MODEL_DIR_ENV_VAR = "SPEECH_COMMANDS_MODEL_DIR"
DEFAULT_MODEL_DIR = Path("speech_commands/artifacts")

SAMPLE_RATE_HZ = 44_100
FFT_SIZE = 1024
DEFAULT_SUPPRESSION_TIME_MILLIS = 0
NORMALIZATION_EPSILON = 1e-7

# Shape of the 18-word browser-FFT model: 43 columns of 232 frequency bins.
DEFAULT_NUM_FRAMES = 43
DEFAULT_FRAME_SIZE = 232
DEFAULT_HIDDEN_UNITS = 2000

WORDS_18W: Sequence[str] = (
    BACKGROUND_NOISE_TAG,
    UNKNOWN_TAG,
    "down",
    "eight",
    "five",
    "four",
    "go",
    "left",
    "nine",
    "no",
    "one",
    "right",
    "seven",
    "six",
    "stop",
    "three",
    "two",
    "up",
    "yes",
    "zero",
)

OPTIMIZER_LEARNING_RATES: dict[str, float] = {
    "sgd": 0.01,
    "adam": 0.001,
    "rmsprop": 0.001,
    "adagrad": 0.01,
}


@dataclass
class RecognizerParams:
    """Audio framing parameters; the model-dependent fields are filled on load."""

    column_buffer_length: int = FFT_SIZE
    column_hop_length: int = FFT_SIZE
    spectrogram_duration_millis: float | None = None
    fft_size: int = FFT_SIZE
    filter_size: int | None = None
    sample_rate_hz: int = SAMPLE_RATE_HZ

    @property
    def frame_duration_millis(self) -> float:
        return self.column_hop_length / self.sample_rate_hz * 1e3


@dataclass(frozen=True)
class StreamingRecognitionConfig:
    overlap_factor: float = 0.5
    min_samples: int | None = None
    suppression_time_millis: float = DEFAULT_SUPPRESSION_TIME_MILLIS
    probability_threshold: float = 0.0
    invoke_callback_on_noise_and_unknown: bool = False
    include_spectrogram: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.overlap_factor < 1:
            raise ValueError(f"Expected overlap_factor to be >= 0 and < 1, but got {self.overlap_factor}")
        if not 0 <= self.probability_threshold <= 1:
            raise ValueError(
                f"Expected probability_threshold to be >= 0 and <= 1, but got {self.probability_threshold}"
            )
        if self.suppression_time_millis < 0:
            raise ValueError(
                f"Expected suppression_time_millis to be >= 0, but got {self.suppression_time_millis}"
            )
        if self.min_samples is not None and self.min_samples < 1:
            raise ValueError(f"Expected min_samples to be >= 1, but got {self.min_samples}")


@dataclass(frozen=True)
class TransferLearnConfig:
    epochs: int = 20
    optimizer: str | Callable[..., Any] = "sgd"
    batch_size: int = 128
    validation_split: float = 0.0
    callback: Any | None = None
    learning_rate: float | None = None
    random_state: int | None = None

    def __post_init__(self) -> None:
        if self.epochs < 1:
            raise ValueError(f"Expected epochs to be >= 1, but got {self.epochs}")
        if self.batch_size < 1:
            raise ValueError(f"Expected batch_size to be >= 1, but got {self.batch_size}")
        if not 0 <= self.validation_split < 1:
            raise ValueError(f"Expected validation_split to be >= 0 and < 1, but got {self.validation_split}")
        if isinstance(self.optimizer, str) and self.optimizer.lower() not in OPTIMIZER_LEARNING_RATES:
            raise ValueError(
                f"Unknown optimizer '{self.optimizer}'. Expected one of {sorted(OPTIMIZER_LEARNING_RATES)}"
            )


def default_model_dir() -> Path:
    value = os.environ.get(MODEL_DIR_ENV_VAR)
    return Path(value) if value else DEFAULT_MODEL_DIR
