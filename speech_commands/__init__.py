"""Speech-command recognition with support for transfer learning of new words."""
from __future__ import annotations

from pathlib import Path

from .audio import array_source, file_source, load_audio, microphone_source
from .config import (
    BACKGROUND_NOISE_TAG,
    FFT_TYPES,
    METADATA_FILENAME,
    MODEL_FILENAME,
    UNKNOWN_TAG,
    RecognizerParams,
    StreamingRecognitionConfig,
    TransferLearnConfig,
)
from .features import BrowserFftFeatureExtractor, Tracker, compute_spectrogram, normalize
from .model import build_model, load_model, save_model
from .recognizer import BrowserFftSpeechCommandRecognizer
from .transfer import TransferSpeechCommandRecognizer
from .types import RecognizerResult, SpectrogramData, TrainingHistory


def create(fft_type: str = "BROWSER_FFT", model_dir: Path | str | None = None) -> BrowserFftSpeechCommandRecognizer:
    """Create a speech-command recognizer.

    ``BROWSER_FFT`` computes spectrograms with a windowed FFT of the incoming
    audio, matching the features the browser models were trained on.
    """
    if fft_type == "BROWSER_FFT":
        return BrowserFftSpeechCommandRecognizer(model_dir=model_dir)
    if fft_type == "SOFT_FFT":
        raise NotImplementedError("SOFT_FFT SpeechCommandRecognizer has not been implemented yet.")
    raise ValueError(f"Invalid fft_type: '{fft_type}'")


__all__ = [
    "create",
    "array_source",
    "file_source",
    "load_audio",
    "microphone_source",
    "BACKGROUND_NOISE_TAG",
    "FFT_TYPES",
    "METADATA_FILENAME",
    "MODEL_FILENAME",
    "UNKNOWN_TAG",
    "RecognizerParams",
    "StreamingRecognitionConfig",
    "TransferLearnConfig",
    "BrowserFftFeatureExtractor",
    "Tracker",
    "compute_spectrogram",
    "normalize",
    "build_model",
    "load_model",
    "save_model",
    "BrowserFftSpeechCommandRecognizer",
    "TransferSpeechCommandRecognizer",
    "RecognizerResult",
    "SpectrogramData",
    "TrainingHistory",
]
