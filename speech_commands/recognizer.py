"""Speech-command recognizer driven by FFT spectrograms."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Optional, Union

import numpy as np
import pandas as pd
import torch
import torch.nn as nn

from .audio import microphone_source
from .config import (
    BACKGROUND_NOISE_TAG,
    UNKNOWN_TAG,
    RecognizerParams,
    StreamingRecognitionConfig,
    default_model_dir,
)
from .features import BrowserFftFeatureExtractor, normalize
from .model import load_metadata, load_model, output_units
from .types import RecognizerResult, SpectrogramData

if TYPE_CHECKING:
    from .transfer import TransferSpeechCommandRecognizer

logger = logging.getLogger(__name__)

RecognizerCallback = Callable[[RecognizerResult], None]
RecognizerInput = Union[np.ndarray, torch.Tensor]

_NOT_LOADED_MESSAGE = (
    "Model has not been loaded yet. Load model by calling ensure_model_loaded(), recognize(), or start_streaming()."
)


class BrowserFftSpeechCommandRecognizer:
    """Recognizes short spoken words from one-second spectrograms.

    The model directory holds ``model.pt`` and a ``metadata.json`` listing the
    word labels in the order of the model outputs. It defaults to the
    ``SPEECH_COMMANDS_MODEL_DIR`` environment variable.
    """

    def __init__(self, model_dir: Path | str | None = None, params: RecognizerParams | None = None) -> None:
        self.model_dir = Path(model_dir) if model_dir is not None else None
        self.parameters = params or RecognizerParams()
        self.model: Optional[nn.Module] = None
        self.words: Optional[list[str]] = None
        self.non_batch_input_shape: Optional[tuple[int, ...]] = None
        self.elements_per_example: Optional[int] = None

        self._streaming = False
        self._extractor: Optional[BrowserFftFeatureExtractor] = None
        self._transfer_recognizers: dict[str, "TransferSpeechCommandRecognizer"] = {}

    # ------------------------------------------------------------------ #
    # Model lifecycle
    # ------------------------------------------------------------------ #

    def ensure_model_loaded(self) -> None:
        """Load the model and its word labels; no-op when already loaded."""
        if self.model is not None:
            return

        model_dir = self.model_dir if self.model_dir is not None else default_model_dir()
        words = load_metadata(model_dir)
        model, input_shape = load_model(model_dir)

        num_units = output_units(model)
        if num_units != len(words):
            raise ValueError(
                f"Mismatch between the last dimension of model's output shape ({num_units}) "
                f"and number of words ({len(words)})."
            )
        self._set_model(model, input_shape, words)

    def _set_model(self, model: nn.Module, input_shape: tuple[int, ...], words: list[str]) -> None:
        model.eval()
        self.model = model
        self.words = list(words)
        self.non_batch_input_shape = tuple(int(dim) for dim in input_shape)
        self.elements_per_example = int(np.prod(self.non_batch_input_shape))

        num_frames, frame_size = self.non_batch_input_shape[0], self.non_batch_input_shape[1]
        self.parameters.spectrogram_duration_millis = (
            num_frames * self.parameters.column_hop_length / self.parameters.sample_rate_hz * 1e3
        )
        self.parameters.filter_size = frame_size

        # warm up so the first streaming prediction is not slower than the rest
        self._predict(np.zeros((1, *self.non_batch_input_shape), dtype=np.float32))

    def _predict(self, x: RecognizerInput) -> np.ndarray:
        tensor = x if isinstance(x, torch.Tensor) else torch.as_tensor(np.asarray(x, dtype=np.float32))
        with torch.no_grad():
            return self.model(tensor.to(torch.float32)).cpu().numpy()

    def _require_loaded(self) -> None:
        if self.model is None:
            raise RuntimeError(_NOT_LOADED_MESSAGE)

    def _output_words(self) -> Optional[list[str]]:
        """Labels in the order of the model outputs."""
        return self.words

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #

    def _default_source(self) -> Iterable[np.ndarray]:
        return microphone_source(self.parameters.sample_rate_hz, self.parameters.column_hop_length)

    def _make_extractor(
        self,
        spectrogram_callback: Callable[[np.ndarray], bool],
        overlap_factor: float,
        suppression_time_millis: float,
    ) -> BrowserFftFeatureExtractor:
        return BrowserFftFeatureExtractor(
            spectrogram_callback,
            num_frames_per_spectrogram=self.non_batch_input_shape[0],
            column_truncate_length=self.non_batch_input_shape[1],
            overlap_factor=overlap_factor,
            suppression_time_millis=suppression_time_millis,
            params=self.parameters,
        )

    def start_streaming(
        self,
        callback: RecognizerCallback,
        config: StreamingRecognitionConfig | None = None,
        source: Iterable[np.ndarray] | None = None,
    ) -> None:
        """Recognize words continuously from *source* (the microphone by default).

        *callback* runs on the extraction thread every time a word other than
        background noise or unknown scores at least ``probability_threshold``.
        """
        if self._streaming:
            raise RuntimeError("Cannot start streaming again when streaming is ongoing.")

        config = config or StreamingRecognitionConfig()
        self.ensure_model_loaded()

        words = list(self._output_words())
        frame_size = self.non_batch_input_shape[1]
        min_samples = config.min_samples or 1
        recent: list[int] = []

        def spectrogram_callback(x: np.ndarray) -> bool:
            scores = self._predict(normalize(x))[0]
            max_index = int(np.argmax(scores))
            if float(scores[max_index]) < config.probability_threshold:
                return False

            recent.append(max_index)
            del recent[:-min_samples]
            if len(recent) < min_samples or len(set(recent)) != 1:
                return False

            word_detected = True
            if not config.invoke_callback_on_noise_and_unknown:
                if words[max_index] in (BACKGROUND_NOISE_TAG, UNKNOWN_TAG):
                    word_detected = False
            if word_detected:
                spectrogram = None
                if config.include_spectrogram:
                    spectrogram = SpectrogramData(data=x.reshape(-1).astype(np.float32), frame_size=frame_size)
                callback(RecognizerResult(scores=scores, spectrogram=spectrogram))
                recent.clear()
            return word_detected

        self._extractor = self._make_extractor(
            spectrogram_callback, config.overlap_factor, config.suppression_time_millis
        )
        self._extractor.start(source if source is not None else self._default_source())
        self._streaming = True
        logger.info("Started streaming recognition (overlap=%.2f)", config.overlap_factor)

    def stop_streaming(self) -> None:
        if not self._streaming:
            raise RuntimeError("Cannot stop streaming when streaming is not ongoing.")
        extractor, self._extractor = self._extractor, None
        self._streaming = False
        if extractor is not None:
            extractor.stop()
        logger.info("Stopped streaming recognition")

    def is_streaming(self) -> bool:
        return self._streaming

    # ------------------------------------------------------------------ #
    # One-shot recognition
    # ------------------------------------------------------------------ #

    def _check_input_shape(self, shape: tuple[int, ...]) -> None:
        expected_rank = len(self.non_batch_input_shape) + 1
        if len(shape) != expected_rank:
            raise ValueError(f"Expected input to have rank {expected_rank}, but got rank {len(shape)}")
        if tuple(shape[1:]) != self.non_batch_input_shape:
            expected = ",".join(str(dim) for dim in self.non_batch_input_shape)
            actual = ",".join(str(dim) for dim in shape[1:])
            raise ValueError(f"Expected input to have shape [null,{expected}], but got shape [null,{actual}]")

    def recognize(self, input: RecognizerInput) -> RecognizerResult:
        """Score one or more spectrograms.

        A flat array must hold a whole number of examples laid out frame by
        frame; a shaped array or tensor must be ``(N, frames, bins, 1)``.
        Returns one score array for a single example, otherwise a list.
        """
        self.ensure_model_loaded()

        if isinstance(input, torch.Tensor):
            input = input.detach().cpu().numpy()
        x = np.asarray(input, dtype=np.float32)
        if x.ndim == 1:
            if x.size % self.elements_per_example != 0:
                raise ValueError(
                    f"The length of the input array {x.size} is not an integer multiple of the "
                    f"number of elements per example ({self.elements_per_example})"
                )
            x = x.reshape(-1, *self.non_batch_input_shape)
        else:
            self._check_input_shape(x.shape)

        output = self._predict(x)
        if output.shape[0] == 1:
            return RecognizerResult(scores=output[0])
        return RecognizerResult(scores=[row for row in output])

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    def model_input_shape(self) -> tuple[Optional[int], ...]:
        self._require_loaded()
        return (None, *self.non_batch_input_shape)

    def word_labels(self) -> Optional[list[str]]:
        words = self._output_words()
        return None if words is None else list(words)

    def params(self) -> RecognizerParams:
        return self.parameters

    def scores_series(self, scores: np.ndarray) -> pd.Series:
        words = self._output_words()
        if words is None:
            raise RuntimeError(_NOT_LOADED_MESSAGE)
        return pd.Series(np.asarray(scores, dtype=np.float64), index=words)

    def top_k(self, scores: np.ndarray, *, k: int = 3) -> list[dict[str, float]]:
        probs = self.scores_series(scores).sort_values(ascending=False).head(k)
        return [{"word": word, "score": float(score)} for word, score in probs.items()]

    # ------------------------------------------------------------------ #
    # Transfer learning
    # ------------------------------------------------------------------ #

    def create_transfer(self, name: str) -> "TransferSpeechCommandRecognizer":
        """Create a recognizer for new words that reuses this model's features."""
        from .transfer import TransferSpeechCommandRecognizer

        if self.model is None:
            raise RuntimeError(_NOT_LOADED_MESSAGE)
        if not isinstance(name, str) or not name:
            raise ValueError(
                "Expected the name for a transfer-learning recognizer to be a non-empty string, "
                f"but got {name!r}"
            )
        if name in self._transfer_recognizers:
            raise ValueError(f"There is already a transfer-learning model named '{name}'")

        transfer = TransferSpeechCommandRecognizer(name, self.parameters, self.model, self.non_batch_input_shape)
        self._transfer_recognizers[name] = transfer
        return transfer
