"""Spectrogram extraction and the streaming window bookkeeping."""
from __future__ import annotations

import logging
import math
import threading
from collections import deque
from typing import Callable, Iterable, Optional

import librosa
import numpy as np

from .config import NORMALIZATION_EPSILON, RecognizerParams

logger = logging.getLogger(__name__)

SpectrogramCallback = Callable[[np.ndarray], bool]


def _js_round(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize(x: np.ndarray) -> np.ndarray:
    """Shift to zero mean and scale to unit variance."""
    x = np.asarray(x, dtype=np.float32)
    mean = x.mean()
    std = np.sqrt(x.var())
    return ((x - mean) / (std + NORMALIZATION_EPSILON)).astype(np.float32)


def _magnitude_db(stft: np.ndarray, fft_size: int) -> np.ndarray:
    return librosa.amplitude_to_db(np.abs(stft) / fft_size, ref=1.0, top_db=None)


def spectrogram_column(window: np.ndarray, fft_size: int, column_truncate_length: int) -> np.ndarray:
    """Blackman-windowed FFT magnitude of one audio window, in dB."""
    window = np.asarray(window, dtype=np.float32)
    if window.size < fft_size:
        window = np.pad(window, (0, fft_size - window.size))
    stft = librosa.stft(window[:fft_size], n_fft=fft_size, hop_length=fft_size, window="blackman", center=False)
    return _magnitude_db(stft[:, 0], fft_size)[:column_truncate_length].astype(np.float32)


def compute_spectrogram(
    samples: np.ndarray,
    num_frames: int,
    column_truncate_length: int,
    params: RecognizerParams | None = None,
) -> np.ndarray:
    """Spectrogram of the first ``num_frames`` columns of a clip, zero-padded if short.

    Returns an array of shape ``(num_frames, column_truncate_length)``.
    """
    params = params or RecognizerParams()
    samples = np.asarray(samples, dtype=np.float32).reshape(-1)
    needed = params.column_buffer_length + (num_frames - 1) * params.column_hop_length
    if samples.size < needed:
        samples = np.pad(samples, (0, needed - samples.size))
    stft = librosa.stft(
        samples[:needed],
        n_fft=params.fft_size,
        hop_length=params.column_hop_length,
        win_length=min(params.column_buffer_length, params.fft_size),
        window="blackman",
        center=False,
    )
    columns = _magnitude_db(stft, params.fft_size)[:column_truncate_length, :num_frames]
    return columns.T.astype(np.float32)


class Tracker:
    """Decides on which audio frame a spectrogram is emitted.

    Fires every ``period`` ticks, except while within ``suppression_period``
    ticks of the last call to :meth:`suppress`.
    """

    def __init__(self, period: int, suppression_period: int | None = None) -> None:
        if period <= 0:
            raise ValueError(f"Expected period to be positive, but got {period}")
        self.period = period
        self.suppression_time = 0 if suppression_period is None else suppression_period
        self.counter = 0
        self.suppression_onset: int | None = None

    def tick(self) -> bool:
        self.counter += 1
        return self.counter % self.period == 0 and (
            self.suppression_onset is None or self.counter - self.suppression_onset > self.suppression_time
        )

    def suppress(self) -> None:
        self.suppression_onset = self.counter


class BrowserFftFeatureExtractor:
    """Turns a stream of audio samples into overlapping spectrogram windows.

    Samples are cut into columns of ``column_buffer_length`` samples every
    ``column_hop_length`` samples. The last ``num_frames_per_spectrogram``
    columns are kept; whenever the tracker fires, they are handed to
    ``spectrogram_callback`` as a ``(1, frames, columns, 1)`` array. A truthy
    return value from the callback starts the suppression period.
    """

    def __init__(
        self,
        spectrogram_callback: SpectrogramCallback,
        num_frames_per_spectrogram: int,
        column_truncate_length: int,
        overlap_factor: float = 0.5,
        suppression_time_millis: float = 0,
        params: RecognizerParams | None = None,
    ) -> None:
        if num_frames_per_spectrogram <= 0:
            raise ValueError(
                f"Expected num_frames_per_spectrogram to be positive, but got {num_frames_per_spectrogram}"
            )
        if column_truncate_length <= 0:
            raise ValueError(f"Expected column_truncate_length to be positive, but got {column_truncate_length}")
        if not 0 <= overlap_factor < 1:
            raise ValueError(f"Expected overlap_factor to be >= 0 and < 1, but got {overlap_factor}")

        self.spectrogram_callback = spectrogram_callback
        self.num_frames = num_frames_per_spectrogram
        self.column_truncate_length = column_truncate_length
        self.overlap_factor = overlap_factor
        self.suppression_time_millis = suppression_time_millis
        self.set_config(RecognizerParams() if params is None else params)

        self._buffer = np.zeros(0, dtype=np.float32)
        self._frames: deque[np.ndarray] = deque(maxlen=self.num_frames)
        self._features: deque[np.ndarray] = deque(maxlen=self.num_frames)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._error: BaseException | None = None

    def set_config(self, params: RecognizerParams) -> None:
        """Switch framing parameters; the tracker restarts with the new frame duration."""
        if params.column_buffer_length > params.fft_size:
            raise ValueError(
                f"column_buffer_length ({params.column_buffer_length}) must not exceed "
                f"fft_size ({params.fft_size})"
            )
        if self.column_truncate_length > params.fft_size // 2 + 1:
            raise ValueError(
                f"column_truncate_length ({self.column_truncate_length}) exceeds the number of FFT bins "
                f"({params.fft_size // 2 + 1})"
            )
        self.params = params
        self.frame_duration_millis = params.frame_duration_millis
        self.tracker = Tracker(
            max(_js_round(self.num_frames * (1 - self.overlap_factor)), 1),
            _js_round(self.suppression_time_millis / self.frame_duration_millis),
        )

    def feed(self, samples: np.ndarray) -> int:
        """Consume a block of samples; returns the number of spectrograms emitted."""
        samples = np.asarray(samples, dtype=np.float32)
        if samples.ndim > 1:
            samples = samples.mean(axis=1)
        self._buffer = np.concatenate([self._buffer, samples])

        fired = 0
        buffer_length = self.params.column_buffer_length
        hop = self.params.column_hop_length
        while self._buffer.size >= buffer_length and not self._stop_event.is_set():
            column = spectrogram_column(self._buffer[:buffer_length], self.params.fft_size, self.column_truncate_length)
            self._buffer = self._buffer[hop:]
            if self._on_column(column):
                fired += 1
        return fired

    def _on_column(self, column: np.ndarray) -> bool:
        self._frames.append(column)
        self._features.append(column)
        should_fire = self.tracker.tick()
        if not should_fire or len(self._frames) < self.num_frames:
            return False

        spectrogram = np.stack(self._frames).reshape(1, self.num_frames, self.column_truncate_length, 1)
        if self.spectrogram_callback(spectrogram):
            self.tracker.suppress()
        return True

    def _run(self, source: Iterable[np.ndarray]) -> None:
        iterator = iter(source)
        try:
            for block in iterator:
                if self._stop_event.is_set():
                    break
                self.feed(block)
        except Exception as exc:
            logger.exception("Feature extraction failed")
            self._error = exc
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    def start(self, source: Iterable[np.ndarray]) -> None:
        """Start pulling sample blocks from *source* on a background thread."""
        if self._thread is not None:
            raise RuntimeError("Feature extraction is already running")
        self._stop_event.clear()
        self._error = None
        self._thread = threading.Thread(target=self._run, args=(source,), name="feature-extractor", daemon=True)
        self._thread.start()

    def request_stop(self) -> None:
        self._stop_event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the source is exhausted or a stop was requested."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def stop(self, timeout: float | None = None) -> None:
        self.request_stop()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._buffer = np.zeros(0, dtype=np.float32)
        self._frames.clear()
        if self._error is not None:
            error, self._error = self._error, None
            raise RuntimeError("Feature extraction stopped with an error") from error

    def get_features(self) -> list[np.ndarray]:
        """Return the columns computed since the previous call, at most one spectrogram's worth."""
        features = list(self._features)
        self._features.clear()
        return features
