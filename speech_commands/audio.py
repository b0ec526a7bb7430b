"""Audio sources that feed sample blocks into the feature extractor."""
from __future__ import annotations

import logging
import queue
from pathlib import Path
from typing import Iterator, Optional

import librosa
import numpy as np
import soundfile as sf

from .config import FFT_SIZE, SAMPLE_RATE_HZ

logger = logging.getLogger(__name__)


def array_source(samples: np.ndarray, block_size: int = FFT_SIZE) -> Iterator[np.ndarray]:
    samples = np.asarray(samples, dtype=np.float32).reshape(-1)
    for start in range(0, samples.size, block_size):
        yield samples[start : start + block_size]


def load_audio(audio_path: Path | str, sample_rate: int = SAMPLE_RATE_HZ, duration: Optional[float] = None) -> np.ndarray:
    try:
        y, _ = librosa.load(audio_path, sr=sample_rate, mono=True, duration=duration, res_type="kaiser_fast")
    except (sf.SoundFileError, EOFError) as e:
        raise ValueError(f"Could not decode {audio_path}") from e
    if y.size == 0:
        raise ValueError(f"{audio_path} is empty")
    return y.astype(np.float32)


def file_source(
    audio_path: Path | str,
    sample_rate: int = SAMPLE_RATE_HZ,
    block_size: int = FFT_SIZE,
) -> Iterator[np.ndarray]:
    """Yield blocks of a file resampled to *sample_rate*."""
    yield from array_source(load_audio(audio_path, sample_rate), block_size)


def microphone_source(
    sample_rate: int = SAMPLE_RATE_HZ,
    block_size: int = FFT_SIZE,
    device: Optional[str] = None,
    timeout: float = 1.0,
) -> Iterator[np.ndarray]:
    """Yield float32 mono blocks captured from a sounddevice input stream.

    An empty block is yielded whenever no audio arrives within *timeout*.
    The stream is closed when the generator is closed.
    """
    try:
        import sounddevice as sd
    except Exception as e:
        raise RuntimeError("sounddevice not available. Install with 'pip install sounddevice'.") from e

    blocks: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=64)

    def _callback(indata, frames, time, status):  # noqa: ARG001
        if status:
            logger.warning("Audio status: %s", status)
        try:
            blocks.put_nowait(indata[:, 0].copy())
        except queue.Full:
            logger.warning("Dropping audio block; consumer is falling behind")

    stream = sd.InputStream(
        device=device,
        channels=1,
        samplerate=sample_rate,
        dtype="float32",
        blocksize=block_size,
        callback=_callback,
    )
    stream.start()
    logger.info("Audio capture started: %s @ %d Hz", device or "default", sample_rate)
    try:
        while True:
            try:
                yield blocks.get(timeout=timeout)
            except queue.Empty:
                # empty block on timeout; the consumer polls its stop event between blocks
                yield np.zeros(0, dtype=np.float32)
    finally:
        stream.stop()
        stream.close()
        logger.info("Audio capture stopped")
