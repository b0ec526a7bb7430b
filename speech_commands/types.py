"""Result containers returned by the recognizers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class SpectrogramData:
    """Spectrogram stored frame by frame: the first ``frame_size`` values are frame 0."""

    data: np.ndarray
    frame_size: int

    @property
    def num_frames(self) -> int:
        return int(self.data.size // self.frame_size)

    def to_array(self) -> np.ndarray:
        return self.data.reshape(self.num_frames, self.frame_size)


@dataclass(frozen=True)
class RecognizerResult:
    scores: Union[np.ndarray, list[np.ndarray]]
    spectrogram: SpectrogramData | None = None


@dataclass
class TrainingHistory:
    """Per-epoch metrics of a transfer-learning run."""

    epoch: list[int] = field(default_factory=list)
    history: dict[str, list[float]] = field(default_factory=dict)

    def append(self, epoch: int, logs: dict[str, float]) -> None:
        self.epoch.append(epoch)
        for key, value in logs.items():
            self.history.setdefault(key, []).append(float(value))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.history, index=pd.Index(self.epoch, name="epoch"))
