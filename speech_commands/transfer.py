"""Transfer learning of new words on top of a base speech-command model."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

import joblib
import numpy as np
import torch
import torch.nn as nn
from sklearn.metrics import accuracy_score
from sklearn.model_selection import train_test_split
from torch.utils.data import DataLoader, TensorDataset

from .config import (
    EXAMPLES_FILENAME,
    OPTIMIZER_LEARNING_RATES,
    RecognizerParams,
    TransferLearnConfig,
)
from .features import normalize
from .model import build_transfer_model, save_model
from .recognizer import BrowserFftSpeechCommandRecognizer
from .types import SpectrogramData, TrainingHistory

logger = logging.getLogger(__name__)

_LOG_EPSILON = 1e-7


def _make_optimizer(optimizer, parameters, learning_rate: float | None) -> torch.optim.Optimizer:
    if callable(optimizer):
        return optimizer(parameters)
    name = optimizer.lower()
    lr = learning_rate if learning_rate is not None else OPTIMIZER_LEARNING_RATES[name]
    if name == "sgd":
        return torch.optim.SGD(parameters, lr=lr)
    if name == "adam":
        return torch.optim.Adam(parameters, lr=lr)
    if name == "rmsprop":
        return torch.optim.RMSprop(parameters, lr=lr)
    return torch.optim.Adagrad(parameters, lr=lr)


def _categorical_crossentropy(probs: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    return nn.functional.nll_loss(torch.log(probs.clamp(_LOG_EPSILON, 1.0)), targets)


def _notify(callback, hook: str, *args) -> None:
    method = getattr(callback, hook, None) if callback is not None else None
    if method is not None:
        method(*args)


class TransferSpeechCommandRecognizer(BrowserFftSpeechCommandRecognizer):
    """Recognizer for user-collected words that reuses a base model's features.

    Examples are collected per word, either from an audio source with
    :meth:`collect_example` or from precomputed spectrograms with
    :meth:`add_example`. :meth:`train` then fits a new softmax head on top
    of the frozen base model; afterwards :meth:`recognize` and
    :meth:`start_streaming` score the collected words.
    """

    def __init__(
        self,
        name: str,
        params: RecognizerParams,
        base_model: nn.Module,
        non_batch_input_shape: tuple[int, ...],
    ) -> None:
        super().__init__(params=params)
        self.name = name
        self.base_model = base_model
        self.non_batch_input_shape = tuple(non_batch_input_shape)
        self.elements_per_example = int(np.prod(self.non_batch_input_shape))
        self.transfer_examples: Optional[dict[str, list[np.ndarray]]] = None
        self._model_words: Optional[list[str]] = None

    def ensure_model_loaded(self) -> None:
        if self.model is None:
            raise RuntimeError(f"The transfer-learning model '{self.name}' has not been trained yet.")

    # ------------------------------------------------------------------ #
    # Example collection
    # ------------------------------------------------------------------ #

    def _check_word(self, word: str) -> None:
        if not isinstance(word, str) or not word:
            raise ValueError("Must provide a non-empty string when collecting transfer-learning example")

    def _store_example(self, word: str, spectrogram: np.ndarray) -> None:
        if self.transfer_examples is None:
            self.transfer_examples = {}
        example = normalize(spectrogram).reshape(self.non_batch_input_shape)
        self.transfer_examples.setdefault(word, []).append(example)
        self._collate_transfer_words()

    def _collate_transfer_words(self) -> None:
        self.words = sorted(self.transfer_examples)

    def _output_words(self) -> Optional[list[str]]:
        # words collected after training only take effect once train() rebuilds the head
        if self.model is not None:
            return self._model_words
        return self.words

    def collect_example(self, word: str, source: Iterable[np.ndarray] | None = None) -> SpectrogramData:
        """Record one spectrogram of *word* from *source* (the microphone by default)."""
        if self._streaming:
            raise RuntimeError(
                "Cannot start collection of transfer-learning example because a streaming recognition "
                "or transfer-learning example collection is ongoing"
            )
        self._check_word(word)

        collected: list[np.ndarray] = []
        done = threading.Event()

        def spectrogram_callback(x: np.ndarray) -> bool:
            if not done.is_set():
                collected.append(x.copy())
                done.set()
                extractor.request_stop()
            return False

        extractor = self._make_extractor(spectrogram_callback, overlap_factor=0, suppression_time_millis=0)
        self._streaming = True
        try:
            extractor.start(source if source is not None else self._default_source())
            extractor.wait()
            extractor.stop()
        finally:
            self._streaming = False

        if not collected:
            raise RuntimeError(f"Audio source ended before a full spectrogram of '{word}' was collected")

        x = collected[0]
        self._store_example(word, x)
        logger.info("Collected example %d for word '%s'", len(self.transfer_examples[word]), word)
        return SpectrogramData(data=x.reshape(-1).astype(np.float32), frame_size=self.non_batch_input_shape[1])

    def add_example(self, word: str, spectrogram: np.ndarray | SpectrogramData) -> None:
        """Add a precomputed ``(frames, bins)`` spectrogram as an example of *word*."""
        self._check_word(word)
        data = spectrogram.data if isinstance(spectrogram, SpectrogramData) else spectrogram
        data = np.asarray(data, dtype=np.float32)
        if data.size != self.elements_per_example:
            raise ValueError(
                f"Expected a spectrogram with {self.elements_per_example} elements "
                f"(shape {self.non_batch_input_shape}), but got shape {data.shape}"
            )
        self._store_example(word, data)

    def clear_examples(self) -> None:
        if self.words is None or self.transfer_examples is None:
            raise RuntimeError(f"No transfer learning examples exist for model name {self.name}")
        self.transfer_examples = None
        self.words = None

    def count_examples(self) -> dict[str, int]:
        if self.transfer_examples is None:
            raise RuntimeError(f"No examples have been collected for transfer-learning model named '{self.name}' yet.")
        return {word: len(examples) for word, examples in self.transfer_examples.items()}

    def save_examples(self, path: Path | str) -> Path:
        if self.transfer_examples is None:
            raise RuntimeError(f"No examples have been collected for transfer-learning model named '{self.name}' yet.")
        target = Path(path)
        if target.is_dir():
            target = target / EXAMPLES_FILENAME
        target.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(
            {
                "name": self.name,
                "input_shape": list(self.non_batch_input_shape),
                "examples": {word: np.stack(examples) for word, examples in self.transfer_examples.items()},
            },
            target,
        )
        return target

    def load_examples(self, path: Path | str, *, clear_existing: bool = False) -> dict[str, int]:
        source = Path(path)
        if source.is_dir():
            source = source / EXAMPLES_FILENAME
        payload = joblib.load(source)
        if tuple(payload.get("input_shape", ())) != self.non_batch_input_shape:
            raise ValueError(
                f"Examples at {source} have input shape {payload.get('input_shape')}, "
                f"expected {list(self.non_batch_input_shape)}"
            )
        if clear_existing or self.transfer_examples is None:
            self.transfer_examples = {}
        for word, examples in payload["examples"].items():
            self.transfer_examples.setdefault(str(word), []).extend(np.asarray(e, dtype=np.float32) for e in examples)
        self._collate_transfer_words()
        return self.count_examples()

    # ------------------------------------------------------------------ #
    # Training
    # ------------------------------------------------------------------ #

    def _collect_transfer_data(self) -> tuple[np.ndarray, np.ndarray]:
        xs: list[np.ndarray] = []
        targets: list[int] = []
        for index, word in enumerate(self.words):
            for example in self.transfer_examples[word]:
                xs.append(example)
                targets.append(index)
        return np.stack(xs).astype(np.float32), np.asarray(targets, dtype=np.int64)

    def _create_transfer_model_from_base_model(self) -> None:
        self.model = build_transfer_model(self.base_model, len(self.words))
        self._model_words = list(self.words)
        logger.info("Created transfer model '%s' for %d words", self.name, len(self.words))

    def train(self, config: TransferLearnConfig | None = None) -> TrainingHistory:
        """Fit the transfer head on the collected examples.

        The base layers up to its hidden dense layer stay frozen; only the new
        softmax layer is trained, with categorical cross-entropy.
        """
        if not self.words:
            raise RuntimeError(
                f"Cannot train transfer-learning model '{self.name}' because no transfer learning example "
                "has been collected."
            )
        if len(self.words) < 2:
            raise RuntimeError(
                f"Cannot train transfer-learning model '{self.name}' because only 1 word label "
                f"({json.dumps(self.words)}) has been collected for transfer learning. Requires at least 2."
            )
        if self._streaming:
            raise RuntimeError("Cannot train while streaming recognition is ongoing")

        config = config or TransferLearnConfig()
        if self.model is None or self._model_words != self.words:
            self._create_transfer_model_from_base_model()

        xs, ys = self._collect_transfer_data()
        X_val = y_val = None
        if config.validation_split > 0:
            xs, X_val, ys, y_val = train_test_split(
                xs, ys, test_size=config.validation_split, random_state=config.random_state, shuffle=True
            )

        if config.random_state is not None:
            torch.manual_seed(config.random_state)
        loader = DataLoader(
            TensorDataset(torch.as_tensor(xs), torch.as_tensor(ys)),
            batch_size=config.batch_size,
            shuffle=True,
        )
        trainable = [param for param in self.model.parameters() if param.requires_grad]
        optimizer = _make_optimizer(config.optimizer, trainable, config.learning_rate)

        history = TrainingHistory()
        _notify(config.callback, "on_train_begin")
        self.model.train()
        try:
            for epoch in range(config.epochs):
                running_loss = 0.0
                predictions: list[np.ndarray] = []
                labels: list[np.ndarray] = []
                for xb, yb in loader:
                    probs = self.model(xb)
                    loss = _categorical_crossentropy(probs, yb)
                    optimizer.zero_grad()
                    loss.backward()
                    optimizer.step()
                    running_loss += loss.item() * xb.shape[0]
                    predictions.append(probs.argmax(dim=-1).detach().numpy())
                    labels.append(yb.numpy())

                logs = {
                    "loss": running_loss / len(xs),
                    "acc": accuracy_score(np.concatenate(labels), np.concatenate(predictions)),
                }
                if X_val is not None:
                    self.model.eval()
                    with torch.no_grad():
                        val_probs = self.model(torch.as_tensor(X_val))
                        logs["val_loss"] = _categorical_crossentropy(val_probs, torch.as_tensor(y_val)).item()
                        logs["val_acc"] = accuracy_score(y_val, val_probs.argmax(dim=-1).numpy())
                    self.model.train()

                history.append(epoch, logs)
                logger.debug("Transfer model '%s' epoch %d: %s", self.name, epoch + 1, logs)
                _notify(config.callback, "on_epoch_end", epoch, logs)
        finally:
            self.model.eval()
        _notify(config.callback, "on_train_end", history)

        logger.info(
            "Trained transfer model '%s' for %d epochs (final loss %.4f)",
            self.name,
            config.epochs,
            history.history["loss"][-1],
        )
        return history

    def save(self, model_dir: Path | str) -> None:
        """Write the trained transfer model in a directory ``create(model_dir=...)`` can load."""
        if self.model is None:
            raise RuntimeError(f"The transfer-learning model '{self.name}' has not been trained yet.")
        save_model(self.model, self._model_words, self.non_batch_input_shape, model_dir, transfer=True)
