"""Speech-command network definition and artifact persistence."""
from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Sequence

import torch
import torch.nn as nn

from .config import DEFAULT_HIDDEN_UNITS, METADATA_FILENAME, MODEL_FILENAME

logger = logging.getLogger(__name__)

_ACTIVATIONS = (nn.ReLU, nn.ReLU6, nn.Tanh, nn.Sigmoid, nn.ELU)


class ChannelsFirst(nn.Module):
    """Reorder ``(N, frames, bins, 1)`` spectrogram batches to ``(N, 1, frames, bins)``."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x.permute(0, 3, 1, 2)


def build_model(
    input_shape: Sequence[int],
    num_words: int,
    hidden_units: int = DEFAULT_HIDDEN_UNITS,
) -> nn.Sequential:
    """Convolutional classifier over ``(frames, bins, 1)`` spectrograms with softmax output."""
    if len(input_shape) != 3 or input_shape[2] != 1:
        raise ValueError(f"Expected input_shape (frames, bins, 1), got {tuple(input_shape)}")
    if num_words < 1:
        raise ValueError(f"Expected at least one word, got {num_words}")

    features = nn.Sequential(
        ChannelsFirst(),
        nn.Conv2d(1, 8, kernel_size=(2, 8)),
        nn.ReLU(),
        nn.MaxPool2d(2),
        nn.Conv2d(8, 32, kernel_size=(2, 4)),
        nn.ReLU(),
        nn.MaxPool2d(2),
        nn.Conv2d(32, 32, kernel_size=(2, 4)),
        nn.ReLU(),
        nn.MaxPool2d(2),
        nn.Conv2d(32, 32, kernel_size=(2, 4)),
        nn.ReLU(),
        nn.MaxPool2d(2, ceil_mode=True),
        nn.Flatten(),
    )
    with torch.no_grad():
        flat_size = features(torch.zeros(1, *input_shape)).shape[1]

    return nn.Sequential(
        *features,
        nn.Dropout(0.25),
        nn.Linear(flat_size, hidden_units),
        nn.ReLU(),
        nn.Dropout(0.5),
        nn.Linear(hidden_units, num_words),
        nn.Softmax(dim=-1),
    )


def output_units(model: nn.Sequential) -> int:
    dense = [layer for layer in model if isinstance(layer, nn.Linear)]
    if not dense:
        raise ValueError("Model has no dense output layer")
    return dense[-1].out_features


def find_hidden_dense_layer(model: nn.Sequential) -> int:
    """Index of the dense layer that feeds the output dense layer."""
    dense = [idx for idx, layer in enumerate(model) if isinstance(layer, nn.Linear)]
    if len(dense) < 2:
        raise RuntimeError("Cannot find a hidden dense layer in the base model.")
    return dense[-2]


def build_transfer_model(base: nn.Sequential, num_words: int) -> nn.Sequential:
    """Truncate *base* after its hidden dense layer, freeze it and add a new softmax head."""
    hidden_index = find_hidden_dense_layer(base)
    layers = [copy.deepcopy(layer) for layer in base[: hidden_index + 1]]
    for layer in base[hidden_index + 1 :]:
        if not isinstance(layer, _ACTIVATIONS):
            break
        layers.append(copy.deepcopy(layer))
    for layer in layers:
        for param in layer.parameters():
            param.requires_grad_(False)

    hidden_units = base[hidden_index].out_features
    return nn.Sequential(*layers, nn.Linear(hidden_units, num_words), nn.Softmax(dim=-1))


def save_model(
    model: nn.Sequential,
    words: Sequence[str],
    input_shape: Sequence[int],
    model_dir: Path | str,
    *,
    transfer: bool = False,
) -> None:
    model_path = Path(model_dir)
    model_path.mkdir(parents=True, exist_ok=True)

    hidden_units = model[find_hidden_dense_layer(model)].out_features
    torch.save(
        {
            "state_dict": model.state_dict(),
            "input_shape": list(input_shape),
            "num_words": len(words),
            "hidden_units": hidden_units,
            "transfer": transfer,
        },
        model_path / MODEL_FILENAME,
    )
    with (model_path / METADATA_FILENAME).open("w", encoding="utf-8") as fp:
        json.dump({"words": list(words), "frameSize": int(input_shape[1])}, fp, indent=2)


def load_model(model_dir: Path | str) -> tuple[nn.Sequential, tuple[int, ...]]:
    model_path = Path(model_dir) / MODEL_FILENAME
    if not model_path.exists():
        raise FileNotFoundError(f"Speech-command model not found at {model_path}")

    data = torch.load(model_path, map_location="cpu", weights_only=False)
    input_shape = tuple(int(dim) for dim in data["input_shape"])
    hidden_units = data.get("hidden_units") or DEFAULT_HIDDEN_UNITS
    if data.get("transfer"):
        # the base head width is irrelevant, it is replaced by the transfer head
        model = build_transfer_model(build_model(input_shape, 1, hidden_units), data["num_words"])
    else:
        model = build_model(input_shape, data["num_words"], hidden_units)
    model.load_state_dict(data["state_dict"])
    model.eval()
    logger.info("Loaded speech-command model from %s (input shape %s)", model_path, input_shape)
    return model, input_shape


def load_metadata(model_dir: Path | str) -> list[str]:
    metadata_file = Path(model_dir) / METADATA_FILENAME
    with metadata_file.open("r", encoding="utf-8") as fp:
        data = json.load(fp)
    words = data.get("words") if isinstance(data, dict) else None
    if not isinstance(words, list):
        raise ValueError(f"Metadata file at {metadata_file} does not contain a 'words' list")
    return [str(word) for word in words]
