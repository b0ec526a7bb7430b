"""CLI entrypoint for training a transfer-learning speech-command model."""
from __future__ import annotations

import argparse
from pathlib import Path
import sys

# Add project root to PYTHONPATH
ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

from speech_commands import TransferLearnConfig, TransferSpeechCommandRecognizer, compute_spectrogram, create, load_audio


_DEFAULT_EXAMPLES_DIR = Path("data/transfer_examples")
_DEFAULT_OUTPUT_DIR = Path("speech_commands/transfer_artifacts")


def _optional_int(value: str) -> int | None:
    if value.lower() == "none":
        return None
    return int(value)


def _optional_float(value: str) -> float | None:
    if value.lower() == "none":
        return None
    return float(value)


def add_examples_from_directory(
    transfer: TransferSpeechCommandRecognizer,
    examples_dir: Path,
    *,
    pattern: str = "*.wav",
) -> dict[str, int]:
    """Add one example per clip; each subdirectory of *examples_dir* names a word."""
    num_frames, frame_size, _ = transfer.non_batch_input_shape
    params = transfer.params()
    for word_dir in sorted(p for p in examples_dir.iterdir() if p.is_dir()):
        for clip in sorted(word_dir.glob(pattern)):
            samples = load_audio(clip, sample_rate=params.sample_rate_hz)
            transfer.add_example(word_dir.name, compute_spectrogram(samples, num_frames, frame_size, params))
    return transfer.count_examples()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Train a transfer-learning speech-command model from labelled clips.")
    parser.add_argument("--base-model-dir", type=Path, default=None, help="Directory of the base model (model.pt + metadata.json)")
    parser.add_argument("--examples", type=Path, default=_DEFAULT_EXAMPLES_DIR, help="Directory with one subdirectory of clips per word")
    parser.add_argument("--pattern", type=str, default="*.wav", help="Glob for clips inside each word directory")
    parser.add_argument("--name", type=str, default="transfer", help="Name of the transfer-learning model")
    parser.add_argument("--output", type=Path, default=_DEFAULT_OUTPUT_DIR, help="Directory to store the trained model")
    parser.add_argument("--epochs", type=int, default=20, help="Training epochs")
    parser.add_argument("--batch-size", type=int, default=128, help="Training batch size")
    parser.add_argument("--validation-split", type=float, default=0.0, help="Hold-out validation fraction")
    parser.add_argument("--optimizer", type=str, default="sgd", help="sgd, adam, rmsprop or adagrad")
    parser.add_argument("--learning-rate", type=_optional_float, default=None, help="Learning rate (None = optimizer default)")
    parser.add_argument("--random-state", type=_optional_int, default=None, help="Random seed")
    parser.add_argument("--save-examples", action="store_true", help="Also persist the collected examples")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    config = TransferLearnConfig(
        epochs=args.epochs,
        optimizer=args.optimizer,
        batch_size=args.batch_size,
        validation_split=args.validation_split,
        learning_rate=args.learning_rate,
        random_state=args.random_state,
    )
    recognizer = create("BROWSER_FFT", model_dir=args.base_model_dir)
    recognizer.ensure_model_loaded()
    transfer = recognizer.create_transfer(args.name)

    counts = add_examples_from_directory(transfer, args.examples, pattern=args.pattern)
    print(f"Collected examples: {counts}")

    history = transfer.train(config)
    transfer.save(args.output)
    if args.save_examples:
        transfer.save_examples(args.output)

    acc = history.history["acc"][-1]
    print(f"Final training accuracy: {acc:.3f}")
    print(f"Artifacts saved to {args.output}")


if __name__ == "__main__":
    main()
