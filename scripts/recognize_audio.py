"""CLI helper that runs a speech-command recognizer over audio clips."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable, Iterator, Optional

import pandas as pd

# Add project root to PYTHONPATH
ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

from speech_commands import BrowserFftSpeechCommandRecognizer, compute_spectrogram, create, load_audio, normalize


def recognize_clip(
    recognizer: BrowserFftSpeechCommandRecognizer,
    audio_path: Path,
    *,
    k: int = 3,
) -> list[dict[str, float]]:
    recognizer.ensure_model_loaded()
    num_frames, frame_size, _ = recognizer.non_batch_input_shape
    params = recognizer.params()
    samples = load_audio(audio_path, sample_rate=params.sample_rate_hz)
    spectrogram = compute_spectrogram(samples, num_frames, frame_size, params)
    result = recognizer.recognize(normalize(spectrogram).reshape(-1))
    return recognizer.top_k(result.scores, k=k)


def _iter_audio_paths(inputs: Iterable[str], pattern: str) -> Iterator[Path]:
    for item in inputs:
        path = Path(item)
        if path.is_dir():
            yield from sorted(path.rglob(pattern))
        elif path.is_file():
            yield path
        else:
            print(f"[WARN] Skipping missing path: {path}", file=sys.stderr)


def recognize_many(
    recognizer: BrowserFftSpeechCommandRecognizer,
    inputs: Iterable[str],
    *,
    pattern: str = "**/*.wav",
    k: int = 3,
) -> pd.DataFrame:
    rows = []
    for audio_path in _iter_audio_paths(inputs, pattern):
        try:
            top = recognize_clip(recognizer, audio_path, k=k)
        except Exception as exc:
            print(f"[WARN] Failed on {audio_path}: {exc}", file=sys.stderr)
            continue
        row: dict[str, object] = {"source_path": str(audio_path)}
        for rank, item in enumerate(top, start=1):
            row[f"word_{rank}"] = item["word"]
            row[f"score_{rank}"] = item["score"]
        rows.append(row)
    if not rows:
        raise RuntimeError("No audio files were recognized")
    return pd.DataFrame(rows)


def _parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recognize speech commands in audio clips.")
    parser.add_argument("inputs", nargs="+", help="Audio files or directories to process")
    parser.add_argument("--pattern", default="**/*.wav", help="Glob used when walking directories (default: **/*.wav)")
    parser.add_argument("--model-dir", type=Path, default=None, help="Directory holding model.pt and metadata.json")
    parser.add_argument("--top-k", type=int, default=3, help="Number of best-scoring words to report")
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("data/speech_commands.csv"),
        help="Where to write the recognition table",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Iterable[str]] = None) -> None:
    args = _parse_args(argv)
    recognizer = create("BROWSER_FFT", model_dir=args.model_dir)
    df = recognize_many(recognizer, args.inputs, pattern=args.pattern, k=args.top_k)
    args.output.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(args.output, index=False)
    print(f"Saved {len(df)} rows to {args.output}")


if __name__ == "__main__":
    main()
