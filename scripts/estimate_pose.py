"""CLI helper that estimates poses on image files and writes them as JSON."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Iterable, Iterator, Optional

import cv2
import numpy as np

# Add project root to PYTHONPATH
ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

import posenet


def read_rgb(image_path: Path) -> np.ndarray:
    frame = cv2.imread(str(image_path), cv2.IMREAD_COLOR)
    if frame is None:
        raise ValueError(f"Could not decode image {image_path}")
    return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)


def _iter_image_paths(inputs: Iterable[str], pattern: str) -> Iterator[Path]:
    for item in inputs:
        path = Path(item)
        if path.is_dir():
            yield from sorted(path.rglob(pattern))
        elif path.is_file():
            yield path
        else:
            print(f"[WARN] Skipping missing path: {path}", file=sys.stderr)


def estimate_many(
    net: posenet.PoseNet,
    inputs: Iterable[str],
    *,
    pattern: str = "**/*.jpg",
    multi: bool = False,
    image_scale_factor: float = 0.5,
    output_stride: int = 16,
    max_detections: int = 5,
    score_threshold: float = 0.5,
    nms_radius: float = 20,
) -> list[dict]:
    results = []
    for image_path in _iter_image_paths(inputs, pattern):
        try:
            rgb = read_rgb(image_path)
        except ValueError as exc:
            print(f"[WARN] Failed on {image_path}: {exc}", file=sys.stderr)
            continue
        if multi:
            poses = net.estimate_multiple_poses(
                rgb,
                image_scale_factor=image_scale_factor,
                output_stride=output_stride,
                max_detections=max_detections,
                score_threshold=score_threshold,
                nms_radius=nms_radius,
            )
        else:
            poses = [net.estimate_single_pose(rgb, image_scale_factor=image_scale_factor, output_stride=output_stride)]
        results.append({"source_path": str(image_path), "poses": [pose.to_dict() for pose in poses]})
    return results


def _parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Estimate human poses in images.")
    parser.add_argument("inputs", nargs="+", help="Image files or directories to process")
    parser.add_argument("--pattern", default="**/*.jpg", help="Glob used when walking directories (default: **/*.jpg)")
    parser.add_argument("--checkpoint", type=Path, default=None, help="PoseNet state_dict checkpoint")
    parser.add_argument("--multiplier", type=float, default=1.01, help="MobileNet depth multiplier")
    parser.add_argument("--multi", action="store_true", help="Detect multiple poses per image")
    parser.add_argument("--image-scale-factor", type=float, default=0.5, help="Scale applied before inference")
    parser.add_argument("--output-stride", type=int, default=16, help="Output stride: 8, 16 or 32")
    parser.add_argument("--max-detections", type=int, default=5, help="Maximum poses per image (multi only)")
    parser.add_argument("--score-threshold", type=float, default=0.5, help="Minimum root part score (multi only)")
    parser.add_argument("--nms-radius", type=float, default=20, help="Non-maximum suppression radius (multi only)")
    parser.add_argument("--output", type=Path, default=Path("data/poses.json"), help="Where to write the poses")
    return parser.parse_args(argv)


def main(argv: Optional[Iterable[str]] = None) -> None:
    args = _parse_args(argv)
    net = posenet.load(args.multiplier, args.checkpoint)
    results = estimate_many(
        net,
        args.inputs,
        pattern=args.pattern,
        multi=args.multi,
        image_scale_factor=args.image_scale_factor,
        output_stride=args.output_stride,
        max_detections=args.max_detections,
        score_threshold=args.score_threshold,
        nms_radius=args.nms_radius,
    )
    args.output.parent.mkdir(parents=True, exist_ok=True)
    with args.output.open("w", encoding="utf-8") as fp:
        json.dump(results, fp, indent=2)
    print(f"Saved poses for {len(results)} images to {args.output}")


if __name__ == "__main__":
    main()
