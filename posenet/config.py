"""Configuration and constants for the PoseNet model."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

PART_NAMES: Sequence[str] = (
    "nose",
    "leftEye",
    "rightEye",
    "leftEar",
    "rightEar",
    "leftShoulder",
    "rightShoulder",
    "leftElbow",
    "rightElbow",
    "leftWrist",
    "rightWrist",
    "leftHip",
    "rightHip",
    "leftKnee",
    "rightKnee",
    "leftAnkle",
    "rightAnkle",
)
NUM_KEYPOINTS = len(PART_NAMES)
PART_IDS: dict[str, int] = {name: idx for idx, name in enumerate(PART_NAMES)}

CONNECTED_PART_NAMES: Sequence[tuple[str, str]] = (
    ("leftHip", "leftShoulder"),
    ("leftElbow", "leftShoulder"),
    ("leftElbow", "leftWrist"),
    ("leftHip", "leftKnee"),
    ("leftKnee", "leftAnkle"),
    ("rightHip", "rightShoulder"),
    ("rightElbow", "rightShoulder"),
    ("rightElbow", "rightWrist"),
    ("rightHip", "rightKnee"),
    ("rightKnee", "rightAnkle"),
    ("leftShoulder", "rightShoulder"),
    ("leftHip", "rightHip"),
)
CONNECTED_PART_INDICES: Sequence[tuple[int, int]] = tuple(
    (PART_IDS[a], PART_IDS[b]) for a, b in CONNECTED_PART_NAMES
)

# Parent -> child edges of the tree walked when decoding multiple poses.
POSE_CHAIN: Sequence[tuple[str, str]] = (
    ("nose", "leftEye"),
    ("leftEye", "leftEar"),
    ("nose", "rightEye"),
    ("rightEye", "rightEar"),
    ("nose", "leftShoulder"),
    ("leftShoulder", "leftElbow"),
    ("leftElbow", "leftWrist"),
    ("leftShoulder", "leftHip"),
    ("leftHip", "leftKnee"),
    ("leftKnee", "leftAnkle"),
    ("nose", "rightShoulder"),
    ("rightShoulder", "rightElbow"),
    ("rightElbow", "rightWrist"),
    ("rightShoulder", "rightHip"),
    ("rightHip", "rightKnee"),
    ("rightKnee", "rightAnkle"),
)

VALID_OUTPUT_STRIDES: Sequence[int] = (8, 16, 32)
VALID_MULTIPLIERS: Sequence[float] = (0.5, 0.75, 1.0, 1.01)

# (layer type, stride) pairs of MobileNet v1 as used by the PoseNet checkpoints.
MOBILENET_ARCHITECTURE: Sequence[tuple[str, int]] = (
    ("conv2d", 2),
    ("separableConv", 1),
    ("separableConv", 2),
    ("separableConv", 1),
    ("separableConv", 2),
    ("separableConv", 1),
    ("separableConv", 2),
    ("separableConv", 1),
    ("separableConv", 1),
    ("separableConv", 1),
    ("separableConv", 1),
    ("separableConv", 1),
    ("separableConv", 2),
    ("separableConv", 1),
)
MOBILENET_BASE_DEPTHS: Sequence[int] = (32, 64, 128, 128, 256, 256, 512, 512, 512, 512, 512, 512, 1024, 1024)

CHECKPOINT_FILENAME = "posenet_mobilenet.pt"
CHECKPOINT_ENV_VAR = "POSENET_CHECKPOINT"

MIN_IMAGE_SCALE_FACTOR = 0.2
MAX_IMAGE_SCALE_FACTOR = 1.0


@dataclass(frozen=True)
class SinglePoseConfig:
    image_scale_factor: float = 0.5
    flip_horizontal: bool = False
    output_stride: int = 16


@dataclass(frozen=True)
class MultiPoseConfig(SinglePoseConfig):
    max_detections: int = 5
    score_threshold: float = 0.5
    nms_radius: float = 20.0


def default_checkpoint_path() -> Path | None:
    value = os.environ.get(CHECKPOINT_ENV_VAR)
    return Path(value) if value else None
