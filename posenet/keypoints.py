"""Helpers for working with decoded keypoints."""
from __future__ import annotations

from typing import Sequence

from .config import CONNECTED_PART_INDICES
from .types import Keypoint, Pose, Vector2D


def get_valid_resolution(image_scale_factor: float, input_dimension: int, output_stride: int) -> int:
    """Scale a dimension and round it down so that ``(r - 1) % output_stride == 0``."""
    even_resolution = max(int(input_dimension * image_scale_factor) - 1, 0)
    return even_resolution - (even_resolution % output_stride) + 1


def _either_point_below_confidence(a: float, b: float, min_confidence: float) -> bool:
    return a < min_confidence or b < min_confidence


def get_adjacent_keypoints(keypoints: Sequence[Keypoint], min_confidence: float) -> list[tuple[Keypoint, Keypoint]]:
    pairs = []
    for left, right in CONNECTED_PART_INDICES:
        if _either_point_below_confidence(keypoints[left].score, keypoints[right].score, min_confidence):
            continue
        pairs.append((keypoints[left], keypoints[right]))
    return pairs


def get_bounding_box(keypoints: Sequence[Keypoint]) -> dict[str, float]:
    if not keypoints:
        raise ValueError("Cannot compute a bounding box without keypoints")
    xs = [kp.position.x for kp in keypoints]
    ys = [kp.position.y for kp in keypoints]
    return {"min_x": min(xs), "max_x": max(xs), "min_y": min(ys), "max_y": max(ys)}


def get_bounding_box_points(keypoints: Sequence[Keypoint]) -> list[Vector2D]:
    box = get_bounding_box(keypoints)
    return [
        Vector2D(x=box["min_x"], y=box["min_y"]),
        Vector2D(x=box["max_x"], y=box["min_y"]),
        Vector2D(x=box["max_x"], y=box["max_y"]),
        Vector2D(x=box["min_x"], y=box["max_y"]),
    ]


def scale_pose(pose: Pose, scale_y: float, scale_x: float) -> Pose:
    keypoints = [
        Keypoint(
            score=kp.score,
            part=kp.part,
            position=Vector2D(x=kp.position.x * scale_x, y=kp.position.y * scale_y),
        )
        for kp in pose.keypoints
    ]
    return Pose(keypoints=keypoints, score=pose.score)


def scale_poses(poses: Sequence[Pose], scale_y: float, scale_x: float) -> list[Pose]:
    if scale_x == 1 and scale_y == 1:
        return list(poses)
    return [scale_pose(pose, scale_y, scale_x) for pose in poses]


def flip_pose_horizontal(pose: Pose, image_width: int) -> Pose:
    keypoints = [
        Keypoint(
            score=kp.score,
            part=kp.part,
            position=Vector2D(x=image_width - 1 - kp.position.x, y=kp.position.y),
        )
        for kp in pose.keypoints
    ]
    return Pose(keypoints=keypoints, score=pose.score)


def flip_poses_horizontal(poses: Sequence[Pose], image_width: int) -> list[Pose]:
    if image_width <= 0:
        return list(poses)
    return [flip_pose_horizontal(pose, image_width) for pose in poses]
