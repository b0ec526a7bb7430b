"""Decoding of PoseNet output tensors into poses.

All arrays are laid out ``(height, width, channels)`` in heatmap space; the
returned positions are in the coordinates of the image fed to the network.
"""
from __future__ import annotations

import heapq
import math
from typing import NamedTuple

import numpy as np

from .config import NUM_KEYPOINTS, PART_IDS, PART_NAMES, POSE_CHAIN
from .types import Keypoint, Pose, Vector2D

LOCAL_MAXIMUM_RADIUS = 1

_PARENT_CHILD = [(PART_IDS[parent], PART_IDS[child]) for parent, child in POSE_CHAIN]
PARENT_TO_CHILD_EDGES = [child for _, child in _PARENT_CHILD]
CHILD_TO_PARENT_EDGES = [parent for parent, _ in _PARENT_CHILD]


class PartWithScore(NamedTuple):
    score: float
    heatmap_y: int
    heatmap_x: int
    keypoint_id: int


def _offset_point(y: int, x: int, keypoint_id: int, offsets: np.ndarray) -> Vector2D:
    return Vector2D(
        x=float(offsets[y, x, keypoint_id + NUM_KEYPOINTS]),
        y=float(offsets[y, x, keypoint_id]),
    )


def _image_coords(part: PartWithScore, output_stride: int, offsets: np.ndarray) -> Vector2D:
    offset = _offset_point(part.heatmap_y, part.heatmap_x, part.keypoint_id, offsets)
    return Vector2D(
        x=part.heatmap_x * output_stride + offset.x,
        y=part.heatmap_y * output_stride + offset.y,
    )


def _squared_distance(a: Vector2D, b: Vector2D) -> float:
    dy = b.y - a.y
    dx = b.x - a.x
    return dx * dx + dy * dy


def decode_single_pose(heatmap_scores: np.ndarray, offsets: np.ndarray, output_stride: int) -> Pose:
    height, width, num_keypoints = heatmap_scores.shape
    flat = heatmap_scores.reshape(height * width, num_keypoints)
    argmax = flat.argmax(axis=0)
    ys, xs = np.divmod(argmax, width)

    keypoints = []
    total = 0.0
    for keypoint_id in range(num_keypoints):
        y, x = int(ys[keypoint_id]), int(xs[keypoint_id])
        score = float(heatmap_scores[y, x, keypoint_id])
        offset = _offset_point(y, x, keypoint_id, offsets)
        keypoints.append(
            Keypoint(
                score=score,
                part=PART_NAMES[keypoint_id],
                position=Vector2D(x=x * output_stride + offset.x, y=y * output_stride + offset.y),
            )
        )
        total += score
    return Pose(keypoints=keypoints, score=total / num_keypoints)


def _score_is_local_maximum(keypoint_id: int, score: float, y: int, x: int, scores: np.ndarray) -> bool:
    height, width = scores.shape[:2]
    y_start = max(y - LOCAL_MAXIMUM_RADIUS, 0)
    y_end = min(y + LOCAL_MAXIMUM_RADIUS + 1, height)
    x_start = max(x - LOCAL_MAXIMUM_RADIUS, 0)
    x_end = min(x + LOCAL_MAXIMUM_RADIUS + 1, width)
    return not np.any(scores[y_start:y_end, x_start:x_end, keypoint_id] > score)


def build_part_with_score_queue(score_threshold: float, scores: np.ndarray) -> list[tuple[float, int, PartWithScore]]:
    """Return a heap of local-maximum parts; pop order is highest score first."""
    queue: list[tuple[float, int, PartWithScore]] = []
    candidates = np.argwhere(scores >= score_threshold)
    for y, x, keypoint_id in candidates:
        score = float(scores[y, x, keypoint_id])
        if _score_is_local_maximum(int(keypoint_id), score, int(y), int(x), scores):
            part = PartWithScore(score, int(y), int(x), int(keypoint_id))
            heapq.heappush(queue, (-score, len(queue), part))
    return queue


def _strided_index_near_point(point: Vector2D, output_stride: int, height: int, width: int) -> tuple[int, int]:
    y = min(max(math.floor(point.y / output_stride + 0.5), 0), height - 1)
    x = min(max(math.floor(point.x / output_stride + 0.5), 0), width - 1)
    return y, x


def _traverse_to_target_keypoint(
    edge_id: int,
    source: Keypoint,
    target_keypoint_id: int,
    scores: np.ndarray,
    offsets: np.ndarray,
    output_stride: int,
    displacements: np.ndarray,
) -> Keypoint:
    height, width = scores.shape[:2]
    num_edges = displacements.shape[2] // 2

    source_y, source_x = _strided_index_near_point(source.position, output_stride, height, width)
    displaced = Vector2D(
        x=source.position.x + float(displacements[source_y, source_x, num_edges + edge_id]),
        y=source.position.y + float(displacements[source_y, source_x, edge_id]),
    )
    y, x = _strided_index_near_point(displaced, output_stride, height, width)
    offset = _offset_point(y, x, target_keypoint_id, offsets)
    return Keypoint(
        score=float(scores[y, x, target_keypoint_id]),
        part=PART_NAMES[target_keypoint_id],
        position=Vector2D(x=x * output_stride + offset.x, y=y * output_stride + offset.y),
    )


def decode_pose(
    root: PartWithScore,
    scores: np.ndarray,
    offsets: np.ndarray,
    output_stride: int,
    displacements_fwd: np.ndarray,
    displacements_bwd: np.ndarray,
) -> list[Keypoint]:
    num_parts = scores.shape[2]
    num_edges = len(PARENT_TO_CHILD_EDGES)
    keypoints: list[Keypoint | None] = [None] * num_parts

    keypoints[root.keypoint_id] = Keypoint(
        score=root.score,
        part=PART_NAMES[root.keypoint_id],
        position=_image_coords(root, output_stride, offsets),
    )

    for edge in reversed(range(num_edges)):
        source_id = PARENT_TO_CHILD_EDGES[edge]
        target_id = CHILD_TO_PARENT_EDGES[edge]
        if keypoints[source_id] is not None and keypoints[target_id] is None:
            keypoints[target_id] = _traverse_to_target_keypoint(
                edge, keypoints[source_id], target_id, scores, offsets, output_stride, displacements_bwd
            )

    for edge in range(num_edges):
        source_id = CHILD_TO_PARENT_EDGES[edge]
        target_id = PARENT_TO_CHILD_EDGES[edge]
        if keypoints[source_id] is not None and keypoints[target_id] is None:
            keypoints[target_id] = _traverse_to_target_keypoint(
                edge, keypoints[source_id], target_id, scores, offsets, output_stride, displacements_fwd
            )

    return keypoints  # type: ignore[return-value]


def _within_nms_radius(poses: list[Pose], squared_nms_radius: float, point: Vector2D, keypoint_id: int) -> bool:
    return any(
        _squared_distance(point, pose.keypoints[keypoint_id].position) <= squared_nms_radius for pose in poses
    )


def _instance_score(existing: list[Pose], squared_nms_radius: float, keypoints: list[Keypoint]) -> float:
    total = 0.0
    for keypoint_id, keypoint in enumerate(keypoints):
        if not _within_nms_radius(existing, squared_nms_radius, keypoint.position, keypoint_id):
            total += keypoint.score
    return total / len(keypoints)


def decode_multiple_poses(
    heatmap_scores: np.ndarray,
    offsets: np.ndarray,
    displacements_fwd: np.ndarray,
    displacements_bwd: np.ndarray,
    output_stride: int,
    max_pose_detections: int,
    score_threshold: float = 0.5,
    nms_radius: float = 20,
) -> list[Pose]:
    poses: list[Pose] = []
    queue = build_part_with_score_queue(score_threshold, heatmap_scores)
    squared_nms_radius = nms_radius * nms_radius

    while len(poses) < max_pose_detections and queue:
        _, _, root = heapq.heappop(queue)
        root_coords = _image_coords(root, output_stride, offsets)
        if _within_nms_radius(poses, squared_nms_radius, root_coords, root.keypoint_id):
            continue

        keypoints = decode_pose(root, heatmap_scores, offsets, output_stride, displacements_fwd, displacements_bwd)
        score = _instance_score(poses, squared_nms_radius, keypoints)
        poses.append(Pose(keypoints=keypoints, score=score))

    return poses
