"""Single- and multi-person pose estimation on top of a MobileNet checkpoint."""
from .config import (
    CONNECTED_PART_INDICES,
    CONNECTED_PART_NAMES,
    NUM_KEYPOINTS,
    PART_IDS,
    PART_NAMES,
    POSE_CHAIN,
    MultiPoseConfig,
    SinglePoseConfig,
)
from .decode import decode_multiple_poses, decode_single_pose
from .keypoints import (
    flip_poses_horizontal,
    get_adjacent_keypoints,
    get_bounding_box,
    get_bounding_box_points,
    get_valid_resolution,
    scale_pose,
    scale_poses,
)
from .mobilenet import MobileNet
from .posenet import PoseNet, load, save_checkpoint
from .types import Keypoint, Pose, Vector2D

__all__ = [
    "CONNECTED_PART_INDICES",
    "CONNECTED_PART_NAMES",
    "NUM_KEYPOINTS",
    "PART_IDS",
    "PART_NAMES",
    "POSE_CHAIN",
    "MultiPoseConfig",
    "SinglePoseConfig",
    "decode_multiple_poses",
    "decode_single_pose",
    "flip_poses_horizontal",
    "get_adjacent_keypoints",
    "get_bounding_box",
    "get_bounding_box_points",
    "get_valid_resolution",
    "scale_pose",
    "scale_poses",
    "MobileNet",
    "PoseNet",
    "load",
    "save_checkpoint",
    "Keypoint",
    "Pose",
    "Vector2D",
]
