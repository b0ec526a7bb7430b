"""Inference façade that turns images into decoded poses."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

import numpy as np
import torch
import torch.nn.functional as F  # noqa: N812

from .config import (
    MAX_IMAGE_SCALE_FACTOR,
    MIN_IMAGE_SCALE_FACTOR,
    MultiPoseConfig,
    SinglePoseConfig,
    default_checkpoint_path,
)
from .decode import decode_multiple_poses, decode_single_pose
from .keypoints import flip_poses_horizontal, get_valid_resolution, scale_poses
from .mobilenet import MobileNet, check_multiplier, check_output_stride
from .types import Pose

logger = logging.getLogger(__name__)

ImageInput = Union[np.ndarray, torch.Tensor]


def _check_image_scale_factor(image_scale_factor: float) -> None:
    if not MIN_IMAGE_SCALE_FACTOR <= image_scale_factor <= MAX_IMAGE_SCALE_FACTOR:
        raise ValueError(
            f"imageScaleFactor should be between {MIN_IMAGE_SCALE_FACTOR} and {MAX_IMAGE_SCALE_FACTOR}, "
            f"got {image_scale_factor}"
        )


def _as_image_tensor(image: ImageInput) -> torch.Tensor:
    tensor = image if isinstance(image, torch.Tensor) else torch.as_tensor(np.asarray(image))
    if tensor.ndim != 3 or tensor.shape[-1] != 3:
        raise ValueError(f"Expected an image of shape (height, width, 3), got {tuple(tensor.shape)}")
    return tensor.detach().to(torch.float32)


def _to_numpy(tensor: torch.Tensor) -> np.ndarray:
    # (1, C, H, W) -> (H, W, C)
    return tensor[0].permute(1, 2, 0).cpu().numpy().copy()


class PoseNet:
    """Loadable pose estimator wrapping a MobileNet checkpoint."""

    def __init__(self, mobile_net: MobileNet) -> None:
        self.mobile_net = mobile_net
        self.mobile_net.eval()

    def _require_model(self) -> MobileNet:
        if self.mobile_net is None:
            raise RuntimeError("PoseNet has been disposed")
        return self.mobile_net

    def _resize_and_predict(
        self, image: ImageInput, image_scale_factor: float, output_stride: int
    ) -> tuple[dict[str, np.ndarray], int, int, int, int]:
        check_output_stride(output_stride)
        _check_image_scale_factor(image_scale_factor)
        model = self._require_model()

        pixels = _as_image_tensor(image)
        height, width = int(pixels.shape[0]), int(pixels.shape[1])
        resized_height = get_valid_resolution(image_scale_factor, height, output_stride)
        resized_width = get_valid_resolution(image_scale_factor, width, output_stride)

        with torch.no_grad():
            batch = pixels.permute(2, 0, 1).unsqueeze(0)
            batch = F.interpolate(batch, size=(resized_height, resized_width), mode="bilinear", align_corners=False)
            batch = batch * (2.0 / 255.0) - 1.0
            outputs = model(batch, output_stride)
            arrays = {name: _to_numpy(tensor) for name, tensor in outputs.items()}

        return arrays, height, width, resized_height, resized_width

    def predict_for_single_pose(self, image: ImageInput, output_stride: int = 16) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(heatmap_scores, offsets)`` for an image already at a valid resolution."""
        arrays, *_ = self._resize_and_predict(image, MAX_IMAGE_SCALE_FACTOR, output_stride)
        return arrays["heatmap"], arrays["offset"]

    def predict_for_multi_pose(
        self, image: ImageInput, output_stride: int = 16
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        arrays, *_ = self._resize_and_predict(image, MAX_IMAGE_SCALE_FACTOR, output_stride)
        return arrays["heatmap"], arrays["offset"], arrays["displacement_fwd"], arrays["displacement_bwd"]

    def estimate_single_pose(
        self,
        image: ImageInput,
        image_scale_factor: float = SinglePoseConfig.image_scale_factor,
        flip_horizontal: bool = SinglePoseConfig.flip_horizontal,
        output_stride: int = SinglePoseConfig.output_stride,
    ) -> Pose:
        """Estimate the single most prominent pose in *image*.

        Keypoint positions are reported in the pixel coordinates of the
        original image; with ``flip_horizontal`` they are mirrored, which is
        what a front-facing webcam feed usually wants.
        """
        arrays, height, width, resized_height, resized_width = self._resize_and_predict(
            image, image_scale_factor, output_stride
        )
        pose = decode_single_pose(arrays["heatmap"], arrays["offset"], output_stride)

        poses = scale_poses([pose], height / resized_height, width / resized_width)
        if flip_horizontal:
            poses = flip_poses_horizontal(poses, width)
        return poses[0]

    def estimate_multiple_poses(
        self,
        image: ImageInput,
        image_scale_factor: float = MultiPoseConfig.image_scale_factor,
        flip_horizontal: bool = MultiPoseConfig.flip_horizontal,
        output_stride: int = MultiPoseConfig.output_stride,
        max_detections: int = MultiPoseConfig.max_detections,
        score_threshold: float = MultiPoseConfig.score_threshold,
        nms_radius: float = MultiPoseConfig.nms_radius,
    ) -> list[Pose]:
        """Estimate up to *max_detections* poses in *image*.

        Parts scoring below ``score_threshold`` never seed a pose, and two
        poses may not share a keypoint within ``nms_radius`` pixels of the
        resized image.
        """
        if max_detections <= 0:
            raise ValueError(f"maxDetections should be positive, got {max_detections}")
        arrays, height, width, resized_height, resized_width = self._resize_and_predict(
            image, image_scale_factor, output_stride
        )
        poses = decode_multiple_poses(
            arrays["heatmap"],
            arrays["offset"],
            arrays["displacement_fwd"],
            arrays["displacement_bwd"],
            output_stride,
            max_detections,
            score_threshold=score_threshold,
            nms_radius=nms_radius,
        )
        logger.debug("Decoded %d poses at output stride %d", len(poses), output_stride)

        poses = scale_poses(poses, height / resized_height, width / resized_width)
        if flip_horizontal:
            poses = flip_poses_horizontal(poses, width)
        return poses

    def dispose(self) -> None:
        self.mobile_net = None


def load(multiplier: float = 1.01, checkpoint_path: Path | str | None = None) -> PoseNet:
    """Build a PoseNet and load its weights.

    ``checkpoint_path`` falls back to the ``POSENET_CHECKPOINT`` environment
    variable. Without either, the network keeps its random initialisation,
    which is only useful for tests and benchmarking.
    """
    check_multiplier(multiplier)
    mobile_net = MobileNet(multiplier)

    path = Path(checkpoint_path) if checkpoint_path is not None else default_checkpoint_path()
    if path is None:
        logger.warning("No PoseNet checkpoint configured; using randomly initialised weights")
    else:
        if not path.exists():
            raise FileNotFoundError(f"PoseNet checkpoint not found at {path}")
        state_dict = torch.load(path, map_location="cpu")
        mobile_net.load_state_dict(state_dict)
        logger.info("Loaded PoseNet checkpoint from %s (multiplier=%s)", path, multiplier)

    return PoseNet(mobile_net)


def save_checkpoint(pose_net: PoseNet, path: Path | str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    torch.save(pose_net._require_model().state_dict(), path)
