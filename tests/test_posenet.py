import numpy as np
import pytest
import torch

import posenet
from posenet import Keypoint, Pose, Vector2D


@pytest.fixture
def image():
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(129, 129, 3), dtype=np.uint8)


@pytest.mark.parametrize("output_stride, size", [(8, 17), (16, 9), (32, 5)])
def test_predict_for_multi_pose_output_shapes(pose_net, image, output_stride, size):
    heatmap, offsets, fwd, bwd = pose_net.predict_for_multi_pose(image, output_stride)

    assert heatmap.shape == (size, size, 17)
    assert offsets.shape == (size, size, 34)
    assert fwd.shape == (size, size, 32)
    assert bwd.shape == (size, size, 32)
    assert np.all((heatmap >= 0) & (heatmap <= 1))


def test_estimate_single_pose_returns_plain_results(pose_net, image):
    pose = pose_net.estimate_single_pose(image, output_stride=32)

    assert isinstance(pose, Pose)
    assert [kp.part for kp in pose.keypoints] == list(posenet.PART_NAMES)
    assert all(isinstance(kp.score, float) for kp in pose.keypoints)
    assert all(isinstance(kp.position.x, float) for kp in pose.keypoints)
    assert 0.0 <= pose.score <= 1.0
    assert torch.is_grad_enabled()


def test_estimate_multiple_poses_caps_detections(pose_net, image):
    poses = pose_net.estimate_multiple_poses(image, output_stride=16, max_detections=2, score_threshold=0.0)

    assert 1 <= len(poses) <= 2
    for pose in poses:
        assert len(pose.keypoints) == 17


def test_estimate_accepts_torch_tensor(pose_net, image):
    from_array = pose_net.estimate_single_pose(image, output_stride=16)
    from_tensor = pose_net.estimate_single_pose(torch.from_numpy(image), output_stride=16)

    assert from_tensor.score == pytest.approx(from_array.score)


def test_flip_horizontal_mirrors_x(pose_net, image):
    plain = pose_net.estimate_single_pose(image, output_stride=16)
    flipped = pose_net.estimate_single_pose(image, output_stride=16, flip_horizontal=True)

    for a, b in zip(plain.keypoints, flipped.keypoints):
        assert b.position.x == pytest.approx(image.shape[1] - 1 - a.position.x)
        assert b.position.y == pytest.approx(a.position.y)


def test_invalid_arguments_raise(pose_net, image):
    with pytest.raises(ValueError):
        pose_net.estimate_single_pose(image, output_stride=12)
    with pytest.raises(ValueError):
        pose_net.estimate_single_pose(image, image_scale_factor=0.1)
    with pytest.raises(ValueError):
        pose_net.estimate_single_pose(np.zeros((10, 10), dtype=np.uint8))
    with pytest.raises(ValueError):
        posenet.load(multiplier=0.3)


def test_checkpoint_round_trip(tmp_path, image):
    net = posenet.load(multiplier=0.5)
    checkpoint = tmp_path / "posenet.pt"
    posenet.save_checkpoint(net, checkpoint)

    reloaded = posenet.load(multiplier=0.5, checkpoint_path=checkpoint)

    assert reloaded.estimate_single_pose(image).score == pytest.approx(net.estimate_single_pose(image).score)
    with pytest.raises(FileNotFoundError):
        posenet.load(multiplier=0.5, checkpoint_path=tmp_path / "missing.pt")


def test_dispose_blocks_further_use(image):
    net = posenet.load(multiplier=0.5)
    net.dispose()
    with pytest.raises(RuntimeError):
        net.estimate_single_pose(image)


def _pose(score: float = 0.9, low: str | None = None) -> Pose:
    keypoints = [
        Keypoint(score=0.1 if part == low else score, part=part, position=Vector2D(x=float(i), y=float(2 * i)))
        for i, part in enumerate(posenet.PART_NAMES)
    ]
    return Pose(keypoints=keypoints, score=score)


def test_get_valid_resolution():
    assert posenet.get_valid_resolution(0.5, 513, 16) == 241
    assert posenet.get_valid_resolution(1.0, 129, 16) == 129
    assert (posenet.get_valid_resolution(0.75, 640, 8) - 1) % 8 == 0


def test_get_adjacent_keypoints_skips_low_confidence_parts():
    pose = _pose(low="leftHip")

    pairs = posenet.get_adjacent_keypoints(pose.keypoints, min_confidence=0.5)

    assert len(pairs) == len(posenet.CONNECTED_PART_NAMES) - 3
    assert all("leftHip" not in (a.part, b.part) for a, b in pairs)


def test_bounding_box_and_transforms():
    pose = _pose()

    box = posenet.get_bounding_box(pose.keypoints)
    assert box == {"min_x": 0.0, "max_x": 16.0, "min_y": 0.0, "max_y": 32.0}
    corners = posenet.get_bounding_box_points(pose.keypoints)
    assert corners[2] == Vector2D(x=16.0, y=32.0)

    scaled = posenet.scale_pose(pose, 2.0, 0.5)
    assert scaled.get("rightAnkle").position == Vector2D(x=8.0, y=64.0)

    flipped = posenet.flip_poses_horizontal([pose], 100)[0]
    assert flipped.get("nose").position.x == pytest.approx(99.0)
    assert pose.to_dict()["keypoints"][1]["part"] == "leftEye"
