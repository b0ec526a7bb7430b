"""Result types produced by pose decoding."""
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Vector2D:
    x: float
    y: float


@dataclass(frozen=True)
class Keypoint:
    """A single body part in input-image pixel coordinates."""

    score: float
    position: Vector2D
    part: str

    def to_dict(self) -> dict:
        return {
            "score": float(self.score),
            "part": self.part,
            "position": {"x": float(self.position.x), "y": float(self.position.y)},
        }


@dataclass(frozen=True)
class Pose:
    keypoints: list[Keypoint] = field(default_factory=list)
    score: float = 0.0

    def get(self, part: str) -> Keypoint | None:
        for keypoint in self.keypoints:
            if keypoint.part == part:
                return keypoint
        return None

    def to_dict(self) -> dict:
        return {"score": float(self.score), "keypoints": [kp.to_dict() for kp in self.keypoints]}
