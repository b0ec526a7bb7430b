"""MobileNet v1 backbone with the four PoseNet output heads.

The strides of the backbone are chosen per call: once the cumulative stride
reaches the requested output stride, the remaining strided layers run with
stride 1 and an atrous rate instead, so one set of weights serves output
strides 8, 16 and 32.
"""
from __future__ import annotations

import logging
import math

import torch
import torch.nn as nn
import torch.nn.functional as F  # noqa: N812

from .config import (
    MOBILENET_ARCHITECTURE,
    MOBILENET_BASE_DEPTHS,
    NUM_KEYPOINTS,
    POSE_CHAIN,
    VALID_MULTIPLIERS,
    VALID_OUTPUT_STRIDES,
)

logger = logging.getLogger(__name__)


def check_multiplier(multiplier: float) -> None:
    if multiplier not in VALID_MULTIPLIERS:
        raise ValueError(
            f"Invalid multiplier {multiplier}. Should be one of {', '.join(str(m) for m in VALID_MULTIPLIERS)}"
        )


def check_output_stride(output_stride: int) -> None:
    if output_stride not in VALID_OUTPUT_STRIDES:
        raise ValueError(
            f"Invalid output stride {output_stride}. Should be one of {', '.join(str(s) for s in VALID_OUTPUT_STRIDES)}"
        )


def layer_depths(multiplier: float) -> list[int]:
    # 1.01 is the full-width checkpoint trained at a slightly larger input size
    scale = 1.0 if multiplier == 1.01 else multiplier
    return [int(depth * scale) for depth in MOBILENET_BASE_DEPTHS]


def strided_layers(output_stride: int) -> list[tuple[int, int]]:
    """Return the ``(stride, dilation)`` of every backbone layer."""
    check_output_stride(output_stride)
    current_stride = 1
    rate = 1
    layers: list[tuple[int, int]] = []
    for _, stride in MOBILENET_ARCHITECTURE:
        if current_stride == output_stride:
            layer_stride = 1
            layer_rate = rate
            rate *= stride
        else:
            layer_stride = stride
            layer_rate = 1
            current_stride *= stride
        layers.append((layer_stride, layer_rate))
    return layers


def _same_padding(x: torch.Tensor, kernel: int, stride: int, dilation: int) -> torch.Tensor:
    height, width = x.shape[-2:]
    effective = (kernel - 1) * dilation + 1
    pads = []
    for size in (width, height):
        out = math.ceil(size / stride)
        total = max((out - 1) * stride + effective - size, 0)
        pads.extend([total // 2, total - total // 2])
    if not any(pads):
        return x
    return F.pad(x, pads)


class MobileNet(nn.Module):
    def __init__(self, multiplier: float = 1.01) -> None:
        super().__init__()
        check_multiplier(multiplier)
        self.multiplier = multiplier
        depths = layer_depths(multiplier)

        self.layers = nn.ModuleList()
        in_channels = 3
        for (kind, _), depth in zip(MOBILENET_ARCHITECTURE, depths):
            if kind == "conv2d":
                self.layers.append(nn.ModuleDict({"conv": nn.Conv2d(in_channels, depth, 3)}))
            else:
                self.layers.append(
                    nn.ModuleDict(
                        {
                            "depthwise": nn.Conv2d(in_channels, in_channels, 3, groups=in_channels),
                            "pointwise": nn.Conv2d(in_channels, depth, 1),
                        }
                    )
                )
            in_channels = depth

        num_edges = len(POSE_CHAIN)
        self.heatmap = nn.Conv2d(in_channels, NUM_KEYPOINTS, 1)
        self.offset = nn.Conv2d(in_channels, 2 * NUM_KEYPOINTS, 1)
        self.displacement_fwd = nn.Conv2d(in_channels, 2 * num_edges, 1)
        self.displacement_bwd = nn.Conv2d(in_channels, 2 * num_edges, 1)

    def backbone(self, x: torch.Tensor, output_stride: int) -> torch.Tensor:
        for layer, (stride, dilation) in zip(self.layers, strided_layers(output_stride)):
            if "conv" in layer:
                conv = layer["conv"]
                x = F.conv2d(_same_padding(x, 3, stride, dilation), conv.weight, conv.bias, stride, 0, dilation)
            else:
                depthwise = layer["depthwise"]
                pointwise = layer["pointwise"]
                x = F.conv2d(
                    _same_padding(x, 3, stride, dilation),
                    depthwise.weight,
                    depthwise.bias,
                    stride,
                    0,
                    dilation,
                    depthwise.groups,
                )
                x = F.relu6(x)
                x = pointwise(x)
            x = F.relu6(x)
        return x

    def forward(self, x: torch.Tensor, output_stride: int = 16) -> dict[str, torch.Tensor]:
        """Run the network on a ``(N, 3, H, W)`` batch scaled to ``[-1, 1]``."""
        features = self.backbone(x, output_stride)
        return {
            "heatmap": torch.sigmoid(self.heatmap(features)),
            "offset": self.offset(features),
            "displacement_fwd": self.displacement_fwd(features),
            "displacement_bwd": self.displacement_bwd(features),
        }
