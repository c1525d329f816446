"""
Instance mask decoding from prototype masks (YOLO-seg style).

mask = sigmoid(coeffs · protos), cropped to the detection box in proto
space, upsampled to the frame and binarized.
"""

from typing import Sequence, Tuple

import cv2
import numpy as np


def validate_proto_masks(proto_masks: np.ndarray) -> np.ndarray:
    """Return protos as float32 (C, H, W), ValueError for other shapes."""
    protos = np.asarray(proto_masks)
    if protos.ndim == 4 and protos.shape[0] == 1:
        protos = protos[0]
    if protos.ndim != 3 or min(protos.shape) == 0:
        raise ValueError(f"proto_masks must have shape (C, H, W), got {protos.shape}")
    return protos.astype(np.float32, copy=False)


def decode_instance_mask(proto_masks: np.ndarray, mask_coeffs: np.ndarray, bbox: Sequence[float],
                         frame_size: Tuple[int, int], model_input_size: int = 640,
                         threshold: float = 0.5) -> np.ndarray:
    """
    Decode one instance mask.

    Args:
        proto_masks: (C, Hp, Wp) prototype masks
        mask_coeffs: (C,) instance coefficients
        bbox: (x, y, w, h) in detector input space
        frame_size: (width, height) of the camera frame
        model_input_size: Detector input resolution (square)
        threshold: Probability threshold

    Returns:
        uint8 mask (0/255) of shape (height, width)

    Raises:
        ValueError: Coefficient count does not match the proto channels
    """
    protos = validate_proto_masks(proto_masks)
    coeffs = np.asarray(mask_coeffs, dtype=np.float32).ravel()
    channels, proto_h, proto_w = protos.shape
    if coeffs.shape[0] != channels:
        raise ValueError(f"Expected {channels} mask coefficients, got {coeffs.shape[0]}")

    logits = np.tensordot(coeffs, protos, axes=1)
    prob = 1.0 / (1.0 + np.exp(-np.clip(logits, -50.0, 50.0)))

    x, y, w, h = (float(v) for v in bbox)
    sx = proto_w / float(model_input_size)
    sy = proto_h / float(model_input_size)
    px0 = int(np.clip(np.floor(x * sx), 0, proto_w))
    py0 = int(np.clip(np.floor(y * sy), 0, proto_h))
    px1 = int(np.clip(np.ceil((x + w) * sx), 0, proto_w))
    py1 = int(np.clip(np.ceil((y + h) * sy), 0, proto_h))
    cropped = np.zeros_like(prob)
    cropped[py0:py1, px0:px1] = prob[py0:py1, px0:px1]

    width, height = frame_size
    upsampled = cv2.resize(cropped, (width, height), interpolation=cv2.INTER_LINEAR)

    fx = width / float(model_input_size)
    fy = height / float(model_input_size)
    bx0 = int(np.clip(np.floor(x * fx), 0, width))
    by0 = int(np.clip(np.floor(y * fy), 0, height))
    bx1 = int(np.clip(np.ceil((x + w) * fx), 0, width))
    by1 = int(np.clip(np.ceil((y + h) * fy), 0, height))
    mask = np.zeros((height, width), np.uint8)
    region = upsampled[by0:by1, bx0:bx1] > threshold
    mask[by0:by1, bx0:bx1][region] = 255
    return mask


def proto_cell_size(proto_masks: np.ndarray, frame_size: Tuple[int, int]) -> float:
    """Frame pixels covered by one proto grid cell (larger of the two axes)."""
    _, proto_h, proto_w = validate_proto_masks(proto_masks).shape
    width, height = frame_size
    return max(width / float(proto_w), height / float(proto_h))
