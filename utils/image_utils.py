# Image decoding for uploaded face images.
#
# Uploads arrive as raw bytes (JPEG / PNG / WebP / BMP). Everything
# downstream works on 3-channel BGR uint8 arrays, the OpenCV layout
# InsightFace expects.

from __future__ import annotations

from typing import Tuple, Union

import cv2
import numpy as np

Frame = np.ndarray  # (H, W, 3) BGR uint8

_CONVERSIONS = {
    1: cv2.COLOR_GRAY2BGR,
    4: cv2.COLOR_BGRA2BGR,
}


def decode_image(data: Union[bytes, bytearray, memoryview, np.ndarray]) -> Frame:
    """
    Decode uploaded image bytes into a BGR frame.

    Arrays are passed through the same channel / depth normalisation,
    which keeps tests free of encode round-trips.

    Raises:
        ValueError: empty, truncated or unrecognised data.
    """
    if isinstance(data, np.ndarray):
        return to_bgr(data.copy())
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"Cannot decode image from {type(data).__name__}.")
    if len(data) == 0:
        raise ValueError("Image data is empty.")

    frame = cv2.imdecode(np.frombuffer(bytes(data), dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if frame is None:
        raise ValueError("Unrecognised or corrupt image data.")
    return to_bgr(frame)


def to_bgr(frame: np.ndarray) -> Frame:
    """Bring a decoded frame to 8-bit, 3-channel BGR."""
    if frame.dtype == np.uint16:
        frame = (frame >> 8).astype(np.uint8)
    elif frame.dtype != np.uint8:
        frame = np.clip(frame, 0, 255).astype(np.uint8)

    channels = 1 if frame.ndim == 2 else (frame.shape[2] if frame.ndim == 3 else 0)
    if channels == 3:
        return frame
    if channels in _CONVERSIONS:
        return cv2.cvtColor(frame, _CONVERSIONS[channels])
    raise ValueError(f"Unsupported image shape {frame.shape}.")


def image_size(frame: Frame) -> Tuple[int, int]:
    """``(width, height)`` of *frame*."""
    height, width = frame.shape[:2]
    return int(width), int(height)


def encode_image(frame: Frame, ext: str = ".png") -> bytes:
    ok, buf = cv2.imencode(ext, frame)
    if not ok:
        raise ValueError(f"Could not encode image as {ext}.")
    return buf.tobytes()


def is_valid_image(data: bytes) -> bool:
    try:
        decode_image(data)
    except (TypeError, ValueError):
        return False
    return True
