# coding=utf-8
from __future__ import annotations

from typing import Optional

import numpy as np

from ..errors import ProcessingFailedError
from .constants import ENCODER_HIDDEN_SIZE


class EncoderFrameView:
    """
    Read-only, stride-aware view over a [1, T, H] or [1, H, T] encoder output.

    Frames are exposed as numpy views so the full tensor is never copied; the
    hidden axis is detected from the expected hidden size.
    """

    def __init__(
        self,
        encoder_output: np.ndarray,
        valid_length: int,
        hidden_size: int = ENCODER_HIDDEN_SIZE,
    ) -> None:
        arr = np.asarray(encoder_output)
        if arr.ndim != 3:
            raise ProcessingFailedError(f"invalid encoder output shape: {tuple(arr.shape)}")
        if arr.shape[0] != 1:
            raise ProcessingFailedError(f"unsupported batch dimension: {arr.shape[0]}")
        if arr.dtype != np.float32:
            raise ProcessingFailedError(f"unsupported encoder output type: {arr.dtype}")

        hidden = int(hidden_size)
        if arr.shape[2] == hidden:
            frames = arr[0]
        elif arr.shape[1] == hidden:
            frames = arr[0].T
        else:
            raise ProcessingFailedError(f"encoder hidden size mismatch: {tuple(arr.shape)}")

        self.hidden_size = hidden
        self.count = min(int(valid_length), int(frames.shape[0]))
        if self.count <= 0:
            raise ProcessingFailedError("encoder output has no frames")

        self._frames = frames.view()
        self._frames.flags.writeable = False

    def __len__(self) -> int:
        return self.count

    def frame(self, index: int) -> np.ndarray:
        idx = int(index)
        if idx < 0 or idx >= self.count:
            raise ProcessingFailedError(f"encoder frame index out of range: {idx}")
        return self._frames[idx]

    def copy_frame(self, index: int, into: Optional[np.ndarray] = None) -> np.ndarray:
        src = self.frame(index)
        if into is None:
            return np.array(src, dtype=np.float32, copy=True)
        if into.shape != (self.hidden_size,):
            raise ProcessingFailedError(f"destination shape mismatch: {tuple(into.shape)}")
        np.copyto(into, src)
        return into
