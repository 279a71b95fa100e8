# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .constants import DECODER_HIDDEN_SIZE, DECODER_LAYERS


def _zeros(layers: int, hidden_size: int) -> np.ndarray:
    return np.zeros((layers, hidden_size), dtype=np.float32)


@dataclass
class DecoderState:
    """
    Recurrent prediction-network state for one logical stream.

    - last_token: last non-blank token, carried across chunks for context
    - predictor_cache: decoder projection reused while blanks are skipped
    - time_jump: decode cursor overflow past the end of the previous chunk
    """

    hidden: np.ndarray = field(default_factory=lambda: _zeros(DECODER_LAYERS, DECODER_HIDDEN_SIZE))
    cell: np.ndarray = field(default_factory=lambda: _zeros(DECODER_LAYERS, DECODER_HIDDEN_SIZE))
    last_token: Optional[int] = None
    predictor_cache: Optional[np.ndarray] = None
    time_jump: Optional[int] = None

    @classmethod
    def initial(
        cls,
        hidden_size: int = DECODER_HIDDEN_SIZE,
        layers: int = DECODER_LAYERS,
    ) -> "DecoderState":
        return cls(hidden=_zeros(layers, hidden_size), cell=_zeros(layers, hidden_size))

    @property
    def is_fresh(self) -> bool:
        return self.last_token is None and self.predictor_cache is None

    def copy(self) -> "DecoderState":
        return DecoderState(
            hidden=np.array(self.hidden, dtype=np.float32, copy=True),
            cell=np.array(self.cell, dtype=np.float32, copy=True),
            last_token=self.last_token,
            predictor_cache=None if self.predictor_cache is None else np.array(self.predictor_cache, copy=True),
            time_jump=self.time_jump,
        )

    def zero_recurrent(self) -> None:
        self.hidden.fill(0.0)
        self.cell.fill(0.0)

    def reset(self, keep_last_token: bool = False) -> None:
        self.zero_recurrent()
        self.predictor_cache = None
        self.time_jump = None
        if not keep_last_token:
            self.last_token = None

    def finalize_last_chunk(self) -> None:
        # Recurrent state and last_token stay: they are the final linguistic context.
        self.predictor_cache = None
        self.time_jump = None
