# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .state import DecoderState


@dataclass
class Hypothesis:
    score: float = 0.0
    y_sequence: List[int] = field(default_factory=list)
    timestamps: List[int] = field(default_factory=list)
    token_durations: List[int] = field(default_factory=list)
    token_confidences: List[float] = field(default_factory=list)
    last_token: Optional[int] = None
    dec_state: Optional[DecoderState] = None

    @property
    def is_empty(self) -> bool:
        return not self.y_sequence

    @property
    def token_count(self) -> int:
        return len(self.y_sequence)

    @property
    def max_timestamp(self) -> int:
        return max(self.timestamps) if self.timestamps else 0

    def append(self, token: int, timestamp: int, confidence: float, duration: Optional[int] = None) -> None:
        self.y_sequence.append(int(token))
        self.timestamps.append(int(timestamp))
        self.token_confidences.append(float(confidence))
        self.score += float(confidence)
        self.last_token = int(token)
        if duration is not None:
            self.token_durations.append(int(duration))

    def destructured(self) -> Tuple[List[int], List[int], List[float]]:
        return list(self.y_sequence), list(self.timestamps), list(self.token_confidences)
