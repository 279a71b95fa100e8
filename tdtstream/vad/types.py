# coding=utf-8
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

logger = logging.getLogger(__name__)

VAD_SAMPLE_RATE = 16000
VAD_CHUNK_SIZE = 4096  # 256 ms of new audio per model call
VAD_CONTEXT_SIZE = 64
VAD_STATE_SIZE = 128


@dataclass(frozen=True)
class VadConfig:
    # Entry threshold used when the segmentation config does not pin a negative threshold.
    default_threshold: float = 0.85
    debug: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.default_threshold) <= 1.0:
            raise ValueError("default_threshold must be in [0, 1]")


@dataclass(frozen=True)
class VadSegmentationConfig:
    """
    Silero-style segmentation knobs, all durations in seconds.

    ``negative_threshold`` pins the exit threshold; when it is set the entry
    threshold is derived from it as ``negative + negative_threshold_offset``.
    """

    min_speech_duration: float = 0.15
    min_silence_duration: float = 0.75
    max_speech_duration: float = 14.0
    speech_padding: float = 0.1
    silence_threshold_for_split: float = 0.3
    negative_threshold: Optional[float] = None
    negative_threshold_offset: float = 0.15
    min_silence_at_max_speech: float = 0.098
    use_max_possible_silence_at_max_speech: bool = True

    def __post_init__(self) -> None:
        if self.min_speech_duration < 0:
            raise ValueError("min_speech_duration must be non-negative")
        if self.min_silence_duration < 0:
            raise ValueError("min_silence_duration must be non-negative")
        if not self.max_speech_duration > 0:
            raise ValueError("max_speech_duration must be positive")
        if self.speech_padding < 0:
            raise ValueError("speech_padding must be non-negative")
        if not 0.0 <= self.silence_threshold_for_split <= 1.0:
            raise ValueError("silence_threshold_for_split must be in [0, 1]")
        if self.negative_threshold_offset < 0:
            raise ValueError("negative_threshold_offset must be non-negative")
        if self.min_silence_at_max_speech < 0:
            raise ValueError("min_silence_at_max_speech must be non-negative")
        if self.negative_threshold is not None and not 0.0 <= self.negative_threshold <= 1.0:
            raise ValueError("negative_threshold must be in [0, 1]")

        if self.min_speech_duration > self.max_speech_duration:
            logger.warning("min_speech_duration exceeds max_speech_duration")
        if self.min_silence_duration > self.max_speech_duration:
            logger.warning("min_silence_duration exceeds max_speech_duration")
        if self.speech_padding > self.min_speech_duration:
            logger.warning("speech_padding is larger than min_speech_duration")
        if self.negative_threshold is not None and self.negative_threshold > self.silence_threshold_for_split:
            logger.warning("negative_threshold above silence_threshold_for_split weakens hysteresis")

    def effective_negative_threshold(self, base_threshold: float) -> float:
        if self.negative_threshold is not None:
            return float(self.negative_threshold)
        return max(float(base_threshold) - float(self.negative_threshold_offset), 0.01)

    def entry_threshold(self, default_threshold: float) -> float:
        if self.negative_threshold is not None:
            return min(1.0, float(self.negative_threshold) + float(self.negative_threshold_offset))
        return float(default_threshold)


def _zeros(size: int) -> np.ndarray:
    return np.zeros((size,), dtype=np.float32)


@dataclass
class VadState:
    hidden: np.ndarray = field(default_factory=lambda: _zeros(VAD_STATE_SIZE))
    cell: np.ndarray = field(default_factory=lambda: _zeros(VAD_STATE_SIZE))
    context: np.ndarray = field(default_factory=lambda: _zeros(VAD_CONTEXT_SIZE))

    @classmethod
    def initial(cls) -> "VadState":
        return cls()


@dataclass(frozen=True)
class VadResult:
    probability: float
    is_voice_active: bool
    processing_time: float
    output_state: VadState


@dataclass(frozen=True)
class VadSegment:
    start_time: float
    end_time: float

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def start_sample(self, sample_rate: int = VAD_SAMPLE_RATE) -> int:
        return int(self.start_time * sample_rate)

    def end_sample(self, sample_rate: int = VAD_SAMPLE_RATE) -> int:
        return int(self.end_time * sample_rate)

    def sample_count(self, sample_rate: int = VAD_SAMPLE_RATE) -> int:
        return self.end_sample(sample_rate) - self.start_sample(sample_rate)

    def to_dict(self) -> Dict[str, Any]:
        return {"start": round(self.start_time, 3), "end": round(self.end_time, 3)}


@dataclass
class VadStreamState:
    model_state: VadState = field(default_factory=VadState.initial)
    triggered: bool = False
    temp_end_sample: Optional[int] = None
    processed_samples: int = 0

    @classmethod
    def initial(cls) -> "VadStreamState":
        return cls()


SPEECH_START = "speech_start"
SPEECH_END = "speech_end"


@dataclass(frozen=True)
class VadStreamEvent:
    kind: str
    sample_index: int
    time: Optional[float] = None

    @property
    def is_start(self) -> bool:
        return self.kind == SPEECH_START

    @property
    def is_end(self) -> bool:
        return self.kind == SPEECH_END

    def seconds(self, sample_rate: int = VAD_SAMPLE_RATE) -> float:
        if self.time is not None:
            return float(self.time)
        return float(self.sample_index) / float(sample_rate)


@dataclass(frozen=True)
class VadStreamResult:
    state: VadStreamState
    event: Optional[VadStreamEvent]
    probability: float
