# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Tuple

from .constants import SAMPLE_RATE

# Parakeet-TDT v3 ships 8192 regular tokens with blank at index 8192; v2 uses 1024.
_BLANK_IDS = {"v2": 1024, "v3": 8192}


@dataclass(frozen=True)
class TdtConfig:
    include_token_duration: bool = True
    max_symbols_per_step: int = 10
    duration_bins: Tuple[int, ...] = (0, 1, 2, 3, 4)
    blank_id: int = 8192
    # Frames searched at continuation boundaries when looking for duplicated runs.
    boundary_search_frames: int = 20
    max_tokens_per_chunk: int = 150
    consecutive_blank_limit: int = 5
    # period, question mark, exclamation mark
    punctuation_token_ids: Tuple[int, ...] = (7883, 7952, 7948)

    def __post_init__(self) -> None:
        if self.max_symbols_per_step < 1:
            raise ValueError("max_symbols_per_step must be >= 1")
        if not self.duration_bins:
            raise ValueError("duration_bins must not be empty")
        if any(int(d) < 0 for d in self.duration_bins):
            raise ValueError("duration_bins must be non-negative")
        if self.max_tokens_per_chunk < 1:
            raise ValueError("max_tokens_per_chunk must be >= 1")
        if self.consecutive_blank_limit < 1:
            raise ValueError("consecutive_blank_limit must be >= 1")
        if self.boundary_search_frames < 0:
            raise ValueError("boundary_search_frames must be non-negative")
        object.__setattr__(self, "duration_bins", tuple(int(d) for d in self.duration_bins))
        object.__setattr__(self, "punctuation_token_ids", tuple(int(t) for t in self.punctuation_token_ids))

    @classmethod
    def for_model(cls, version: str, **overrides) -> "TdtConfig":
        key = str(version or "").strip().lower()
        if key not in _BLANK_IDS:
            raise ValueError(f"unknown model version: {version!r}")
        overrides.setdefault("blank_id", _BLANK_IDS[key])
        return cls(**overrides)

    def with_blank_id(self, blank_id: int) -> "TdtConfig":
        return replace(self, blank_id=int(blank_id))


@dataclass(frozen=True)
class AsrConfig:
    sample_rate: int = SAMPLE_RATE
    tdt: TdtConfig = field(default_factory=TdtConfig)
    # Window length and overlap used by the chunk processor for long audio.
    chunk_overlap_sec: float = 2.0

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if self.chunk_overlap_sec < 0:
            raise ValueError("chunk_overlap_sec must be non-negative")
