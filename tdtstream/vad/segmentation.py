# coding=utf-8
"""
Offline speech segmentation over per-chunk VAD probabilities.

Single pass with hysteresis: a region opens at the entry threshold and only
closes after ``min_silence_duration`` below the negative threshold. Regions that
run past ``max_speech_duration`` are split at the best silence seen so far.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .types import VAD_CHUNK_SIZE, VAD_SAMPLE_RATE, VadSegment, VadSegmentationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateSilence:
    start: int
    duration: int
    min_probability: float


def _choose_split(candidates: Sequence[CandidateSilence], config: VadSegmentationConfig) -> Optional[CandidateSilence]:
    if not candidates:
        return None
    below = [c for c in candidates if c.min_probability <= config.silence_threshold_for_split]
    if below:
        return max(below, key=lambda c: c.duration)
    if config.use_max_possible_silence_at_max_speech:
        return max(candidates, key=lambda c: c.duration)
    return candidates[-1]


def detect_speech_sample_ranges(
    probabilities: Sequence[float],
    total_samples: int,
    threshold: float,
    config: Optional[VadSegmentationConfig] = None,
    *,
    sample_rate: int = VAD_SAMPLE_RATE,
    chunk_size: int = VAD_CHUNK_SIZE,
) -> List[Tuple[int, int]]:
    cfg = config or VadSegmentationConfig()
    if len(probabilities) == 0 or total_samples <= 0:
        return []

    hop = int(chunk_size)
    window = int(chunk_size)
    sr = float(sample_rate)
    min_speech = int(cfg.min_speech_duration * sr)
    pad = int(cfg.speech_padding * sr)
    if cfg.max_speech_duration == float("inf"):
        max_speech: Optional[int] = None
    else:
        max_speech = max(0, int(cfg.max_speech_duration * sr) - window - 2 * pad)
    min_silence = int(cfg.min_silence_duration * sr)
    min_silence_at_max = int(cfg.min_silence_at_max_speech * sr)
    entry = float(threshold)
    negative = cfg.effective_negative_threshold(entry)

    triggered = False
    speech_start = 0
    temp_end: Optional[int] = None
    temp_min_prob: Optional[float] = None
    candidates: List[CandidateSilence] = []
    speeches: List[Tuple[int, int]] = []

    def flush(end_sample: int) -> None:
        if end_sample <= speech_start:
            return
        if end_sample - speech_start >= min_speech:
            speeches.append((speech_start, min(end_sample, int(total_samples))))

    for index, raw in enumerate(probabilities):
        prob = float(raw)
        frame_start = index * hop

        if prob >= entry:
            if temp_end is not None:
                silence = frame_start - temp_end
                if silence > min_silence_at_max:
                    candidates.append(CandidateSilence(temp_end, silence, 1.0 if temp_min_prob is None else temp_min_prob))
            temp_end = None
            temp_min_prob = None
            if not triggered:
                triggered = True
                speech_start = frame_start
                continue

        if triggered and max_speech is not None and frame_start - speech_start > max_speech:
            split = _choose_split(candidates, cfg)
            flush(split.start if split is not None else frame_start)
            if split is not None and split.start + split.duration < frame_start:
                speech_start = split.start + split.duration
            else:
                triggered = False
            logger.debug(
                "max speech split at frame=%d split=%s continue=%s",
                index,
                None if split is None else (split.start, split.duration),
                triggered,
            )
            candidates = []
            temp_end = None
            temp_min_prob = None
            if not triggered:
                continue

        if prob < negative and triggered:
            if temp_end is None:
                temp_end = frame_start
            temp_min_prob = prob if temp_min_prob is None else min(temp_min_prob, prob)
            if frame_start - temp_end >= min_silence:
                flush(temp_end)
                triggered = False
                temp_end = None
                temp_min_prob = None
                candidates = []
                continue

    if triggered:
        flush(int(total_samples))

    return apply_speech_padding(speeches, int(total_samples), pad)


def apply_speech_padding(speeches: Sequence[Tuple[int, int]], total_samples: int, pad: int) -> List[Tuple[int, int]]:
    """Pad regions outward; a gap narrower than ``2 * pad`` is split evenly between neighbours."""
    if not speeches:
        return []
    adjusted = [[int(s), int(e)] for s, e in speeches]
    for i in range(len(adjusted)):
        if i == 0:
            adjusted[i][0] = max(0, adjusted[i][0] - pad)
        if i < len(adjusted) - 1:
            gap = adjusted[i + 1][0] - adjusted[i][1]
            if gap < 2 * pad:
                half = gap // 2
                adjusted[i][1] = min(total_samples, adjusted[i][1] + half)
                adjusted[i + 1][0] = max(0, adjusted[i + 1][0] - half)
            else:
                adjusted[i][1] = min(total_samples, adjusted[i][1] + pad)
                adjusted[i + 1][0] = max(0, adjusted[i + 1][0] - pad)
        else:
            adjusted[i][1] = min(total_samples, adjusted[i][1] + pad)

    out: List[Tuple[int, int]] = []
    for start, end in adjusted:
        s = max(0, min(start, total_samples))
        e = max(s, min(end, total_samples))
        if e > s:
            out.append((s, e))
    return out


def segment_speech(
    probabilities: Sequence[float],
    total_samples: int,
    threshold: float,
    config: Optional[VadSegmentationConfig] = None,
    *,
    sample_rate: int = VAD_SAMPLE_RATE,
    chunk_size: int = VAD_CHUNK_SIZE,
) -> List[VadSegment]:
    total = int(total_samples)
    ranges = detect_speech_sample_ranges(
        probabilities,
        total,
        threshold,
        config,
        sample_rate=sample_rate,
        chunk_size=chunk_size,
    )
    segments: List[VadSegment] = []
    for start, end in ranges:
        s = max(0, min(start, total))
        e = max(s, min(end, total))
        segments.append(VadSegment(start_time=s / float(sample_rate), end_time=e / float(sample_rate)))
    logger.debug("segmented %d probabilities into %d segments", len(probabilities), len(segments))
    return segments
