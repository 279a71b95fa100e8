# coding=utf-8
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from ..errors import ProcessingFailedError
from .config import AsrConfig
from .constants import (
    MAX_MODEL_SAMPLES,
    MEL_HOP_SIZE,
    SAMPLES_PER_ENCODER_FRAME,
    calculate_encoder_frames,
)
from .oracle import AcousticModelOracle
from .state import DecoderState
from .tdt import TdtDecoder, encode_and_decode, pad_audio

logger = logging.getLogger(__name__)


class TokenWindow(NamedTuple):
    token: int
    timestamp: int
    confidence: float


@dataclass(frozen=True)
class _IndexedToken:
    index: int
    token: TokenWindow
    start: float
    end: float


@dataclass
class ChunkedTokens:
    tokens: List[int] = field(default_factory=list)
    timestamps: List[int] = field(default_factory=list)
    confidences: List[float] = field(default_factory=list)

    @classmethod
    def from_windows(cls, windows: Sequence[TokenWindow]) -> "ChunkedTokens":
        return cls(
            tokens=[w.token for w in windows],
            timestamps=[w.timestamp for w in windows],
            confidences=[w.confidence for w in windows],
        )


def _tokens_match(left: _IndexedToken, right: _IndexedToken, tolerance: float) -> bool:
    if left.token.token != right.token.token:
        return False
    return abs(left.start - right.start) < tolerance


def find_best_contiguous_pairs(
    overlap_left: Sequence[_IndexedToken],
    overlap_right: Sequence[_IndexedToken],
    tolerance: float,
) -> List[Tuple[int, int]]:
    best: List[Tuple[int, int]] = []
    for i in range(len(overlap_left)):
        for j in range(len(overlap_right)):
            if not _tokens_match(overlap_left[i], overlap_right[j], tolerance):
                continue
            run: List[Tuple[int, int]] = []
            k, m = i, j
            while k < len(overlap_left) and m < len(overlap_right):
                if not _tokens_match(overlap_left[k], overlap_right[m], tolerance):
                    break
                run.append((k, m))
                k += 1
                m += 1
            if len(run) > len(best):
                best = run
    return best


def find_lcs_pairs(
    overlap_left: Sequence[_IndexedToken],
    overlap_right: Sequence[_IndexedToken],
    tolerance: float,
) -> List[Tuple[int, int]]:
    n, m = len(overlap_left), len(overlap_right)
    if n == 0 or m == 0:
        return []
    dp = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(1, n + 1):
        for j in range(1, m + 1):
            if _tokens_match(overlap_left[i - 1], overlap_right[j - 1], tolerance):
                dp[i][j] = dp[i - 1][j - 1] + 1
            else:
                dp[i][j] = max(dp[i - 1][j], dp[i][j - 1])

    pairs: List[Tuple[int, int]] = []
    i, j = n, m
    while i > 0 and j > 0:
        if _tokens_match(overlap_left[i - 1], overlap_right[j - 1], tolerance):
            pairs.append((i - 1, j - 1))
            i -= 1
            j -= 1
        elif dp[i - 1][j] > dp[i][j - 1]:
            i -= 1
        else:
            j -= 1
    pairs.reverse()
    return pairs


def merge_using_matches(
    matches: Sequence[Tuple[int, int]],
    overlap_left: Sequence[_IndexedToken],
    overlap_right: Sequence[_IndexedToken],
    left: Sequence[TokenWindow],
    right: Sequence[TokenWindow],
) -> List[TokenWindow]:
    left_idx = [overlap_left[a].index for a, _ in matches]
    right_idx = [overlap_right[b].index for _, b in matches]

    result: List[TokenWindow] = list(left[: left_idx[0]])
    for n, (li, ri) in enumerate(zip(left_idx, right_idx)):
        result.append(left[li])
        if n == len(matches) - 1:
            continue
        gap_left = list(left[li + 1 : left_idx[n + 1]])
        gap_right = list(right[ri + 1 : right_idx[n + 1]])
        result.extend(gap_right if len(gap_right) > len(gap_left) else gap_left)
    result.extend(right[right_idx[-1] + 1 :])
    return result


def merge_by_midpoint(
    left: Sequence[TokenWindow],
    right: Sequence[TokenWindow],
    left_end_time: float,
    right_start_time: float,
    frame_duration: float,
) -> List[TokenWindow]:
    cutoff = (left_end_time + right_start_time) / 2.0
    kept_left = [t for t in left if t.timestamp * frame_duration <= cutoff]
    kept_right = [t for t in right if t.timestamp * frame_duration >= cutoff]
    return kept_left + kept_right


def merge_chunks(
    left: Sequence[TokenWindow],
    right: Sequence[TokenWindow],
    *,
    overlap_duration: float,
    frame_duration: float,
) -> List[TokenWindow]:
    """
    Reconcile two adjacent windows decoded from overlapping audio.

    Strategy order: no overlap -> concatenate; strong contiguous run -> splice;
    LCS alignment -> splice; otherwise cut both windows at the overlap midpoint.
    """
    if not left:
        return list(right)
    if not right:
        return list(left)

    def start_of(token: TokenWindow) -> float:
        return token.timestamp * frame_duration

    left_end_time = start_of(left[-1]) + frame_duration
    right_start_time = start_of(right[0])
    if left_end_time <= right_start_time:
        return list(left) + list(right)

    overlap_left = [
        _IndexedToken(i, t, start_of(t), start_of(t) + frame_duration)
        for i, t in enumerate(left)
        if start_of(t) + frame_duration > right_start_time - overlap_duration
    ]
    overlap_right = [
        _IndexedToken(i, t, start_of(t), start_of(t) + frame_duration)
        for i, t in enumerate(right)
        if start_of(t) < left_end_time + overlap_duration
    ]

    if len(overlap_left) < 2 or len(overlap_right) < 2:
        logger.debug("merge: midpoint split (sparse overlap left=%d right=%d)", len(overlap_left), len(overlap_right))
        return merge_by_midpoint(left, right, left_end_time, right_start_time, frame_duration)

    tolerance = overlap_duration / 2.0
    minimum_pairs = max(len(overlap_left) // 2, 1)

    contiguous = find_best_contiguous_pairs(overlap_left, overlap_right, tolerance)
    if len(contiguous) >= minimum_pairs:
        logger.debug("merge: contiguous run pairs=%d", len(contiguous))
        return merge_using_matches(contiguous, overlap_left, overlap_right, left, right)

    lcs = find_lcs_pairs(overlap_left, overlap_right, tolerance)
    if lcs:
        logger.debug("merge: lcs pairs=%d", len(lcs))
        return merge_using_matches(lcs, overlap_left, overlap_right, left, right)

    logger.debug("merge: midpoint split (no alignment)")
    return merge_by_midpoint(left, right, left_end_time, right_start_time, frame_duration)


class ChunkProcessor:
    """
    Transcribes audio longer than one encoder window.

    Windows are decoded independently (fresh decoder state each) and then merged
    pairwise, left to right, in original order.
    """

    def __init__(
        self,
        oracle: AcousticModelOracle,
        config: Optional[AsrConfig] = None,
        *,
        max_model_samples: int = MAX_MODEL_SAMPLES,
        workers: int = 1,
    ) -> None:
        self.config = config or AsrConfig()
        self.decoder = TdtDecoder(self.config.tdt, oracle)
        self.sample_rate = int(self.config.sample_rate)
        self.max_model_samples = max(SAMPLES_PER_ENCODER_FRAME * 2, int(max_model_samples))
        self.overlap_sec = float(self.config.chunk_overlap_sec)
        self.workers = max(1, int(workers))

    @property
    def chunk_samples(self) -> int:
        return max(self.max_model_samples - MEL_HOP_SIZE, SAMPLES_PER_ENCODER_FRAME)

    @property
    def overlap_samples(self) -> int:
        requested = int(self.overlap_sec * self.sample_rate)
        return min(requested, self.chunk_samples // 2)

    @property
    def stride_samples(self) -> int:
        return max(self.chunk_samples - self.overlap_samples, SAMPLES_PER_ENCODER_FRAME)

    @property
    def frame_duration(self) -> float:
        return SAMPLES_PER_ENCODER_FRAME / float(self.sample_rate)

    def plan_windows(self, total_samples: int) -> List[Tuple[int, int, bool]]:
        windows: List[Tuple[int, int, bool]] = []
        start = 0
        total = int(total_samples)
        while start < total:
            candidate_end = start + self.chunk_samples
            is_last = candidate_end >= total
            end = total if is_last else candidate_end
            if end <= start:
                break
            windows.append((start, end, is_last))
            if is_last:
                break
            start += self.stride_samples
        return windows

    def transcribe_chunk(self, samples: np.ndarray, chunk_start: int, is_last_chunk: bool) -> List[TokenWindow]:
        if samples.shape[0] == 0:
            return []
        state = DecoderState.initial()
        state.reset()
        padded = pad_audio(samples, self.max_model_samples)
        hyp, _, encoder_length = encode_and_decode(
            self.decoder,
            padded,
            samples.shape[0],
            state,
            actual_audio_frames=calculate_encoder_frames(samples.shape[0]),
            is_last_chunk=is_last_chunk,
            global_frame_offset=int(chunk_start) // SAMPLES_PER_ENCODER_FRAME,
        )
        if hyp.is_empty or encoder_length == 0:
            return []
        tokens, timestamps, confidences = hyp.destructured()
        if not (len(tokens) == len(timestamps) == len(confidences)):
            raise ProcessingFailedError("token, timestamp, and confidence arrays are misaligned")
        return [TokenWindow(t, ts, c) for t, ts, c in zip(tokens, timestamps, confidences)]

    def process(self, samples: np.ndarray) -> ChunkedTokens:
        audio = np.asarray(samples, dtype=np.float32).reshape(-1)
        windows = self.plan_windows(audio.shape[0])
        logger.debug(
            "chunked decode: samples=%d windows=%d chunk=%d stride=%d",
            audio.shape[0],
            len(windows),
            self.chunk_samples,
            self.stride_samples,
        )

        def run(window: Tuple[int, int, bool]) -> List[TokenWindow]:
            start, end, is_last = window
            return self.transcribe_chunk(audio[start:end], start, is_last)

        if self.workers > 1 and len(windows) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                outputs = list(pool.map(run, windows))
        else:
            outputs = [run(w) for w in windows]

        if not outputs:
            return ChunkedTokens()

        merged = outputs[0]
        for chunk in outputs[1:]:
            merged = merge_chunks(
                merged,
                chunk,
                overlap_duration=self.overlap_sec,
                frame_duration=self.frame_duration,
            )
        if len(merged) > 1:
            merged = sorted(merged, key=lambda w: w.timestamp)
        return ChunkedTokens.from_windows(merged)


def process_chunked_audio(
    samples: np.ndarray,
    oracle: AcousticModelOracle,
    config: Optional[AsrConfig] = None,
    **kwargs,
) -> ChunkedTokens:
    return ChunkProcessor(oracle, config, **kwargs).process(samples)
