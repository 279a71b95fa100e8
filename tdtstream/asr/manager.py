# coding=utf-8
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from ..errors import InvalidAudioDataError, NotInitializedError
from .chunking import ChunkProcessor
from .config import AsrConfig
from .constants import (
    FRAME_DURATION_SEC,
    MAX_MODEL_SAMPLES,
    MIN_AUDIO_SAMPLES,
    WORD_BOUNDARY_MARKER,
)
from .dedup import dedup_aligned
from .oracle import AcousticModelOracle
from .state import DecoderState
from .tdt import TdtDecoder, encode_and_decode, pad_audio

logger = logging.getLogger(__name__)

VOCABULARY_FILE = "parakeet_vocab.json"
_MIN_TIMING_GAP_SEC = 0.001


class AudioSource(str, Enum):
    MICROPHONE = "microphone"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: Union[str, "AudioSource", None]) -> "AudioSource":
        if isinstance(value, cls):
            return value
        key = str(value or cls.MICROPHONE.value).strip().lower()
        try:
            return cls(key)
        except ValueError as exc:
            raise ValueError(f"unknown audio source: {value!r}") from exc


@dataclass(frozen=True)
class TokenTiming:
    token: str
    token_id: int
    start_time: float
    end_time: float
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "token_id": self.token_id,
            "start": round(self.start_time, 3),
            "end": round(self.end_time, 3),
            "confidence": round(self.confidence, 4),
        }


@dataclass(frozen=True)
class AsrResult:
    text: str
    confidence: float
    duration: float
    processing_time: float
    token_timings: List[TokenTiming] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "confidence": round(float(self.confidence), 4),
            "duration": round(float(self.duration), 3),
            "processing_time": round(float(self.processing_time), 4),
            "token_timings": [t.to_dict() for t in self.token_timings],
        }


@dataclass
class StreamingChunkResult:
    tokens: List[int]
    timestamps: List[int]
    confidences: List[float]
    encoder_sequence_length: int
    removed: int = 0


def load_vocabulary(path: Union[str, Path]) -> Dict[int, str]:
    """Read a ``{"<id>": "<piece>"}`` JSON vocabulary, skipping non-integer keys."""
    p = Path(path).expanduser()
    if p.is_dir():
        p = p / VOCABULARY_FILE
    with p.open("r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"vocabulary must be a JSON object: {p}")
    vocabulary: Dict[int, str] = {}
    for key, value in raw.items():
        try:
            token_id = int(key)
        except (TypeError, ValueError):
            continue
        vocabulary[token_id] = str(value)
    logger.info("loaded vocabulary with %d tokens from %s", len(vocabulary), p)
    return vocabulary


def normalize_piece(piece: str) -> str:
    return str(piece).replace(WORD_BOUNDARY_MARKER, " ")


def tokens_to_text(token_ids: Sequence[int], vocabulary: Mapping[int, str]) -> str:
    pieces = [vocabulary.get(int(t), "") for t in token_ids]
    return normalize_piece("".join(p for p in pieces if p)).strip()


def calculate_confidence(text: str, token_count: int, token_confidences: Sequence[float]) -> float:
    if not str(text or "").strip():
        return 0.1
    if not token_confidences or len(token_confidences) != int(token_count):
        logger.warning(
            "token confidences missing or misaligned: tokens=%d confidences=%d",
            token_count,
            len(token_confidences or ()),
        )
        return 0.5
    mean = float(np.mean(np.asarray(token_confidences, dtype=np.float64)))
    return max(0.1, min(1.0, mean))


def create_token_timings(
    token_ids: Sequence[int],
    timestamps: Sequence[int],
    confidences: Sequence[float],
    vocabulary: Mapping[int, str],
    token_durations: Sequence[int] = (),
) -> List[TokenTiming]:
    n = len(token_ids)
    if n == 0 or len(timestamps) != n or len(confidences) != n:
        return []
    durations = list(token_durations) if len(token_durations) == n else []
    rows = sorted(
        zip(token_ids, timestamps, confidences, durations or [0] * n),
        key=lambda r: int(r[1]),
    )

    timings: List[TokenTiming] = []
    for i, (token_id, frame, confidence, duration) in enumerate(rows):
        start = float(frame) * FRAME_DURATION_SEC
        if durations and int(duration) > 0:
            end = start + max(float(duration) * FRAME_DURATION_SEC, FRAME_DURATION_SEC)
        elif i < n - 1:
            end = max(float(rows[i + 1][1]) * FRAME_DURATION_SEC, start + FRAME_DURATION_SEC)
        else:
            end = start + FRAME_DURATION_SEC
        end = max(end, start + _MIN_TIMING_GAP_SEC)
        piece = vocabulary.get(int(token_id), f"token_{int(token_id)}")
        timings.append(
            TokenTiming(
                token=normalize_piece(piece),
                token_id=int(token_id),
                start_time=start,
                end_time=end,
                confidence=float(confidence),
            )
        )
    return timings


class AsrManager:
    """
    Owns the acoustic model, the vocabulary and one decoder state per audio source.

    A single manager must not be driven concurrently for the same source; calls
    are serialized with a lock.
    """

    def __init__(
        self,
        oracle: Optional[AcousticModelOracle] = None,
        vocabulary: Optional[Mapping[int, str]] = None,
        config: Optional[AsrConfig] = None,
        *,
        chunk_workers: int = 1,
    ) -> None:
        self.config = config or AsrConfig()
        self.oracle = oracle
        self.vocabulary: Dict[int, str] = dict(vocabulary or {})
        self.chunk_workers = max(1, int(chunk_workers))
        self._states: Dict[AudioSource, DecoderState] = {s: DecoderState.initial() for s in AudioSource}
        self._lock = threading.Lock()
        if oracle is not None:
            logger.info("asr manager ready: vocabulary=%d blank_id=%d", len(self.vocabulary), self.config.tdt.blank_id)

    @property
    def is_available(self) -> bool:
        return self.oracle is not None

    def _require_oracle(self) -> AcousticModelOracle:
        if self.oracle is None:
            raise NotInitializedError()
        return self.oracle

    def decoder_state(self, source: Union[str, AudioSource] = AudioSource.MICROPHONE) -> DecoderState:
        return self._states[AudioSource.parse(source)]

    def reset_decoder_state(self, source: Union[str, AudioSource, None] = None) -> None:
        with self._lock:
            targets = list(AudioSource) if source is None else [AudioSource.parse(source)]
            for s in targets:
                self._states[s] = DecoderState.initial()

    def transcribe(self, samples: np.ndarray, source: Union[str, AudioSource] = AudioSource.MICROPHONE) -> AsrResult:
        src = AudioSource.parse(source)
        oracle = self._require_oracle()
        audio = np.asarray(samples, dtype=np.float32).reshape(-1)
        if audio.shape[0] < MIN_AUDIO_SAMPLES:
            raise InvalidAudioDataError(
                f"audio too short: {audio.shape[0]} samples (minimum {MIN_AUDIO_SAMPLES})"
            )

        started = time.perf_counter()
        with self._lock:
            try:
                if audio.shape[0] <= MAX_MODEL_SAMPLES:
                    decoder = TdtDecoder(self.config.tdt, oracle)
                    hyp, _, _ = encode_and_decode(
                        decoder,
                        pad_audio(audio, MAX_MODEL_SAMPLES),
                        audio.shape[0],
                        self._states[src],
                    )
                    tokens, timestamps, confidences = hyp.destructured()
                    durations = list(hyp.token_durations)
                else:
                    processor = ChunkProcessor(oracle, self.config, workers=self.chunk_workers)
                    merged = processor.process(audio)
                    tokens, timestamps, confidences = merged.tokens, merged.timestamps, merged.confidences
                    durations = []
            finally:
                self._states[src] = DecoderState.initial()

        result = self.build_result(
            tokens,
            timestamps,
            confidences,
            num_samples=audio.shape[0],
            processing_time=time.perf_counter() - started,
            token_durations=durations,
        )
        logger.debug(
            "transcribe: source=%s samples=%d tokens=%d confidence=%.3f",
            src.value,
            audio.shape[0],
            len(tokens),
            result.confidence,
        )
        return result

    def transcribe_streaming_chunk(
        self,
        samples: np.ndarray,
        source: Union[str, AudioSource] = AudioSource.MICROPHONE,
        previous_tokens: Sequence[int] = (),
    ) -> StreamingChunkResult:
        src = AudioSource.parse(source)
        oracle = self._require_oracle()
        audio = np.asarray(samples, dtype=np.float32).reshape(-1)
        if audio.shape[0] == 0:
            raise InvalidAudioDataError("empty audio chunk")

        with self._lock:
            decoder = TdtDecoder(self.config.tdt, oracle)
            hyp, state, encoder_length = encode_and_decode(
                decoder,
                pad_audio(audio, MAX_MODEL_SAMPLES),
                audio.shape[0],
                self._states[src],
            )
            self._states[src] = state

        tokens, timestamps, confidences = hyp.destructured()
        removed = 0
        if previous_tokens and tokens:
            tokens, timestamps, confidences, removed = dedup_aligned(
                previous_tokens,
                tokens,
                timestamps,
                confidences,
                search_radius=self.config.tdt.boundary_search_frames,
                punctuation_tokens=self.config.tdt.punctuation_token_ids,
            )
        return StreamingChunkResult(tokens, timestamps, confidences, encoder_length, removed)

    def build_result(
        self,
        tokens: Sequence[int],
        timestamps: Sequence[int],
        confidences: Sequence[float],
        *,
        num_samples: int,
        processing_time: float,
        token_durations: Sequence[int] = (),
    ) -> AsrResult:
        text = tokens_to_text(tokens, self.vocabulary)
        return AsrResult(
            text=text,
            confidence=calculate_confidence(text, len(tokens), confidences),
            duration=float(num_samples) / float(self.config.sample_rate),
            processing_time=float(processing_time),
            token_timings=create_token_timings(tokens, timestamps, confidences, self.vocabulary, token_durations),
        )

    def text_for(self, tokens: Sequence[int]) -> str:
        return tokens_to_text(tokens, self.vocabulary)


def load_asr_manager(model_dir: Optional[Union[str, Path]], device: str = "cpu", **kwargs) -> AsrManager:
    if not model_dir:
        return AsrManager(**kwargs)
    from .oracle import load_acoustic_model

    oracle = load_acoustic_model(model_dir, device=device)
    vocabulary = load_vocabulary(model_dir)
    return AsrManager(oracle, vocabulary, **kwargs)

