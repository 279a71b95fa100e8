# coding=utf-8
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol, Sequence, Union, runtime_checkable

import numpy as np

from ..errors import VadError, VadNotInitializedError, VadProcessingFailedError
from .segmentation import segment_speech
from .streaming import streaming_state_machine
from .types import (
    VAD_CHUNK_SIZE,
    VAD_CONTEXT_SIZE,
    VAD_SAMPLE_RATE,
    VAD_STATE_SIZE,
    VadConfig,
    VadResult,
    VadSegment,
    VadSegmentationConfig,
    VadState,
    VadStreamResult,
    VadStreamState,
)

logger = logging.getLogger(__name__)

VAD_MODEL_FILE = "silero_vad.pt"


@dataclass(frozen=True)
class VadModelOutput:
    probability: float
    hidden: np.ndarray
    cell: np.ndarray


@runtime_checkable
class VadModelOracle(Protocol):
    """Raw network: context + chunk (4160 samples) and recurrent state in, probability and state out."""

    def infer(self, audio: np.ndarray, hidden: np.ndarray, cell: np.ndarray) -> VadModelOutput:
        ...


class TorchVadModel:
    """Wraps a torch callable ``model(audio[1, 4160], hidden[1, 128], cell[1, 128]) -> (prob, hidden, cell)``."""

    def __init__(self, model: Callable[..., Any], device: str = "cpu") -> None:
        import torch

        self._torch = torch
        self._model = model
        self.device = torch.device(device)

    @classmethod
    def from_directory(cls, model_dir: Union[str, Path], device: str = "cpu") -> "TorchVadModel":
        import torch

        path = Path(model_dir).expanduser()
        if path.is_dir():
            path = path / VAD_MODEL_FILE
        if not path.is_file():
            raise FileNotFoundError(f"missing VAD model: {path}")
        module = torch.jit.load(str(path), map_location=device)
        module.eval()
        logger.info("loaded VAD model from %s", path)
        return cls(module, device=device)

    def infer(self, audio: np.ndarray, hidden: np.ndarray, cell: np.ndarray) -> VadModelOutput:
        torch = self._torch

        def to_tensor(arr: np.ndarray) -> Any:
            return torch.from_numpy(np.ascontiguousarray(arr, dtype=np.float32)).to(self.device).unsqueeze(0)

        with torch.inference_mode():
            prob, h_out, c_out = self._model(to_tensor(audio), to_tensor(hidden), to_tensor(cell))
        return VadModelOutput(
            probability=float(prob.detach().cpu().reshape(-1)[0]),
            hidden=h_out.detach().cpu().numpy().astype(np.float32).reshape(-1),
            cell=c_out.detach().cpu().numpy().astype(np.float32).reshape(-1),
        )


def prepare_chunk(chunk: np.ndarray, chunk_size: int = VAD_CHUNK_SIZE) -> np.ndarray:
    """Trim or pad to ``chunk_size``; short chunks repeat their last sample instead of zero-padding."""
    audio = np.asarray(chunk, dtype=np.float32).reshape(-1)
    if audio.shape[0] >= chunk_size:
        return np.ascontiguousarray(audio[:chunk_size])
    last = float(audio[-1]) if audio.shape[0] else 0.0
    out = np.full((chunk_size,), last, dtype=np.float32)
    out[: audio.shape[0]] = audio
    return out


def _fit(values: np.ndarray, size: int) -> np.ndarray:
    out = np.zeros((size,), dtype=np.float32)
    flat = np.asarray(values, dtype=np.float32).reshape(-1)[:size]
    out[: flat.shape[0]] = flat
    return out


class VadManager:
    """
    Drives the VAD network over 256 ms chunks and exposes offline and streaming segmentation.

    Segmentation helpers work without a model when probabilities are supplied directly.
    """

    sample_rate = VAD_SAMPLE_RATE
    chunk_size = VAD_CHUNK_SIZE

    def __init__(self, model: Optional[VadModelOracle] = None, config: Optional[VadConfig] = None) -> None:
        self.config = config or VadConfig()
        self.model = model
        self._lock = threading.Lock()
        if model is None:
            logger.info("VAD initialized in logic-only mode (no model loaded)")
        else:
            logger.info("VAD initialized: threshold=%.2f", self.config.default_threshold)

    @property
    def is_available(self) -> bool:
        return self.model is not None

    def make_stream_state(self) -> VadStreamState:
        return VadStreamState.initial()

    def process_chunk(self, chunk: np.ndarray, state: Optional[VadState] = None) -> VadResult:
        if self.model is None:
            raise VadNotInitializedError()
        started = time.perf_counter()
        current = state or VadState.initial()
        audio = prepare_chunk(chunk, self.chunk_size)
        model_input = np.concatenate([_fit(current.context, VAD_CONTEXT_SIZE), audio])

        with self._lock:
            try:
                out = self.model.infer(model_input, _fit(current.hidden, VAD_STATE_SIZE), _fit(current.cell, VAD_STATE_SIZE))
            except VadError:
                raise
            except Exception as exc:
                logger.error("VAD model processing failed: %s", exc)
                raise VadProcessingFailedError(str(exc)) from exc

        probability = float(out.probability)
        if not math.isfinite(probability):
            raise VadProcessingFailedError(f"non-finite probability: {probability}")
        next_state = VadState(
            hidden=_fit(out.hidden, VAD_STATE_SIZE),
            cell=_fit(out.cell, VAD_STATE_SIZE),
            context=np.array(audio[-VAD_CONTEXT_SIZE:], dtype=np.float32, copy=True),
        )
        return VadResult(
            probability=probability,
            is_voice_active=probability >= self.config.default_threshold,
            processing_time=time.perf_counter() - started,
            output_state=next_state,
        )

    def process(self, samples: np.ndarray) -> List[VadResult]:
        audio = np.asarray(samples, dtype=np.float32).reshape(-1)
        results: List[VadResult] = []
        state = VadState.initial()
        for start in range(0, audio.shape[0], self.chunk_size):
            result = self.process_chunk(audio[start : start + self.chunk_size], state)
            results.append(result)
            state = result.output_state
        if self.config.debug:
            logger.debug("processed %d samples into %d VAD chunks", audio.shape[0], len(results))
        return results

    def threshold_for(self, config: VadSegmentationConfig) -> float:
        return config.entry_threshold(self.config.default_threshold)

    def segment_speech_from_results(
        self,
        results: Sequence[VadResult],
        total_samples: int,
        config: Optional[VadSegmentationConfig] = None,
    ) -> List[VadSegment]:
        cfg = config or VadSegmentationConfig()
        if not results or total_samples <= 0:
            return []
        return segment_speech(
            [r.probability for r in results],
            int(total_samples),
            self.threshold_for(cfg),
            cfg,
            sample_rate=self.sample_rate,
            chunk_size=self.chunk_size,
        )

    def segment_speech(self, samples: np.ndarray, config: Optional[VadSegmentationConfig] = None) -> List[VadSegment]:
        audio = np.asarray(samples, dtype=np.float32).reshape(-1)
        return self.segment_speech_from_results(self.process(audio), audio.shape[0], config)

    def segment_speech_audio(
        self,
        samples: np.ndarray,
        config: Optional[VadSegmentationConfig] = None,
    ) -> List[np.ndarray]:
        audio = np.asarray(samples, dtype=np.float32).reshape(-1)
        total = audio.shape[0]
        out: List[np.ndarray] = []
        for segment in self.segment_speech(audio, config):
            start = max(0, min(segment.start_sample(self.sample_rate), total))
            end = max(start, min(segment.end_sample(self.sample_rate), total))
            out.append(audio[start:end])
        return out

    def process_streaming_chunk(
        self,
        chunk: np.ndarray,
        state: VadStreamState,
        config: Optional[VadSegmentationConfig] = None,
        *,
        return_seconds: bool = False,
        time_resolution: int = 1,
    ) -> VadStreamResult:
        cfg = config or VadSegmentationConfig()
        audio = np.asarray(chunk, dtype=np.float32).reshape(-1)
        result = self.process_chunk(audio, state.model_state)
        return streaming_state_machine(
            result.probability,
            audio.shape[0],
            result.output_state,
            state,
            cfg,
            threshold=self.threshold_for(cfg),
            return_seconds=return_seconds,
            time_resolution=time_resolution,
            sample_rate=self.sample_rate,
        )


def load_vad_manager(
    model_dir: Optional[Union[str, Path]],
    config: Optional[VadConfig] = None,
    device: str = "cpu",
) -> VadManager:
    if not model_dir:
        return VadManager(config=config)
    return VadManager(TorchVadModel.from_directory(model_dir, device=device), config=config)
