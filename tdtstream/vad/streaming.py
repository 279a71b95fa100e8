# coding=utf-8
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from .types import (
    SPEECH_END,
    SPEECH_START,
    VAD_SAMPLE_RATE,
    VadConfig,
    VadSegmentationConfig,
    VadState,
    VadStreamEvent,
    VadStreamResult,
    VadStreamState,
)

logger = logging.getLogger(__name__)


def make_stream_event(
    kind: str,
    sample_index: int,
    *,
    return_seconds: bool = False,
    time_resolution: int = 1,
    sample_rate: int = VAD_SAMPLE_RATE,
) -> VadStreamEvent:
    clamped = max(0, int(sample_index))
    if not return_seconds:
        return VadStreamEvent(kind=kind, sample_index=clamped)
    seconds = clamped / float(sample_rate)
    factor = 10.0 ** int(time_resolution)
    return VadStreamEvent(kind=kind, sample_index=clamped, time=round(seconds * factor) / factor)


def streaming_state_machine(
    probability: float,
    chunk_sample_count: int,
    model_state: VadState,
    state: VadStreamState,
    config: Optional[VadSegmentationConfig] = None,
    *,
    threshold: Optional[float] = None,
    return_seconds: bool = False,
    time_resolution: int = 1,
    sample_rate: int = VAD_SAMPLE_RATE,
) -> VadStreamResult:
    """
    Advance the causal segmenter by one chunk; emits at most one event.

    ``state`` is not modified. The entry threshold is ``threshold`` if given,
    otherwise derived from ``config`` and the default VAD threshold.
    """
    cfg = config or VadSegmentationConfig()
    n = int(chunk_sample_count)
    nxt = replace(state, model_state=model_state, processed_samples=state.processed_samples + n)

    entry = cfg.entry_threshold(VadConfig().default_threshold) if threshold is None else float(threshold)
    negative = cfg.effective_negative_threshold(entry)
    pad = int(cfg.speech_padding * sample_rate)
    min_silence = int(cfg.min_silence_duration * sample_rate)
    prob = float(probability)

    event: Optional[VadStreamEvent] = None
    if prob >= entry:
        nxt.temp_end_sample = None
        if not nxt.triggered:
            nxt.triggered = True
            event = make_stream_event(
                SPEECH_START,
                nxt.processed_samples - pad - n,
                return_seconds=return_seconds,
                time_resolution=time_resolution,
                sample_rate=sample_rate,
            )
    elif prob < negative and nxt.triggered:
        if nxt.temp_end_sample is None:
            nxt.temp_end_sample = nxt.processed_samples
        silence_start = nxt.temp_end_sample
        if nxt.processed_samples - silence_start >= min_silence:
            nxt.triggered = False
            nxt.temp_end_sample = None
            event = make_stream_event(
                SPEECH_END,
                silence_start + pad - n,
                return_seconds=return_seconds,
                time_resolution=time_resolution,
                sample_rate=sample_rate,
            )

    if event is not None:
        logger.debug("stream event %s at sample=%d prob=%.3f", event.kind, event.sample_index, prob)
    return VadStreamResult(state=nxt, event=event, probability=prob)
