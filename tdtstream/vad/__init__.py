# coding=utf-8

from .manager import TorchVadModel, VadManager, VadModelOracle, VadModelOutput, load_vad_manager
from .segmentation import detect_speech_sample_ranges, segment_speech
from .streaming import streaming_state_machine
from .types import (
    VAD_CHUNK_SIZE,
    VAD_SAMPLE_RATE,
    VadConfig,
    VadResult,
    VadSegment,
    VadSegmentationConfig,
    VadState,
    VadStreamEvent,
    VadStreamResult,
    VadStreamState,
)

__all__ = [
    "TorchVadModel",
    "VAD_CHUNK_SIZE",
    "VAD_SAMPLE_RATE",
    "VadConfig",
    "VadManager",
    "VadModelOracle",
    "VadModelOutput",
    "VadResult",
    "VadSegment",
    "VadSegmentationConfig",
    "VadState",
    "VadStreamEvent",
    "VadStreamResult",
    "VadStreamState",
    "detect_speech_sample_ranges",
    "load_vad_manager",
    "segment_speech",
    "streaming_state_machine",
]
