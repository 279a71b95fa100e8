# coding=utf-8

from .chunking import ChunkedTokens, ChunkProcessor, TokenWindow, merge_chunks, process_chunked_audio
from .config import AsrConfig, TdtConfig
from .dedup import remove_duplicate_token_sequence
from .hypothesis import Hypothesis
from .manager import AsrManager, AsrResult, AudioSource, TokenTiming
from .oracle import AcousticModelOracle, DecoderStepOutput, EncoderOutput, JointDecision
from .state import DecoderState
from .tdt import TdtDecoder, decode_with_timings

__all__ = [
    "AcousticModelOracle",
    "AsrConfig",
    "AsrManager",
    "AsrResult",
    "AudioSource",
    "ChunkProcessor",
    "ChunkedTokens",
    "DecoderState",
    "DecoderStepOutput",
    "EncoderOutput",
    "Hypothesis",
    "JointDecision",
    "TdtConfig",
    "TdtDecoder",
    "TokenTiming",
    "TokenWindow",
    "decode_with_timings",
    "merge_chunks",
    "process_chunked_audio",
    "remove_duplicate_token_sequence",
]
