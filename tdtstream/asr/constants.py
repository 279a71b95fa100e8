# coding=utf-8
from __future__ import annotations

import math

SAMPLE_RATE = 16000
MEL_HOP_SIZE = 160  # 10 ms at 16 kHz
ENCODER_SUBSAMPLING = 8
SAMPLES_PER_ENCODER_FRAME = MEL_HOP_SIZE * ENCODER_SUBSAMPLING  # 1280 samples, 80 ms
FRAME_DURATION_SEC = SAMPLES_PER_ENCODER_FRAME / SAMPLE_RATE

ENCODER_HIDDEN_SIZE = 1024
DECODER_HIDDEN_SIZE = 640
DECODER_LAYERS = 2

MAX_MODEL_SAMPLES = 240_000  # encoder window capacity, 15 s
MIN_AUDIO_SAMPLES = 16_000

WORD_BOUNDARY_MARKER = "▁"


def calculate_encoder_frames(samples: int) -> int:
    n = max(0, int(samples))
    return int(math.ceil(n / SAMPLES_PER_ENCODER_FRAME))


def frames_to_seconds(frames: int) -> float:
    return float(frames) * FRAME_DURATION_SEC
