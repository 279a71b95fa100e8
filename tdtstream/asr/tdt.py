# coding=utf-8
"""
Greedy Token-and-Duration Transducer decoding.

Every joint step predicts a token and a duration bin. Blank predictions skip
frames without touching the prediction network, so silence never changes the
linguistic context; only emitted tokens advance the decoder state.
"""
from __future__ import annotations

import logging
import math
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from ..errors import AsrError, ProcessingFailedError
from .config import TdtConfig
from .constants import ENCODER_HIDDEN_SIZE, calculate_encoder_frames
from .frames import EncoderFrameView
from .hypothesis import Hypothesis
from .oracle import AcousticModelOracle, JointDecision
from .state import DecoderState

logger = logging.getLogger(__name__)

# Frames skipped when a continuation chunk starts exactly on the previous boundary
# but still carries the physical 2.0 s overlap (25 frames of 80 ms).
CONTINUATION_OVERLAP_FRAMES = 25


def clamp_probability(value: float) -> float:
    v = float(value)
    if not math.isfinite(v):
        return 0.0
    return min(max(v, 0.0), 1.0)


def map_duration_bin(bin_index: int, duration_bins: Tuple[int, ...]) -> int:
    idx = int(bin_index)
    if idx < 0 or idx >= len(duration_bins):
        raise ProcessingFailedError(f"duration bin index out of range: {idx}")
    return int(duration_bins[idx])


class TdtDecoder:
    def __init__(self, config: TdtConfig, oracle: AcousticModelOracle) -> None:
        self.config = config
        self.oracle = oracle
        self.encoder_hidden_size = int(getattr(oracle, "encoder_hidden_size", ENCODER_HIDDEN_SIZE))

    def call_oracle(self, what: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except AsrError:
            raise
        except Exception as exc:
            raise ProcessingFailedError(f"{what} failed: {exc}") from exc

    def _decoder_step(self, token: int, hidden: np.ndarray, cell: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        out = self.call_oracle("decoder step", self.oracle.decoder_step, int(token), hidden, cell)
        projection = np.asarray(out.projection, dtype=np.float32).reshape(-1)
        if projection.size == 0:
            raise ProcessingFailedError("invalid decoder output: empty projection")
        new_hidden = np.asarray(out.hidden, dtype=np.float32)
        new_cell = np.asarray(out.cell, dtype=np.float32)
        if new_hidden.shape != hidden.shape or new_cell.shape != cell.shape:
            raise ProcessingFailedError(
                f"decoder state shape mismatch: hidden={new_hidden.shape} cell={new_cell.shape} expected={hidden.shape}"
            )
        return projection, new_hidden, new_cell

    def _joint(self, frames: EncoderFrameView, time_index: int, projection: np.ndarray) -> JointDecision:
        frame = frames.frame(time_index)
        decision = self.call_oracle("joint step", self.oracle.joint_step, frame, projection)
        return JointDecision(
            token=int(decision.token),
            probability=clamp_probability(decision.probability),
            duration_bin=int(decision.duration_bin),
        )

    def _decoder_output(self, state: DecoderState, label: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        # A cached projection was produced from the current recurrent state.
        if state.predictor_cache is not None:
            return state.predictor_cache, state.hidden, state.cell
        return self._decoder_step(label, state.hidden, state.cell)

    def _initial_time_index(self, state: DecoderState, context_frame_adjustment: int) -> int:
        adjust = int(context_frame_adjustment)
        if state.time_jump is None:
            return max(0, adjust)
        if state.time_jump == 0 and adjust == 0:
            return CONTINUATION_OVERLAP_FRAMES
        return max(0, int(state.time_jump) + adjust)

    def decode_with_timings(
        self,
        encoder_output: np.ndarray,
        encoder_sequence_length: int,
        actual_audio_frames: int,
        decoder_state: DecoderState,
        *,
        context_frame_adjustment: int = 0,
        is_last_chunk: bool = False,
        global_frame_offset: int = 0,
    ) -> Tuple[Hypothesis, DecoderState]:
        """
        Decode one block of encoder frames.

        The caller's ``decoder_state`` is left untouched; the updated state is
        returned next to the hypothesis and should replace it for the next chunk.
        Timestamps are encoder-frame indices shifted by ``global_frame_offset``.
        """
        cfg = self.config
        blank_id = int(cfg.blank_id)
        state = decoder_state.copy()

        effective_length = min(int(encoder_sequence_length), int(actual_audio_frames))
        if int(encoder_sequence_length) <= 1 or effective_length <= 1:
            return Hypothesis(dec_state=state, last_token=state.last_token), state

        frames = EncoderFrameView(encoder_output, int(encoder_sequence_length), hidden_size=self.encoder_hidden_size)
        effective_length = min(effective_length, frames.count)
        last_timestep = effective_length - 1

        hyp = Hypothesis(dec_state=state, last_token=state.last_token)

        time_index = self._initial_time_index(state, context_frame_adjustment)
        if time_index >= effective_length:
            logger.debug(
                "decode start beyond chunk: time_index=%d effective_length=%d",
                time_index,
                effective_length,
            )
            state.time_jump = None if is_last_chunk else time_index - effective_length
            return hyp, state

        if state.is_fresh:
            state.zero_recurrent()

        # Blank doubles as start-of-sequence to prime the prediction network.
        if state.predictor_cache is None and hyp.last_token is None:
            projection, hidden, cell = self._decoder_step(blank_id, state.hidden, state.cell)
            state.predictor_cache = projection
            state.hidden, state.cell = hidden, cell

        safe_index = min(time_index, last_timestep)
        active = time_index < effective_length
        last_emission_ts = -1
        emissions_at_ts = 0
        tokens_this_chunk = 0

        while active:
            label = hyp.last_token if hyp.last_token is not None else blank_id
            projection, step_hidden, step_cell = self._decoder_output(state, label)

            decision = self._joint(frames, safe_index, projection)
            label = decision.token
            score = decision.probability
            duration = map_duration_bin(decision.duration_bin, cfg.duration_bins)
            is_blank = label == blank_id
            if is_blank and duration == 0:
                duration = 1

            label_time = time_index
            time_index += duration
            safe_index = min(time_index, last_timestep)
            active = time_index < effective_length

            # Blank run: same projection, only the encoder frame moves.
            while active and is_blank:
                label_time = time_index
                decision = self._joint(frames, safe_index, projection)
                label = decision.token
                score = decision.probability
                duration = map_duration_bin(decision.duration_bin, cfg.duration_bins)
                is_blank = label == blank_id
                if is_blank and duration == 0:
                    duration = 1
                time_index += duration
                safe_index = min(time_index, last_timestep)
                active = time_index < effective_length

            if active and not is_blank:
                tokens_this_chunk += 1
                if tokens_this_chunk > cfg.max_tokens_per_chunk:
                    logger.debug("token ceiling reached: max_tokens_per_chunk=%d", cfg.max_tokens_per_chunk)
                    break

                hyp.append(
                    label,
                    label_time + int(global_frame_offset),
                    score,
                    duration if cfg.include_token_duration else None,
                )
                projection, hidden, cell = self._decoder_step(label, step_hidden, step_cell)
                state.hidden, state.cell = hidden, cell
                state.predictor_cache = projection

                if label_time == last_emission_ts:
                    emissions_at_ts += 1
                else:
                    last_emission_ts = label_time
                    emissions_at_ts = 1

                if emissions_at_ts >= cfg.max_symbols_per_step:
                    logger.debug("forcing advance after %d symbols at frame %d", emissions_at_ts, label_time)
                    time_index += 1
                    safe_index = min(time_index, last_timestep)
                    emissions_at_ts = 0
                    last_emission_ts = -1

            active = time_index < effective_length

        if is_last_chunk:
            self._finalize(frames, state, hyp, time_index, effective_length, int(global_frame_offset))
            state.finalize_last_chunk()

        state.last_token = hyp.last_token
        if hyp.last_token is not None and hyp.last_token in cfg.punctuation_token_ids:
            # Sentence-final punctuation would otherwise be re-emitted across the seam.
            state.predictor_cache = None

        state.time_jump = None if is_last_chunk else time_index - effective_length
        hyp.dec_state = state
        return hyp, state

    def _finalize(
        self,
        frames: EncoderFrameView,
        state: DecoderState,
        hyp: Hypothesis,
        time_index: int,
        effective_length: int,
        global_frame_offset: int,
    ) -> None:
        cfg = self.config
        blank_id = int(cfg.blank_id)
        steps = 0
        consecutive_blanks = 0
        last_token = hyp.last_token if hyp.last_token is not None else blank_id
        final_index = time_index
        last_frame = frames.count - 1

        while steps < cfg.max_symbols_per_step and consecutive_blanks < cfg.consecutive_blank_limit:
            projection, step_hidden, step_cell = self._decoder_output(state, last_token)

            # Probe around the boundary: cursor, last frame, second-to-last frame.
            probes = (
                min(final_index, last_frame),
                min(effective_length - 1, last_frame),
                min(max(0, effective_length - 2), last_frame),
            )
            decision = self._joint(frames, probes[steps % len(probes)], projection)
            duration = map_duration_bin(decision.duration_bin, cfg.duration_bins)

            if decision.token == blank_id:
                consecutive_blanks += 1
            else:
                consecutive_blanks = 0
                timestamp = min(final_index, effective_length - 1) + global_frame_offset
                hyp.append(
                    decision.token,
                    timestamp,
                    decision.probability,
                    duration if cfg.include_token_duration else None,
                )
                projection, hidden, cell = self._decoder_step(decision.token, step_hidden, step_cell)
                state.hidden, state.cell = hidden, cell
                state.predictor_cache = projection
                last_token = decision.token

            final_index = min(final_index + max(1, duration), effective_length)
            steps += 1

        if steps:
            logger.debug("last-chunk finalization ran %d steps, tokens=%d", steps, hyp.token_count)

    def decode(
        self,
        encoder_output: np.ndarray,
        encoder_sequence_length: int,
        decoder_state: DecoderState,
    ) -> Tuple[List[int], DecoderState]:
        hyp, state = self.decode_with_timings(
            encoder_output,
            encoder_sequence_length,
            encoder_sequence_length,
            decoder_state,
        )
        return list(hyp.y_sequence), state


def decode_with_timings(
    oracle: AcousticModelOracle,
    encoder_output: np.ndarray,
    encoder_sequence_length: int,
    decoder_state: DecoderState,
    *,
    config: Optional[TdtConfig] = None,
    actual_audio_frames: Optional[int] = None,
    context_frame_adjustment: int = 0,
    is_last_chunk: bool = False,
    global_frame_offset: int = 0,
) -> Tuple[Hypothesis, DecoderState]:
    decoder = TdtDecoder(config or TdtConfig(), oracle)
    return decoder.decode_with_timings(
        encoder_output,
        encoder_sequence_length,
        encoder_sequence_length if actual_audio_frames is None else actual_audio_frames,
        decoder_state,
        context_frame_adjustment=context_frame_adjustment,
        is_last_chunk=is_last_chunk,
        global_frame_offset=global_frame_offset,
    )


def pad_audio(samples: np.ndarray, target_length: int) -> np.ndarray:
    audio = np.asarray(samples, dtype=np.float32).reshape(-1)
    if audio.shape[0] >= int(target_length):
        return audio
    out = np.zeros((int(target_length),), dtype=np.float32)
    out[: audio.shape[0]] = audio
    return out


def encode_and_decode(
    decoder: TdtDecoder,
    padded_audio: np.ndarray,
    original_length: int,
    decoder_state: DecoderState,
    *,
    actual_audio_frames: Optional[int] = None,
    context_frame_adjustment: int = 0,
    is_last_chunk: bool = False,
    global_frame_offset: int = 0,
) -> Tuple[Hypothesis, DecoderState, int]:
    """Run the encoder over one padded window and decode it; returns the encoder length too."""
    encoded = decoder.call_oracle("encoder", decoder.oracle.encode, padded_audio, int(original_length))
    encoder_length = int(encoded.valid_length)
    frames_for_audio = (
        calculate_encoder_frames(original_length) if actual_audio_frames is None else int(actual_audio_frames)
    )
    hyp, state = decoder.decode_with_timings(
        encoded.frames,
        encoder_length,
        frames_for_audio,
        decoder_state,
        context_frame_adjustment=context_frame_adjustment,
        is_last_chunk=is_last_chunk,
        global_frame_offset=global_frame_offset,
    )
    return hyp, state, encoder_length
