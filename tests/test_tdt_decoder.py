from collections import Counter

import pytest

from _fakes import BLANK, FakeAcousticModel, blank_everywhere, emit_at, encoder_frames
from tdtstream.asr.config import TdtConfig
from tdtstream.asr.state import DecoderState
from tdtstream.asr.tdt import TdtDecoder, clamp_probability, decode_with_timings, map_duration_bin
from tdtstream.errors import ProcessingFailedError


def _decoder(decide, **overrides):
    model = FakeAcousticModel(decide)
    return TdtDecoder(TdtConfig(**overrides), model), model


def test_blank_with_zero_duration_still_advances_one_frame():
    decoder, model = _decoder(lambda frame, last: (BLANK, 0.9, 0))
    hyp, state = decoder.decode_with_timings(encoder_frames(10), 10, 10, DecoderState.initial())

    assert hyp.is_empty
    assert model.joint_frames == list(range(10))
    assert state.time_jump == 0


def test_repeated_token_forces_cursor_forward():
    decoder, model = _decoder(lambda frame, last: (5, 0.9, 0), max_symbols_per_step=3)
    hyp, _ = decoder.decode_with_timings(encoder_frames(4), 4, 4, DecoderState.initial())

    per_frame = Counter(hyp.timestamps)
    assert hyp.token_count == 12
    assert set(per_frame) == {0, 1, 2, 3}
    assert max(per_frame.values()) <= 3


def test_token_ceiling_truncates_without_error():
    decoder, _ = _decoder(lambda frame, last: (5, 0.9, 0), max_tokens_per_chunk=5)
    hyp, _ = decoder.decode_with_timings(encoder_frames(50), 50, 50, DecoderState.initial())
    assert hyp.token_count == 5


def test_out_of_range_duration_bin_is_processing_failure():
    decoder, _ = _decoder(lambda frame, last: (BLANK, 0.9, 9))
    with pytest.raises(ProcessingFailedError, match="duration bin"):
        decoder.decode_with_timings(encoder_frames(5), 5, 5, DecoderState.initial())


def test_single_frame_returns_empty_hypothesis():
    decoder, model = _decoder(blank_everywhere)
    hyp, state = decoder.decode_with_timings(encoder_frames(1), 1, 1, DecoderState.initial())
    assert hyp.is_empty
    assert model.joint_frames == []
    assert state.time_jump is None


def test_emissions_carry_timestamps_confidences_and_durations():
    decoder, _ = _decoder(emit_at({2: 10, 6: 11}, probability=0.75))
    hyp, state = decoder.decode_with_timings(
        encoder_frames(10), 10, 10, DecoderState.initial(), global_frame_offset=100
    )

    assert hyp.y_sequence == [10, 11]
    assert hyp.timestamps == [102, 106]
    assert hyp.token_confidences == [0.75, 0.75]
    assert hyp.token_durations == [1, 1]
    assert state.last_token == 11


def test_actual_audio_frames_limit_the_decoded_region():
    decoder, model = _decoder(emit_at({2: 10, 8: 11}))
    hyp, _ = decoder.decode_with_timings(encoder_frames(10), 10, 5, DecoderState.initial())
    assert hyp.y_sequence == [10]
    assert max(model.joint_frames) < 5


def test_caller_state_is_not_mutated():
    decoder, _ = _decoder(emit_at({1: 10}))
    original = DecoderState.initial()
    _, new_state = decoder.decode_with_timings(encoder_frames(6), 6, 6, original)

    assert original.last_token is None
    assert original.predictor_cache is None
    assert float(original.hidden.sum()) == 0.0
    assert new_state.last_token == 10
    assert new_state is not original


def test_token_overshooting_chunk_end_is_left_to_next_chunk():
    decoder, model = _decoder(lambda frame, last: (10, 0.9, 4) if last == BLANK else (BLANK, 0.9, 1))
    hyp, state = decoder.decode_with_timings(encoder_frames(3), 3, 3, DecoderState.initial())

    assert hyp.y_sequence == []
    assert state.last_token is None
    assert state.time_jump == 1

    model.joint_frames.clear()
    decoder.decode_with_timings(encoder_frames(6), 6, 6, state)
    assert model.joint_frames[0] == 1


def test_token_on_last_frame_is_not_emitted_by_main_loop():
    decoder, _ = _decoder(emit_at({4: 10}))
    hyp, state = decoder.decode_with_timings(encoder_frames(5), 5, 5, DecoderState.initial())
    assert hyp.is_empty
    assert state.time_jump == 0


def test_continuation_without_overshoot_skips_overlap_frames():
    decoder, model = _decoder(blank_everywhere)
    state = DecoderState.initial()
    state.time_jump = 0
    decoder.decode_with_timings(encoder_frames(30), 30, 30, state)
    assert model.joint_frames[0] == 25


def test_negative_context_adjustment_is_clamped_to_zero():
    decoder, model = _decoder(blank_everywhere)
    state = DecoderState.initial()
    state.time_jump = 3
    decoder.decode_with_timings(encoder_frames(10), 10, 10, state, context_frame_adjustment=-5)
    assert model.joint_frames[0] == 0

    model.joint_frames.clear()
    decoder.decode_with_timings(encoder_frames(10), 10, 10, DecoderState.initial(), context_frame_adjustment=-2)
    assert model.joint_frames[0] == 0


def test_context_adjustment_shifts_start_frame():
    decoder, model = _decoder(blank_everywhere)
    decoder.decode_with_timings(encoder_frames(10), 10, 10, DecoderState.initial(), context_frame_adjustment=4)
    assert model.joint_frames[0] == 4

    model.joint_frames.clear()
    state = DecoderState.initial()
    state.time_jump = 2
    decoder.decode_with_timings(encoder_frames(10), 10, 10, state, context_frame_adjustment=3)
    assert model.joint_frames[0] == 5


def test_start_beyond_chunk_updates_time_jump():
    decoder, model = _decoder(blank_everywhere)
    state = DecoderState.initial()
    state.time_jump = 7
    hyp, new_state = decoder.decode_with_timings(encoder_frames(5), 5, 5, state)

    assert hyp.is_empty
    assert model.joint_frames == []
    assert new_state.time_jump == 2


def test_final_punctuation_clears_predictor_cache():
    decoder, _ = _decoder(emit_at({0: 7883}))
    hyp, state = decoder.decode_with_timings(encoder_frames(4), 4, 4, DecoderState.initial())
    assert hyp.last_token == 7883
    assert state.predictor_cache is None


def test_non_punctuation_keeps_predictor_cache():
    decoder, _ = _decoder(emit_at({0: 42}))
    _, state = decoder.decode_with_timings(encoder_frames(4), 4, 4, DecoderState.initial())
    assert state.predictor_cache is not None
    assert float(state.predictor_cache[0]) == 42.0


def test_last_chunk_runs_bounded_finalization():
    decoder, model = _decoder(blank_everywhere)
    hyp, state = decoder.decode_with_timings(
        encoder_frames(10), 10, 10, DecoderState.initial(), is_last_chunk=True
    )

    assert hyp.is_empty
    # 10 frames in the main loop, then consecutive_blank_limit probes.
    assert len(model.joint_frames) == 15
    assert state.time_jump is None
    assert state.predictor_cache is None


def test_last_chunk_finalization_can_emit_trailing_token():
    visits = Counter()

    def decide(frame, last):
        visits[frame] += 1
        # Blank on the main-loop pass, token when finalization re-probes the last frame.
        if frame == 9 and visits[frame] == 2 and last == BLANK:
            return 77, 0.6, 1
        return BLANK, 0.9, 1

    decoder, _ = _decoder(decide)
    hyp, state = decoder.decode_with_timings(
        encoder_frames(10), 10, 10, DecoderState.initial(), is_last_chunk=True
    )
    assert hyp.y_sequence == [77]
    assert hyp.timestamps == [9]
    assert state.last_token == 77


def test_oracle_failure_is_wrapped():
    def decide(frame, last):
        raise RuntimeError("joint blew up")

    decoder, _ = _decoder(decide)
    with pytest.raises(ProcessingFailedError, match="joint step failed"):
        decoder.decode_with_timings(encoder_frames(4), 4, 4, DecoderState.initial())


def test_module_level_decode_uses_blank_from_config():
    model = FakeAcousticModel(lambda frame, last: (1024, 0.9, 1))
    hyp, _ = decode_with_timings(model, encoder_frames(5), 5, DecoderState.initial(), config=TdtConfig.for_model("v2"))
    assert hyp.is_empty
    assert model.decoder_tokens == [1024]


def test_clamp_probability_and_duration_mapping():
    assert clamp_probability(float("nan")) == 0.0
    assert clamp_probability(1.7) == 1.0
    assert clamp_probability(-0.2) == 0.0
    assert map_duration_bin(3, (0, 1, 2, 3, 4)) == 3
    with pytest.raises(ProcessingFailedError):
        map_duration_bin(-1, (0, 1))
