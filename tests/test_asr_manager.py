import json

import numpy as np
import pytest

from _fakes import FakeAcousticModel, emit_at, ramp_audio
from tdtstream.asr.manager import (
    AsrManager,
    AudioSource,
    calculate_confidence,
    create_token_timings,
    load_vocabulary,
    tokens_to_text,
)
from tdtstream.errors import InvalidAudioDataError, NotInitializedError, ProcessingFailedError

VOCAB = {10: "▁hello", 11: "▁world", 12: "!"}


def _manager(decide=None, **kwargs):
    model = FakeAcousticModel(decide or emit_at({2: 10, 5: 11}))
    return AsrManager(model, VOCAB, **kwargs), model


def test_transcribe_without_model_is_not_initialized():
    with pytest.raises(NotInitializedError):
        AsrManager().transcribe(np.zeros(10, dtype=np.float32))


def test_transcribe_rejects_short_audio():
    asr, model = _manager()
    with pytest.raises(InvalidAudioDataError, match="too short"):
        asr.transcribe(np.zeros(15999, dtype=np.float32))
    assert model.encode_calls == 0


def test_transcribe_single_window():
    asr, model = _manager()
    result = asr.transcribe(ramp_audio(32000))

    assert result.text == "hello world"
    assert result.confidence == pytest.approx(0.8)
    assert result.duration == pytest.approx(2.0)
    assert model.encode_calls == 1
    assert [t.token for t in result.token_timings] == [" hello", " world"]
    assert [t.start_time for t in result.token_timings] == pytest.approx([0.16, 0.4])
    assert [t.end_time for t in result.token_timings] == pytest.approx([0.24, 0.48])


def test_transcribe_resets_source_state_afterwards():
    asr, _ = _manager()
    asr.transcribe(ramp_audio(32000), AudioSource.SYSTEM)
    assert asr.decoder_state("system").is_fresh


def test_transcribe_failure_still_resets_state():
    asr, model = _manager()
    asr.transcribe_streaming_chunk(ramp_audio(32000))
    assert not asr.decoder_state().is_fresh

    model.fail_on = "encode"
    with pytest.raises(ProcessingFailedError):
        asr.transcribe(ramp_audio(32000))
    assert asr.decoder_state().is_fresh


def test_long_audio_goes_through_chunk_processor():
    mapping = {frame: 10 + (frame // 10) % 2 for frame in range(0, 240, 10)}
    asr, model = _manager(emit_at(mapping))
    result = asr.transcribe(ramp_audio(300_000))

    assert model.encode_calls == 2
    assert len(result.token_timings) == 24
    assert result.text.split() == ["hello", "world"] * 12


def test_streaming_chunk_keeps_state_and_dedups():
    asr, _ = _manager()
    out = asr.transcribe_streaming_chunk(ramp_audio(32000), previous_tokens=[3, 10, 11])

    assert out.removed == 2
    assert out.tokens == []
    assert out.timestamps == []
    assert out.encoder_sequence_length == 25
    assert asr.decoder_state().last_token == 11


def test_streaming_chunk_without_history_returns_everything():
    asr, _ = _manager()
    out = asr.transcribe_streaming_chunk(ramp_audio(32000))
    assert out.tokens == [10, 11]
    assert out.timestamps == [2, 5]
    assert out.removed == 0


def test_reset_decoder_state_per_source():
    asr, _ = _manager()
    asr.transcribe_streaming_chunk(ramp_audio(32000), "microphone")
    asr.transcribe_streaming_chunk(ramp_audio(32000), "system")

    asr.reset_decoder_state("microphone")
    assert asr.decoder_state("microphone").is_fresh
    assert not asr.decoder_state("system").is_fresh

    asr.reset_decoder_state()
    assert asr.decoder_state("system").is_fresh


def test_audio_source_parsing():
    assert AudioSource.parse("SYSTEM") is AudioSource.SYSTEM
    assert AudioSource.parse(None) is AudioSource.MICROPHONE
    with pytest.raises(ValueError, match="unknown audio source"):
        AudioSource.parse("line-in")


def test_confidence_rules():
    assert calculate_confidence("", 0, []) == 0.1
    assert calculate_confidence("hi", 2, [0.9]) == 0.5
    assert calculate_confidence("hi", 2, [0.01, 0.03]) == 0.1
    assert calculate_confidence("hi", 2, [0.6, 0.8]) == pytest.approx(0.7)


def test_token_timings_fall_back_to_next_token_start():
    timings = create_token_timings([10, 99], [5, 0], [0.9, 0.7], VOCAB)

    assert [t.token_id for t in timings] == [99, 10]
    assert timings[0].token == "token_99"
    assert timings[0].end_time == pytest.approx(0.4)
    assert timings[1].end_time == pytest.approx(0.48)


def test_token_timings_require_aligned_inputs():
    assert create_token_timings([10, 11], [0], [0.9, 0.9], VOCAB) == []


def test_tokens_to_text_skips_unknown_ids():
    assert tokens_to_text([10, 77, 11, 12], VOCAB) == "hello world!"


def test_load_vocabulary_from_directory(tmp_path):
    (tmp_path / "parakeet_vocab.json").write_text(
        json.dumps({"0": "▁a", "1": "b", "extra": "x"}), encoding="utf-8"
    )
    assert load_vocabulary(tmp_path) == {0: "▁a", 1: "b"}


def test_load_vocabulary_rejects_non_object(tmp_path):
    path = tmp_path / "vocab.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError, match="JSON object"):
        load_vocabulary(path)
