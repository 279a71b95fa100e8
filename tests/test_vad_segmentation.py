import pytest

from tdtstream.vad.segmentation import apply_speech_padding, detect_speech_sample_ranges, segment_speech
from tdtstream.vad.types import VadSegment, VadSegmentationConfig

CHUNK = 4096


def _total(probs):
    return len(probs) * CHUNK


def test_single_utterance_is_padded():
    probs = [0.1, 0.1, 0.9, 0.9, 0.9, 0.1, 0.1]
    segments = segment_speech(probs, _total(probs), 0.5, VadSegmentationConfig(min_silence_duration=0.25))

    assert len(segments) == 1
    assert segments[0].start_time == pytest.approx(0.412)
    assert segments[0].end_time == pytest.approx(1.38)


def test_short_blip_is_dropped():
    probs = [0.1, 0.1, 0.9, 0.1, 0.1, 0.1]
    cfg = VadSegmentationConfig(min_speech_duration=0.3, min_silence_duration=0.25)
    assert segment_speech(probs, _total(probs), 0.5, cfg) == []


def test_hysteresis_band_never_opens_a_segment():
    probs = [0.4, 0.45] * 5
    assert segment_speech(probs, _total(probs), 0.5) == []


def test_hysteresis_band_keeps_open_segment_until_end():
    probs = [0.9, 0.4, 0.4, 0.4]
    ranges = detect_speech_sample_ranges(probs, _total(probs), 0.5, VadSegmentationConfig(min_silence_duration=0.25))
    assert ranges == [(0, _total(probs))]


def test_max_speech_duration_forces_splits():
    probs = [0.9] * 10
    cfg = VadSegmentationConfig(max_speech_duration=1.0, speech_padding=0.0)
    segments = segment_speech(probs, _total(probs), 0.5, cfg)

    assert len(segments) == 3
    assert all(seg.duration <= 1.0 for seg in segments)
    assert segments[0].start_time == 0.0
    assert segments[-1].end_time == pytest.approx(2.56)


def test_max_speech_split_uses_recorded_silence():
    probs = [0.9, 0.9, 0.9, 0.1] + [0.9] * 6
    cfg = VadSegmentationConfig(max_speech_duration=2.0, speech_padding=0.0)
    segments = segment_speech(probs, _total(probs), 0.5, cfg)

    assert len(segments) == 2
    assert segments[0].start_time == 0.0
    assert segments[0].end_time == pytest.approx(0.768)
    # Speech resumes after the silence candidate.
    assert segments[1].start_time == pytest.approx(1.024)
    assert segments[1].end_time == pytest.approx(2.56)


def test_narrow_gap_padding_is_split_between_neighbours():
    padded = apply_speech_padding([(1000, 2000), (2500, 4000)], 10000, 400)
    assert padded == [(600, 2250), (2250, 4400)]


def test_padding_is_clamped_to_audio_bounds():
    assert apply_speech_padding([(100, 9900)], 10000, 400) == [(0, 10000)]
    assert apply_speech_padding([], 10000, 400) == []


def test_segments_are_ordered_and_within_audio():
    probs = [0.1, 0.9, 0.9, 0.1, 0.1, 0.1, 0.1, 0.9, 0.9, 0.1, 0.1, 0.1, 0.1]
    total = _total(probs)
    segments = segment_speech(probs, total, 0.5, VadSegmentationConfig(min_silence_duration=0.25))

    assert len(segments) == 2
    for seg in segments:
        assert 0.0 <= seg.start_time < seg.end_time <= total / 16000.0
    assert segments[0].end_time <= segments[1].start_time


def test_empty_inputs_yield_no_segments():
    assert segment_speech([], 0, 0.5) == []
    assert segment_speech([0.9], 0, 0.5) == []


def test_segment_sample_accessors():
    seg = VadSegment(start_time=0.5, end_time=1.25)
    assert seg.start_sample() == 8000
    assert seg.end_sample() == 20000
    assert seg.sample_count() == 12000
    assert seg.duration == pytest.approx(0.75)
    assert seg.to_dict() == {"start": 0.5, "end": 1.25}


def test_illegal_config_values_are_rejected():
    with pytest.raises(ValueError):
        VadSegmentationConfig(min_speech_duration=-1.0)
    with pytest.raises(ValueError):
        VadSegmentationConfig(max_speech_duration=0.0)
    with pytest.raises(ValueError):
        VadSegmentationConfig(negative_threshold=1.5)


def test_inconsistent_config_only_warns(caplog):
    with caplog.at_level("WARNING"):
        cfg = VadSegmentationConfig(min_speech_duration=3.0, max_speech_duration=2.0)
    assert cfg.max_speech_duration == 2.0
    assert "min_speech_duration exceeds max_speech_duration" in caplog.text
