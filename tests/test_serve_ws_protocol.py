from types import SimpleNamespace

import numpy as np
import pytest
from fastapi.testclient import TestClient

from _fakes import BLANK, FakeAcousticModel, FakeVadModel
from tdtstream.asr.manager import AsrManager
from tdtstream.cli.serve_ws import _create_app
from tdtstream.vad.manager import VadManager

CHUNK = 4096


def _args():
    return SimpleNamespace(
        min_silence_sec=0.25,
        speech_pad_sec=0.1,
        min_speech_sec=0.15,
        max_speech_sec=14.0,
        max_utterance_sec=120.0,
        max_connections=4,
        max_frame_samples=64000,
        idle_timeout_sec=30,
        trace_log=True,
    )


def _hello_once(frame, last):
    if last == BLANK:
        return 10, 0.9, 1
    return BLANK, 0.9, 1


def _asr():
    return AsrManager(FakeAcousticModel(_hello_once), {10: "▁hello"})


def _vad():
    return VadManager(FakeVadModel())


def _frame(value: int, samples: int = CHUNK) -> bytes:
    return np.full(samples, value, dtype="<i2").tobytes()


def _receive_until_type(ws, expected_type: str, max_steps: int = 40):
    seen = []
    for _ in range(max_steps):
        msg = ws.receive_json()
        if msg.get("type") == expected_type:
            return msg
        seen.append(msg.get("type"))
    pytest.fail(f"did not receive {expected_type}, seen={seen}")


def test_health_reports_loaded_models():
    client = TestClient(_create_app(_args(), _asr(), VadManager()))
    assert client.get("/health").json() == {"status": "ok", "asr": True, "vad": False}


def test_transcribe_requires_asr_model():
    client = TestClient(_create_app(_args(), AsrManager(), _vad()))
    resp = client.post("/transcribe", content=_frame(100, 16000))
    assert resp.status_code == 503


def test_transcribe_rejects_bad_input():
    client = TestClient(_create_app(_args(), _asr(), _vad()))

    assert client.post("/transcribe", content=b"\x00").status_code == 400
    assert client.post("/transcribe", content=_frame(100, 100)).status_code == 400
    assert client.post("/transcribe?source=line-in", content=_frame(100, 16000)).status_code == 400


def test_transcribe_returns_result():
    client = TestClient(_create_app(_args(), _asr(), _vad()))
    resp = client.post("/transcribe?source=system", content=_frame(100, 32000))

    assert resp.status_code == 200
    body = resp.json()
    assert body["text"] == "hello"
    assert body["confidence"] == pytest.approx(0.9)
    assert body["duration"] == pytest.approx(2.0)
    assert body["token_timings"][0]["token_id"] == 10


def test_segment_endpoint():
    client = TestClient(_create_app(_args(), None, _vad()))
    audio = _frame(0, 2 * CHUNK) + _frame(16384, 4 * CHUNK) + _frame(0, 4 * CHUNK)
    resp = client.post("/segment", content=audio)

    assert resp.status_code == 200
    assert resp.json() == {"segments": [{"start": 0.412, "end": 1.636}]}


def test_segment_requires_vad_model():
    client = TestClient(_create_app(_args(), _asr(), VadManager()))
    assert client.post("/segment", content=_frame(0)).status_code == 503


def test_ws_speech_events_transcript_and_final():
    client = TestClient(_create_app(_args(), _asr(), _vad()))

    with client.websocket_connect("/ws") as ws:
        ready = ws.receive_json()
        assert ready == {"type": "ready", "sample_rate": 16000, "chunk_size": CHUNK, "asr": True}

        for value in [0, 0, 16384, 16384, 16384, 16384, 0, 0, 0]:
            ws.send_bytes(_frame(value))

        start = ws.receive_json()
        assert start["type"] == "speech_start"
        assert start["segment_id"] == 1
        assert start["sample"] == 6592

        end = ws.receive_json()
        assert end["type"] == "speech_end"
        assert end["sample"] == 26176
        assert end["time"] == pytest.approx(1.636)

        transcript = ws.receive_json()
        assert transcript["type"] == "transcript"
        assert transcript["segment_id"] == 1
        assert transcript["text"] == "hello"
        assert transcript["start"] == pytest.approx(0.412)
        assert transcript["end"] == pytest.approx(1.636)

        ws.send_text('{"type":"finish"}')
        final = _receive_until_type(ws, "final")
        assert final["segments"] == [{"start": 0.412, "end": 1.636}]
        assert final["text"] == "hello"


def test_ws_single_large_frame_still_gets_transcript():
    client = TestClient(_create_app(_args(), _asr(), _vad()))

    with client.websocket_connect("/ws") as ws:
        ws.receive_json()  # ready
        ws.send_bytes(_frame(0) + _frame(16384, 4 * CHUNK) + _frame(0, 10 * CHUNK))

        start = ws.receive_json()
        assert start["type"] == "speech_start"
        assert start["sample"] == 2496
        end = ws.receive_json()
        assert end["type"] == "speech_end"
        assert end["sample"] == 22080

        transcript = ws.receive_json()
        assert transcript["type"] == "transcript"
        assert transcript["text"] == "hello"
        assert transcript["start"] == pytest.approx(0.156)
        assert transcript["end"] == pytest.approx(1.38)

        ws.send_text('{"type":"finish"}')
        final = _receive_until_type(ws, "final")
        assert final["text"] == "hello"


def test_ws_finish_closes_open_speech():
    client = TestClient(_create_app(_args(), None, _vad()))

    with client.websocket_connect("/ws") as ws:
        ready = ws.receive_json()
        assert ready["asr"] is False
        ws.send_bytes(_frame(0) + _frame(16384))
        assert ws.receive_json()["type"] == "speech_start"

        ws.send_text('{"type":"finish"}')
        end = ws.receive_json()
        assert end["type"] == "speech_end"
        assert end["sample"] == 2 * CHUNK
        final = ws.receive_json()
        assert final["type"] == "final"
        assert final["text"] == ""
        assert len(final["segments"]) == 1


def test_ws_rejects_bad_binary_frame():
    client = TestClient(_create_app(_args(), _asr(), _vad()))

    with client.websocket_connect("/ws") as ws:
        ws.receive_json()  # ready
        ws.send_bytes(b"\x00")
        err = ws.receive_json()
        assert err["type"] == "error"
        assert "even" in err["message"]


def test_ws_rejects_oversized_frame():
    args = _args()
    args.max_frame_samples = 100
    client = TestClient(_create_app(args, _asr(), _vad()))

    with client.websocket_connect("/ws") as ws:
        ws.receive_json()  # ready
        ws.send_bytes(_frame(0, 101))
        err = ws.receive_json()
        assert err == {"type": "error", "message": "audio frame too large"}


def test_ws_text_messages():
    client = TestClient(_create_app(_args(), _asr(), _vad()))

    with client.websocket_connect("/ws") as ws:
        ws.receive_json()  # ready
        ws.send_text("{")
        err = ws.receive_json()
        assert err["type"] == "error"
        assert "invalid json" in err["message"]

        ws.send_text('{"type":"ping"}')
        assert ws.receive_json() == {"type": "pong"}

        ws.send_text('{"type":"reset"}')
        assert ws.receive_json() == {"type": "reset"}

        ws.send_text('{"type":"bogus"}')
        assert ws.receive_json() == {"type": "error", "message": "unknown message type"}


def test_ws_requires_vad_model():
    client = TestClient(_create_app(_args(), _asr(), VadManager()))

    with client.websocket_connect("/ws") as ws:
        err = ws.receive_json()
        assert err == {"type": "error", "message": "VAD model is not loaded"}


def test_ws_limits_active_connections():
    args = _args()
    args.max_connections = 1
    client = TestClient(_create_app(args, _asr(), _vad()))

    with client.websocket_connect("/ws") as first:
        assert first.receive_json()["type"] == "ready"
        with client.websocket_connect("/ws") as second:
            err = second.receive_json()
            assert err == {"type": "error", "message": "too many active connections"}

    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json()["type"] == "ready"
