# coding=utf-8
# Copyright 2026 The tdtstream authors.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Speech segmentation and TDT transcription over HTTP and WebSocket.
"""
import argparse
import asyncio
import json
import logging
import time
from contextlib import suppress
from types import SimpleNamespace
from typing import Any, Dict, Optional

import numpy as np
import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from tdtstream.asr.constants import MIN_AUDIO_SAMPLES
from tdtstream.asr.manager import AsrManager, AudioSource
from tdtstream.errors import AsrError, InvalidAudioDataError, NotInitializedError, VadError
from tdtstream.vad.manager import VadManager
from tdtstream.vad.types import VAD_CHUNK_SIZE, VadConfig, VadSegmentationConfig, VadStreamEvent

SAMPLE_RATE = 16000
logger = logging.getLogger(__name__)


def _decode_pcm16le(raw: bytes) -> np.ndarray:
    if not isinstance(raw, (bytes, bytearray)):
        raise ValueError("binary frame is required")
    if len(raw) % 2 != 0:
        raise ValueError("pcm16le bytes length must be even")
    if not raw:
        return np.zeros((0,), dtype=np.float32)

    pcm16 = np.frombuffer(raw, dtype="<i2").astype(np.float32)
    wav = pcm16 / 32768.0
    return np.clip(wav, -1.0, 1.0)


def _parse_json_message(text: str) -> Dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid json: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("json message must be an object")
    return payload


def _segmentation_config(args: argparse.Namespace) -> VadSegmentationConfig:
    return VadSegmentationConfig(
        min_silence_duration=max(0.0, float(getattr(args, "min_silence_sec", 0.75))),
        speech_padding=max(0.0, float(getattr(args, "speech_pad_sec", 0.1))),
        min_speech_duration=max(0.0, float(getattr(args, "min_speech_sec", 0.15))),
        max_speech_duration=max(1.0, float(getattr(args, "max_speech_sec", 14.0))),
    )


def _pad_for_asr(wav: np.ndarray) -> np.ndarray:
    if wav.shape[0] >= MIN_AUDIO_SAMPLES:
        return wav
    return np.pad(wav, (0, MIN_AUDIO_SAMPLES - wav.shape[0]))


def _event_payload(event: VadStreamEvent, segment_id: int) -> Dict[str, Any]:
    return {
        "type": event.kind,
        "segment_id": int(segment_id),
        "sample": int(event.sample_index),
        "time": round(event.seconds(SAMPLE_RATE), 3),
    }


def _create_app(args: argparse.Namespace, asr: Optional[AsrManager], vad: Optional[VadManager]) -> FastAPI:
    app = FastAPI(title="tdtstream speech server")
    infer_lock = asyncio.Lock()
    runtime = SimpleNamespace(active_connections=0)
    seg_config = _segmentation_config(args)
    trace_log = bool(getattr(args, "trace_log", False))
    max_connections = max(1, int(getattr(args, "max_connections", 4)))
    max_frame_samples = max(1, int(getattr(args, "max_frame_samples", 64000)))
    idle_timeout_sec = max(1.0, float(getattr(args, "idle_timeout_sec", 30)))
    max_utterance_samples = int(max(1.0, float(getattr(args, "max_utterance_sec", 120.0))) * SAMPLE_RATE)

    def _asr_ready() -> bool:
        return asr is not None and asr.is_available

    def _vad_ready() -> bool:
        return vad is not None and vad.is_available

    async def _read_pcm_body(request: Request) -> np.ndarray:
        body = await request.body()
        try:
            return _decode_pcm16le(body)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "asr": _asr_ready(), "vad": _vad_ready()}

    @app.post("/transcribe")
    async def transcribe(request: Request, source: str = "microphone") -> Dict[str, Any]:
        wav = await _read_pcm_body(request)
        if not _asr_ready():
            raise HTTPException(status_code=503, detail="ASR model is not loaded")
        try:
            src = AudioSource.parse(source)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        try:
            async with infer_lock:
                result = await asyncio.to_thread(asr.transcribe, wav, src)
        except InvalidAudioDataError as e:
            raise HTTPException(status_code=400, detail=e.describe()) from e
        except NotInitializedError as e:
            raise HTTPException(status_code=503, detail=e.describe()) from e
        except AsrError as e:
            logger.error("transcription failed: %s", e)
            raise HTTPException(status_code=500, detail=e.describe()) from e
        return result.to_dict()

    @app.post("/segment")
    async def segment(request: Request) -> Dict[str, Any]:
        wav = await _read_pcm_body(request)
        if not _vad_ready():
            raise HTTPException(status_code=503, detail="VAD model is not loaded")
        try:
            async with infer_lock:
                segments = await asyncio.to_thread(vad.segment_speech, wav, seg_config)
        except VadError as e:
            logger.error("segmentation failed: %s", e)
            raise HTTPException(status_code=500, detail=str(e)) from e
        return {"segments": [s.to_dict() for s in segments]}

    @app.websocket("/ws")
    async def ws_stream(websocket: WebSocket) -> None:
        if runtime.active_connections >= max_connections:
            await websocket.accept()
            await websocket.send_json({"type": "error", "message": "too many active connections"})
            await websocket.close(code=1013)
            return

        await websocket.accept()
        runtime.active_connections += 1
        peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        logger.info("ws open peer=%s active=%d", peer, runtime.active_connections)
        trace_t0 = time.monotonic()

        stream = SimpleNamespace(
            vad_state=vad.make_stream_state() if vad is not None else None,
            pending=np.zeros((0,), dtype=np.float32),
            history=np.zeros((0,), dtype=np.float32),
            history_offset=0,
            speech_start=None,
            segment_id=0,
            transcripts=[],
            segments=[],
        )
        stats = SimpleNamespace(raw_frames=0, raw_samples=0, chunks=0, last_error="")

        def _trace_event(event: str, **payload: Any) -> None:
            if not trace_log:
                return
            row = {
                "ts_ms": int(time.time() * 1000),
                "elapsed_ms": int((time.monotonic() - trace_t0) * 1000),
                "peer": peer,
                "event": str(event or ""),
                "segment_id": int(stream.segment_id),
                "processed": int(stream.vad_state.processed_samples) if stream.vad_state is not None else 0,
            }
            if payload:
                row.update(payload)
            logger.info("vad_trace %s", json.dumps(row, ensure_ascii=False, separators=(",", ":")))

        async def _send_json(payload: Dict[str, Any]) -> None:
            await websocket.send_json(payload)

        def _reset_stream() -> None:
            stream.vad_state = vad.make_stream_state() if vad is not None else None
            stream.pending = np.zeros((0,), dtype=np.float32)
            stream.history = np.zeros((0,), dtype=np.float32)
            stream.history_offset = 0
            stream.speech_start = None
            stream.segment_id = 0
            stream.transcripts = []
            stream.segments = []

        def _trim_history() -> None:
            # History also holds audio still waiting in pending; only drop what the VAD has seen.
            processed = int(stream.vad_state.processed_samples) if stream.vad_state is not None else 0
            if stream.speech_start is None:
                # Pre-roll for a start event padded back before the next chunk.
                cutoff = processed - (VAD_CHUNK_SIZE + int(seg_config.speech_padding * SAMPLE_RATE))
            else:
                history_end = stream.history_offset + stream.history.shape[0]
                cutoff = min(history_end - max_utterance_samples, processed)
            excess = cutoff - stream.history_offset
            if excess > 0:
                stream.history = stream.history[excess:]
                stream.history_offset += excess

        def _slice_history(start: int, end: int) -> np.ndarray:
            lo = max(0, int(start) - stream.history_offset)
            hi = max(lo, min(int(end) - stream.history_offset, stream.history.shape[0]))
            return stream.history[lo:hi]

        async def _emit_transcript(start: int, end: int) -> None:
            if not _asr_ready():
                return
            wav = _slice_history(start, end)
            if wav.size == 0:
                return
            try:
                async with infer_lock:
                    result = await asyncio.to_thread(asr.transcribe, _pad_for_asr(wav), AudioSource.MICROPHONE)
            except AsrError as e:
                stats.last_error = e.describe()
                _trace_event("asr_error", error=stats.last_error)
                await _send_json({"type": "error", "message": e.describe()})
                return
            stream.transcripts.append(result.text)
            await _send_json(
                {
                    "type": "transcript",
                    "segment_id": int(stream.segment_id),
                    "start": round(start / SAMPLE_RATE, 3),
                    "end": round(end / SAMPLE_RATE, 3),
                    "text": result.text,
                    "confidence": round(float(result.confidence), 4),
                }
            )

        async def _handle_event(event: VadStreamEvent) -> None:
            if event.is_start:
                stream.segment_id += 1
                stream.speech_start = int(event.sample_index)
                _trace_event("speech_start", sample=int(event.sample_index))
                await _send_json(_event_payload(event, stream.segment_id))
                return
            start = stream.speech_start if stream.speech_start is not None else int(event.sample_index)
            end = max(start, int(event.sample_index))
            stream.speech_start = None
            stream.segments.append({"start": round(start / SAMPLE_RATE, 3), "end": round(end / SAMPLE_RATE, 3)})
            _trace_event("speech_end", sample=int(event.sample_index), start=int(start))
            await _send_json(_event_payload(event, stream.segment_id))
            await _emit_transcript(start, end)

        async def _process_chunk(chunk: np.ndarray) -> None:
            async with infer_lock:
                result = await asyncio.to_thread(vad.process_streaming_chunk, chunk, stream.vad_state, seg_config)
            stream.vad_state = result.state
            stats.chunks += 1
            if stats.chunks <= 3 or stats.chunks % 40 == 0:
                _trace_event("vad_chunk", chunk=int(stats.chunks), probability=round(float(result.probability), 4))
            if result.event is not None:
                await _handle_event(result.event)
            _trim_history()

        async def _drain_pending(flush: bool = False) -> None:
            while stream.pending.shape[0] >= VAD_CHUNK_SIZE:
                chunk = stream.pending[:VAD_CHUNK_SIZE]
                stream.pending = stream.pending[VAD_CHUNK_SIZE:]
                await _process_chunk(chunk)
            if flush and stream.pending.shape[0] > 0:
                chunk = stream.pending
                stream.pending = np.zeros((0,), dtype=np.float32)
                await _process_chunk(chunk)

        async def _finish() -> None:
            await _drain_pending(flush=True)
            if stream.speech_start is not None and stream.vad_state is not None:
                end = int(stream.vad_state.processed_samples)
                await _handle_event(VadStreamEvent(kind="speech_end", sample_index=end))
            await _send_json(
                {
                    "type": "final",
                    "segments": list(stream.segments),
                    "text": " ".join(t for t in stream.transcripts if t).strip(),
                }
            )

        try:
            if not _vad_ready():
                await _send_json({"type": "error", "message": "VAD model is not loaded"})
                return

            await _send_json(
                {
                    "type": "ready",
                    "sample_rate": SAMPLE_RATE,
                    "chunk_size": VAD_CHUNK_SIZE,
                    "asr": _asr_ready(),
                }
            )

            while True:
                try:
                    msg = await asyncio.wait_for(websocket.receive(), timeout=idle_timeout_sec)
                except asyncio.TimeoutError:
                    await _send_json({"type": "error", "message": "idle timeout"})
                    break

                if msg.get("type") == "websocket.disconnect":
                    break

                raw = msg.get("bytes")
                text = msg.get("text")

                if raw is not None:
                    try:
                        wav = _decode_pcm16le(raw)
                    except ValueError as e:
                        stats.last_error = str(e)
                        await _send_json({"type": "error", "message": str(e)})
                        continue

                    if wav.size == 0:
                        continue
                    if wav.size > max_frame_samples:
                        stats.last_error = "audio frame too large"
                        await _send_json({"type": "error", "message": "audio frame too large"})
                        continue

                    stats.raw_frames += 1
                    stats.raw_samples += int(wav.size)
                    if stats.raw_frames == 1 or stats.raw_frames % 20 == 0:
                        logger.info("ws recv peer=%s frames=%d samples=%d", peer, stats.raw_frames, stats.raw_samples)
                    stream.history = np.concatenate([stream.history, wav])
                    stream.pending = np.concatenate([stream.pending, wav])
                    await _drain_pending()
                    continue

                if text is not None:
                    try:
                        payload = _parse_json_message(text)
                    except ValueError as e:
                        stats.last_error = str(e)
                        await _send_json({"type": "error", "message": str(e)})
                        continue

                    msg_type = str(payload.get("type", "")).lower()
                    _trace_event("ws_text_recv", type=msg_type)
                    if msg_type == "reset":
                        _reset_stream()
                        await _send_json({"type": "reset"})
                        continue

                    if msg_type == "finish":
                        await _finish()
                        break

                    if msg_type == "ping":
                        await _send_json({"type": "pong"})
                        continue

                    stats.last_error = "unknown message type"
                    await _send_json({"type": "error", "message": "unknown message type"})
                    continue

        except WebSocketDisconnect:
            _trace_event("ws_disconnect")
        except (AsrError, VadError) as e:
            stats.last_error = str(e)
            logger.error("ws processing failed peer=%s: %s", peer, e)
            with suppress(RuntimeError, WebSocketDisconnect):
                await _send_json({"type": "error", "message": str(e)})
        finally:
            runtime.active_connections = max(0, runtime.active_connections - 1)
            with suppress(RuntimeError, WebSocketDisconnect):
                await websocket.close(code=1000)
            logger.info(
                "ws closed peer=%s frames=%d samples=%d chunks=%d last_error=%s",
                peer,
                stats.raw_frames,
                stats.raw_samples,
                stats.chunks,
                stats.last_error or "-",
            )

    return app


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Streaming VAD + TDT transcription server")
    p.add_argument("--host", default="0.0.0.0", help="Bind host")
    p.add_argument("--port", type=int, default=8025, help="Bind port")
    p.add_argument("--model-dir", default=None, help="Directory with encoder.pt, decoder.pt, joint.pt and parakeet_vocab.json")
    p.add_argument("--model-version", default="v3", choices=["v2", "v3"], help="TDT model version (selects blank id)")
    p.add_argument("--vad-model-dir", default=None, help="Directory with silero_vad.pt")
    p.add_argument("--device", default="cpu", help="Torch device for model inference")
    p.add_argument("--vad-threshold", type=float, default=0.85, help="VAD speech entry threshold")
    p.add_argument("--min-silence-sec", type=float, default=0.75, help="Silence needed to close a speech region")
    p.add_argument("--min-speech-sec", type=float, default=0.15, help="Shortest speech region kept")
    p.add_argument("--max-speech-sec", type=float, default=14.0, help="Longest speech region before a forced split")
    p.add_argument("--speech-pad-sec", type=float, default=0.1, help="Padding applied around speech regions")
    p.add_argument("--max-utterance-sec", type=float, default=120.0, help="Audio kept per open speech region")
    p.add_argument("--chunk-workers", type=int, default=1, help="Parallel windows for long-audio transcription")
    p.add_argument("--max-connections", type=int, default=4, help="Maximum active websocket connections")
    p.add_argument("--max-frame-samples", type=int, default=64000, help="Largest accepted binary frame in samples")
    p.add_argument("--idle-timeout-sec", type=int, default=30, help="Close idle websocket after timeout")
    p.add_argument(
        "--trace-log",
        action="store_true",
        help="Emit structured vad_trace JSON lines for each websocket session",
    )
    p.add_argument("--ssl-certfile", default=None, help="Path to TLS certificate file (enables HTTPS/WSS)")
    p.add_argument("--ssl-keyfile", default=None, help="Path to TLS private key file")
    p.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    return p.parse_args()


def main() -> None:
    from tdtstream.asr.config import AsrConfig, TdtConfig
    from tdtstream.asr.manager import load_asr_manager
    from tdtstream.vad.manager import load_vad_manager

    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    asr_config = AsrConfig(tdt=TdtConfig.for_model(args.model_version))
    asr = load_asr_manager(args.model_dir, device=args.device, config=asr_config, chunk_workers=args.chunk_workers)
    vad = load_vad_manager(
        args.vad_model_dir,
        config=VadConfig(default_threshold=args.vad_threshold),
        device=args.device,
    )
    logger.info("models loaded: asr=%s vad=%s", asr.is_available, vad.is_available)

    app = _create_app(args, asr, vad)

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
    )


if __name__ == "__main__":
    main()
