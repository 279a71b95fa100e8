#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import wave
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import websockets

SAMPLE_RATE = 16000


def load_wav_samples(path: Path) -> np.ndarray:
    """16 kHz mono PCM16 wav as an int16 array."""
    with wave.open(str(path), "rb") as wf:
        fmt = (wf.getnchannels(), wf.getsampwidth(), wf.getframerate())
        if fmt != (1, 2, SAMPLE_RATE):
            raise ValueError(f"expected mono/16-bit/16kHz wav, got channels={fmt[0]} width={fmt[1]} rate={fmt[2]}")
        raw = wf.readframes(wf.getnframes())
    return np.frombuffer(raw, dtype="<i2")


def split_frames(samples: np.ndarray, chunk_ms: int) -> List[bytes]:
    step = max(1, SAMPLE_RATE * int(chunk_ms) // 1000)
    return [samples[i : i + step].tobytes() for i in range(0, samples.shape[0], step)]


def summarize_events(events: List[Dict[str, Any]]) -> str:
    lines: List[str] = []
    for event in events:
        kind = str(event.get("type", ""))
        if kind in {"speech_start", "speech_end"}:
            lines.append(f"[{event.get('segment_id')}] {kind:<12} {float(event.get('time', 0.0)):8.3f}s")
        elif kind == "transcript":
            lines.append(
                f"[{event.get('segment_id')}] transcript   {event.get('start')}-{event.get('end')}s "
                f"conf={event.get('confidence')} {event.get('text', '')}"
            )
        elif kind == "final":
            lines.append(f"final segments={len(event.get('segments', []))} text={event.get('text', '')}")
        elif kind == "error":
            lines.append(f"error: {event.get('message', '')}")
    return "\n".join(lines)


async def replay(ws_url: str, frames: List[bytes], pace_sec: float, timeout_sec: float = 60.0) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []

    async with websockets.connect(ws_url, max_size=16 * 1024 * 1024) as ws:

        async def send_all() -> None:
            for frame in frames:
                await ws.send(frame)
                if pace_sec > 0:
                    await asyncio.sleep(pace_sec)
            await ws.send(json.dumps({"type": "finish"}))

        async def collect() -> None:
            # Ends on "final" or when the server closes the socket.
            async for message in ws:
                if isinstance(message, bytes):
                    continue
                event = json.loads(message)
                events.append(event)
                if event.get("type") == "final":
                    return

        receiver = asyncio.create_task(collect())
        await asyncio.wait_for(asyncio.gather(send_all(), receiver), timeout=timeout_sec)

    return events


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay a wav file to the speech server and print VAD/ASR events.")
    p.add_argument("--ws-url", default="ws://127.0.0.1:8025/ws")
    p.add_argument("--wav", required=True, help="16kHz/mono/16-bit PCM wav for replay")
    p.add_argument("--chunk-ms", type=int, default=256)
    p.add_argument("--realtime-factor", type=float, default=1.0, help="1.0=realtime, 2.0=2x faster, 0=no pacing")
    p.add_argument("--events-jsonl", default="", help="save received events to jsonl")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    frames = split_frames(load_wav_samples(Path(args.wav).expanduser()), args.chunk_ms)
    pace = 0.0 if args.realtime_factor <= 0 else (args.chunk_ms / 1000.0) / args.realtime_factor
    events = asyncio.run(replay(str(args.ws_url), frames, pace))
    if args.events_jsonl:
        out = Path(args.events_jsonl).expanduser()
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text("".join(json.dumps(e, ensure_ascii=False) + "\n" for e in events), encoding="utf-8")
    print(summarize_events(events))


if __name__ == "__main__":
    main()
