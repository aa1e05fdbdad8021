"""
Minimal realtime client for manual testing.

Sends either a text message or a mono 16-bit WAV file (streamed in 20ms frames
at real-time pace, followed by silence so the server detects end of speech),
prints every event and saves the reply audio.

Usage:
  python scripts/ws_client.py --text "What time is it in Tokyo?"
  python scripts/ws_client.py --wav question.wav --out reply.wav
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import json
import os
import sys
from pathlib import Path

import websockets

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.turnloop.audio import (
    FRAME_DURATION_MS,
    chunk_audio,
    create_silence,
    frame_size_bytes,
    read_wav_mono_pcm16,
    resample_pcm16,
    write_wav_mono_pcm16,
)

TERMINAL_STATUSES = ("completed", "errored", "empty")


async def _send_wav(ws, path: Path, sample_rate: int) -> None:
    file_rate, pcm = read_wav_mono_pcm16(path.read_bytes())
    if file_rate != sample_rate:
        print(f"Resampling {path} from {file_rate}Hz to {sample_rate}Hz")
        pcm = resample_pcm16(pcm, file_rate, sample_rate)

    frame_bytes = frame_size_bytes(sample_rate)
    trailing = create_silence(1500, sample_rate)
    for frame in chunk_audio(pcm + trailing, frame_bytes):
        if len(frame) < frame_bytes:
            frame += b"\x00" * (frame_bytes - len(frame))
        await ws.send(frame)
        await asyncio.sleep(FRAME_DURATION_MS / 1000)


async def run(args: argparse.Namespace) -> int:
    audio = bytearray()
    sample_rate = args.sample_rate
    sender = None

    async with websockets.connect(args.url, max_size=None) as ws:
        if args.text:
            await ws.send(json.dumps({"type": "input_text", "text": args.text}))
        else:
            sender = asyncio.create_task(_send_wav(ws, Path(args.wav), sample_rate))

        async for raw in ws:
            event = json.loads(raw)
            payload = event.get("payload", {})
            event_type = event["type"]

            if event_type == "audio.chunk":
                audio.extend(base64.b64decode(payload["audio"]))
                sample_rate = payload.get("sample_rate", sample_rate)
                continue

            print(f"{event_type:<24} turn={event.get('turn_id')} {json.dumps(payload)[:160]}")

            if event_type == "response.done" and payload.get("status") in TERMINAL_STATUSES:
                await ws.send(json.dumps({"type": "session.close"}))
            if event_type == "session.closed":
                break

    if sender is not None:
        sender.cancel()

    if audio:
        out_path = Path(args.out)
        out_path.write_bytes(write_wav_mono_pcm16(bytes(audio), sample_rate))
        print(f"Saved: {out_path.resolve()} ({len(audio)} bytes)")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Talk to a turnloop server over WebSocket.")
    parser.add_argument(
        "--url",
        default=os.getenv("TURNLOOP_URL", "ws://localhost:7860/v1/realtime"),
        help="Realtime endpoint (default: $TURNLOOP_URL or ws://localhost:7860/v1/realtime)",
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--text", help="Send a text turn")
    source.add_argument("--wav", help="Stream a mono 16-bit WAV file as audio")
    parser.add_argument("--sample-rate", type=int, default=16000, help="Session sample rate")
    parser.add_argument("--out", default="reply.wav", help="Output WAV path for reply audio")
    args = parser.parse_args()
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
