"""Synthetic sleeve streams for demos and tests."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Iterable, List

import numpy as np

from .analysis import compute_line_metrics, load_recording
from .reporting import export_summary
from .sleeve.config import GarmentConfig
from .sleeve.frames import DECODE_TABLE, FRAME_SIZE, HALF_FRAME_SIZE, INDEX_STEP
from .sleeve.runner import GarmentHost

# Table entries read as two's-complement steps: 0, +1 .. +64, -128, -64 .. -1.
SIGNED_STEPS = np.array([value - 256 if value >= 128 else value for value in DECODE_TABLE], dtype=int)
MAX_INDEX = 0xFFFF


def create_demo_targets(frames: int = 240, seed: int = 42) -> np.ndarray:
    """
    Frame-by-frame raw values for a swipe across the lines followed by a held
    press, with a proximity ramp and light sensor noise.
    """

    rng = np.random.default_rng(seed)
    targets = np.zeros((frames, FRAME_SIZE), dtype=float)
    lines = np.arange(FRAME_SIZE - 1, dtype=float)
    swipe_end = frames // 2
    for t in range(frames):
        if t < swipe_end:
            centre = (FRAME_SIZE - 2) * t / max(swipe_end - 1, 1)
            profile = 160.0 * np.exp(-0.5 * ((lines - centre) / 1.2) ** 2)
            proximity = 40.0 + 150.0 * t / max(swipe_end - 1, 1)
        elif t < swipe_end + frames // 4:
            # Held press: constant values so the smoothing filter fades them.
            profile = np.where(np.abs(lines - 7.0) <= 1.0, 140.0, 0.0)
            proximity = 200.0
        else:
            profile = np.zeros_like(lines)
            proximity = 20.0
        noise = rng.normal(scale=2.0, size=lines.size) if t < swipe_end else 0.0
        targets[t, 0] = proximity
        targets[t, 1:] = np.clip(profile + noise, 0.0, 255.0)
    return np.rint(targets).astype(np.uint8)


def encode_half_frame(target: np.ndarray, state: bytearray) -> bytes:
    """
    Pick, for each of the 16 slots, the step that brings *state* closest to
    *target*, and advance *state* the same way the decoder will.
    """

    packed = bytearray(HALF_FRAME_SIZE)
    nibbles: List[int] = []
    for slot in range(FRAME_SIZE):
        delta = int(target[slot]) - state[slot]
        nibble = int(np.argmin(np.abs(SIGNED_STEPS - delta)))
        state[slot] = (state[slot] + DECODE_TABLE[nibble]) & 0xFF
        nibbles.append(nibble)
    for i in range(HALF_FRAME_SIZE):
        packed[i] = (nibbles[2 * i] << 4) | nibbles[2 * i + 1]
    return bytes(packed)


def create_demo_stream(targets: np.ndarray, *, duplicate_every: int = 0) -> List[bytes]:
    """
    Encode *targets* as a notification stream: an index-0 snapshot of the first
    frame, then two compressed half-frames per even index. ``duplicate_every``
    re-sends every n-th notification to exercise the repeat path.
    """

    if targets.ndim != 2 or targets.shape[1] != FRAME_SIZE or targets.shape[0] == 0:
        raise ValueError(f"targets must have shape (n, {FRAME_SIZE})")
    pairs = targets.shape[0] // 2
    if pairs * INDEX_STEP > MAX_INDEX:
        raise ValueError("Too many frames for a single 16-bit index run")
    state = bytearray(int(value) for value in targets[0])
    notifications = [(0).to_bytes(2, "little") + bytes(state)]
    rest = targets[1:]
    for n, start in enumerate(range(0, len(rest), 2), start=1):
        first = rest[start]
        second = rest[start + 1] if start + 1 < len(rest) else first
        payload = (
            (n * INDEX_STEP).to_bytes(2, "little")
            + encode_half_frame(first, state)
            + encode_half_frame(second, state)
        )
        notifications.append(payload)
        if duplicate_every and n % duplicate_every == 0:
            notifications.append(payload)
    return notifications


def write_stream(path: Path, notifications: Iterable[bytes]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        handle.write("# jacquard analog notifications, hex, one per line\n")
        for payload in notifications:
            handle.write(payload.hex() + "\n")


def run_demo(out_dir: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    stream_path = out_dir / "demo_stream.hex"
    frames_path = out_dir / "demo_frames.csv"
    notifications = create_demo_stream(create_demo_targets(), duplicate_every=25)
    write_stream(stream_path, notifications)

    config = GarmentConfig(output_csv=frames_path)
    host = GarmentHost(config)
    try:
        asyncio.run(host.replay(notifications))
    finally:
        host.close()

    recording = load_recording(frames_path)
    export_summary(compute_line_metrics(recording), out_dir, input_path=frames_path)
