from __future__ import annotations

import asyncio
import csv
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, TextIO, Tuple

import numpy as np

from .config import FilterConfig
from .frames import FRAME_SIZE, FragmentSequencer

LINE_COUNT = FRAME_SIZE - 1

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SensorFrame:
    """Smoothed reading handed to subscribers; a snapshot, never mutated."""

    proximity: int
    lines: Tuple[int, ...]
    released: bool = False
    ts: float = field(default_factory=time.monotonic, compare=False)

    @staticmethod
    def release() -> "SensorFrame":
        return SensorFrame(proximity=0, lines=(0,) * LINE_COUNT, released=True)


FrameCallback = Callable[[SensorFrame], None]


@dataclass
class ChannelHistory:
    last: np.ndarray = field(default_factory=lambda: np.zeros(LINE_COUNT, dtype=np.uint8))
    unchanged_run: np.ndarray = field(default_factory=lambda: np.zeros(LINE_COUNT, dtype=np.int64))

    def reset(self) -> None:
        self.last = np.zeros(LINE_COUNT, dtype=np.uint8)
        self.unchanged_run = np.zeros(LINE_COUNT, dtype=np.int64)


class IdleRelease:
    """Single debounced timer that fires a release frame when the stream stalls."""

    def __init__(self, loop: asyncio.AbstractEventLoop, delay_sec: float, fire: Callable[[], None]):
        self._loop = loop
        self._delay = delay_sec
        self._fire = fire
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def restart(self) -> None:
        self.cancel()
        self._handle = self._loop.call_later(self._delay, self._expired)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _expired(self) -> None:
        self._handle = None
        self._fire()


class TouchFilter:
    """
    Turns raw 16-byte frames into 0..saturation line pressures.

    A line whose raw value repeats across frames is considered held and is
    faded by ``n**2 * decay_rate`` where ``n`` counts the repeats. Saturated
    lines are spared until ``hold_frames`` repeats have accumulated. The
    history compares raw device values, not the faded output.
    """

    def __init__(
        self,
        config: FilterConfig,
        emit: FrameCallback,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.config = config
        self.history = ChannelHistory()
        self._emit = emit
        self._idle: Optional[IdleRelease] = None
        if loop is not None:
            self._idle = IdleRelease(loop, config.idle_release_ms / 1000.0, self._release)
        self.releases = 0

    def process(self, buffer: bytes) -> SensorFrame:
        raw = np.frombuffer(bytes(buffer[:FRAME_SIZE]), dtype=np.uint8)
        if raw.size != FRAME_SIZE:
            raise ValueError(f"Expected a {FRAME_SIZE}-byte frame, got {raw.size}")
        lines = raw[1:]
        frame = SensorFrame(proximity=int(raw[0]), lines=self._smooth(lines))
        self.history.last = lines.copy()
        self._emit(frame)
        if self._idle is not None:
            self._idle.restart()
        return frame

    def _smooth(self, lines: np.ndarray) -> Tuple[int, ...]:
        saturation = self.config.saturation
        values = np.minimum(lines, saturation).astype(float)
        held = lines == self.history.last
        runs = np.where(held, self.history.unchanged_run + 1, 0)
        self.history.unchanged_run = runs
        decaying = held & ((values < saturation) | (runs >= self.config.hold_frames))
        decayed = np.maximum(np.floor(values - runs.astype(float) ** 2 * self.config.decay_rate), 0.0)
        values = np.where(decaying, decayed, values)
        return tuple(int(value) for value in values)

    def _release(self) -> None:
        self.releases += 1
        logger.debug("No analog data for %.0f ms, releasing all lines", self.config.idle_release_ms)
        self._emit(SensorFrame.release())

    def cancel(self) -> None:
        if self._idle is not None:
            self._idle.cancel()

    @property
    def release_pending(self) -> bool:
        return self._idle is not None and self._idle.pending

    def reset(self) -> None:
        self.cancel()
        self.history.reset()
        self.releases = 0


class AnalogPipeline:
    """
    Glue from raw notifications to smoothed frames for one subscription.
    """

    def __init__(
        self,
        config: FilterConfig,
        callback: FrameCallback,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.sequencer = FragmentSequencer()
        self.filter = TouchFilter(config, callback, loop)
        self.processed = 0

    def feed(self, raw: bytes) -> List[SensorFrame]:
        frames: List[SensorFrame] = []
        for buffer in self.sequencer.accept(raw):
            frames.append(self.filter.process(buffer))
            self.processed += 1
        return frames

    def stats(self) -> Dict[str, int]:
        stats = self.sequencer.stats()
        stats["processed"] = self.processed
        stats["releases"] = self.filter.releases
        return stats

    def close(self) -> None:
        self.filter.cancel()


class FrameRecorder:
    """
    Lazily creates a CSV writer when the first frame arrives. Keeping writer
    creation lazy avoids touching the filesystem during dry runs or tests.
    """

    def __init__(self, path: Path):
        self.path = path
        self._handle: Optional[csv.DictWriter[str]] = None
        self._file_handle: Optional[TextIO] = None
        self._pending_metadata: List[str] = []
        self._t0: Optional[float] = None
        self.fieldnames = ["ts", "proximity", *(f"line_{i}" for i in range(LINE_COUNT)), "released"]

    def append(self, frame: SensorFrame) -> None:
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = self.path.open("w", newline="", encoding="utf-8")
            self._handle = csv.DictWriter(self._file_handle, fieldnames=self.fieldnames)
            for line in self._pending_metadata:
                self._file_handle.write(line + "\n")
            self._pending_metadata.clear()
            self._handle.writeheader()
        if self._t0 is None:
            self._t0 = frame.ts
        row: Dict[str, object] = {
            "ts": round(frame.ts - self._t0, 6),
            "proximity": frame.proximity,
            "released": int(frame.released),
        }
        row.update({f"line_{i}": value for i, value in enumerate(frame.lines)})
        self._handle.writerow(row)
        if self._file_handle is not None:
            self._file_handle.flush()

    def set_metadata(self, metadata: Dict[str, str]) -> None:
        if not metadata:
            return
        line = "# " + " ".join(f"{key}={value}" for key, value in metadata.items())
        if self._handle is None:
            self._pending_metadata.append(line)
            return
        if self._file_handle is None:
            return
        self._file_handle.write(line + "\n")
        self._file_handle.flush()

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
            self._handle = None


def filter_metadata(config: FilterConfig) -> Dict[str, str]:
    return {
        "saturation": str(config.saturation),
        "hold_frames": str(config.hold_frames),
        "decay_rate": f"{config.decay_rate:g}",
        "idle_release_ms": f"{config.idle_release_ms:g}",
    }
