"""Offline analysis of recorded sleeve frames."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from .sleeve.processing import LINE_COUNT

LINE_COLUMNS = [f"line_{i}" for i in range(LINE_COUNT)]
REQUIRED_COLUMNS = {"ts", "proximity", "released", *LINE_COLUMNS}


@dataclass(frozen=True)
class Recording:
    """Frames loaded from a `FrameRecorder` CSV."""

    dataframe: pd.DataFrame
    ts: np.ndarray
    proximity: np.ndarray
    lines: np.ndarray
    released: np.ndarray


@dataclass(frozen=True)
class LineSummary:
    lines: pd.DataFrame
    frames: int
    releases: int
    duration_s: float


def load_recording(path: str | Path) -> Recording:
    """Load a frame recording from *path*.

    Parameters
    ----------
    path:
        CSV written by `FrameRecorder`; `# key=value` metadata lines are
        ignored.

    Returns
    -------
    Recording
        The raw dataframe plus numpy views of timestamps, proximity, the
        ``(frames, 15)`` line matrix and the release mask.
    """

    path = Path(path)
    if not path.exists():  # pragma: no cover - defensive
        raise FileNotFoundError(path)

    df = pd.read_csv(path, comment="#")
    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")
    if df.empty:
        raise ValueError("Recording contains no frames")

    lines = df[LINE_COLUMNS].to_numpy(dtype=int)
    if lines.min() < 0 or lines.max() > 0xFF:
        raise ValueError("Line values must be within 0..255")

    return Recording(
        dataframe=df,
        ts=df["ts"].to_numpy(dtype=float),
        proximity=df["proximity"].to_numpy(dtype=int),
        lines=lines,
        released=df["released"].to_numpy(dtype=int).astype(bool),
    )


def compute_line_metrics(recording: Recording) -> LineSummary:
    """Peak, activity ratio, touch count and mean hold length for every line."""

    active = recording.lines > 0
    previous = np.vstack([np.zeros((1, LINE_COUNT), dtype=bool), active[:-1]])
    touches = (active & ~previous).sum(axis=0)
    active_frames = active.sum(axis=0)
    mean_hold = np.where(touches > 0, active_frames / np.maximum(touches, 1), np.nan)

    table = pd.DataFrame(
        {
            "line": np.arange(LINE_COUNT),
            "peak": recording.lines.max(axis=0),
            "active_ratio": active_frames / len(recording.lines),
            "touches": touches,
            "mean_hold_frames": mean_hold,
        }
    )
    duration = float(recording.ts[-1] - recording.ts[0]) if recording.ts.size > 1 else 0.0
    return LineSummary(
        lines=table,
        frames=int(len(recording.lines)),
        releases=int(recording.released.sum()),
        duration_s=duration,
    )
