from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from jacquard.demo import create_demo_stream, create_demo_targets, run_demo, write_stream
from jacquard.sleeve.frames import FragmentSequencer, iterate_hex_stream


def _decode(notifications) -> list[bytes]:
    sequencer = FragmentSequencer()
    events: list[bytes] = []
    for payload in notifications:
        events.extend(sequencer.accept(payload))
    return events


def test_stream_layout_and_indices() -> None:
    targets = create_demo_targets(frames=21)
    notifications = create_demo_stream(targets)
    assert len(notifications) == 11
    assert notifications[0] == b"\x00\x00" + bytes(targets[0])
    indices = [int.from_bytes(payload[:2], "little") for payload in notifications]
    assert indices == list(range(0, 22, 2))
    assert all(len(payload) == 18 for payload in notifications)


def test_constant_target_converges_exactly() -> None:
    targets = np.zeros((25, 16), dtype=np.uint8)
    targets[1:, 4] = 140
    targets[1:, 0] = 200
    events = _decode(create_demo_stream(targets))
    assert len(events) == 25
    assert events[0] == bytes(16)
    assert events[-1] == bytes(targets[-1])


def test_duplicates_exercise_repeat_path() -> None:
    targets = create_demo_targets(frames=41)
    notifications = create_demo_stream(targets, duplicate_every=5)
    sequencer = FragmentSequencer()
    for payload in notifications:
        list(sequencer.accept(payload))
    assert sequencer.stats()["repeats"] == 4
    assert sequencer.stats()["deltas"] == 20


def test_bad_target_shape() -> None:
    with pytest.raises(ValueError):
        create_demo_stream(np.zeros((4, 15), dtype=np.uint8))


def test_write_stream_round_trips_through_hex(tmp_path: Path) -> None:
    notifications = create_demo_stream(create_demo_targets(frames=9))
    path = tmp_path / "stream.hex"
    write_stream(path, notifications)
    with path.open("r", encoding="utf-8") as handle:
        assert list(iterate_hex_stream(handle)) == notifications


def test_run_demo_outputs(tmp_path: Path) -> None:
    run_demo(tmp_path)
    assert (tmp_path / "demo_stream.hex").exists()
    assert (tmp_path / "demo_frames.csv").exists()
    assert (tmp_path / "line_metrics.csv").exists()
    assert (tmp_path / "report.md").exists()
