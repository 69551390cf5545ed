from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, Optional, Sequence

FRAME_SIZE = 16
HEADER_SIZE = 2
HALF_FRAME_SIZE = 8
PAYLOAD_SIZE = HEADER_SIZE + FRAME_SIZE
INDEX_STEP = 2

# Nibble -> magnitude, fine near zero and coarse near saturation.
DECODE_TABLE = (0, 1, 2, 4, 8, 16, 32, 64, 128, 192, 224, 240, 248, 252, 254, 255)


def sequence_index(raw: bytes) -> int:
    return raw[0] | (raw[1] << 8)


def unpack_deltas(compressed: Sequence[int], buffer: bytearray) -> bytearray:
    """
    Add the nibble-expanded deltas of one compressed half-frame into *buffer*.

    Byte ``i`` of *compressed* nudges ``buffer[2 * i]`` by its high nibble and
    ``buffer[2 * i + 1]`` by its low nibble. Sums wrap at one byte.
    """
    for i, value in enumerate(compressed):
        j = i * 2
        buffer[j] = (buffer[j] + DECODE_TABLE[(value >> 4) & 0x0F]) & 0xFF
        j += 1
        buffer[j] = (buffer[j] + DECODE_TABLE[value & 0x0F]) & 0xFF
    return buffer


class FragmentSequencer:
    """
    Rebuilds 16-byte analog frames from indexed BLE notifications.

    Index 0 carries a full snapshot, each following even index carries two
    compressed half-frames that accumulate into the current buffer. Anything
    else repeats the last known buffer so downstream cadence stays steady.
    """

    def __init__(self) -> None:
        self._buffer: Optional[bytearray] = None
        self._last_index = 0
        self._stats: Dict[str, int] = {}
        self._log = logging.getLogger(__name__)
        self.reset()

    @property
    def last_index(self) -> int:
        return self._last_index

    @property
    def buffer(self) -> Optional[bytes]:
        return bytes(self._buffer) if self._buffer is not None else None

    def accept(self, raw: bytes) -> Iterator[bytes]:
        if len(raw) < HEADER_SIZE:
            self._skip_short(raw)
            return
        index = sequence_index(raw)
        self._stats["notifications"] += 1
        if index == 0:
            if len(raw) < PAYLOAD_SIZE:
                self._skip_short(raw)
                return
            self._buffer = bytearray(raw[HEADER_SIZE:PAYLOAD_SIZE])
            self._last_index = index
            self._stats["snapshots"] += 1
            yield bytes(self._buffer)
        elif index == self._last_index + INDEX_STEP and self._buffer is not None:
            if len(raw) < PAYLOAD_SIZE:
                self._skip_short(raw)
                return
            # Merge both halves before yielding anything.
            merged = []
            for start in (HEADER_SIZE, HEADER_SIZE + HALF_FRAME_SIZE):
                unpack_deltas(raw[start : start + HALF_FRAME_SIZE], self._buffer)
                merged.append(bytes(self._buffer))
            self._last_index = index
            self._stats["deltas"] += 1
            yield from merged
        elif self._buffer is not None:
            self._stats["repeats"] += 1
            self._log.debug("Out-of-sequence index %d (last=%d), repeating frame", index, self._last_index)
            yield bytes(self._buffer)
        else:
            self._log.debug("Dropping index %d received before the first snapshot", index)

    def _skip_short(self, raw: bytes) -> None:
        self._stats["short_payloads"] += 1
        self._log.debug("Skipping short notification (%d bytes)", len(raw))

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset(self) -> None:
        self._buffer = None
        self._last_index = 0
        self._stats = {
            "notifications": 0,
            "snapshots": 0,
            "deltas": 0,
            "repeats": 0,
            "short_payloads": 0,
        }


def iterate_hex_stream(lines: Iterable[str]) -> Iterator[bytes]:
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        yield bytes.fromhex(line)
