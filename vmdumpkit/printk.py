"""Extracting the kernel log from a lockless printk ring buffer."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterator

PID_CHARS_DEFAULT = 8
NSEC_PER_SEC = 1_000_000_000

_CPU_CALLER = 0x80000000
_SPACE_BYTES = frozenset(b" \t\n\v\f\r")
_WORD = {64: struct.Struct("=Q"), 32: struct.Struct("=I")}
_ULONGLONG = struct.Struct("=Q")
_USHORT = struct.Struct("=H")
_UINT = struct.Struct("=I")


class DescState(enum.IntEnum):
    """States of a ring buffer descriptor."""

    MISS = -1
    RESERVED = 0
    COMMITTED = 1
    FINALIZED = 2
    REUSABLE = 3


def _flags_shift(word_bits: int) -> int:
    return word_bits - 2


def _id_mask(word_bits: int) -> int:
    return ((1 << word_bits) - 1) & ~(3 << _flags_shift(word_bits))


def desc_state(desc_id: int, state_val: int, word_bits: int = 64) -> DescState:
    """State of descriptor ``desc_id`` given its state variable."""
    if desc_id != state_val & _id_mask(word_bits):
        return DescState.MISS
    return DescState(3 & (state_val >> _flags_shift(word_bits)))


def format_record(text: bytes, ts_nsec: int, caller_id: int | None = None) -> bytes:
    """Format one log record as a line of dmesg output."""
    seconds, rem = divmod(ts_nsec, NSEC_PER_SEC)
    prefix = f"[{seconds:5d}.{rem // 1000:06d}] "
    if caller_id is not None:
        kind = "C" if caller_id & _CPU_CALLER else "T"
        ident = f"{kind}{caller_id & ~_CPU_CALLER & 0xFFFFFFFF}"
        prefix += f"[{ident:>{PID_CHARS_DEFAULT}}] "
    indent = b"\n" + b" " * len(prefix)
    parts = [prefix.encode("ascii")]
    for byte in text:
        if byte == 0x0A:
            parts.append(indent)
        elif 0x20 <= byte <= 0x7E or byte in _SPACE_BYTES:
            parts.append(bytes((byte,)))
        else:
            parts.append(b"\\x%02x" % byte)
    parts.append(b"\n")
    return b"".join(parts)


@dataclass(frozen=True)
class RingLayout:
    """Sizes and member offsets of the kernel's ring buffer structures.

    ``state_var_offset`` and the text offsets are relative to a descriptor;
    ``ts_nsec_offset``, ``text_len_offset`` and ``caller_id_offset`` to an
    info record. ``caller_id_offset`` is None for kernels without it.
    """

    desc_size: int
    state_var_offset: int
    text_begin_offset: int
    text_next_offset: int
    info_size: int
    ts_nsec_offset: int
    text_len_offset: int
    caller_id_offset: int | None = None
    word_bits: int = 64

    def __post_init__(self) -> None:
        if self.word_bits not in _WORD:
            raise ValueError(f"unsupported word size: {self.word_bits} bits")


class PrintkRingBuffer:
    """A copy of a printk ring buffer read from a memory image."""

    def __init__(
        self,
        layout: RingLayout,
        descs: bytes,
        infos: bytes,
        text_data: bytes,
        desc_count_bits: int,
        text_size_bits: int,
        tail_id: int,
        head_id: int,
    ) -> None:
        self.layout = layout
        self.desc_count = 1 << desc_count_bits
        self.text_size = 1 << text_size_bits
        if len(descs) < layout.desc_size * self.desc_count:
            raise ValueError("descriptor array is shorter than the ring")
        if len(infos) < layout.info_size * self.desc_count:
            raise ValueError("info array is shorter than the ring")
        if len(text_data) < self.text_size:
            raise ValueError("text data is shorter than the ring")
        self.descs = bytes(descs)
        self.infos = bytes(infos)
        self.text_data = bytes(text_data)
        self.tail_id = tail_id
        self.head_id = head_id
        self._word = _WORD[layout.word_bits]

    def start_from_clear_seq(self, clear_seq: int) -> None:
        """Start the dump at the record the log was last cleared at."""
        self.tail_id = (
            self.head_id - self.head_id % self.desc_count + clear_seq % self.desc_count
        )

    def _ids(self) -> Iterator[int]:
        mask = _id_mask(self.layout.word_bits)
        desc_id = self.tail_id
        while desc_id != self.head_id:
            yield desc_id
            desc_id = (desc_id + 1) & mask
        yield desc_id

    def _record(self, desc_id: int) -> bytes | None:
        layout = self.layout
        slot = desc_id % self.desc_count
        desc = slot * layout.desc_size
        state_val = self._word.unpack_from(self.descs, desc + layout.state_var_offset)[0]
        if desc_state(desc_id, state_val, layout.word_bits) not in (
            DescState.COMMITTED,
            DescState.FINALIZED,
        ):
            return None
        begin = self._word.unpack_from(self.descs, desc + layout.text_begin_offset)[0]
        nxt = self._word.unpack_from(self.descs, desc + layout.text_next_offset)[0]
        begin %= self.text_size
        nxt %= self.text_size
        if begin == nxt:
            return None

        info = slot * layout.info_size
        text_len = _USHORT.unpack_from(self.infos, info + layout.text_len_offset)[0]
        if begin > nxt:
            begin = 0
        begin += self._word.size
        available = (nxt - begin) % (1 << layout.word_bits)
        text_len = min(text_len, available)
        text = self.text_data[begin:begin + text_len]

        ts_nsec = _ULONGLONG.unpack_from(self.infos, info + layout.ts_nsec_offset)[0]
        caller_id = None
        if layout.caller_id_offset is not None:
            caller_id = _UINT.unpack_from(self.infos, info + layout.caller_id_offset)[0]
        return format_record(text, ts_nsec, caller_id)

    def records(self) -> Iterator[bytes]:
        """Yield the formatted committed records from tail to head."""
        for desc_id in self._ids():
            record = self._record(desc_id)
            if record is not None:
                yield record

    def dump(self, out: BinaryIO) -> None:
        """Write the formatted log to a binary stream."""
        for record in self.records():
            out.write(record)