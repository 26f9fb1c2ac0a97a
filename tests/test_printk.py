import io
import struct

import pytest

from vmdumpkit.printk import (
    DescState,
    PrintkRingBuffer,
    RingLayout,
    desc_state,
    format_record,
)

LAYOUT = RingLayout(
    desc_size=24,
    state_var_offset=0,
    text_begin_offset=8,
    text_next_offset=16,
    info_size=16,
    ts_nsec_offset=0,
    text_len_offset=8,
    caller_id_offset=12,
)
NO_CALLER = RingLayout(
    desc_size=24,
    state_var_offset=0,
    text_begin_offset=8,
    text_next_offset=16,
    info_size=16,
    ts_nsec_offset=0,
    text_len_offset=8,
)

COUNT_BITS = 2
TEXT_BITS = 8


def make_parts(entries):
    """entries: (desc_id, state, body or None, ts_nsec, caller_id)."""
    count = 1 << COUNT_BITS
    descs = bytearray(24 * count)
    infos = bytearray(16 * count)
    text = bytearray(1 << TEXT_BITS)
    pos = 0
    for desc_id, state, body, ts, caller in entries:
        begin = pos
        if body is None:
            nxt = begin
            length = 0
        else:
            struct.pack_into("=Q", text, pos, desc_id)
            text[pos + 8:pos + 8 + len(body)] = body
            nxt = pos + 8 + len(body)
            pos = nxt
            length = len(body)
        slot = desc_id % count
        struct.pack_into("=QQQ", descs, slot * 24, (state << 62) | desc_id, begin, nxt)
        struct.pack_into("=QHxxI", infos, slot * 16, ts, length, caller)
    return descs, infos, text


def make_ring(entries, tail_id, head_id, layout=LAYOUT):
    descs, infos, text = make_parts(entries)
    return PrintkRingBuffer(layout, descs, infos, text, COUNT_BITS, TEXT_BITS, tail_id, head_id)


def test_format_record_plain():
    assert format_record(b"hello", 1_500_000_000) == b"[    1.500000] hello\n"


def test_format_record_with_caller():
    assert format_record(b"x", 0, 42) == b"[    0.000000] [     T42] x\n"


def test_format_record_cpu_caller_and_escapes():
    line = format_record(b"a\x01", 0, 0x80000003)
    assert b"C3]" in line
    assert b"\\x01" in line


def test_format_record_indents_continuation_lines():
    line = format_record(b"first\nsecond", 7_000_000_000)
    first, second, end = line.split(b"\n")
    prefix_len = first.index(b"first")
    assert second == b" " * prefix_len + b"second"
    assert end == b""


def test_desc_state():
    assert desc_state(5, (2 << 62) | 5) is DescState.FINALIZED
    assert desc_state(5, (1 << 62) | 5) is DescState.COMMITTED
    assert desc_state(6, (2 << 62) | 5) is DescState.MISS
    assert desc_state(9, (3 << 30) | 9, 32) is DescState.REUSABLE


def test_records_in_order_skipping_uncommitted_and_empty():
    ring = make_ring(
        [
            (0, 2, b"boot", 1_000, 1),
            (1, 0, b"reserved", 2_000, 1),
            (2, 1, None, 3_000, 1),
            (3, 1, b"last", 4_000, 0x80000000),
        ],
        tail_id=0,
        head_id=3,
    )
    records = list(ring.records())
    assert records == [format_record(b"boot", 1_000, 1), format_record(b"last", 4_000, 0x80000000)]


def test_layout_without_caller_id():
    ring = make_ring([(0, 2, b"msg", 42_000, 7)], tail_id=0, head_id=0, layout=NO_CALLER)
    assert list(ring.records()) == [format_record(b"msg", 42_000)]


def test_dump_writes_all_records():
    ring = make_ring([(0, 2, b"a", 1, 1), (1, 2, b"b", 2, 2)], tail_id=0, head_id=1)
    out = io.BytesIO()
    ring.dump(out)
    assert out.getvalue() == b"".join(ring.records())
    assert out.getvalue().count(b"\n") == 2


def test_wrapped_block_starts_at_ring_start():
    descs, infos, text = make_parts([(0, 2, b"wrap", 5, 1)])
    # begin after next means the data block wrapped to offset 0.
    struct.pack_into("=Q", descs, 8, 200)
    ring = PrintkRingBuffer(LAYOUT, descs, infos, text, COUNT_BITS, TEXT_BITS, 0, 0)
    assert list(ring.records()) == [format_record(b"wrap", 5, 1)]


def test_logical_positions_are_reduced_modulo_ring_size():
    descs, infos, text = make_parts([(0, 2, b"mod", 5, 1)])
    begin, nxt = struct.unpack_from("=QQ", descs, 8)
    size = 1 << TEXT_BITS
    struct.pack_into("=QQ", descs, 8, begin + 5 * size, nxt + 5 * size)
    ring = PrintkRingBuffer(LAYOUT, descs, infos, text, COUNT_BITS, TEXT_BITS, 0, 0)
    assert list(ring.records()) == [format_record(b"mod", 5, 1)]


def test_text_length_is_truncated_to_block():
    descs, infos, text = make_parts([(0, 2, b"abc", 5, 1)])
    struct.pack_into("=H", infos, 8, 50)
    ring = PrintkRingBuffer(LAYOUT, descs, infos, text, COUNT_BITS, TEXT_BITS, 0, 0)
    assert list(ring.records()) == [format_record(b"abc", 5, 1)]


def test_start_from_clear_seq():
    ring = make_ring(
        [(4, 2, b"old", 1, 1), (5, 2, b"new", 2, 1), (6, 2, b"newest", 3, 1)],
        tail_id=4,
        head_id=6,
    )
    assert len(list(ring.records())) == 3
    ring.start_from_clear_seq(5)
    assert ring.tail_id == 5
    assert list(ring.records()) == [format_record(b"new", 2, 1), format_record(b"newest", 3, 1)]


def test_short_buffers_are_rejected():
    descs, infos, text = make_parts([])
    with pytest.raises(ValueError):
        PrintkRingBuffer(LAYOUT, descs[:10], infos, text, COUNT_BITS, TEXT_BITS, 0, 0)
    with pytest.raises(ValueError):
        PrintkRingBuffer(LAYOUT, descs, infos, text[:10], COUNT_BITS, TEXT_BITS, 0, 0)


def test_unsupported_word_size():
    with pytest.raises(ValueError):
        RingLayout(24, 0, 8, 16, 16, 0, 8, None, 16)