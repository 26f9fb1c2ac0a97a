import struct
from dataclasses import replace

import pytest

from vmdumpkit.sadump import (
    DUMP_DEVICE_MAX,
    DUMP_PART_HEADER_MAGICNUM_SIZE,
    EFI_UNSPECIFIED_TIMEZONE,
    SADUMP_DEFAULT_BLOCK_SIZE,
    SADUMP_SIGNATURE,
    EfiGuid,
    EfiTime,
    SadumpDiskSetHeader,
    SadumpHeader,
    SadumpMediaHeader,
    SadumpPageHeader,
    SadumpPartHeader,
    SadumpVolumeInfo,
)

GUID = EfiGuid(0x12345678, 0x9ABC, 0xDEF0, b"\x01\x02\x03\x04\x05\x06\x07\x08")
TIME = EfiTime(2024, 4, 12, 10, 30, 59, 0, 123456789, -540, 1, 0)


def _part_header():
    return SadumpPartHeader(
        enable=1,
        reboot=3600,
        compress=2,
        recycle=1,
        label=tuple(range(16)),
        sadump_id=GUID,
        disk_set_id=EfiGuid(1, 2, 3, b"abcdefgh"),
        vol_id=EfiGuid(4, 5, 6, b"ijklmnop"),
        time_stamp=TIME,
        set_disk_set=2,
        used_device=7,
        magicnum=tuple(range(DUMP_PART_HEADER_MAGICNUM_SIZE)),
    )


def _disk_set_header():
    volumes = tuple(
        SadumpVolumeInfo(EfiGuid(n, n, n, bytes([n]) * 8), n * 1000, n, n * 2)
        for n in range(DUMP_DEVICE_MAX - 1)
    )
    return SadumpDiskSetHeader(500, 3, 1 << 40, volumes)


def _dump_header():
    return SadumpHeader(
        header_version=1,
        timestamp=TIME,
        status=1,
        compress=0,
        bitmap_blocks=10,
        dumpable_bitmap_blocks=11,
        max_mapnr=12,
        total_ram_blocks=13,
        device_blocks=14,
        written_blocks=15,
        current_cpu=2,
        nr_cpus=8,
        max_mapnr_64=1 << 33,
        total_ram_blocks_64=1 << 34,
        device_blocks_64=1 << 35,
        written_blocks_64=1 << 36,
    )


def _media_header():
    return SadumpMediaHeader(GUID, GUID, TIME, 1, -2, 3, 4, bytes(range(4)) * 1011)


@pytest.mark.parametrize(
    "value",
    [
        TIME,
        EfiTime(timezone=EFI_UNSPECIFIED_TIMEZONE),
        GUID,
        _part_header(),
        SadumpVolumeInfo(GUID, 1 << 41, 5, 6),
        _disk_set_header(),
        _dump_header(),
        SadumpPageHeader(1 << 50, 4096, 3),
        _media_header(),
    ],
)
def test_round_trip(value):
    data = value.to_bytes()
    assert len(data) == type(value).SIZE
    assert type(value).from_bytes(data) == value
    assert type(value).from_bytes(data + b"trailing") == value


@pytest.mark.parametrize(
    "cls",
    [EfiTime, EfiGuid, SadumpPartHeader, SadumpVolumeInfo, SadumpDiskSetHeader,
     SadumpHeader, SadumpPageHeader, SadumpMediaHeader],
)
def test_short_data_is_rejected(cls):
    with pytest.raises(ValueError):
        cls.from_bytes(bytes(cls.SIZE - 1))


def test_part_header_fills_a_block():
    assert len(SadumpPartHeader().to_bytes()) == SADUMP_DEFAULT_BLOCK_SIZE


def test_media_header_fills_a_block():
    assert len(SadumpMediaHeader().to_bytes()) == SADUMP_DEFAULT_BLOCK_SIZE


def test_part_header_signature_bytes():
    assert SadumpPartHeader().to_bytes()[:8] == SADUMP_SIGNATURE


def test_part_header_signature_check():
    header = _part_header()
    assert header.has_valid_signature() is True
    assert replace(header, signature1=0).has_valid_signature() is False
    assert replace(header, signature2=0).has_valid_signature() is False


def test_part_header_magic_is_last():
    header = _part_header()
    tail = header.to_bytes()[-4 * DUMP_PART_HEADER_MAGICNUM_SIZE:]
    assert tail == struct.pack(f"<{DUMP_PART_HEADER_MAGICNUM_SIZE}I", *header.magicnum)


def test_dump_header_signature():
    header = _dump_header()
    assert header.to_bytes()[:8] == SADUMP_SIGNATURE
    assert header.has_valid_signature() is True
    assert replace(header, signature=b"garbage!").has_valid_signature() is False


def test_dump_header_64bit_fields_are_last():
    header = _dump_header()
    tail = struct.pack(
        "<4Q",
        header.max_mapnr_64,
        header.total_ram_blocks_64,
        header.device_blocks_64,
        header.written_blocks_64,
    )
    assert header.to_bytes()[-len(tail):] == tail


def test_dump_header_default_block_size():
    assert SadumpHeader.from_bytes(SadumpHeader().to_bytes()).block_size == SADUMP_DEFAULT_BLOCK_SIZE


def test_guid_data4_length_checked():
    with pytest.raises(ValueError):
        EfiGuid(1, 2, 3, b"short")


def test_disk_set_header_volume_count_checked():
    with pytest.raises(ValueError):
        SadumpDiskSetHeader(vol_info=(SadumpVolumeInfo(),))


def test_dump_header_signature_length_checked():
    with pytest.raises(ValueError):
        SadumpHeader(signature=b"sadump")


def test_media_header_signed_counts():
    decoded = SadumpMediaHeader.from_bytes(_media_header().to_bytes())
    assert decoded.term_cord == -2
    assert decoded.reserve == bytes(range(4)) * 1011


def test_volume_infos_keep_order():
    decoded = SadumpDiskSetHeader.from_bytes(_disk_set_header().to_bytes())
    assert [volume.status for volume in decoded.vol_info] == list(range(DUMP_DEVICE_MAX - 1))