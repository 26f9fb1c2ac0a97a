"""On-disk structures of sadump dump partitions, disk sets and media backups."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import ClassVar

SADUMP_SIGNATURE1 = 0x75646173
SADUMP_SIGNATURE2 = 0x0000706D
SADUMP_SIGNATURE = b"sadump\0\0"
SADUMP_MAX_DISK_SET_NUM = 16
DUMP_PART_HEADER_MAGICNUM_SIZE = 982
DUMP_DEVICE_MAX = 16
SADUMP_DEFAULT_BLOCK_SIZE = 4096
SADUMP_PF_SECTION_NUM = 4096
EFI_UNSPECIFIED_TIMEZONE = 2047

_LABEL_COUNT = 16
_MEDIA_RESERVE = 4044

_EFI_TIME = struct.Struct("<HBBBBBBIhBB")
_EFI_GUID = struct.Struct("<IHH8s")
_PART_HEAD = struct.Struct(f"<6I{_LABEL_COUNT}I")
_PART_MID = struct.Struct("<IIQ")
_PART_MAGIC = struct.Struct(f"<{DUMP_PART_HEADER_MAGICNUM_SIZE}I")
_VOLUME_TAIL = struct.Struct("<QII")
_DISK_SET_HEAD = struct.Struct("<IIQ")
_HDR_HEAD = struct.Struct("<8sII")
_HDR_MID = struct.Struct("<13I")
_HDR_PAD = 4
_HDR_TAIL = struct.Struct("<4Q")
_PAGE_HEADER = struct.Struct("<QII")
_MEDIA_MID = struct.Struct("<4b")


def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise ValueError(f"{what} needs {size} bytes, got {len(data)}")


class SadumpFormatType(enum.IntEnum):
    """Kinds of sadump formats."""

    UNKNOWN = 0
    SINGLE_PARTITION = 1
    DISKSET = 2
    MEDIA_BACKUP = 3


@dataclass
class EfiTime:
    """An EFI time stamp."""

    SIZE: ClassVar[int] = _EFI_TIME.size

    year: int = 0
    month: int = 0
    day: int = 0
    hour: int = 0
    minute: int = 0
    second: int = 0
    pad1: int = 0
    nanosecond: int = 0
    timezone: int = 0
    daylight: int = 0
    pad2: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "EfiTime":
        _require(data, cls.SIZE, "EFI time")
        return cls(*_EFI_TIME.unpack_from(data))

    def to_bytes(self) -> bytes:
        return _EFI_TIME.pack(
            self.year, self.month, self.day, self.hour, self.minute, self.second,
            self.pad1, self.nanosecond, self.timezone, self.daylight, self.pad2,
        )


@dataclass
class EfiGuid:
    """An EFI GUID in its mixed-endian binary layout."""

    SIZE: ClassVar[int] = _EFI_GUID.size

    data1: int = 0
    data2: int = 0
    data3: int = 0
    data4: bytes = bytes(8)

    def __post_init__(self) -> None:
        self.data4 = bytes(self.data4)
        if len(self.data4) != 8:
            raise ValueError(f"data4 must be 8 bytes, got {len(self.data4)}")

    @classmethod
    def from_bytes(cls, data: bytes) -> "EfiGuid":
        _require(data, cls.SIZE, "EFI GUID")
        return cls(*_EFI_GUID.unpack_from(data))

    def to_bytes(self) -> bytes:
        return _EFI_GUID.pack(self.data1, self.data2, self.data3, self.data4)


def _guid_at(data: bytes, offset: int) -> EfiGuid:
    return EfiGuid.from_bytes(data[offset:offset + EfiGuid.SIZE])


def _time_at(data: bytes, offset: int) -> EfiTime:
    return EfiTime.from_bytes(data[offset:offset + EfiTime.SIZE])


def _fixed_tuple(values, count: int, what: str) -> tuple:
    values = tuple(values)
    if len(values) != count:
        raise ValueError(f"{what} must have {count} items, got {len(values)}")
    return values


@dataclass
class SadumpPartHeader:
    """Header of a single sadump dump partition."""

    SIZE: ClassVar[int] = (
        _PART_HEAD.size + 3 * EfiGuid.SIZE + EfiTime.SIZE + _PART_MID.size + _PART_MAGIC.size
    )

    signature1: int = SADUMP_SIGNATURE1
    signature2: int = SADUMP_SIGNATURE2
    enable: int = 0
    reboot: int = 0
    compress: int = 0
    recycle: int = 0
    label: tuple[int, ...] = field(default_factory=lambda: (0,) * _LABEL_COUNT)
    sadump_id: EfiGuid = field(default_factory=EfiGuid)
    disk_set_id: EfiGuid = field(default_factory=EfiGuid)
    vol_id: EfiGuid = field(default_factory=EfiGuid)
    time_stamp: EfiTime = field(default_factory=EfiTime)
    set_disk_set: int = 0
    reserve: int = 0
    used_device: int = 0
    magicnum: tuple[int, ...] = field(
        default_factory=lambda: (0,) * DUMP_PART_HEADER_MAGICNUM_SIZE
    )

    def __post_init__(self) -> None:
        self.label = _fixed_tuple(self.label, _LABEL_COUNT, "label")
        self.magicnum = _fixed_tuple(
            self.magicnum, DUMP_PART_HEADER_MAGICNUM_SIZE, "magicnum"
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "SadumpPartHeader":
        _require(data, cls.SIZE, "sadump partition header")
        head = _PART_HEAD.unpack_from(data, 0)
        offset = _PART_HEAD.size
        ids = [_guid_at(data, offset + n * EfiGuid.SIZE) for n in range(3)]
        offset += 3 * EfiGuid.SIZE
        time_stamp = _time_at(data, offset)
        offset += EfiTime.SIZE
        set_disk_set, reserve, used_device = _PART_MID.unpack_from(data, offset)
        offset += _PART_MID.size
        magicnum = _PART_MAGIC.unpack_from(data, offset)
        return cls(
            *head[:6],
            label=head[6:],
            sadump_id=ids[0],
            disk_set_id=ids[1],
            vol_id=ids[2],
            time_stamp=time_stamp,
            set_disk_set=set_disk_set,
            reserve=reserve,
            used_device=used_device,
            magicnum=magicnum,
        )

    def to_bytes(self) -> bytes:
        return b"".join((
            _PART_HEAD.pack(
                self.signature1, self.signature2, self.enable, self.reboot,
                self.compress, self.recycle, *self.label,
            ),
            self.sadump_id.to_bytes(),
            self.disk_set_id.to_bytes(),
            self.vol_id.to_bytes(),
            self.time_stamp.to_bytes(),
            _PART_MID.pack(self.set_disk_set, self.reserve, self.used_device),
            _PART_MAGIC.pack(*self.magicnum),
        ))

    def has_valid_signature(self) -> bool:
        return (
            self.signature1 == SADUMP_SIGNATURE1
            and self.signature2 == SADUMP_SIGNATURE2
        )


@dataclass
class SadumpVolumeInfo:
    """Description of one volume of a disk set."""

    SIZE: ClassVar[int] = EfiGuid.SIZE + _VOLUME_TAIL.size

    id: EfiGuid = field(default_factory=EfiGuid)
    vol_size: int = 0
    status: int = 0
    cache_size: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "SadumpVolumeInfo":
        _require(data, cls.SIZE, "sadump volume info")
        vol_size, status, cache_size = _VOLUME_TAIL.unpack_from(data, EfiGuid.SIZE)
        return cls(_guid_at(data, 0), vol_size, status, cache_size)

    def to_bytes(self) -> bytes:
        return self.id.to_bytes() + _VOLUME_TAIL.pack(
            self.vol_size, self.status, self.cache_size
        )


_VOLUME_COUNT = DUMP_DEVICE_MAX - 1


@dataclass
class SadumpDiskSetHeader:
    """Header describing the disks of a disk set."""

    SIZE: ClassVar[int] = _DISK_SET_HEAD.size + _VOLUME_COUNT * SadumpVolumeInfo.SIZE

    disk_set_header_size: int = 0
    disk_num: int = 0
    disk_set_size: int = 0
    vol_info: tuple[SadumpVolumeInfo, ...] = field(
        default_factory=lambda: tuple(SadumpVolumeInfo() for _ in range(_VOLUME_COUNT))
    )

    def __post_init__(self) -> None:
        self.vol_info = _fixed_tuple(self.vol_info, _VOLUME_COUNT, "vol_info")

    @classmethod
    def from_bytes(cls, data: bytes) -> "SadumpDiskSetHeader":
        _require(data, cls.SIZE, "sadump disk set header")
        head = _DISK_SET_HEAD.unpack_from(data, 0)
        volumes = []
        for n in range(_VOLUME_COUNT):
            start = _DISK_SET_HEAD.size + n * SadumpVolumeInfo.SIZE
            volumes.append(SadumpVolumeInfo.from_bytes(data[start:start + SadumpVolumeInfo.SIZE]))
        return cls(*head, vol_info=tuple(volumes))

    def to_bytes(self) -> bytes:
        return _DISK_SET_HEAD.pack(
            self.disk_set_header_size, self.disk_num, self.disk_set_size
        ) + b"".join(volume.to_bytes() for volume in self.vol_info)


_HDR_MID_FIELDS = (
    "status", "compress", "block_size", "extra_hdr_size", "sub_hdr_size",
    "bitmap_blocks", "dumpable_bitmap_blocks", "max_mapnr", "total_ram_blocks",
    "device_blocks", "written_blocks", "current_cpu", "nr_cpus",
)
_HDR_TAIL_FIELDS = (
    "max_mapnr_64", "total_ram_blocks_64", "device_blocks_64", "written_blocks_64",
)


@dataclass
class SadumpHeader:
    """Main sadump dump header.

    The 64-bit fields at the end exist from header version 1 on.
    """

    SIZE: ClassVar[int] = (
        _HDR_HEAD.size + EfiTime.SIZE + _HDR_MID.size + _HDR_PAD + _HDR_TAIL.size
    )

    signature: bytes = SADUMP_SIGNATURE
    header_version: int = 0
    reserve: int = 0
    timestamp: EfiTime = field(default_factory=EfiTime)
    status: int = 0
    compress: int = 0
    block_size: int = SADUMP_DEFAULT_BLOCK_SIZE
    extra_hdr_size: int = 0
    sub_hdr_size: int = 0
    bitmap_blocks: int = 0
    dumpable_bitmap_blocks: int = 0
    max_mapnr: int = 0
    total_ram_blocks: int = 0
    device_blocks: int = 0
    written_blocks: int = 0
    current_cpu: int = 0
    nr_cpus: int = 0
    max_mapnr_64: int = 0
    total_ram_blocks_64: int = 0
    device_blocks_64: int = 0
    written_blocks_64: int = 0

    def __post_init__(self) -> None:
        self.signature = bytes(self.signature)
        if len(self.signature) != len(SADUMP_SIGNATURE):
            raise ValueError(
                f"signature must be {len(SADUMP_SIGNATURE)} bytes, got {len(self.signature)}"
            )

    @classmethod
    def from_bytes(cls, data: bytes) -> "SadumpHeader":
        _require(data, cls.SIZE, "sadump header")
        signature, header_version, reserve = _HDR_HEAD.unpack_from(data, 0)
        offset = _HDR_HEAD.size
        timestamp = _time_at(data, offset)
        offset += EfiTime.SIZE
        mid = _HDR_MID.unpack_from(data, offset)
        offset += _HDR_MID.size + _HDR_PAD
        tail = _HDR_TAIL.unpack_from(data, offset)
        return cls(
            signature,
            header_version,
            reserve,
            timestamp,
            **dict(zip(_HDR_MID_FIELDS, mid)),
            **dict(zip(_HDR_TAIL_FIELDS, tail)),
        )

    def to_bytes(self) -> bytes:
        return b"".join((
            _HDR_HEAD.pack(self.signature, self.header_version, self.reserve),
            self.timestamp.to_bytes(),
            _HDR_MID.pack(*(getattr(self, name) for name in _HDR_MID_FIELDS)),
            bytes(_HDR_PAD),
            _HDR_TAIL.pack(*(getattr(self, name) for name in _HDR_TAIL_FIELDS)),
        ))

    def has_valid_signature(self) -> bool:
        return self.signature == SADUMP_SIGNATURE


@dataclass
class SadumpPageHeader:
    """Header of one page record."""

    SIZE: ClassVar[int] = _PAGE_HEADER.size

    page_flags: int = 0
    size: int = 0
    flags: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "SadumpPageHeader":
        _require(data, cls.SIZE, "sadump page header")
        return cls(*_PAGE_HEADER.unpack_from(data))

    def to_bytes(self) -> bytes:
        return _PAGE_HEADER.pack(self.page_flags, self.size, self.flags)


@dataclass
class SadumpMediaHeader:
    """Header of a dump backed up to removable media."""

    SIZE: ClassVar[int] = 2 * EfiGuid.SIZE + EfiTime.SIZE + _MEDIA_MID.size + _MEDIA_RESERVE

    sadump_id: EfiGuid = field(default_factory=EfiGuid)
    disk_set_id: EfiGuid = field(default_factory=EfiGuid)
    time_stamp: EfiTime = field(default_factory=EfiTime)
    sequential_num: int = 0
    term_cord: int = 0
    disk_set_header_size: int = 0
    disks_in_use: int = 0
    reserve: bytes = bytes(_MEDIA_RESERVE)

    def __post_init__(self) -> None:
        self.reserve = bytes(self.reserve)
        if len(self.reserve) != _MEDIA_RESERVE:
            raise ValueError(
                f"reserve must be {_MEDIA_RESERVE} bytes, got {len(self.reserve)}"
            )

    @classmethod
    def from_bytes(cls, data: bytes) -> "SadumpMediaHeader":
        _require(data, cls.SIZE, "sadump media header")
        offset = 2 * EfiGuid.SIZE
        time_stamp = _time_at(data, offset)
        offset += EfiTime.SIZE
        counts = _MEDIA_MID.unpack_from(data, offset)
        offset += _MEDIA_MID.size
        return cls(
            _guid_at(data, 0),
            _guid_at(data, EfiGuid.SIZE),
            time_stamp,
            *counts,
            reserve=bytes(data[offset:offset + _MEDIA_RESERVE]),
        )

    def to_bytes(self) -> bytes:
        return b"".join((
            self.sadump_id.to_bytes(),
            self.disk_set_id.to_bytes(),
            self.time_stamp.to_bytes(),
            _MEDIA_MID.pack(
                self.sequential_num, self.term_cord,
                self.disk_set_header_size, self.disks_in_use,
            ),
            self.reserve,
        ))