"""Reading ELF headers, program headers and notes of a memory image."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterator

KEXEC_CORE_NOTE_NAME = b"CORE"
VMCOREINFO_NOTE_NAME = b"VMCOREINFO"
VMCOREINFO_XEN_NOTE_NAME = b"VMCOREINFO_XEN"
ERASEINFO_NOTE_NAME = b"ERASEINFO"
XEN_NOTE_NAME = b"Xen"

XEN_ELFNOTE_CRASH_INFO = 0x1000001
NT_PRSTATUS = 1

PT_LOAD = 1
PT_NOTE = 4
PN_XNUM = 0xFFFF
EI_CLASS = 4

_BYTE_ORDER = "="

_EHDR_TAIL = {
    2: struct.Struct(_BYTE_ORDER + "HHIQQQIHHHHHH"),
    1: struct.Struct(_BYTE_ORDER + "HHIIIIIHHHHHH"),
}
_PHDR64 = struct.Struct(_BYTE_ORDER + "IIQQQQQQ")
_PHDR32 = struct.Struct(_BYTE_ORDER + "IIIIIIII")
_NHDR = struct.Struct(_BYTE_ORDER + "III")
_SHDR64 = struct.Struct(_BYTE_ORDER + "IIQQQQIIQQ")

MAX_SIZE_NHDR = _NHDR.size


class ElfError(Exception):
    """Raised when an ELF file cannot be read or is not valid."""


class ElfClass(enum.IntEnum):
    """ELF word size, with the values of e_ident[EI_CLASS]."""

    ELF32 = 1
    ELF64 = 2

    @property
    def ehdr_size(self) -> int:
        return 16 + _EHDR_TAIL[self.value].size

    @property
    def phdr_size(self) -> int:
        return _PHDR64.size if self is ElfClass.ELF64 else _PHDR32.size


def _read_exact(f: BinaryIO, offset: int, size: int, what: str) -> bytes:
    try:
        f.seek(offset)
    except (OSError, ValueError) as exc:
        raise ElfError(f"Can't seek {what} at 0x{offset:x}: {exc}") from exc
    data = f.read(size)
    if len(data) != size:
        raise ElfError(f"Can't read {what} at 0x{offset:x}")
    return data


@dataclass(frozen=True)
class ElfHeader:
    """The ELF file header of either word size."""

    elf_class: ElfClass
    ident: bytes
    e_type: int
    e_machine: int
    e_version: int
    e_entry: int
    e_phoff: int
    e_shoff: int
    e_flags: int
    e_ehsize: int
    e_phentsize: int
    e_phnum: int
    e_shentsize: int
    e_shnum: int
    e_shstrndx: int

    @classmethod
    def from_file(cls, f: BinaryIO) -> "ElfHeader":
        ident = _read_exact(f, 0, 16, "ELF identification")
        try:
            elf_class = ElfClass(ident[EI_CLASS])
        except ValueError:
            raise ElfError("Can't get valid ehdr.") from None
        tail = _EHDR_TAIL[elf_class.value]
        fields = tail.unpack(_read_exact(f, 16, tail.size, "ELF header"))
        return cls(elf_class, ident, *fields)


@dataclass(frozen=True)
class ProgramHeader:
    """A program header; 32-bit headers are widened to this form."""

    p_type: int
    p_flags: int
    p_offset: int
    p_vaddr: int
    p_paddr: int
    p_filesz: int
    p_memsz: int
    p_align: int

    @classmethod
    def read(cls, f: BinaryIO, elf_class: ElfClass, index: int) -> "ProgramHeader":
        elf_class = ElfClass(elf_class)
        offset = elf_class.ehdr_size + elf_class.phdr_size * index
        data = _read_exact(f, offset, elf_class.phdr_size, f"program header {index}")
        if elf_class is ElfClass.ELF64:
            return cls(*_PHDR64.unpack(data))
        p_type, p_offset, p_vaddr, p_paddr, p_filesz, p_memsz, p_flags, p_align = (
            _PHDR32.unpack(data)
        )
        return cls(p_type, p_flags, p_offset, p_vaddr, p_paddr, p_filesz, p_memsz, p_align)

    @property
    def is_load(self) -> bool:
        return self.p_type == PT_LOAD


def _roundup4(value: int) -> int:
    return (value + 3) & ~3


@dataclass(frozen=True)
class NoteHeader:
    """An ELF note header; name and descriptor are padded to 4 bytes."""

    namesz: int
    descsz: int
    n_type: int
    elf_class: ElfClass = ElfClass.ELF64

    @classmethod
    def parse(cls, data: bytes, elf_class: ElfClass) -> "NoteHeader":
        if len(data) < _NHDR.size:
            raise ElfError("note header is truncated")
        namesz, descsz, n_type = _NHDR.unpack_from(data)
        return cls(namesz, descsz, n_type, ElfClass(elf_class))

    def desc_offset(self) -> int:
        """Offset of the descriptor from the start of the note."""
        return _NHDR.size + _roundup4(self.namesz)

    def next_offset(self) -> int:
        """Offset of the following note from the start of this one."""
        return _NHDR.size + _roundup4(self.namesz) + _roundup4(self.descsz)


def read_phnum(f: BinaryIO, header: ElfHeader) -> int:
    """Return the number of program headers, honouring extended numbering."""
    if header.elf_class is not ElfClass.ELF64 or header.e_phnum != PN_XNUM:
        return header.e_phnum
    data = _read_exact(f, header.e_shoff, header.e_shentsize, "section header")
    if len(data) < _SHDR64.size:
        raise ElfError(f"section header at 0x{header.e_shoff:x} is too short")
    return _SHDR64.unpack_from(data)[7]


def detect_elf_format(f: BinaryIO) -> tuple[ElfClass, int, int]:
    """Return (elf_class, phnum, number of PT_LOAD headers)."""
    header = ElfHeader.from_file(f)
    phnum = read_phnum(f, header)
    num_load = sum(1 for ph in iter_program_headers(f, header.elf_class, phnum) if ph.is_load)
    return header.elf_class, phnum, num_load


def iter_program_headers(
    f: BinaryIO, elf_class: ElfClass, phnum: int
) -> Iterator[ProgramHeader]:
    """Yield the program headers in file order."""
    for index in range(phnum):
        yield ProgramHeader.read(f, elf_class, index)


def vaddr_to_offset_slow(f: BinaryIO, vaddr: int) -> int:
    """Map a virtual address to a file offset by scanning PT_LOAD headers.

    Returns 0 when no loaded segment's file data covers the address.
    """
    elf_class, phnum, _ = detect_elf_format(f)
    for ph in iter_program_headers(f, elf_class, phnum):
        if not ph.is_load:
            continue
        if vaddr < ph.p_vaddr or ph.p_vaddr + ph.p_filesz <= vaddr:
            continue
        return ph.p_offset + (vaddr - ph.p_vaddr)
    return 0