import io
import struct

import pytest

from vmdumpkit.elfcore import NOT_PADDR, ElfMemory, PtLoadSegment
from vmdumpkit.elfheaders import (
    NT_PRSTATUS,
    PT_LOAD,
    PT_NOTE,
    XEN_ELFNOTE_CRASH_INFO,
    ElfClass,
    ElfError,
)

EHDR64 = struct.Struct("=HHIQQQIHHHHHH")
EHDR32 = struct.Struct("=HHIIIIIHHHHHH")
PHDR64 = struct.Struct("=IIQQQQQQ")
PHDR32 = struct.Struct("=IIIIIIII")
NHDR = struct.Struct("=III")


def _pad4(data):
    return data + bytes(-len(data) % 4)


def note(name, n_type, desc):
    namez = name + b"\0"
    return NHDR.pack(len(namez), len(desc), n_type) + _pad4(namez) + _pad4(desc)


def _phdr(elf64, p_type, offset, vaddr, paddr, filesz, memsz):
    if elf64:
        return PHDR64.pack(p_type, 0, offset, vaddr, paddr, filesz, memsz, 0)
    return PHDR32.pack(p_type, offset, vaddr, paddr, filesz, memsz, 0, 0)


def build_core(notes=(), loads=(), *, elf64=True, with_note=True):
    ehdr_size, phdr_size = (64, 56) if elf64 else (52, 32)
    phnum = len(loads) + (1 if with_note else 0)
    note_blob = b"".join(notes)
    note_off = ehdr_size + phdr_size * phnum
    data_off = (note_off + len(note_blob) + 16 + 15) & ~15
    phdrs = []
    if with_note:
        phdrs.append(_phdr(elf64, PT_NOTE, note_off, 0, 0, len(note_blob), len(note_blob)))
    body = bytearray()
    offsets = []
    for paddr, vaddr, data, memsz in loads:
        off = data_off + len(body)
        offsets.append(off)
        phdrs.append(_phdr(elf64, PT_LOAD, off, vaddr, paddr, len(data), memsz))
        body += data
    ident = b"\x7fELF" + bytes([2 if elf64 else 1, 1, 1]) + bytes(9)
    packer = EHDR64 if elf64 else EHDR32
    ehdr = ident + packer.pack(
        4, 62 if elf64 else 3, 1, 0, ehdr_size, 0, 0, ehdr_size, phdr_size, phnum, 0, 0, 0
    )
    image = bytearray(ehdr + b"".join(phdrs) + note_blob)
    image += bytes(data_off - len(image))
    image += body + bytes(16)
    return io.BytesIO(bytes(image)), offsets


def _read(f, region):
    offset, size = region
    f.seek(offset)
    return f.read(size)


PATTERN = bytes(range(256)) * 16
CPU_NOTES = [note(b"CORE", NT_PRSTATUS, bytes(8)), note(b"CORE", NT_PRSTATUS, bytes(8))]


def test_open_counts_cpus_and_finds_vmcoreinfo():
    desc = b"OSRELEASE=6.1.0\nPAGESIZE=4096\n"
    f, _ = build_core(
        CPU_NOTES + [note(b"VMCOREINFO", 0, desc)],
        [(0x100000, 0xFFFF0000, PATTERN, 0x2000)],
    )
    mem = ElfMemory.open(f, "vmcore")
    assert mem.nr_cpus == 2
    assert mem.elf_class is ElfClass.ELF64
    assert mem.is_elf64
    assert not mem.is_xen
    assert _read(f, mem.vmcoreinfo) == desc
    assert len(mem.segments) == 1


def test_core_note_of_other_type_is_not_a_cpu():
    f, _ = build_core([note(b"CORE", 2, bytes(8))], [(0, 0, PATTERN, len(PATTERN))])
    assert ElfMemory.open(f).nr_cpus == 0


def test_xen_and_eraseinfo_notes():
    crash = b"xen-crash-info-desc"
    erase = b"erase init_task.comm size 16\n"
    xen_info = b"XEN_VERSION=4\n"
    f, _ = build_core(
        [
            note(b"Xen", XEN_ELFNOTE_CRASH_INFO, crash),
            note(b"ERASEINFO", 0, erase),
            note(b"VMCOREINFO_XEN", 0, xen_info),
        ],
        [(0, 0, PATTERN, len(PATTERN))],
    )
    mem = ElfMemory.open(f)
    assert mem.is_xen
    assert _read(f, mem.xen_crash_info) == crash
    assert _read(f, mem.eraseinfo) == erase
    assert _read(f, mem.vmcoreinfo_xen) == xen_info
    assert mem.vmcoreinfo == (0, 0)


def test_notes_with_long_names_are_skipped():
    desc = b"KERNELOFFSET=0\n"
    f, _ = build_core(
        [note(b"A" * 20, 0, b"ignored"), note(b"VMCOREINFO", 0, desc)],
        [(0, 0, PATTERN, len(PATTERN))],
    )
    mem = ElfMemory.open(f)
    assert _read(f, mem.vmcoreinfo) == desc


def test_image_without_loads_is_rejected():
    f, _ = build_core(CPU_NOTES, [])
    with pytest.raises(ElfError):
        ElfMemory.open(f)


def test_image_without_note_is_rejected():
    f, _ = build_core([], [(0, 0, PATTERN, len(PATTERN))], with_note=False)
    with pytest.raises(ElfError):
        ElfMemory.open(f)


def test_elf32_image():
    f, offsets = build_core(CPU_NOTES, [(0x2000, 0xC0002000, PATTERN, 0x2000)], elf64=False)
    mem = ElfMemory.open(f)
    assert mem.elf_class is ElfClass.ELF32
    assert mem.nr_cpus == 2
    seg = mem.segments[0]
    assert seg.phys_start == 0x2000
    assert seg.virt_start == 0xC0002000
    assert seg.file_offset == offsets[0]


def test_paddr_to_offset_reads_back_data():
    f, offsets = build_core(CPU_NOTES, [(0x100000, 0xFFFF0000, PATTERN, 0x2000)])
    mem = ElfMemory.open(f)
    offset = mem.paddr_to_offset(0x100010)
    f.seek(offset)
    assert f.read(4) == PATTERN[0x10:0x14]
    assert mem.paddr_to_offset(0x100000 + len(PATTERN)) == 0
    assert mem.paddr_to_offset(0xFFFFF) == 0
    assert mem.paddr_to_offset2(0x100010, offsets[0]) == offset
    assert mem.paddr_to_offset2(0x100010, 0) == 0


def test_offset_to_pt_load_end_uses_memory_size():
    f, offsets = build_core(CPU_NOTES, [(0x100000, 0xFFFF0000, PATTERN, 0x2000)])
    mem = ElfMemory.open(f)
    assert mem.offset_to_pt_load_end(offsets[0] + 10) - offsets[0] == 0x2000
    assert mem.offset_to_pt_load_end(1) == 0
    assert mem.max_file_offset() == mem.offset_to_pt_load_end(offsets[0])


def _mem(*segments):
    return ElfMemory(file=None, name="test", elf_class=ElfClass.ELF64, segments=list(segments))


def test_page_is_fractional():
    mem = _mem(
        PtLoadSegment(
            file_offset=0x1000, file_size=0x2800,
            phys_start=0, phys_end=0x2800, virt_start=0, virt_end=0x2800,
        )
    )
    assert not mem.page_is_fractional(0x1000, 0x1000)
    assert mem.page_is_fractional(0x1800, 0x1000)
    assert mem.page_is_fractional(0x3000, 0x1000)


def test_vaddr_to_paddr():
    mem = _mem(
        PtLoadSegment(
            file_offset=0, file_size=0x1000,
            phys_start=0x5000, phys_end=0x6000, virt_start=0x9000, virt_end=0xA000,
        )
    )
    assert mem.vaddr_to_paddr(0x9000) == 0x5000
    assert mem.vaddr_to_paddr(0xA000) == NOT_PADDR
    assert _mem().vaddr_to_paddr(0x9000) == NOT_PADDR


def test_max_paddr_ignores_unknown_physical_segments():
    mem = _mem(
        PtLoadSegment(file_offset=0, file_size=0, phys_start=0x1000, phys_end=0x2000,
                      virt_start=0, virt_end=0x1000),
        PtLoadSegment(file_offset=0, file_size=0, phys_start=NOT_PADDR, phys_end=NOT_PADDR,
                      virt_start=0, virt_end=0x1000),
    )
    assert mem.max_paddr() == 0x2000
    assert _mem().max_paddr() == 0


def test_closest_pt_load():
    mem = _mem(
        PtLoadSegment(file_offset=0, file_size=0x1000, phys_start=0x1000, phys_end=0x2000,
                      virt_start=0x1000, virt_end=0x2000),
        PtLoadSegment(file_offset=0x1000, file_size=0x1000, phys_start=0x5000,
                      phys_end=0x6000, virt_start=0x5000, virt_end=0x6000),
    )
    assert mem.closest_pt_load(0x1800, 0) == 0
    assert mem.closest_pt_load(0x4000, 0x2000) == 1
    assert mem.closest_pt_load(0x4000, 0x100) is None
    assert mem.closest_pt_load(0x7000, 0x10000) is None


def test_has_pt_note_depends_on_sadump():
    mem = _mem()
    mem.pt_note = (0, 16)
    assert mem.has_pt_note(True)
    assert not mem.has_pt_note(False)
    mem.pt_note = (0x100, 16)
    assert mem.has_pt_note(False)


OFF = 0xFFFF800000000000


def _kseg(phys_start, phys_end, file_offset=0):
    return PtLoadSegment(
        file_offset=file_offset, file_size=phys_end - phys_start,
        phys_start=phys_start, phys_end=phys_end,
        virt_start=phys_start + OFF, virt_end=phys_end + OFF,
    )


def test_exclude_segment_splits_middle():
    mem = _mem(_kseg(0, 0x10000))
    mem.exclude_segment(0x4000, 0x8000, lambda p: p + OFF)
    assert len(mem.segments) == 2
    head, tail = mem.segments
    assert (head.phys_start, head.phys_end) == (0, 0x4000)
    assert (tail.phys_start, tail.phys_end) == (0x8000, 0x10000)
    assert tail.virt_start == 0x8000 + OFF
    assert tail.file_offset == 0x8000
    assert head.file_size == head.phys_end - head.phys_start
    assert tail.file_size == tail.phys_end - tail.phys_start


def test_exclude_segment_trims_edges():
    mem = _mem(_kseg(0, 0x10000), _kseg(0x20000, 0x30000, 0x10000))
    mem.exclude_segment(0xC000, 0x10000, lambda p: p + OFF)
    mem.exclude_segment(0x20000, 0x24000, lambda p: p + OFF)
    first, second = mem.segments
    assert (first.phys_start, first.phys_end) == (0, 0xC000)
    assert first.virt_end == 0xC000 + OFF
    assert (second.phys_start, second.phys_end) == (0x24000, 0x30000)
    assert second.virt_start == 0x24000 + OFF


def test_keep_kcore_loads_filters_and_excludes_reserved():
    not_phys = PtLoadSegment(file_offset=0, file_size=0x1000, phys_start=0x1000,
                             phys_end=0x2000, virt_start=0x1000, virt_end=0x2000)
    mem = _mem(not_phys, _kseg(0, 0x10000), _kseg(NOT_PADDR, NOT_PADDR))
    mem.keep_kcore_loads(lambda v: v >= OFF, [(0x4000, 0x7FFF)], lambda p: p + OFF)
    assert [(s.phys_start, s.phys_end) for s in mem.segments] == [(0, 0x4000), (0x8000, 0x10000)]
    assert mem.max_file_offset() == 0x10000


def test_keep_kcore_loads_without_physical_segments_fails():
    mem = _mem(_kseg(0, 0x1000))
    with pytest.raises(ElfError):
        mem.keep_kcore_loads(lambda v: False, [], lambda p: p + OFF)


def test_set_kcore_vmcoreinfo():
    desc = b"OSRELEASE=6.1.0\n"
    data = note(b"VMCOREINFO", 0, desc) + bytes(64)
    f, _ = build_core(CPU_NOTES, [(0x200000, 0x200000 + OFF, data, 0x1000)])
    mem = ElfMemory.open(f)
    assert mem.vmcoreinfo == (0, 0)
    mem.set_kcore_vmcoreinfo(0x200000, lambda p: p + OFF)
    assert _read(f, mem.vmcoreinfo) == desc
    with pytest.raises(ElfError):
        mem.set_kcore_vmcoreinfo(0x900000, lambda p: p + OFF)