"""PT_LOAD and PT_NOTE information of an ELF memory image such as /proc/vmcore."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterable

from vmdumpkit.elfheaders import (
    ERASEINFO_NOTE_NAME,
    KEXEC_CORE_NOTE_NAME,
    MAX_SIZE_NHDR,
    NT_PRSTATUS,
    PT_NOTE,
    VMCOREINFO_NOTE_NAME,
    VMCOREINFO_XEN_NOTE_NAME,
    XEN_ELFNOTE_CRASH_INFO,
    XEN_NOTE_NAME,
    ElfClass,
    ElfError,
    NoteHeader,
    ProgramHeader,
    detect_elf_format,
    iter_program_headers,
)

NOT_PADDR = (1 << 64) - 1

# Note names are read into a buffer as long as the longest name we look for.
_NOTE_NAME_BUF = len(VMCOREINFO_XEN_NOTE_NAME) + 1

AddressMap = Callable[[int], int]


@dataclass
class PtLoadSegment:
    """One PT_LOAD segment: where it lives in the file and in memory."""

    file_offset: int
    file_size: int
    phys_start: int
    phys_end: int
    virt_start: int
    virt_end: int


def _segment_from_phdr(ph: ProgramHeader) -> PtLoadSegment:
    return PtLoadSegment(
        file_offset=ph.p_offset,
        file_size=ph.p_filesz,
        phys_start=ph.p_paddr,
        phys_end=ph.p_paddr + ph.p_memsz,
        virt_start=ph.p_vaddr,
        virt_end=ph.p_vaddr + ph.p_memsz,
    )


@dataclass
class ElfMemory:
    """Layout of an ELF memory image and the notes found in it.

    Regions such as ``vmcoreinfo`` are ``(file offset, size)`` pairs;
    ``(0, 0)`` means the region is absent.
    """

    file: BinaryIO | None
    name: str
    elf_class: ElfClass
    segments: list[PtLoadSegment] = field(default_factory=list)
    nr_cpus: int = 0
    pt_note: tuple[int, int] = (0, 0)
    vmcoreinfo: tuple[int, int] = (0, 0)
    vmcoreinfo_xen: tuple[int, int] = (0, 0)
    xen_crash_info: tuple[int, int] = (0, 0)
    eraseinfo: tuple[int, int] = (0, 0)
    is_xen: bool = False
    _max_file_offset: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._max_file_offset = self._compute_max_file_offset()

    @classmethod
    def open(cls, f: BinaryIO, name: str = "<memory>") -> "ElfMemory":
        """Read the program headers and notes of an ELF memory image."""
        elf_class, phnum, num_load = detect_elf_format(f)
        if not num_load:
            raise ElfError("Can't get the number of PT_LOAD.")
        memory = cls(f, name, elf_class)
        for ph in iter_program_headers(f, elf_class, phnum):
            if ph.p_type == PT_NOTE:
                memory.pt_note = (ph.p_offset, ph.p_filesz)
            if ph.is_load:
                memory.segments.append(_segment_from_phdr(ph))
        memory._max_file_offset = memory._compute_max_file_offset()
        if not memory.has_pt_note(False):
            raise ElfError("Can't find PT_NOTE Phdr.")
        memory._read_notes()
        return memory

    @property
    def is_elf64(self) -> bool:
        return self.elf_class is ElfClass.ELF64

    def _read(self, offset: int, size: int) -> bytes:
        if self.file is None:
            raise ElfError(f"No file to read the dump memory({self.name}) from.")
        try:
            self.file.seek(offset)
        except (OSError, ValueError) as exc:
            raise ElfError(f"Can't seek the dump memory({self.name}). {exc}") from exc
        data = self.file.read(size)
        if len(data) != size:
            raise ElfError(f"Can't read the dump memory({self.name}).")
        return data

    def _read_notes(self) -> None:
        start, size = self.pt_note
        self.nr_cpus = 0
        offset = start
        while offset < start + size:
            note = NoteHeader.parse(self._read(offset, MAX_SIZE_NHDR), self.elf_class)
            if note.namesz and note.namesz <= _NOTE_NAME_BUF:
                buf = self._read(offset + MAX_SIZE_NHDR, _NOTE_NAME_BUF)
                self._record_note(note, buf, offset + note.desc_offset())
            offset += note.next_offset()

    def _record_note(self, note: NoteHeader, buf: bytes, desc_offset: int) -> None:
        name = buf.split(b"\0", 1)[0]
        region = (desc_offset, note.descsz)
        if name == KEXEC_CORE_NOTE_NAME:
            if note.n_type == NT_PRSTATUS:
                self.nr_cpus += 1
        elif name == VMCOREINFO_NOTE_NAME:
            if note.n_type == 0:
                self.vmcoreinfo = region
        elif name == VMCOREINFO_XEN_NOTE_NAME:
            if note.n_type == 0:
                self.vmcoreinfo_xen = region
        elif name == XEN_NOTE_NAME:
            if note.n_type == XEN_ELFNOTE_CRASH_INFO:
                self.is_xen = True
                self.xen_crash_info = region
        elif name == ERASEINFO_NOTE_NAME:
            if note.n_type == 0:
                self.eraseinfo = region

    def _compute_max_file_offset(self) -> int:
        return max(
            (s.file_offset + s.phys_end - s.phys_start for s in self.segments),
            default=0,
        )

    def paddr_to_offset(self, paddr: int) -> int:
        """File offset of a physical address, or 0 if it has no file data."""
        for seg in self.segments:
            if seg.phys_start <= paddr < seg.phys_start + seg.file_size:
                return paddr - seg.phys_start + seg.file_offset
        return 0

    def paddr_to_offset2(self, paddr: int, hint: int) -> int:
        """Like paddr_to_offset, but only in a segment that contains ``hint``."""
        for seg in self.segments:
            if (
                seg.phys_start <= paddr < seg.phys_start + seg.file_size
                and seg.file_offset <= hint < seg.file_offset + seg.file_size
            ):
                return paddr - seg.phys_start + seg.file_offset
        return 0

    def offset_to_pt_load_end(self, offset: int) -> int:
        """End file offset of the segment holding ``offset``, or 0."""
        for seg in self.segments:
            end = seg.file_offset + (seg.phys_end - seg.phys_start)
            if seg.file_offset <= offset < end:
                return end
        return 0

    def page_is_fractional(self, page_offset: int, page_size: int) -> bool:
        """Whether the page at ``page_offset`` is unaligned or cut short."""
        if page_offset % page_size:
            return True
        return self.offset_to_pt_load_end(page_offset) - page_offset < page_size

    def vaddr_to_paddr(self, vaddr: int) -> int:
        """Physical address of a virtual address, or NOT_PADDR."""
        for seg in self.segments:
            if seg.virt_start <= vaddr < seg.virt_end:
                return vaddr - seg.virt_start + seg.phys_start
        return NOT_PADDR

    def max_paddr(self) -> int:
        """Highest physical end address of all segments."""
        return max(
            (s.phys_end for s in self.segments if s.phys_start != NOT_PADDR),
            default=0,
        )

    def closest_pt_load(self, paddr: int, distance: int) -> int | None:
        """Index of the segment holding ``paddr`` or nearest above it.

        Only segments starting less than ``distance`` away are considered;
        returns None when there is none.
        """
        best_dist = distance
        best_index: int | None = None
        for index, seg in enumerate(self.segments):
            if paddr >= seg.phys_end:
                continue
            if paddr >= seg.phys_start:
                return index
            if best_dist > seg.phys_start - paddr:
                best_dist = seg.phys_start - paddr
                best_index = index
        return best_index

    def max_file_offset(self) -> int:
        """Largest end offset in the file covered by a segment."""
        return self._max_file_offset

    def has_pt_note(self, sadump: bool) -> bool:
        """Whether a PT_NOTE region is known."""
        offset, size = self.pt_note
        if sadump:
            return bool(size)
        return bool(offset and size)

    def exclude_segment(self, start: int, end: int, paddr_to_vaddr: AddressMap) -> None:
        """Cut the physical range [start, end) out of the segments."""
        kvstart = paddr_to_vaddr(start)
        kvend = paddr_to_vaddr(end)
        split: tuple[int, PtLoadSegment] | None = None
        for index, seg in enumerate(self.segments):
            vstart, vend = seg.virt_start, seg.virt_end
            if not (kvstart < vend and kvend > vstart):
                continue
            if kvstart != vstart and kvend != vend:
                tail = PtLoadSegment(
                    file_offset=seg.file_offset + kvend - seg.virt_start,
                    file_size=seg.phys_end - end,
                    phys_start=end,
                    phys_end=seg.phys_end,
                    virt_start=kvend,
                    virt_end=vend,
                )
                seg.virt_end = kvstart
                seg.phys_end = start
                seg.file_size -= tail.file_size
                split = (index + 1, tail)
            elif kvstart != vstart:
                seg.phys_end = start
                seg.virt_end = kvstart
            else:
                seg.phys_start = end
                seg.virt_start = kvend
            seg.file_size -= end - start
        if split is not None:
            self.segments.insert(*split)

    def keep_kcore_loads(
        self,
        is_phys_addr: Callable[[int], bool],
        crash_reserved: Iterable[tuple[int, int]],
        paddr_to_vaddr: AddressMap,
    ) -> None:
        """Keep the segments of physical memory, minus crash-reserved ranges.

        ``crash_reserved`` holds (start, end) pairs with an inclusive end.
        """
        kept = [
            seg
            for seg in self.segments
            if seg.phys_start != NOT_PADDR and is_phys_addr(seg.virt_start)
        ]
        if not kept:
            raise ElfError("Can't get the correct number of PT_LOAD.")
        self.segments = kept
        for start, end in crash_reserved:
            self.exclude_segment(start, end + 1, paddr_to_vaddr)
        self._max_file_offset = self._compute_max_file_offset()

    def set_kcore_vmcoreinfo(self, vmcoreinfo_addr: int, paddr_to_vaddr: AddressMap) -> None:
        """Locate the VMCOREINFO note at a physical address in the image."""
        kvaddr = paddr_to_vaddr(vmcoreinfo_addr)
        for seg in self.segments:
            if seg.virt_start <= kvaddr < seg.virt_end:
                offset = kvaddr - seg.virt_start + seg.file_offset
                break
        else:
            raise ElfError(f"Can't get the offset of VMCOREINFO({self.name}).")
        note = NoteHeader.parse(self._read(offset, MAX_SIZE_NHDR), self.elf_class)
        self.vmcoreinfo = (offset + note.desc_offset(), note.descsz)