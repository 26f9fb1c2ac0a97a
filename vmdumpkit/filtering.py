"""Physical address ranges to erase from dump data, and a record of what was erased."""

from __future__ import annotations

import bisect
import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from vmdumpkit.filterconfig import ConfigEntry

DEFAULT_ERASE_CHAR = ord("X")


@dataclass
class FilterInfo:
    """A physical address range to overwrite in the dump.

    ``erase_info_idx`` links the range to the erase command that produced
    it (0 means none) and ``size_idx`` selects the iteration of that
    command whose erased size the range counts towards.
    """

    vaddr: int
    paddr: int
    size: int
    nullify: bool = False
    erase_ch: int = DEFAULT_ERASE_CHAR
    erase_info_idx: int = 0
    size_idx: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.erase_ch, str):
            self.erase_ch = ord(self.erase_ch)
        self.erase_ch = int(self.erase_ch) & 0xFF


@dataclass
class EraseInfo:
    """What one erase command removed: one size per loop iteration.

    A size of -1 marks data that was nullified.
    """

    symbol_expr: str
    num_sizes: int = 1
    sizes: list[int] | None = None
    erased: bool = False


def _paddr(info: FilterInfo) -> int:
    return info.paddr


class FilterTable:
    """Filter ranges kept sorted by physical address.

    ``erase_info`` maps erase node indexes, starting at 1, to their
    :class:`EraseInfo`. Extraction is guarded by a lock so that several
    threads may filter buffers at once.
    """

    def __init__(self) -> None:
        self._infos: list[FilterInfo] = []
        self.erase_info: dict[int, EraseInfo] = {}
        self._next_erase_idx = 1
        self._lock = threading.Lock()

    def __iter__(self) -> Iterator[FilterInfo]:
        return iter(list(self._infos))

    def __len__(self) -> int:
        return len(self._infos)

    def insert(self, info: FilterInfo) -> bool:
        """Insert a range in address order.

        If a range already starts at the same address, it keeps the larger
        of the two sizes, ``info`` is dropped and False is returned.
        """
        pos = bisect.bisect_left(self._infos, info.paddr, key=_paddr)
        if pos < len(self._infos) and self._infos[pos].paddr == info.paddr:
            existing = self._infos[pos]
            if info.size > existing.size:
                existing.size = info.size
            return False
        self._infos.insert(pos, info)
        return True

    def add_raw(self, vaddr: int, paddr: int, ch: int | str, length: int) -> bool:
        """Add a range filled with ``ch`` that belongs to no erase command."""
        return self.insert(FilterInfo(vaddr=vaddr, paddr=paddr, size=length, erase_ch=ch))

    def add_erase_node(self, entry: "ConfigEntry") -> int:
        """Return the erase node index of an erase command, creating it once.

        A further call for the same command counts one more iteration. The
        command's symbol expression moves into the node.
        """
        idx = entry.erase_info_idx
        if idx:
            self.erase_info[idx].num_sizes += 1
            return idx
        idx = self._next_erase_idx
        self._next_erase_idx += 1
        self.erase_info[idx] = EraseInfo(symbol_expr=entry.symbol_expr or "")
        entry.symbol_expr = None
        entry.erase_info_idx = idx
        return idx

    def _update_erase_info(self, info: FilterInfo) -> None:
        if not info.erase_info_idx:
            return
        node = self.erase_info[info.erase_info_idx]
        if node.sizes is None:
            node.sizes = [0] * node.num_sizes
        if len(node.sizes) <= info.size_idx:
            node.sizes.extend([0] * (info.size_idx + 1 - len(node.sizes)))
        node.erased = True
        if info.nullify:
            node.sizes[info.size_idx] = -1
        else:
            node.sizes[info.size_idx] += info.size

    def extract(self, start_paddr: int, end_paddr: int) -> FilterInfo | None:
        """Remove and return the first range starting in [start, end).

        A range reaching past ``end_paddr`` is cut there; the rest stays in
        the table. Returns None when no range starts in the window.
        """
        with self._lock:
            for pos, info in enumerate(self._infos):
                if start_paddr <= info.paddr < end_paddr:
                    break
            else:
                return None
            room = end_paddr - info.paddr
            if info.size > room:
                tail = replace(info, paddr=info.paddr + room, size=info.size - room)
                info.size = room
                self._infos.insert(pos + 1, tail)
            del self._infos[pos]
            self._update_erase_info(info)
            return info

    def filter_buffer(self, buf: bytearray, paddr: int) -> None:
        """Overwrite the parts of ``buf``, which holds memory at ``paddr``, due for erasing."""
        end = paddr + len(buf)
        while (info := self.extract(paddr, end)) is not None:
            start = info.paddr - paddr
            fill = 0 if info.nullify else info.erase_ch
            buf[start:start + info.size] = bytes((fill,)) * info.size

    def size_eraseinfo(self) -> int:
        """Size of the eraseinfo text describing the ranges still in the table."""
        total = 0
        for info in self._infos:
            if not info.erase_info_idx:
                continue
            node = self.erase_info[info.erase_info_idx]
            size_str = "nullify\n" if info.nullify else f"size {info.size}\n"
            total += (
                len("erase ") + len(node.symbol_expr.encode()) + 1 + len(size_str)
            )
        return total

    def clear(self) -> None:
        """Drop every range and erase node."""
        with self._lock:
            self._infos.clear()
            self.erase_info.clear()
            self._next_erase_idx = 1