"""Symbol tables of the kernel modules loaded in a memory image."""

from __future__ import annotations

import struct
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Protocol, TypeVar

MODULE_NAME_LEN = 56
VMLINUX = "vmlinux"

ReadMemory = Callable[[int, int], bytes]
T = TypeVar("T")

_SYM64 = struct.Struct("=IBBHQQ")
_SYM32 = struct.Struct("=IIIBBH")


class ModuleSymbolError(ValueError):
    """Raised when module symbol data in the image cannot be used."""


class _DebugInfo(Protocol):
    module_name: str

    def set_module(self, name: str) -> bool: ...

    def set_vmlinux(self) -> None: ...


@dataclass(frozen=True)
class ModuleLayout:
    """Size of ``struct module`` and the offsets of the members that are read.

    ``list_offset`` is where the module's ``list_head`` sits in the
    structure and ``list_next_offset`` where ``next`` sits in a list head.
    """

    size: int
    list_offset: int
    name_offset: int
    module_init_offset: int
    init_size_offset: int
    module_core_offset: int
    core_size_offset: int
    num_symtab_offset: int
    symtab_offset: int
    strtab_offset: int
    name_len: int = MODULE_NAME_LEN
    list_next_offset: int = 0


@dataclass
class ModuleInfo:
    """A loaded module and its symbols as (name, value) pairs.

    The pairs are the symbol table entries from index 1 on; entries with
    an empty name have a name of None.
    """

    name: str
    symbols: list[tuple[str | None, int]] = field(default_factory=list)

    @property
    def num_syms(self) -> int:
        return len(self.symbols) + 1 if self.symbols else 0

    def find_symbol(self, name: str) -> int | None:
        """Value of the first symbol called ``name``, or None."""
        for sym_name, value in self.symbols:
            if sym_name is not None and sym_name == name:
                return value
        return None


class ModuleSymbolTable:
    """The loaded modules, remembering the one that matched last."""

    def __init__(self, modules) -> None:
        self.modules: list[ModuleInfo] = list(modules)
        self.current_mod = 0
        self.warnings: list[str] = []

    def __len__(self) -> int:
        return len(self.modules)

    def __iter__(self) -> Iterator[ModuleInfo]:
        return iter(self.modules)

    def get_loaded(self, name: str) -> ModuleInfo | None:
        """The module called ``name``, or None if it is not loaded."""
        if not self.modules:
            return None
        current = self.modules[self.current_mod]
        if current.name == name:
            return current
        for index, module in enumerate(self.modules):
            if module.name == name:
                self.current_mod = index
                return module
        return None

    def is_loaded(self, name: str) -> bool:
        """Whether ``name`` is vmlinux or a loaded module."""
        return name == VMLINUX or self.get_loaded(name) is not None

    def lookup_all(
        self,
        debug_info: _DebugInfo,
        query: Callable[[ModuleInfo | None], T],
        found: Callable[[T], bool],
    ) -> T | None:
        """Run ``query`` against vmlinux and the modules until ``found`` accepts.

        ``query`` gets the module whose debug information is selected, or
        None for vmlinux. The search starts with vmlinux if it is selected,
        then the module that matched last, then the other modules. When no
        module matches, vmlinux is selected again and, if it was not yet
        searched, its result is returned whatever it is. Otherwise None.
        """
        vmlinux_searched = False
        if debug_info.module_name == VMLINUX:
            result = query(None)
            if found(result):
                return result
            vmlinux_searched = True

        if self.modules:
            current = self.modules[self.current_mod]
            if debug_info.module_name != current.name:
                if not debug_info.set_module(current.name):
                    self.warnings.append(f"Cannot set to current module {current.name}")
                    return None
            result = query(current)
            if found(result):
                return result

            for index, module in enumerate(self.modules):
                if index == self.current_mod:
                    continue
                if not debug_info.set_module(module.name):
                    self.warnings.append(f"Skipping Module section {module.name}")
                    continue
                result = query(module)
                if not found(result):
                    continue
                self.current_mod = index
                return result

        debug_info.set_vmlinux()
        if not vmlinux_searched:
            return query(None)
        return None


def _read(read_memory: ReadMemory, addr: int, size: int, what: str) -> bytes:
    data = read_memory(addr, size)
    if len(data) != size:
        raise ModuleSymbolError(f"Can't get {what} at 0x{addr:x}.")
    return bytes(data)


def _word(data: bytes, offset: int, size: int) -> int:
    if offset < 0 or offset + size > len(data):
        raise ModuleSymbolError(f"field at offset 0x{offset:x} lies outside the structure")
    return int.from_bytes(data[offset:offset + size], sys.byteorder)


def iter_list(
    read_memory: ReadMemory, head: int, next_offset: int, pointer_size: int
) -> Iterator[int]:
    """Yield the addresses of the nodes of the circular list at ``head``."""
    def next_of(node: int) -> int:
        raw = _read(read_memory, node + next_offset, pointer_size, "next list_head")
        return int.from_bytes(raw, sys.byteorder)

    cur = next_of(head)
    while cur != head:
        yield cur
        cur = next_of(cur)


def _in_range(addr: int, base: int, size: int) -> bool:
    return base <= addr < base + size


def load_module(
    read_memory: ReadMemory, layout: ModuleLayout, addr_module: int, pointer_size: int
) -> ModuleInfo:
    """Read the name and symbol table of the ``struct module`` at ``addr_module``."""
    raw = _read(read_memory, addr_module, layout.size, "module info")
    name_field = raw[layout.name_offset:layout.name_offset + layout.name_len - 1]
    name = name_field.split(b"\0", 1)[0].decode("utf-8", errors="replace")

    mod_init = _word(raw, layout.module_init_offset, pointer_size)
    init_size = _word(raw, layout.init_size_offset, 4)
    mod_base = _word(raw, layout.module_core_offset, pointer_size)
    mod_size = _word(raw, layout.core_size_offset, 4)

    init_mem = _read(read_memory, mod_init, init_size, "module init") if init_size else b""
    core_mem = _read(read_memory, mod_base, mod_size, "module core") if mod_size else b""

    num_symtab = _word(raw, layout.num_symtab_offset, 4)
    if not num_symtab:
        raise ModuleSymbolError(f"{name}: Symbol info not available")

    symtab = _word(raw, layout.symtab_offset, pointer_size)
    strtab = _word(raw, layout.strtab_offset, pointer_size)

    def locate(addr: int, what: str) -> tuple[bytes, int]:
        if _in_range(addr, mod_base, mod_size):
            return core_mem, addr - mod_base
        if _in_range(addr, mod_init, init_size):
            return init_mem, addr - mod_init
        raise ModuleSymbolError(f"{name}: module {what} is outside of module address space")

    symtab_mem, symtab_start = locate(symtab, "symtab")
    strtab_mem, strtab_start = locate(strtab, "strtab")

    is64 = pointer_size * 8 == 64
    sym = _SYM64 if is64 else _SYM32
    symbols: list[tuple[str | None, int]] = []
    for nsym in range(1, num_symtab):
        pos = symtab_start + nsym * sym.size
        if pos + sym.size > len(symtab_mem):
            raise ModuleSymbolError(f"{name}: symbol {nsym} lies outside of the symtab")
        fields = sym.unpack_from(symtab_mem, pos)
        st_name, value = fields[0], (fields[4] if is64 else fields[1])
        start = strtab_start + st_name
        sym_name = strtab_mem[start:].split(b"\0", 1)[0] if start < len(strtab_mem) else b""
        symbols.append((sym_name.decode("utf-8", errors="replace") or None, value))
    return ModuleInfo(name=name, symbols=symbols)


def load_module_symbols(
    read_memory: ReadMemory, layout: ModuleLayout, head: int, pointer_size: int
) -> ModuleSymbolTable:
    """Load every module on the kernel's module list at ``head``."""
    nodes = list(iter_list(read_memory, head, layout.list_next_offset, pointer_size))
    if not nodes:
        raise ModuleSymbolError("Can't get module count")
    return ModuleSymbolTable(
        load_module(read_memory, layout, node - layout.list_offset, pointer_size)
        for node in nodes
    )