"""Resolving filter configuration entries against debug information and memory.

A resolved entry knows the address and size of the kernel data it names.
The resolver turns parsed filter commands into ranges in a
:class:`~vmdumpkit.filtering.FilterTable`.
"""

from __future__ import annotations

import enum
import sys
from typing import Callable, Optional, Protocol

from vmdumpkit.filterconfig import (
    ConfigEntry,
    ConfigError,
    EntryFlag,
    FilterCommand,
    create_config_entry,
)
from vmdumpkit.filtering import FilterInfo, FilterTable
from vmdumpkit.modsyms import VMLINUX, ModuleSymbolTable

STRING_LIMIT = 1024

_NO_MODULE_LOOKUP = frozenset({VMLINUX, "xen-syms"})

ReadMemory = Callable[[int, int], bytes]
AddressMap = Callable[[int], int]


class TypeFlag(enum.IntFlag):
    """Kind of a symbol's or member's type."""

    NONE = 0
    BASE = 0x01
    ARRAY = 0x02
    PTR = 0x04
    STRUCT = 0x08
    LIST_HEAD = 0x10


class DebugInfo(Protocol):
    """What the resolver needs to know about the kernel's types and symbols.

    Type lookups return ``(type_name, size, type_flag)`` or None when the
    symbol or member is unknown.
    """

    module_name: str

    def get_symbol_addr(self, name: str) -> int: ...

    def get_kaslr_offset(self, addr: int) -> int: ...

    def get_symbol_type(self, name: str) -> Optional[tuple[str, int, int]]: ...

    def get_symbol_array_length(self, name: str) -> int: ...

    def get_member_offset(self, struct_name: Optional[str], member: str) -> Optional[int]: ...

    def get_member_type(
        self, struct_name: Optional[str], member: str
    ) -> Optional[tuple[str, int, int]]: ...

    def get_member_array_length(self, struct_name: Optional[str], member: str) -> int: ...

    def get_structure_size(self, name: str) -> Optional[int]: ...


def _error(line: int, text: str) -> ConfigError:
    return ConfigError(f"Config error at {line}: {text}", line)


class ConfigResolver:
    """Resolves filter commands and records the ranges they name.

    Problems that only spoil a single erase command are collected in
    ``warnings``; problems with a whole loop raise :class:`ConfigError`.
    """

    def __init__(
        self,
        debug_info: DebugInfo,
        read_memory: ReadMemory,
        vaddr_to_paddr: AddressMap,
        table: FilterTable | None = None,
        pointer_size: int = 8,
        modules: ModuleSymbolTable | None = None,
    ) -> None:
        self.debug_info = debug_info
        self.read_memory = read_memory
        self.vaddr_to_paddr = vaddr_to_paddr
        self.table = table if table is not None else FilterTable()
        self.pointer_size = pointer_size
        self.modules = modules
        self.warnings: list[str] = []

    # Memory access

    def _read(self, addr: int, size: int) -> bytes | None:
        try:
            data = self.read_memory(addr, size)
        except (OSError, ValueError):
            return None
        return bytes(data) if len(data) == size else None

    def _read_pointer(self, addr: int) -> int:
        data = self._read(addr, self.pointer_size)
        if data is None:
            self.warnings.append("Can't read pointer value")
            return 0
        return int.from_bytes(data, sys.byteorder)

    def _strlen(self, addr: int) -> int:
        data = self._read(addr, STRING_LIMIT)
        if data is None:
            return 0
        end = data.find(b"\0")
        return STRING_LIMIT if end < 0 else end

    def _symbol_in_module(self, name: str) -> int | None:
        module_name = self.debug_info.module_name
        if not self.modules or module_name in _NO_MODULE_LOOKUP:
            return None
        module = self.modules.get_loaded(module_name)
        if module is None:
            return None
        return module.find_symbol(name)

    # Resolution

    def _resolve_symbol(self, entry: ConfigEntry) -> tuple[str, int, int] | None:
        if not entry.name:
            raise _error(entry.line, "symbol entry without a name.")
        addr = self._symbol_in_module(entry.name)
        if not addr:
            addr = self.debug_info.get_symbol_addr(entry.name)
        if not addr:
            raise _error(entry.line, f"Can't find symbol '{entry.name}'.")
        entry.sym_addr = addr + self.debug_info.get_kaslr_offset(addr)
        type_info = self.debug_info.get_symbol_type(entry.name)
        if type_info is not None and type_info[2] & TypeFlag.ARRAY:
            entry.array_length = max(
                self.debug_info.get_symbol_array_length(entry.name), 0
            )
        return type_info

    def _resolve_member(
        self, entry: ConfigEntry, base_vaddr: int, base_struct_name: str | None
    ) -> tuple[str, int, int] | None:
        name = entry.name or ""
        type_info = self.debug_info.get_member_type(base_struct_name, name)
        if type_info is None:
            raise _error(
                entry.line,
                f"struct '{base_struct_name}' has no member with name '{name}'.",
            )
        entry.offset = self.debug_info.get_member_offset(base_struct_name, name) or 0
        entry.sym_addr = base_vaddr + entry.offset
        if type_info[2] & TypeFlag.ARRAY:
            entry.array_length = max(
                self.debug_info.get_member_array_length(base_struct_name, name), 0
            )
        return type_info

    def resolve_entry(
        self, entry: ConfigEntry, base_vaddr: int, base_struct_name: str | None
    ) -> None:
        """Fill in address, type and size of one node of an expression."""
        if entry.flag & EntryFlag.VAR:
            ref = entry.refer_to
            if ref is None:
                raise _error(entry.line, "iteration variable is not bound.")
            entry.vaddr = ref.vaddr
            entry.sym_addr = ref.sym_addr
            entry.size = ref.size
            entry.type_flag = ref.type_flag
            if entry.type_name is None:
                entry.type_name = ref.type_name
            if entry.next is not None:
                entry.next.flag &= ~EntryFlag.RESOLVED
            return

        if entry.flag & EntryFlag.SYMBOL:
            type_info = self._resolve_symbol(entry)
            if type_info is None:
                raise _error(entry.line, f"Can't get the type of symbol '{entry.name}'.")
        else:
            type_info = self._resolve_member(entry, base_vaddr, base_struct_name)
        entry.type_name, entry.size, flags = type_info
        flags = TypeFlag(flags)

        if entry.type_name == "list_head":
            flags |= TypeFlag.LIST_HEAD
            if entry.flag & EntryFlag.LIST and entry.next is not None:
                if entry.next.next is not None:
                    raise _error(
                        entry.line,
                        "Only one traversal entry is allowed for list_head type LIST entry",
                    )
                entry.next.flag |= EntryFlag.TRAVERSAL
        entry.type_flag = flags
        entry.vaddr = entry.sym_addr
        if entry.size < 0:
            entry.size = 0

        if entry.flag & EntryFlag.LIST and entry.next is None:
            if (flags & (TypeFlag.BASE | TypeFlag.ARRAY)) == TypeFlag.BASE and (
                entry.type_name != "void"
            ):
                raise _error(entry.line, f"'{entry.name}' can't be iterated over.")
            if flags & TypeFlag.LIST_HEAD or (
                flags & (TypeFlag.STRUCT | TypeFlag.ARRAY)
            ) == TypeFlag.STRUCT:
                if not entry.flag & EntryFlag.TRAVERSAL:
                    tail = create_config_entry("next", EntryFlag.LIST, entry.line)
                    assert tail is not None
                    tail.flag = (tail.flag | EntryFlag.TRAVERSAL) & ~EntryFlag.SYMBOL
                    entry.next = tail
            if entry.flag & EntryFlag.TRAVERSAL and base_struct_name != entry.type_name:
                raise _error(
                    entry.line,
                    f"traversal member '{entry.name}' is not of type '{base_struct_name}'.",
                )

        if (flags & (TypeFlag.ARRAY | TypeFlag.PTR)) == TypeFlag.PTR:
            entry.vaddr = self._read_pointer(entry.sym_addr)
            if entry.type_name == "void":
                entry.size = 0
        if flags & TypeFlag.BASE and flags & TypeFlag.PTR and not flags & TypeFlag.ARRAY:
            if entry.type_name == "char":
                entry.size = self._strlen(entry.vaddr)

        if entry.next is None and entry.flag & EntryFlag.SIZE:
            if (flags & (TypeFlag.ARRAY | TypeFlag.BASE)) != TypeFlag.BASE or (
                entry.size > self.pointer_size
            ):
                raise _error(
                    entry.line, f"size symbol/member '{entry.name}' is not of base type."
                )
            data = self._read(entry.vaddr, entry.size)
            if data is None:
                raise _error(entry.line, "Can't read symbol/member data value")
            if entry.size in (1, 2, 4, 8):
                entry.size = int.from_bytes(data, sys.byteorder)

        entry.flag |= EntryFlag.RESOLVED
        if entry.next is not None:
            entry.next.flag &= ~EntryFlag.RESOLVED

    def _ensure_resolved(
        self, entry: ConfigEntry, base_vaddr: int, base_struct_name: str | None
    ) -> None:
        if not entry.flag & EntryFlag.RESOLVED:
            self.resolve_entry(entry, base_vaddr, base_struct_name)

    def symbol_addr(
        self, entry: ConfigEntry, base_vaddr: int, base_struct_name: str | None
    ) -> int:
        """Address of the data an expression names, or 0 when there is none."""
        self._ensure_resolved(entry, base_vaddr, base_struct_name)
        if entry.next is not None and entry.vaddr:
            entry.next.nullify = entry.nullify
            return self.symbol_addr(entry.next, entry.vaddr, entry.type_name)
        if entry.next is None and entry.nullify:
            return entry.sym_addr if entry.type_flag & TypeFlag.PTR else 0
        return entry.vaddr

    def symbol_size(
        self, entry: ConfigEntry, base_vaddr: int, base_struct_name: str | None
    ) -> int:
        """Size in bytes of the data an expression names."""
        self._ensure_resolved(entry, base_vaddr, base_struct_name)
        if entry.next is not None and entry.vaddr:
            return self.symbol_size(entry.next, entry.vaddr, entry.type_name)
        if entry.type_flag & TypeFlag.ARRAY:
            if entry.type_flag & TypeFlag.PTR:
                return entry.array_length * self.pointer_size
            return entry.array_length * entry.size
        return entry.size

    # Iteration

    def _next_array_element(self, entry: ConfigEntry) -> ConfigEntry | None:
        if entry.index == entry.array_length:
            return None
        if entry.type_flag & TypeFlag.PTR:
            vaddr = 0
            while entry.index < entry.array_length:
                vaddr = self._read_pointer(entry.vaddr + entry.index * self.pointer_size)
                if vaddr:
                    break
                entry.index += 1
            if entry.index == entry.array_length:
                return None
            size = self._strlen(vaddr) if entry.type_name == "char" else entry.size
            out = ConfigEntry(
                sym_addr=entry.vaddr + entry.index * self.pointer_size,
                vaddr=vaddr,
                size=size,
            )
        else:
            addr = entry.vaddr + entry.index * entry.size
            out = ConfigEntry(sym_addr=addr, vaddr=addr, size=entry.size)
        entry.index += 1
        return out

    def next_list_entry(
        self, entry: ConfigEntry, base_vaddr: int, base_struct_name: str | None
    ) -> ConfigEntry | None:
        """The next element of a LIST expression, or None at its end.

        The element is returned as an entry holding ``vaddr``, ``sym_addr``
        and ``size``.
        """
        if not entry.flag & EntryFlag.LIST:
            return None
        self._ensure_resolved(entry, base_vaddr, base_struct_name)

        nxt = entry.next
        if nxt is None:
            if entry.type_flag & TypeFlag.ARRAY:
                return self._next_array_element(entry)
            if entry.vaddr == entry.cmp_addr:
                return None
            entry.flag &= ~EntryFlag.RESOLVED
            return ConfigEntry(vaddr=entry.vaddr)

        if nxt.next is None and not nxt.type_flag & TypeFlag.ARRAY:
            if not entry.type_flag & TypeFlag.LIST_HEAD:
                if not entry.vaddr or entry.vaddr == nxt.cmp_addr:
                    return None
                if not nxt.cmp_addr:
                    # guards against circular lists
                    nxt.cmp_addr = entry.vaddr
                out = ConfigEntry(
                    vaddr=entry.vaddr, sym_addr=entry.sym_addr, size=entry.size
                )
                entry.sym_addr = nxt.sym_addr
                entry.vaddr = nxt.vaddr
                if entry.vaddr:
                    self.resolve_entry(nxt, entry.vaddr, entry.type_name)
                return out
            entry.sym_addr = nxt.sym_addr
            entry.vaddr = nxt.vaddr

        if entry.vaddr:
            return self.next_list_entry(nxt, entry.vaddr, entry.type_name)
        return None

    def resolve_list_entry(
        self, entry: ConfigEntry, base_vaddr: int, base_struct_name: str | None
    ) -> tuple[str | None, int]:
        """Resolve a LIST expression; return the type name and flags of its elements."""
        self._ensure_resolved(entry, base_vaddr, base_struct_name)
        if (
            entry.next is not None
            and entry.next.flag & EntryFlag.TRAVERSAL
            and entry.type_flag & TypeFlag.ARRAY
        ):
            self.warnings.append(
                f"Warning: line {entry.next.line}: 'via' keyword not required for ArrayVar."
            )
            entry.next = None
        if (
            entry.type_flag & TypeFlag.LIST_HEAD
            and entry.next is not None
            and entry.next.flag & EntryFlag.TRAVERSAL
        ):
            entry.next.cmp_addr = entry.sym_addr
        if entry.next is not None and entry.vaddr:
            return self.resolve_list_entry(entry.next, entry.vaddr, entry.type_name)
        entry.index = 0
        return entry.type_name, entry.type_flag

    def initialize_iteration_entry(
        self, entry: ConfigEntry, type_name: str | None, type_flag: int
    ) -> None:
        """Prepare the loop variable for elements of the given type."""
        if not entry.flag & EntryFlag.ITERATION:
            raise _error(entry.line, "not an iteration variable.")
        if type_flag & TypeFlag.LIST_HEAD:
            if not entry.type_name:
                raise _error(
                    entry.line,
                    "Use 'within' keyword to specify StructName:ListHeadMember.",
                )
            if entry.next is None:
                member = create_config_entry("list", EntryFlag.ITERATION, entry.line)
                assert member is not None
                member.flag &= ~EntryFlag.SYMBOL
                entry.next = member
            size = self.debug_info.get_structure_size(entry.type_name)
            if size is None:
                raise _error(entry.line, f"Can't find structure: {entry.type_name}.")
            if size < 0:
                raise _error(entry.line, f"Can't get size for type: {entry.type_name}.")
            entry.size = size
            self.resolve_entry(entry.next, 0, entry.type_name)
            if entry.next.type_name != "list_head":
                raise _error(
                    entry.next.line,
                    f"Member '{entry.next.name}' is not of 'list_head' type.",
                )
            entry.type_flag = TypeFlag.STRUCT
        else:
            if entry.type_name:
                self.warnings.append(
                    f"Warning: line {entry.line}: 'within' keyword not required "
                    "for ArrayVar/StructVar."
                )
                entry.next = None
            entry.type_name = type_name
            entry.type_flag = TypeFlag(type_flag) & ~TypeFlag.ARRAY

    def _advance(self, list_entry: ConfigEntry, iter_entry: ConfigEntry) -> bool:
        try:
            element = self.next_list_entry(list_entry, 0, None)
        except ConfigError as exc:
            self.warnings.append(str(exc))
            return False
        if element is None:
            return False
        if iter_entry.next is not None:
            iter_entry.next.vaddr = element.vaddr
            iter_entry.vaddr = element.vaddr - iter_entry.next.offset
        else:
            iter_entry.vaddr = element.vaddr
            iter_entry.sym_addr = element.sym_addr
            iter_entry.size = element.size
        return True

    # Recording

    def update_filter_info(
        self, filter_symbol: ConfigEntry, size_symbol: ConfigEntry | None
    ) -> bool:
        """Record the range one erase command names; False if it names none."""
        try:
            sym_addr = self.symbol_addr(filter_symbol, 0, None)
            if not sym_addr:
                return False
            if filter_symbol.nullify:
                size = self.pointer_size
            elif size_symbol is not None:
                size = self.symbol_size(size_symbol, 0, None)
            else:
                size = self.symbol_size(filter_symbol, 0, None)
        except ConfigError as exc:
            self.warnings.append(str(exc))
            return False
        if size <= 0:
            return False
        info = FilterInfo(
            vaddr=sym_addr,
            paddr=self.vaddr_to_paddr(sym_addr),
            size=size,
            nullify=filter_symbol.nullify,
        )
        if self.table.insert(info):
            idx = self.table.add_erase_node(filter_symbol)
            info.erase_info_idx = idx
            info.size_idx = self.table.erase_info[idx].num_sizes - 1 if idx else 0
        return True

    def process(self, command: FilterCommand) -> None:
        """Record the ranges of one erase command or of every pass of a loop."""
        if command.list_entry is not None:
            iter_entry = command.iter_entry
            if iter_entry is None:
                raise ConfigError("loop without an iteration variable")
            type_name, type_flag = self.resolve_list_entry(command.list_entry, 0, None)
            self.initialize_iteration_entry(iter_entry, type_name, type_flag)
            while self._advance(command.list_entry, iter_entry):
                for filter_symbol, size_symbol in zip(
                    command.filter_symbols, command.size_symbols
                ):
                    self.update_filter_info(filter_symbol, size_symbol)
        elif command.filter_symbols:
            self.update_filter_info(command.filter_symbols[0], command.size_symbols[0])