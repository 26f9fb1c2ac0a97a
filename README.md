# vmdumpkit

A library for reading Linux kernel crash dump images (`/proc/vmcore`,
`/proc/kcore` and similar ELF cores) and the data structures found in them,
and for erasing chosen kernel data from dump memory.

## Modules

- **`vmdumpkit.elfheaders`**: reads ELF32 and ELF64 file headers
  (`ElfHeader.from_file`), program headers (`ProgramHeader.read`,
  `iter_program_headers`) and note headers (`NoteHeader.parse`). It handles
  extended program header numbering (`read_phnum`). `detect_elf_format`
  returns the ELF class, the number of program headers and the number of
  `PT_LOAD` headers. `vaddr_to_offset_slow` maps a virtual address to a file
  offset by scanning the program headers. Errors are raised as `ElfError`.
- **`vmdumpkit.elfcore`**: `ElfMemory.open` reads the `PT_LOAD` segments
  (`PtLoadSegment`) and the notes of a dump: the CPU count, VMCOREINFO,
  VMCOREINFO_XEN, Xen crash info and ERASEINFO regions. It translates
  physical addresses to file offsets (`paddr_to_offset`, `paddr_to_offset2`)
  and virtual addresses to physical ones (`vaddr_to_paddr`). It also offers
  `offset_to_pt_load_end`, `page_is_fractional`, `max_paddr`,
  `closest_pt_load` and `max_file_offset`. For kcore images,
  `keep_kcore_loads` keeps the physical-memory segments and cuts
  crash-reserved ranges out of them (`exclude_segment`), and
  `set_kcore_vmcoreinfo` locates the VMCOREINFO note.
- **`vmdumpkit.printk`**: `PrintkRingBuffer` decodes a copy of the kernel's
  lockless printk ring buffer, described by a `RingLayout`. `records()` yields
  the committed records as dmesg-style lines with timestamps and optional
  caller ids, and `dump(out)` writes them to a binary stream.
  `start_from_clear_seq` begins the output at the last clear point.
  `format_record` and `desc_state` are available on their own.
- **`vmdumpkit.filterconfig`**: `parse_filter_config` parses filter
  configurations made of `erase <expr> [size N[K|M] | size <expr> | nullify]`
  commands and `for <id> in <list> [via <member> | within <Struct>:<member>]
  ... endfor` loops, with `[module]` sections. It is a generator of
  `FilterCommand` objects. Sending `True` into it skips the rest of the
  current module section. Malformed input raises `ConfigError`.
- **`vmdumpkit.resolver`**: `ConfigResolver` resolves parsed commands against
  debug information and a memory reader that you supply, and records the
  ranges they name in a `FilterTable`. The debug information is any object
  with the methods listed in the `DebugInfo` protocol.
- **`vmdumpkit.filtering`**: `FilterTable` keeps the ranges (`FilterInfo`)
  sorted by physical address. `filter_buffer` overwrites them in a page
  buffer, and `size_eraseinfo` works out the size of the erase-info text.
  Each erase command's `EraseInfo` records what was erased. Extraction is
  thread safe.
- **`vmdumpkit.modsyms`**: `load_module_symbols` walks the kernel's module
  list in dump memory and reads each module's symbol table into a
  `ModuleSymbolTable`. The offsets of `struct module` are given by a
  `ModuleLayout`.
- **`vmdumpkit.sadump`**: packs and unpacks sadump partition, disk-set,
  volume, main, page and media headers (`from_bytes` / `to_bytes`).

## Examples

Reading the layout of a dump:

```python
from vmdumpkit.elfcore import ElfMemory

with open("vmcore", "rb") as f:
    memory = ElfMemory.open(f, "vmcore")
    print(hex(memory.max_paddr()))
    print(memory.paddr_to_offset(0x100000))
    print(memory.nr_cpus, memory.vmcoreinfo)
```

Parsing a filter configuration:

```python
from vmdumpkit.filterconfig import parse_filter_config

lines = [
    "[vmlinux]",
    "erase modules",
    "erase cred_jar.name size 10",
]
for command in parse_filter_config(lines, lambda name: name == "vmlinux"):
    print(command.module_name, [e.symbol_expr for e in command.filter_symbols])
```

Erasing a range in a page buffer:

```python
from vmdumpkit.filtering import FilterTable

table = FilterTable()
table.add_raw(vaddr=0xffff0000, paddr=0x1010, ch="L", length=8)
page = bytearray(4096)
table.filter_buffer(page, 0x1000)
assert page[0x10:0x18] == b"L" * 8
```

## What it does not do

This is a library only. It has no command-line tool, and it does not write
dump files in any format. It does not read debug information (DWARF) itself:
the resolver relies on an object you provide for symbol addresses, types and
structure layouts. It does not run macro-based filter scripts. It has no
message or progress output of its own; problems are raised as exceptions or
collected in `warnings` lists.

## Installing

```
pip install .
```

Run the tests with `pip install .[test]` followed by `pytest`.