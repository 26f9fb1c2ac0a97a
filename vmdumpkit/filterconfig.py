"""Parsing of filter configuration files that name kernel data to erase.

The configuration holds filter commands, optionally grouped in module
sections introduced by ``[ModuleName]``::

    erase <Symbol>[.member[...]] [size <SizeValue>[K|M]]
    erase <Symbol>[.member[...]] [size <SizeSymbol>]
    erase <Symbol>[.member[...]] [nullify]

    for <id> in {<ArrayVar> |
                 <StructVar> via <NextMember> |
                 <ListHeadVar> within <StructName>:<ListHeadMember>}
        erase <id>[.MemberExpression] [size <SizeExpression>|nullify]
        [...]
    endfor
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Callable, Generator, Iterable, Iterator

KEYWORDS = frozenset({"erase", "size", "nullify", "for", "in", "within", "endfor"})

NOT_REACH_END = 0
REACH_END_OF_FILE = -1
REACH_END_OF_SECTION = -2

_SIZE_VALUE = re.compile(r"\s*([+-]?\d+)(.)?", re.DOTALL)


class ConfigError(ValueError):
    """Raised when a filter configuration cannot be parsed."""

    def __init__(self, message: str, line: int | None = None) -> None:
        super().__init__(message)
        self.line = line


class EntryFlag(enum.IntFlag):
    """Role and state of a configuration entry."""

    NONE = 0
    FILTER = 0x0001
    SIZE = 0x0002
    ITERATION = 0x0004
    LIST = 0x0008
    SYMBOL = 0x0010
    VAR = 0x0020
    TRAVERSAL = 0x0040
    RESOLVED = 0x8000


@dataclass(eq=False)
class ConfigEntry:
    """One node of a ``symbol.member.member`` expression.

    Nodes are chained through ``next``; the first node names a symbol,
    the following ones name members of the previous node's type.
    """

    name: str | None = None
    type_name: str | None = None
    symbol_expr: str | None = None
    flag: EntryFlag = EntryFlag.NONE
    nullify: bool = False
    sym_addr: int = 0
    vaddr: int = 0
    cmp_addr: int = 0
    offset: int = 0
    type_flag: int = 0
    array_length: int = 0
    index: int = 0
    size: int = 0
    line: int = 0
    erase_info_idx: int = 0
    refer_to: "ConfigEntry | None" = field(default=None, repr=False)
    next: "ConfigEntry | None" = None

    def chain(self) -> Iterator["ConfigEntry"]:
        """Yield this node and every node after it."""
        entry: ConfigEntry | None = self
        while entry is not None:
            yield entry
            entry = entry.next

    def last(self) -> "ConfigEntry":
        """The final node of the chain."""
        entry = self
        while entry.next is not None:
            entry = entry.next
        return entry


@dataclass(eq=False)
class FilterCommand:
    """A parsed ``erase`` command or ``for`` loop.

    ``filter_symbols`` and ``size_symbols`` run in parallel; a size entry
    is None where the erase command gave no ``size``.
    """

    module_name: str | None = None
    iter_entry: ConfigEntry | None = None
    list_entry: ConfigEntry | None = None
    filter_symbols: list[ConfigEntry] = field(default_factory=list)
    size_symbols: list[ConfigEntry | None] = field(default_factory=list)


def is_keyword(token: str) -> bool:
    """Whether ``token`` is a reserved word of the filter language."""
    return token in KEYWORDS


def _size_entry_value(text: str) -> int | None:
    match = _SIZE_VALUE.match(text)
    if match is None:
        return None
    value = int(match.group(1))
    return value if match.group(2) is None else _apply_suffix(value, match.group(2))


def _apply_suffix(value: int, suffix: str) -> int:
    if suffix in "Mm":
        return value * 1024 * 1024
    if suffix in "Kk":
        return value * 1024
    return value


def create_config_entry(token: str | None, flag: EntryFlag, line: int) -> ConfigEntry | None:
    """Build the chain of nodes for a ``Symbol[.member[...]]`` expression.

    Returns None when the expression holds no names at all.
    """
    if token is None:
        return None
    flag = EntryFlag(flag)
    head: ConfigEntry | None = None
    prev: ConfigEntry | None = None
    depth = 0
    for part in token.split("."):
        if not part:
            continue
        entry = ConfigEntry(line=line, flag=flag)
        if depth == 0:
            entry.flag |= EntryFlag.SYMBOL
        if flag & EntryFlag.ITERATION:
            if depth > 0:
                raise ConfigError(
                    f"Config error at {line}: Invalid iteration variable entry.", line
                )
            entry.name = part
        if flag & (EntryFlag.FILTER | EntryFlag.LIST):
            entry.name = part
        if flag & EntryFlag.SIZE:
            value = _size_entry_value(part) if depth == 0 else None
            if value is not None:
                if value < 0:
                    raise ConfigError(
                        f"Config error at {line}: size value must be positive.", line
                    )
                entry.size = value
                entry.flag |= EntryFlag.RESOLVED
            else:
                entry.name = part
        if prev is None:
            head = entry
        else:
            prev.next = entry
        prev = entry
        depth += 1
    return head


class ConfigTokenizer:
    """Splits a filter configuration into tokens, tracking module sections.

    After each call to :meth:`next_token`, ``end`` tells whether the end of
    the file or of a module section stopped it, ``line`` is the line of the
    last token handed out and ``cur_module`` the current section name.
    """

    def __init__(
        self,
        lines: Iterable[str],
        is_module_loaded: Callable[[str], bool] | None = None,
    ) -> None:
        self._lines = iter(lines)
        self._is_module_loaded = is_module_loaded
        self._token: str | None = None
        self._saved: str | None = None
        self._pending: list[str] = []
        self.cur_module: str | None = None
        self.new_section = False
        self.line_count = 0
        self.line = 0
        self.end = NOT_REACH_END
        self.warnings: list[str] = []

    def _module_loaded(self, name: str) -> bool:
        if self._is_module_loaded is None:
            return True
        return name == "vmlinux" or bool(self._is_module_loaded(name))

    def _advance(self) -> str | None:
        return self._pending.pop(0) if self._pending else None

    def next_token(
        self,
        expected: str | None = None,
        new_command: bool = False,
        skip_section: bool = False,
    ) -> str | None:
        """Return the next token, or None.

        With ``expected`` the token is consumed only if it matches; a
        mismatch leaves it for the next call. Inside a fresh module section
        nothing is returned until ``new_command`` is set. ``skip_section``
        drops everything up to the next module section.
        """
        self.end = NOT_REACH_END
        skip = skip_section
        if skip:
            self._token = None
            self._saved = None
            self._pending = []
        elif self._saved is not None:
            self._token, self._saved = self._saved, None
        elif self._token is not None:
            self._token = self._advance()

        while self._token is None:
            raw = next(self._lines, None)
            if raw is None:
                break
            self.line_count += 1
            text = raw.split("\n", 1)[0].split("#", 1)[0].replace("\t", " ")
            if text.startswith("["):
                close = text.find("]")
                if close < 0:
                    self.warnings.append(
                        f"Config error at {self.line_count}: "
                        "Invalid module section entry."
                    )
                    skip = True
                else:
                    self.cur_module = text[1:close]
                    self.new_section = True
                    skip = False
                continue
            if skip or (
                self.cur_module is not None and not self._module_loaded(self.cur_module)
            ):
                continue
            words = [word for word in text.split(" ") if word]
            if words:
                self._token, self._pending = words[0], words[1:]

        if self._token is None:
            self.end = REACH_END_OF_FILE
            return None
        if self.new_section and not new_command:
            self._saved = self._token
            self.end = REACH_END_OF_SECTION
            return None
        self.new_section = False
        self.line = self.line_count
        if expected is not None and self._token != expected:
            self._saved = self._token
            return None
        return self._token


def _error(line: int, text: str) -> ConfigError:
    return ConfigError(f"Config error at {line}: {text}", line)


def _read_size_entry(tk: ConfigTokenizer, command: FilterCommand, idx: int) -> None:
    token = tk.next_token()
    if token is None or is_keyword(token):
        raise _error(tk.line, "expected size symbol after 'size' keyword.")
    entry = create_config_entry(token, EntryFlag.SIZE, tk.line)
    if entry is None:
        raise ConfigError(f"Error at line {tk.line}: Failed to read size symbol", tk.line)
    command.size_symbols[idx] = entry
    iter_entry = command.iter_entry
    if iter_entry is not None and entry.name is not None and entry.name == iter_entry.name:
        entry.flag = (entry.flag & ~EntryFlag.SYMBOL) | EntryFlag.VAR
        entry.refer_to = iter_entry


def _read_erase_command(tk: ConfigTokenizer, command: FilterCommand) -> None:
    token = tk.next_token()
    if token is None or is_keyword(token):
        raise _error(tk.line, "expected kernel symbol after 'erase' command.")
    entry = create_config_entry(token, EntryFlag.FILTER, tk.line)
    if entry is None:
        raise ConfigError(
            f"Error at line {tk.line}: Failed to read filter symbol", tk.line
        )
    idx = len(command.filter_symbols)
    command.filter_symbols.append(entry)
    command.size_symbols.append(None)
    entry.symbol_expr = token

    iter_entry = command.iter_entry
    if iter_entry is not None:
        if entry.name != iter_entry.name:
            raise _error(tk.line, f"unused iteration variable '{iter_entry.name}'.")
        entry.flag = (entry.flag & ~EntryFlag.SYMBOL) | EntryFlag.VAR
        entry.refer_to = iter_entry

    if tk.next_token("nullify") is not None:
        entry.nullify = True
    elif tk.next_token("size") is not None:
        _read_size_entry(tk, command, idx)


def _add_traversal_entry(head: ConfigEntry, member: str, line: int) -> None:
    tail = create_config_entry(member, EntryFlag.LIST, line)
    if tail is None:
        raise ConfigError(f"Error at line {line}: Failed to read 'via' member", line)
    tail.flag = (tail.flag | EntryFlag.TRAVERSAL) & ~EntryFlag.SYMBOL
    head.last().next = tail


def _read_list_entry(tk: ConfigTokenizer, command: FilterCommand) -> None:
    token = tk.next_token()
    if token is None or is_keyword(token):
        raise _error(tk.line, "expected list symbol after 'in' keyword.")
    list_entry = create_config_entry(token, EntryFlag.LIST, tk.line)
    if list_entry is None:
        raise ConfigError(f"Error at line {tk.line}: Failed to read list symbol", tk.line)
    command.list_entry = list_entry

    if tk.next_token("via") is not None:
        member = tk.next_token()
        if member is None:
            raise _error(tk.line, "expected member name after 'via' keyword.")
        _add_traversal_entry(list_entry, member, tk.line)
    elif tk.next_token("within") is not None:
        s_name = tk.next_token()
        if s_name is None or is_keyword(s_name):
            raise _error(tk.line, "expected struct name after 'within' keyword.")
        iter_entry = command.iter_entry
        assert iter_entry is not None
        if ":" in s_name:
            s_name, lh_member = s_name.split(":", 1)
            if not lh_member:
                raise _error(tk.line, "expected list_head member after ':'.")
            member_entry = create_config_entry(lh_member, EntryFlag.ITERATION, tk.line)
            if member_entry is None:
                raise _error(tk.line, "Invalid list_head member after ':'.")
            member_entry.flag &= ~EntryFlag.SYMBOL
            iter_entry.next = member_entry
        if not s_name:
            raise _error(tk.line, "Invalid token found after 'within' keyword.")
        iter_entry.type_name = s_name


def _read_iteration_entry(tk: ConfigTokenizer, command: FilterCommand) -> None:
    token = tk.next_token()
    if token is None or is_keyword(token):
        raise _error(tk.line, "expected iteration VAR entry after 'for' keyword.")
    iter_entry = create_config_entry(token, EntryFlag.ITERATION, tk.line)
    if iter_entry is None:
        raise ConfigError(
            f"Error at line {tk.line}: Failed to read iteration VAR entry.", tk.line
        )
    command.iter_entry = iter_entry

    if tk.next_token("in") is None:
        found = tk.next_token()
        prefix = f"Invalid token '{found}'. " if found is not None else ""
        raise _error(tk.line, f"{prefix}expected token 'in'.")
    _read_list_entry(tk, command)

    while tk.next_token("endfor") is None and tk.end == NOT_REACH_END:
        if tk.next_token("erase") is not None:
            _read_erase_command(tk, command)
        else:
            found = tk.next_token()
            raise _error(tk.line, f"Invalid token '{found}'.")
    if tk.end != NOT_REACH_END:
        raise _error(tk.line, "No matching 'endfor' found.")


def _read_command(tk: ConfigTokenizer, skip: bool) -> FilterCommand | None:
    if tk.next_token("erase", new_command=True, skip_section=skip) is not None:
        command = FilterCommand(module_name=tk.cur_module)
        _read_erase_command(tk, command)
        return command
    if tk.next_token("for") is not None:
        command = FilterCommand(module_name=tk.cur_module)
        _read_iteration_entry(tk, command)
        return command
    if tk.end == NOT_REACH_END:
        found = tk.next_token()
        raise _error(tk.line, f"Invalid token '{found}'.")
    return None


def parse_filter_config(
    lines: Iterable[str],
    is_module_loaded: Callable[[str], bool] | None = None,
) -> Generator[FilterCommand, bool | None, None]:
    """Yield the filter commands of a configuration in order.

    Sending True into the generator skips the rest of the current module
    section before the next command is read. A malformed command raises
    ConfigError.
    """
    tk = ConfigTokenizer(lines, is_module_loaded)
    skip = False
    while True:
        command = _read_command(tk, skip)
        if command is None:
            return
        skip = bool((yield command))