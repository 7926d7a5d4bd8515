"""
ELF Object Format Decoder
===========================

Manual struct-based decoder for the Executable and Linkable Format (ELF),
the object format of Linux, the BSDs and most embedded toolchains.

Both ELF32 and ELF64 are supported, in either byte order.  The decoder
validates the identification bytes and the file header, then builds the
section header table and the program header table.  Every table and every
file range a view may later slice is bounds-checked during :meth:`parse`,
so iterating a parsed file never fails.

The decoder extracts:
    - ELF header (class, data encoding, machine)
    - Section headers, with names from the section-name string table
      (including extended section numbering)
    - ``PT_LOAD`` program headers as segments
    - ``.symtab`` and ``.dynsym`` symbol tables

References:
    - TIS Committee. (1995). Tool Interface Standard (TIS) Executable and
      Linkable Format (ELF) Specification, Version 1.2.
    - System V Application Binary Interface, Edition 4.1.
    - Linux man page: elf(5).
"""

from __future__ import annotations

from typing import Iterator, Optional

from objscope.core.errors import MalformedHeaderError
from objscope.core.models import (
    BinaryFormat,
    Machine,
    Section,
    SectionKind,
    Segment,
    Symbol,
    SymbolKind,
)
from objscope.parsers.utils import (
    borrow_range,
    check_range,
    read_cstring,
    slice_range,
    unpack_at,
)
from shared.logger import get_logger

logger = get_logger("elf")


# ---------------------------------------------------------------------------
# ELF Constants
# ---------------------------------------------------------------------------

ELF_MAGIC: bytes = b"\x7fELF"

# ELF Class (32-bit vs 64-bit)
ELFCLASS32: int = 1
ELFCLASS64: int = 2

# Data encoding (endianness)
ELFDATA2LSB: int = 1  # Little-endian
ELFDATA2MSB: int = 2  # Big-endian

EV_CURRENT: int = 1

# Machine architectures
EM_386: int = 3
EM_ARM: int = 40
EM_X86_64: int = 62
EM_AARCH64: int = 183

_EM_MACHINES: dict[int, Machine] = {
    EM_386: Machine.X86,
    EM_ARM: Machine.ARM,
    EM_X86_64: Machine.X86_64,
    EM_AARCH64: Machine.ARM64,
}

# Section header types
SHT_NULL: int = 0
SHT_PROGBITS: int = 1
SHT_SYMTAB: int = 2
SHT_STRTAB: int = 3
SHT_NOBITS: int = 8
SHT_DYNSYM: int = 11
SHT_INIT_ARRAY: int = 14
SHT_FINI_ARRAY: int = 15
SHT_PREINIT_ARRAY: int = 16
SHT_SYMTAB_SHNDX: int = 18

_CONTENT_TYPES: frozenset[int] = frozenset({
    SHT_PROGBITS, SHT_INIT_ARRAY, SHT_FINI_ARRAY, SHT_PREINIT_ARRAY,
})

# Section header flags
SHF_WRITE: int = 0x1
SHF_ALLOC: int = 0x2
SHF_EXECINSTR: int = 0x4

# Program header types
PT_LOAD: int = 1

# Symbol binding
STB_LOCAL: int = 0

# Symbol types
STT_NOTYPE: int = 0
STT_OBJECT: int = 1
STT_FUNC: int = 2
STT_SECTION: int = 3
STT_FILE: int = 4
STT_COMMON: int = 5
STT_TLS: int = 6

_STT_KINDS: dict[int, SymbolKind] = {
    STT_NOTYPE: SymbolKind.UNKNOWN,
    STT_OBJECT: SymbolKind.DATA,
    STT_FUNC: SymbolKind.TEXT,
    STT_SECTION: SymbolKind.SECTION,
    STT_FILE: SymbolKind.FILE,
    STT_COMMON: SymbolKind.COMMON,
    STT_TLS: SymbolKind.TLS,
}

# Special section indices
SHN_UNDEF: int = 0
SHN_LORESERVE: int = 0xFF00
SHN_XINDEX: int = 0xFFFF

# Record layouts (without byte-order prefix)
_EHDR32: str = "HHIIIIIHHHHHH"
_EHDR64: str = "HHIQQQIHHHHHH"
_SHDR32: str = "IIIIIIIIII"  # 40 bytes
_SHDR64: str = "IIQQQQIIQQ"  # 64 bytes
_PHDR32: str = "IIIIIIII"    # 32 bytes
_PHDR64: str = "IIQQQQQQ"    # 56 bytes
_SYM32: str = "IIIBBH"       # 16 bytes
_SYM64: str = "IBBHQQ"       # 24 bytes


def classify_section(sh_type: int, sh_flags: int) -> SectionKind:
    """Map an ELF section's type and flags onto a :class:`SectionKind`.

    Rules are applied in order; the first match wins:

    1. ``SHT_NOBITS`` is uninitialised data.
    2. A section without ``SHF_ALLOC`` is not part of the image: unknown.
    3. Content sections (``PROGBITS`` and the init/fini arrays) are text
       when executable, data when writable, read-only data otherwise.
    4. Any other allocated section (dynamic, hash, notes...) is other.
    """
    if sh_type == SHT_NOBITS:
        return SectionKind.UNINITIALIZED_DATA
    if not sh_flags & SHF_ALLOC:
        return SectionKind.UNKNOWN
    if sh_type in _CONTENT_TYPES:
        if sh_flags & SHF_EXECINSTR:
            return SectionKind.TEXT
        if sh_flags & SHF_WRITE:
            return SectionKind.DATA
        return SectionKind.READ_ONLY_DATA
    return SectionKind.OTHER


# ---------------------------------------------------------------------------
# Internal parsed structures
# ---------------------------------------------------------------------------

class _ELFHeader:
    """Parsed ELF header fields."""
    __slots__ = (
        "ei_class", "ei_data", "ei_version",
        "e_type", "e_machine", "e_version", "e_entry",
        "e_phoff", "e_shoff", "e_flags", "e_ehsize",
        "e_phentsize", "e_phnum", "e_shentsize", "e_shnum",
        "e_shstrndx",
    )

    def __init__(self) -> None:
        self.ei_class: int = 0
        self.ei_data: int = 0
        self.ei_version: int = 0
        self.e_type: int = 0
        self.e_machine: int = 0
        self.e_version: int = 0
        self.e_entry: int = 0
        self.e_phoff: int = 0
        self.e_shoff: int = 0
        self.e_flags: int = 0
        self.e_ehsize: int = 0
        self.e_phentsize: int = 0
        self.e_phnum: int = 0
        self.e_shentsize: int = 0
        self.e_shnum: int = 0
        self.e_shstrndx: int = 0


class _SectionHeader:
    """Parsed section header entry."""
    __slots__ = (
        "sh_name", "sh_type", "sh_flags", "sh_addr",
        "sh_offset", "sh_size", "sh_link", "sh_info",
        "sh_addralign", "sh_entsize", "name",
    )

    def __init__(self) -> None:
        self.sh_name: int = 0
        self.sh_type: int = 0
        self.sh_flags: int = 0
        self.sh_addr: int = 0
        self.sh_offset: int = 0
        self.sh_size: int = 0
        self.sh_link: int = 0
        self.sh_info: int = 0
        self.sh_addralign: int = 0
        self.sh_entsize: int = 0
        self.name: Optional[str] = None

    @property
    def file_size(self) -> int:
        return 0 if self.sh_type == SHT_NOBITS else self.sh_size


class _ProgramHeader:
    """Parsed program header (segment) entry."""
    __slots__ = (
        "p_type", "p_flags", "p_offset", "p_vaddr",
        "p_paddr", "p_filesz", "p_memsz", "p_align",
    )

    def __init__(self) -> None:
        self.p_type: int = 0
        self.p_flags: int = 0
        self.p_offset: int = 0
        self.p_vaddr: int = 0
        self.p_paddr: int = 0
        self.p_filesz: int = 0
        self.p_memsz: int = 0
        self.p_align: int = 0


# ---------------------------------------------------------------------------
# ELF Parser
# ---------------------------------------------------------------------------

class ELFParser:
    """Manual struct-based ELF decoder.

    Decodes both ELF32 and ELF64 objects in either byte order using only
    :mod:`struct` over a borrowed :class:`memoryview`.

    Usage::

        parser = ELFParser(view)
        parser.parse()                  # raises DecodeError on bad input
        for section in parser.sections():
            print(section.name, section.kind)
    """

    FORMAT = BinaryFormat.ELF

    def __init__(self, data: memoryview, *, include_dynamic_symbols: bool = True) -> None:
        """Initialise the parser over a read-only buffer view.

        Args:
            data: Complete ELF file contents.
            include_dynamic_symbols: Also report ``.dynsym`` entries.
        """
        self._data: memoryview = data
        self._header: _ELFHeader = _ELFHeader()
        self._sections: list[_SectionHeader] = []
        self._program_headers: list[_ProgramHeader] = []
        self._include_dynamic_symbols = include_dynamic_symbols
        self._endian: str = "<"
        self._is_64bit: bool = False

    # ------------------------------------------------------------------ #
    #  Parsing
    # ------------------------------------------------------------------ #

    def parse(self) -> None:
        """Decode and validate the ELF header and tables.

        Raises:
            MalformedHeaderError: On an invalid identification or header.
            TruncatedTableError: If a table or section extends past the buffer.
        """
        with logger.operation("parse"):
            self._parse_elf_header()
            self._parse_section_headers()
            self._resolve_section_names()
            self._parse_program_headers()
            logger.debug(
                "ELF%d %s: %d sections, %d program headers",
                64 if self._is_64bit else 32,
                "LSB" if self._endian == "<" else "MSB",
                len(self._sections),
                len(self._program_headers),
            )

    def _parse_elf_header(self) -> None:
        """Parse the ELF identification and file header."""
        data = self._data
        h = self._header
        magic, h.ei_class, h.ei_data, h.ei_version = unpack_at(
            "4sBBB", data, 0, "ELF identification"
        )
        if magic != ELF_MAGIC:
            raise MalformedHeaderError("Missing ELF identification")

        if h.ei_class not in (ELFCLASS32, ELFCLASS64):
            raise MalformedHeaderError(f"Invalid ELF class {h.ei_class}", offset=4)
        if h.ei_data not in (ELFDATA2LSB, ELFDATA2MSB):
            raise MalformedHeaderError(f"Invalid ELF data encoding {h.ei_data}", offset=5)
        if h.ei_version != EV_CURRENT:
            raise MalformedHeaderError(f"Unsupported ELF version {h.ei_version}", offset=6)

        self._is_64bit = h.ei_class == ELFCLASS64
        self._endian = "<" if h.ei_data == ELFDATA2LSB else ">"

        layout = _EHDR64 if self._is_64bit else _EHDR32
        (
            h.e_type, h.e_machine, h.e_version, h.e_entry,
            h.e_phoff, h.e_shoff, h.e_flags, h.e_ehsize,
            h.e_phentsize, h.e_phnum, h.e_shentsize, h.e_shnum,
            h.e_shstrndx,
        ) = unpack_at(self._endian + layout, data, 16, "ELF header")

    def _parse_section_headers(self) -> None:
        """Parse all section headers from the section header table."""
        h = self._header
        if h.e_shoff == 0:
            return

        layout = self._endian + (_SHDR64 if self._is_64bit else _SHDR32)
        min_entsize = 64 if self._is_64bit else 40
        if h.e_shentsize < min_entsize:
            raise MalformedHeaderError(
                f"Section header entry size {h.e_shentsize} is smaller "
                f"than {min_entsize}"
            )

        shnum = h.e_shnum
        if shnum == 0:
            # Extended numbering: the real count lives in section 0.
            first = self._read_section_header(layout, h.e_shoff)
            shnum = first.sh_size
        check_range(self._data, h.e_shoff, shnum * h.e_shentsize, "Section header table")

        for i in range(shnum):
            sh = self._read_section_header(layout, h.e_shoff + i * h.e_shentsize)
            if sh.sh_type in (SHT_SYMTAB, SHT_DYNSYM):
                min_sym = 24 if self._is_64bit else 16
                if sh.sh_entsize < min_sym:
                    raise MalformedHeaderError(
                        f"Symbol table section {i} has entry size {sh.sh_entsize}"
                    )
            check_range(self._data, sh.sh_offset, sh.file_size, f"Section {i}")
            self._sections.append(sh)

    def _read_section_header(self, layout: str, offset: int) -> _SectionHeader:
        sh = _SectionHeader()
        (
            sh.sh_name, sh.sh_type, sh.sh_flags, sh.sh_addr,
            sh.sh_offset, sh.sh_size, sh.sh_link, sh.sh_info,
            sh.sh_addralign, sh.sh_entsize,
        ) = unpack_at(layout, self._data, offset, "Section header")
        return sh

    def _resolve_section_names(self) -> None:
        """Resolve section names from the section header string table."""
        shstrndx = self._header.e_shstrndx
        if shstrndx == SHN_XINDEX and self._sections:
            shstrndx = self._sections[0].sh_link
        if shstrndx == SHN_UNDEF or not self._sections:
            return
        if shstrndx >= len(self._sections):
            raise MalformedHeaderError(
                f"Section name table index {shstrndx} out of range "
                f"({len(self._sections)} sections)"
            )

        strtab = self._string_table(self._sections[shstrndx])
        for sh in self._sections:
            sh.name = read_cstring(strtab, sh.sh_name)

    def _parse_program_headers(self) -> None:
        """Parse all program headers (segments)."""
        h = self._header
        if h.e_phoff == 0 or h.e_phnum == 0:
            return

        min_entsize = 56 if self._is_64bit else 32
        if h.e_phentsize < min_entsize:
            raise MalformedHeaderError(
                f"Program header entry size {h.e_phentsize} is smaller "
                f"than {min_entsize}"
            )
        check_range(self._data, h.e_phoff, h.e_phnum * h.e_phentsize, "Program header table")

        for i in range(h.e_phnum):
            offset = h.e_phoff + i * h.e_phentsize
            ph = _ProgramHeader()
            if self._is_64bit:
                (
                    ph.p_type, ph.p_flags, ph.p_offset, ph.p_vaddr,
                    ph.p_paddr, ph.p_filesz, ph.p_memsz, ph.p_align,
                ) = unpack_at(self._endian + _PHDR64, self._data, offset, "Program header")
            else:
                (
                    ph.p_type, ph.p_offset, ph.p_vaddr, ph.p_paddr,
                    ph.p_filesz, ph.p_memsz, ph.p_flags, ph.p_align,
                ) = unpack_at(self._endian + _PHDR32, self._data, offset, "Program header")

            if ph.p_type == PT_LOAD:
                check_range(self._data, ph.p_offset, ph.p_filesz, f"Segment {i}")
            self._program_headers.append(ph)

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def machine(self) -> Machine:
        return _EM_MACHINES.get(self._header.e_machine, Machine.OTHER)

    def is_little_endian(self) -> bool:
        return self._endian == "<"

    def is_64bit(self) -> bool:
        return self._is_64bit

    def segments(self) -> Iterator[Segment]:
        """Yield one :class:`Segment` per ``PT_LOAD`` program header."""
        for ph in self._program_headers:
            if ph.p_type != PT_LOAD:
                continue
            yield Segment(
                name=None,
                address=ph.p_vaddr,
                size=ph.p_memsz,
                file_offset=ph.p_offset,
                file_size=ph.p_filesz,
                data=borrow_range(self._data, ph.p_offset, ph.p_filesz),
            )

    def sections(self) -> Iterator[Section]:
        """Yield one :class:`Section` per section header, in table order."""
        for index, sh in enumerate(self._sections):
            yield self._make_section(index, sh)

    def section_by_name(self, name: str) -> Optional[Section]:
        for index, sh in enumerate(self._sections):
            if sh.name == name:
                return self._make_section(index, sh)
        return None

    def section_data_by_name(self, name: str) -> Optional[memoryview]:
        section = self.section_by_name(name)
        return section.data if section is not None else None

    def symbols(self) -> list[Symbol]:
        """Return the entries of ``.symtab`` and, if enabled, ``.dynsym``.

        The reserved null entry at index 0 of each table is skipped.
        """
        wanted = {SHT_SYMTAB}
        if self._include_dynamic_symbols:
            wanted.add(SHT_DYNSYM)

        result: list[Symbol] = []
        for index, sh in enumerate(self._sections):
            if sh.sh_type in wanted:
                result.extend(self._parse_symbol_table(index, sh))
        return result

    # ------------------------------------------------------------------ #
    #  Symbol table parsing
    # ------------------------------------------------------------------ #

    def _parse_symbol_table(self, table_index: int, sh: _SectionHeader) -> Iterator[Symbol]:
        """Decode a single symbol table section.

        Args:
            table_index: Index of the symbol table's section header.
            sh: The section header for the symbol table.
        """
        strtab = b""
        if sh.sh_link < len(self._sections):
            strtab = self._string_table(self._sections[sh.sh_link])
        else:
            logger.debug("Symbol table %d links to missing string table %d",
                         table_index, sh.sh_link)

        shndx_table = self._extended_index_table(table_index)
        layout = self._endian + (_SYM64 if self._is_64bit else _SYM32)

        for i in range(1, sh.sh_size // sh.sh_entsize):
            offset = sh.sh_offset + i * sh.sh_entsize
            if self._is_64bit:
                st_name, st_info, _st_other, st_shndx, st_value, st_size = (
                    unpack_at(layout, self._data, offset, "Symbol")
                )
            else:
                st_name, st_value, st_size, st_info, _st_other, st_shndx = (
                    unpack_at(layout, self._data, offset, "Symbol")
                )

            if st_shndx == SHN_XINDEX:
                st_shndx = self._extended_index(shndx_table, i)

            section_kind: Optional[SectionKind] = None
            section_index: Optional[int] = None
            if st_shndx != SHN_UNDEF and st_shndx < SHN_LORESERVE:
                if st_shndx < len(self._sections):
                    target = self._sections[st_shndx]
                    section_index = st_shndx
                    section_kind = classify_section(target.sh_type, target.sh_flags)
                else:
                    logger.debug("Symbol %d refers to missing section %d", i, st_shndx)

            yield Symbol(
                kind=_STT_KINDS.get(st_info & 0xF, SymbolKind.UNKNOWN),
                name=read_cstring(strtab, st_name) or None,
                address=st_value,
                size=st_size,
                is_global=(st_info >> 4) != STB_LOCAL,
                section_index=section_index,
                section_kind=section_kind,
            )

    def _extended_index_table(self, table_index: int) -> Optional[_SectionHeader]:
        """Find the ``SHT_SYMTAB_SHNDX`` section linked to a symbol table."""
        for sh in self._sections:
            if sh.sh_type == SHT_SYMTAB_SHNDX and sh.sh_link == table_index:
                return sh
        return None

    def _extended_index(self, table: Optional[_SectionHeader], index: int) -> int:
        if table is None or (index + 1) * 4 > table.sh_size:
            return SHN_UNDEF
        (value,) = unpack_at(
            self._endian + "I", self._data, table.sh_offset + index * 4, "Extended section index"
        )
        return value

    # ------------------------------------------------------------------ #
    #  Utility methods
    # ------------------------------------------------------------------ #

    def _make_section(self, index: int, sh: _SectionHeader) -> Section:
        return Section(
            index=index,
            name=sh.name,
            segment_name=None,
            address=sh.sh_addr,
            size=sh.sh_size,
            file_offset=sh.sh_offset,
            file_size=sh.file_size,
            kind=classify_section(sh.sh_type, sh.sh_flags),
            data=borrow_range(self._data, sh.sh_offset, sh.file_size),
        )

    def _string_table(self, sh: _SectionHeader) -> bytes:
        """Copy a string table section's bytes for name lookups."""
        return bytes(slice_range(self._data, sh.sh_offset, sh.file_size, "String table"))
