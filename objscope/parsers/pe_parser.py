"""
PE/COFF Object Format Decoder
===============================

Manual struct-based decoder for the Portable Executable (PE) format used
by Microsoft Windows for executables (.exe), dynamic link libraries (.dll),
and other images.

All decoding is performed using :mod:`struct` without external libraries
such as ``pefile`` or ``lief``.  Both PE32 (32-bit) and PE32+ (64-bit)
optional headers are accepted; only the optional header's magic is read,
the rest of it is skipped by its declared size.

The decoder extracts:
    - DOS header (MZ stub) and PE signature
    - COFF file header (machine, section count, symbol table location)
    - Section table (name, virtual size/address, raw size/offset, characteristics)
    - COFF symbol table and its string table, when present

Every section header doubles as a segment: PE has no separate notion of
a loadable region.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
    - Pietrek, M. (1994). Peering Inside the PE: A Tour of the Win32
      Portable Executable File Format. Microsoft Systems Journal.
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
    fixed_name,
    read_cstring,
    slice_range,
    unpack_at,
)
from shared.logger import get_logger

logger = get_logger("pe")


# ---------------------------------------------------------------------------
# PE Constants
# ---------------------------------------------------------------------------

# Magic numbers
MZ_MAGIC: bytes = b"MZ"
PE_MAGIC: bytes = b"PE\x00\x00"

# Optional header magic
PE32_MAGIC: int = 0x10B      # PE32 (32-bit)
PE32PLUS_MAGIC: int = 0x20B  # PE32+ (64-bit)
ROM_MAGIC: int = 0x107       # ROM image

# Machine types
IMAGE_FILE_MACHINE_I386: int = 0x14C
IMAGE_FILE_MACHINE_ARM: int = 0x1C0
IMAGE_FILE_MACHINE_THUMB: int = 0x1C2
IMAGE_FILE_MACHINE_ARMNT: int = 0x1C4
IMAGE_FILE_MACHINE_AMD64: int = 0x8664
IMAGE_FILE_MACHINE_ARM64: int = 0xAA64

_PE_MACHINES: dict[int, Machine] = {
    IMAGE_FILE_MACHINE_I386: Machine.X86,
    IMAGE_FILE_MACHINE_AMD64: Machine.X86_64,
    IMAGE_FILE_MACHINE_ARM: Machine.ARM,
    IMAGE_FILE_MACHINE_THUMB: Machine.ARM,
    IMAGE_FILE_MACHINE_ARMNT: Machine.ARM,
    IMAGE_FILE_MACHINE_ARM64: Machine.ARM64,
}

# Section characteristics
IMAGE_SCN_CNT_CODE: int = 0x00000020
IMAGE_SCN_CNT_INITIALIZED_DATA: int = 0x00000040
IMAGE_SCN_CNT_UNINITIALIZED_DATA: int = 0x00000080
IMAGE_SCN_MEM_EXECUTE: int = 0x20000000
IMAGE_SCN_MEM_READ: int = 0x40000000
IMAGE_SCN_MEM_WRITE: int = 0x80000000

# Symbol section numbers
IMAGE_SYM_UNDEFINED: int = 0
IMAGE_SYM_ABSOLUTE: int = -1
IMAGE_SYM_DEBUG: int = -2

# Symbol complex types
IMAGE_SYM_DTYPE_FUNCTION: int = 2

# Symbol storage classes
IMAGE_SYM_CLASS_EXTERNAL: int = 2
IMAGE_SYM_CLASS_STATIC: int = 3
IMAGE_SYM_CLASS_FILE: int = 103
IMAGE_SYM_CLASS_SECTION: int = 104
IMAGE_SYM_CLASS_WEAK_EXTERNAL: int = 105

_DOS_HEADER_SIZE: int = 64
_COFF_HEADER: str = "<HHIIIHH"     # 20 bytes
_SECTION_HEADER: str = "<8sIIIIIIHHI"  # 40 bytes
_SECTION_HEADER_SIZE: int = 40
_SYMBOL: str = "<8sIhHBB"          # 18 bytes
_SYMBOL_SIZE: int = 18


def classify_section(characteristics: int) -> SectionKind:
    """Map a PE section's ``Characteristics`` onto a :class:`SectionKind`."""
    if characteristics & (IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE):
        return SectionKind.TEXT
    if characteristics & IMAGE_SCN_CNT_INITIALIZED_DATA:
        return SectionKind.DATA
    if characteristics & IMAGE_SCN_CNT_UNINITIALIZED_DATA:
        return SectionKind.UNINITIALIZED_DATA
    return SectionKind.UNKNOWN


# ---------------------------------------------------------------------------
# Internal parsed structures
# ---------------------------------------------------------------------------

class _COFFHeader:
    """Parsed COFF file header."""
    __slots__ = (
        "machine", "number_of_sections", "time_date_stamp",
        "pointer_to_symbol_table", "number_of_symbols",
        "size_of_optional_header", "characteristics",
    )

    def __init__(self) -> None:
        self.machine: int = 0
        self.number_of_sections: int = 0
        self.time_date_stamp: int = 0
        self.pointer_to_symbol_table: int = 0
        self.number_of_symbols: int = 0
        self.size_of_optional_header: int = 0
        self.characteristics: int = 0


class _PESection:
    """Parsed PE section header."""
    __slots__ = (
        "name", "virtual_size", "virtual_address",
        "size_of_raw_data", "pointer_to_raw_data", "characteristics",
    )

    def __init__(self) -> None:
        self.name: Optional[str] = ""
        self.virtual_size: int = 0
        self.virtual_address: int = 0
        self.size_of_raw_data: int = 0
        self.pointer_to_raw_data: int = 0
        self.characteristics: int = 0


# ---------------------------------------------------------------------------
# PE Parser
# ---------------------------------------------------------------------------

class PEParser:
    """Manual struct-based PE/COFF decoder.

    Usage::

        parser = PEParser(view)
        parser.parse()                  # raises DecodeError on bad input
        text = parser.section_data_by_name(".text")
    """

    FORMAT = BinaryFormat.PE

    def __init__(self, data: memoryview) -> None:
        """Initialise the parser over a read-only buffer view.

        Args:
            data: Complete PE file contents.
        """
        self._data: memoryview = data
        self._pe_offset: int = 0
        self._coff_header: _COFFHeader = _COFFHeader()
        self._optional_magic: int = 0
        self._sections: list[_PESection] = []
        self._string_table: bytes = b""

    # ------------------------------------------------------------------ #
    #  Parsing
    # ------------------------------------------------------------------ #

    def parse(self) -> None:
        """Decode and validate the PE headers, section and symbol tables.

        Raises:
            MalformedHeaderError: On a missing MZ/PE signature or bad optional header.
            TruncatedTableError: If a table or section range extends past the buffer.
        """
        with logger.operation("parse"):
            self._parse_dos_header()
            self._parse_coff_header()
            self._parse_optional_header()
            self._parse_string_table()
            self._parse_section_table()
            logger.debug(
                "PE machine 0x%x: %d sections, %d symbol records",
                self._coff_header.machine,
                len(self._sections),
                self._coff_header.number_of_symbols,
            )

    def _parse_dos_header(self) -> None:
        """Parse the DOS MZ header and verify the PE signature.

        The DOS header is a 64-byte structure at offset 0.  Only e_magic
        (offset 0) and e_lfanew (offset 60) are needed.
        """
        if len(self._data) < _DOS_HEADER_SIZE or bytes(self._data[:2]) != MZ_MAGIC:
            raise MalformedHeaderError("Missing DOS MZ header", offset=0)
        (self._pe_offset,) = unpack_at("<I", self._data, 60, "e_lfanew")
        signature = bytes(slice_range(self._data, self._pe_offset, 4, "PE signature"))
        if signature != PE_MAGIC:
            raise MalformedHeaderError("Missing PE signature", offset=self._pe_offset)

    def _parse_coff_header(self) -> None:
        """Parse the COFF file header (20 bytes after PE signature)."""
        coff = self._coff_header
        (
            coff.machine,
            coff.number_of_sections,
            coff.time_date_stamp,
            coff.pointer_to_symbol_table,
            coff.number_of_symbols,
            coff.size_of_optional_header,
            coff.characteristics,
        ) = unpack_at(_COFF_HEADER, self._data, self._pe_offset + 4, "COFF header")

    def _parse_optional_header(self) -> None:
        """Read the optional header magic; the remainder is skipped."""
        size = self._coff_header.size_of_optional_header
        if size == 0:
            return
        offset = self._pe_offset + 4 + 20
        check_range(self._data, offset, size, "Optional header")
        if size < 2:
            raise MalformedHeaderError("Optional header too small", offset=offset)
        (self._optional_magic,) = unpack_at("<H", self._data, offset, "Optional header")
        if self._optional_magic not in (PE32_MAGIC, PE32PLUS_MAGIC, ROM_MAGIC):
            raise MalformedHeaderError(
                f"Invalid optional header magic 0x{self._optional_magic:x}",
                offset=offset,
            )

    def _parse_string_table(self) -> None:
        """Locate the COFF string table that follows the symbol table.

        The table starts with its own 4-byte length; string offsets are
        relative to the start of that length field.
        """
        coff = self._coff_header
        if coff.pointer_to_symbol_table == 0 or coff.number_of_symbols == 0:
            return
        check_range(
            self._data, coff.pointer_to_symbol_table,
            coff.number_of_symbols * _SYMBOL_SIZE, "COFF symbol table",
        )
        offset = coff.pointer_to_symbol_table + coff.number_of_symbols * _SYMBOL_SIZE
        (size,) = unpack_at("<I", self._data, offset, "COFF string table")
        if size < 4:
            return
        self._string_table = bytes(slice_range(self._data, offset, size, "COFF string table"))

    def _parse_section_table(self) -> None:
        """Parse the section table immediately following the optional header."""
        coff = self._coff_header
        offset = self._pe_offset + 4 + 20 + coff.size_of_optional_header
        check_range(
            self._data, offset,
            coff.number_of_sections * _SECTION_HEADER_SIZE, "Section table",
        )

        for i in range(coff.number_of_sections):
            sec = _PESection()
            (
                raw_name,
                sec.virtual_size,
                sec.virtual_address,
                sec.size_of_raw_data,
                sec.pointer_to_raw_data,
                _pointer_to_relocations,
                _pointer_to_linenumbers,
                _number_of_relocations,
                _number_of_linenumbers,
                sec.characteristics,
            ) = unpack_at(_SECTION_HEADER, self._data,
                          offset + i * _SECTION_HEADER_SIZE, "Section header")
            sec.name = self._section_name(raw_name)
            check_range(self._data, sec.pointer_to_raw_data, sec.size_of_raw_data,
                        f"Section {sec.name!r}")
            self._sections.append(sec)

    def _section_name(self, raw: bytes) -> Optional[str]:
        """Decode a section name, following ``/NNN`` into the string table."""
        name = fixed_name(raw)
        if name.startswith("/") and name[1:].isdigit():
            resolved = read_cstring(self._string_table, int(name[1:]))
            if resolved is None:
                logger.debug("Long section name %r outside string table", name)
            return resolved
        return name

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def machine(self) -> Machine:
        return _PE_MACHINES.get(self._coff_header.machine, Machine.OTHER)

    def is_little_endian(self) -> bool:
        return True

    def is_64bit(self) -> bool:
        return self._optional_magic == PE32PLUS_MAGIC

    def segments(self) -> Iterator[Segment]:
        """Yield one :class:`Segment` per section header."""
        for sec in self._sections:
            start = sec.pointer_to_raw_data
            yield Segment(
                name=sec.name,
                address=sec.virtual_address,
                size=sec.virtual_size,
                file_offset=start,
                file_size=sec.size_of_raw_data,
                data=borrow_range(self._data, start, sec.size_of_raw_data),
            )

    def sections(self) -> Iterator[Section]:
        for index, sec in enumerate(self._sections):
            yield self._make_section(index, sec)

    def section_by_name(self, name: str) -> Optional[Section]:
        for index, sec in enumerate(self._sections):
            if sec.name == name:
                return self._make_section(index, sec)
        return None

    def section_data_by_name(self, name: str) -> Optional[memoryview]:
        section = self.section_by_name(name)
        return section.data if section is not None else None

    def symbols(self) -> list[Symbol]:
        """Return the COFF symbol table, skipping auxiliary records."""
        coff = self._coff_header
        if coff.pointer_to_symbol_table == 0:
            return []

        result: list[Symbol] = []
        i = 0
        while i < coff.number_of_symbols:
            offset = coff.pointer_to_symbol_table + i * _SYMBOL_SIZE
            raw_name, value, section_number, sym_type, storage_class, aux_count = unpack_at(
                _SYMBOL, self._data, offset, "COFF symbol"
            )
            result.append(self._make_symbol(
                raw_name, value, section_number, sym_type, storage_class, aux_count,
            ))
            i += 1 + aux_count
        return result

    # ------------------------------------------------------------------ #
    #  Utility methods
    # ------------------------------------------------------------------ #

    def _symbol_name(self, raw: bytes) -> Optional[str]:
        if raw[:4] == b"\x00\x00\x00\x00":
            offset = int.from_bytes(raw[4:8], "little")
            return read_cstring(self._string_table, offset) or None
        return fixed_name(raw) or None

    def _make_symbol(
        self,
        raw_name: bytes,
        value: int,
        section_number: int,
        sym_type: int,
        storage_class: int,
        aux_count: int,
    ) -> Symbol:
        name = self._symbol_name(raw_name)
        is_global = storage_class in (IMAGE_SYM_CLASS_EXTERNAL, IMAGE_SYM_CLASS_WEAK_EXTERNAL)

        section: Optional[_PESection] = None
        section_index: Optional[int] = None
        section_kind: Optional[SectionKind] = None
        if section_number > 0:
            if section_number <= len(self._sections):
                section_index = section_number - 1
                section = self._sections[section_index]
                section_kind = classify_section(section.characteristics)
            else:
                logger.debug("Symbol %r refers to missing section %d", name, section_number)

        if storage_class == IMAGE_SYM_CLASS_FILE:
            kind = SymbolKind.FILE
        elif storage_class == IMAGE_SYM_CLASS_SECTION or (
            storage_class == IMAGE_SYM_CLASS_STATIC and value == 0 and aux_count > 0
        ):
            kind = SymbolKind.SECTION
        elif (
            storage_class == IMAGE_SYM_CLASS_EXTERNAL
            and section_number == IMAGE_SYM_UNDEFINED
            and value != 0
        ):
            # Common symbol: the value holds the size.
            return Symbol(kind=SymbolKind.COMMON, name=name, size=value, is_global=True)
        elif (sym_type >> 4) & 0x3 == IMAGE_SYM_DTYPE_FUNCTION:
            kind = SymbolKind.TEXT
        elif section_number > 0:
            kind = SymbolKind.DATA
        else:
            kind = SymbolKind.UNKNOWN

        address = value
        if section is not None and kind is not SymbolKind.FILE:
            address = section.virtual_address + value

        return Symbol(
            kind=kind,
            name=name,
            address=address,
            is_global=is_global,
            section_index=section_index,
            section_kind=section_kind,
        )

    def _make_section(self, index: int, sec: _PESection) -> Section:
        start = sec.pointer_to_raw_data
        return Section(
            index=index,
            name=sec.name,
            address=sec.virtual_address,
            size=sec.virtual_size,
            file_offset=start,
            file_size=sec.size_of_raw_data,
            kind=classify_section(sec.characteristics),
            data=borrow_range(self._data, start, sec.size_of_raw_data),
        )
